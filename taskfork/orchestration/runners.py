"""
Attempt Executors — Running Exactly One Child.

An executor takes an ``AttemptRequest`` and produces an ``AttemptOutcome``.
It never retries and never raises for child-level failures: spawn errors,
nonzero exits, cancellation and missing terminal events all come back as a
failed ``SubagentResult`` inside the outcome, for the RetryCoordinator to
judge.

  ProcessAttemptExecutor  — launches the child through ProcessSupervisor and
                            folds its stdout through StreamEventProcessor
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog

from taskfork.orchestration.errors import (
    INTERRUPTED_BY_USER,
    ChildFailedError,
    ProtocolError,
    SpawnError,
)
from taskfork.orchestration.models import (
    AttemptOutcome,
    AttemptRequest,
    ExecutionState,
    SubagentProgressUpdate,
    SubagentResult,
)
from taskfork.orchestration.stream import (
    ProgressCallback,
    StreamEventProcessor,
    parse_result_from_last_line,
)
from taskfork.orchestration.supervisor import (
    ProcessSupervisor,
    build_child_env,
    build_subagent_args,
)

logger = structlog.get_logger(__name__)


def interrupted_result(
    agent_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
) -> SubagentResult:
    return SubagentResult(
        agent_id=agent_id or "",
        conversation_id=conversation_id,
        success=False,
        error=INTERRUPTED_BY_USER,
    )


class AttemptExecutorBase(ABC):
    """Abstract base for single-attempt execution backends."""

    @abstractmethod
    async def run(
        self,
        request: AttemptRequest,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AttemptOutcome:
        """Run one child attempt to completion and report what happened."""


class ProcessAttemptExecutor(AttemptExecutorBase):
    """Run an attempt as a headless child process speaking stream-json."""

    def __init__(
        self,
        config: Any,  # OrchestrationConfig
        permissions: Any,  # PermissionView
        tracker: Any = None,  # StateTracker
        server_config: Any = None,  # ServerConfig
        parent_agent_id: Optional[str] = None,
        cwd: Optional[str] = None,
    ):
        self._config = config
        self._permissions = permissions
        self._tracker = tracker
        self._server_config = server_config
        self._parent_agent_id = parent_agent_id
        self._cwd = cwd

    async def run(
        self,
        request: AttemptRequest,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AttemptOutcome:
        if cancel_event is not None and cancel_event.is_set():
            return AttemptOutcome(
                result=interrupted_result(
                    request.existing_agent_id, request.existing_conversation_id
                ),
                interrupted=True,
            )

        if request.model:
            self._track("set_model", request.subagent_id, request.model)
            notify_progress(
                on_progress, SubagentProgressUpdate(message=f"[model] {request.model}")
            )

        state = ExecutionState(
            agent_id=request.existing_agent_id,
            conversation_id=request.existing_conversation_id,
        )
        processor = StreamEventProcessor(
            state,
            request.subagent_id,
            tracker=self._tracker,
            on_progress=on_progress,
        )
        args = build_subagent_args(
            request.subagent_type,
            request.config,
            request.model,
            request.prompt,
            self._permissions,
            existing_agent_id=request.existing_agent_id,
            existing_conversation_id=request.existing_conversation_id,
            max_turns=request.max_turns,
        )
        env = build_child_env(
            api_key=getattr(self._server_config, "api_key", None),
            base_url=getattr(self._server_config, "base_url", None),
            parent_agent_id=self._parent_agent_id,
        )
        supervisor = ProcessSupervisor(
            self._config.child_command,
            args,
            env_overrides=env,
            on_line=processor.process_line,
            cwd=self._cwd,
            terminate_grace=self._config.terminate_grace_seconds,
            line_limit=self._config.stdout_line_limit,
        )

        start = time.monotonic()
        logger.info(
            "orchestration.attempt.start",
            subagent_id=request.subagent_id,
            subagent_type=request.subagent_type,
            model=request.model,
            attaching=bool(request.existing_agent_id or request.existing_conversation_id),
        )

        try:
            process = await supervisor.run(cancel_event)
        except SpawnError as exc:
            return AttemptOutcome(
                result=SubagentResult(agent_id=state.agent_id or "", error=str(exc)),
            )

        elapsed = round(time.monotonic() - start, 2)

        if process.interrupted:
            logger.info(
                "orchestration.attempt.interrupted",
                subagent_id=request.subagent_id,
                elapsed_seconds=elapsed,
            )
            return AttemptOutcome(
                result=interrupted_result(state.agent_id, state.conversation_id),
                exit_code=process.exit_code,
                stderr=process.stderr,
                interrupted=True,
            )

        try:
            result = self._collect(state, process.exit_code, process.stderr, process.last_line)
        except ChildFailedError as exc:
            logger.warning(
                "orchestration.attempt.child_failed",
                subagent_id=request.subagent_id,
                exit_code=exc.exit_code,
                elapsed_seconds=elapsed,
            )
            result = SubagentResult(
                agent_id=state.agent_id or "",
                conversation_id=state.conversation_id,
                error=str(exc),
            )
        except ProtocolError as exc:
            logger.warning(
                "orchestration.attempt.protocol_error",
                subagent_id=request.subagent_id,
                error=str(exc),
            )
            result = SubagentResult(
                agent_id=state.agent_id or "",
                conversation_id=state.conversation_id,
                error=str(exc),
            )

        logger.info(
            "orchestration.attempt.done",
            subagent_id=request.subagent_id,
            success=result.success,
            exit_code=process.exit_code,
            elapsed_seconds=elapsed,
        )
        return AttemptOutcome(
            result=result,
            exit_code=process.exit_code,
            stderr=process.stderr,
        )

    @staticmethod
    def _collect(
        state: ExecutionState,
        exit_code: Optional[int],
        stderr: str,
        last_line: str,
    ) -> SubagentResult:
        """Turn final state into a result. Raises ChildFailedError / ProtocolError."""
        if exit_code not in (0, None):
            message = (
                (state.final_error or "").strip()
                or stderr
                or f"Subagent exited with code {exit_code}"
            )
            raise ChildFailedError(message, exit_code=exit_code, stderr=stderr)

        total_tokens = state.result_stats.total_tokens if state.result_stats else None

        if state.final_result is not None:
            return SubagentResult(
                agent_id=state.agent_id or "",
                conversation_id=state.conversation_id,
                report=state.final_result,
                success=not state.final_error,
                error=state.final_error or None,
                total_tokens=total_tokens,
            )
        if state.final_error:
            return SubagentResult(
                agent_id=state.agent_id or "",
                conversation_id=state.conversation_id,
                error=state.final_error,
                total_tokens=total_tokens,
            )

        if not last_line:
            raise ProtocolError("Unexpected output format from subagent")
        parsed = parse_result_from_last_line(last_line, state.agent_id)
        return parsed.model_copy(update={"conversation_id": state.conversation_id})

    def _track(self, method: str, *args: Any) -> None:
        if self._tracker is None:
            return
        try:
            getattr(self._tracker, method)(*args)
        except Exception:
            logger.debug("orchestration.tracker_call_failed", method=method, exc_info=True)


def notify_progress(callback: Optional[ProgressCallback], update: SubagentProgressUpdate) -> None:
    if callback is None:
        return
    try:
        callback(update)
    except Exception:
        logger.debug("orchestration.progress_callback_failed", exc_info=True)
