"""
Orchestrator — The Public Entry Point for Delegation.

``spawn_subagent`` runs one subagent invocation end to end:

  1. look up the subagent type (unknown → failed result, nothing spawned)
  2. pick a model: caller override, else the type's selector, resolved once
     into a handle plus a fallback chain; attaching to an existing agent
     skips this and only looks up a display label
  3. prepend a deploy note when attaching to an existing identity
  4. run attempts through the executor, asking the RetryCoordinator after
     each failure whether to retry, move down the chain, or stop
  5. return exactly one SubagentResult

It never raises. Every failure, including cancellation of the calling task,
comes back as ``success=False`` with an error string.

Concurrency: many invocations may run at once. Each owns its RetryContext and
each attempt owns its ExecutionState; the only shared state is the semaphore
capping concurrently running subagents.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Callable, Optional, Sequence

import structlog

from taskfork.events import SubagentCompletedEvent, SubagentRetryEvent
from taskfork.orchestration.errors import ConfigError, OrchestrationError, SubagentInterrupted
from taskfork.orchestration.models import (
    AttemptRequest,
    ModelResolution,
    RetryContext,
    SubagentConfig,
    SubagentProgressUpdate,
    SubagentRequest,
    SubagentResult,
)
from taskfork.orchestration.retry import Action, RetryCoordinator, wait_for_retry_delay
from taskfork.orchestration.runners import (
    AttemptExecutorBase,
    ProcessAttemptExecutor,
    interrupted_result,
    notify_progress,
)
from taskfork.orchestration.selector import is_selector_token, parse_model_selector
from taskfork.orchestration.stream import ProgressCallback

logger = structlog.get_logger(__name__)

SYSTEM_REMINDER_OPEN = "<system-reminder>"
SYSTEM_REMINDER_CLOSE = "</system-reminder>"

DEPLOY_REMINDER_TEMPLATE = """\
{open}
This task is from "{sender_name}" (agent ID: {sender_id}), which deployed you as a subagent.
You have access to {tool_description} in their codebase.
Your final message will be returned to the caller.
{close}

"""

FanOutProgress = Callable[[str, SubagentProgressUpdate], Any]


def build_deploy_reminder(sender_name: str, sender_id: str, subagent_type: str) -> str:
    tool_description = (
        "read-only tools (Read, Glob, Grep)"
        if subagent_type == "explore"
        else "local tools (Bash, Read, Write, Edit, etc.)"
    )
    return DEPLOY_REMINDER_TEMPLATE.format(
        open=SYSTEM_REMINDER_OPEN,
        close=SYSTEM_REMINDER_CLOSE,
        sender_name=sender_name,
        sender_id=sender_id,
        tool_description=tool_description,
    )


class Orchestrator:
    """Spawns subagents and applies the retry and fallback policy."""

    def __init__(
        self,
        context: Any,  # EngineContext
        executor: Optional[AttemptExecutorBase] = None,
        coordinator: Optional[RetryCoordinator] = None,
    ):
        self._ctx = context
        config = context.config.orchestration
        self._config = config
        self._executor = executor or ProcessAttemptExecutor(
            config,
            context.permissions,
            tracker=context.tracker,
            server_config=context.config.server,
            parent_agent_id=context.directory.parent_agent_id,
        )
        self._coordinator = coordinator or RetryCoordinator(
            max_transient_retries=config.max_transient_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            jitter=config.retry_jitter,
        )
        self._semaphore = asyncio.Semaphore(config.max_concurrent_subagents)
        self._active = 0

        logger.info(
            "orchestrator.initialized",
            max_concurrent=config.max_concurrent_subagents,
            max_transient_retries=config.max_transient_retries,
        )

    @property
    def active_count(self) -> int:
        return self._active

    async def spawn_subagent(
        self,
        subagent_type: str,
        prompt: str,
        *,
        subagent_id: Optional[str] = None,
        user_model: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        existing_agent_id: Optional[str] = None,
        existing_conversation_id: Optional[str] = None,
        max_turns: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SubagentResult:
        """Run one subagent to completion. Never raises.

        Cancelling the calling task terminates the child and yields an
        interrupted result. That cancellation is consumed (the task is
        uncancelled), so an enclosing ``asyncio.timeout()`` or ``TaskGroup``
        sees a normal return rather than ``CancelledError``.
        """
        subagent_id = subagent_id or f"sub-{uuid.uuid4().hex[:12]}"
        if cancel_event is None:
            cancel_event = asyncio.Event()
        if max_turns is None and self._config.default_max_turns > 0:
            max_turns = self._config.default_max_turns

        logger.info(
            "orchestration.spawn",
            subagent_id=subagent_id,
            subagent_type=subagent_type,
            user_model=user_model,
            attaching=bool(existing_agent_id or existing_conversation_id),
        )

        try:
            async with self._semaphore:
                self._active += 1
                try:
                    result = await self._spawn(
                        subagent_type,
                        prompt,
                        subagent_id=subagent_id,
                        user_model=user_model,
                        cancel_event=cancel_event,
                        existing_agent_id=existing_agent_id,
                        existing_conversation_id=existing_conversation_id,
                        max_turns=max_turns,
                        on_progress=on_progress,
                    )
                finally:
                    self._active -= 1
        except asyncio.CancelledError:
            # The cancellation is consumed here and turned into a result.
            current = asyncio.current_task()
            if current is not None:
                current.uncancel()
            cancel_event.set()
            logger.info("orchestration.cancelled", subagent_id=subagent_id)
            result = interrupted_result(existing_agent_id, existing_conversation_id)
        except SubagentInterrupted as exc:
            result = interrupted_result(exc.agent_id, exc.conversation_id)
        except OrchestrationError as exc:
            result = SubagentResult(error=str(exc))
        except Exception as exc:
            logger.error(
                "orchestration.unexpected_error",
                subagent_id=subagent_id,
                error=str(exc),
                exc_info=True,
            )
            result = SubagentResult(
                agent_id=existing_agent_id or "",
                conversation_id=existing_conversation_id,
                error=str(exc) or type(exc).__name__,
            )

        logger.info(
            "orchestration.completed",
            subagent_id=subagent_id,
            success=result.success,
            agent_id=result.agent_id,
            error=result.error,
        )
        self._emit(
            SubagentCompletedEvent(
                subagent_id=subagent_id,
                success=result.success,
                agent_id=result.agent_id,
                error=result.error,
                total_tokens=result.total_tokens,
            )
        )
        return result

    async def spawn_many(
        self,
        requests: Sequence[SubagentRequest],
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[FanOutProgress] = None,
    ) -> list[SubagentResult]:
        """Run several invocations concurrently. Results keep input order."""

        def _progress_for(subagent_id: str) -> Optional[ProgressCallback]:
            if on_progress is None:
                return None
            return lambda update: on_progress(subagent_id, update)

        return list(
            await asyncio.gather(
                *(
                    self.spawn_subagent(
                        req.subagent_type,
                        req.prompt,
                        subagent_id=req.subagent_id,
                        user_model=req.user_model,
                        cancel_event=cancel_event,
                        existing_agent_id=req.existing_agent_id,
                        existing_conversation_id=req.existing_conversation_id,
                        max_turns=req.max_turns,
                        on_progress=_progress_for(req.subagent_id),
                    )
                    for req in requests
                )
            )
        )

    # ---- Internal Methods ----

    async def _spawn(
        self,
        subagent_type: str,
        prompt: str,
        *,
        subagent_id: str,
        user_model: Optional[str],
        cancel_event: asyncio.Event,
        existing_agent_id: Optional[str],
        existing_conversation_id: Optional[str],
        max_turns: Optional[int],
        on_progress: Optional[ProgressCallback],
    ) -> SubagentResult:
        registry = self._ctx.registry
        timeout = self._config.registry_ready_timeout
        if not await registry.wait_ready(timeout=timeout):
            raise ConfigError(f"Subagent types not loaded after {timeout:g}s")
        config = registry.get(subagent_type)
        if config is None:
            raise ConfigError(f"Unknown subagent type: {subagent_type}")

        attaching = bool(existing_agent_id or existing_conversation_id)
        parent_model_handle = await self._ctx.directory.get_parent_model_handle()

        if attaching:
            # The existing identity keeps its own model; this is only a label.
            model = None
            if existing_agent_id:
                model = await self._ctx.directory.get_agent_model_label(existing_agent_id)
            chain = [model] if model else []
            final_prompt = await self._with_deploy_reminder(subagent_type, prompt)
        else:
            resolution = await self._resolve_model(config, user_model, parent_model_handle)
            model = resolution.resolved_handle
            chain = list(resolution.expansion_chain) or [model]
            final_prompt = prompt

        ctx = RetryContext(
            model=model,
            expansion_chain=chain,
            attach_mode=attaching,
            agent_id=existing_agent_id,
            conversation_id=existing_conversation_id,
        )
        logger.debug(
            "orchestration.model_selected",
            subagent_id=subagent_id,
            model=model,
            chain=chain,
        )
        return await self._run_attempts(
            subagent_id,
            subagent_type,
            config,
            final_prompt,
            ctx,
            parent_model_handle,
            cancel_event,
            max_turns,
            on_progress,
        )

    async def _run_attempts(
        self,
        subagent_id: str,
        subagent_type: str,
        config: SubagentConfig,
        prompt: str,
        ctx: RetryContext,
        parent_model_handle: Optional[str],
        cancel_event: asyncio.Event,
        max_turns: Optional[int],
        on_progress: Optional[ProgressCallback],
    ) -> SubagentResult:
        max_attempts = self._coordinator.max_attempts_per_model

        while True:
            ctx.attempt += 1
            request = AttemptRequest(
                subagent_id=subagent_id,
                subagent_type=subagent_type,
                config=config,
                prompt=prompt,
                model=ctx.model,
                existing_agent_id=ctx.agent_id,
                existing_conversation_id=ctx.conversation_id,
                max_turns=max_turns,
            )
            outcome = await self._executor.run(request, cancel_event, on_progress)
            result = outcome.result
            if result.success:
                return result
            if cancel_event.is_set():
                return result

            decision = self._coordinator.decide(outcome, ctx, parent_model_handle)
            logger.info(
                "orchestration.attempt.failed",
                subagent_id=subagent_id,
                attempt=ctx.attempt,
                failure_kind=decision.kind.value,
                action=decision.action.value,
                next_model=decision.model,
            )
            if decision.action is Action.RETURN:
                break

            self._emit(
                SubagentRetryEvent(
                    subagent_id=subagent_id,
                    action=decision.action.value,
                    failure_kind=decision.kind.value,
                    model=decision.model,
                    delay_ms=int(decision.delay * 1000),
                )
            )

            if decision.action is Action.RETRY_SAME:
                delay_ms = int(decision.delay * 1000)
                notify_progress(
                    on_progress,
                    SubagentProgressUpdate(
                        message=(
                            f"[retry] attempt {ctx.transient_retries}/{max_attempts} "
                            f"failed with transient error; retrying in {delay_ms}ms"
                        ),
                        agent_id=ctx.agent_id,
                        conversation_id=ctx.conversation_id,
                    ),
                )
                if not await wait_for_retry_delay(decision.delay, cancel_event):
                    raise SubagentInterrupted(ctx.agent_id, ctx.conversation_id)
            else:
                notify_progress(
                    on_progress,
                    SubagentProgressUpdate(
                        message=f"[fallback] {decision.reason}; trying {decision.model}",
                    ),
                )

        if ctx.transient_retries > 0:
            notify_progress(
                on_progress,
                SubagentProgressUpdate(
                    message=(
                        f"[retry-exhausted] subagent failed after "
                        f"{ctx.transient_retries + 1} attempts"
                    ),
                    agent_id=result.agent_id or ctx.agent_id,
                    conversation_id=result.conversation_id or ctx.conversation_id,
                ),
            )
        return result

    async def _resolve_model(
        self,
        config: SubagentConfig,
        user_model: Optional[str],
        parent_model_handle: Optional[str],
    ) -> ModelResolution:
        resolver = self._ctx.resolver
        configured = parse_model_selector(config.model_selector or config.recommended_model)
        if not configured:
            configured = parse_model_selector(None)

        if user_model:
            if is_selector_token(user_model):
                return await resolver.resolve([user_model, "any"], parent_model_handle)
            resolved = await resolver.resolve_model(user_model)
            if resolved:
                return ModelResolution(resolved_handle=resolved, expansion_chain=[resolved])
            if "/" in user_model:
                logger.warning("orchestration.model_not_listed_using_as_is", model=user_model)
                return ModelResolution(resolved_handle=user_model, expansion_chain=[user_model])
            logger.warning("orchestration.unknown_model_using_selector", model=user_model)

        return await resolver.resolve(configured, parent_model_handle)

    async def _with_deploy_reminder(self, subagent_type: str, prompt: str) -> str:
        directory = self._ctx.directory
        sender_id = directory.parent_agent_id
        if not sender_id:
            return prompt
        try:
            sender_name = await directory.get_parent_name()
        except Exception as exc:
            logger.debug("orchestration.deploy_note_skipped", error=str(exc))
            return prompt
        if not sender_name:
            return prompt
        return build_deploy_reminder(sender_name, sender_id, subagent_type) + prompt

    def _emit(self, event: Any) -> None:
        bus = self._ctx.event_bus
        if bus is None:
            return
        try:
            bus.emit(event)
        except Exception:
            logger.debug("orchestration.event_emit_failed", exc_info=True)

