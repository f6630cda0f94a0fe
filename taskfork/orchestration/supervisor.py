"""
Process Supervisor — One Child, One Attempt.

Launches a headless child agent, reads its stdout one line at a time (strictly
in emission order, single reader), accumulates stderr, and waits for exit.
A caller-supplied ``asyncio.Event`` acts as the cancellation hook: when it
fires the child gets SIGTERM, then SIGKILL after a grace period, and
``wait()`` returns an interrupted outcome instead of blocking.

All handles attached to the child (reader tasks, exit watcher, cancel
watcher) are released exactly once, on every exit path.

The argument vector is built here too. It is deterministic: the same inputs
always yield the same list, in the same order.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import structlog

from taskfork.orchestration.errors import SpawnError
from taskfork.orchestration.models import SubagentConfig

logger = structlog.get_logger(__name__)

OUTPUT_FORMAT = "stream-json"
AGENT_ROLE_ENV = "TASKFORK_AGENT_ROLE"
PARENT_AGENT_ENV = "TASKFORK_PARENT_AGENT_ID"
API_KEY_ENV = "TASKFORK_API_KEY"
BASE_URL_ENV = "TASKFORK_BASE_URL"

LineCallback = Callable[[str], Any]


def build_subagent_args(
    subagent_type: str,
    config: SubagentConfig,
    model: Optional[str],
    prompt: str,
    permissions: Any,  # PermissionView
    existing_agent_id: Optional[str] = None,
    existing_conversation_id: Optional[str] = None,
    max_turns: Optional[int] = None,
) -> list[str]:
    """Build the child's argument vector (without the executable)."""
    args: list[str] = []
    attaching = bool(existing_agent_id or existing_conversation_id)

    if attaching:
        # The existing identity keeps its own system prompt and model.
        if existing_conversation_id:
            args.extend(["--conv", existing_conversation_id])
        else:
            # One agent may serve several concurrent attempts; each needs its
            # own conversation.
            args.extend(["--agent", existing_agent_id, "--new"])
    else:
        args.extend(["--new-agent", "--system", subagent_type])
        if model:
            args.extend(["--model", model])

    args.extend(["-p", prompt])
    args.extend(["--output-format", OUTPUT_FORMAT])

    mode = config.permission_mode or permissions.get_mode()
    if mode and mode != "default":
        args.extend(["--permission-mode", mode])

    subagent_tools = config.explicit_tools
    combined_allowed = list(
        dict.fromkeys(
            [
                *permissions.get_allowed_tools(),
                *permissions.get_session_allow_rules(),
                *subagent_tools,
            ]
        )
    )
    if combined_allowed:
        args.extend(["--allowedTools", ",".join(combined_allowed)])

    disallowed = list(permissions.get_disallowed_tools())
    if disallowed:
        args.extend(["--disallowedTools", ",".join(disallowed)])

    if not attaching:
        if config.memory_blocks == "none":
            args.extend(["--init-blocks", "none"])
        elif isinstance(config.memory_blocks, list) and config.memory_blocks:
            args.extend(["--init-blocks", ",".join(config.memory_blocks)])

    if subagent_tools:
        args.extend(["--tools", ",".join(subagent_tools)])

    if max_turns is not None and max_turns > 0:
        args.extend(["--max-turns", str(max_turns)])

    if config.skills:
        args.extend(["--pre-load-skills", ",".join(config.skills)])

    return args


def build_child_env(
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    parent_agent_id: Optional[str] = None,
) -> dict[str, str]:
    """Environment overrides: forwarded credentials plus routing tags."""
    env: dict[str, str] = {AGENT_ROLE_ENV: "subagent"}
    if api_key:
        env[API_KEY_ENV] = api_key
    if base_url:
        env[BASE_URL_ENV] = base_url
    if parent_agent_id:
        env[PARENT_AGENT_ENV] = parent_agent_id
    return env


@dataclass
class ProcessOutcome:
    exit_code: Optional[int]
    stderr: str = ""
    last_line: str = ""
    interrupted: bool = False


class ProcessSupervisor:
    """Spawns and supervises exactly one child process."""

    def __init__(
        self,
        command: Sequence[str],
        args: Sequence[str],
        env_overrides: Optional[dict[str, str]] = None,
        on_line: Optional[LineCallback] = None,
        cwd: Optional[str] = None,
        terminate_grace: float = 5.0,
        line_limit: int = 16 * 1024 * 1024,
    ):
        if not command:
            raise SpawnError("No child command configured")
        self._command = list(command)
        self._args = list(args)
        self._env_overrides = dict(env_overrides or {})
        self._on_line = on_line
        self._cwd = cwd
        self._terminate_grace = terminate_grace
        self._line_limit = line_limit

        self._proc: Optional[asyncio.subprocess.Process] = None
        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._stderr_chunks: list[bytes] = []
        self._last_line = ""
        self._released = False

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    async def start(self) -> None:
        """Launch the child. Raises SpawnError if the OS refuses."""
        env = os.environ.copy()
        env.update(self._env_overrides)
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self._command,
                *self._args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self._cwd,
                limit=self._line_limit,
            )
        except (OSError, ValueError) as exc:
            logger.error(
                "supervisor.spawn_failed",
                command=self._command[0],
                error=str(exc),
            )
            raise SpawnError(f"Failed to start subagent process: {exc}") from exc

        self._stdout_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        logger.info("supervisor.spawned", pid=self._proc.pid, command=self._command[0])

    async def wait(self, cancel_event: Optional[asyncio.Event] = None) -> ProcessOutcome:
        """Wait for exit, or for the cancel hook, whichever comes first."""
        if self._proc is None:
            raise SpawnError("wait() called before start()")

        exit_task = asyncio.ensure_future(self._proc.wait())
        cancel_task = (
            asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
        )
        interrupted = False
        try:
            watched = {exit_task} if cancel_task is None else {exit_task, cancel_task}
            await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)

            if not exit_task.done():
                interrupted = True
                logger.info("supervisor.cancel_requested", pid=self._proc.pid)
                await self._terminate()

            exit_code = await exit_task
            await self._drain_readers()
        except asyncio.CancelledError:
            self._kill_now()
            raise
        finally:
            for task in (exit_task, cancel_task):
                if task is not None and not task.done():
                    task.cancel()
            await self._release()

        return ProcessOutcome(
            exit_code=exit_code,
            stderr=b"".join(self._stderr_chunks).decode("utf-8", errors="replace").strip(),
            last_line=self._last_line,
            interrupted=interrupted,
        )

    async def run(self, cancel_event: Optional[asyncio.Event] = None) -> ProcessOutcome:
        """start() then wait(); releases handles even if start() fails midway."""
        try:
            await self.start()
        except SpawnError:
            await self._release()
            raise
        return await self.wait(cancel_event)

    # ---- Internal Methods ----

    async def _read_stdout(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        stream = self._proc.stdout
        discarding = False
        while True:
            try:
                raw = await stream.readuntil(b"\n")
            except asyncio.LimitOverrunError as exc:
                # Oversized line: drop it in pieces up to and including its newline.
                await stream.readexactly(exc.consumed)
                if not discarding:
                    logger.warning("supervisor.stdout_line_too_long", limit=self._line_limit)
                    self._last_line = ""
                discarding = True
                continue
            except asyncio.IncompleteReadError as exc:
                # EOF. A final line without a newline still counts.
                if exc.partial and not discarding:
                    self._handle_line(exc.partial)
                break
            if discarding:
                discarding = False
                continue
            self._handle_line(raw)

    def _handle_line(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if not line.strip():
            return
        self._last_line = line
        if self._on_line is not None:
            try:
                self._on_line(line)
            except Exception:
                logger.error("supervisor.line_handler_error", exc_info=True)

    async def _read_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        while True:
            chunk = await self._proc.stderr.read(4096)
            if not chunk:
                break
            self._stderr_chunks.append(chunk)

    async def _drain_readers(self) -> None:
        """Let readers hit EOF; give up after the grace period."""
        readers = [t for t in (self._stdout_task, self._stderr_task) if t is not None]
        if not readers:
            return
        done, pending = await asyncio.wait(readers, timeout=self._terminate_grace)
        if pending:
            logger.warning("supervisor.reader_drain_timeout", pending=len(pending))

    async def _terminate(self) -> None:
        """SIGTERM, then SIGKILL if the child outlives the grace period."""
        assert self._proc is not None
        if self._proc.returncode is not None:
            return
        try:
            self._proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=self._terminate_grace)
        except asyncio.TimeoutError:
            logger.warning("supervisor.terminate_timeout_killing", pid=self._proc.pid)
            self._kill_now()
            await self._proc.wait()

    def _kill_now(self) -> None:
        if self._proc is not None and self._proc.returncode is None:
            try:
                self._proc.kill()
            except ProcessLookupError:
                pass

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        tasks = [
            t for t in (self._stdout_task, self._stderr_task) if t is not None and not t.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("supervisor.released", pid=self.pid)
