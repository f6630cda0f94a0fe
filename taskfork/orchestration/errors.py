"""
Orchestration errors.

Every failure inside the engine is one of these. They are raised and caught
internally; ``Orchestrator.spawn_subagent`` converts all of them into a failed
``SubagentResult`` and never lets one escape.
"""

from __future__ import annotations

INTERRUPTED_BY_USER = "Interrupted by user"


class OrchestrationError(Exception):
    """Base class for subagent orchestration failures."""


class ConfigError(OrchestrationError):
    """Unknown subagent type or unusable configuration. Nothing is spawned."""


class SpawnError(OrchestrationError):
    """The OS refused to start the child process."""


class ChildFailedError(OrchestrationError):
    """The child exited nonzero or reported a terminal error."""

    def __init__(self, message: str, exit_code: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class StreamParseError(OrchestrationError):
    """A stdout line was not a usable JSON event. Always skipped."""


class SubagentInterrupted(OrchestrationError):
    """The caller cancelled the invocation. Never retried."""

    def __init__(
        self,
        agent_id: str | None = None,
        conversation_id: str | None = None,
    ):
        super().__init__(INTERRUPTED_BY_USER)
        self.agent_id = agent_id
        self.conversation_id = conversation_id


class ProtocolError(OrchestrationError):
    """The child ended without a usable terminal event."""
