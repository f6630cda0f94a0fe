"""
Subagent Orchestration — Delegating Work to Child Agents.

A primary agent hands a bounded task to a subagent: an independently
supervised child process with its own model, tool permissions and
conversation identity. This package spawns those children, turns their
newline-delimited JSON event stream into state, and decides when a failed
attempt is retried, moved down a model chain, or reported as final.

The public entry point is ``Orchestrator.spawn_subagent``. It never raises.
"""

from __future__ import annotations

from taskfork.orchestration.models import (
    ModelResolution,
    SubagentConfig,
    SubagentProgressUpdate,
    SubagentRequest,
    SubagentResult,
)

__all__ = [
    "ModelResolution",
    "SubagentConfig",
    "SubagentProgressUpdate",
    "SubagentRequest",
    "SubagentResult",
]
