"""
Orchestration Data Models — The Language of Delegation.

These models define the contract between the orchestrator and its subagents.
SubagentConfig describes *what kind* of worker to spawn. SubagentResult
describes *what happened*. ExecutionState and RetryContext are the mutable
bookkeeping of a single attempt and a single invocation respectively; they
never leave the engine.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

ToolPolicy = Union[Literal["all"], list[str]]
MemoryBlockPolicy = Union[Literal["all", "none"], list[str]]
PermissionMode = Literal["default", "acceptEdits", "plan", "bypassPermissions"]


class SubagentConfig(BaseModel):
    """Definition of a subagent type. Loaded once per call, never mutated."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    recommended_model: str = "inherit"
    model_selector: Optional[list[str]] = None
    allowed_tools: ToolPolicy = "all"
    memory_blocks: MemoryBlockPolicy = "all"
    permission_mode: Optional[PermissionMode] = None
    skills: list[str] = Field(default_factory=list)

    @property
    def explicit_tools(self) -> list[str]:
        """Tool names when the policy is an explicit list, else empty."""
        if self.allowed_tools == "all" or not isinstance(self.allowed_tools, list):
            return []
        return list(self.allowed_tools)


class ModelResolution(BaseModel):
    """Concrete handle to try first plus the ordered fallback chain."""

    resolved_handle: str
    expansion_chain: list[str] = Field(default_factory=list)


class SubagentResult(BaseModel):
    """Terminal outcome of one spawn_subagent call."""

    model_config = ConfigDict(frozen=True)

    agent_id: str = ""
    conversation_id: Optional[str] = None
    report: str = ""
    success: bool = False
    error: Optional[str] = None
    total_tokens: Optional[int] = None


class SubagentProgressUpdate(BaseModel):
    """Best-effort progress notification delivered to the caller."""

    message: str
    agent_id: Optional[str] = None
    conversation_id: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None


class SubagentRequest(BaseModel):
    """Arguments of a single spawn_subagent invocation, for fan-out."""

    subagent_type: str
    prompt: str
    subagent_id: str = Field(default_factory=lambda: f"sub-{uuid.uuid4().hex[:12]}")
    user_model: Optional[str] = None
    existing_agent_id: Optional[str] = None
    existing_conversation_id: Optional[str] = None
    max_turns: Optional[int] = None


@dataclass
class PendingToolCall:
    name: str = ""
    args: str = ""


@dataclass
class ResultStats:
    duration_ms: int = 0
    total_tokens: int = 0


@dataclass
class ExecutionState:
    """Everything one attempt has learned from its child's event stream.

    Created at attempt start, mutated only by that attempt's
    StreamEventProcessor, discarded when the attempt ends.
    """

    agent_id: Optional[str] = None
    conversation_id: Optional[str] = None
    final_result: Optional[str] = None
    final_error: Optional[str] = None
    result_stats: Optional[ResultStats] = None
    displayed_tool_calls: set[str] = field(default_factory=set)
    pending_tool_calls: dict[str, PendingToolCall] = field(default_factory=dict)


@dataclass
class RetryContext:
    """Retry bookkeeping owned by one spawn_subagent invocation."""

    model: Optional[str] = None
    expansion_chain: list[str] = field(default_factory=list)
    chain_index: int = 0
    attempt: int = 0  # total attempts started
    transient_retries: int = 0  # outer same-model retries used
    advanced_on_rate_limit: bool = False
    attach_mode: bool = False  # caller asked to attach to an existing identity
    agent_id: Optional[str] = None
    conversation_id: Optional[str] = None


@dataclass
class AttemptRequest:
    """Everything an attempt executor needs to run exactly one child."""

    subagent_id: str
    subagent_type: str
    config: SubagentConfig
    prompt: str
    model: Optional[str] = None
    existing_agent_id: Optional[str] = None
    existing_conversation_id: Optional[str] = None
    max_turns: Optional[int] = None


@dataclass
class AttemptOutcome:
    """What one attempt produced, handed to the RetryCoordinator."""

    result: SubagentResult
    exit_code: Optional[int] = None
    stderr: str = ""
    interrupted: bool = False

    @property
    def failure_text(self) -> str:
        """Text the failure classifier looks at."""
        parts = [self.result.error or "", self.stderr]
        return "\n".join(p for p in parts if p)
