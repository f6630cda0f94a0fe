# taskfork/config.py
"""
Configuration for the subagent orchestration engine.

All configuration flows through this module. Values are loaded from environment
variables (via .env file) and validated with Pydantic. Nothing in here is
read lazily from ambient globals: a ``TaskforkConfig`` is built once at
process start and handed to ``EngineContext``.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Optional

import structlog
from pydantic import BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings, NoDecode

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above taskfork/ package),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"


def _coerce_str_list(value: object) -> list[str]:
    """Coerce env-var values into a list of stripped, non-empty strings.

    Accepts:
      - A single str         → ["value"]
      - Comma-separated str  → ["a", "b"]
      - JSON array str       → ["a", "b"]
      - An existing list     → passthrough with str coercion
    """
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            try:
                return _coerce_str_list(json.loads(stripped))
            except ValueError:
                pass
        if "," in stripped:
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return [stripped]
    return []


# Annotated type for list[str] fields that accept bare values, comma-separated,
# and JSON arrays from environment variables.
StrList = Annotated[list[str], NoDecode, BeforeValidator(_coerce_str_list)]


class OrchestrationConfig(BaseSettings):
    """Configuration for spawning, supervising and retrying subagents."""

    # Command used to launch a headless child agent. Extra leading arguments
    # (e.g. an interpreter followed by a script path) are allowed.
    child_command: StrList = Field(
        default_factory=lambda: ["taskfork-agent"], alias="TASKFORK_CHILD_BIN"
    )
    max_concurrent_subagents: int = Field(8, alias="TASKFORK_MAX_CONCURRENT_SUBAGENTS")
    default_max_turns: int = Field(0, alias="TASKFORK_SUBAGENT_MAX_TURNS")  # 0 = no cap
    max_transient_retries: int = Field(2, alias="TASKFORK_MAX_TRANSIENT_RETRIES")
    retry_base_delay: float = Field(0.8, alias="TASKFORK_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(8.0, alias="TASKFORK_RETRY_MAX_DELAY")
    retry_jitter: float = Field(0.3, alias="TASKFORK_RETRY_JITTER")
    terminate_grace_seconds: float = Field(5.0, alias="TASKFORK_TERMINATE_GRACE")
    stdout_line_limit: int = Field(16 * 1024 * 1024, alias="TASKFORK_STDOUT_LINE_LIMIT")
    registry_ready_timeout: float = Field(10.0, alias="TASKFORK_REGISTRY_READY_TIMEOUT")
    default_model: str = Field("", alias="TASKFORK_DEFAULT_MODEL")  # empty = catalog default

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "OrchestrationConfig":
        if not self.child_command:
            self.child_command = ["taskfork-agent"]
        self.max_concurrent_subagents = max(1, int(self.max_concurrent_subagents))
        self.default_max_turns = max(0, int(self.default_max_turns))
        self.max_transient_retries = max(0, min(10, int(self.max_transient_retries)))
        self.retry_base_delay = max(0.0, float(self.retry_base_delay))
        self.retry_max_delay = max(self.retry_base_delay, float(self.retry_max_delay))
        self.retry_jitter = max(0.0, float(self.retry_jitter))
        self.terminate_grace_seconds = max(0.1, float(self.terminate_grace_seconds))
        self.stdout_line_limit = max(64 * 1024, int(self.stdout_line_limit))
        self.registry_ready_timeout = max(0.0, float(self.registry_ready_timeout))
        return self


class ServerConfig(BaseSettings):
    """Connection to the agent server (model resolution + agent directory)."""

    base_url: str = Field("https://api.taskfork.dev", alias="TASKFORK_BASE_URL")
    api_key: Optional[str] = Field(None, alias="TASKFORK_API_KEY")
    request_timeout_seconds: float = Field(10.0, alias="TASKFORK_REQUEST_TIMEOUT_SECONDS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize(self) -> "ServerConfig":
        self.base_url = self.base_url.rstrip("/")
        self.request_timeout_seconds = max(0.5, float(self.request_timeout_seconds))
        return self


class ParentAgentConfig(BaseSettings):
    """Identity of the delegating (parent) agent in this process."""

    agent_id: Optional[str] = Field(None, alias="TASKFORK_PARENT_AGENT_ID")
    name: str = Field("primary agent", alias="TASKFORK_PARENT_AGENT_NAME")
    # Used when the server directory cannot be reached.
    model_handle: Optional[str] = Field(None, alias="TASKFORK_PARENT_MODEL")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}


class PermissionConfig(BaseSettings):
    """Parent permission state forwarded to children (read-only here)."""

    mode: str = Field("default", alias="TASKFORK_PERMISSION_MODE")
    allowed_tools: StrList = Field(default_factory=list, alias="TASKFORK_ALLOWED_TOOLS")
    disallowed_tools: StrList = Field(default_factory=list, alias="TASKFORK_DISALLOWED_TOOLS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_mode(self) -> "PermissionConfig":
        if self.mode not in {"default", "acceptEdits", "plan", "bypassPermissions"}:
            logger.warning("config.unknown_permission_mode", mode=self.mode)
            self.mode = "default"
        return self


class TaskforkConfig:
    """
    Master configuration that composes all subsystem configs.

    Built once per process and passed into ``EngineContext``. Every component
    receives its config from there; nothing reads settings on its own.
    """

    def __init__(
        self,
        orchestration: Optional[OrchestrationConfig] = None,
        server: Optional[ServerConfig] = None,
        parent: Optional[ParentAgentConfig] = None,
        permissions: Optional[PermissionConfig] = None,
    ):
        self.orchestration = orchestration or OrchestrationConfig()
        self.server = server or ServerConfig()
        self.parent = parent or ParentAgentConfig()
        self.permissions = permissions or PermissionConfig()

    def __repr__(self) -> str:
        return (
            f"TaskforkConfig(child={self.orchestration.child_command!r}, "
            f"server={self.server.base_url!r}, parent={self.parent.agent_id!r})"
        )
