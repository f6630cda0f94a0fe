"""
Shared fixtures for the taskfork test suite.

Provides configs that ignore the developer's environment, a scripted fake
attempt executor, a fake agent server, and a recording state tracker so
individual test modules can focus on behavior rather than setup.
"""

from __future__ import annotations

import asyncio
import sys
from typing import Any, Callable, Optional, Union

import pytest

from taskfork.api.server import AgentRecord, LlmConfig
from taskfork.config import (
    OrchestrationConfig,
    ParentAgentConfig,
    PermissionConfig,
    ServerConfig,
    TaskforkConfig,
)
from taskfork.orchestration.collaborators import (
    ParentAgentDirectory,
    PermissionView,
    StateTracker,
)
from taskfork.orchestration.context import EngineContext
from taskfork.orchestration.models import (
    AttemptOutcome,
    AttemptRequest,
    ModelResolution,
    SubagentResult,
)
from taskfork.orchestration.registry import SubagentRegistry
from taskfork.orchestration.runners import AttemptExecutorBase, interrupted_result
from taskfork.orchestration.selector import ModelSelectorResolver

PYTHON = sys.executable


# ---------------------------------------------------------------------------
# Config helpers
# ---------------------------------------------------------------------------


def make_config(
    child_command: Optional[list[str]] = None,
    parent_agent_id: Optional[str] = "agent-parent",
    parent_model: Optional[str] = "anthropic/parent-model",
    **orchestration: Any,
) -> TaskforkConfig:
    """A TaskforkConfig with fast retries and no surprises from the environment."""
    orch_kwargs: dict[str, Any] = {
        "child_command": child_command or ["taskfork-agent"],
        "max_concurrent_subagents": 8,
        "default_max_turns": 0,
        "max_transient_retries": 2,
        "retry_base_delay": 0.0,
        "retry_max_delay": 0.0,
        "retry_jitter": 0.0,
        "terminate_grace_seconds": 2.0,
        "default_model": "",
    }
    orch_kwargs.update(orchestration)
    return TaskforkConfig(
        orchestration=OrchestrationConfig(**orch_kwargs),
        server=ServerConfig(base_url="http://agent-server.test", api_key="sk-test"),
        parent=ParentAgentConfig(
            agent_id=parent_agent_id,
            name="primary agent",
            model_handle=parent_model,
        ),
        permissions=PermissionConfig(mode="default", allowed_tools=[], disallowed_tools=[]),
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingTracker(StateTracker):
    """Collects every tracker call as a tuple."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def set_model(self, subagent_id, model):
        self.calls.append(("set_model", subagent_id, model))

    def register_identity(self, subagent_id, agent_id, conversation_id):
        self.calls.append(("register_identity", subagent_id, agent_id, conversation_id))

    def add_tool_call(self, subagent_id, tool_call_id, name, args):
        self.calls.append(("add_tool_call", subagent_id, tool_call_id, name, args))

    def update_tool_call(self, subagent_id, tool_call_id, name, args):
        self.calls.append(("update_tool_call", subagent_id, tool_call_id, name, args))

    def update_stats(self, subagent_id, total_tokens, duration_ms):
        self.calls.append(("update_stats", subagent_id, total_tokens, duration_ms))

    def named(self, method: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == method]


class ExplodingTracker(StateTracker):
    """Every call fails; results must not change."""

    def __getattribute__(self, name: str) -> Any:
        if name.startswith("_"):
            return object.__getattribute__(self, name)

        def _boom(*args: Any) -> None:
            raise RuntimeError(f"tracker down: {name}")

        return _boom


class FakeServer:
    """Async stand-in for ServerClient."""

    def __init__(
        self,
        resolution: Optional[ModelResolution] = None,
        agents: Optional[dict[str, AgentRecord]] = None,
        handles: Optional[set[str]] = None,
        fail_resolve: bool = False,
    ):
        self.resolution = resolution
        self.agents = agents or {}
        self.handles = handles or set()
        self.fail_resolve = fail_resolve
        self.resolve_calls: list[tuple[list[str], Optional[str]]] = []

    async def resolve_model_selector(self, selector, parent_model_handle=None):
        self.resolve_calls.append((list(selector), parent_model_handle))
        if self.fail_resolve or self.resolution is None:
            raise ConnectionError("resolver unreachable")
        return self.resolution

    async def retrieve_agent(self, agent_id):
        if agent_id not in self.agents:
            raise LookupError(f"no agent {agent_id}")
        return self.agents[agent_id]

    async def list_model_handles(self):
        return set(self.handles)

    async def close(self):
        pass


def agent_record(agent_id: str, name: str = "", handle: Optional[str] = None) -> AgentRecord:
    return AgentRecord(id=agent_id, name=name, llm_config=LlmConfig(handle=handle))


Step = Union[AttemptOutcome, SubagentResult, Callable[[AttemptRequest], Any]]


def ok(report: str = "done", agent_id: str = "agent-1", **kwargs: Any) -> AttemptOutcome:
    return AttemptOutcome(
        result=SubagentResult(agent_id=agent_id, report=report, success=True, **kwargs),
        exit_code=0,
    )


def failed(
    stderr: str,
    agent_id: str = "",
    conversation_id: Optional[str] = None,
    exit_code: int = 1,
) -> AttemptOutcome:
    return AttemptOutcome(
        result=SubagentResult(
            agent_id=agent_id,
            conversation_id=conversation_id,
            error=stderr,
        ),
        exit_code=exit_code,
        stderr=stderr,
    )


class FakeExecutor(AttemptExecutorBase):
    """Replays scripted outcomes and records every request it was given.

    A step may be an AttemptOutcome, or an async/sync callable taking the
    request (and the cancel event) and returning one.
    """

    def __init__(self, *steps: Step):
        self._steps = list(steps)
        self.requests: list[AttemptRequest] = []

    @property
    def models(self) -> list[Optional[str]]:
        return [r.model for r in self.requests]

    async def run(self, request, cancel_event=None, on_progress=None):
        if cancel_event is not None and cancel_event.is_set():
            return AttemptOutcome(result=interrupted_result(), interrupted=True)
        self.requests.append(request)
        if not self._steps:
            raise AssertionError(f"unexpected attempt #{len(self.requests)}")
        step = self._steps.pop(0)
        if callable(step):
            step = step(request, cancel_event)
            if asyncio.iscoroutine(step):
                step = await step
        return step


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def config() -> TaskforkConfig:
    return make_config()


@pytest.fixture()
def tracker() -> RecordingTracker:
    return RecordingTracker()


def build_engine(
    config: TaskforkConfig,
    server: Any = None,
    tracker: Optional[StateTracker] = None,
    registry: Optional[SubagentRegistry] = None,
) -> EngineContext:
    return EngineContext(
        config=config,
        registry=registry or SubagentRegistry(),
        permissions=PermissionView(config.permissions),
        directory=ParentAgentDirectory(config.parent, server=server),
        tracker=tracker or StateTracker(),
        resolver=ModelSelectorResolver(server=server),
        event_bus=None,
        server=server,
    )


@pytest.fixture()
def engine(config, tracker) -> EngineContext:
    return build_engine(config, tracker=tracker)
