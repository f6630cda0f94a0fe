"""
Engine Collaborators — Narrow Views onto the Rest of the Harness.

The engine reads parent permissions, asks who the parent agent is, and reports
what its children are doing. None of these concerns belong to the engine, so
each one is a small object handed in through ``EngineContext``:

  PermissionView        parent permission mode, allow/deny patterns, and the
                        session allow rules approved during this process
  ParentAgentDirectory  the parent's model handle and display name, plus the
                        model label of an agent a task is deployed onto
  StateTracker          where progress is recorded for a UI; failures here
                        are logged and never change a subagent's result
"""

from __future__ import annotations

from typing import Any, Optional

import structlog

from taskfork.config import ParentAgentConfig, PermissionConfig
from taskfork.events import (
    SubagentIdentityEvent,
    SubagentModelSelectedEvent,
    SubagentStatsEvent,
    SubagentToolCalledEvent,
    SubagentToolUpdatedEvent,
)
from taskfork.orchestration.selector import model_handle_from_agent

logger = structlog.get_logger(__name__)


class PermissionView:
    """Read-mostly view of the parent's permission state."""

    def __init__(self, config: PermissionConfig):
        self._config = config
        self._session_allow_rules: list[str] = []

    def get_mode(self) -> str:
        return self._config.mode

    def get_allowed_tools(self) -> list[str]:
        return list(self._config.allowed_tools)

    def get_disallowed_tools(self) -> list[str]:
        return list(self._config.disallowed_tools)

    def get_session_allow_rules(self) -> list[str]:
        return list(self._session_allow_rules)

    def add_session_allow_rule(self, rule: str) -> None:
        """Record a rule the user approved for the rest of this session."""
        rule = rule.strip()
        if rule and rule not in self._session_allow_rules:
            self._session_allow_rules.append(rule)


class ParentAgentDirectory:
    """Looks up agent records, preferring the server and falling back to config."""

    def __init__(self, config: ParentAgentConfig, server: Any = None):
        self._config = config
        self._server = server  # ServerClient, optional

    @property
    def parent_agent_id(self) -> Optional[str]:
        return self._config.agent_id

    async def get_parent_model_handle(self) -> Optional[str]:
        if self._server is not None and self._config.agent_id:
            try:
                agent = await self._server.retrieve_agent(self._config.agent_id)
                handle = model_handle_from_agent(agent)
                if handle:
                    return handle
            except Exception as exc:
                logger.debug("directory.parent_lookup_failed", error=str(exc))
        return self._config.model_handle

    async def get_parent_name(self) -> Optional[str]:
        """Parent display name. None when the parent id is unknown."""
        if not self._config.agent_id:
            return None
        if self._server is not None:
            try:
                agent = await self._server.retrieve_agent(self._config.agent_id)
                if agent.name:
                    return agent.name
            except Exception as exc:
                logger.debug("directory.parent_name_lookup_failed", error=str(exc))
        return self._config.name

    async def get_agent_model_label(self, agent_id: str) -> Optional[str]:
        """Display-only model of an existing agent. Best effort."""
        if self._server is None or not agent_id:
            return None
        try:
            agent = await self._server.retrieve_agent(agent_id)
        except Exception as exc:
            logger.debug("directory.agent_lookup_failed", agent_id=agent_id, error=str(exc))
            return None
        return model_handle_from_agent(agent)


class StateTracker:
    """Receives progress for one or more subagents. Default: ignore everything."""

    def set_model(self, subagent_id: str, model: str) -> None:
        pass

    def register_identity(
        self,
        subagent_id: str,
        agent_id: Optional[str],
        conversation_id: Optional[str],
    ) -> None:
        pass

    def add_tool_call(self, subagent_id: str, tool_call_id: str, name: str, args: str) -> None:
        pass

    def update_tool_call(
        self, subagent_id: str, tool_call_id: str, name: str, args: str
    ) -> None:
        pass

    def update_stats(self, subagent_id: str, total_tokens: int, duration_ms: int) -> None:
        pass


class EventBusStateTracker(StateTracker):
    """Publishes every tracker call as a typed event on the bus."""

    def __init__(self, event_bus: Any):
        self._bus = event_bus  # EventBus

    def set_model(self, subagent_id: str, model: str) -> None:
        self._bus.emit(SubagentModelSelectedEvent(subagent_id=subagent_id, model=model))

    def register_identity(
        self,
        subagent_id: str,
        agent_id: Optional[str],
        conversation_id: Optional[str],
    ) -> None:
        self._bus.emit(
            SubagentIdentityEvent(
                subagent_id=subagent_id,
                agent_id=agent_id,
                conversation_id=conversation_id,
            )
        )

    def add_tool_call(self, subagent_id: str, tool_call_id: str, name: str, args: str) -> None:
        self._bus.emit(
            SubagentToolCalledEvent(
                subagent_id=subagent_id,
                tool_call_id=tool_call_id,
                tool_name=name,
                arguments=args,
            )
        )

    def update_tool_call(
        self, subagent_id: str, tool_call_id: str, name: str, args: str
    ) -> None:
        self._bus.emit(
            SubagentToolUpdatedEvent(
                subagent_id=subagent_id,
                tool_call_id=tool_call_id,
                tool_name=name,
                arguments=args,
            )
        )

    def update_stats(self, subagent_id: str, total_tokens: int, duration_ms: int) -> None:
        self._bus.emit(
            SubagentStatsEvent(
                subagent_id=subagent_id,
                total_tokens=total_tokens,
                duration_ms=duration_ms,
            )
        )
