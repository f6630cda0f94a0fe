"""
Engine Context — Everything the Engine Depends On, Passed Explicitly.

One ``EngineContext`` is built per process (or per test) and handed to the
Orchestrator. It owns the lifecycle of the pieces that hold resources: the
event bus dispatcher and the HTTP client.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import structlog

from taskfork.api.server import ServerClient
from taskfork.config import TaskforkConfig
from taskfork.events import EventBus
from taskfork.orchestration.collaborators import (
    EventBusStateTracker,
    ParentAgentDirectory,
    PermissionView,
    StateTracker,
)
from taskfork.orchestration.registry import SubagentRegistry
from taskfork.orchestration.selector import ModelSelectorResolver

logger = structlog.get_logger(__name__)


@dataclass
class EngineContext:
    config: TaskforkConfig
    registry: SubagentRegistry
    permissions: PermissionView
    directory: ParentAgentDirectory
    tracker: StateTracker
    resolver: ModelSelectorResolver
    event_bus: Optional[EventBus] = None
    server: Any = None  # ServerClient

    async def start(self) -> None:
        if self.event_bus is not None:
            await self.event_bus.start()
        logger.info(
            "engine.started",
            subagent_types=self.registry.names(),
            server=self.server is not None,
        )

    async def close(self) -> None:
        if self.event_bus is not None:
            await self.event_bus.stop()
        if self.server is not None:
            await self.server.close()
        logger.info("engine.closed")

    async def __aenter__(self) -> "EngineContext":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


def create_context(
    config: Optional[TaskforkConfig] = None,
    use_server: bool = True,
    registry: Optional[SubagentRegistry] = None,
) -> EngineContext:
    """Wire a context from configuration.

    With ``use_server=False`` no network collaborator is created; model
    selection falls back locally and the parent is described by config alone.
    """
    config = config or TaskforkConfig()
    server = ServerClient(config.server) if use_server else None
    event_bus = EventBus()
    return EngineContext(
        config=config,
        registry=registry or SubagentRegistry(),
        permissions=PermissionView(config.permissions),
        directory=ParentAgentDirectory(config.parent, server=server),
        tracker=EventBusStateTracker(event_bus),
        resolver=ModelSelectorResolver(
            server=server, default_model=config.orchestration.default_model
        ),
        event_bus=event_bus,
        server=server,
    )
