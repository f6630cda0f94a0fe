"""
Subagent Registry — The Catalog of Worker Types.

Holds every ``SubagentConfig`` the engine can spawn: the built-in types plus
any custom ones registered at runtime. Reads are lock-free against an
immutable snapshot. Writes go through a single-writer gate and publish a new
snapshot together with an incremented generation number, so readers always
see either the old set or the new one, never a mix.

``wait_ready()`` blocks until the first publication, which lets the facade
start before custom types have finished loading.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from types import MappingProxyType
from typing import AsyncIterator, Iterable, Mapping, Optional

import structlog

from taskfork.orchestration.models import SubagentConfig

logger = structlog.get_logger(__name__)

READ_ONLY_TOOLS = ["Read", "Glob", "Grep"]

BUILTIN_SUBAGENTS: tuple[SubagentConfig, ...] = (
    SubagentConfig(
        name="explore",
        description="Fast read-only codebase exploration: find files, trace symbols, answer questions.",
        recommended_model="group:fast",
        model_selector=["group:fast", "inherit", "any"],
        allowed_tools=READ_ONLY_TOOLS,
        memory_blocks="none",
    ),
    SubagentConfig(
        name="general-purpose",
        description="Multi-step research and implementation tasks with the full local toolset.",
        recommended_model="inherit",
        model_selector=["group:strong", "inherit", "any"],
    ),
    SubagentConfig(
        name="plan",
        description="Design an implementation plan without modifying files.",
        recommended_model="group:planning",
        model_selector=["group:planning", "group:strong", "inherit", "any"],
        allowed_tools=READ_ONLY_TOOLS,
        permission_mode="plan",
    ),
)


class SubagentRegistry:
    """Versioned, single-writer store of subagent types."""

    def __init__(
        self,
        builtins: Optional[Iterable[SubagentConfig]] = BUILTIN_SUBAGENTS,
        defer_ready: bool = False,
    ):
        self._snapshot: Mapping[str, SubagentConfig] = MappingProxyType({})
        self._generation = 0
        self._write_lock = asyncio.Lock()
        self._ready = asyncio.Condition()
        self._is_ready = False
        if builtins is not None:
            self._publish({c.name: c for c in builtins}, mark_ready=not defer_ready)

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_ready(self) -> bool:
        return self._is_ready

    def get(self, name: str) -> Optional[SubagentConfig]:
        return self._snapshot.get(name)

    def snapshot(self) -> Mapping[str, SubagentConfig]:
        """The current immutable set of types."""
        return self._snapshot

    def names(self) -> list[str]:
        return sorted(self._snapshot)

    @asynccontextmanager
    async def updating(self) -> AsyncIterator[dict[str, SubagentConfig]]:
        """Exclusive write session.

        Yields a private copy of the current set. Changes become visible all
        at once when the block exits without raising.
        """
        async with self._write_lock:
            draft = dict(self._snapshot)
            yield draft
            self._publish(draft)
            await self._notify_ready()

    async def register(self, *configs: SubagentConfig) -> int:
        """Add or replace types. Returns the new generation."""
        async with self.updating() as draft:
            for config in configs:
                draft[config.name] = config
        logger.info(
            "registry.registered",
            names=[c.name for c in configs],
            generation=self._generation,
        )
        return self._generation

    async def unregister(self, name: str) -> bool:
        async with self.updating() as draft:
            removed = draft.pop(name, None) is not None
        return removed

    async def mark_ready(self) -> None:
        """Declare the initial load finished without changing the set."""
        async with self._write_lock:
            await self._notify_ready()

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait for the first publication. Returns False on timeout."""
        if self._is_ready:
            return True
        async with self._ready:
            try:
                await asyncio.wait_for(
                    self._ready.wait_for(lambda: self._is_ready), timeout=timeout
                )
            except asyncio.TimeoutError:
                return False
        return True

    # ---- Internal Methods ----

    def _publish(self, configs: dict[str, SubagentConfig], mark_ready: bool = True) -> None:
        self._snapshot = MappingProxyType(dict(configs))
        self._generation += 1
        if mark_ready:
            self._is_ready = True

    async def _notify_ready(self) -> None:
        self._is_ready = True
        async with self._ready:
            self._ready.notify_all()
