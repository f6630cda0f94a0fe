"""Tests for taskfork.events — EventBus, subagent events, and the bus-backed tracker."""

from __future__ import annotations

import pytest

from taskfork.events import (
    EventBus,
    SubagentCompletedEvent,
    SubagentIdentityEvent,
    SubagentModelSelectedEvent,
    SubagentRetryEvent,
    SubagentStatsEvent,
    SubagentToolCalledEvent,
    SubagentToolUpdatedEvent,
    TaskforkEvent,
)
from taskfork.orchestration.collaborators import EventBusStateTracker
from taskfork.orchestration.models import ModelResolution
from taskfork.orchestration.orchestrator import Orchestrator

from conftest import FakeExecutor, FakeServer, build_engine, failed, make_config, ok


class TestEventType:
    """Tests for automatic event_type derivation from class names."""

    @pytest.mark.parametrize(
        ("event", "expected"),
        [
            (SubagentModelSelectedEvent(subagent_id="s", model="m"), "subagent.model.selected"),
            (SubagentIdentityEvent(subagent_id="s"), "subagent.identity"),
            (
                SubagentToolCalledEvent(subagent_id="s", tool_call_id="t", tool_name="Read"),
                "subagent.tool.called",
            ),
            (SubagentToolUpdatedEvent(subagent_id="s", tool_call_id="t"), "subagent.tool.updated"),
            (SubagentStatsEvent(subagent_id="s"), "subagent.stats"),
            (
                SubagentRetryEvent(subagent_id="s", action="retry_same", failure_kind="x"),
                "subagent.retry",
            ),
            (SubagentCompletedEvent(subagent_id="s", success=True), "subagent.completed"),
        ],
    )
    def test_auto_derived(self, event, expected) -> None:
        assert event.event_type == expected

    def test_explicit_event_type_preserved(self) -> None:
        assert TaskforkEvent(event_type="custom.type").event_type == "custom.type"

    def test_acronym_class_name(self) -> None:
        class HTTPSRequestEvent(TaskforkEvent):
            pass

        assert HTTPSRequestEvent().event_type == "https.request"


class TestEventBus:
    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        bus = EventBus()
        assert not bus.is_running
        await bus.start()
        await bus.start()
        assert bus.is_running
        await bus.stop()
        assert not bus.is_running

    def test_subscribe_and_unsubscribe(self) -> None:
        bus = EventBus()
        sub_id = bus.subscribe("subagent.*", lambda e: None)
        assert len(sub_id) == 12
        assert bus.subscription_count == 1
        bus.unsubscribe(sub_id)
        bus.unsubscribe("nonexistent")
        assert bus.subscription_count == 0

    @pytest.mark.asyncio
    async def test_wildcards_and_order(self) -> None:
        bus = EventBus()
        tools: list[TaskforkEvent] = []
        everything: list[TaskforkEvent] = []
        bus.subscribe("subagent.tool.*", tools.append)
        bus.subscribe("*", everything.append)
        await bus.start()
        try:
            bus.emit(SubagentIdentityEvent(subagent_id="s", agent_id="a"))
            bus.emit(SubagentToolCalledEvent(subagent_id="s", tool_call_id="1", tool_name="Read"))
            bus.emit(SubagentToolUpdatedEvent(subagent_id="s", tool_call_id="1", arguments="{}"))
            await bus.drain()
        finally:
            await bus.stop()

        assert [e.event_type for e in tools] == ["subagent.tool.called", "subagent.tool.updated"]
        assert [e.event_type for e in everything] == [
            "subagent.identity",
            "subagent.tool.called",
            "subagent.tool.updated",
        ]

    @pytest.mark.asyncio
    async def test_handler_error_isolated(self) -> None:
        bus = EventBus()
        received: list[TaskforkEvent] = []

        def bad_handler(event: TaskforkEvent) -> None:
            raise ValueError("handler crashed")

        bus.subscribe("*", bad_handler)
        bus.subscribe("*", received.append)
        await bus.start()
        try:
            await bus.emit_async(SubagentStatsEvent(subagent_id="s", total_tokens=5))
        finally:
            await bus.stop()
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_async_handler(self) -> None:
        bus = EventBus()
        received: list[str] = []

        async def handler(event: TaskforkEvent) -> None:
            received.append(event.event_type)

        bus.subscribe("subagent.completed", handler)
        await bus.start()
        try:
            await bus.emit_async(SubagentCompletedEvent(subagent_id="s", success=True))
        finally:
            await bus.stop()
        assert received == ["subagent.completed"]

    @pytest.mark.asyncio
    async def test_emit_async_on_stopped_bus_raises(self) -> None:
        with pytest.raises(RuntimeError):
            await EventBus().emit_async(SubagentStatsEvent(subagent_id="s"))

    def test_queue_full_drops_event(self) -> None:
        bus = EventBus(max_queue_size=1)
        bus.emit(SubagentStatsEvent(subagent_id="s"))
        bus.emit(SubagentStatsEvent(subagent_id="s"))  # dropped, no error


class TestEventBusStateTracker:
    @pytest.mark.asyncio
    async def test_tracker_calls_become_events(self) -> None:
        bus = EventBus()
        received: list[TaskforkEvent] = []
        bus.subscribe("subagent.*", received.append)
        tracker = EventBusStateTracker(bus)
        await bus.start()
        try:
            tracker.set_model("s", "a/b")
            tracker.register_identity("s", "agent-1", "conv-1")
            tracker.add_tool_call("s", "tc", "Read", "{}")
            tracker.update_tool_call("s", "tc", "Read", '{"x":1}')
            tracker.update_stats("s", 42, 120)
            await bus.drain()
        finally:
            await bus.stop()

        assert [type(e) for e in received] == [
            SubagentModelSelectedEvent,
            SubagentIdentityEvent,
            SubagentToolCalledEvent,
            SubagentToolUpdatedEvent,
            SubagentStatsEvent,
        ]
        assert received[-1].total_tokens == 42


class TestOrchestratorEvents:
    @pytest.mark.asyncio
    async def test_retry_and_completion_events(self) -> None:
        bus = EventBus()
        received: list[TaskforkEvent] = []
        bus.subscribe("subagent.*", received.append)
        server = FakeServer(
            resolution=ModelResolution(resolved_handle="a/1", expansion_chain=["a/1", "a/2"])
        )
        engine = build_engine(make_config(), server=server)
        engine.event_bus = bus
        executor = FakeExecutor(failed("rate limit"), ok("done"))

        async with engine:
            result = await Orchestrator(engine, executor=executor).spawn_subagent(
                "explore", "x", subagent_id="sub-42"
            )
            await bus.drain()

        assert result.success is True
        retry, completed = received
        assert isinstance(retry, SubagentRetryEvent)
        assert retry.action == "advance_chain"
        assert retry.failure_kind == "rate_limited"
        assert retry.model == "a/2"
        assert isinstance(completed, SubagentCompletedEvent)
        assert completed.subagent_id == "sub-42"
        assert completed.success is True
