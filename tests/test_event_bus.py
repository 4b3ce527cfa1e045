"""Tests for the EventBus pub/sub system."""

from __future__ import annotations

import asyncio

import pytest

from cadence.event_bus import EventBus, RunActivityEvent, TextUpdateEvent


@pytest.fixture
def bus() -> EventBus:
    """Create a fresh EventBus for each test."""
    return EventBus()


class TestEventBus:
    async def test_subscribe_and_emit_activity_event(self, bus: EventBus) -> None:
        received: list[RunActivityEvent] = []

        async def listener(event: RunActivityEvent) -> None:
            received.append(event)

        bus.subscribe(RunActivityEvent, listener)

        event = RunActivityEvent(context="chan-1-main", active=True, autonomous=False)
        bus.emit(event)

        # Give event loop time to process
        await asyncio.sleep(0.01)

        assert received == [event]

    async def test_listeners_only_get_their_type(self, bus: EventBus) -> None:
        texts: list[TextUpdateEvent] = []

        async def listener(event: TextUpdateEvent) -> None:
            texts.append(event)

        bus.subscribe(TextUpdateEvent, listener)
        bus.emit(RunActivityEvent(context="c", active=True, autonomous=True))
        bus.emit(TextUpdateEvent(context="c", text="partial"))

        await asyncio.sleep(0.01)

        assert [e.text for e in texts] == ["partial"]

    async def test_unsubscribe(self, bus: EventBus) -> None:
        received: list[TextUpdateEvent] = []

        async def listener(event: TextUpdateEvent) -> None:
            received.append(event)

        unsubscribe = bus.subscribe(TextUpdateEvent, listener)
        unsubscribe()
        unsubscribe()  # second call is harmless
        bus.emit(TextUpdateEvent(context="c", text="x"))

        await asyncio.sleep(0.01)

        assert received == []

    async def test_failing_listener_does_not_affect_others(self, bus: EventBus) -> None:
        received: list[TextUpdateEvent] = []

        async def bad(event: TextUpdateEvent) -> None:
            raise RuntimeError("listener bug")

        async def good(event: TextUpdateEvent) -> None:
            received.append(event)

        bus.subscribe(TextUpdateEvent, bad)
        bus.subscribe(TextUpdateEvent, good)
        bus.emit(TextUpdateEvent(context="c", text="x"))

        await asyncio.sleep(0.01)

        assert len(received) == 1
