"""Lightweight asyncio event bus for run lifecycle notifications.

Presentation layers subscribe here instead of polling the orchestrator.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, TypeAlias

from cadence.logger import logger

# --- Event types ---


@dataclass
class RunActivityEvent:
    """A run started or finished for a context."""

    context: str
    active: bool
    autonomous: bool


@dataclass
class TextUpdateEvent:
    """The agent's running text changed mid-run."""

    context: str
    text: str


Event: TypeAlias = RunActivityEvent | TextUpdateEvent
Listener: TypeAlias = Callable[[Any], Coroutine[Any, Any, None]]


class EventBus:
    """Fire-and-forget async event dispatcher."""

    def __init__(self) -> None:
        self._listeners: defaultdict[type, list[Listener]] = defaultdict(list)

    def subscribe(self, event_type: type, listener: Listener) -> Callable[[], None]:
        """Subscribe to an event type. Returns an unsubscribe function."""
        self._listeners[event_type].append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners[event_type].remove(listener)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        """Emit an event to all subscribers. Non-blocking, fire-and-forget."""
        for listener in self._listeners[type(event)]:
            asyncio.ensure_future(_safe_call(listener, event))


async def _safe_call(listener: Listener, event: Event) -> None:
    try:
        await listener(event)
    except Exception as exc:
        logger.warning("EventBus listener error", err=str(exc), event=type(event).__name__)
