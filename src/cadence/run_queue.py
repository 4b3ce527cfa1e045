"""Per-context FIFO that serializes runs within each conversation context.

asyncio.ensure_future doesn't run the coroutine synchronously up to the
first await, so ``enqueue`` eagerly marks the context active in the
synchronous caller and the drain happens in the async ``finally`` block.
A failed run settles its own future and never blocks the next one.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from cadence.logger import logger

RunFn: TypeAlias = Callable[[], Awaitable[Any]]


@dataclass
class QueuedRun:
    fn: RunFn
    future: asyncio.Future[Any]


@dataclass
class ContextQueue:
    active: bool = False
    pending: deque[QueuedRun] = field(default_factory=deque)
    completed: int = 0


class RunQueue:
    """Strict submission-order execution per key; keys run concurrently."""

    def __init__(self) -> None:
        self._contexts: dict[str, ContextQueue] = {}
        self._shutting_down = False

    def _get(self, key: str) -> ContextQueue:
        if key not in self._contexts:
            self._contexts[key] = ContextQueue()
        return self._contexts[key]

    def enqueue(self, key: str, fn: RunFn) -> asyncio.Future[Any]:
        """Queue *fn* behind everything already submitted for *key*.

        Returns a future settled with *fn*'s result or exception.
        """
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        if self._shutting_down:
            future.set_exception(RuntimeError("RunQueue is shutting down"))
            return future

        state = self._get(key)
        item = QueuedRun(fn=fn, future=future)

        if state.active:
            state.pending.append(item)
            logger.debug("Run active, request queued", context=key, depth=len(state.pending))
            return future

        # Eagerly mark as active before scheduling the coroutine
        state.active = True
        asyncio.ensure_future(self._run(key, item))
        return future

    def is_active(self, key: str) -> bool:
        state = self._contexts.get(key)
        return bool(state and state.active)

    def depth(self, key: str) -> int:
        """Number of runs waiting behind the active one for *key*."""
        state = self._contexts.get(key)
        return len(state.pending) if state else 0

    def snapshot(self) -> dict[str, dict[str, object]]:
        """Read-only view of queue state for status reporting."""
        return {
            key: {"active": s.active, "pending": len(s.pending), "completed": s.completed}
            for key, s in self._contexts.items()
        }

    async def _run(self, key: str, item: QueuedRun) -> None:
        """State is already marked active by the caller. We only clean up in finally."""
        state = self._get(key)
        try:
            result = await item.fn()
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as exc:
            logger.debug("Queued run failed", context=key, error_type=type(exc).__name__)
            if not item.future.done():
                item.future.set_exception(exc)
        else:
            if not item.future.done():
                item.future.set_result(result)
        finally:
            state.completed += 1
            state.active = False
            self._drain(key)

    def _drain(self, key: str) -> None:
        """After a run finishes, start the next pending run for this key."""
        state = self._get(key)
        if self._shutting_down or not state.pending:
            return
        item = state.pending.popleft()
        state.active = True
        asyncio.ensure_future(self._run(key, item))

    def shutdown(self) -> None:
        """Stop accepting runs and cancel everything not yet started."""
        self._shutting_down = True
        dropped = 0
        for state in self._contexts.values():
            while state.pending:
                item = state.pending.popleft()
                if not item.future.done():
                    item.future.cancel()
                dropped += 1
        logger.info("RunQueue shutdown", dropped=dropped)
