"""One-shot callbacks the agent asks for with ``[CALLBACK: delay: prompt]``.

Each callback arms its own timer. A fired timer drops itself from the
per-context tracking list and puts a :class:`CallbackFire` on the work
queue; the worker runs each fire as its own task so a slow agent run never
holds up other contexts. A callback whose output asks for more callbacks
schedules them one hop deeper, forming a chain.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from cadence.config import get_settings
from cadence.logger import logger
from cadence.orchestrator import Orchestrator
from cadence.presenter import Presenter
from cadence.rate_limit import failure_detail, is_rate_limited
from cadence.types import ContextKey, RunRequest, ScheduledCallback
from cadence.utils import create_background_task


@dataclass
class CallbackFire:
    key: ContextKey
    callback: ScheduledCallback
    surface_name: str
    hop: int


@dataclass
class _PendingCallback:
    fire: CallbackFire
    handle: asyncio.TimerHandle | None = None


class CallbackScheduler:
    def __init__(
        self,
        orchestrator: Orchestrator,
        presenter: Presenter,
        *,
        max_hops: int | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._presenter = presenter
        self._max_hops = max_hops if max_hops is not None else get_settings().callbacks.max_hops
        self._pending: dict[str, list[_PendingCallback]] = {}
        self._fires: asyncio.Queue[CallbackFire] = asyncio.Queue()
        self._worker: asyncio.Task[Any] | None = None
        self._inflight: set[asyncio.Task[Any]] = set()
        # pending timers + queued fires + running fires
        self._outstanding = 0
        self._idle = asyncio.Event()
        self._idle.set()

    # --- Public API ---

    def schedule(
        self,
        key: ContextKey,
        callbacks: Iterable[ScheduledCallback],
        surface_name: str = "default",
        hop: int = 0,
    ) -> int:
        """Arm one timer per callback. Returns how many were armed.

        *hop* is 0 for callbacks from a human or heartbeat run and grows by
        one per chained callback; chains deeper than ``max_hops`` are dropped.
        """
        callbacks = list(callbacks)
        if not callbacks:
            return 0
        if self._max_hops is not None and hop > self._max_hops:
            logger.warning(
                "Callback chain depth limit reached, dropping",
                context=str(key),
                hop=hop,
                dropped=len(callbacks),
            )
            return 0

        self._ensure_worker()
        loop = asyncio.get_running_loop()
        entries = self._pending.setdefault(str(key), [])
        for cb in callbacks:
            entry = _PendingCallback(CallbackFire(key, cb, surface_name, hop))
            entry.handle = loop.call_later(cb.delay_ms / 1000, self._on_timer, entry)
            entries.append(entry)
            self._acquire()
            logger.info(
                "Callback scheduled",
                context=str(key),
                delay_ms=cb.delay_ms,
                hop=hop,
                prompt=cb.prompt[:80],
            )
        return len(callbacks)

    def pending(self, key: ContextKey) -> list[ScheduledCallback]:
        return [e.fire.callback for e in self._pending.get(str(key), [])]

    def cancel(self, key: ContextKey) -> int:
        """Disarm every pending timer for *key*. Fires already queued still run."""
        entries = self._pending.pop(str(key), [])
        for entry in entries:
            if entry.handle is not None:
                entry.handle.cancel()
            self._release()
        if entries:
            logger.info("Callbacks cancelled", context=str(key), count=len(entries))
        return len(entries)

    async def wait_idle(self) -> None:
        """Block until no timer is pending and no fire is queued or running."""
        await self._idle.wait()

    def shutdown(self) -> None:
        for key in list(self._pending):
            entries = self._pending.pop(key)
            for entry in entries:
                if entry.handle is not None:
                    entry.handle.cancel()
        if self._worker is not None:
            self._worker.cancel()
            self._worker = None
        for task in list(self._inflight):
            task.cancel()
        self._outstanding = 0
        self._idle.set()
        logger.info("Callback scheduler shutdown complete")

    # --- Internals ---

    def _acquire(self) -> None:
        self._outstanding += 1
        self._idle.clear()

    def _release(self) -> None:
        self._outstanding = max(0, self._outstanding - 1)
        if self._outstanding == 0:
            self._idle.set()

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = create_background_task(self._work(), name="callback-worker")

    def _on_timer(self, entry: _PendingCallback) -> None:
        key = str(entry.fire.key)
        entries = self._pending.get(key, [])
        if entry in entries:
            entries.remove(entry)
        if not entries:
            self._pending.pop(key, None)
        entry.handle = None
        self._fires.put_nowait(entry.fire)

    async def _work(self) -> None:
        while True:
            fire = await self._fires.get()
            task = create_background_task(self._run(fire), name=f"callback-{fire.key}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            self._fires.task_done()

    async def _run(self, fire: CallbackFire) -> None:
        key = fire.key
        logger.info("Callback fired", context=str(key), hop=fire.hop)
        request = RunRequest(
            context=key,
            prompt=fire.callback.prompt,
            surface_name=fire.surface_name,
            is_autonomous=True,
        )
        try:
            result = await self._orchestrator.submit(request)
            if result.is_error and is_rate_limited(result.text):
                # Consumed either way; only heartbeats back off
                logger.warning("Callback hit rate limit, not retrying", context=str(key))
                await self._notify(key, f"Callback skipped, provider rate limit: {result.text}")
                return
            if result.text or result.attachments:
                await self._presenter.present(key, result, "callback")
            if result.callbacks:
                self.schedule(key, result.callbacks, fire.surface_name, hop=fire.hop + 1)
        except Exception as exc:
            detail = failure_detail(exc)
            if is_rate_limited(detail):
                logger.warning("Callback hit rate limit, not retrying", context=str(key))
                await self._notify(key, "Callback skipped, provider rate limit reached.")
            else:
                logger.exception("Callback run failed", context=str(key))
                await self._notify(key, f"Callback error: {exc}")
        finally:
            self._release()

    async def _notify(self, key: ContextKey, text: str) -> None:
        try:
            await self._presenter.notify(key, text)
        except Exception as exc:
            logger.warning("Failed to deliver callback notice", context=str(key), err=str(exc))
