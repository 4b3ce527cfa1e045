"""Recurring autonomous runs per context, with rate-limit backoff.

Only the heartbeat *config* is persisted; timers are rebuilt from it by
:meth:`HeartbeatScheduler.restore` at startup. Each tick re-reads the
snapshot, so disabling the heartbeat anywhere stops the loop at its next
tick. Every other outcome, including an unexpected exception, arms exactly
one new timer.

Ticks go through the same per-context queue as human runs: a tick that
fires while a human run is in flight waits behind it instead of skipping.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from cadence.callbacks import CallbackScheduler
from cadence.config import get_settings
from cadence.logger import logger
from cadence.orchestrator import Orchestrator
from cadence.presenter import Presenter
from cadence.prompts import wrap_heartbeat_prompt
from cadence.rate_limit import backoff_ms, failure_detail, is_rate_limited
from cadence.state import SessionStore
from cadence.types import ContextKey, ContextRecord, HeartbeatConfig, RunRequest, UsageLimit
from cadence.utils import create_background_task


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class HeartbeatTimer:
    key: ContextKey
    interval_ms: int
    surface_name: str
    handle: asyncio.TimerHandle | None = None


class HeartbeatScheduler:
    def __init__(
        self,
        orchestrator: Orchestrator,
        store: SessionStore,
        presenter: Presenter,
        callbacks: CallbackScheduler | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store
        self._presenter = presenter
        self._callbacks = callbacks
        self._timers: dict[str, HeartbeatTimer] = {}
        self.last_usage_limit: UsageLimit | None = None

    # --- Timer control ---

    def start(self, key: ContextKey, interval_ms: int, surface_name: str = "default") -> None:
        """(Re)arm the timer for *key*; the first tick is *interval_ms* from now."""
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.stop(key)
        timer = HeartbeatTimer(key=key, interval_ms=interval_ms, surface_name=surface_name)
        self._timers[str(key)] = timer
        self._arm(timer, interval_ms)
        logger.info("Heartbeat started", context=str(key), interval_ms=interval_ms)

    def stop(self, key: ContextKey) -> bool:
        timer = self._timers.pop(str(key), None)
        if timer is None:
            return False
        if timer.handle is not None:
            timer.handle.cancel()
        logger.info("Heartbeat stopped", context=str(key))
        return True

    def stop_all(self) -> None:
        for timer in self._timers.values():
            if timer.handle is not None:
                timer.handle.cancel()
        self._timers.clear()
        logger.info("All heartbeats stopped")

    def reset_timer(self, key: ContextKey) -> bool:
        """Restart the countdown from now (human activity keeps heartbeats to idle time)."""
        timer = self._timers.get(str(key))
        if timer is None:
            return False
        self._arm(timer, timer.interval_ms)
        return True

    def is_active(self, key: ContextKey) -> bool:
        return str(key) in self._timers

    def time_remaining_ms(self, key: ContextKey) -> int | None:
        """Milliseconds until the next tick, or None when no timer is armed."""
        timer = self._timers.get(str(key))
        if timer is None or timer.handle is None:
            return None
        remaining = timer.handle.when() - asyncio.get_running_loop().time()
        return max(0, int(remaining * 1000))

    async def fire_now(self, key: ContextKey) -> bool:
        """Run a tick immediately; the regular countdown restarts after it."""
        record = await self._store.get(key)
        hb = record.heartbeat if record else None
        if record is None or hb is None or not hb.enabled:
            return False
        timer = self._timers.get(str(key))
        if timer is None:
            timer = HeartbeatTimer(key=key, interval_ms=hb.interval_ms, surface_name=record.surface_name)
            self._timers[str(key)] = timer
        if timer.handle is not None:
            timer.handle.cancel()
            timer.handle = None
        create_background_task(self._tick(timer), name=f"heartbeat-{key}")
        return True

    def restore(self, records: Iterable[ContextRecord]) -> int:
        """Arm timers for every record whose heartbeat is enabled. Call once at startup."""
        restored = 0
        for record in records:
            hb = record.heartbeat
            if hb is None or not hb.enabled or hb.interval_ms <= 0:
                continue
            self.start(record.key, hb.interval_ms, record.surface_name)
            restored += 1
        logger.info("Heartbeats restored", count=restored)
        return restored

    async def record_usage_limit(
        self,
        key: ContextKey,
        text: str,
        delay_ms: int,
        *,
        detected_at: datetime | None = None,
    ) -> UsageLimit:
        """Remember a rate-limit hit from any run on *key* and persist it for `usage`."""
        limit = UsageLimit(
            context=str(key),
            detected_at=detected_at or _now(),
            delay_ms=delay_ms,
            message=text[:500],
        )
        self.last_usage_limit = limit
        try:
            await self._store.set_usage_limit(limit)
        except OSError as exc:
            logger.warning("Failed to persist usage limit", context=str(key), err=str(exc))
        return limit

    # --- Persisted enablement ---

    async def enable(
        self,
        key: ContextKey,
        prompt: str,
        *,
        interval_ms: int | None = None,
        surface_name: str = "default",
    ) -> HeartbeatConfig:
        if interval_ms is None:
            interval_ms = get_settings().heartbeat.default_interval_minutes * 60_000
        await self._store.get_or_create(key, surface_name)
        config = HeartbeatConfig(enabled=True, interval_ms=interval_ms, prompt=prompt)
        await self._store.set_heartbeat(key, config)
        self.start(key, interval_ms, surface_name)
        return config

    async def disable(self, key: ContextKey) -> None:
        await self._store.set_heartbeat(key, None)
        self.stop(key)

    # --- Tick ---

    def _arm(self, timer: HeartbeatTimer, delay_ms: int) -> None:
        if timer.handle is not None:
            timer.handle.cancel()
        loop = asyncio.get_running_loop()
        timer.handle = loop.call_later(delay_ms / 1000, self._on_timer, timer)

    def _on_timer(self, timer: HeartbeatTimer) -> None:
        timer.handle = None
        if self._timers.get(str(timer.key)) is not timer:
            return
        create_background_task(self._tick(timer), name=f"heartbeat-{timer.key}")

    async def _tick(self, timer: HeartbeatTimer) -> None:
        key = timer.key
        delay_ms = timer.interval_ms
        try:
            record = await self._store.get(key)
            hb = record.heartbeat if record else None
            if hb is None or not hb.enabled:
                logger.info("Heartbeat no longer enabled, stopping", context=str(key))
                if self._timers.get(str(key)) is timer:
                    del self._timers[str(key)]
                return
            if hb.prompt.strip():
                delay_ms = await self._run(timer, hb.prompt)
            else:
                logger.debug("Heartbeat skipped, no prompt configured", context=str(key))
        except Exception as exc:
            logger.exception("Heartbeat tick failed", context=str(key))
            await self._notify(key, f"Heartbeat error: {exc}")

        if self._timers.get(str(key)) is timer:
            self._arm(timer, delay_ms)

    async def _run(self, timer: HeartbeatTimer, prompt: str) -> int:
        """Submit one autonomous run; return the delay until the next tick."""
        key = timer.key
        sentinel = get_settings().heartbeat.no_work_sentinel
        request = RunRequest(
            context=key,
            prompt=wrap_heartbeat_prompt(prompt, sentinel),
            surface_name=timer.surface_name,
            is_autonomous=True,
        )
        logger.info("Heartbeat tick, running prompt", context=str(key))
        try:
            result = await self._orchestrator.submit(request)
        except Exception as exc:
            detail = failure_detail(exc)
            if is_rate_limited(detail):
                return await self._back_off(timer, detail)
            raise

        if result.is_error and is_rate_limited(result.text):
            return await self._back_off(timer, result.text)

        if result.text.strip() == sentinel:
            logger.info("Heartbeat completed, no work to do", context=str(key))
            return timer.interval_ms

        if result.text or result.attachments:
            await self._presenter.present(key, result, "heartbeat")
        if result.callbacks and self._callbacks is not None:
            self._callbacks.schedule(key, result.callbacks, timer.surface_name)
        logger.info(
            "Heartbeat completed",
            context=str(key),
            is_error=result.is_error,
            duration_ms=result.duration_ms,
            cost_usd=result.cost_usd,
            files=len(result.created_files),
        )
        return timer.interval_ms

    async def _back_off(self, timer: HeartbeatTimer, text: str) -> int:
        now = _now()
        delay_ms = backoff_ms(text, timer.interval_ms, now=now)
        await self.record_usage_limit(timer.key, text, delay_ms, detected_at=now)
        minutes = max(1, math.ceil(delay_ms / 60_000))
        logger.warning("Heartbeat rate limited, backing off", context=str(timer.key), delay_ms=delay_ms)
        await self._notify(timer.key, f"Heartbeat delayed by provider rate limit, resuming in ~{minutes} minutes.")
        return delay_ms

    async def _notify(self, key: ContextKey, text: str) -> None:
        try:
            await self._presenter.notify(key, text)
        except Exception as exc:
            logger.warning("Failed to deliver heartbeat notice", context=str(key), err=str(exc))
