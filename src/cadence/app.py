"""Wires the store, orchestrator and both schedulers together.

A chat integration drives :class:`CadenceApp` the same way the CLI does:
``handle_message`` for human input, ``serve`` to keep heartbeats alive.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any

from cadence.callbacks import CallbackScheduler
from cadence.config import get_settings
from cadence.event_bus import EventBus
from cadence.heartbeat import HeartbeatScheduler
from cadence.logger import logger, set_level
from cadence.orchestrator import Orchestrator, TextSink
from cadence.presenter import ConsolePresenter, Presenter
from cadence.rate_limit import backoff_ms, is_rate_limited
from cadence.state import SessionStore, project_directory
from cadence.types import ContextKey, ContextRecord, RunRequest, RunResult


class CadenceApp:
    def __init__(self, presenter: Presenter | None = None, store: SessionStore | None = None) -> None:
        s = get_settings()
        set_level(s.logging.level)
        self.presenter: Presenter = presenter or ConsolePresenter()
        self.store = store or SessionStore(s.state_file)
        self.event_bus = EventBus()
        self.orchestrator = Orchestrator(self.store, event_bus=self.event_bus)
        self.callbacks = CallbackScheduler(self.orchestrator, self.presenter)
        self.heartbeats = HeartbeatScheduler(
            self.orchestrator, self.store, self.presenter, self.callbacks
        )
        self._shutting_down = False
        self._stopped = asyncio.Event()

    async def handle_message(self, request: RunRequest, on_text: TextSink | None = None) -> RunResult:
        """Run a human prompt, then schedule its callbacks and restart idle heartbeats.

        Infrastructure failures propagate to the caller.
        """
        self._touch(request.context)
        result = await self.orchestrator.submit(request, on_text)
        self._touch(request.context)
        if result.is_error and is_rate_limited(result.text):
            interval_ms = get_settings().heartbeat.default_interval_minutes * 60_000
            await self.heartbeats.record_usage_limit(
                request.context, result.text, backoff_ms(result.text, interval_ms)
            )
        if result.callbacks:
            self.callbacks.schedule(request.context, result.callbacks, request.surface_name)
        return result

    def _touch(self, key: ContextKey) -> None:
        self.heartbeats.reset_timer(key)
        if key.is_sub_scope:
            self.heartbeats.reset_timer(ContextKey(key.surface_id))

    # --- Context commands ---

    async def status(self, key: ContextKey) -> dict[str, Any]:
        """Session info plus live run, queue and timer state for *key*."""
        queue = self.orchestrator.status().get(str(key), {})
        info: dict[str, Any] = {
            "context": str(key),
            "running": self.orchestrator.is_busy(key),
            "backend": queue.get("backend"),
            "queued": self.orchestrator.queue_depth(key),
            "active_processes": self.orchestrator.active_count(),
            "pending_callbacks": len(self.callbacks.pending(key)),
            "next_heartbeat_ms": self.heartbeats.time_remaining_ms(key),
            "session": None,
        }
        record = await self.store.get(key)
        if record is not None:
            info["session"] = {
                "session_id": record.session_id,
                "messages": record.message_count,
                "autonomous_runs": record.autonomous_runs,
                "created_at": record.created_at,
                "model": await self.orchestrator.resolve_model(record),
                "plan_mode": record.plan_mode,
                "heartbeat": record.heartbeat.to_dict() if record.heartbeat else None,
                "project_directory": str(project_directory(record.surface_name)),
            }
        return info

    async def toggle_plan(self, key: ContextKey, surface_name: str = "default") -> bool:
        """Flip plan mode for *key*, creating the context if needed. Returns the new mode."""
        record = await self.store.get_or_create(key, surface_name)
        plan_mode = not record.plan_mode
        await self.store.set_plan_mode(key, plan_mode)
        return plan_mode

    async def clear(self, key: ContextKey) -> ContextRecord | None:
        """Delete *key*'s record so the next run starts a fresh session.

        A running process is killed and pending timers are disarmed first.
        Returns the removed record, or None when there was nothing to clear.
        """
        record = await self.store.get(key)
        if record is None:
            return None
        if self.orchestrator.kill(key):
            logger.info("Killed running process during clear", context=str(key))
        self.callbacks.cancel(key)
        self.heartbeats.stop(key)
        await self.store.clear(key)
        return record

    async def usage(self, key: ContextKey) -> dict[str, Any]:
        """Cost and run counts for *key* and across all contexts, plus the last rate-limit hit."""
        record = await self.store.get(key)
        records = await self.store.all()
        session = None
        if record is not None:
            session = {
                "messages": record.message_count,
                "autonomous_runs": record.autonomous_runs,
                "cost_usd": record.total_cost_usd,
                "model": record.model,
            }
        return {
            "context": str(key),
            "session": session,
            "totals": {
                "sessions": len(records),
                "messages": sum(r.message_count for r in records),
                "autonomous_runs": sum(r.autonomous_runs for r in records),
                "cost_usd": sum(r.total_cost_usd for r in records),
            },
            "last_usage_limit": self.heartbeats.last_usage_limit
            or await self.store.get_usage_limit(),
        }

    # --- Lifecycle ---

    async def serve(self) -> None:
        """Restore heartbeats and run until SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.ensure_future(self.shutdown(s.name)),
            )

        restored = self.heartbeats.restore(await self.store.all())
        logger.info("cadence serving", heartbeats=restored, state_file=str(self.store.path))
        await self._stopped.wait()

    async def shutdown(self, reason: str = "requested") -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutting down", reason=reason)
        self.heartbeats.stop_all()
        self.callbacks.shutdown()
        self.orchestrator.shutdown()
        self._stopped.set()
