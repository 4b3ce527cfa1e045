"""Per-context session records in a flat JSON snapshot.

Every read goes to disk so external edits (and other processes inspecting
the file) see consistent state; every mutation is a read-modify-write under
a single lock and lands with an atomic rename.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cadence.logger import logger
from cadence.types import ContextKey, ContextRecord, HeartbeatConfig, UsageLimit
from cadence.utils import write_json_atomic


def _empty_state() -> dict[str, Any]:
    return {"sessions": {}, "global_model": None, "last_usage_limit": None}


class SessionStore:
    """Reads and writes the snapshot.

    Layout: ``{"sessions": {...}, "global_model": ..., "last_usage_limit": ...}``.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load_sync(self) -> dict[str, Any]:
        try:
            raw = json.loads(self._path.read_text())
        except FileNotFoundError:
            return _empty_state()
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("State file unreadable, starting empty", path=str(self._path), err=str(exc))
            return _empty_state()
        if not isinstance(raw, dict):
            return _empty_state()
        raw.setdefault("sessions", {})
        raw.setdefault("global_model", None)
        return raw

    async def _load(self) -> dict[str, Any]:
        return await asyncio.to_thread(self._load_sync)

    @asynccontextmanager
    async def _atomic_update(self) -> AsyncIterator[dict[str, Any]]:
        """Yield the loaded state; persist it if the block exits cleanly.

        Every mutation MUST go through here so two coroutines never
        interleave a load and a save.
        """
        async with self._write_lock:
            state = await self._load()
            yield state
            await asyncio.to_thread(write_json_atomic, self._path, state, indent=2)

    # --- Contexts ---

    async def get(self, key: ContextKey) -> ContextRecord | None:
        """Return the record for *key* without creating one."""
        state = await self._load()
        raw = state["sessions"].get(str(key))
        return ContextRecord.from_dict(raw) if raw else None

    async def get_or_create(self, key: ContextKey, surface_name: str = "default") -> ContextRecord:
        existing = await self.get(key)
        if existing is not None:
            return existing
        async with self._atomic_update() as state:
            raw = state["sessions"].get(str(key))
            if raw:
                # created by a concurrent caller between the read and the lock
                return ContextRecord.from_dict(raw)
            record = ContextRecord(
                session_id=str(uuid.uuid4()),
                surface_id=key.surface_id,
                sub_scope_id=key.sub_scope_id,
                surface_name=surface_name,
                created_at=datetime.now(UTC).isoformat(),
            )
            state["sessions"][str(key)] = record.to_dict()
        logger.info("Created new session", context=str(key), session_id=record.session_id)
        return record

    async def all(self) -> list[ContextRecord]:
        state = await self._load()
        return [ContextRecord.from_dict(raw) for raw in state["sessions"].values()]

    async def record_run(
        self,
        key: ContextKey,
        cost_usd: float,
        *,
        session_id: str | None = None,
        autonomous: bool = False,
    ) -> None:
        """Count one finished run and add *cost_usd* (ignored when not positive).

        Autonomous runs never touch the conversation, so they are counted
        apart from ``message_count``; a context whose only runs were
        autonomous still starts its conversation fresh.

        A *session_id* replaces the stored one: backends that issue their own
        thread ids (codex) need that id, not ours, to resume.
        """
        async with self._atomic_update() as state:
            raw = state["sessions"].get(str(key))
            if raw is None:
                return
            counter = "autonomous_runs" if autonomous else "message_count"
            raw[counter] = int(raw.get(counter, 0)) + 1
            if cost_usd > 0:
                raw["total_cost_usd"] = float(raw.get("total_cost_usd", 0.0)) + cost_usd
            if session_id and session_id != raw.get("session_id"):
                logger.info(
                    "Adopting provider session id",
                    context=str(key),
                    old=raw.get("session_id"),
                    new=session_id,
                )
                raw["session_id"] = session_id

    async def set_plan_mode(self, key: ContextKey, plan_mode: bool) -> bool:
        async with self._atomic_update() as state:
            raw = state["sessions"].get(str(key))
            if raw is None:
                return False
            raw["plan_mode"] = plan_mode
        logger.info("Set plan mode", context=str(key), plan_mode=plan_mode)
        return True

    async def set_model(self, key: ContextKey, model: str | None) -> bool:
        async with self._atomic_update() as state:
            raw = state["sessions"].get(str(key))
            if raw is None:
                return False
            if model is None:
                raw.pop("model", None)
            else:
                raw["model"] = model
        return True

    async def set_heartbeat(self, key: ContextKey, heartbeat: HeartbeatConfig | None) -> bool:
        async with self._atomic_update() as state:
            raw = state["sessions"].get(str(key))
            if raw is None:
                return False
            if heartbeat is None:
                raw.pop("heartbeat", None)
            else:
                raw["heartbeat"] = heartbeat.to_dict()
        logger.info(
            "Set heartbeat",
            context=str(key),
            heartbeat=heartbeat.to_dict() if heartbeat else None,
        )
        return True

    async def clear(self, key: ContextKey) -> bool:
        """Delete the record for *key*, forcing a fresh session on next run."""
        async with self._atomic_update() as state:
            if state["sessions"].pop(str(key), None) is None:
                return False
        logger.info("Cleared session", context=str(key))
        return True

    # --- Global model override ---

    async def get_global_model(self) -> str | None:
        state = await self._load()
        return state.get("global_model")

    async def set_global_model(self, model: str | None) -> None:
        async with self._atomic_update() as state:
            state["global_model"] = model
        logger.info("Set global model", model=model)

    # --- Last rate-limit hit ---

    async def get_usage_limit(self) -> UsageLimit | None:
        state = await self._load()
        raw = state.get("last_usage_limit")
        if not isinstance(raw, dict):
            return None
        try:
            return UsageLimit.from_dict(raw)
        except (KeyError, ValueError):
            logger.warning("Ignoring malformed usage limit entry", path=str(self._path))
            return None

    async def set_usage_limit(self, limit: UsageLimit) -> None:
        async with self._atomic_update() as state:
            state["last_usage_limit"] = limit.to_dict()
