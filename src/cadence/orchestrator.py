"""Run orchestrator: resolves session and backend, dispatches through the RunQueue.

Every trigger (human message, heartbeat tick, callback fire) goes through
:meth:`Orchestrator.submit`, so all runs for one context share a single
FIFO no matter where they came from.

Session rules:
  - autonomous runs get a brand-new session id and never resume
  - other runs resume when asked to or when the context already has
    conversational messages (autonomous runs are not counted)
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from pathlib import Path
from typing import TypeAlias

from cadence import prompts
from cadence.backends import BackendOptions, BackendProcess
from cadence.config import get_settings
from cadence.event_bus import EventBus, RunActivityEvent, TextUpdateEvent
from cadence.logger import bind_run, logger
from cadence.models import detect_backend
from cadence.run_queue import RunQueue
from cadence.state import SessionStore, project_directory
from cadence.types import Backend, ContextKey, ContextRecord, RunRequest, RunResult

TextSink: TypeAlias = Callable[[str], None]
ProcessFactory: TypeAlias = Callable[[Backend, BackendOptions], BackendProcess]
DirectoryResolver: TypeAlias = Callable[[str], Path]


class Orchestrator:
    """Owns the per-context queue and the table of live agent processes."""

    def __init__(
        self,
        store: SessionStore,
        *,
        event_bus: EventBus | None = None,
        process_factory: ProcessFactory = BackendProcess,
        directory_resolver: DirectoryResolver = project_directory,
    ) -> None:
        self.store = store
        self.event_bus = event_bus or EventBus()
        self._queue = RunQueue()
        self._active: dict[str, BackendProcess] = {}
        self._process_factory = process_factory
        self._directory_resolver = directory_resolver

    # --- Public API ---

    async def submit(self, request: RunRequest, on_text: TextSink | None = None) -> RunResult:
        """Run *request* after everything already queued for its context.

        Raises BackendProcessError on infrastructure failure; agent-level
        errors come back as ``RunResult(is_error=True)``.
        """
        key = str(request.context)
        return await self._queue.enqueue(key, lambda: self._dispatch(request, on_text))

    def is_busy(self, context: ContextKey) -> bool:
        return str(context) in self._active

    def kill(self, context: ContextKey) -> bool:
        """Terminate the running process for *context*. Queued runs still execute."""
        proc = self._active.pop(str(context), None)
        if proc is None:
            return False
        proc.kill()
        logger.info("Killed active process", context=str(context))
        return True

    def active_count(self) -> int:
        return len(self._active)

    def queue_depth(self, context: ContextKey) -> int:
        return self._queue.depth(str(context))

    def status(self) -> dict[str, dict[str, object]]:
        """Queue counters per context, plus the backend of any live process."""
        snap = self._queue.snapshot()
        for key, proc in self._active.items():
            snap.setdefault(key, {})["backend"] = proc.backend
        return snap

    async def resolve_model(self, record: ContextRecord, override: str | None = None) -> str:
        """Request override > context model > global model > configured default."""
        if override:
            return override
        if record.model:
            return record.model
        return await self.store.get_global_model() or get_settings().agent.default_model

    def shutdown(self) -> None:
        self._queue.shutdown()
        for key in list(self._active):
            proc = self._active.pop(key)
            proc.kill()
        logger.info("Orchestrator shutdown complete")

    # --- Dispatch ---

    async def _dispatch(self, request: RunRequest, on_text: TextSink | None) -> RunResult:
        key = str(request.context)
        record = await self.store.get_or_create(request.context, request.surface_name)

        model = await self.resolve_model(record, request.model_override)
        backend = detect_backend(model)

        if request.is_autonomous:
            session_id = str(uuid.uuid4())
            continue_session = False
        else:
            session_id = record.session_id
            continue_session = request.continue_session or record.message_count > 0

        working_directory = self._directory_resolver(record.surface_name)
        bind_run(key, backend=backend, autonomous=request.is_autonomous)
        logger.info(
            "Starting backend process",
            model=model,
            session_id=session_id,
            resume=continue_session,
            cwd=str(working_directory),
        )

        options = BackendOptions(
            session_id=session_id,
            working_directory=working_directory,
            prompt=request.prompt,
            continue_session=continue_session,
            append_system_prompt=prompts.build_instructions(autonomous=request.is_autonomous),
            model=model,
            plan_mode=record.plan_mode and not request.is_autonomous,
            image_inputs=list(request.image_inputs),
        )
        proc = self._process_factory(backend, options)
        self._active[key] = proc

        def _forward(text: str) -> None:
            self.event_bus.emit(TextUpdateEvent(context=key, text=text))
            if on_text is not None:
                on_text(text)

        proc.on_text(_forward)
        self.event_bus.emit(
            RunActivityEvent(context=key, active=True, autonomous=request.is_autonomous)
        )

        try:
            result = await proc.run()
            await self.store.record_run(
                request.context,
                result.cost_usd,
                session_id=None if request.is_autonomous else result.session_id,
                autonomous=request.is_autonomous,
            )
            logger.info(
                "Run completed",
                is_error=result.is_error,
                duration_ms=result.duration_ms,
                cost_usd=result.cost_usd,
                files=len(result.created_files),
                callbacks=len(result.callbacks),
            )
            return result
        finally:
            if self._active.get(key) is proc:
                del self._active[key]
            self.event_bus.emit(
                RunActivityEvent(context=key, active=False, autonomous=request.is_autonomous)
            )
