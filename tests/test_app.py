"""Tests for CadenceApp wiring: human runs feed the schedulers."""

from __future__ import annotations

import pytest

from cadence.app import CadenceApp
from cadence.types import ContextKey, HeartbeatConfig, RunRequest
from conftest import FakeOrchestrator, callback, make_result

CHANNEL = ContextKey("chan-1")
THREAD = ContextKey("chan-1", "thread-1")


@pytest.fixture
async def app(store, presenter, monkeypatch):
    a = CadenceApp(presenter=presenter, store=store)
    fake = FakeOrchestrator(default="ok")
    monkeypatch.setattr(a.orchestrator, "submit", fake.submit)
    a.fake = fake  # type: ignore[attr-defined]
    yield a
    await a.shutdown("test teardown")


class TestHandleMessage:
    async def test_callbacks_from_human_run_are_scheduled(self, app: CadenceApp):
        app.fake.outcomes.append(  # type: ignore[attr-defined]
            make_result("deploying", callbacks=(callback(60_000, "check deploy"),))
        )
        result = await app.handle_message(RunRequest(THREAD, "deploy it", surface_name="proj"))

        assert result.text == "deploying"
        assert app.callbacks.pending(THREAD) == [callback(60_000, "check deploy")]

    async def test_activity_in_thread_resets_channel_heartbeat(self, app: CadenceApp):
        app.heartbeats.start(CHANNEL, 60_000)
        timer = app.heartbeats._timers[str(CHANNEL)]
        app.heartbeats._arm(timer, 1_000)

        await app.handle_message(RunRequest(THREAD, "hello"))

        assert app.heartbeats.time_remaining_ms(CHANNEL) > 1_000  # type: ignore[operator]

    async def test_shutdown_stops_schedulers(self, app: CadenceApp, store):
        await store.get_or_create(CHANNEL)
        await store.set_heartbeat(CHANNEL, HeartbeatConfig(True, 60_000, "p"))
        app.heartbeats.restore(await store.all())
        app.callbacks.schedule(CHANNEL, [callback(60_000, "later")])

        await app.shutdown("test")

        assert not app.heartbeats.is_active(CHANNEL)
        assert app.callbacks.pending(CHANNEL) == []


async def test_default_presenter_is_console(store):
    app = CadenceApp(store=store)
    assert type(app.presenter).__name__ == "ConsolePresenter"
    await app.shutdown()


async def test_console_presenter_prints_result_and_attachments(capsys):
    from cadence.presenter import ConsolePresenter

    p = ConsolePresenter()
    await p.present(CHANNEL, make_result("hi", image_files=("a.png",), upload_files=("a.png", "r.pdf")), "human")
    await p.notify(CHANNEL, "heads up")

    out = capsys.readouterr().out
    assert "[chan-1-main] (human)\nhi" in out
    assert out.count("attachment:") == 2
    assert "[chan-1-main] heads up" in out


class TestContextCommands:
    async def test_human_rate_limit_is_recorded_and_persisted(self, app: CadenceApp, store):
        app.fake.outcomes.append(  # type: ignore[attr-defined]
            make_result("You've hit your limit · resets 3pm (UTC)", is_error=True)
        )
        await app.handle_message(RunRequest(THREAD, "hello"))

        limit = app.heartbeats.last_usage_limit
        assert limit is not None
        assert limit.context == str(THREAD)
        assert "hit your limit" in limit.message
        assert limit.delay_ms >= 120_000
        assert await store.get_usage_limit() == limit

    async def test_plain_error_is_not_a_usage_limit(self, app: CadenceApp, store):
        app.fake.outcomes.append(make_result("tool crashed", is_error=True))  # type: ignore[attr-defined]
        await app.handle_message(RunRequest(THREAD, "hello"))

        assert app.heartbeats.last_usage_limit is None
        assert await store.get_usage_limit() is None

    async def test_status_without_session(self, app: CadenceApp):
        info = await app.status(CHANNEL)

        assert info["context"] == "chan-1-main"
        assert info["running"] is False
        assert info["queued"] == 0
        assert info["session"] is None

    async def test_status_reports_session_and_timers(self, app: CadenceApp, store, tmp_path):
        await store.get_or_create(CHANNEL, "proj")
        await store.record_run(CHANNEL, 0.0)
        await store.record_run(CHANNEL, 0.0, autonomous=True)
        await app.heartbeats.enable(CHANNEL, "check", interval_ms=60_000, surface_name="proj")
        app.callbacks.schedule(CHANNEL, [callback(60_000, "later")])

        info = await app.status(CHANNEL)

        assert info["pending_callbacks"] == 1
        assert 0 < info["next_heartbeat_ms"] <= 60_000
        session = info["session"]
        assert session["messages"] == 1
        assert session["autonomous_runs"] == 1
        assert session["model"] == "claude-sonnet-4-5-20250929"
        assert session["heartbeat"]["interval_ms"] == 60_000
        assert session["project_directory"] == str(tmp_path / "projects" / "proj")

    async def test_toggle_plan_creates_context_and_flips(self, app: CadenceApp, store):
        assert await app.toggle_plan(THREAD, "proj") is True
        record = await store.get(THREAD)
        assert record is not None and record.plan_mode is True
        assert record.surface_name == "proj"

        assert await app.toggle_plan(THREAD, "proj") is False
        record = await store.get(THREAD)
        assert record is not None and record.plan_mode is False

    async def test_clear_disarms_timers_and_forgets_session(self, app: CadenceApp, store):
        created = await store.get_or_create(CHANNEL, "proj")
        await app.heartbeats.enable(CHANNEL, "check", interval_ms=60_000)
        app.callbacks.schedule(CHANNEL, [callback(60_000, "later")])

        removed = await app.clear(CHANNEL)

        assert removed is not None
        assert removed.session_id == created.session_id
        assert await store.get(CHANNEL) is None
        assert not app.heartbeats.is_active(CHANNEL)
        assert app.callbacks.pending(CHANNEL) == []
        assert await app.clear(CHANNEL) is None

    async def test_usage_totals(self, app: CadenceApp, store):
        await store.get_or_create(CHANNEL)
        await store.get_or_create(THREAD)
        await store.record_run(CHANNEL, 0.25)
        await store.record_run(THREAD, 0.5, autonomous=True)

        info = await app.usage(CHANNEL)

        assert info["session"] == {
            "messages": 1,
            "autonomous_runs": 0,
            "cost_usd": 0.25,
            "model": None,
        }
        assert info["totals"]["sessions"] == 2
        assert info["totals"]["messages"] == 1
        assert info["totals"]["autonomous_runs"] == 1
        assert info["totals"]["cost_usd"] == pytest.approx(0.75)
        assert info["last_usage_limit"] is None

    async def test_usage_reads_limit_persisted_by_another_process(self, app: CadenceApp, store):
        from datetime import UTC, datetime

        from cadence.types import UsageLimit

        limit = UsageLimit("chan-9-main", datetime(2026, 6, 1, 12, tzinfo=UTC), 60_000, "quota")
        await store.set_usage_limit(limit)

        info = await app.usage(CHANNEL)
        assert info["session"] is None
        assert info["last_usage_limit"] == limit
