"""Shared test fixtures for cadence."""

from __future__ import annotations

from pathlib import Path

import pytest

from cadence.types import RunResult, ScheduledCallback

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures — importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset({"project_root", "base_dir", "state_file", "prompts_dir"})


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (agent, heartbeat, etc.) and cached property
    overrides (project_root, base_dir, state_file, prompts_dir).

    Usage::

        s = make_settings(base_dir=tmp_path / "projects")
        s = make_settings(heartbeat=HeartbeatSettings(rate_limit_buffer_ms=0))
    """
    from cadence.config import (
        AgentConfig,
        CallbackSettings,
        HeartbeatSettings,
        LoggingConfig,
        PathsConfig,
        Settings,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "agent": AgentConfig(),
        "heartbeat": HeartbeatSettings(),
        "callbacks": CallbackSettings(),
        "paths": PathsConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def install_settings(monkeypatch, tmp_path: Path, **overrides):
    """Build settings rooted at *tmp_path* and make them the active singleton."""
    paths = {
        "project_root": tmp_path,
        "base_dir": tmp_path / "projects",
        "state_file": tmp_path / "state.json",
        "prompts_dir": tmp_path / "prompts",
    }
    paths.update({k: overrides.pop(k) for k in list(overrides) if k in paths})
    s = make_settings(**paths, **overrides)
    monkeypatch.setattr("cadence.config._settings", s)
    return s


def make_result(text: str = "done", **overrides) -> RunResult:
    fields = {
        "text": text,
        "duration_ms": 10.0,
        "cost_usd": 0.0,
        "is_error": False,
        "session_id": "sess-1",
    }
    fields.update(overrides)
    return RunResult(**fields)


def callback(delay_ms: int, prompt: str) -> ScheduledCallback:
    return ScheduledCallback(delay_ms=delay_ms, prompt=prompt)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults — no config.toml,
    no .env, no file I/O. Paths point into the test's tmp_path.
    """
    from cadence import prompts

    install_settings(monkeypatch, tmp_path)
    prompts.clear_cache()
    yield
    prompts.clear_cache()


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_path):
    from cadence.state import SessionStore

    return SessionStore(tmp_path / "state.json")


class RecordingPresenter:
    """Presenter that keeps everything it was asked to show."""

    def __init__(self) -> None:
        self.presented: list[tuple[str, RunResult, str]] = []
        self.notices: list[tuple[str, str]] = []

    async def present(self, key, result, source) -> None:
        self.presented.append((str(key), result, source))

    async def notify(self, key, text) -> None:
        self.notices.append((str(key), text))


@pytest.fixture
def presenter() -> RecordingPresenter:
    return RecordingPresenter()


async def until(predicate, timeout: float = 2.0) -> None:
    """Poll *predicate* on the event loop until it is truthy."""
    import asyncio

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class FakeOrchestrator:
    """Records submitted requests and replays scripted outcomes.

    An outcome may be a RunResult, an exception to raise, or a callable
    taking the request. With nothing scripted every run answers ``default``.
    """

    def __init__(self, default: str = "[NO WORK]") -> None:
        self.requests: list = []
        self.outcomes: list = []
        self.default = default

    async def submit(self, request, on_text=None):
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else make_result(self.default)
        if callable(outcome):
            outcome = outcome(request)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def fake_orch() -> FakeOrchestrator:
    return FakeOrchestrator()
