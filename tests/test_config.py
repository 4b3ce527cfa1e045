"""Tests for Settings loading and validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from cadence.config import (
    HeartbeatSettings,
    PathsConfig,
    Settings,
    get_settings,
    reset_settings,
)
from cadence.errors import ConfigError


class TestSubModels:
    def test_heartbeat_defaults(self):
        hb = HeartbeatSettings()
        assert hb.default_interval_minutes == 30
        assert hb.no_work_sentinel == "[NO WORK]"
        assert hb.rate_limit_buffer_ms == 120_000
        assert "usage limit" in hb.rate_limit_patterns

    def test_patterns_are_lowercased_and_blank_dropped(self):
        hb = HeartbeatSettings(rate_limit_patterns=["Too Many Requests", "  "])
        assert hb.rate_limit_patterns == ["too many requests"]

    def test_interval_must_be_positive(self):
        with pytest.raises(ValidationError):
            HeartbeatSettings(default_interval_minutes=0)

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValidationError):
            PathsConfig(state_fiel="typo.json")  # type: ignore[call-arg]


class TestSettingsSources:
    def test_toml_then_env_override(self, tmp_path, monkeypatch):
        (tmp_path / "config.toml").write_text(
            '[agent]\ndefault_model = "claude-opus-4-6"\n\n'
            "[heartbeat]\ndefault_interval_minutes = 15\n\n"
            '[paths]\nstate_file = "data/state.json"\n'
        )
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HEARTBEAT__DEFAULT_INTERVAL_MINUTES", "45")

        s = Settings()

        assert s.agent.default_model == "claude-opus-4-6"
        assert s.heartbeat.default_interval_minutes == 45
        assert s.state_file == (tmp_path / "data" / "state.json").resolve()

    def test_unknown_section_key_fails_loudly(self, tmp_path, monkeypatch):
        (tmp_path / "config.toml").write_text("[callbacks]\nmax_hop = 3\n")
        monkeypatch.chdir(tmp_path)

        with pytest.raises(ValidationError):
            Settings()


class TestSingleton:
    def test_reset_builds_fresh_instance(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        reset_settings()
        first = get_settings()
        assert get_settings() is first
        reset_settings()
        assert get_settings() is not first

    def test_invalid_config_raises_config_error(self, tmp_path, monkeypatch):
        (tmp_path / "config.toml").write_text("[heartbeat]\ndefault_interval_minutes = -5\n")
        monkeypatch.chdir(tmp_path)
        reset_settings()

        with pytest.raises(ConfigError, match="Invalid configuration"):
            get_settings()
