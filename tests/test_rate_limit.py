"""Tests for rate-limit detection and reset-hint backoff."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from cadence.config import HeartbeatSettings
from cadence.errors import BackendProcessError
from cadence.rate_limit import backoff_ms, failure_detail, is_rate_limited, parse_reset_delay_ms
from conftest import install_settings

NOON_UTC = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
HOUR = 3_600_000


class TestIsRateLimited:
    @pytest.mark.parametrize(
        "text",
        [
            "Claude AI usage limit reached|1760000000",
            "You've hit your limit · resets 3pm (America/New_York)",
            "HTTP 429 Too Many Requests",
            "Rate limit exceeded",
            "insufficient_quota",
            "API Error: Overloaded",
        ],
    )
    def test_detects_signatures(self, text: str):
        assert is_rate_limited(text)

    def test_ordinary_errors_are_not_limits(self):
        assert not is_rate_limited("SyntaxError: invalid syntax")
        assert not is_rate_limited("")
        assert not is_rate_limited(None)

    def test_patterns_are_configurable(self, monkeypatch, tmp_path):
        install_settings(monkeypatch, tmp_path, heartbeat=HeartbeatSettings(rate_limit_patterns=["Slow Down"]))
        assert is_rate_limited("please SLOW DOWN")
        assert not is_rate_limited("usage limit reached")


class TestParseResetDelay:
    def test_pm_time_later_today(self):
        assert parse_reset_delay_ms("resets 3pm (UTC)", now=NOON_UTC) == 3 * HOUR

    def test_twenty_four_hour_time_with_at(self):
        assert parse_reset_delay_ms("limit hit, resets at 14:30 (UTC)", now=NOON_UTC) == int(2.5 * HOUR)

    def test_past_time_rolls_to_tomorrow(self):
        assert parse_reset_delay_ms("resets 11am (UTC)", now=NOON_UTC) == 23 * HOUR

    def test_same_minute_rolls_to_tomorrow(self):
        assert parse_reset_delay_ms("resets 12pm (UTC)", now=NOON_UTC) == 24 * HOUR

    def test_midnight(self):
        assert parse_reset_delay_ms("resets 12am (UTC)", now=NOON_UTC) == 12 * HOUR

    def test_named_zone(self):
        # 12:00 UTC is 07:00 EST
        text = "You've hit your limit · resets 9am (America/New_York)"
        assert parse_reset_delay_ms(text, now=NOON_UTC) == 2 * HOUR

    def test_dst_transition_uses_wall_clock(self):
        # 2026-03-08 is the spring-forward day in New York: 07:00 EST → 07:00 EDT is 23h
        now = datetime(2026, 3, 7, 12, 0, tzinfo=UTC)
        assert parse_reset_delay_ms("resets 7am (America/New_York)", now=now) == 23 * HOUR

    def test_case_insensitive(self):
        assert parse_reset_delay_ms("RESETS 3PM (UTC)", now=NOON_UTC) == 3 * HOUR

    @pytest.mark.parametrize(
        "text",
        [
            "usage limit reached",
            "resets 3pm",
            "resets 3pm (Mars/Olympus_Mons)",
            "resets 13pm (UTC)",
            "resets 25:00 (UTC)",
            "resets 10:75 (UTC)",
        ],
    )
    def test_unparseable(self, text: str):
        assert parse_reset_delay_ms(text, now=NOON_UTC) is None


class TestBackoff:
    def test_parsed_reset_plus_buffer(self):
        assert backoff_ms("resets 3pm (UTC)", 60_000, now=NOON_UTC) == 3 * HOUR + 120_000

    def test_buffer_is_configurable(self, monkeypatch, tmp_path):
        install_settings(monkeypatch, tmp_path, heartbeat=HeartbeatSettings(rate_limit_buffer_ms=0))
        assert backoff_ms("resets 3pm (UTC)", 60_000, now=NOON_UTC) == 3 * HOUR

    def test_fallback_is_twice_interval(self):
        assert backoff_ms("429 Too Many Requests", 1_800_000, now=NOON_UTC) == 3_600_000


def test_failure_detail_includes_stderr():
    exc = BackendProcessError("claude CLI exited with code 1", exit_code=1, stderr="rate limit hit")
    detail = failure_detail(exc)
    assert "code 1" in detail
    assert "rate limit hit" in detail
    assert failure_detail(RuntimeError("plain")) == "plain"
