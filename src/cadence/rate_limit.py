"""Provider rate-limit detection and reset-time backoff.

Providers phrase limits differently, so detection is a case-insensitive
substring match against ``heartbeat.rate_limit_patterns``. The reset hint
looks like ``resets 3pm (America/New_York)`` or ``resets at 14:30 (UTC)``.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cadence.config import get_settings
from cadence.errors import BackendProcessError
from cadence.logger import logger

_RESET_HINT = re.compile(
    r"resets\s+(?:at\s+)?(\d{1,2})(?::(\d{2}))?\s*(am|pm)?\s*\(([^)]+)\)",
    re.IGNORECASE,
)


def is_rate_limited(text: str | None) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(p in lowered for p in get_settings().heartbeat.rate_limit_patterns)


def parse_reset_delay_ms(text: str, *, now: datetime | None = None) -> int | None:
    """Milliseconds until the next wall-clock occurrence of the reset hint in *text*.

    Returns None when there is no hint, the zone is unknown, or the time is
    out of range. Does not include the safety buffer.
    """
    match = _RESET_HINT.search(text)
    if not match:
        return None
    hour_s, minute_s, meridiem, zone = match.groups()
    hour = int(hour_s)
    minute = int(minute_s) if minute_s else 0

    if meridiem:
        if not 1 <= hour <= 12:
            return None
        hour = hour % 12 + (12 if meridiem.lower() == "pm" else 0)
    if hour > 23 or minute > 59:
        return None

    try:
        tz = ZoneInfo(zone.strip())
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone in rate-limit reset hint", zone=zone)
        return None

    local_now = (now or datetime.now(UTC)).astimezone(tz)
    target = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= local_now:
        target += timedelta(days=1)
    # Compare in UTC; same-tzinfo subtraction ignores DST offset changes
    gap = target.astimezone(UTC) - local_now.astimezone(UTC)
    return int(gap.total_seconds() * 1000)


def backoff_ms(text: str, interval_ms: int, *, now: datetime | None = None) -> int:
    """Delay before retrying after a rate limit.

    Parsed reset time plus ``rate_limit_buffer_ms``, else twice *interval_ms*.
    """
    delay = parse_reset_delay_ms(text, now=now)
    if delay is None:
        return interval_ms * 2
    return delay + get_settings().heartbeat.rate_limit_buffer_ms


def failure_detail(exc: BaseException) -> str:
    """Text to scan for rate-limit signatures: the message plus any CLI stderr tail."""
    if isinstance(exc, BackendProcessError) and exc.stderr:
        return f"{exc}\n{exc.stderr}"
    return str(exc)
