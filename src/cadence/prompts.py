"""System instructions appended to every agent run.

Loaded once from ``prompts_dir/system.md`` and ``prompts_dir/heartbeat.md``;
missing files fall back to the defaults below.
"""

from __future__ import annotations

from functools import cache
from pathlib import Path

from cadence.config import get_settings
from cadence.logger import logger

DEFAULT_SYSTEM_PROMPT = """\
You are running inside a chat channel. Your text responses will be posted as messages.

To attach a local file to your reply, write [UPLOAD: path/to/file].
Local images embedded as ![alt](path) are attached automatically.
To run yourself again later without a human prompt, write
[CALLBACK: <delay>: <prompt>], for example [CALLBACK: 1h30m: check the deploy finished]."""

DEFAULT_AUTONOMOUS_ADDITION = """\
This message is from an automated timer, not a human. You are running autonomously \
with no memory of earlier conversation. Read HEARTBEAT.md and do the work described \
there. Update it when done."""


def _load(filename: str, fallback: str) -> str:
    path: Path = get_settings().prompts_dir / filename
    try:
        return path.read_text()
    except OSError:
        logger.warning("Prompt file not found, using default", file=filename)
        return fallback


@cache
def system_prompt() -> str:
    return _load("system.md", DEFAULT_SYSTEM_PROMPT)


@cache
def autonomous_addition() -> str:
    return _load("heartbeat.md", DEFAULT_AUTONOMOUS_ADDITION)


def build_instructions(*, autonomous: bool) -> str:
    text = system_prompt()
    if autonomous:
        text += "\n\n" + autonomous_addition()
    return text


def wrap_heartbeat_prompt(prompt: str, sentinel: str) -> str:
    """Append the no-op escape hatch so an idle tick can answer with *sentinel*."""
    return (
        f"{prompt}\n\nIMPORTANT: If there is no work to do, respond with exactly "
        f'"{sentinel}" and nothing else.'
    )


def clear_cache() -> None:
    system_prompt.cache_clear()
    autonomous_addition.cache_clear()
