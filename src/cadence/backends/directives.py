"""Response directives — structured requests embedded in agent free text.

The agent is told (via system instructions) that it can write:

- ``[CALLBACK: 1h30m: check the build again]`` → a one-shot autonomous run later
- ``[UPLOAD: reports/summary.pdf]`` → attach a local file to the reply
- ``![chart](out/chart.png)`` or ``![[out/chart.png]]`` → attach a local image

Patterns are applied in that order so a callback prompt that mentions an
upload tag is consumed whole instead of being split.

Usage::

    from cadence.backends.directives import extract_directives

    d = extract_directives(raw_text)
    d.clean_text, d.upload_files, d.callbacks
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from cadence.types import ScheduledCallback

_DELAY_TOKEN = re.compile(r"(\d+)\s*(hours?|hrs?|h|minutes?|mins?|m|seconds?|secs?|s)")
_UNIT_MS = {"h": 3_600_000, "m": 60_000, "s": 1_000}

_CALLBACK_TAG = re.compile(r"\[CALLBACK:\s*([^:\]]+?):\s*(.+?)\]")
_UPLOAD_TAG = re.compile(r"\[UPLOAD:\s*(.+?)\]")
_MARKDOWN_IMAGE = re.compile(r"!\[([^\]]*)\]\((?!https?://)([^)]+)\)")
_WIKI_IMAGE = re.compile(r"!\[\[([^\]]+)\]\]")


@dataclass
class Directives:
    clean_text: str
    upload_files: list[str] = field(default_factory=list)
    callbacks: list[ScheduledCallback] = field(default_factory=list)


def parse_delay(delay: str) -> int | None:
    """Parse ``"1h30m"``, ``"90s"``, ``"2 hours"`` or bare ``"45"`` (minutes) into ms.

    Returns None when nothing parses or the total is zero, so callers can
    tell "no delay given" apart from "run immediately".
    """
    text = delay.strip().lower()
    total_ms = 0
    matched = False

    for m in _DELAY_TOKEN.finditer(text):
        total_ms += int(m.group(1)) * _UNIT_MS[m.group(2)[0]]
        matched = True

    if not matched and text.isdigit():
        total_ms = int(text) * _UNIT_MS["m"]
        matched = True

    return total_ms if matched and total_ms > 0 else None


def extract_directives(text: str) -> Directives:
    """Strip callback, upload and local-image directives out of *text*.

    Callback tags whose delay doesn't parse are still removed from the
    text (the agent meant it as a directive) but produce no callback.
    """
    uploads: list[str] = []
    callbacks: list[ScheduledCallback] = []

    def _callback(m: re.Match[str]) -> str:
        delay_ms = parse_delay(m.group(1))
        if delay_ms:
            callbacks.append(ScheduledCallback(delay_ms=delay_ms, prompt=m.group(2).strip()))
        return ""

    def _upload(m: re.Match[str]) -> str:
        uploads.append(m.group(1).strip())
        return ""

    def _markdown_image(m: re.Match[str]) -> str:
        uploads.append(m.group(2).strip())
        alt = m.group(1)
        return f"*{alt}*" if alt else ""

    clean = _CALLBACK_TAG.sub(_callback, text)
    clean = _UPLOAD_TAG.sub(_upload, clean)
    clean = _MARKDOWN_IMAGE.sub(_markdown_image, clean)
    clean = _WIKI_IMAGE.sub(_upload, clean)

    return Directives(clean_text=clean.strip(), upload_files=uploads, callbacks=callbacks)
