"""Surface name → project working directory."""

from __future__ import annotations

import re
from pathlib import Path

from cadence.config import get_settings

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def project_directory(surface_name: str) -> Path:
    """Return (and create) ``base_dir/<surface_name>``.

    The name is sanitized so channel names with spaces or slashes can't
    escape the base directory.
    """
    safe = _UNSAFE.sub("-", surface_name).strip(".-") or "default"
    path = get_settings().base_dir / safe
    path.mkdir(parents=True, exist_ok=True)
    return path
