"""Shared backend types: options, the accumulator interface, wire protocols."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from cadence.types import Backend

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".bmp")


def is_image_file(path: str) -> bool:
    return path.lower().endswith(IMAGE_EXTENSIONS)


@dataclass
class BackendOptions:
    session_id: str
    working_directory: Path
    prompt: str
    continue_session: bool = False
    append_system_prompt: str | None = None
    model: str | None = None
    plan_mode: bool = False  # review-before-apply instead of autonomous apply
    image_inputs: list[str] = field(default_factory=list)


class StreamAccumulator(Protocol):
    """Folds decoded protocol events into one run's text and metadata."""

    text: str
    session_id: str | None
    error: str | None
    created_files: list[str]
    duration_ms: float | None
    cost_usd: float
    input_tokens: int
    output_tokens: int

    def process_event(self, event: dict[str, Any]) -> bool:
        """Apply one event. Returns True when ``text`` changed."""
        ...


def track_file(files: list[str], path: object) -> bool:
    """Append *path* to *files* once, keeping first-seen order."""
    if not isinstance(path, str) or not path or path in files:
        return False
    files.append(path)
    return True


@dataclass(frozen=True)
class WireProtocol:
    """Everything that differs between the two agent CLIs.

    ``build_args`` receives the options plus the path of the written
    instructions file (only when ``instructions_via_file`` is set).
    """

    backend: Backend
    executable: Callable[[], str]
    build_args: Callable[[BackendOptions, Path | None], list[str]]
    new_accumulator: Callable[[], StreamAccumulator]
    instructions_via_file: bool = False
