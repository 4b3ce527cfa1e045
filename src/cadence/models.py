"""Model alias table and backend detection."""

from __future__ import annotations

from dataclasses import dataclass

from cadence.types import Backend


@dataclass(frozen=True)
class ModelEntry:
    alias: str
    model_id: str
    backend: Backend


MODELS: tuple[ModelEntry, ...] = (
    ModelEntry("opus", "claude-opus-4-6", "claude"),
    ModelEntry("sonnet", "claude-sonnet-4-5-20250929", "claude"),
    ModelEntry("haiku", "claude-haiku-4-5-20251001", "claude"),
    ModelEntry("codex", "gpt-5.3-codex", "codex"),
    ModelEntry("5.3", "gpt-5.3-codex", "codex"),
    ModelEntry("5.2", "gpt-5.2-codex", "codex"),
    ModelEntry("5.1", "gpt-5.1-codex", "codex"),
    ModelEntry("5.1-mini", "gpt-5.1-codex-mini", "codex"),
    ModelEntry("5.1-max", "gpt-5.1-codex-max", "codex"),
    ModelEntry("gpt5", "gpt-5-codex", "codex"),
    ModelEntry("gpt5-mini", "gpt-5-codex-mini", "codex"),
)


def detect_backend(model_id: str) -> Backend:
    """Pick the CLI that serves *model_id*. Anything not OpenAI-shaped goes to claude."""
    lower = model_id.lower()
    if lower.startswith("gpt-") or "codex" in lower:
        return "codex"
    return "claude"


def resolve_model(name: str) -> tuple[str, Backend]:
    """Resolve user input to ``(model_id, backend)``.

    Tries exact alias, then exact model id, then substring of a model id,
    then passes the raw string through.
    """
    lower = name.lower()
    for entry in MODELS:
        if entry.alias.lower() == lower:
            return entry.model_id, entry.backend
    for entry in MODELS:
        if entry.model_id.lower() == lower:
            return entry.model_id, entry.backend
    for entry in MODELS:
        if lower in entry.model_id.lower():
            return entry.model_id, entry.backend
    return name, detect_backend(name)
