"""Data models for cadence."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, TypeAlias

Backend: TypeAlias = Literal["claude", "codex"]


@dataclass(frozen=True)
class ContextKey:
    """A conversation scope: a surface (channel) plus an optional sub-scope (thread)."""

    surface_id: str
    sub_scope_id: str | None = None

    def __str__(self) -> str:
        return f"{self.surface_id}-{self.sub_scope_id or 'main'}"

    @property
    def is_sub_scope(self) -> bool:
        return self.sub_scope_id is not None


@dataclass
class ScheduledCallback:
    delay_ms: int
    prompt: str


@dataclass
class HeartbeatConfig:
    enabled: bool
    interval_ms: int
    prompt: str

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "interval_ms": self.interval_ms, "prompt": self.prompt}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> HeartbeatConfig:
        return cls(
            enabled=bool(raw.get("enabled", False)),
            interval_ms=int(raw.get("interval_ms", 0)),
            prompt=str(raw.get("prompt", "")),
        )


@dataclass
class UsageLimit:
    """The most recent rate-limit hit, for usage reporting."""

    context: str
    detected_at: datetime
    delay_ms: int
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "context": self.context,
            "detected_at": self.detected_at.isoformat(),
            "delay_ms": self.delay_ms,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> UsageLimit:
        return cls(
            context=str(raw.get("context", "")),
            detected_at=datetime.fromisoformat(raw["detected_at"]),
            delay_ms=int(raw.get("delay_ms", 0)),
            message=str(raw.get("message", "")),
        )


@dataclass
class ContextRecord:
    """Persisted per-context state (one entry of the flat snapshot)."""

    session_id: str
    surface_id: str
    sub_scope_id: str | None
    surface_name: str
    created_at: str
    message_count: int = 0  # conversational runs only; decides whether to resume
    autonomous_runs: int = 0
    total_cost_usd: float = 0.0
    model: str | None = None
    plan_mode: bool = False
    heartbeat: HeartbeatConfig | None = None

    @property
    def key(self) -> ContextKey:
        return ContextKey(self.surface_id, self.sub_scope_id)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "session_id": self.session_id,
            "surface_id": self.surface_id,
            "sub_scope_id": self.sub_scope_id,
            "surface_name": self.surface_name,
            "created_at": self.created_at,
            "message_count": self.message_count,
            "autonomous_runs": self.autonomous_runs,
            "total_cost_usd": self.total_cost_usd,
            "plan_mode": self.plan_mode,
        }
        if self.model is not None:
            d["model"] = self.model
        if self.heartbeat is not None:
            d["heartbeat"] = self.heartbeat.to_dict()
        return d

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ContextRecord:
        hb = raw.get("heartbeat")
        return cls(
            session_id=raw["session_id"],
            surface_id=raw["surface_id"],
            sub_scope_id=raw.get("sub_scope_id"),
            surface_name=raw.get("surface_name", "default"),
            created_at=raw.get("created_at", ""),
            message_count=int(raw.get("message_count", 0)),
            autonomous_runs=int(raw.get("autonomous_runs", 0)),
            total_cost_usd=float(raw.get("total_cost_usd", 0.0)),
            model=raw.get("model"),
            plan_mode=bool(raw.get("plan_mode", False)),
            heartbeat=HeartbeatConfig.from_dict(hb) if isinstance(hb, dict) else None,
        )


@dataclass
class RunRequest:
    context: ContextKey
    prompt: str
    surface_name: str = "default"  # names the working directory under base_dir
    continue_session: bool = False
    is_autonomous: bool = False  # heartbeat tick or callback fire
    model_override: str | None = None
    image_inputs: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RunResult:
    text: str
    duration_ms: float
    cost_usd: float
    is_error: bool
    session_id: str
    created_files: tuple[str, ...] = ()
    image_files: tuple[str, ...] = ()
    upload_files: tuple[str, ...] = ()
    callbacks: tuple[ScheduledCallback, ...] = ()
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def attachments(self) -> list[str]:
        """Images the agent wrote plus files it asked to upload, deduplicated."""
        return list(dict.fromkeys([*self.image_files, *self.upload_files]))
