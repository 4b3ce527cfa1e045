"""Centralized configuration — Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Environment variables override it
using ``__`` as the nested delimiter (e.g. ``AGENT__DEFAULT_MODEL=opus``).

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from cadence.config import get_settings

    s = get_settings()
    print(s.agent.default_model)
    print(s.state_file)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, ValidationError, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from cadence.errors import ConfigError

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models — reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class AgentConfig(_StrictModel):
    default_model: str = "claude-sonnet-4-5-20250929"
    claude_cli: str = "claude"
    codex_cli: str = "codex"


class HeartbeatSettings(_StrictModel):
    default_interval_minutes: int = 30
    no_work_sentinel: str = "[NO WORK]"
    rate_limit_buffer_ms: int = 120_000  # added after a parsed reset time
    rate_limit_patterns: list[str] = [
        "rate limit",
        "rate-limit",
        "usage limit",
        "hit your limit",
        "quota",
        "too many requests",
        "429",
        "overloaded",
    ]

    @field_validator("default_interval_minutes")
    @classmethod
    def validate_interval(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("default_interval_minutes must be positive")
        return v

    @field_validator("rate_limit_patterns")
    @classmethod
    def lowercase_patterns(cls, v: list[str]) -> list[str]:
        return [p.lower() for p in v if p.strip()]


class CallbackSettings(_StrictModel):
    max_hops: int | None = None  # None → unlimited chain depth


class PathsConfig(_StrictModel):
    base_dir: str = "projects"  # per-surface working directories live here
    state_file: str = "state.json"
    prompts_dir: str = "prompts"


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    agent: AgentConfig = AgentConfig()
    heartbeat: HeartbeatSettings = HeartbeatSettings()
    callbacks: CallbackSettings = CallbackSettings()
    paths: PathsConfig = PathsConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def base_dir(self) -> Path:
        return (self.project_root / self.paths.base_dir).resolve()

    @cached_property
    def state_file(self) -> Path:
        return (self.project_root / self.paths.state_file).resolve()

    @cached_property
    def prompts_dir(self) -> Path:
        return (self.project_root / self.paths.prompts_dir).resolve()


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton. Raises ConfigError when config.toml or env is invalid."""
    global _settings
    if _settings is None:
        try:
            _settings = Settings()
        except ValidationError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
