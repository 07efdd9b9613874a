"""Configuration management for Herd MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class HerdSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    state_dir: Path = Field(default=Path("./.herd"), validation_alias="HERD_STATE_DIR")
    global_config_dir: Path = Field(
        default=Path("~/.config/herd"), validation_alias="HERD_GLOBAL_CONFIG_DIR"
    )
    repo_path: Path = Field(default=Path("."), validation_alias="HERD_REPO_PATH")
    tmux_path: str | None = Field(default=None, validation_alias="TMUX_PATH")
    poll_interval_ms: int = Field(default=500, validation_alias="HERD_POLL_INTERVAL_MS")
    capture_lines: int = Field(default=30, validation_alias="HERD_CAPTURE_LINES")
    approval_debounce_ms: int = Field(
        default=2000, validation_alias="HERD_APPROVAL_DEBOUNCE_MS"
    )
    completion_method: str = Field(default="hybrid", validation_alias="HERD_COMPLETION_METHOD")
    auto_approve: bool = Field(default=True, validation_alias="HERD_AUTO_APPROVE")
    log_level: str = Field(default="INFO", validation_alias="HERD_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "HERD_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("poll_interval_ms", "capture_lines")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Polling interval and capture lines must be >= 1")
        return value

    @field_validator("approval_debounce_ms")
    @classmethod
    def _validate_debounce(cls, value: int) -> int:
        if value < 0:
            raise ValueError("HERD_APPROVAL_DEBOUNCE_MS must be >= 0")
        return value

    @property
    def workers_path(self) -> Path:
        return self.state_dir / "workers.json"

    @property
    def batches_dir(self) -> Path:
        return self.state_dir / "batches"

    @property
    def audit_log_path(self) -> Path:
        return self.state_dir / "auto-approve-audit.jsonl"

    @property
    def events_dir(self) -> Path:
        return self.state_dir / "events"


@lru_cache(maxsize=1)
def get_settings() -> HerdSettings:
    """Return cached settings instance."""

    settings = HerdSettings()
    settings.state_dir = settings.state_dir.expanduser().resolve()
    settings.global_config_dir = settings.global_config_dir.expanduser().resolve()
    settings.repo_path = settings.repo_path.expanduser().resolve()
    return settings


__all__ = ["HerdSettings", "get_settings"]
