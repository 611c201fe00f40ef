"""Configuration management for Shipyard MCP."""

from __future__ import annotations

import json
import re
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_SYNC_INTERVAL_MS = 30_000
_REPO_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


class ShipyardSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    repo_root: Path = Field(default=Path("."), validation_alias="SHIPYARD_REPO_ROOT")
    tasks_file: Path = Field(default=Path("tasks.yaml"), validation_alias="SHIPYARD_TASKS_FILE")
    tasks_dir_name: str = Field(default=".tasks", validation_alias="SHIPYARD_TASKS_DIR")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="SHIPYARD_LOG_LEVEL")

    github_token: str | None = Field(default=None, validation_alias="GITHUB_TOKEN")
    github_repo: str | None = Field(default=None, validation_alias="GITHUB_REPO")
    github_api_url: str = Field(default="https://api.github.com", validation_alias="GITHUB_API_URL")
    credentials_file: Path = Field(
        default=Path("~/.shipyard/config.json"), validation_alias="SHIPYARD_CREDENTIALS_FILE"
    )

    reviewer_path: str | None = Field(default=None, validation_alias="SHIPYARD_REVIEWER_PATH")
    git_timeout_ms: int = Field(default=15_000, validation_alias="SHIPYARD_GIT_TIMEOUT_MS")
    worktree_timeout_ms: int = Field(default=30_000, validation_alias="SHIPYARD_WORKTREE_TIMEOUT_MS")
    push_timeout_ms: int = Field(default=30_000, validation_alias="SHIPYARD_PUSH_TIMEOUT_MS")
    review_timeout_ms: int = Field(default=300_000, validation_alias="SHIPYARD_REVIEW_TIMEOUT_MS")
    github_timeout_ms: int = Field(default=15_000, validation_alias="SHIPYARD_GITHUB_TIMEOUT_MS")
    diff_max_chars: int = Field(default=60_000, validation_alias="SHIPYARD_DIFF_MAX_CHARS")

    retention_hours: float = Field(default=24.0, validation_alias="SHIPYARD_RETENTION_HOURS")
    defer_cleanup: bool = Field(default=True, validation_alias="SHIPYARD_DEFER_CLEANUP")
    sync_interval_ms: int = Field(default=300_000, validation_alias="SHIPYARD_SYNC_INTERVAL_MS")
    auto_sync: bool = Field(default=False, validation_alias="SHIPYARD_AUTO_SYNC")
    review_on_stop: bool = Field(default=True, validation_alias="SHIPYARD_REVIEW_ON_STOP")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "SHIPYARD_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("github_repo")
    @classmethod
    def _validate_repo(cls, value: str | None) -> str | None:
        if value is None or value.strip() == "":
            return None
        value = value.strip()
        if not _REPO_PATTERN.match(value):
            raise ValueError("GITHUB_REPO must look like 'owner/name'")
        return value

    @field_validator(
        "git_timeout_ms",
        "worktree_timeout_ms",
        "push_timeout_ms",
        "review_timeout_ms",
        "github_timeout_ms",
        "diff_max_chars",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("timeouts and limits must be positive")
        return value

    @field_validator("sync_interval_ms")
    @classmethod
    def _clamp_sync_interval(cls, value: int) -> int:
        return max(value, MIN_SYNC_INTERVAL_MS)

    def resolve_github_token(self) -> str | None:
        """Return the tracker token from the environment, then the credentials file."""

        if self.github_token:
            return self.github_token
        path = self.credentials_file.expanduser()
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        token = payload.get("github_token") if isinstance(payload, dict) else None
        return token or None

    @property
    def tasks_root(self) -> Path:
        return self.repo_root / self.tasks_dir_name


@lru_cache(maxsize=1)
def get_settings() -> ShipyardSettings:
    """Return cached settings instance."""

    settings = ShipyardSettings()
    settings.repo_root = settings.repo_root.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    if not settings.tasks_file.is_absolute():
        settings.tasks_file = settings.repo_root / settings.tasks_file
    return settings


__all__ = ["MIN_SYNC_INTERVAL_MS", "ShipyardSettings", "get_settings"]
