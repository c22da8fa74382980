"""Configuration management for review-fleet."""

from __future__ import annotations

import hashlib
import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

PRIORITY_THRESHOLDS = ("all", "low", "normal", "high", "critical")


def default_state_dir() -> Path:
    """Resolve the state directory from the XDG layout."""

    xdg = os.environ.get("XDG_STATE_HOME")
    if xdg:
        return Path(xdg) / "review-fleet"
    return Path.home() / ".local" / "state" / "review-fleet"


def _split_list(value: str) -> list[str]:
    parts: list[str] = []
    for chunk in value.split(os.pathsep):
        parts.extend(part.strip() for part in chunk.split(","))
    return [part for part in parts if part]


class ReviewSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    state_dir: Path = Field(default_factory=default_state_dir, validation_alias="REVIEW_FLEET_STATE_DIR")
    projects_dir: Path = Field(
        default=Path("~/projects"), validation_alias="REVIEW_FLEET_PROJECTS_DIR"
    )
    repos: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), validation_alias="REVIEW_FLEET_REPOS"
    )
    mode: Literal["plan", "apply"] = Field(default="plan", validation_alias="REVIEW_FLEET_MODE")
    dry_run: bool = Field(default=False, validation_alias="REVIEW_FLEET_DRY_RUN")
    parallel: int = Field(default=4, validation_alias="REVIEW_FLEET_PARALLEL")
    max_repos: int | None = Field(default=None, validation_alias="REVIEW_FLEET_MAX_REPOS")
    max_runtime_minutes: float | None = Field(
        default=None, validation_alias="REVIEW_FLEET_MAX_RUNTIME"
    )
    max_questions: int | None = Field(default=None, validation_alias="REVIEW_FLEET_MAX_QUESTIONS")
    priority_threshold: str = Field(default="all", validation_alias="REVIEW_FLEET_THRESHOLD")
    poll_interval_seconds: float = Field(
        default=2.0, validation_alias="REVIEW_FLEET_POLL_INTERVAL"
    )
    stall_threshold_seconds: float = Field(
        default=30.0, validation_alias="REVIEW_FLEET_STALL_THRESHOLD"
    )
    prefetch_window: int = Field(default=2, validation_alias="REVIEW_FLEET_PREFETCH_WINDOW")
    keep_worktrees: bool = Field(default=False, validation_alias="REVIEW_FLEET_KEEP_WORKTREES")
    recent_review_days: int = Field(default=7, validation_alias="REVIEW_FLEET_RECENT_REVIEW_DAYS")
    agent_command: str = Field(default="claude", validation_alias="REVIEW_FLEET_AGENT_COMMAND")
    agent_flags: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("-p", "--output-format", "stream-json", "--verbose"),
        validation_alias="REVIEW_FLEET_AGENT_FLAGS",
    )
    session_prefix: str = Field(default="rf-", validation_alias="REVIEW_FLEET_SESSION_PREFIX")
    driver: Literal["auto", "tmux", "subprocess"] = Field(
        default="auto", validation_alias="REVIEW_FLEET_DRIVER"
    )
    pattern_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("patterns"),), validation_alias="REVIEW_FLEET_PATTERN_PATHS"
    )
    journal_path: Path | None = Field(default=None, validation_alias="REVIEW_FLEET_JOURNAL_PATH")
    log_level: str = Field(default="INFO", validation_alias="REVIEW_FLEET_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "REVIEW_FLEET_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("repos", "agent_flags", mode="before")
    @classmethod
    def _parse_string_list(cls, value):
        if value is None or value == "":
            return ()
        if isinstance(value, (list, tuple)):
            return tuple(str(item).strip() for item in value if str(item).strip())
        if isinstance(value, str):
            return tuple(_split_list(value))
        raise TypeError("Expected a list of strings or a separated string")

    @field_validator("pattern_paths", mode="before")
    @classmethod
    def _parse_pattern_paths(cls, value):
        if value is None or value == "":
            return (Path("patterns"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("patterns"),)
        raise TypeError(
            "REVIEW_FLEET_PATTERN_PATHS must be a list of paths or a path-separated string"
        )

    @field_validator("repos")
    @classmethod
    def _validate_repos(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for repo in value:
            owner, _, name = repo.partition("/")
            if not owner or not name or "/" in name:
                raise ValueError(f"Repository '{repo}' must look like owner/name")
        return value

    @field_validator("parallel", "prefetch_window", "recent_review_days")
    @classmethod
    def _validate_non_negative(cls, value: int, info) -> int:
        minimum = 1 if info.field_name == "parallel" else 0
        if value < minimum:
            raise ValueError(f"{info.field_name} must be >= {minimum}")
        return value

    @field_validator("max_repos", "max_runtime_minutes", "max_questions")
    @classmethod
    def _validate_ceiling(cls, value):
        if value is not None and value <= 0:
            raise ValueError("Budget ceilings must be positive when set")
        return value

    @field_validator("priority_threshold")
    @classmethod
    def _validate_threshold(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in PRIORITY_THRESHOLDS:
            raise ValueError(f"priority_threshold must be one of {', '.join(PRIORITY_THRESHOLDS)}")
        return normalized

    @field_validator("poll_interval_seconds", "stall_threshold_seconds")
    @classmethod
    def _validate_positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Intervals must be positive")
        return value

    @property
    def review_dir(self) -> Path:
        return self.state_dir / "review"

    def config_hash(self) -> str:
        """Return a stable digest of the settings that decide what a run does."""

        payload = {
            "mode": self.mode,
            "repos": sorted(self.repos),
            "priority_threshold": self.priority_threshold,
            "parallel": self.parallel,
            "max_repos": self.max_repos,
            "max_runtime_minutes": self.max_runtime_minutes,
            "max_questions": self.max_questions,
        }
        encoded = json.dumps(payload, sort_keys=True).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()[:16]


@lru_cache(maxsize=1)
def get_settings() -> ReviewSettings:
    """Return cached settings instance."""

    settings = ReviewSettings()
    settings.state_dir = settings.state_dir.expanduser().resolve()
    settings.projects_dir = settings.projects_dir.expanduser().resolve()
    settings.pattern_paths = tuple(path.expanduser().resolve() for path in settings.pattern_paths)
    if settings.journal_path is not None:
        settings.journal_path = settings.journal_path.expanduser().resolve()
    return settings


__all__ = ["PRIORITY_THRESHOLDS", "ReviewSettings", "default_state_dir", "get_settings"]
