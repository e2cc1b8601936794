"""Configuration management for the auto-mode core."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10


class AutoModeSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    claude_cli_path: str | None = Field(default=None, validation_alias="CLAUDE_CLI_PATH")
    default_model: str | None = Field(default=None, validation_alias="AUTOMODE_DEFAULT_MODEL")
    default_profile: str | None = Field(default=None, validation_alias="AUTOMODE_DEFAULT_PROFILE")
    max_concurrency: int = Field(default=3, validation_alias="AUTOMODE_MAX_CONCURRENCY")
    grace_period: float = Field(default=5.0, validation_alias="AUTOMODE_GRACE_PERIOD")
    recent_output_chars: int = Field(default=4000, validation_alias="AUTOMODE_RECENT_OUTPUT_CHARS")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    # Path-separated in the environment, so pydantic-settings must not JSON-decode it.
    profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("profiles"),), validation_alias="AUTOMODE_PROFILE_PATHS"
    )
    log_level: str = Field(default="INFO", validation_alias="AUTOMODE_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "AUTOMODE_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if value is None or value == "":
            return (Path("profiles"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("profiles"),)
        raise TypeError("AUTOMODE_PROFILE_PATHS must be a list of paths or a path-separated string")

    @field_validator("max_concurrency")
    @classmethod
    def _validate_max_concurrency(cls, value: int) -> int:
        if not MIN_CONCURRENCY <= value <= MAX_CONCURRENCY:
            raise ValueError(
                f"AUTOMODE_MAX_CONCURRENCY must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}"
            )
        return value

    @field_validator("grace_period")
    @classmethod
    def _validate_grace_period(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("AUTOMODE_GRACE_PERIOD must be > 0")
        return value

    @field_validator("recent_output_chars")
    @classmethod
    def _validate_recent_output_chars(cls, value: int) -> int:
        if value < 1:
            raise ValueError("AUTOMODE_RECENT_OUTPUT_CHARS must be >= 1")
        return value


@lru_cache(maxsize=1)
def get_settings() -> AutoModeSettings:
    """Return cached settings instance."""

    settings = AutoModeSettings()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    return settings


__all__ = ["AutoModeSettings", "MAX_CONCURRENCY", "MIN_CONCURRENCY", "get_settings"]
