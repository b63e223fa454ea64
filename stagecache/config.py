"""Configuration settings for stagecache.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default cache directory."""
    return Path.home() / ".cache" / "stagecache"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "stagecache" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the STAGECACHE_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="STAGECACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for layer blobs and mount caches",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for the cache index and build history",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description="Scratch directory for step execution (uses system default if not set)",
    )

    # Operational
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    shell: str = Field(
        default="/bin/sh",
        description="Shell used to run string commands",
    )

    # Concurrency
    max_concurrent_platforms: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Maximum platforms built at the same time",
    )
    max_concurrent_steps: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Maximum steps executed at the same time per platform",
    )

    # Timeouts (in seconds)
    step_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout for a single step command",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value

    @field_validator("shell")
    @classmethod
    def _absolute_shell(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"shell must be an absolute path: {value}")
        return value


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
