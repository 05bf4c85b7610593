"""Engine settings for category-spine.

All fields can be set via ``CATSPINE_*`` environment variables (e.g.
``CATSPINE_WRITE_TIMEOUT_SECONDS=0.5``) or a ``.env`` file.

Fields
──────
storage_backend           : ``memory`` or ``sqlite``
sqlite_path               : Database file for the sqlite backend
write_timeout_seconds     : Budget a persistence write is raced against
job_log_cap               : Max log lines kept on a job record
recent_jobs_limit         : Default size of the recent-jobs listing
chunk_size                : Keys per frozen chunk
chunk_max_retries         : Failed attempts tolerated before a chunk is skipped
inter_chunk_delay_seconds : Pause between chunk ticks (rate limiting)
artifact_ttl_days         : How long cached stage artifacts stay valid
log_level / log_format    : structlog configuration

Example:
    >>> from category_spine.core.settings import get_settings
    >>> settings = get_settings()
    >>> settings.chunk_size
    20
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from category_spine.core.errors import ConfigError


class StorageBackend(str, Enum):
    """Key-value backend selection."""

    MEMORY = "memory"
    SQLITE = "sqlite"


class CategorySpineSettings(BaseSettings):
    """Centralized configuration for the orchestration engine."""

    model_config = SettingsConfigDict(
        env_prefix="CATSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Storage ──────────────────────────────────────────────────
    storage_backend: StorageBackend = Field(default=StorageBackend.MEMORY)
    sqlite_path: Path = Field(
        default_factory=lambda: Path.home() / ".category-spine" / "store.db",
        description="SQLite file used when storage_backend=sqlite",
    )
    write_timeout_seconds: float = Field(default=0.25, gt=0)

    # ── Job ledger ───────────────────────────────────────────────
    job_log_cap: int = Field(default=200, ge=1)
    recent_jobs_limit: int = Field(default=20, ge=1)

    # ── Chunked jobs ─────────────────────────────────────────────
    chunk_size: int = Field(default=20, ge=1)
    chunk_max_retries: int = Field(default=2, ge=0)
    inter_chunk_delay_seconds: float = Field(default=1.0, ge=0)

    # ── Artifact cache ───────────────────────────────────────────
    artifact_ttl_days: float = Field(default=7, gt=0)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        if value not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return value

    @property
    def artifact_ttl_seconds(self) -> float:
        return self.artifact_ttl_days * 24 * 60 * 60


_settings_cache: dict[str, CategorySpineSettings] = {}


def get_settings(*, _force_reload: bool = False) -> CategorySpineSettings:
    """Load, validate, and cache a :class:`CategorySpineSettings` instance.

    Raises:
        ConfigError: an environment value failed validation.
    """
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    try:
        settings = CategorySpineSettings()
    except ValidationError as e:
        raise ConfigError(f"Invalid CATSPINE_* settings: {e}", cause=e) from e
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()


__all__ = [
    "StorageBackend",
    "CategorySpineSettings",
    "get_settings",
    "clear_settings_cache",
]
