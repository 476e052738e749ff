"""
Configuration Management for Mealbot

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Process bootstrap reads these settings once and hands an opened ledger
to its collaborators; nothing else consults the environment.
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackendType(str, Enum):
    """Supported ledger backends."""
    JSON = "json"  # In-memory ledger with a JSON snapshot on disk
    SQL = "sql"    # Relational ledger (SQLite or any SQLAlchemy URL)


class LedgerSettings(BaseSettings):
    """Storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MEALBOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    backend: BackendType = Field(
        default=BackendType.JSON,
        description="Which ledger backend to use"
    )
    database_path: str = Field(
        default="mealbot.json",
        min_length=1,
        description="Snapshot file, sqlite path, ':memory:' or SQLAlchemy URL"
    )

    # In-memory backend tuning
    flush_queue_size: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Capacity of the pending flush signal queue"
    )
    flush_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per snapshot write before the flush is abandoned"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Minimum log level"
    )
    log_json: bool = Field(
        default=True,
        description="Render logs as JSON (False for console output)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


@lru_cache()
def get_settings() -> LedgerSettings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return LedgerSettings()
