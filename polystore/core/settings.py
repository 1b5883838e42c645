# ==============================================================================
# SETTINGS CONFIGURATION - Environment Management
# ==============================================================================
# Pydantic Settings for type-safe library defaults
# Per-connection config mappings override these values
# ==============================================================================

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseType(str, Enum):
    """
    Database types shipped with polystore.

    Attributes:
        MONGODB: Document store (Motor)
        POSTGRES: Relational store (SQLAlchemy + asyncpg)
        COCKROACHDB: PostgreSQL wire-compatible relational store
        TIMESCALE: PostgreSQL-based time-series store
        SQLITE: File or in-memory relational store (aiosqlite)
        NEO4J: Property graph store
        REDIS: Key-value store
    """
    MONGODB = "mongodb"
    POSTGRES = "postgres"
    COCKROACHDB = "cockroachdb"
    TIMESCALE = "timescale"
    SQLITE = "sqlite"
    NEO4J = "neo4j"
    REDIS = "redis"


class Settings(BaseSettings):
    """
    Library Settings Configuration.

    Manages defaults with type validation. Values are read from
    ``POLYSTORE_``-prefixed environment variables or a ``.env`` file.

    Example:
        >>> from polystore.core.settings import settings
        >>> print(settings.DB_POOL_SIZE)
        5
    """

    model_config = SettingsConfigDict(
        env_prefix="POLYSTORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # --------------------------------------------------------------------------
    # GENERAL
    # --------------------------------------------------------------------------
    DEBUG: bool = Field(
        default=False,
        description="Echo compiled queries and driver statements"
    )

    # --------------------------------------------------------------------------
    # CONNECTION POOL SETTINGS
    # --------------------------------------------------------------------------
    DB_POOL_SIZE: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Native driver connection pool size"
    )
    DB_MAX_OVERFLOW: int = Field(
        default=10,
        ge=0,
        le=100,
        description="Maximum overflow connections beyond pool size"
    )
    DB_POOL_TIMEOUT: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Connection pool timeout in seconds"
    )
    DB_POOL_RECYCLE: int = Field(
        default=1800,
        ge=60,
        description="Connection recycle time in seconds"
    )

    # --------------------------------------------------------------------------
    # QUERY & BATCH SETTINGS
    # --------------------------------------------------------------------------
    BATCH_SIZE: int = Field(
        default=500,
        ge=1,
        description="Items submitted per native batch call"
    )
    BATCH_MAX_ATTEMPTS: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Submission rounds for items reported as unprocessed"
    )
    BATCH_RETRY_BACKOFF: float = Field(
        default=0.05,
        ge=0.0,
        description="Base delay in seconds between unprocessed-item rounds"
    )
    REDIS_SCAN_COUNT: int = Field(
        default=500,
        ge=1,
        description="COUNT hint for Redis SCAN iterations"
    )

    # --------------------------------------------------------------------------
    # LOGGING CONFIGURATION
    # --------------------------------------------------------------------------
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        """Upper-case and validate the log level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached Settings instance.

    Uses lru_cache to ensure settings are only loaded once.

    Returns:
        Settings: Cached settings instance
    """
    return Settings()


# Module-level settings instance for convenient imports
settings = get_settings()
