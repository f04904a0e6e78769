"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
ether.fi monitoring storage layer, loading and validating environment
variables at startup. Every option has a default that works against a
local PostgreSQL with zero configuration.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL

from etherfi_monitor.storage.pool import PoolConfig
from etherfi_monitor.storage.retry import RetryPolicy

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection and pool settings."""

    model_config = SettingsConfigDict(env_prefix="DB_", extra="ignore")

    url_override: str | None = Field(
        default=None,
        alias="DATABASE_URL",
        description="Full connection URL; takes precedence over the DB_* parts",
    )
    host: str = Field(default="localhost", alias="DB_HOST")
    port: int = Field(default=5432, alias="DB_PORT", ge=1, le=65535)
    name: str = Field(default="etherfi_anomaly", alias="DB_NAME")
    user: str = Field(default="postgres", alias="DB_USER")
    password: SecretStr = Field(default=SecretStr("postgres"), alias="DB_PASSWORD")
    ssl: bool = Field(
        default=False,
        alias="DB_SSL",
        description="Require TLS for PostgreSQL connections",
    )

    pool_min: int = Field(default=2, alias="DB_POOL_MIN", ge=0, le=1000)
    pool_max: int = Field(default=20, alias="DB_POOL_MAX", ge=1, le=1000)
    idle_timeout_seconds: float = Field(default=30.0, alias="DB_IDLE_TIMEOUT_SECONDS", gt=0)
    connection_timeout_seconds: float = Field(
        default=5.0,
        alias="DB_CONNECTION_TIMEOUT_SECONDS",
        gt=0,
        description="How long an acquire may wait for a free connection",
    )
    statement_timeout_seconds: float = Field(
        default=30.0,
        alias="DB_STATEMENT_TIMEOUT_SECONDS",
        gt=0,
        description="Server-side statement timeout",
    )
    query_timeout_seconds: float = Field(
        default=30.0,
        alias="DB_QUERY_TIMEOUT_SECONDS",
        gt=0,
        description="Client-side query timeout",
    )
    max_uses_per_connection: int = Field(
        default=7500,
        alias="DB_MAX_USES_PER_CONNECTION",
        ge=1,
        description="Statements served before a connection is retired",
    )
    echo: bool = Field(default=False, alias="DB_ECHO", description="Echo SQL statements")

    @field_validator("url_override")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate database URL format."""
        if v is None:
            return v
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        if v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    @model_validator(mode="after")
    def validate_pool_bounds(self) -> DatabaseSettings:
        if self.pool_min > self.pool_max:
            raise ValueError("DB_POOL_MIN must not exceed DB_POOL_MAX")
        return self

    def url(self) -> str:
        """Async SQLAlchemy connection URL."""
        if self.url_override:
            return self.url_override
        return URL.create(
            "postgresql+asyncpg",
            username=self.user,
            password=self.password.get_secret_value(),
            host=self.host,
            port=self.port,
            database=self.name,
        ).render_as_string(hide_password=False)

    def pool_config(self) -> PoolConfig:
        return PoolConfig(
            min_size=self.pool_min,
            max_size=self.pool_max,
            idle_timeout=self.idle_timeout_seconds,
            connection_timeout=self.connection_timeout_seconds,
            max_uses_per_connection=self.max_uses_per_connection,
            statement_timeout=self.statement_timeout_seconds,
            query_timeout=self.query_timeout_seconds,
        )


class RetrySettings(BaseSettings):
    """Backoff settings for reconnects and other safely repeatable operations."""

    model_config = SettingsConfigDict(env_prefix="DB_RETRY_", extra="ignore")

    max_attempts: int = Field(default=3, alias="DB_RETRY_MAX_ATTEMPTS", ge=1, le=100)
    initial_delay_seconds: float = Field(
        default=1.0, alias="DB_RETRY_INITIAL_DELAY_SECONDS", ge=0.0
    )
    backoff_multiplier: float = Field(default=2.0, alias="DB_RETRY_BACKOFF_MULTIPLIER", ge=1.0)

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay_seconds,
            backoff_multiplier=self.backoff_multiplier,
        )


class RetentionSettings(BaseSettings):
    """Retention job schedule. The windows themselves are fixed."""

    model_config = SettingsConfigDict(env_prefix="RETENTION_", extra="ignore")

    interval_hours: float = Field(
        default=24.0,
        alias="RETENTION_INTERVAL_HOURS",
        gt=0,
        le=24 * 30,
        description="Hours between cleanup runs in `maintain` mode",
    )

    @property
    def interval_seconds(self) -> float:
        return self.interval_hours * 3600


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from etherfi_monitor.config import get_settings

        settings = get_settings()
        print(settings.database.url())
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    retry: RetrySettings = Field(
        default_factory=lambda: RetrySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    retention: RetentionSettings = Field(
        default_factory=lambda: RetentionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        db = self.database
        return {
            "database_url": self._redact_url(db.url()),
            "database": {
                "ssl": str(db.ssl),
                "pool_min": str(db.pool_min),
                "pool_max": str(db.pool_max),
                "idle_timeout_seconds": str(db.idle_timeout_seconds),
                "connection_timeout_seconds": str(db.connection_timeout_seconds),
                "statement_timeout_seconds": str(db.statement_timeout_seconds),
                "max_uses_per_connection": str(db.max_uses_per_connection),
            },
            "retry": {
                "max_attempts": str(self.retry.max_attempts),
                "initial_delay_seconds": str(self.retry.initial_delay_seconds),
                "backoff_multiplier": str(self.retry.backoff_multiplier),
            },
            "retention_interval_hours": str(self.retention.interval_hours),
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.rindex("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
