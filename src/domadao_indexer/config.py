"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
DomaDAO indexer, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from domadao_indexer.ingestor.models import EventType

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class DomaApiSettings(BaseSettings):
    """Doma Poll API settings."""

    model_config = SettingsConfigDict(env_prefix="DOMA_API_", extra="ignore")

    base_url: str = Field(
        default="https://api-testnet.doma.xyz",
        alias="DOMA_API_BASE_URL",
        description="Doma API base URL",
    )
    api_key: SecretStr | None = Field(
        default=None,
        alias="DOMA_API_KEY",
        description="Doma API key (sent as Api-Key header)",
    )
    timeout_seconds: float = Field(
        default=30.0,
        alias="DOMA_API_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="Per-request timeout for feed calls",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("DOMA_API_BASE_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class PollSettings(BaseSettings):
    """Poll loop settings."""

    model_config = SettingsConfigDict(env_prefix="POLL_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="POLL_ENABLED",
        description="Run the poll consumer",
    )
    interval_seconds: float = Field(
        default=5.0,
        alias="POLL_INTERVAL_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Sleep between poll cycles",
    )
    batch_size: int = Field(
        default=100,
        alias="POLL_BATCH_SIZE",
        ge=1,
        le=1000,
        description="Maximum events requested per poll",
    )
    event_types: str | None = Field(
        default=None,
        alias="POLL_EVENT_TYPES",
        description="Comma-separated event type filter (all types when unset)",
    )
    finalized_only: bool = Field(
        default=True,
        alias="POLL_FINALIZED_ONLY",
        description="Only poll events from finalized blocks",
    )
    backoff_base_seconds: float = Field(
        default=1.0,
        alias="POLL_BACKOFF_BASE_SECONDS",
        gt=0.0,
        le=600.0,
        description="First retry delay after a transport error",
    )
    backoff_max_seconds: float = Field(
        default=60.0,
        alias="POLL_BACKOFF_MAX_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Cap on the transport-error retry delay",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        alias="POLL_BACKOFF_MULTIPLIER",
        gt=1.0,
        le=10.0,
        description="Growth factor between consecutive retry delays",
    )

    @field_validator("event_types")
    @classmethod
    def validate_event_types(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        for part in (p.strip() for p in v.split(",")):
            if part and part not in EventType._value2member_map_:
                raise ValueError(f"POLL_EVENT_TYPES contains unknown event type {part!r}")
        return v

    @property
    def event_type_list(self) -> tuple[str, ...]:
        if not self.event_types:
            return ()
        return tuple(p.strip() for p in self.event_types.split(",") if p.strip())


class IndexerSettings(BaseSettings):
    """Event indexer settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    max_attempts: int = Field(
        default=3,
        alias="INDEXER_MAX_ATTEMPTS",
        ge=1,
        le=100,
        description="Failed attempts after which an event is permanently failed",
    )


class ConsumerLockSettings(BaseSettings):
    """Single-consumer Redis lease settings."""

    model_config = SettingsConfigDict(env_prefix="CONSUMER_LOCK_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="CONSUMER_LOCK_ENABLED",
        description="Hold a Redis lease so only one consumer polls the cursor",
    )
    key: str = Field(
        default="domadao:poll-consumer:lock",
        alias="CONSUMER_LOCK_KEY",
        description="Redis key of the lease",
    )
    ttl_seconds: int = Field(
        default=60,
        alias="CONSUMER_LOCK_TTL_SECONDS",
        ge=5,
        le=3600,
        description="Lease TTL; renewed every cycle and every third of the TTL",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from domadao_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.poll.interval_seconds)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Nested configuration groups
    #
    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    doma_api: DomaApiSettings = Field(
        default_factory=lambda: DomaApiSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    poll: PollSettings = Field(
        default_factory=lambda: PollSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    consumer_lock: ConsumerLockSettings = Field(
        default_factory=lambda: ConsumerLockSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    shutdown_timeout_seconds: float = Field(
        default=30.0,
        alias="SHUTDOWN_TIMEOUT_SECONDS",
        gt=0.0,
        le=600.0,
        description="How long a stop request waits for the in-flight cycle",
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
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "doma_api": {
                "base_url": self.doma_api.base_url,
                "api_key": "(set)" if self.doma_api.api_key else "(not set)",
                "timeout_seconds": str(self.doma_api.timeout_seconds),
            },
            "poll": {
                "enabled": str(self.poll.enabled),
                "interval_seconds": str(self.poll.interval_seconds),
                "batch_size": str(self.poll.batch_size),
                "event_types": ",".join(self.poll.event_type_list) or "(all)",
                "finalized_only": str(self.poll.finalized_only),
                "backoff_max_seconds": str(self.poll.backoff_max_seconds),
            },
            "indexer": {
                "max_attempts": str(self.indexer.max_attempts),
            },
            "consumer_lock": {
                "enabled": str(self.consumer_lock.enabled),
                "key": self.consumer_lock.key,
                "ttl_seconds": str(self.consumer_lock.ttl_seconds),
            },
            "log_level": self.log_level,
            "shutdown_timeout_seconds": str(self.shutdown_timeout_seconds),
        }

    def validate_requirements(self) -> None:
        """Validate requirements for running the poll consumer.

        The consumer refuses to start without credentials for the feed.
        """
        if self.doma_api.api_key is None or not self.doma_api.api_key.get_secret_value():
            raise ValueError("DOMA_API_KEY is required to poll the Doma event feed")
        if self.poll.backoff_base_seconds > self.poll.backoff_max_seconds:
            raise ValueError("POLL_BACKOFF_BASE_SECONDS must not exceed POLL_BACKOFF_MAX_SECONDS")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
