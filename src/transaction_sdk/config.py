"""SDK settings loaded from the environment using pydantic-settings."""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from functools import lru_cache

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["StorageProvider", "Settings", "get_settings"]

DEFAULT_HASH_SALT = "TRANSACTION_SDK_DEFAULT_SALT"


class StorageProvider(str, Enum):
    """Token storage backends selectable through configuration."""

    memory = "memory"
    postgresql = "postgresql"
    sqlserver = "sqlserver"
    sqlite = "sqlite"
    mongodb = "mongodb"
    redis = "redis"


class Settings(BaseSettings):
    """Settings read from ``TRANSACTION_SDK_*`` environment variables."""

    # Security
    encryption_key: SecretStr | None = Field(
        default=None, description="Secret the token master key is derived from"
    )
    hash_salt: str = Field(
        default=DEFAULT_HASH_SALT, description="Fixed salt used for master key derivation"
    )
    hash_iterations: int = Field(
        default=100_000, ge=1, description="PBKDF2 iterations for key derivation and data hashes"
    )

    # Tokens
    default_token_expiration: timedelta | None = Field(
        default=timedelta(days=30),
        description="Lifetime applied when generate_token() gets no explicit expiration",
    )

    # Storage
    storage_provider: StorageProvider = Field(
        default=StorageProvider.memory, description="Token storage backend"
    )
    postgres_url: str | None = Field(
        default=None, description="SQLAlchemy async URL, e.g. postgresql+asyncpg://..."
    )
    sqlserver_url: str | None = Field(
        default=None, description="SQLAlchemy async URL, e.g. mssql+aioodbc://..."
    )
    sqlite_url: str | None = Field(
        default=None, description="SQLAlchemy async URL, e.g. sqlite+aiosqlite:///tokens.db"
    )
    mongo_url: str | None = Field(default=None, description="MongoDB connection string")
    mongo_database: str = Field(default="transaction_sdk", description="MongoDB database name")
    token_table_name: str = Field(
        default="secure_tokens", description="Table / collection holding token records"
    )
    redis_url: str | None = Field(default=None, description="Redis connection URL")
    redis_key_prefix: str = Field(default="txsdk:", description="Prefix for every Redis key")
    enable_automatic_cleanup: bool = Field(
        default=True, description="Run periodic expiry cleanup in the in-memory backend"
    )
    cleanup_interval: timedelta = Field(
        default=timedelta(hours=6), description="Interval between automatic cleanups"
    )

    # Pipeline
    default_transaction_timeout: timedelta = Field(
        default=timedelta(seconds=30),
        description="Timeout applied to transactions that do not set their own",
    )
    generate_secure_tokens: bool = Field(
        default=True, description="Mint a secure token for every successful transaction"
    )

    # Runtime
    environment: str = Field(default="production", description="Deployment environment name")
    log_level: str = Field(default="INFO", description="Logging level")
    json_logs: bool = Field(default=False, description="Render logs as JSON lines")

    model_config = SettingsConfigDict(
        env_prefix="TRANSACTION_SDK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("cleanup_interval", "default_transaction_timeout")
    @classmethod
    def validate_positive_interval(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("Interval must be positive")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return the process-wide settings instance (loaded once)."""
    return Settings()
