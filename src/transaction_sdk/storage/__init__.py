"""Token storage backends and the settings-driven factory."""

from __future__ import annotations

from transaction_sdk.config import Settings, StorageProvider
from transaction_sdk.errors import ConfigurationError
from transaction_sdk.storage.base import (
    StorageStatistics,
    TokenRecord,
    TokenSearchCriteria,
    TokenStorage,
)
from transaction_sdk.storage.memory import InMemoryTokenStorage
from transaction_sdk.utils import Clock

__all__ = [
    "StorageProvider",
    "StorageStatistics",
    "TokenRecord",
    "TokenSearchCriteria",
    "TokenStorage",
    "InMemoryTokenStorage",
    "create_token_storage",
]


def _require(value: str | None, setting: str, provider: StorageProvider) -> str:
    if not value:
        raise ConfigurationError(
            f"TRANSACTION_SDK_{setting.upper()} is required for the {provider.value} provider"
        )
    return value


def create_token_storage(settings: Settings, clock: Clock | None = None) -> TokenStorage:
    """Build the backend selected by ``settings.storage_provider``.

    Driver modules are imported lazily so that only the selected backend's
    client library has to be importable.

    Raises:
        ConfigurationError: When the provider's connection setting is missing.
    """
    provider = settings.storage_provider

    if provider is StorageProvider.memory:
        return InMemoryTokenStorage(
            cleanup_interval=settings.cleanup_interval,
            enable_cleanup=settings.enable_automatic_cleanup,
            clock=clock,
        )

    if provider in (StorageProvider.postgresql, StorageProvider.sqlserver, StorageProvider.sqlite):
        from transaction_sdk.storage import sql

        if provider is StorageProvider.postgresql:
            url = _require(settings.postgres_url, "postgres_url", provider)
            return sql.PostgresTokenStorage(url, table_name=settings.token_table_name, clock=clock)
        if provider is StorageProvider.sqlserver:
            url = _require(settings.sqlserver_url, "sqlserver_url", provider)
            return sql.SqlServerTokenStorage(url, table_name=settings.token_table_name, clock=clock)
        url = _require(settings.sqlite_url, "sqlite_url", provider)
        return sql.SqlTokenStorage(url, table_name=settings.token_table_name, clock=clock)

    if provider is StorageProvider.mongodb:
        from transaction_sdk.storage.mongo import MongoTokenStorage

        return MongoTokenStorage(
            _require(settings.mongo_url, "mongo_url", provider),
            database=settings.mongo_database,
            collection_name=settings.token_table_name,
            clock=clock,
        )

    if provider is StorageProvider.redis:
        from transaction_sdk.storage.redis import RedisTokenStorage

        return RedisTokenStorage(
            _require(settings.redis_url, "redis_url", provider),
            key_prefix=settings.redis_key_prefix,
            clock=clock,
        )

    raise ConfigurationError(f"Unsupported storage provider: {provider}")
