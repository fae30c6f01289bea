"""Tests for transaction_sdk.config."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import timedelta

import pytest
from pydantic import ValidationError

from transaction_sdk.config import DEFAULT_HASH_SALT, Settings, StorageProvider, get_settings


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestDefaults:
    def test_defaults(self) -> None:
        settings = Settings(_env_file=None)
        assert settings.encryption_key is None
        assert settings.hash_salt == DEFAULT_HASH_SALT
        assert settings.hash_iterations == 100_000
        assert settings.default_token_expiration == timedelta(days=30)
        assert settings.storage_provider is StorageProvider.memory
        assert settings.token_table_name == "secure_tokens"
        assert settings.redis_key_prefix == "txsdk:"
        assert settings.cleanup_interval == timedelta(hours=6)
        assert settings.default_transaction_timeout == timedelta(seconds=30)
        assert settings.generate_secure_tokens is True
        assert settings.log_level == "INFO"

    def test_encryption_key_is_masked(self) -> None:
        settings = Settings(_env_file=None, encryption_key="super-secret")
        assert "super-secret" not in repr(settings)
        assert settings.encryption_key is not None
        assert settings.encryption_key.get_secret_value() == "super-secret"


class TestEnvironment:
    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TRANSACTION_SDK_STORAGE_PROVIDER", "redis")
        monkeypatch.setenv("TRANSACTION_SDK_REDIS_URL", "redis://cache:6379/1")
        monkeypatch.setenv("TRANSACTION_SDK_HASH_ITERATIONS", "5000")
        monkeypatch.setenv("TRANSACTION_SDK_GENERATE_SECURE_TOKENS", "false")
        settings = Settings(_env_file=None)
        assert settings.storage_provider is StorageProvider.redis
        assert settings.redis_url == "redis://cache:6379/1"
        assert settings.hash_iterations == 5000
        assert settings.generate_secure_tokens is False

    def test_iso_durations(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TRANSACTION_SDK_DEFAULT_TRANSACTION_TIMEOUT", "PT45S")
        monkeypatch.setenv("TRANSACTION_SDK_CLEANUP_INTERVAL", "PT1H")
        settings = Settings(_env_file=None)
        assert settings.default_transaction_timeout == timedelta(seconds=45)
        assert settings.cleanup_interval == timedelta(hours=1)

    def test_env_file(self, tmp_path) -> None:
        env_file = tmp_path / ".env"
        env_file.write_text("TRANSACTION_SDK_ENVIRONMENT=staging\n", encoding="utf-8")
        assert Settings(_env_file=env_file).environment == "staging"


class TestValidation:
    def test_log_level_normalised(self) -> None:
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_level="LOUD")

    def test_invalid_provider(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, storage_provider="cassandra")

    @pytest.mark.parametrize("field", ["cleanup_interval", "default_transaction_timeout"])
    def test_non_positive_interval(self, field: str) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: timedelta(0)})

    def test_non_positive_iterations(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, hash_iterations=0)


class TestGetSettings:
    def test_cached(self) -> None:
        assert get_settings() is get_settings()

    def test_cache_clear_reloads(self, monkeypatch: pytest.MonkeyPatch) -> None:
        first = get_settings()
        monkeypatch.setenv("TRANSACTION_SDK_ENVIRONMENT", "qa")
        assert get_settings() is first
        get_settings.cache_clear()
        assert get_settings().environment == "qa"
