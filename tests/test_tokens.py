"""Tests for transaction_sdk.tokens."""

from __future__ import annotations

import json
from datetime import timedelta

import pytest
from pydantic import BaseModel

from conftest import TEST_ENCRYPTION_KEY, TEST_ITERATIONS, FakeClock
from transaction_sdk.config import Settings
from transaction_sdk.crypto import NONCE_SIZE, TAG_SIZE, CryptographyService
from transaction_sdk.errors import ConfigurationError, StorageUnavailableError, TokenInvalidError
from transaction_sdk.models import SecureToken
from transaction_sdk.storage.base import TokenStorage
from transaction_sdk.storage.memory import InMemoryTokenStorage
from transaction_sdk.tokens import EncryptedTokenStructure, SecureTokenGenerator
from transaction_sdk.utils import b64decode, b64encode


class Payment(BaseModel):
    account_id: str
    amount: int
    currency: str = "EUR"


class UnavailableStorage(InMemoryTokenStorage):
    async def store_token(self, token: SecureToken) -> None:
        raise StorageUnavailableError(self.backend_name, "connection refused")

    async def get_token(self, token_id: str) -> SecureToken | None:
        raise StorageUnavailableError(self.backend_name, "connection refused")


def _make_generator(
    storage: TokenStorage, clock: FakeClock, key: str = TEST_ENCRYPTION_KEY
) -> SecureTokenGenerator:
    return SecureTokenGenerator(
        crypto=CryptographyService(hash_iterations=TEST_ITERATIONS),
        storage=storage,
        encryption_key=key,
        key_iterations=TEST_ITERATIONS,
        clock=clock,
    )


def _envelope_json(token: str) -> dict:
    return json.loads(b64decode(token))


# ===========================================================================
# generate_token
# ===========================================================================


class TestGenerateToken:
    async def test_default_expiration_is_thirty_days(
        self, generator: SecureTokenGenerator, clock: FakeClock
    ) -> None:
        token = await generator.generate_token({"a": 1})
        assert token.created_at == clock.now
        assert token.expires_at == clock.now + timedelta(days=30)

    async def test_custom_expiration(self, generator: SecureTokenGenerator, clock: FakeClock) -> None:
        token = await generator.generate_token({"a": 1}, expiration=timedelta(hours=2))
        assert token.expires_at == clock.now + timedelta(hours=2)

    async def test_timestamps_truncated_to_seconds(self, generator: SecureTokenGenerator, clock: FakeClock) -> None:
        clock.advance(microseconds=654_321)
        token = await generator.generate_token("value")
        assert token.created_at.microsecond == 0
        assert token.expires_at is not None
        assert token.expires_at.microsecond == 0

    @pytest.mark.parametrize("expiration", [timedelta(0), timedelta(seconds=-1)])
    async def test_rejects_non_positive_expiration(
        self, generator: SecureTokenGenerator, expiration: timedelta
    ) -> None:
        with pytest.raises(ValueError):
            await generator.generate_token("value", expiration=expiration)

    async def test_token_is_persisted(self, generator: SecureTokenGenerator) -> None:
        token = await generator.generate_token({"a": 1}, metadata={"purpose": "receipt"})
        stored = await generator.storage.get_token(token.token_id)
        assert stored == token
        assert stored.metadata == {"purpose": "receipt"}

    async def test_ids_are_unique(self, generator: SecureTokenGenerator) -> None:
        first = await generator.generate_token("value")
        second = await generator.generate_token("value")
        assert first.token_id != second.token_id
        assert first.token != second.token

    async def test_envelope_layout(self, generator: SecureTokenGenerator) -> None:
        token = await generator.generate_token({"a": 1})
        envelope = _envelope_json(token.token)
        assert set(envelope) == {"version", "tokenId", "encryptedData", "nonce", "tag", "algorithm"}
        assert envelope["version"] == 1
        assert envelope["algorithm"] == "AES-256-GCM"
        assert envelope["tokenId"] == token.token_id
        assert len(b64decode(envelope["nonce"])) == NONCE_SIZE
        assert len(b64decode(envelope["tag"])) == TAG_SIZE

    async def test_payload_is_not_readable_from_envelope(self, generator: SecureTokenGenerator) -> None:
        token = await generator.generate_token({"secret": "ACC-987654"})
        assert "ACC-987654" not in b64decode(token.token).decode("utf-8")

    async def test_storage_unavailable_propagates(self, clock: FakeClock) -> None:
        generator = _make_generator(UnavailableStorage(enable_cleanup=False, clock=clock), clock)
        with pytest.raises(StorageUnavailableError):
            await generator.generate_token("value")


# ===========================================================================
# retrieve_data / validate_token
# ===========================================================================


class TestRetrieveData:
    async def test_round_trip_plain_json(self, generator: SecureTokenGenerator) -> None:
        data = {"account": "ACC-001", "amount": 100, "tags": ["a", "b"]}
        token = await generator.generate_token(data)
        assert await generator.retrieve_data(token.token) == data

    async def test_round_trip_model(self, generator: SecureTokenGenerator) -> None:
        payment = Payment(account_id="ACC-001", amount=250)
        token = await generator.generate_token(payment)
        restored = await generator.retrieve_data(token.token, Payment)
        assert isinstance(restored, Payment)
        assert restored.model_dump() == payment.model_dump()

    async def test_type_mismatch_returns_none(self, generator: SecureTokenGenerator) -> None:
        token = await generator.generate_token({"a": 1})
        assert await generator.retrieve_data(token.token, int) is None

    async def test_valid_until_just_before_expiry(self, generator: SecureTokenGenerator, clock: FakeClock) -> None:
        token = await generator.generate_token("value", expiration=timedelta(hours=2))
        clock.advance(hours=1, minutes=59, seconds=59)
        assert await generator.validate_token(token.token)
        assert await generator.retrieve_data(token.token) == "value"

    async def test_expired_at_expiry(self, generator: SecureTokenGenerator, clock: FakeClock) -> None:
        token = await generator.generate_token("value", expiration=timedelta(hours=2))
        clock.advance(hours=2)
        assert not await generator.validate_token(token.token)
        assert await generator.retrieve_data(token.token) is None

    async def test_unknown_token(self, generator: SecureTokenGenerator, memory_storage: InMemoryTokenStorage) -> None:
        token = await generator.generate_token("value")
        await memory_storage.remove_token(token.token_id)
        assert await generator.retrieve_data(token.token) is None
        assert not await generator.validate_token(token.token)

    @pytest.mark.parametrize(
        "garbage",
        ["", "not-base64!!", b64encode(b"not json"), b64encode(b'{"version": 1}')],
    )
    async def test_garbage_token(self, generator: SecureTokenGenerator, garbage: str) -> None:
        assert await generator.retrieve_data(garbage) is None
        assert not await generator.validate_token(garbage)
        assert not await generator.revoke_token(garbage)

    async def test_tampered_envelope_rejected(self, generator: SecureTokenGenerator) -> None:
        token = await generator.generate_token({"amount": 100})
        structure = EncryptedTokenStructure.decode(token.token)
        cipher = bytearray(b64decode(structure.encrypted_data))
        cipher[0] ^= 0x01
        forged = structure.model_copy(update={"encrypted_data": b64encode(bytes(cipher))}).encode()

        assert not await generator.validate_token(forged)
        assert await generator.retrieve_data(forged) is None
        assert await generator.retrieve_data(token.token) == {"amount": 100}

    async def test_other_key_cannot_decrypt(
        self, generator: SecureTokenGenerator, memory_storage: InMemoryTokenStorage, clock: FakeClock
    ) -> None:
        token = await generator.generate_token({"amount": 100})
        intruder = _make_generator(memory_storage, clock, key="a-different-key")
        assert await intruder.retrieve_data(token.token) is None

    async def test_restarted_generator_with_same_key(
        self, generator: SecureTokenGenerator, memory_storage: InMemoryTokenStorage, clock: FakeClock
    ) -> None:
        token = await generator.generate_token({"amount": 100})
        restarted = _make_generator(memory_storage, clock)
        assert await restarted.retrieve_data(token.token) == {"amount": 100}

    async def test_storage_unavailable_propagates(self, generator: SecureTokenGenerator, clock: FakeClock) -> None:
        token = await generator.generate_token("value")
        broken = _make_generator(UnavailableStorage(enable_cleanup=False, clock=clock), clock)
        with pytest.raises(StorageUnavailableError):
            await broken.retrieve_data(token.token)

    async def test_round_trip_on_every_backend(self, storage: TokenStorage, clock: FakeClock) -> None:
        generator = _make_generator(storage, clock)
        token = await generator.generate_token({"amount": 42}, expiration=timedelta(minutes=5))
        assert await generator.validate_token(token.token)
        assert await generator.retrieve_data(token.token) == {"amount": 42}


# ===========================================================================
# revoke_token
# ===========================================================================


class TestRevokeToken:
    async def test_revoked_token_is_dead(self, generator: SecureTokenGenerator) -> None:
        token = await generator.generate_token("value")
        assert await generator.revoke_token(token.token) is True
        assert not await generator.validate_token(token.token)
        assert await generator.retrieve_data(token.token) is None

    async def test_revoked_token_still_exists(self, generator: SecureTokenGenerator) -> None:
        token = await generator.generate_token("value")
        await generator.revoke_token(token.token)
        assert await generator.storage.exists(token.token_id)

    async def test_revoke_unknown(self, generator: SecureTokenGenerator, memory_storage: InMemoryTokenStorage) -> None:
        token = await generator.generate_token("value")
        await memory_storage.remove_token(token.token_id)
        assert await generator.revoke_token(token.token) is False


# ===========================================================================
# data hash
# ===========================================================================


class TestDataHash:
    async def test_verify_matching_data(self, generator: SecureTokenGenerator) -> None:
        data = {"b": 2, "a": 1}
        token = await generator.generate_token(data)
        assert generator.verify_data_hash(token, {"a": 1, "b": 2})

    async def test_verify_rejects_other_data(self, generator: SecureTokenGenerator) -> None:
        token = await generator.generate_token({"a": 1})
        assert not generator.verify_data_hash(token, {"a": 2})

    async def test_hash_is_salted_per_token(self, generator: SecureTokenGenerator) -> None:
        first = await generator.generate_token("same")
        second = await generator.generate_token("same")
        assert first.data_hash != second.data_hash


# ===========================================================================
# envelope parsing and construction
# ===========================================================================


class TestEnvelope:
    def test_decode_rejects_unknown_algorithm(self) -> None:
        structure = EncryptedTokenStructure(
            token_id="tok-1", encrypted_data="AA==", nonce="AA==", tag="AA==", algorithm="ROT13"
        )
        with pytest.raises(TokenInvalidError):
            EncryptedTokenStructure.decode(structure.encode())

    def test_decode_rejects_unknown_version(self) -> None:
        structure = EncryptedTokenStructure(
            version=2, token_id="tok-1", encrypted_data="AA==", nonce="AA==", tag="AA=="
        )
        with pytest.raises(TokenInvalidError):
            EncryptedTokenStructure.decode(structure.encode())

    def test_decode_round_trip(self) -> None:
        structure = EncryptedTokenStructure(
            token_id="tok-1", encrypted_data="AA==", nonce="AA==", tag="AA=="
        )
        assert EncryptedTokenStructure.decode(structure.encode()) == structure


class TestGeneratorConstruction:
    @pytest.mark.parametrize("key", [None, ""])
    def test_missing_key(self, memory_storage: InMemoryTokenStorage, key: str | None) -> None:
        with pytest.raises(ConfigurationError):
            SecureTokenGenerator(
                crypto=CryptographyService(hash_iterations=TEST_ITERATIONS),
                storage=memory_storage,
                encryption_key=key,
            )

    def test_from_settings_without_key(self, memory_storage: InMemoryTokenStorage) -> None:
        with pytest.raises(ConfigurationError):
            SecureTokenGenerator.from_settings(Settings(_env_file=None), memory_storage)

    async def test_from_settings(self, memory_storage: InMemoryTokenStorage, clock: FakeClock) -> None:
        settings = Settings(
            _env_file=None,
            encryption_key=TEST_ENCRYPTION_KEY,
            hash_iterations=TEST_ITERATIONS,
            default_token_expiration=timedelta(hours=1),
        )
        generator = SecureTokenGenerator.from_settings(settings, memory_storage, clock=clock)
        token = await generator.generate_token("value")
        assert token.expires_at == clock.now + timedelta(hours=1)
        assert await generator.retrieve_data(token.token) == "value"

    async def test_settings_and_direct_construction_interoperate(
        self, generator: SecureTokenGenerator, memory_storage: InMemoryTokenStorage, clock: FakeClock
    ) -> None:
        settings = Settings(
            _env_file=None, encryption_key=TEST_ENCRYPTION_KEY, hash_iterations=TEST_ITERATIONS
        )
        token = await generator.generate_token("value")
        other = SecureTokenGenerator.from_settings(settings, memory_storage, clock=clock)
        assert await other.retrieve_data(token.token) == "value"
