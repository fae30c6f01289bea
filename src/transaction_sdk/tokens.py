"""Secure token generation, retrieval and revocation.

A token envelope is ``Base64(JSON{version, tokenId, encryptedData, nonce,
tag, algorithm})``. The encrypted part is a :class:`TokenPayload` sealed with
AES-256-GCM under a master key derived once from configuration, with the
token id bound in as associated data.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel
from pydantic_core import to_jsonable_python

from transaction_sdk.config import DEFAULT_HASH_SALT, Settings
from transaction_sdk.crypto import ALGORITHM, KEY_SIZE, CryptographyService, constant_time_equals
from transaction_sdk.errors import ConfigurationError, TokenInvalidError
from transaction_sdk.logging_utils import token_prefix
from transaction_sdk.models import SecureToken
from transaction_sdk.storage.base import TokenStorage
from transaction_sdk.utils import (
    Clock,
    b64decode,
    b64encode,
    canonical_json,
    from_unix_seconds,
    utc_now,
)

__all__ = [
    "ENVELOPE_VERSION",
    "SecureToken",
    "EncryptedTokenStructure",
    "TokenPayload",
    "SecureTokenGenerator",
]

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ENVELOPE_VERSION = 1


class EncryptedTokenStructure(BaseModel):
    """Outer, unencrypted envelope (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    version: int = ENVELOPE_VERSION
    token_id: str
    encrypted_data: str = Field(..., description="Base64 cipher text")
    nonce: str = Field(..., description="Base64 96-bit nonce")
    tag: str = Field(..., description="Base64 128-bit authentication tag")
    algorithm: str = ALGORITHM

    def encode(self) -> str:
        return b64encode(self.model_dump_json(by_alias=True).encode("utf-8"))

    @classmethod
    def decode(cls, token: str) -> EncryptedTokenStructure:
        """Parse an envelope.

        Raises:
            TokenInvalidError: When the text is not a well-formed envelope.
        """
        try:
            structure = cls.model_validate_json(b64decode(token))
        except ValueError as exc:
            raise TokenInvalidError("malformed token envelope") from exc
        if structure.version != ENVELOPE_VERSION or structure.algorithm != ALGORITHM:
            raise TokenInvalidError("unsupported token envelope")
        return structure


class TokenPayload(BaseModel):
    """Plaintext sealed inside the envelope."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    token_id: str
    data: str = Field(..., description="Canonical JSON of the wrapped value")
    created_at: int = Field(..., description="Unix seconds")
    expires_at: int | None = Field(default=None, description="Unix seconds")
    data_type: str = Field(..., description="Qualified type name of the wrapped value")


def _type_name(value: Any) -> str:
    cls = type(value)
    return f"{cls.__module__}.{cls.__qualname__}"


class SecureTokenGenerator:
    """Mints, resolves and revokes secure tokens.

    The master key is derived once, here, and never changes afterwards.

    Args:
        crypto: Cryptography service used for AEAD and hashing.
        storage: Backend the tokens are persisted to.
        encryption_key: Secret the master key is derived from.
        hash_salt: Salt for the master key derivation.
        key_iterations: PBKDF2 iterations for the master key derivation.
        default_expiration: Lifetime used when ``generate_token`` gets none;
            ``None`` mints non-expiring tokens.
        clock: Callable returning the current aware UTC time.

    Raises:
        ConfigurationError: When *encryption_key* is empty.
    """

    def __init__(
        self,
        crypto: CryptographyService,
        storage: TokenStorage,
        encryption_key: str | bytes | None,
        hash_salt: str = DEFAULT_HASH_SALT,
        key_iterations: int = 100_000,
        default_expiration: timedelta | None = timedelta(days=30),
        clock: Clock | None = None,
    ) -> None:
        if not encryption_key:
            raise ConfigurationError("An encryption key is required to generate secure tokens")
        if isinstance(encryption_key, str):
            encryption_key = encryption_key.encode("utf-8")
        self._crypto = crypto
        self._storage = storage
        self._default_expiration = default_expiration
        self._clock: Clock = clock or utc_now
        self._master_key = crypto.derive_key(
            encryption_key, hash_salt.encode("utf-8"), key_iterations, KEY_SIZE
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        storage: TokenStorage,
        crypto: CryptographyService | None = None,
        clock: Clock | None = None,
    ) -> SecureTokenGenerator:
        key = settings.encryption_key.get_secret_value() if settings.encryption_key else None
        return cls(
            crypto=crypto or CryptographyService(hash_iterations=settings.hash_iterations),
            storage=storage,
            encryption_key=key,
            hash_salt=settings.hash_salt,
            key_iterations=settings.hash_iterations,
            default_expiration=settings.default_token_expiration,
            clock=clock,
        )

    @property
    def storage(self) -> TokenStorage:
        return self._storage

    @staticmethod
    def serialize(data: Any) -> str:
        """Canonical JSON for any JSON-able value, pydantic model or dataclass."""
        return canonical_json(to_jsonable_python(data))

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_token(
        self,
        data: Any,
        expiration: timedelta | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SecureToken:
        """Encrypt *data* into a new token and persist it.

        Args:
            data: Value to wrap.
            expiration: Token lifetime; the configured default when ``None``.
            metadata: Free-form metadata stored alongside the token.

        Returns:
            The persisted :class:`SecureToken`.

        Raises:
            ValueError: When *expiration* is not positive.
            StorageUnavailableError: When the backend cannot be reached.
        """
        lifetime = expiration if expiration is not None else self._default_expiration
        if lifetime is not None and lifetime <= timedelta(0):
            raise ValueError("Token expiration must be positive")

        created_at = self._clock().replace(microsecond=0)
        expires_at = created_at + lifetime if lifetime is not None else None
        token_id = uuid.uuid4().hex
        serialized = self.serialize(data)

        payload = TokenPayload(
            token_id=token_id,
            data=serialized,
            created_at=int(created_at.timestamp()),
            expires_at=int(expires_at.timestamp()) if expires_at is not None else None,
            data_type=_type_name(data),
        )
        sealed = self._crypto.encrypt(
            payload.model_dump_json(by_alias=True).encode("utf-8"),
            associated_data=token_id.encode("utf-8"),
            key=self._master_key,
        )
        envelope = EncryptedTokenStructure(
            token_id=token_id,
            encrypted_data=b64encode(sealed.cipher_text),
            nonce=b64encode(sealed.nonce),
            tag=b64encode(sealed.tag),
        ).encode()

        token = SecureToken(
            token_id=token_id,
            token=envelope,
            created_at=created_at,
            expires_at=expires_at,
            data_hash=self._crypto.compute_hash(
                serialized.encode("utf-8"), token_id.encode("utf-8")
            ),
            metadata=dict(metadata or {}),
        )
        await self._storage.store_token(token)
        logger.info(
            "token_generated",
            token_id=token_id,
            data_type=payload.data_type,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return token

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _extract_token_id(self, token: str) -> str | None:
        try:
            return EncryptedTokenStructure.decode(token).token_id
        except TokenInvalidError:
            return None

    def _open(self, token: str, stored: SecureToken, now: datetime) -> TokenPayload:
        if not constant_time_equals(stored.token, token):
            raise TokenInvalidError("envelope does not match the stored token")

        structure = EncryptedTokenStructure.decode(token)
        try:
            cipher_text = b64decode(structure.encrypted_data)
            nonce = b64decode(structure.nonce)
            tag = b64decode(structure.tag)
        except ValueError as exc:
            raise TokenInvalidError("malformed envelope fields") from exc

        plaintext = self._crypto.decrypt(
            cipher_text,
            self._master_key,
            nonce,
            tag,
            associated_data=structure.token_id.encode("utf-8"),
        )
        if plaintext is None:
            raise TokenInvalidError("decryption failed")
        try:
            payload = TokenPayload.model_validate_json(plaintext)
        except ValidationError as exc:
            raise TokenInvalidError("malformed payload") from exc

        if payload.token_id != structure.token_id:
            raise TokenInvalidError("token id mismatch")
        if payload.expires_at is not None and now >= from_unix_seconds(payload.expires_at):
            raise TokenInvalidError("token expired")
        return payload

    async def retrieve_data(self, token: str, data_type: type[T] | Any = None) -> T | Any | None:
        """Recover the value wrapped by *token*.

        Forged, tampered, unknown, revoked and expired tokens all yield
        ``None``.

        Args:
            token: Envelope returned by :meth:`generate_token`.
            data_type: Optional type to validate the payload into (any type a
                pydantic ``TypeAdapter`` accepts). Plain JSON when omitted.

        Raises:
            StorageUnavailableError: When the backend cannot be reached.
        """
        token_id = self._extract_token_id(token)
        if token_id is None:
            logger.warning("token_rejected", reason="malformed", token=token_prefix(token))
            return None

        stored = await self._storage.get_token(token_id)
        if stored is None:
            logger.warning("token_rejected", reason="not_found", token_id=token_id)
            return None

        try:
            payload = self._open(token, stored, self._clock())
        except TokenInvalidError as exc:
            logger.warning("token_rejected", reason=str(exc), token_id=token_id)
            return None

        try:
            if data_type is None:
                return TypeAdapter(Any).validate_json(payload.data)
            return TypeAdapter(data_type).validate_json(payload.data)
        except ValidationError:
            logger.warning("token_rejected", reason="type_mismatch", token_id=token_id)
            return None

    async def validate_token(self, token: str) -> bool:
        """True when *token* is known, unrevoked, unexpired and unaltered."""
        token_id = self._extract_token_id(token)
        if token_id is None:
            return False
        stored = await self._storage.get_token(token_id)
        return stored is not None and constant_time_equals(stored.token, token)

    async def revoke_token(self, token: str) -> bool:
        token_id = self._extract_token_id(token)
        if token_id is None:
            return False
        revoked = await self._storage.revoke_token(token_id)
        if revoked:
            logger.info("token_revoked", token_id=token_id)
        return revoked

    def verify_data_hash(self, secure_token: SecureToken, data: Any) -> bool:
        """Check that *data* is the value *secure_token* was minted over."""
        return self._crypto.verify_hash(
            self.serialize(data).encode("utf-8"),
            secure_token.token_id.encode("utf-8"),
            secure_token.data_hash,
        )
