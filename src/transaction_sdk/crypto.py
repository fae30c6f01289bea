"""Cryptographic primitives: AES-256-GCM, PBKDF2 hashing and secure randomness."""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import constant_time, hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from transaction_sdk.utils import b64encode

__all__ = [
    "ALGORITHM",
    "KEY_SIZE",
    "NONCE_SIZE",
    "TAG_SIZE",
    "EncryptionResult",
    "CryptographyService",
    "constant_time_equals",
    "generate_secure_string",
    "generate_api_key",
    "generate_salt",
]

logger = structlog.get_logger(__name__)

ALGORITHM = "AES-256-GCM"
KEY_SIZE = 32  # 256-bit key
NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # 128-bit tag

URL_SAFE_ALPHABET = string.ascii_letters + string.digits + "-_"
ALPHANUMERIC_ALPHABET = string.ascii_letters + string.digits


@dataclass(frozen=True)
class EncryptionResult:
    """Output of :meth:`CryptographyService.encrypt`."""

    cipher_text: bytes
    key: bytes
    nonce: bytes
    tag: bytes


def constant_time_equals(a: bytes | str, b: bytes | str) -> bool:
    """Compare two values without leaking the position of the first mismatch."""
    if isinstance(a, str):
        a = a.encode("utf-8")
    if isinstance(b, str):
        b = b.encode("utf-8")
    return constant_time.bytes_eq(a, b)


class CryptographyService:
    """Stateless AEAD encryption, hashing and key derivation.

    Instances hold only configuration, so a single service can be shared by
    any number of concurrent tasks.

    Args:
        hash_iterations: PBKDF2 iteration count used by :meth:`compute_hash`.
    """

    def __init__(self, hash_iterations: int = 100_000) -> None:
        if hash_iterations < 1:
            raise ValueError("hash_iterations must be positive")
        self._hash_iterations = hash_iterations

    @property
    def hash_iterations(self) -> int:
        return self._hash_iterations

    # ------------------------------------------------------------------
    # AEAD
    # ------------------------------------------------------------------

    def encrypt(
        self,
        data: bytes,
        associated_data: bytes | None = None,
        key: bytes | None = None,
    ) -> EncryptionResult:
        """Encrypt *data* with AES-256-GCM.

        A fresh random nonce is drawn on every call. A fresh random key is
        drawn too unless *key* is supplied.

        Args:
            data: Plaintext bytes.
            associated_data: Optional bytes authenticated but not encrypted.
            key: Optional 32-byte key.

        Returns:
            The cipher text with its key, nonce and detached tag.

        Raises:
            ValueError: When *key* is not 32 bytes long.
        """
        if key is None:
            key = self.generate_random_bytes(KEY_SIZE)
        elif len(key) != KEY_SIZE:
            raise ValueError(f"AES-256-GCM requires a {KEY_SIZE}-byte key")

        nonce = self.generate_random_bytes(NONCE_SIZE)
        sealed = AESGCM(key).encrypt(nonce, data, associated_data)
        return EncryptionResult(
            cipher_text=sealed[:-TAG_SIZE],
            key=key,
            nonce=nonce,
            tag=sealed[-TAG_SIZE:],
        )

    def decrypt(
        self,
        cipher_text: bytes,
        key: bytes,
        nonce: bytes,
        tag: bytes,
        associated_data: bytes | None = None,
    ) -> bytes | None:
        """Decrypt and authenticate; return ``None`` on any failure.

        Callers must treat ``None`` as an invalid token, never as an internal
        error.
        """
        if len(key) != KEY_SIZE or len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            return None
        try:
            return AESGCM(key).decrypt(nonce, cipher_text + tag, associated_data)
        except (InvalidTag, ValueError):
            logger.debug("decrypt_failed")
            return None

    # ------------------------------------------------------------------
    # Hashing and key derivation
    # ------------------------------------------------------------------

    def compute_hash(self, data: bytes, salt: bytes) -> str:
        """Return a Base64 PBKDF2-HMAC-SHA256 fingerprint of *data*."""
        return b64encode(self.derive_key(data, salt, self._hash_iterations, 32))

    def verify_hash(self, data: bytes, salt: bytes, expected: str) -> bool:
        """Recompute the fingerprint of *data* and compare in constant time."""
        return constant_time_equals(self.compute_hash(data, salt), expected)

    def derive_key(self, password: bytes, salt: bytes, iterations: int, key_length: int) -> bytes:
        """Derive *key_length* bytes from *password* with PBKDF2-HMAC-SHA256."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=key_length,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(password)

    def generate_random_bytes(self, length: int) -> bytes:
        if length < 0:
            raise ValueError("length must not be negative")
        return secrets.token_bytes(length)


# ----------------------------------------------------------------------
# Secure string helpers
# ----------------------------------------------------------------------


def generate_secure_string(length: int, alphabet: str = URL_SAFE_ALPHABET) -> str:
    """Return a random string of *length* characters drawn from *alphabet*.

    Raises:
        ValueError: When *length* is not positive or *alphabet* is empty.
    """
    if length <= 0:
        raise ValueError("Length must be greater than zero")
    if not alphabet:
        raise ValueError("Alphabet must not be empty")
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_api_key(length: int = 32) -> str:
    return generate_secure_string(length, URL_SAFE_ALPHABET)


def generate_salt(length: int = 16) -> str:
    return generate_secure_string(length, ALPHANUMERIC_ALPHABET)
