"""Exception taxonomy for transaction-sdk.

Every SDK exception carries an ``error_code`` that the transaction pipeline
copies into the failed :class:`~transaction_sdk.models.TransactionResult`.
Where a builtin exception expresses the same failure, the SDK class derives
from it as well, so ``except PermissionError`` keeps working for callers.
"""

from __future__ import annotations

from typing import Sequence

__all__ = [
    "ErrorCode",
    "TransactionSdkError",
    "TransactionValidationError",
    "UnauthorizedError",
    "TransactionTimeoutError",
    "TransactionCancelledError",
    "StorageUnavailableError",
    "TokenInvalidError",
    "ConfigurationError",
    "HandlerNotFoundError",
    "InvalidStateTransitionError",
]


class ErrorCode:
    """String constants used as ``TransactionResult.error_code``."""

    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    UNAUTHORIZED = "UNAUTHORIZED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    TOKEN_INVALID = "TOKEN_INVALID"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    CRITICAL_ERROR = "CRITICAL_ERROR"


class TransactionSdkError(Exception):
    """Base class for all errors raised by the SDK."""

    error_code: str = ErrorCode.INTERNAL_ERROR


class TransactionValidationError(TransactionSdkError, ValueError):
    """Raised when a transaction fails structural or business validation.

    Args:
        errors: Individual validation messages.
    """

    error_code = ErrorCode.INVALID_ARGUMENT

    def __init__(self, errors: Sequence[str] | str) -> None:
        if isinstance(errors, str):
            errors = [errors]
        self.errors: tuple[str, ...] = tuple(errors)
        super().__init__("Transaction validation failed: " + ", ".join(self.errors))


class UnauthorizedError(TransactionSdkError, PermissionError):
    """Raised when authentication or authorization fails."""

    error_code = ErrorCode.UNAUTHORIZED


class TransactionTimeoutError(TransactionSdkError, TimeoutError):
    """Raised when a transaction has outlived its own timeout."""

    error_code = ErrorCode.TIMEOUT


class TransactionCancelledError(TransactionSdkError):
    """Raised when the caller signalled cancellation before post-processing."""

    error_code = ErrorCode.CANCELLED


class StorageUnavailableError(TransactionSdkError):
    """Raised when a token storage backend cannot be reached.

    The original driver exception is chained as ``__cause__``.
    """

    error_code = ErrorCode.STORAGE_UNAVAILABLE

    def __init__(self, backend: str, message: str) -> None:
        self.backend = backend
        super().__init__(f"{backend} token storage unavailable: {message}")


class TokenInvalidError(TransactionSdkError):
    """A token failed decoding, decryption, expiry or revocation checks.

    The token generator never lets this escape its public surface; it exists
    so internal helpers can bail out of a decode with a single exception type.
    """

    error_code = ErrorCode.TOKEN_INVALID


class ConfigurationError(TransactionSdkError):
    """Raised when required configuration is missing or inconsistent."""

    error_code = ErrorCode.CONFIGURATION_ERROR


class HandlerNotFoundError(TransactionSdkError, LookupError):
    """Raised by the mediator when no handler is registered for a transaction type."""


class InvalidStateTransitionError(TransactionSdkError):
    """Raised when the pipeline attempts a transition its state machine forbids."""
