"""Pydantic models for transaction-sdk."""

from __future__ import annotations

import hashlib
import traceback
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, ClassVar, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from transaction_sdk.utils import canonical_json, ensure_utc, utc_now

__all__ = [
    "new_id",
    "TransactionStatus",
    "ValidationResult",
    "Transaction",
    "TransactionContext",
    "TransactionResult",
    "TransactionAuditInfo",
    "SecureToken",
]

T = TypeVar("T")
U = TypeVar("U")


def new_id() -> str:
    """Return a new opaque identifier (uuid4, hex form)."""
    return uuid.uuid4().hex


class TransactionStatus(str, Enum):
    """Lifecycle states of one pipeline run."""

    created = "Created"
    pre_processing = "PreProcessing"
    processing = "Processing"
    post_processing = "PostProcessing"
    completed = "Completed"
    failed = "Failed"
    cancelled = "Cancelled"


class ValidationResult(BaseModel):
    """Outcome of :meth:`Transaction.validate_transaction`."""

    model_config = ConfigDict(frozen=True)

    is_valid: bool = Field(..., description="True when no errors were found")
    errors: tuple[str, ...] = Field(default=(), description="Validation messages")

    @classmethod
    def valid(cls) -> ValidationResult:
        return cls(is_valid=True)

    @classmethod
    def invalid(cls, errors: list[str] | tuple[str, ...]) -> ValidationResult:
        return cls(is_valid=False, errors=tuple(errors))


class Transaction(BaseModel):
    """Base class for every business transaction run through the pipeline.

    Subclasses add payload fields and may override the defaults of
    ``timeout``, ``requires_authentication`` and ``required_permissions``.
    Instances are frozen; every derivation returns a new value.
    """

    model_config = ConfigDict(frozen=True)

    version: ClassVar[int] = 1

    transaction_id: str = Field(default_factory=new_id, description="Unique transaction identifier")
    correlation_id: str = Field(
        default_factory=new_id, description="Identifier shared by retries and compensations"
    )
    created_at: datetime = Field(default_factory=utc_now, description="UTC creation timestamp")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")
    timeout: timedelta | None = Field(
        default=None, description="Maximum age before the pipeline rejects the transaction"
    )
    requires_authentication: bool = Field(
        default=True, description="Require an authenticated context"
    )
    required_permissions: frozenset[str] = Field(
        default_factory=frozenset, description="Permissions the caller must hold"
    )

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, value: datetime) -> datetime:
        # Naive timestamps are read as UTC.
        return ensure_utc(value)

    @field_serializer("required_permissions")
    def _serialize_permissions(self, value: frozenset[str]) -> list[str]:
        return sorted(value)

    @property
    def transaction_type(self) -> str:
        cls = type(self)
        return f"{cls.__module__}.{cls.__qualname__}"

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_transaction(self) -> ValidationResult:
        """Run the structural checks and then :meth:`validate_specific`."""
        errors: list[str] = []
        if not self.transaction_id or not self.transaction_id.strip():
            errors.append("Transaction ID cannot be null or empty")
        if not self.correlation_id or not self.correlation_id.strip():
            errors.append("Correlation ID cannot be null or empty")
        if self.created_at is None:
            errors.append("Created date must be set")
        if self.timeout is not None and self.timeout <= timedelta(0):
            errors.append("Timeout must be positive")

        specific = self.validate_specific()
        if not specific.is_valid:
            errors.extend(specific.errors)

        return ValidationResult.invalid(errors) if errors else ValidationResult.valid()

    def validate_specific(self) -> ValidationResult:
        """Transaction-specific validation hook; valid by default."""
        return ValidationResult.valid()

    def elapsed(self, now: datetime | None = None) -> timedelta:
        return (now or utc_now()) - self.created_at

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_json(self) -> str:
        return canonical_json(self.model_dump(mode="json"))

    def compute_hash(self) -> str:
        """SHA-256 of the canonical JSON, salted with the transaction id."""
        digest = hashlib.sha256((self.to_json() + self.transaction_id).encode("utf-8"))
        return digest.hexdigest()

    # ------------------------------------------------------------------
    # Derivations
    # ------------------------------------------------------------------

    def with_metadata(self, key: str, value: Any) -> Transaction:
        return self.model_copy(update={"metadata": {**self.metadata, key: value}})

    def with_correlation_id(self, correlation_id: str) -> Transaction:
        return self.model_copy(update={"correlation_id": correlation_id})

    def duplicate(self) -> Transaction:
        """Copy for a retry: new id and creation time, same correlation id and payload."""
        created_at = max(utc_now(), self.created_at)
        return self.model_copy(
            update={
                "transaction_id": new_id(),
                "created_at": created_at,
                "metadata": dict(self.metadata),
            }
        )


class TransactionContext(BaseModel):
    """Caller identity for a single pipeline run. Built once, read-only after."""

    model_config = ConfigDict(frozen=True)

    application_id: str = Field(..., description="Calling application identifier")
    application_name: str = Field(..., description="Calling application name")
    user_id: str | None = Field(default=None, description="End user, when known")
    permissions: frozenset[str] = Field(default_factory=frozenset, description="Granted permissions")
    session_id: str | None = Field(default=None, description="Authenticated session identifier")
    environment: str = Field(default="production", description="Deployment environment")
    ip_address: str | None = Field(default=None, description="Caller IP address")
    user_agent: str | None = Field(default=None, description="Caller user agent")
    started_at: datetime = Field(default_factory=utc_now, description="Context creation time")
    custom_data: dict[str, Any] = Field(default_factory=dict, description="Extension data")

    @field_serializer("permissions")
    def _serialize_permissions(self, value: frozenset[str]) -> list[str]:
        return sorted(value)

    @classmethod
    def from_authentication(
        cls,
        auth_context: Any,
        environment: str = "production",
        user_id: str | None = None,
    ) -> TransactionContext:
        """Build a context from an :class:`~transaction_sdk.auth.AuthenticationContext`."""
        return cls(
            application_id=auth_context.application_id,
            application_name=auth_context.application_name,
            permissions=frozenset(auth_context.permissions),
            session_id=auth_context.session_id,
            environment=environment,
            user_id=user_id,
        )

    @property
    def is_authenticated(self) -> bool:
        return bool(self.session_id)

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    def has_all_permissions(self, permissions: frozenset[str] | set[str] | list[str]) -> bool:
        return all(p in self.permissions for p in permissions)

    def missing_permissions(self, permissions: frozenset[str] | set[str] | list[str]) -> list[str]:
        return sorted(p for p in permissions if p not in self.permissions)

    def with_custom_data(self, key: str, value: Any) -> TransactionContext:
        return self.model_copy(update={"custom_data": {**self.custom_data, key: value}})


class TransactionResult(BaseModel, Generic[T]):
    """Terminal outcome of a pipeline run. Never mutated, only mapped."""

    model_config = ConfigDict(frozen=True)

    success: bool = Field(..., description="Whether the transaction succeeded")
    data: T | None = Field(default=None, description="Handler output on success")
    message: str | None = Field(default=None, description="Human-readable outcome")
    error_code: str | None = Field(default=None, description="Machine-readable error code")
    error_detail: str | None = Field(default=None, description="Diagnostic detail")
    transaction_id: str = Field(..., description="ID of the transaction")
    correlation_id: str = Field(..., description="Correlation ID of the transaction")
    processed_at: datetime = Field(default_factory=utc_now, description="Completion time")
    processing_duration: timedelta = Field(default=timedelta(0), description="Pipeline duration")
    secure_token: str | None = Field(default=None, description="Token envelope minted on success")
    warnings: tuple[str, ...] = Field(default=(), description="Non-fatal warnings")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Result metadata")

    @classmethod
    def ok(
        cls,
        data: Any,
        transaction_id: str,
        correlation_id: str,
        message: str | None = None,
        processing_duration: timedelta | None = None,
        secure_token: str | None = None,
    ) -> TransactionResult[Any]:
        return cls(
            success=True,
            data=data,
            message=message or "Transaction completed successfully",
            transaction_id=transaction_id,
            correlation_id=correlation_id,
            processing_duration=processing_duration or timedelta(0),
            secure_token=secure_token,
        )

    @classmethod
    def error(
        cls,
        transaction_id: str,
        correlation_id: str,
        message: str,
        error_code: str | None = None,
        error_detail: str | None = None,
        processing_duration: timedelta | None = None,
    ) -> TransactionResult[Any]:
        return cls(
            success=False,
            message=message,
            error_code=error_code,
            error_detail=error_detail,
            transaction_id=transaction_id,
            correlation_id=correlation_id,
            processing_duration=processing_duration or timedelta(0),
        )

    @classmethod
    def from_exception(
        cls,
        exception: BaseException,
        transaction_id: str,
        correlation_id: str,
        processing_duration: timedelta | None = None,
    ) -> TransactionResult[Any]:
        return cls(
            success=False,
            message=str(exception),
            error_code=type(exception).__name__,
            error_detail="".join(traceback.format_exception(exception)),
            transaction_id=transaction_id,
            correlation_id=correlation_id,
            processing_duration=processing_duration or timedelta(0),
        )

    def map(self, mapper: Callable[[T], U]) -> TransactionResult[U]:
        """Transform ``data`` on success; failures pass through unchanged.

        An exception raised by *mapper* becomes a failed result.
        """
        if not self.success:
            return TransactionResult[Any].model_validate(
                self.model_dump(exclude={"data", "secure_token"})
            )
        try:
            new_data = mapper(self.data) if self.data is not None else None
        except Exception as exc:  # noqa: BLE001
            return TransactionResult.from_exception(
                exc, self.transaction_id, self.correlation_id, self.processing_duration
            )
        return TransactionResult[Any](**{**self._fields(), "data": new_data})

    def with_warning(self, warning: str) -> TransactionResult[T]:
        return self.model_copy(update={"warnings": (*self.warnings, warning)})

    def with_metadata(self, key: str, value: Any) -> TransactionResult[T]:
        return self.model_copy(update={"metadata": {**self.metadata, key: value}})

    def with_duration(self, duration: timedelta) -> TransactionResult[T]:
        return self.model_copy(update={"processing_duration": duration})

    def _fields(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in type(self).model_fields}


class TransactionAuditInfo(BaseModel):
    """Append-only audit record. Each pipeline phase emits a new one."""

    model_config = ConfigDict(frozen=True)

    audit_id: str = Field(default_factory=new_id, description="Unique audit record identifier")
    transaction_id: str
    correlation_id: str
    transaction_type: str
    status: TransactionStatus
    application_id: str
    user_id: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    duration: timedelta | None = None
    input_data_hash: str | None = None
    secure_token: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_start(
        cls, transaction: Transaction, context: TransactionContext
    ) -> TransactionAuditInfo:
        return cls(
            transaction_id=transaction.transaction_id,
            correlation_id=transaction.correlation_id,
            transaction_type=transaction.transaction_type,
            status=TransactionStatus.processing,
            application_id=context.application_id,
            user_id=context.user_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            input_data_hash=transaction.compute_hash(),
            metadata=dict(transaction.metadata),
        )

    @classmethod
    def for_completion(
        cls,
        transaction: Transaction,
        context: TransactionContext,
        result: TransactionResult[Any],
        duration: timedelta,
        status: TransactionStatus | None = None,
    ) -> TransactionAuditInfo:
        if status is None:
            status = TransactionStatus.completed if result.success else TransactionStatus.failed
        return cls(
            transaction_id=transaction.transaction_id,
            correlation_id=transaction.correlation_id,
            transaction_type=transaction.transaction_type,
            status=status,
            application_id=context.application_id,
            user_id=context.user_id,
            duration=duration,
            secure_token=result.secure_token,
            error_code=result.error_code,
            error_message=None if result.success else result.message,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            metadata={**transaction.metadata, **result.metadata},
        )


class SecureToken(BaseModel):
    """An encrypted, tamper-evident token.

    Revocation is tracked by token storage, not by this value object.
    """

    model_config = ConfigDict(frozen=True)

    token_id: str = Field(..., description="Unique token identifier")
    token: str = Field(..., description="Base64 envelope handed to callers")
    created_at: datetime = Field(..., description="UTC creation time (second precision)")
    expires_at: datetime | None = Field(default=None, description="UTC expiry, if any")
    data_hash: str = Field(..., description="PBKDF2 fingerprint of the wrapped payload")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Token metadata")

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at is not None and (now or utc_now()) >= self.expires_at

    def is_valid(self, now: datetime | None = None) -> bool:
        return not self.is_expired(now)
