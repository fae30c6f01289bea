"""Transaction pipeline and handler registry for transaction-sdk."""

from __future__ import annotations

import abc
import asyncio
import time
from datetime import timedelta
from typing import Any, Generic, TypeVar

import structlog

from transaction_sdk.auth import AuthenticationProvider
from transaction_sdk.config import Settings
from transaction_sdk.errors import (
    ErrorCode,
    HandlerNotFoundError,
    InvalidStateTransitionError,
    TransactionCancelledError,
    TransactionSdkError,
    TransactionTimeoutError,
    TransactionValidationError,
    UnauthorizedError,
)
from transaction_sdk.events import (
    DomainEvent,
    EventPublisher,
    LoggingEventPublisher,
    TransactionAuditEvent,
    TransactionCompletedEvent,
    TransactionErrorEvent,
    TransactionStartedEvent,
)
from transaction_sdk.models import (
    Transaction,
    TransactionAuditInfo,
    TransactionContext,
    TransactionResult,
    TransactionStatus,
)
from transaction_sdk.tokens import SecureTokenGenerator
from transaction_sdk.utils import Clock, utc_now

__all__ = ["classify_error", "TransactionHandler", "TransactionMediator"]

logger = structlog.get_logger(__name__)

TTransaction = TypeVar("TTransaction", bound=Transaction)
TResponse = TypeVar("TResponse")

_ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.created: frozenset(
        {TransactionStatus.pre_processing, TransactionStatus.failed, TransactionStatus.cancelled}
    ),
    TransactionStatus.pre_processing: frozenset(
        {TransactionStatus.processing, TransactionStatus.failed, TransactionStatus.cancelled}
    ),
    TransactionStatus.processing: frozenset(
        {TransactionStatus.post_processing, TransactionStatus.failed, TransactionStatus.cancelled}
    ),
    TransactionStatus.post_processing: frozenset({TransactionStatus.completed}),
    TransactionStatus.completed: frozenset(),
    TransactionStatus.failed: frozenset(),
    TransactionStatus.cancelled: frozenset(),
}

_ERROR_MESSAGES: dict[str, str] = {
    ErrorCode.UNAUTHORIZED: "Access denied",
    ErrorCode.INVALID_ARGUMENT: "Invalid argument",
    ErrorCode.TIMEOUT: "Operation timeout",
    ErrorCode.CANCELLED: "Operation cancelled",
    ErrorCode.STORAGE_UNAVAILABLE: "Storage unavailable",
    ErrorCode.TOKEN_INVALID: "Invalid token",
    ErrorCode.CONFIGURATION_ERROR: "Configuration error",
}


def classify_error(exc: BaseException) -> tuple[str, str]:
    """Map an exception to ``(error_code, message)``.

    Builtin analogues classify like their SDK counterparts, so a plain
    ``PermissionError`` raised by handler code is reported as UNAUTHORIZED.
    """
    if isinstance(exc, (TransactionCancelledError, asyncio.CancelledError)):
        code = ErrorCode.CANCELLED
    elif isinstance(exc, PermissionError):
        code = ErrorCode.UNAUTHORIZED
    elif isinstance(exc, TimeoutError):
        code = ErrorCode.TIMEOUT
    elif isinstance(exc, ValueError):
        code = ErrorCode.INVALID_ARGUMENT
    elif isinstance(exc, TransactionSdkError):
        code = exc.error_code
    else:
        code = ErrorCode.INTERNAL_ERROR
    return code, _ERROR_MESSAGES.get(code, "Internal error")


class _PipelineRun:
    """Forward-only status tracker for a single ``handle`` call."""

    def __init__(self) -> None:
        self.status = TransactionStatus.created
        self.history: list[TransactionStatus] = [TransactionStatus.created]

    def advance(self, status: TransactionStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStateTransitionError(
                f"Cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        self.history.append(status)


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


class TransactionHandler(abc.ABC, Generic[TTransaction, TResponse]):
    """Runs one transaction type through the fixed processing pipeline.

    PreProcessing (validation, timeout, authentication, authorization,
    business rules, start event, ``pre_process``) is followed by Processing
    (``execute`` plus optional token minting) and a best-effort
    PostProcessing. Any failure before PostProcessing becomes a failed
    :class:`TransactionResult`; :meth:`handle` never raises.

    Subclasses implement :meth:`execute` and may override the other hooks.

    Args:
        publisher: Destination for lifecycle and audit events.
        token_generator: When set, a secure token is minted over every
            successful transaction (see :meth:`should_generate_secure_token`).
        auth_provider: Optional source of truth cross-checked against the
            context's application id.
        default_timeout: Timeout for transactions that do not set their own.
        generate_secure_tokens: Global switch for token minting.
        clock: Callable returning the current aware UTC time.
    """

    def __init__(
        self,
        publisher: EventPublisher | None = None,
        token_generator: SecureTokenGenerator | None = None,
        auth_provider: AuthenticationProvider | None = None,
        default_timeout: timedelta = timedelta(seconds=30),
        generate_secure_tokens: bool = True,
        clock: Clock | None = None,
    ) -> None:
        self._publisher: EventPublisher = publisher or LoggingEventPublisher()
        self._token_generator = token_generator
        self._auth_provider = auth_provider
        self._default_timeout = default_timeout
        self._generate_secure_tokens = generate_secure_tokens
        self._clock: Clock = clock or utc_now

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        publisher: EventPublisher | None = None,
        token_generator: SecureTokenGenerator | None = None,
        auth_provider: AuthenticationProvider | None = None,
        **kwargs: Any,
    ) -> TransactionHandler[TTransaction, TResponse]:
        return cls(
            publisher=publisher,
            token_generator=token_generator,
            auth_provider=auth_provider,
            default_timeout=settings.default_transaction_timeout,
            generate_secure_tokens=settings.generate_secure_tokens,
            **kwargs,
        )

    @property
    def default_timeout(self) -> timedelta:
        return self._default_timeout

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def execute(self, transaction: TTransaction, context: TransactionContext) -> TResponse:
        """Run the business operation and return its output."""

    async def validate_business_rules(
        self, transaction: TTransaction, context: TransactionContext
    ) -> None:
        """Raise to reject the transaction before any side effect."""

    async def pre_process(self, transaction: TTransaction, context: TransactionContext) -> None:
        pass

    async def post_process(
        self,
        transaction: TTransaction,
        context: TransactionContext,
        result: TransactionResult[TResponse],
    ) -> None:
        pass

    async def confirm_operations(
        self,
        transaction: TTransaction,
        context: TransactionContext,
        result: TransactionResult[TResponse],
    ) -> None:
        pass

    async def handle_specific_error(
        self, transaction: TTransaction, context: TransactionContext, exc: BaseException
    ) -> TransactionResult[TResponse] | None:
        """Return a custom failed result for *exc*, or None for the default mapping."""
        return None

    async def compensate(
        self,
        transaction: TTransaction,
        context: TransactionContext,
        result: TransactionResult[TResponse],
    ) -> None:
        """Undo partial work after a failure. Errors are logged, never raised."""

    def should_generate_secure_token(self, transaction: TTransaction, data: TResponse) -> bool:
        return True

    def success_message(self, transaction: TTransaction, data: TResponse) -> str:
        return "Transaction completed successfully"

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def handle(
        self,
        transaction: TTransaction,
        context: TransactionContext,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> TransactionResult[TResponse]:
        """Run *transaction* through the pipeline.

        Args:
            transaction: The transaction to process.
            context: Caller identity for this run.
            cancel_event: Set it to cancel the run before PostProcessing.

        Returns:
            The terminal :class:`TransactionResult`; failures are reported in
            it rather than raised.

        Raises:
            asyncio.CancelledError: The task running ``handle`` was cancelled
                before PostProcessing. The error audit, error event and
                compensation have already run.
        """
        started = time.perf_counter()
        run = _PipelineRun()
        log = logger.bind(
            transaction_id=transaction.transaction_id,
            correlation_id=transaction.correlation_id,
            transaction_type=transaction.transaction_type,
        )
        log.info("transaction_started")

        try:
            run.advance(TransactionStatus.pre_processing)
            await self._pre_processing(transaction, context, cancel_event)
            run.advance(TransactionStatus.processing)
            result = await self._processing(transaction, context, cancel_event)
        except asyncio.CancelledError as exc:
            # Task cancellation is recorded and compensated, then propagated.
            duration = timedelta(seconds=time.perf_counter() - started)
            log.warning("transaction_task_cancelled", phase=run.status.value)
            await self._fail(transaction, context, exc, run, duration)
            raise
        except Exception as exc:
            duration = timedelta(seconds=time.perf_counter() - started)
            log.warning(
                "transaction_failed",
                error_type=type(exc).__name__,
                error=str(exc),
                phase=run.status.value,
            )
            return await self._fail(transaction, context, exc, run, duration)

        run.advance(TransactionStatus.post_processing)
        result = result.with_duration(timedelta(seconds=time.perf_counter() - started))
        await self._post_processing(transaction, context, result)
        run.advance(TransactionStatus.completed)

        log.info(
            "transaction_completed",
            duration_ms=round(result.processing_duration.total_seconds() * 1000, 3),
            secure_token_issued=result.secure_token is not None,
        )
        return result

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise TransactionCancelledError("Transaction was cancelled by the caller")

    async def _pre_processing(
        self,
        transaction: TTransaction,
        context: TransactionContext,
        cancel_event: asyncio.Event | None,
    ) -> None:
        self._check_cancelled(cancel_event)
        self._validate(transaction)

        self._check_cancelled(cancel_event)
        if transaction.requires_authentication:
            self._authenticate(context)

        self._check_cancelled(cancel_event)
        self._authorize(transaction, context)

        self._check_cancelled(cancel_event)
        await self.validate_business_rules(transaction, context)

        self._check_cancelled(cancel_event)
        await self._publish_safely(TransactionStartedEvent.create(transaction, context))
        await self._publish_safely(
            TransactionAuditEvent.create(
                TransactionAuditInfo.for_start(transaction, context), "transaction_started"
            )
        )

        self._check_cancelled(cancel_event)
        await self.pre_process(transaction, context)

    def _validate(self, transaction: TTransaction) -> None:
        validation = transaction.validate_transaction()
        if not validation.is_valid:
            raise TransactionValidationError(validation.errors)

        timeout = transaction.timeout or self._default_timeout
        if transaction.elapsed(self._clock()) > timeout:
            raise TransactionTimeoutError(
                f"Transaction has expired. Created at {transaction.created_at.isoformat()}, "
                f"timeout is {timeout}"
            )

    def _authenticate(self, context: TransactionContext) -> None:
        if not context.is_authenticated:
            raise UnauthorizedError("Invalid or missing authentication")
        if self._auth_provider is not None:
            current = self._auth_provider.get_current_context()
            if current is None or current.application_id != context.application_id:
                raise UnauthorizedError("Invalid or missing authentication")

    @staticmethod
    def _authorize(transaction: TTransaction, context: TransactionContext) -> None:
        missing = context.missing_permissions(transaction.required_permissions)
        if missing:
            raise UnauthorizedError(f"Missing required permissions: {', '.join(missing)}")

    async def _processing(
        self,
        transaction: TTransaction,
        context: TransactionContext,
        cancel_event: asyncio.Event | None,
    ) -> TransactionResult[TResponse]:
        self._check_cancelled(cancel_event)
        data = await self.execute(transaction, context)

        secure_token: str | None = None
        if (
            self._generate_secure_tokens
            and self._token_generator is not None
            and self.should_generate_secure_token(transaction, data)
        ):
            self._check_cancelled(cancel_event)
            minted = await self._token_generator.generate_token(
                transaction,
                metadata={
                    "transaction_id": transaction.transaction_id,
                    "correlation_id": transaction.correlation_id,
                    "transaction_type": transaction.transaction_type,
                },
            )
            secure_token = minted.token

        return TransactionResult.ok(
            data,
            transaction.transaction_id,
            transaction.correlation_id,
            message=self.success_message(transaction, data),
            secure_token=secure_token,
        )

    async def _post_processing(
        self,
        transaction: TTransaction,
        context: TransactionContext,
        result: TransactionResult[TResponse],
    ) -> None:
        try:
            audit = TransactionAuditInfo.for_completion(
                transaction,
                context,
                result,
                result.processing_duration,
                TransactionStatus.completed,
            )
            await self._publish_safely(TransactionAuditEvent.create(audit, "transaction_completed"))
            await self._publish_safely(
                TransactionCompletedEvent.create(
                    transaction, context, result.processing_duration, result.secure_token
                )
            )
            await self.post_process(transaction, context, result)
            await self.confirm_operations(transaction, context, result)
        except Exception:
            logger.exception(
                "post_processing_failed",
                transaction_id=transaction.transaction_id,
                correlation_id=transaction.correlation_id,
            )

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------

    async def _fail(
        self,
        transaction: TTransaction,
        context: TransactionContext,
        exc: BaseException,
        run: _PipelineRun,
        duration: timedelta,
    ) -> TransactionResult[TResponse]:
        result = await self._build_error_result(transaction, context, exc, duration)
        final_status = (
            TransactionStatus.cancelled
            if result.error_code == ErrorCode.CANCELLED
            else TransactionStatus.failed
        )
        run.advance(final_status)

        audit = TransactionAuditInfo.for_completion(
            transaction, context, result, duration, final_status
        )
        await self._publish_safely(TransactionAuditEvent.create(audit, "transaction_failed"))
        await self._publish_safely(
            TransactionErrorEvent.create(
                transaction,
                context,
                error_type=type(exc).__name__,
                error_message=str(exc),
                error_detail=result.error_detail,
            )
        )

        try:
            await self.compensate(transaction, context, result)
        except Exception:
            logger.exception(
                "compensation_failed",
                transaction_id=transaction.transaction_id,
                correlation_id=transaction.correlation_id,
            )
        return result

    async def _build_error_result(
        self,
        transaction: TTransaction,
        context: TransactionContext,
        exc: BaseException,
        duration: timedelta,
    ) -> TransactionResult[TResponse]:
        try:
            custom = await self.handle_specific_error(transaction, context, exc)
            if custom is not None:
                return custom.with_duration(duration)
            code, message = classify_error(exc)
            return TransactionResult.error(
                transaction.transaction_id,
                transaction.correlation_id,
                message,
                error_code=code,
                error_detail=str(exc),
                processing_duration=duration,
            )
        except Exception as handler_exc:
            logger.exception(
                "error_handling_failed",
                transaction_id=transaction.transaction_id,
                original_error=str(exc),
            )
            return TransactionResult.error(
                transaction.transaction_id,
                transaction.correlation_id,
                "Critical error in error handling",
                error_code=ErrorCode.CRITICAL_ERROR,
                error_detail=f"Original: {exc}; Handler: {handler_exc}",
                processing_duration=duration,
            )

    async def _publish_safely(self, event: DomainEvent) -> None:
        try:
            await self._publisher.publish(event)
        except Exception:
            logger.exception(
                "event_publish_failed",
                event_type=event.event_type,
                transaction_id=event.transaction_id,
            )


# ---------------------------------------------------------------------------
# Mediator
# ---------------------------------------------------------------------------


class TransactionMediator:
    """Explicit registry dispatching transactions to their handlers.

    Lookup walks the transaction class's MRO, so a handler registered for a
    base transaction type also serves its subclasses unless a more specific
    handler is registered.
    """

    def __init__(self) -> None:
        self._handlers: dict[type[Transaction], TransactionHandler[Any, Any]] = {}

    def register(
        self,
        transaction_type: type[Transaction],
        handler: TransactionHandler[Any, Any],
        replace: bool = False,
    ) -> None:
        """Register *handler* for *transaction_type*.

        Raises:
            TypeError: When *transaction_type* is not a Transaction subclass.
            ValueError: When a handler is already registered and *replace* is False.
        """
        if not (isinstance(transaction_type, type) and issubclass(transaction_type, Transaction)):
            raise TypeError(f"{transaction_type!r} is not a Transaction subclass")
        if transaction_type in self._handlers and not replace:
            raise ValueError(f"A handler is already registered for {transaction_type.__name__}")
        self._handlers[transaction_type] = handler
        logger.debug(
            "handler_registered",
            transaction_type=transaction_type.__qualname__,
            handler=type(handler).__qualname__,
        )

    def unregister(self, transaction_type: type[Transaction]) -> bool:
        return self._handlers.pop(transaction_type, None) is not None

    def get_handler(self, transaction_type: type[Transaction]) -> TransactionHandler[Any, Any]:
        for klass in transaction_type.__mro__:
            handler = self._handlers.get(klass)  # type: ignore[arg-type]
            if handler is not None:
                return handler
        raise HandlerNotFoundError(f"No handler registered for {transaction_type.__qualname__}")

    def has_handler(self, transaction_type: type[Transaction]) -> bool:
        try:
            self.get_handler(transaction_type)
        except HandlerNotFoundError:
            return False
        return True

    @property
    def registered_types(self) -> list[type[Transaction]]:
        return list(self._handlers)

    async def send(
        self,
        transaction: Transaction,
        context: TransactionContext,
        cancel_event: asyncio.Event | None = None,
    ) -> TransactionResult[Any]:
        """Dispatch *transaction* to its handler.

        Raises:
            HandlerNotFoundError: When no handler serves the transaction type.
        """
        handler = self.get_handler(type(transaction))
        return await handler.handle(transaction, context, cancel_event=cancel_event)
