"""Transaction lifecycle events and the publisher contract.

Broker transports live outside the SDK; anything implementing
:class:`EventPublisher` can be plugged into the pipeline.
"""

from __future__ import annotations

import abc
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from transaction_sdk.models import (
    Transaction,
    TransactionAuditInfo,
    TransactionContext,
    new_id,
)
from transaction_sdk.utils import utc_now

__all__ = [
    "DomainEvent",
    "TransactionStartedEvent",
    "TransactionCompletedEvent",
    "TransactionErrorEvent",
    "TransactionAuditEvent",
    "EventPublisher",
    "InMemoryEventPublisher",
    "LoggingEventPublisher",
]

logger = structlog.get_logger(__name__)


class DomainEvent(BaseModel):
    """Fields shared by every lifecycle event."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=new_id)
    event_type: str = "domain_event"
    occurred_at: datetime = Field(default_factory=utc_now)
    transaction_id: str
    correlation_id: str
    application_id: str
    transaction_type: str
    user_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @staticmethod
    def _common(transaction: Transaction, context: TransactionContext) -> dict[str, Any]:
        return {
            "transaction_id": transaction.transaction_id,
            "correlation_id": transaction.correlation_id,
            "application_id": context.application_id,
            "transaction_type": transaction.transaction_type,
            "user_id": context.user_id,
            "metadata": dict(transaction.metadata),
        }


class TransactionStartedEvent(DomainEvent):
    event_type: str = "transaction.started"

    started_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def create(
        cls, transaction: Transaction, context: TransactionContext
    ) -> TransactionStartedEvent:
        return cls(**cls._common(transaction, context))


class TransactionCompletedEvent(DomainEvent):
    event_type: str = "transaction.completed"

    completed_at: datetime = Field(default_factory=utc_now)
    success: bool = True
    duration: timedelta = timedelta(0)
    secure_token: str | None = None

    @classmethod
    def create(
        cls,
        transaction: Transaction,
        context: TransactionContext,
        duration: timedelta,
        secure_token: str | None = None,
    ) -> TransactionCompletedEvent:
        return cls(
            **cls._common(transaction, context),
            duration=duration,
            secure_token=secure_token,
        )


class TransactionErrorEvent(DomainEvent):
    event_type: str = "transaction.error"

    errored_at: datetime = Field(default_factory=utc_now)
    error_type: str
    error_message: str
    error_detail: str | None = None

    @classmethod
    def create(
        cls,
        transaction: Transaction,
        context: TransactionContext,
        error_type: str,
        error_message: str,
        error_detail: str | None = None,
    ) -> TransactionErrorEvent:
        return cls(
            **cls._common(transaction, context),
            error_type=error_type,
            error_message=error_message,
            error_detail=error_detail,
        )


class TransactionAuditEvent(DomainEvent):
    event_type: str = "transaction.audit"

    audit_info: TransactionAuditInfo
    audit_type: str

    @classmethod
    def create(
        cls, audit_info: TransactionAuditInfo, audit_type: str
    ) -> TransactionAuditEvent:
        return cls(
            transaction_id=audit_info.transaction_id,
            correlation_id=audit_info.correlation_id,
            application_id=audit_info.application_id,
            transaction_type=audit_info.transaction_type,
            user_id=audit_info.user_id,
            metadata=dict(audit_info.metadata),
            audit_info=audit_info,
            audit_type=audit_type,
        )


# ---------------------------------------------------------------------------
# Publishers
# ---------------------------------------------------------------------------


class EventPublisher(abc.ABC):
    """Outbound port for lifecycle events."""

    @abc.abstractmethod
    async def publish(self, event: DomainEvent) -> None:
        """Deliver *event*. May raise; the pipeline logs and continues."""


class InMemoryEventPublisher(EventPublisher):
    """Keeps every published event in order. Handy for tests and local audit."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    async def publish(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type[DomainEvent]) -> list[DomainEvent]:
        return [e for e in self.events if isinstance(e, event_type)]

    def for_transaction(self, transaction_id: str) -> list[DomainEvent]:
        return [e for e in self.events if e.transaction_id == transaction_id]

    def clear(self) -> None:
        self.events.clear()


class LoggingEventPublisher(EventPublisher):
    """Writes each event as a structured log line."""

    async def publish(self, event: DomainEvent) -> None:
        logger.info(
            "event_published",
            event_type=event.event_type,
            event_id=event.event_id,
            transaction_id=event.transaction_id,
            correlation_id=event.correlation_id,
        )
