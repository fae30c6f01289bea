"""Shared test fixtures for transaction-sdk tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator

import mongomock
import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis

from transaction_sdk.auth import AuthenticationContext
from transaction_sdk.crypto import CryptographyService
from transaction_sdk.events import InMemoryEventPublisher
from transaction_sdk.core import TransactionHandler
from transaction_sdk.models import (
    SecureToken,
    Transaction,
    TransactionContext,
    TransactionResult,
    ValidationResult,
)
from transaction_sdk.storage.base import TokenStorage
from transaction_sdk.storage.memory import InMemoryTokenStorage
from transaction_sdk.storage.mongo import MongoTokenStorage
from transaction_sdk.storage.redis import RedisTokenStorage
from transaction_sdk.storage.sql import SqlTokenStorage
from transaction_sdk.tokens import SecureTokenGenerator

TEST_ENCRYPTION_KEY = "unit-test-encryption-key"
TEST_ITERATIONS = 1_000


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced UTC clock (whole seconds, so every backend stores it exactly)."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


def make_token(
    token_id: str,
    created_at: datetime,
    expires_at: datetime | None = None,
    metadata: dict[str, Any] | None = None,
) -> SecureToken:
    """Build a SecureToken whose envelope is just a recognisable string."""
    return SecureToken(
        token_id=token_id,
        token=f"envelope-{token_id}",
        created_at=created_at,
        expires_at=expires_at,
        data_hash=f"hash-{token_id}",
        metadata=metadata or {},
    )


# ---------------------------------------------------------------------------
# mongomock behind the async collection surface MongoTokenStorage uses
# ---------------------------------------------------------------------------


class AsyncMongomockCursor:
    def __init__(self, cursor: Any) -> None:
        self._cursor = cursor

    def sort(self, *args: Any, **kwargs: Any) -> AsyncMongomockCursor:
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    def skip(self, count: int) -> AsyncMongomockCursor:
        self._cursor = self._cursor.skip(count)
        return self

    def limit(self, count: int) -> AsyncMongomockCursor:
        self._cursor = self._cursor.limit(count)
        return self

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[dict[str, Any]]:
        for document in self._cursor:
            yield document


class AsyncMongomockCollection:
    def __init__(self, collection: Any) -> None:
        self._collection = collection

    async def create_indexes(self, indexes: list[Any]) -> Any:
        return self._collection.create_indexes(indexes)

    async def replace_one(self, query: dict[str, Any], document: dict[str, Any], upsert: bool = False) -> Any:
        return self._collection.replace_one(query, document, upsert=upsert)

    async def find_one(self, query: dict[str, Any]) -> Any:
        return self._collection.find_one(query)

    async def update_one(self, query: dict[str, Any], update: dict[str, Any]) -> Any:
        return self._collection.update_one(query, update)

    async def delete_one(self, query: dict[str, Any]) -> Any:
        return self._collection.delete_one(query)

    async def delete_many(self, query: dict[str, Any]) -> Any:
        return self._collection.delete_many(query)

    async def count_documents(self, query: dict[str, Any]) -> int:
        return self._collection.count_documents(query)

    def find(self, query: dict[str, Any] | None = None) -> AsyncMongomockCursor:
        return AsyncMongomockCursor(self._collection.find(query or {}))


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------


def _build_storage(kind: str, clock: FakeClock, tmp_path: Any) -> TokenStorage:
    if kind == "memory":
        return InMemoryTokenStorage(enable_cleanup=False, clock=clock)
    if kind == "sqlite":
        return SqlTokenStorage(f"sqlite+aiosqlite:///{tmp_path / 'tokens.db'}", clock=clock)
    if kind == "redis":
        return RedisTokenStorage(client=FakeAsyncRedis(decode_responses=True), clock=clock)
    if kind == "mongo":
        collection = mongomock.MongoClient()["transaction_sdk"]["secure_tokens"]
        return MongoTokenStorage(collection=AsyncMongomockCollection(collection), clock=clock)
    raise ValueError(kind)


@pytest_asyncio.fixture(params=["memory", "sqlite", "redis", "mongo"])
async def storage(request: pytest.FixtureRequest, clock: FakeClock, tmp_path: Any) -> AsyncIterator[TokenStorage]:
    """Every backend, one at a time."""
    backend = _build_storage(request.param, clock, tmp_path)
    yield backend
    await backend.close()


@pytest_asyncio.fixture()
async def memory_storage(clock: FakeClock) -> AsyncIterator[InMemoryTokenStorage]:
    backend = InMemoryTokenStorage(enable_cleanup=False, clock=clock)
    yield backend
    await backend.close()


# ---------------------------------------------------------------------------
# Crypto and tokens
# ---------------------------------------------------------------------------


@pytest.fixture()
def crypto() -> CryptographyService:
    return CryptographyService(hash_iterations=TEST_ITERATIONS)


@pytest.fixture()
def generator(
    crypto: CryptographyService, memory_storage: InMemoryTokenStorage, clock: FakeClock
) -> SecureTokenGenerator:
    return SecureTokenGenerator(
        crypto=crypto,
        storage=memory_storage,
        encryption_key=TEST_ENCRYPTION_KEY,
        key_iterations=TEST_ITERATIONS,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Pipeline fixtures
# ---------------------------------------------------------------------------


class DebitTransaction(Transaction):
    account_id: str = "ACC-001"
    amount: int = 100
    required_permissions: frozenset[str] = frozenset({"transactions.debit"})

    def validate_specific(self) -> ValidationResult:
        if self.amount <= 0:
            return ValidationResult.invalid(["Amount must be positive"])
        return ValidationResult.valid()


class PremiumDebitTransaction(DebitTransaction):
    pass


class AnonymousQuery(Transaction):
    requires_authentication: bool = False


class RecordingHandler(TransactionHandler[Transaction, dict]):
    """Records hook order; optionally raises *error* from the hook named *fail_in*."""

    def __init__(
        self,
        *args: Any,
        fail_in: str | None = None,
        error: BaseException | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.calls: list[str] = []
        self.fail_in = fail_in
        self.error = error or RuntimeError(f"boom in {fail_in}")
        self.compensated_with: TransactionResult[Any] | None = None

    def _hook(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_in == name:
            raise self.error

    async def validate_business_rules(self, transaction: Transaction, context: TransactionContext) -> None:
        self._hook("validate_business_rules")

    async def pre_process(self, transaction: Transaction, context: TransactionContext) -> None:
        self._hook("pre_process")

    async def execute(self, transaction: Transaction, context: TransactionContext) -> dict:
        self._hook("execute")
        return {"processed": transaction.transaction_id}

    async def post_process(self, transaction: Transaction, context: TransactionContext, result: TransactionResult[dict]) -> None:
        self._hook("post_process")

    async def confirm_operations(self, transaction: Transaction, context: TransactionContext, result: TransactionResult[dict]) -> None:
        self._hook("confirm_operations")

    async def compensate(self, transaction: Transaction, context: TransactionContext, result: TransactionResult[dict]) -> None:
        self.compensated_with = result
        self._hook("compensate")


@pytest.fixture()
def publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture()
def auth_context() -> AuthenticationContext:
    return AuthenticationContext(
        application_id="app-1",
        application_name="Core Banking",
        permissions=frozenset({"transactions.debit", "transactions.credit"}),
        session_id="session-123",
    )


@pytest.fixture()
def context(auth_context: AuthenticationContext) -> TransactionContext:
    return TransactionContext.from_authentication(auth_context, environment="test", user_id="user-42")


@pytest.fixture()
def anonymous_context() -> TransactionContext:
    return TransactionContext(application_id="app-1", application_name="Core Banking")


@pytest.fixture()
def handler(publisher: InMemoryEventPublisher) -> RecordingHandler:
    return RecordingHandler(publisher=publisher)


@pytest.fixture()
def debit() -> DebitTransaction:
    return DebitTransaction(metadata={"channel": "mobile"})


@pytest.fixture()
def cancel_event() -> asyncio.Event:
    return asyncio.Event()
