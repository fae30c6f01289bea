"""MongoDB token storage on the PyMongo async API."""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

import structlog
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient, IndexModel
from pymongo.errors import ConnectionFailure

from transaction_sdk.errors import StorageUnavailableError
from transaction_sdk.models import SecureToken
from transaction_sdk.storage.base import (
    StorageStatistics,
    TokenRecord,
    TokenSearchCriteria,
    TokenStorage,
    estimate_size,
    matches_criteria,
    paginate,
)
from transaction_sdk.utils import Clock, ensure_utc

__all__ = ["MongoTokenStorage"]

logger = structlog.get_logger(__name__)


def _to_bson_datetime(value: datetime | None) -> datetime | None:
    # BSON dates carry no zone; everything is stored as naive UTC.
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class MongoTokenStorage(TokenStorage):
    """One document per token in a single collection.

    Indexes on ``token_id`` (unique), ``expires_at``, ``created_at`` and
    ``is_revoked`` are created on first use.

    Args:
        url: MongoDB connection string.
        database: Database name.
        collection_name: Collection holding the token documents.
        collection: Pre-built async collection; when given, *url* is ignored.
        clock: Callable returning the current aware UTC time.
    """

    backend_name = "mongodb"

    def __init__(
        self,
        url: str | None = None,
        database: str = "transaction_sdk",
        collection_name: str = "secure_tokens",
        collection: Any | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(clock)
        self._client: AsyncMongoClient[dict[str, Any]] | None = None
        if collection is None:
            if not url:
                raise ValueError("Either url or collection is required")
            self._client = AsyncMongoClient(url)
            collection = self._client[database][collection_name]
        self._collection = collection
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except ConnectionFailure as exc:
            logger.error(
                "token_storage_unavailable",
                backend=self.backend_name,
                operation=operation,
                error=str(exc),
            )
            raise StorageUnavailableError(self.backend_name, str(exc)) from exc

    async def initialize(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            indexes = [
                IndexModel([("token_id", ASCENDING)], unique=True, name="ix_token_id"),
                IndexModel([("expires_at", ASCENDING)], name="ix_expires_at"),
                IndexModel([("created_at", DESCENDING)], name="ix_created_at"),
                IndexModel([("is_revoked", ASCENDING)], name="ix_is_revoked"),
            ]
            with self._guard("initialize"):
                await self._collection.create_indexes(indexes)
            self._initialized = True
            logger.info("token_collection_ready", backend=self.backend_name)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    # ------------------------------------------------------------------
    # Document mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _to_document(record: TokenRecord) -> dict[str, Any]:
        return {
            "token_id": record.token_id,
            "token": record.token,
            "data_hash": record.data_hash,
            "created_at": _to_bson_datetime(record.created_at),
            "expires_at": _to_bson_datetime(record.expires_at),
            "metadata": dict(record.metadata),
            "is_revoked": record.is_revoked,
            "revoked_at": _to_bson_datetime(record.revoked_at),
            "stored_at": _to_bson_datetime(record.stored_at),
        }

    @staticmethod
    def _to_record(document: dict[str, Any]) -> TokenRecord:
        return TokenRecord(
            token_id=document["token_id"],
            token=document["token"],
            data_hash=document["data_hash"],
            created_at=ensure_utc(document["created_at"]),
            expires_at=ensure_utc(document.get("expires_at")),
            metadata=document.get("metadata") or {},
            is_revoked=bool(document.get("is_revoked", False)),
            revoked_at=ensure_utc(document.get("revoked_at")),
            stored_at=ensure_utc(document["stored_at"]),
        )

    @staticmethod
    def _not_expired(now: datetime) -> dict[str, Any]:
        return {"$or": [{"expires_at": None}, {"expires_at": {"$gt": now}}]}

    # ------------------------------------------------------------------
    # TokenStorage
    # ------------------------------------------------------------------

    async def store_token(self, token: SecureToken) -> None:
        await self.initialize()
        document = self._to_document(TokenRecord.from_token(token, stored_at=self._now()))
        with self._guard("store_token"):
            await self._collection.replace_one({"token_id": token.token_id}, document, upsert=True)
        logger.debug("token_stored", token_id=token.token_id, backend=self.backend_name)

    async def get_token(self, token_id: str) -> SecureToken | None:
        await self.initialize()
        now = _to_bson_datetime(self._now())
        query = {"$and": [{"token_id": token_id, "is_revoked": False}, self._not_expired(now)]}
        with self._guard("get_token"):
            document = await self._collection.find_one(query)
        return None if document is None else self._to_record(document).to_token()

    async def remove_token(self, token_id: str) -> bool:
        await self.initialize()
        with self._guard("remove_token"):
            result = await self._collection.delete_one({"token_id": token_id})
        removed = result.deleted_count > 0
        if removed:
            logger.debug("token_removed", token_id=token_id, backend=self.backend_name)
        return removed

    async def revoke_token(self, token_id: str) -> bool:
        await self.initialize()
        update = {"$set": {"is_revoked": True, "revoked_at": _to_bson_datetime(self._now())}}
        with self._guard("revoke_token"):
            result = await self._collection.update_one({"token_id": token_id}, update)
        revoked = result.matched_count > 0
        if revoked:
            logger.info("token_revoked", token_id=token_id, backend=self.backend_name)
        return revoked

    async def exists(self, token_id: str) -> bool:
        await self.initialize()
        now = _to_bson_datetime(self._now())
        query = {"$and": [{"token_id": token_id}, self._not_expired(now)]}
        with self._guard("exists"):
            count = await self._collection.count_documents(query)
        return count > 0

    async def list_tokens(self, criteria: TokenSearchCriteria | None = None) -> list[SecureToken]:
        await self.initialize()
        criteria = criteria or TokenSearchCriteria()
        checked_at = self._now()
        now = _to_bson_datetime(checked_at)

        clauses: list[dict[str, Any]] = []
        if not criteria.include_revoked:
            clauses.append({"is_revoked": False})
        if not criteria.include_expired:
            clauses.append(self._not_expired(now))
        created: dict[str, Any] = {}
        if criteria.created_after is not None:
            created["$gte"] = _to_bson_datetime(criteria.created_after)
        if criteria.created_before is not None:
            created["$lte"] = _to_bson_datetime(criteria.created_before)
        if created:
            clauses.append({"created_at": created})
        expires: dict[str, Any] = {}
        if criteria.expires_after is not None:
            expires["$gte"] = _to_bson_datetime(criteria.expires_after)
        if criteria.expires_before is not None:
            expires["$lte"] = _to_bson_datetime(criteria.expires_before)
        if expires:
            clauses.append({"expires_at": expires})

        query: dict[str, Any] = {"$and": clauses} if clauses else {}
        cursor = self._collection.find(query).sort(
            [("created_at", DESCENDING), ("token_id", ASCENDING)]
        )
        # Dotted metadata queries match array members and nested paths, so
        # metadata is compared in Python and paging waits until then.
        page_on_server = not criteria.metadata_filters
        if page_on_server:
            if criteria.offset:
                cursor = cursor.skip(criteria.offset)
            if criteria.max_results is not None:
                cursor = cursor.limit(criteria.max_results)

        records: list[TokenRecord] = []
        with self._guard("list_tokens"):
            async for document in cursor:
                records.append(self._to_record(document))
        if not page_on_server:
            records = paginate(
                [r for r in records if matches_criteria(r, criteria, checked_at)], criteria
            )
        return [r.to_token() for r in records]

    async def cleanup_expired(self) -> int:
        await self.initialize()
        now = self._now()
        with self._guard("cleanup_expired"):
            result = await self._collection.delete_many(
                {"expires_at": {"$lte": _to_bson_datetime(now)}}
            )
        self._last_cleanup = now
        removed = result.deleted_count
        logger.info("expired_tokens_cleaned", removed=removed, backend=self.backend_name)
        return removed

    async def get_statistics(self) -> StorageStatistics:
        await self.initialize()
        now = _to_bson_datetime(self._now())
        with self._guard("get_statistics"):
            total = await self._collection.count_documents({})
            revoked = await self._collection.count_documents({"is_revoked": True})
            expired = await self._collection.count_documents(
                {"is_revoked": False, "expires_at": {"$lte": now}}
            )
            size = 0
            async for document in self._collection.find({}):
                size += estimate_size(self._to_record(document))
        return StorageStatistics(
            total_tokens=total,
            valid_tokens=total - revoked - expired,
            expired_tokens=expired,
            revoked_tokens=revoked,
            storage_size=size,
            last_cleanup=self._last_cleanup,
        )
