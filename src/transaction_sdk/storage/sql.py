"""Relational token storage on SQLAlchemy async Core.

One implementation serves every async dialect. PostgreSQL (asyncpg) and
SQL Server (aioodbc) get thin subclasses that normalise connection URLs;
SQLite (aiosqlite) runs through the base class directly.
"""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    delete,
    false,
    func,
    insert,
    or_,
    select,
    true,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

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

__all__ = [
    "build_token_table",
    "SqlTokenStorage",
    "PostgresTokenStorage",
    "SqlServerTokenStorage",
]

logger = structlog.get_logger(__name__)


def build_token_table(name: str, metadata_obj: MetaData | None = None) -> Table:
    """Return the token table definition, including its secondary indexes."""
    return Table(
        name,
        metadata_obj or MetaData(),
        Column("token_id", String(64), primary_key=True),
        Column("token", Text, nullable=False),
        Column("data_hash", String(256), nullable=False),
        Column("created_at", DateTime(timezone=True), nullable=False),
        Column("expires_at", DateTime(timezone=True), nullable=True),
        Column("metadata", JSON().with_variant(JSONB(), "postgresql"), nullable=True),
        Column("is_revoked", Boolean, nullable=False, default=False),
        Column("revoked_at", DateTime(timezone=True), nullable=True),
        Column("stored_at", DateTime(timezone=True), nullable=False),
        Index(f"ix_{name}_expires_at", "expires_at"),
        Index(f"ix_{name}_created_at", "created_at"),
        Index(f"ix_{name}_is_revoked", "is_revoked"),
    )


class SqlTokenStorage(TokenStorage):
    """Token storage for any SQLAlchemy async URL.

    The table and its indexes are created idempotently on first use.

    Args:
        url: SQLAlchemy async URL, e.g. ``sqlite+aiosqlite:///tokens.db``.
        table_name: Name of the token table.
        engine: Pre-built engine; when given, *url* is ignored and the
            caller keeps ownership of the engine.
        clock: Callable returning the current aware UTC time.
    """

    backend_name = "sql"

    def __init__(
        self,
        url: str | None = None,
        table_name: str = "secure_tokens",
        engine: AsyncEngine | None = None,
        clock: Clock | None = None,
        **engine_options: Any,
    ) -> None:
        super().__init__(clock)
        if engine is None and not url:
            raise ValueError("Either url or engine is required")
        self._owns_engine = engine is None
        self._engine: AsyncEngine = engine or create_async_engine(
            self._normalize_url(url or ""), **engine_options
        )
        self._metadata = MetaData()
        self.table = build_token_table(table_name, self._metadata)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @staticmethod
    def _normalize_url(url: str) -> str:
        return url

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (OperationalError, InterfaceError, OSError) as exc:
            logger.error(
                "token_storage_unavailable",
                backend=self.backend_name,
                operation=operation,
                error=str(exc),
            )
            raise StorageUnavailableError(self.backend_name, str(exc)) from exc

    async def initialize(self) -> None:
        """Create the token table and indexes when they do not exist yet."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            with self._guard("initialize"):
                async with self._engine.begin() as conn:
                    await conn.run_sync(self._metadata.create_all, checkfirst=True)
            self._initialized = True
            logger.info("token_table_ready", backend=self.backend_name, table=self.table.name)

    async def close(self) -> None:
        if self._owns_engine:
            await self._engine.dispose()

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _to_row(record: TokenRecord) -> dict[str, Any]:
        return {
            "token_id": record.token_id,
            "token": record.token,
            "data_hash": record.data_hash,
            "created_at": record.created_at,
            "expires_at": record.expires_at,
            "metadata": dict(record.metadata),
            "is_revoked": record.is_revoked,
            "revoked_at": record.revoked_at,
            "stored_at": record.stored_at,
        }

    @staticmethod
    def _to_record(row: RowMapping) -> TokenRecord:
        return TokenRecord(
            token_id=row["token_id"],
            token=row["token"],
            data_hash=row["data_hash"],
            created_at=ensure_utc(row["created_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            metadata=row["metadata"] or {},
            is_revoked=bool(row["is_revoked"]),
            revoked_at=ensure_utc(row["revoked_at"]),
            stored_at=ensure_utc(row["stored_at"]),
        )

    def _not_expired(self, now: Any) -> Any:
        t = self.table
        return or_(t.c.expires_at.is_(None), t.c.expires_at > now)

    # ------------------------------------------------------------------
    # TokenStorage
    # ------------------------------------------------------------------

    async def store_token(self, token: SecureToken) -> None:
        await self.initialize()
        record = TokenRecord.from_token(token, stored_at=self._now())
        t = self.table
        with self._guard("store_token"):
            async with self._engine.begin() as conn:
                await conn.execute(delete(t).where(t.c.token_id == record.token_id))
                await conn.execute(insert(t).values(**self._to_row(record)))
        logger.debug("token_stored", token_id=token.token_id, backend=self.backend_name)

    async def get_token(self, token_id: str) -> SecureToken | None:
        await self.initialize()
        t = self.table
        stmt = select(t).where(
            t.c.token_id == token_id,
            t.c.is_revoked == false(),
            self._not_expired(self._now()),
        )
        with self._guard("get_token"):
            async with self._engine.connect() as conn:
                row = (await conn.execute(stmt)).mappings().first()
        return None if row is None else self._to_record(row).to_token()

    async def remove_token(self, token_id: str) -> bool:
        await self.initialize()
        t = self.table
        with self._guard("remove_token"):
            async with self._engine.begin() as conn:
                result = await conn.execute(delete(t).where(t.c.token_id == token_id))
        removed = result.rowcount > 0
        if removed:
            logger.debug("token_removed", token_id=token_id, backend=self.backend_name)
        return removed

    async def revoke_token(self, token_id: str) -> bool:
        await self.initialize()
        t = self.table
        stmt = (
            update(t)
            .where(t.c.token_id == token_id)
            .values(is_revoked=True, revoked_at=self._now())
        )
        with self._guard("revoke_token"):
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
        revoked = result.rowcount > 0
        if revoked:
            logger.info("token_revoked", token_id=token_id, backend=self.backend_name)
        return revoked

    async def exists(self, token_id: str) -> bool:
        await self.initialize()
        t = self.table
        stmt = (
            select(func.count())
            .select_from(t)
            .where(t.c.token_id == token_id, self._not_expired(self._now()))
        )
        with self._guard("exists"):
            async with self._engine.connect() as conn:
                count = (await conn.execute(stmt)).scalar_one()
        return count > 0

    async def list_tokens(self, criteria: TokenSearchCriteria | None = None) -> list[SecureToken]:
        await self.initialize()
        criteria = criteria or TokenSearchCriteria()
        now = self._now()
        t = self.table

        conditions: list[Any] = []
        if not criteria.include_revoked:
            conditions.append(t.c.is_revoked == false())
        if not criteria.include_expired:
            conditions.append(self._not_expired(now))
        if criteria.created_after is not None:
            conditions.append(t.c.created_at >= criteria.created_after)
        if criteria.created_before is not None:
            conditions.append(t.c.created_at <= criteria.created_before)
        if criteria.expires_after is not None:
            conditions.append(t.c.expires_at >= criteria.expires_after)
        if criteria.expires_before is not None:
            conditions.append(t.c.expires_at <= criteria.expires_before)

        stmt = select(t).where(and_(true(), *conditions))
        stmt = stmt.order_by(t.c.created_at.desc(), t.c.token_id.asc())
        # Metadata is matched in Python, so paging has to wait until then.
        page_in_sql = not criteria.metadata_filters
        if page_in_sql:
            if criteria.offset:
                stmt = stmt.offset(criteria.offset)
            if criteria.max_results is not None:
                stmt = stmt.limit(criteria.max_results)

        with self._guard("list_tokens"):
            async with self._engine.connect() as conn:
                rows = (await conn.execute(stmt)).mappings().all()

        records = [self._to_record(row) for row in rows]
        if not page_in_sql:
            records = paginate([r for r in records if matches_criteria(r, criteria, now)], criteria)
        return [r.to_token() for r in records]

    async def cleanup_expired(self) -> int:
        await self.initialize()
        now = self._now()
        t = self.table
        stmt = delete(t).where(t.c.expires_at.is_not(None), t.c.expires_at <= now)
        with self._guard("cleanup_expired"):
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
        self._last_cleanup = now
        removed = result.rowcount
        logger.info("expired_tokens_cleaned", removed=removed, backend=self.backend_name)
        return removed

    async def get_statistics(self) -> StorageStatistics:
        await self.initialize()
        now = self._now()
        t = self.table
        expired = and_(
            t.c.is_revoked == false(), t.c.expires_at.is_not(None), t.c.expires_at <= now
        )
        stmt = select(
            func.count(),
            func.coalesce(func.sum(case((t.c.is_revoked == true(), 1), else_=0)), 0),
            func.coalesce(func.sum(case((expired, 1), else_=0)), 0),
        ).select_from(t)
        # Sized in Python so metadata is measured as canonical JSON on every dialect.
        with self._guard("get_statistics"):
            async with self._engine.connect() as conn:
                total, revoked, expired_count = (await conn.execute(stmt)).one()
                rows = (await conn.execute(select(t))).mappings().all()
        size = sum(estimate_size(self._to_record(row)) for row in rows)
        return StorageStatistics(
            total_tokens=total,
            valid_tokens=total - revoked - expired_count,
            expired_tokens=expired_count,
            revoked_tokens=revoked,
            storage_size=size,
            last_cleanup=self._last_cleanup,
        )


class PostgresTokenStorage(SqlTokenStorage):
    """PostgreSQL backend (asyncpg driver, JSONB metadata)."""

    backend_name = "postgresql"

    @staticmethod
    def _normalize_url(url: str) -> str:
        for prefix in ("postgresql://", "postgres://"):
            if url.startswith(prefix):
                return "postgresql+asyncpg://" + url[len(prefix) :]
        return url


class SqlServerTokenStorage(SqlTokenStorage):
    """SQL Server backend (aioodbc driver, JSON stored as NVARCHAR)."""

    backend_name = "sqlserver"

    @staticmethod
    def _normalize_url(url: str) -> str:
        if url.startswith("mssql://"):
            return "mssql+aioodbc://" + url[len("mssql://") :]
        return url
