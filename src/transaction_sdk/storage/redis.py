"""Redis token storage on redis.asyncio.

Each token is a JSON record at ``{prefix}tokens:{token_id}`` with a native
TTL at its expiry. The set ``{prefix}tokens:index`` lists every stored id so
that listing, cleanup and statistics do not need ``KEYS``/``SCAN``.
"""

from __future__ import annotations

import math
from contextlib import contextmanager
from typing import Any, Iterator

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from transaction_sdk.errors import StorageUnavailableError
from transaction_sdk.models import SecureToken
from transaction_sdk.storage.base import (
    StorageStatistics,
    TokenRecord,
    TokenSearchCriteria,
    TokenStorage,
    select_tokens,
    summarize,
)
from transaction_sdk.utils import Clock

__all__ = ["RedisTokenStorage"]

logger = structlog.get_logger(__name__)


class RedisTokenStorage(TokenStorage):
    """Token storage backed by Redis strings plus an index set.

    Args:
        url: Redis connection URL.
        key_prefix: Prefix applied to every key.
        client: Pre-built ``redis.asyncio.Redis`` with ``decode_responses=True``;
            when given, *url* is ignored and the caller keeps ownership.
        clock: Callable returning the current aware UTC time.
    """

    backend_name = "redis"

    def __init__(
        self,
        url: str | None = None,
        key_prefix: str = "txsdk:",
        client: aioredis.Redis | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(clock)
        if client is None and not url:
            raise ValueError("Either url or client is required")
        self._owns_client = client is None
        self._redis: aioredis.Redis = client or aioredis.from_url(
            url or "", encoding="utf-8", decode_responses=True
        )
        self._prefix = key_prefix

    @property
    def index_key(self) -> str:
        return f"{self._prefix}tokens:index"

    def token_key(self, token_id: str) -> str:
        return f"{self._prefix}tokens:{token_id}"

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            logger.error(
                "token_storage_unavailable",
                backend=self.backend_name,
                operation=operation,
                error=str(exc),
            )
            raise StorageUnavailableError(self.backend_name, str(exc)) from exc

    async def close(self) -> None:
        if self._owns_client:
            await self._redis.aclose()

    # ------------------------------------------------------------------
    # Record helpers
    # ------------------------------------------------------------------

    def _parse(self, raw: str | None) -> TokenRecord | None:
        if raw is None:
            return None
        try:
            return TokenRecord.model_validate_json(raw)
        except ValidationError:
            logger.warning("token_record_corrupt", backend=self.backend_name)
            return None

    async def _load(self, token_id: str) -> TokenRecord | None:
        return self._parse(await self._redis.get(self.token_key(token_id)))

    async def _load_all(self) -> tuple[list[TokenRecord], list[str]]:
        """Return every indexed record plus the ids whose keys are gone."""
        token_ids = sorted(await self._redis.smembers(self.index_key))
        if not token_ids:
            return [], []
        raws = await self._redis.mget([self.token_key(t) for t in token_ids])
        records: list[TokenRecord] = []
        dangling: list[str] = []
        for token_id, raw in zip(token_ids, raws):
            record = self._parse(raw)
            if record is None:
                dangling.append(token_id)
            else:
                records.append(record)
        return records, dangling

    def _ttl_ms(self, record: TokenRecord) -> int | None:
        if record.expires_at is None:
            return None
        remaining = (record.expires_at - self._now()).total_seconds()
        return max(1, math.ceil(remaining * 1000))

    # ------------------------------------------------------------------
    # TokenStorage
    # ------------------------------------------------------------------

    async def store_token(self, token: SecureToken) -> None:
        record = TokenRecord.from_token(token, stored_at=self._now())
        kwargs: dict[str, Any] = {}
        ttl_ms = self._ttl_ms(record)
        if ttl_ms is not None:
            kwargs["px"] = ttl_ms
        with self._guard("store_token"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self.token_key(token.token_id), record.model_dump_json(), **kwargs)
                pipe.sadd(self.index_key, token.token_id)
                await pipe.execute()
        logger.debug("token_stored", token_id=token.token_id, backend=self.backend_name)

    async def get_token(self, token_id: str) -> SecureToken | None:
        with self._guard("get_token"):
            record = await self._load(token_id)
        if record is None or not record.is_retrievable(self._now()):
            return None
        return record.to_token()

    async def remove_token(self, token_id: str) -> bool:
        with self._guard("remove_token"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(self.token_key(token_id))
                pipe.srem(self.index_key, token_id)
                deleted, _ = await pipe.execute()
        removed = deleted > 0
        if removed:
            logger.debug("token_removed", token_id=token_id, backend=self.backend_name)
        return removed

    async def revoke_token(self, token_id: str) -> bool:
        with self._guard("revoke_token"):
            record = await self._load(token_id)
            if record is None:
                return False
            revoked = record.revoked(self._now())
            # SET XX replies None when the key expired after the read.
            written = await self._redis.set(
                self.token_key(token_id), revoked.model_dump_json(), keepttl=True, xx=True
            )
        if not written:
            return False
        logger.info("token_revoked", token_id=token_id, backend=self.backend_name)
        return True

    async def exists(self, token_id: str) -> bool:
        with self._guard("exists"):
            record = await self._load(token_id)
        return record is not None and not record.is_expired(self._now())

    async def list_tokens(self, criteria: TokenSearchCriteria | None = None) -> list[SecureToken]:
        with self._guard("list_tokens"):
            records, _ = await self._load_all()
        return select_tokens(records, criteria or TokenSearchCriteria(), self._now())

    async def cleanup_expired(self) -> int:
        now = self._now()
        with self._guard("cleanup_expired"):
            records, dangling = await self._load_all()
            expired = [r.token_id for r in records if r.is_expired(now)]
            if expired or dangling:
                async with self._redis.pipeline(transaction=True) as pipe:
                    if expired:
                        pipe.delete(*(self.token_key(t) for t in expired))
                    pipe.srem(self.index_key, *expired, *dangling)
                    await pipe.execute()
        self._last_cleanup = now
        removed = len(expired) + len(dangling)
        logger.info(
            "expired_tokens_cleaned",
            removed=removed,
            pruned_index_entries=len(dangling),
            backend=self.backend_name,
        )
        return removed

    async def get_statistics(self) -> StorageStatistics:
        with self._guard("get_statistics"):
            records, _ = await self._load_all()
        return summarize(records, self._now(), self._last_cleanup)
