"""In-process token storage with an owned periodic cleanup task."""

from __future__ import annotations

import asyncio
import threading
from datetime import timedelta

import structlog

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

__all__ = ["InMemoryTokenStorage"]

logger = structlog.get_logger(__name__)


class InMemoryTokenStorage(TokenStorage):
    """Dictionary-backed storage for tests and single-process deployments.

    Updates are last-writer-wins. When *enable_cleanup* is set, a background
    task purges expired records every *cleanup_interval*. The task starts at
    construction if an event loop is running, otherwise on first use or on
    :meth:`start`, and is cancelled by :meth:`close`.

    Args:
        cleanup_interval: Delay between automatic cleanups.
        enable_cleanup: Whether to run the background task at all.
        clock: Callable returning the current aware UTC time.
    """

    backend_name = "memory"

    def __init__(
        self,
        cleanup_interval: timedelta = timedelta(hours=6),
        enable_cleanup: bool = True,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(clock)
        if cleanup_interval <= timedelta(0):
            raise ValueError("cleanup_interval must be positive")
        self._records: dict[str, TokenRecord] = {}
        self._cleanup_interval = cleanup_interval
        self._enable_cleanup = enable_cleanup
        self._cleanup_task: asyncio.Task[None] | None = None
        self._start_lock = threading.Lock()
        self._closed = False

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            self.start()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the cleanup task on the running loop, once."""
        if not self._enable_cleanup or self._closed:
            return
        with self._start_lock:
            if self._cleanup_task is not None and not self._cleanup_task.done():
                return
            self._cleanup_task = asyncio.get_running_loop().create_task(
                self._cleanup_loop(), name="token-storage-cleanup"
            )
        logger.debug(
            "cleanup_task_started", interval_seconds=self._cleanup_interval.total_seconds()
        )

    @property
    def cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def close(self) -> None:
        self._closed = True
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("cleanup_task_stopped")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval.total_seconds())
            try:
                await self.cleanup_expired()
            except Exception:
                logger.exception("automatic_cleanup_failed")

    def _ensure_started(self) -> None:
        if self._cleanup_task is None:
            self.start()

    # ------------------------------------------------------------------
    # TokenStorage
    # ------------------------------------------------------------------

    async def store_token(self, token: SecureToken) -> None:
        self._ensure_started()
        self._records[token.token_id] = TokenRecord.from_token(token, stored_at=self._now())
        logger.debug("token_stored", token_id=token.token_id, backend=self.backend_name)

    async def get_token(self, token_id: str) -> SecureToken | None:
        self._ensure_started()
        record = self._records.get(token_id)
        if record is None or not record.is_retrievable(self._now()):
            return None
        return record.to_token()

    async def remove_token(self, token_id: str) -> bool:
        self._ensure_started()
        removed = self._records.pop(token_id, None) is not None
        if removed:
            logger.debug("token_removed", token_id=token_id, backend=self.backend_name)
        return removed

    async def revoke_token(self, token_id: str) -> bool:
        self._ensure_started()
        record = self._records.get(token_id)
        if record is None:
            return False
        self._records[token_id] = record.revoked(self._now())
        logger.info("token_revoked", token_id=token_id, backend=self.backend_name)
        return True

    async def exists(self, token_id: str) -> bool:
        self._ensure_started()
        record = self._records.get(token_id)
        return record is not None and not record.is_expired(self._now())

    async def list_tokens(self, criteria: TokenSearchCriteria | None = None) -> list[SecureToken]:
        self._ensure_started()
        return select_tokens(
            list(self._records.values()), criteria or TokenSearchCriteria(), self._now()
        )

    async def cleanup_expired(self) -> int:
        now = self._now()
        expired = [token_id for token_id, r in list(self._records.items()) if r.is_expired(now)]
        removed = 0
        for token_id in expired:
            if self._records.pop(token_id, None) is not None:
                removed += 1
        self._last_cleanup = now
        logger.info("expired_tokens_cleaned", removed=removed, backend=self.backend_name)
        return removed

    async def get_statistics(self) -> StorageStatistics:
        self._ensure_started()
        return summarize(list(self._records.values()), self._now(), self._last_cleanup)
