"""Token storage contract and the record/criteria models shared by all backends."""

from __future__ import annotations

import abc
from datetime import datetime
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field

from transaction_sdk.models import SecureToken
from transaction_sdk.utils import Clock, canonical_json, utc_now

__all__ = [
    "TokenRecord",
    "TokenSearchCriteria",
    "StorageStatistics",
    "TokenStorage",
    "matches_criteria",
    "paginate",
    "select_tokens",
    "summarize",
    "estimate_size",
]


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class TokenRecord(BaseModel):
    """Persisted form of a :class:`SecureToken` plus revocation bookkeeping."""

    model_config = ConfigDict(frozen=True)

    token_id: str = Field(..., description="Unique token identifier")
    token: str = Field(..., description="Base64 envelope, stored byte-exact")
    data_hash: str = Field(..., description="PBKDF2 fingerprint of the payload")
    created_at: datetime = Field(..., description="Token creation time")
    expires_at: datetime | None = Field(default=None, description="Token expiry time")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Token metadata")
    is_revoked: bool = Field(default=False, description="Soft-delete flag")
    revoked_at: datetime | None = Field(default=None, description="When the token was revoked")
    stored_at: datetime = Field(default_factory=utc_now, description="When the record was written")

    @classmethod
    def from_token(cls, token: SecureToken, stored_at: datetime | None = None) -> TokenRecord:
        return cls(
            token_id=token.token_id,
            token=token.token,
            data_hash=token.data_hash,
            created_at=token.created_at,
            expires_at=token.expires_at,
            metadata=dict(token.metadata),
            stored_at=stored_at or utc_now(),
        )

    def to_token(self) -> SecureToken:
        return SecureToken(
            token_id=self.token_id,
            token=self.token,
            data_hash=self.data_hash,
            created_at=self.created_at,
            expires_at=self.expires_at,
            metadata=dict(self.metadata),
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_retrievable(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)

    def revoked(self, now: datetime) -> TokenRecord:
        """Return a copy flagged as revoked at *now*."""
        return self.model_copy(update={"is_revoked": True, "revoked_at": now})


class TokenSearchCriteria(BaseModel):
    """Filters and paging for :meth:`TokenStorage.list_tokens`.

    Date bounds are inclusive. Expiry bounds never match tokens without an
    expiry. Pagination applies after filtering.
    """

    include_revoked: bool = Field(default=False, description="Return revoked tokens too")
    include_expired: bool = Field(default=False, description="Return expired tokens too")
    created_after: datetime | None = None
    created_before: datetime | None = None
    expires_after: datetime | None = None
    expires_before: datetime | None = None
    metadata_filters: dict[str, Any] = Field(
        default_factory=dict, description="Metadata key/value pairs that must all match"
    )
    max_results: int | None = Field(default=None, ge=1, description="Page size; None for all")
    offset: int = Field(default=0, ge=0, description="Number of matches to skip")


class StorageStatistics(BaseModel):
    """Point-in-time counters reported by a backend."""

    total_tokens: int = 0
    valid_tokens: int = 0
    expired_tokens: int = 0
    revoked_tokens: int = 0
    storage_size: int = Field(default=0, description="Approximate payload bytes held")
    last_cleanup: datetime | None = None


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def matches_criteria(record: TokenRecord, criteria: TokenSearchCriteria, now: datetime) -> bool:
    """Return True when *record* passes every filter in *criteria*."""
    if record.is_revoked and not criteria.include_revoked:
        return False
    if record.is_expired(now) and not criteria.include_expired:
        return False
    if criteria.created_after is not None and record.created_at < criteria.created_after:
        return False
    if criteria.created_before is not None and record.created_at > criteria.created_before:
        return False
    if criteria.expires_after is not None and (
        record.expires_at is None or record.expires_at < criteria.expires_after
    ):
        return False
    if criteria.expires_before is not None and (
        record.expires_at is None or record.expires_at > criteria.expires_before
    ):
        return False
    for key, value in criteria.metadata_filters.items():
        if key not in record.metadata or record.metadata[key] != value:
            return False
    return True


def _newest_first(records: Iterable[TokenRecord]) -> list[TokenRecord]:
    ordered = sorted(records, key=lambda r: r.token_id)
    ordered.sort(key=lambda r: r.created_at, reverse=True)
    return ordered


def paginate(items: list[Any], criteria: TokenSearchCriteria) -> list[Any]:
    end = None if criteria.max_results is None else criteria.offset + criteria.max_results
    return items[criteria.offset : end]


def select_tokens(
    records: Iterable[TokenRecord], criteria: TokenSearchCriteria, now: datetime
) -> list[SecureToken]:
    """Filter, order newest first, paginate and convert *records*."""
    matching = [r for r in records if matches_criteria(r, criteria, now)]
    return [r.to_token() for r in paginate(_newest_first(matching), criteria)]


def estimate_size(record: TokenRecord) -> int:
    """Approximate stored bytes for one record."""
    return (
        len(record.token.encode("utf-8"))
        + len(record.data_hash.encode("utf-8"))
        + len(canonical_json(record.metadata).encode("utf-8"))
    )


def summarize(
    records: Iterable[TokenRecord], now: datetime, last_cleanup: datetime | None
) -> StorageStatistics:
    """Classify records as revoked, expired (non-revoked) or valid."""
    stats = {"total": 0, "valid": 0, "expired": 0, "revoked": 0, "size": 0}
    for record in records:
        stats["total"] += 1
        stats["size"] += estimate_size(record)
        if record.is_revoked:
            stats["revoked"] += 1
        elif record.is_expired(now):
            stats["expired"] += 1
        else:
            stats["valid"] += 1
    return StorageStatistics(
        total_tokens=stats["total"],
        valid_tokens=stats["valid"],
        expired_tokens=stats["expired"],
        revoked_tokens=stats["revoked"],
        storage_size=stats["size"],
        last_cleanup=last_cleanup,
    )


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class TokenStorage(abc.ABC):
    """Async persistence contract for secure tokens.

    Implementations must never return revoked or expired tokens from
    :meth:`get_token`, even before :meth:`cleanup_expired` has purged them.

    Args:
        clock: Callable returning the current aware UTC time.
    """

    backend_name: str = "token"

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock: Clock = clock or utc_now
        self._last_cleanup: datetime | None = None

    def _now(self) -> datetime:
        return self._clock()

    @abc.abstractmethod
    async def store_token(self, token: SecureToken) -> None:
        """Insert or replace the record for ``token.token_id``."""

    @abc.abstractmethod
    async def get_token(self, token_id: str) -> SecureToken | None:
        """Return the token when it exists, is not revoked and is not expired."""

    @abc.abstractmethod
    async def remove_token(self, token_id: str) -> bool:
        """Physically delete the record; return whether one existed."""

    @abc.abstractmethod
    async def revoke_token(self, token_id: str) -> bool:
        """Flag the record as revoked; return whether one existed."""

    @abc.abstractmethod
    async def exists(self, token_id: str) -> bool:
        """Return True when a non-expired record is present (revoked or not)."""

    @abc.abstractmethod
    async def list_tokens(self, criteria: TokenSearchCriteria | None = None) -> list[SecureToken]:
        """Return matching tokens, newest first."""

    @abc.abstractmethod
    async def cleanup_expired(self) -> int:
        """Delete every record whose expiry has passed; return the count."""

    @abc.abstractmethod
    async def get_statistics(self) -> StorageStatistics:
        """Return current counters."""

    async def close(self) -> None:
        """Release connections and background tasks."""

    async def __aenter__(self) -> TokenStorage:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
