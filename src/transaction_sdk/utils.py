"""Small shared helpers: clock, canonical JSON and Base64."""

from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime, timezone
from typing import Any, Callable

__all__ = [
    "Clock",
    "utc_now",
    "ensure_utc",
    "from_unix_seconds",
    "canonical_json",
    "b64encode",
    "b64decode",
]

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes returned by drivers that drop tzinfo."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_unix_seconds(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def canonical_json(value: Any) -> str:
    """Serialize *value* deterministically (sorted keys, no whitespace)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """Strict Base64 decode.

    Raises:
        ValueError: When *text* is not valid Base64.
    """
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError("invalid base64 input") from exc
