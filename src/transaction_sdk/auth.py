"""Authentication collaborator contract."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from transaction_sdk.utils import utc_now

__all__ = [
    "AuthenticationContext",
    "AuthenticationProvider",
    "StaticAuthenticationProvider",
]


class AuthenticationContext(BaseModel):
    """Identity established by the hosting application for the current caller."""

    model_config = ConfigDict(frozen=True)

    application_id: str = Field(..., description="Authenticated application identifier")
    application_name: str = Field(..., description="Authenticated application name")
    permissions: frozenset[str] = Field(default_factory=frozenset)
    session_id: str | None = Field(default=None, description="Session established at login")
    authenticated_at: datetime = Field(default_factory=utc_now)


@runtime_checkable
class AuthenticationProvider(Protocol):
    """Source of the caller's authentication context."""

    def get_current_context(self) -> AuthenticationContext | None: ...


class StaticAuthenticationProvider:
    """Always returns the same context (or none)."""

    def __init__(self, context: AuthenticationContext | None) -> None:
        self._context = context

    def get_current_context(self) -> AuthenticationContext | None:
        return self._context
