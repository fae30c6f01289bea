"""CLI entry point for transaction-sdk."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import click

from transaction_sdk import __version__
from transaction_sdk.config import Settings, StorageProvider, get_settings
from transaction_sdk.errors import ConfigurationError, StorageUnavailableError
from transaction_sdk.logging_utils import configure_logging
from transaction_sdk.storage import TokenStorage, create_token_storage
from transaction_sdk.storage.sql import SqlTokenStorage
from transaction_sdk.tokens import SecureTokenGenerator

T = TypeVar("T")

# Persistent token store used when the configured provider is in-memory
_DEFAULT_STATE_DIR = Path.home() / ".transaction-sdk"
_DEFAULT_STATE_FILE = _DEFAULT_STATE_DIR / "tokens.db"


def _build_storage(settings: Settings) -> TokenStorage:
    """Return the configured storage; in-memory becomes a local SQLite file."""
    if settings.storage_provider is StorageProvider.memory:
        _DEFAULT_STATE_DIR.mkdir(parents=True, exist_ok=True)
        return SqlTokenStorage(
            f"sqlite+aiosqlite:///{_DEFAULT_STATE_FILE}",
            table_name=settings.token_table_name,
        )
    return create_token_storage(settings)


def _run(action: Callable[[TokenStorage, Settings], Awaitable[T]]) -> T:
    settings = get_settings()
    configure_logging(level="WARNING", json_logs=settings.json_logs)

    async def runner() -> T:
        storage = _build_storage(settings)
        try:
            return await action(storage, settings)
        finally:
            await storage.close()

    try:
        return asyncio.run(runner())
    except (ConfigurationError, StorageUnavailableError) as exc:
        raise click.ClickException(str(exc)) from exc


def _run_with_generator(action: Callable[[SecureTokenGenerator], Awaitable[T]]) -> T:
    async def with_generator(storage: TokenStorage, settings: Settings) -> T:
        return await action(SecureTokenGenerator.from_settings(settings, storage))

    return _run(with_generator)


def _echo(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@click.group()
@click.version_option(version=__version__, prog_name="transaction-sdk")
def main() -> None:
    """Transaction SDK: secure token management from the command line."""


@main.command("generate")
@click.option("--data", "data_json", required=True, help="JSON value to wrap in a token.")
@click.option(
    "--expires-in",
    "expires_in",
    default=None,
    type=click.IntRange(min=1),
    help="Token lifetime in seconds (defaults to the configured expiration).",
)
def generate_cmd(data_json: str, expires_in: int | None) -> None:
    """Encrypt a JSON value into a new secure token."""
    try:
        data = json.loads(data_json)
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"--data is not valid JSON: {exc}") from exc

    expiration = timedelta(seconds=expires_in) if expires_in is not None else None
    token = _run_with_generator(lambda g: g.generate_token(data, expiration=expiration))
    _echo(
        {
            "token_id": token.token_id,
            "token": token.token,
            "created_at": token.created_at.isoformat(),
            "expires_at": token.expires_at.isoformat() if token.expires_at else None,
            "data_hash": token.data_hash,
        }
    )


@main.command("retrieve")
@click.option("--token", required=True, help="Token envelope to resolve.")
def retrieve_cmd(token: str) -> None:
    """Print the value wrapped by a token."""

    async def action(generator: SecureTokenGenerator) -> tuple[bool, Any]:
        if not await generator.validate_token(token):
            return False, None
        return True, await generator.retrieve_data(token)

    valid, data = _run_with_generator(action)
    if not valid:
        raise click.ClickException("Token is invalid, expired or revoked")
    _echo({"data": data})


@main.command("validate")
@click.option("--token", required=True, help="Token envelope to check.")
def validate_cmd(token: str) -> None:
    """Report whether a token is currently valid."""
    valid = _run_with_generator(lambda g: g.validate_token(token))
    _echo({"valid": valid})


@main.command("revoke")
@click.option("--token", required=True, help="Token envelope to revoke.")
def revoke_cmd(token: str) -> None:
    """Revoke a token permanently."""
    revoked = _run_with_generator(lambda g: g.revoke_token(token))
    _echo({"revoked": revoked})


@main.command("stats")
def stats_cmd() -> None:
    """Show token storage statistics."""
    stats = _run(lambda storage, _settings: storage.get_statistics())
    _echo(stats.model_dump(mode="json"))


@main.command("cleanup")
def cleanup_cmd() -> None:
    """Delete expired tokens from storage."""
    removed = _run(lambda storage, _settings: storage.cleanup_expired())
    _echo({"removed": removed})


if __name__ == "__main__":
    main()
