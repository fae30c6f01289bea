"""Quickstart examples for transaction-sdk.

Demonstrates the transaction pipeline and secure tokens end to end:
  1. A successful debit with a secure token minted over it
  2. Rejection of an unauthorized caller
  3. Compensation after a failed execution
  4. Token revocation and expiry
  5. Dispatch through the TransactionMediator

Run directly:
    python examples/quickstart.py
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

from transaction_sdk import (
    AuthenticationContext,
    CryptographyService,
    InMemoryEventPublisher,
    SecureTokenGenerator,
    Transaction,
    TransactionContext,
    TransactionHandler,
    TransactionMediator,
    TransactionResult,
    ValidationResult,
)
from transaction_sdk.logging_utils import configure_logging
from transaction_sdk.storage import InMemoryTokenStorage

# ---------------------------------------------------------------------------
# A tiny ledger domain
# ---------------------------------------------------------------------------

_balances: dict[str, int] = {"ACC-001": 1_000, "ACC-002": 50}


class DebitTransaction(Transaction):
    account_id: str
    amount: int
    required_permissions: frozenset[str] = frozenset({"ledger.debit"})

    def validate_specific(self) -> ValidationResult:
        if self.amount <= 0:
            return ValidationResult.invalid(["Amount must be positive"])
        return ValidationResult.valid()


class DebitHandler(TransactionHandler[DebitTransaction, dict]):
    """Debits an account; refuses to overdraw."""

    async def validate_business_rules(
        self, transaction: DebitTransaction, context: TransactionContext
    ) -> None:
        if transaction.account_id not in _balances:
            raise ValueError(f"Unknown account {transaction.account_id}")

    async def execute(self, transaction: DebitTransaction, context: TransactionContext) -> dict:
        balance = _balances[transaction.account_id]
        if balance < transaction.amount:
            raise RuntimeError("Insufficient funds")
        _balances[transaction.account_id] = balance - transaction.amount
        return {"account_id": transaction.account_id, "balance": _balances[transaction.account_id]}

    async def compensate(
        self,
        transaction: DebitTransaction,
        context: TransactionContext,
        result: TransactionResult[dict],
    ) -> None:
        print(f"  compensating {transaction.transaction_id[:8]}: {result.error_code}")


def _context(*permissions: str) -> TransactionContext:
    auth = AuthenticationContext(
        application_id="quickstart",
        application_name="Quickstart",
        permissions=frozenset(permissions),
        session_id="session-1",
    )
    return TransactionContext.from_authentication(auth, environment="demo", user_id="alice")


def _print_result(result: TransactionResult) -> None:
    print(f"  Success        : {result.success}")
    print(f"  Message        : {result.message}")
    if not result.success:
        print(f"  Error code     : {result.error_code}")
        print(f"  Error detail   : {result.error_detail}")
    if result.secure_token:
        print(f"  Secure token   : {result.secure_token[:24]}...")


# ---------------------------------------------------------------------------
# Demos
# ---------------------------------------------------------------------------


async def demo_successful_debit(handler: DebitHandler, generator: SecureTokenGenerator) -> None:
    print("\n=== Demo 1: Successful Debit ===")
    tx = DebitTransaction(account_id="ACC-001", amount=250)
    result = await handler.handle(tx, _context("ledger.debit"))
    _print_result(result)

    assert result.success
    assert result.data == {"account_id": "ACC-001", "balance": 750}
    assert result.secure_token is not None

    restored = await generator.retrieve_data(result.secure_token, DebitTransaction)
    assert restored is not None and restored.transaction_id == tx.transaction_id
    print("  Token resolves back to the original transaction.")


async def demo_unauthorized(handler: DebitHandler) -> None:
    print("\n=== Demo 2: Missing Permission ===")
    result = await handler.handle(
        DebitTransaction(account_id="ACC-001", amount=10), _context("ledger.read")
    )
    _print_result(result)
    assert result.error_code == "UNAUTHORIZED"


async def demo_compensation(handler: DebitHandler) -> None:
    print("\n=== Demo 3: Failure and Compensation ===")
    result = await handler.handle(
        DebitTransaction(account_id="ACC-002", amount=500), _context("ledger.debit")
    )
    _print_result(result)
    assert result.error_code == "INTERNAL_ERROR"
    assert _balances["ACC-002"] == 50


async def demo_token_lifecycle(generator: SecureTokenGenerator) -> None:
    print("\n=== Demo 4: Token Revocation ===")
    token = await generator.generate_token({"receipt": "R-42"}, expiration=timedelta(minutes=5))
    print(f"  Valid before revoke : {await generator.validate_token(token.token)}")
    await generator.revoke_token(token.token)
    print(f"  Valid after revoke  : {await generator.validate_token(token.token)}")
    assert await generator.retrieve_data(token.token) is None


async def demo_mediator(handler: DebitHandler, publisher: InMemoryEventPublisher) -> None:
    print("\n=== Demo 5: Mediator Dispatch ===")
    mediator = TransactionMediator()
    mediator.register(DebitTransaction, handler)

    publisher.clear()
    result = await mediator.send(
        DebitTransaction(account_id="ACC-001", amount=100), _context("ledger.debit")
    )
    _print_result(result)
    print(f"  Events published: {[e.event_type for e in publisher.events]}")
    assert result.success


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


async def run() -> None:
    publisher = InMemoryEventPublisher()
    async with InMemoryTokenStorage() as storage:
        generator = SecureTokenGenerator(
            crypto=CryptographyService(),
            storage=storage,
            encryption_key="quickstart-demo-key",
        )
        handler = DebitHandler(publisher=publisher, token_generator=generator)

        await demo_successful_debit(handler, generator)
        await demo_unauthorized(handler)
        await demo_compensation(handler)
        await demo_token_lifecycle(generator)
        await demo_mediator(handler, publisher)

        stats = await storage.get_statistics()
        print(f"\n  Storage: {stats.total_tokens} tokens, {stats.revoked_tokens} revoked")


def main() -> None:
    """Run all quickstart demos in sequence."""
    configure_logging(level="WARNING")
    print("transaction-sdk quickstart")
    print("=" * 50)
    asyncio.run(run())
    print("\n" + "=" * 50)
    print("All demos completed successfully.")


if __name__ == "__main__":
    main()
