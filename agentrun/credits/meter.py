"""Credit Meter: deducts credits for a finished run from a ledger."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from agentrun.credits.pricing import TokenCreditConverter
from agentrun.errors import CreditChargeError
from agentrun.schemas.run import Identity, TokenUsage

logger = logging.getLogger(__name__)


@runtime_checkable
class CreditLedger(Protocol):
    """External credit account store.

    Implementations must make ``deduct`` an atomic read-modify-write.
    """

    async def get_balance(self, user_id: str) -> int | None:
        """Current balance, or None when the user has no account."""
        ...

    async def deduct(
        self,
        user_id: str,
        amount: int,
        description: str = "",
        run_id: str | None = None,
    ) -> int:
        """Remove *amount* credits and return the balance after.

        Raises:
            CreditChargeError: no account, or the balance is too low
        """
        ...


@dataclass
class CreditTransaction:
    user_id: str
    amount: int
    balance_before: int
    balance_after: int
    transaction_type: str = "usage"
    description: str = ""
    run_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class InMemoryCreditLedger:
    """Process-local ledger. Used by the CLI server and in tests."""

    def __init__(self, balances: dict[str, int] | None = None):
        self._balances: dict[str, int] = dict(balances or {})
        self._lock = asyncio.Lock()
        self.transactions: list[CreditTransaction] = []

    def set_balance(self, user_id: str, balance: int) -> None:
        self._balances[user_id] = balance

    async def get_balance(self, user_id: str) -> int | None:
        return self._balances.get(user_id)

    async def deduct(
        self,
        user_id: str,
        amount: int,
        description: str = "",
        run_id: str | None = None,
    ) -> int:
        if amount <= 0:
            raise CreditChargeError(f"Deduction amount must be positive, got {amount}")
        async with self._lock:
            balance = self._balances.get(user_id)
            if balance is None:
                raise CreditChargeError(f"No credit account for user {user_id}")
            if balance < amount:
                raise CreditChargeError(
                    f"Insufficient credits: balance {balance}, required {amount}"
                )
            after = balance - amount
            self._balances[user_id] = after
            self.transactions.append(
                CreditTransaction(
                    user_id=user_id,
                    amount=-amount,
                    balance_before=balance,
                    balance_after=after,
                    description=description,
                    run_id=run_id,
                )
            )
        return after


@dataclass(frozen=True)
class ChargeResult:
    credits_deducted: int
    balance_after: int


@runtime_checkable
class CreditMeter(Protocol):
    async def charge(
        self,
        identity: Identity,
        usage: TokenUsage,
        model: str | None = None,
        run_id: str | None = None,
    ) -> ChargeResult:
        ...


class LedgerCreditMeter:
    """Converts usage to credits and deducts them from a CreditLedger."""

    def __init__(self, ledger: CreditLedger, converter: TokenCreditConverter | None = None):
        self.ledger = ledger
        self.converter = converter or TokenCreditConverter()

    async def charge(
        self,
        identity: Identity,
        usage: TokenUsage,
        model: str | None = None,
        run_id: str | None = None,
    ) -> ChargeResult:
        if identity.is_guest:
            raise CreditChargeError("Guest runs are not charged")

        cost = self.converter.calculate(model, usage)
        description = (
            f"Agent execution: {cost.credits} credits "
            f"({usage.total_tokens} tokens @ {model or cost.pricing.model_name})"
        )
        balance_after = await self.ledger.deduct(
            identity.user_id, cost.credits, description=description, run_id=run_id
        )
        logger.info(
            "Charged %d credits to %s",
            cost.credits,
            identity.user_id,
            extra={"tokens_used": usage.total_tokens, "model": model},
        )
        return ChargeResult(credits_deducted=cost.credits, balance_after=balance_after)
