"""Credit metering: token pricing, ledgers and the run meter."""

from agentrun.credits.meter import (
    ChargeResult,
    CreditLedger,
    CreditMeter,
    CreditTransaction,
    InMemoryCreditLedger,
    LedgerCreditMeter,
)
from agentrun.credits.pricing import (
    DEFAULT_PRICING,
    CostCalculation,
    TokenCreditConverter,
    TokenPricing,
)

__all__ = [
    "ChargeResult",
    "CostCalculation",
    "CreditLedger",
    "CreditMeter",
    "CreditTransaction",
    "DEFAULT_PRICING",
    "InMemoryCreditLedger",
    "LedgerCreditMeter",
    "TokenCreditConverter",
    "TokenPricing",
]
