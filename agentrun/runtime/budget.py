"""Step budget and credit admission."""

import logging

from agentrun.credits.meter import CreditLedger
from agentrun.errors import InsufficientCreditsError
from agentrun.schemas.run import Identity

logger = logging.getLogger(__name__)

# Minimum balance an authenticated caller needs before a run is admitted
MIN_ADMISSION_BALANCE = 1


class BudgetTracker:
    """Counts completed tool invocations against a fixed maximum.

    A step is one completed tool invocation, whichever lane the run is in.
    """

    def __init__(self, max_steps: int):
        if max_steps < 1:
            raise ValueError(f"max_steps must be positive, got {max_steps}")
        self._max_steps = max_steps
        self._steps_used = 0

    @property
    def max_steps(self) -> int:
        return self._max_steps

    @property
    def steps_used(self) -> int:
        return self._steps_used

    @property
    def remaining(self) -> int:
        return max(self._max_steps - self._steps_used, 0)

    def record_tool_completion(self) -> int:
        """Count one finished tool call and return the new total."""
        self._steps_used += 1
        return self._steps_used

    def is_exhausted(self) -> bool:
        return self._steps_used >= self._max_steps

    def limit_message(self) -> str:
        return f"Step limit reached after {self._steps_used} tool calls (max {self._max_steps})."


class CreditGate:
    """Admission check against the caller's credit balance.

    Guests are always admitted. Authenticated callers need at least
    ``MIN_ADMISSION_BALANCE`` credits. The check and the later deduction are
    separate operations, so concurrent runs by one identity can overdraw
    slightly.
    """

    def __init__(self, ledger: CreditLedger, min_balance: int = MIN_ADMISSION_BALANCE):
        self._ledger = ledger
        self._min_balance = min_balance

    async def can_admit(self, identity: Identity) -> bool:
        if identity.is_guest:
            return True
        balance = await self._ledger.get_balance(identity.user_id)
        if balance is None:
            logger.info("No credit account for user %s", identity.user_id)
            return False
        return balance >= self._min_balance

    async def require_admission(self, identity: Identity) -> None:
        """Raise InsufficientCreditsError when the caller may not start a run."""
        if not await self.can_admit(identity):
            raise InsufficientCreditsError()
