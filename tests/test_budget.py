"""Tests for the step budget and credit admission gate."""

import pytest

from agentrun.credits.meter import InMemoryCreditLedger
from agentrun.errors import InsufficientCreditsError
from agentrun.runtime.budget import BudgetTracker, CreditGate
from agentrun.schemas.run import Identity


class TestBudgetTracker:
    def test_counts_completions(self):
        budget = BudgetTracker(max_steps=3)
        assert budget.steps_used == 0
        assert budget.record_tool_completion() == 1
        assert budget.record_tool_completion() == 2
        assert budget.remaining == 1
        assert not budget.is_exhausted()

    def test_exhausted_at_max(self):
        budget = BudgetTracker(max_steps=2)
        budget.record_tool_completion()
        budget.record_tool_completion()
        assert budget.is_exhausted()
        assert budget.remaining == 0

    def test_limit_message(self):
        budget = BudgetTracker(max_steps=2)
        budget.record_tool_completion()
        budget.record_tool_completion()
        assert budget.limit_message() == "Step limit reached after 2 tool calls (max 2)."

    @pytest.mark.parametrize("max_steps", [0, -1])
    def test_rejects_non_positive_budget(self, max_steps):
        with pytest.raises(ValueError):
            BudgetTracker(max_steps=max_steps)


class TestCreditGate:
    @pytest.mark.asyncio
    async def test_guest_always_admitted(self):
        gate = CreditGate(InMemoryCreditLedger())
        assert await gate.can_admit(Identity.guest()) is True

    @pytest.mark.asyncio
    async def test_balance_of_one_admitted(self):
        gate = CreditGate(InMemoryCreditLedger({"u1": 1}))
        assert await gate.can_admit(Identity(user_id="u1")) is True

    @pytest.mark.asyncio
    async def test_zero_balance_rejected(self):
        gate = CreditGate(InMemoryCreditLedger({"u1": 0}))
        assert await gate.can_admit(Identity(user_id="u1")) is False

    @pytest.mark.asyncio
    async def test_missing_account_rejected(self):
        gate = CreditGate(InMemoryCreditLedger())
        assert await gate.can_admit(Identity(user_id="nobody")) is False

    @pytest.mark.asyncio
    async def test_require_admission_raises_distinguished_error(self):
        gate = CreditGate(InMemoryCreditLedger({"u1": 0}))
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await gate.require_admission(Identity(user_id="u1"))
        assert exc_info.value.status == 402
        assert exc_info.value.to_dict() == {"error": "Insufficient credits", "code": "NO_CREDITS"}
