"""
Token to credit conversion.

    ai_cost       = prompt_tokens * prompt_price + completion_tokens * completion_price
    platform_cost = ai_cost * markup
    credits       = max(ceil(platform_cost / credit_value_usd), minimum_credit_cost)

Example with the default pricing: 200 prompt + 300 completion tokens cost
$0.001 raw, $0.0025 after markup, 0.83 credits, rounded up to 1.
"""

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field

from agentrun.schemas.run import TokenUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenPricing:
    """Per-token prices for one model."""

    model_name: str
    prompt_token_price_usd: float
    completion_token_price_usd: float
    platform_markup_multiplier: float = 2.5
    credit_value_usd: float = 0.003
    minimum_credit_cost: int = 1


DEFAULT_PRICING = TokenPricing(
    model_name="default",
    prompt_token_price_usd=0.0000005,
    completion_token_price_usd=0.000003,
)


@dataclass(frozen=True)
class CostCalculation:
    ai_cost_usd: float
    platform_cost_usd: float
    credits: int
    pricing: TokenPricing

    @property
    def credits_value(self) -> str:
        return f"1 credit = ${self.pricing.credit_value_usd:.4f}"


@dataclass
class TokenCreditConverter:
    """Converts accumulated token usage into whole credits.

    Unknown models fall back to ``default``.
    """

    pricing: Mapping[str, TokenPricing] = field(default_factory=dict)
    default: TokenPricing = DEFAULT_PRICING

    def pricing_for(self, model: str | None) -> TokenPricing:
        if model and model in self.pricing:
            return self.pricing[model]
        if model:
            # litellm-style names carry a provider prefix ("gemini/gemini-2.5-flash")
            bare = model.split("/", 1)[-1]
            if bare in self.pricing:
                return self.pricing[bare]
            logger.debug("No pricing for model %s, using default", model)
        return self.default

    def calculate(self, model: str | None, usage: TokenUsage) -> CostCalculation:
        pricing = self.pricing_for(model)
        ai_cost = (
            usage.prompt_tokens * pricing.prompt_token_price_usd
            + usage.completion_tokens * pricing.completion_token_price_usd
        )
        platform_cost = ai_cost * pricing.platform_markup_multiplier
        credits = max(
            math.ceil(platform_cost / pricing.credit_value_usd),
            pricing.minimum_credit_cost,
        )
        return CostCalculation(
            ai_cost_usd=round(ai_cost, 6),
            platform_cost_usd=round(platform_cost, 6),
            credits=credits,
            pricing=pricing,
        )
