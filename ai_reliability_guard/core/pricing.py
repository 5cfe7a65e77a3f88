"""
Pricing calculations and rate management.

Prices are expressed per million tokens. Unknown models price at zero and
are reported through the log rather than failing the call.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Mapping, Optional, Union

import structlog

from .token_counter import TokenUsage

logger = structlog.get_logger(__name__)

MILLION = Decimal("1000000")
COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_per_million: Decimal   # Cost per 1M input tokens
    output_per_million: Decimal  # Cost per 1M output tokens

    def cost_for(self, usage: TokenUsage) -> Decimal:
        """Cost of a usage at this price, rounded to six decimal places."""
        input_cost = Decimal(usage.input_tokens) / MILLION * self.input_per_million
        output_cost = Decimal(usage.output_tokens) / MILLION * self.output_per_million
        return (input_cost + output_cost).quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PricingTable:
    """Pricing table for supported models."""
    prices: Dict[str, ModelPricing] = field(default_factory=dict)

    def price_for(self, model: str) -> Optional[ModelPricing]:
        """Get pricing for a model, or None when it is unknown."""
        return self.prices.get(model)

    def with_overrides(self, overrides: Mapping[str, ModelPricing]) -> "PricingTable":
        """Return a new table with the given prices added or replaced."""
        merged = dict(self.prices)
        merged.update(overrides)
        return PricingTable(merged)


DEFAULT_PRICING_TABLE = PricingTable({
    "gpt-4o": ModelPricing(
        input_per_million=Decimal("2.50"),
        output_per_million=Decimal("10.00")
    ),
    "gpt-4o-mini": ModelPricing(
        input_per_million=Decimal("0.15"),
        output_per_million=Decimal("0.60")
    ),
    "gpt-4": ModelPricing(
        input_per_million=Decimal("30.00"),
        output_per_million=Decimal("60.00")
    ),
    "gpt-3.5-turbo": ModelPricing(
        input_per_million=Decimal("0.50"),
        output_per_million=Decimal("1.50")
    ),
    "claude-3-opus": ModelPricing(
        input_per_million=Decimal("15.00"),
        output_per_million=Decimal("75.00")
    ),
    "claude-3-5-sonnet": ModelPricing(
        input_per_million=Decimal("3.00"),
        output_per_million=Decimal("15.00")
    ),
})


def to_decimal(value: Union[int, float, str, Decimal]) -> Decimal:
    """Convert a config value to Decimal without float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def calculate_cost(
    model: str,
    usage: TokenUsage,
    table: PricingTable = DEFAULT_PRICING_TABLE
) -> Decimal:
    """Calculate the cost of token usage for a model.

    Args:
        model: Model identifier
        usage: Token usage data
        table: Pricing table to look the model up in

    Returns:
        Cost rounded to six decimal places; zero for unknown models
    """
    pricing = table.price_for(model)
    if pricing is None:
        if usage.total_tokens:
            logger.warning("pricing_unknown_model", model=model, tokens=usage.total_tokens)
        return Decimal("0")
    return pricing.cost_for(usage)
