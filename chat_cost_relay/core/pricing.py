"""
Pricing calculations and rate management.

Handles cost computations for the models the relay can serve.
"""

from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, Mapping

from .token_counter import TokenUsage

PER_MILLION = Decimal(1_000_000)
DEFAULT_MODEL = "gpt-3.5-turbo"


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_rate: Decimal  # Currency per prompt token
    output_rate: Decimal  # Currency per completion token

    def __post_init__(self):
        """Validate rates are non-negative."""
        if self.input_rate < 0:
            raise ValueError("input_rate must be >= 0")
        if self.output_rate < 0:
            raise ValueError("output_rate must be >= 0")

    @classmethod
    def per_million(cls, input_price, output_price) -> "ModelPricing":
        """Build pricing from list prices quoted per million tokens."""
        return cls(
            input_rate=Decimal(str(input_price)) / PER_MILLION,
            output_rate=Decimal(str(output_price)) / PER_MILLION,
        )


@dataclass(frozen=True)
class PricingTable:
    """Read-only pricing table with a designated fallback entry.

    Constructed once at process start and shared by reference; the
    ``prices`` mapping is frozen so request handlers cannot alter it.
    """
    prices: Mapping[str, ModelPricing]
    default_model: str = DEFAULT_MODEL

    def __post_init__(self):
        if self.default_model not in self.prices:
            raise ValueError(
                f"default_model '{self.default_model}' is missing from the pricing table"
            )
        object.__setattr__(self, "prices", MappingProxyType(dict(self.prices)))

    @property
    def models(self):
        return list(self.prices.keys())

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model, or for ``default_model`` when the
            identifier is not listed
        """
        return self.prices.get(model, self.prices[self.default_model])

    def calculate_cost(self, model: str, usage: TokenUsage) -> float:
        """Price ``usage`` for ``model``.

        cost = (prompt_tokens / 1000) * input_rate
             + (completion_tokens / 1000) * output_rate

        No rounding is applied; the result is a pure function of the
        token counts and this table.
        """
        pricing = self.get_pricing(model)

        prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.input_rate
        completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.output_rate

        return float(prompt_cost + completion_cost)


def build_pricing_table(prices: Dict[str, ModelPricing], default_model: str = DEFAULT_MODEL) -> PricingTable:
    return PricingTable(prices=prices, default_model=default_model)


DEFAULT_PRICING_TABLE = build_pricing_table({
    "gpt-4o": ModelPricing.per_million("5.0", "15.0"),
    "gpt-3.5-turbo": ModelPricing.per_million("0.5", "1.5"),
    "claude-v1": ModelPricing.per_million("8.0", "24.0"),
    "gemini-pro": ModelPricing.per_million("0.5", "1.5"),
})


def calculate_cost(model: str, usage: TokenUsage, table: PricingTable = DEFAULT_PRICING_TABLE) -> float:
    """Calculate the cost of ``usage`` against ``table``.

    Args:
        model: Model identifier
        usage: Token usage data
        table: Pricing table, the built-in one by default

    Returns:
        Total cost as a float
    """
    return table.calculate_cost(model, usage)
