"""
Gemini Proxy - Pricing Table

Per-model Gemini list prices and the cost calculator.
Prices are USD per 1 million tokens.

Updated: July 2025
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Optional


# Lowest-tier legacy model; used for any model id not in the table.
DEFAULT_PRICING_MODEL = "gemini-pro"

# Externally observable cost precision.
COST_DISPLAY_DECIMALS = 6


@dataclass(frozen=True)
class PricingEntry:
    """
    Pricing for a single model.

    A zero list price means the side is free (embedding output) and
    contributes no cost.
    """
    model_id: str
    input_per_1m: float
    output_per_1m: float

    @property
    def input_tokens_per_dollar(self) -> float:
        if self.input_per_1m <= 0:
            return math.inf
        return 1_000_000 / self.input_per_1m

    @property
    def output_tokens_per_dollar(self) -> float:
        if self.output_per_1m <= 0:
            return math.inf
        return 1_000_000 / self.output_per_1m

    def calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """
        Calculate cost for token usage.

        cost = input / input_tokens_per_dollar + output / output_tokens_per_dollar
        """
        input_tokens = max(0, input_tokens or 0)
        output_tokens = max(0, output_tokens or 0)
        return (
            input_tokens / self.input_tokens_per_dollar
            + output_tokens / self.output_tokens_per_dollar
        )


class PricingTable:
    """
    Static mapping from Gemini model id to pricing.

    Lookups are exact-match; unlisted ids resolve to the default entry.
    """

    def __init__(self, default_model: str = DEFAULT_PRICING_MODEL):
        self._prices: Dict[str, PricingEntry] = {}
        self._load_default_pricing()
        self._default = self._prices[default_model]

    def _load_default_pricing(self):
        """Load Gemini list prices."""

        # ============================================================
        # Legacy models
        # ============================================================

        self._add_price("gemini-pro", 0.50, 1.50)
        self._add_price("gemini-pro-vision", 0.50, 1.50)

        # ============================================================
        # Current generation
        # ============================================================

        for model_id in ("gemini-1.5-pro", "gemini-1.5-pro-latest"):
            self._add_price(model_id, 3.50, 10.50)

        for model_id in ("gemini-1.5-flash", "gemini-1.5-flash-latest"):
            self._add_price(model_id, 0.075, 0.30)

        for model_id in ("gemini-1.5-flash-8b", "gemini-1.5-flash-8b-latest"):
            self._add_price(model_id, 0.0375, 0.15)

        # ============================================================
        # Latest generation
        # ============================================================

        self._add_price("gemini-2.0-flash-exp", 0.075, 0.30)

        for model_id in ("gemini-2.5-pro", "gemini-2.5-pro-latest"):
            self._add_price(model_id, 3.50, 10.50)

        # ============================================================
        # Embeddings (input only)
        # ============================================================

        self._add_price("gemini-embedding-001", 0.15, 0.0)

    def _add_price(self, model_id: str, input_per_1m: float, output_per_1m: float):
        self._prices[model_id] = PricingEntry(
            model_id=model_id,
            input_per_1m=input_per_1m,
            output_per_1m=output_per_1m,
        )

    @property
    def default(self) -> PricingEntry:
        return self._default

    def get_price(self, model_id: str) -> Optional[PricingEntry]:
        """Exact lookup; None if the model is not listed."""
        return self._prices.get(model_id)

    def resolve(self, model_id: str) -> PricingEntry:
        """Exact lookup with the default fallback."""
        return self._prices.get(model_id, self._default)

    def calculate_cost(self, input_tokens: int, output_tokens: int, model_id: str) -> float:
        """Unrounded cost in USD. Never raises for unknown models."""
        return self.resolve(model_id).calculate_cost(input_tokens, output_tokens)

    def list_models(self) -> List[PricingEntry]:
        return sorted(self._prices.values(), key=lambda p: p.model_id)


# Global table instance (static data)
_table = PricingTable()


def get_pricing_table() -> PricingTable:
    return _table


def calculate_cost(input_tokens: int, output_tokens: int, model_id: str) -> float:
    """Calculate unrounded cost for a request."""
    return _table.calculate_cost(input_tokens, output_tokens, model_id)


def round_cost(cost: float) -> float:
    """Round a cost for display in responses."""
    return round(cost, COST_DISPLAY_DECIMALS)
