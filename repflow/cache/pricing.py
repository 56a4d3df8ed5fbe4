from __future__ import annotations

from typing import Dict, Mapping, Optional

from pydantic import BaseModel

from ..constants import DEFAULT_MODEL, DEFAULT_MODEL_PRICES
from ..generation import TokenUsage

PER_MILLION = 1_000_000


class ModelPrice(BaseModel):
    """USD per million tokens."""

    input: float
    output: float
    cached_input: float = 0.0


class PriceTable:
    """Per-model token prices; unknown models are priced as the default."""

    def __init__(
        self,
        prices: Optional[Mapping[str, ModelPrice]] = None,
        default_model: str = DEFAULT_MODEL,
    ) -> None:
        self._prices: Dict[str, ModelPrice] = {
            name: ModelPrice(input=i, output=o, cached_input=c)
            for name, (i, o, c) in DEFAULT_MODEL_PRICES.items()
        }
        if prices:
            self._prices.update(prices)
        self.default_model = default_model

    def price_for(self, model: Optional[str]) -> ModelPrice:
        price = self._prices.get(model or self.default_model)
        if price is None:
            price = self._prices[self.default_model]
        return price

    def estimate(self, usage: TokenUsage, model: Optional[str] = None) -> float:
        """Dollar cost of one call; cached input is billed at the cached rate."""
        price = self.price_for(model)
        uncached = max(usage.input_tokens - usage.cached_tokens, 0)
        return (
            uncached * price.input
            + usage.cached_tokens * price.cached_input
            + usage.output_tokens * price.output
        ) / PER_MILLION
