"""Cost lookups against the configured per-model pricing table."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping

from usage_engine.core.config import ModelPrice, load_config
from usage_engine.ingest.vendors import strip_provider_prefix

MICRO_USD = Decimal("0.000001")
_PER_MILLION = Decimal(1_000_000)


def to_money(value: Decimal | float | int | str | None) -> Decimal:
    """Quantize to six decimal places; ``None`` and negatives become zero."""
    if value is None:
        return Decimal("0").quantize(MICRO_USD)
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    if not amount.is_finite() or amount < 0:
        amount = Decimal("0")
    return amount.quantize(MICRO_USD, rounding=ROUND_HALF_UP)


def lookup_price(model: str | None, pricing: Mapping[str, ModelPrice] | None = None) -> ModelPrice | None:
    if not model:
        return None
    table = load_config().pricing if pricing is None else pricing
    return table.get(model) or table.get(strip_provider_prefix(model))


def estimate_cost(
    model: str | None,
    input_tokens: int = 0,
    output_tokens: int = 0,
    *,
    pricing: Mapping[str, ModelPrice] | None = None,
) -> Decimal:
    """Price one call; models missing from the table cost nothing."""
    price = lookup_price(model, pricing)
    if price is None:
        return to_money(0)
    cost = (
        Decimal(max(input_tokens, 0)) * price.input_per_million_usd / _PER_MILLION
        + Decimal(max(output_tokens, 0)) * price.output_per_million_usd / _PER_MILLION
        + price.per_request_usd
    )
    return to_money(cost)


__all__ = ["estimate_cost", "lookup_price", "to_money"]
