"""Scrape pricing estimator.

Each billed axis follows a linear model: one query costs ``base_price_usd``
and covers the first ``included_items`` items; every further item costs
``item_price_usd``. Timeline (tweets/replies) and social graph
(followers/following) are priced independently.

Math is done in Decimal. Estimates round up to the cent and budgets round
down, so ``max_items_for_budget(estimate_cost(n)) >= n`` always holds.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP
from typing import Any

CENT = Decimal("0.01")

# Returned when an axis has no marginal price.
UNBOUNDED_ITEMS = 1_000_000_000


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except Exception:
        return Decimal("0")


def round_usd(value: Any) -> float:
    """Round a currency amount to cents (half-up) at a public boundary."""
    return float(to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class AxisPricing:
    base_price_usd: Decimal
    included_items: int
    item_price_usd: Decimal

    @classmethod
    def from_values(cls, base_price_usd: Any, included_items: Any, item_price_usd: Any) -> "AxisPricing":
        return cls(
            base_price_usd=max(Decimal("0"), to_decimal(base_price_usd)),
            included_items=max(0, int(included_items or 0)),
            item_price_usd=max(Decimal("0"), to_decimal(item_price_usd)),
        )

    def raw_cost(self, items: int) -> Decimal:
        if items <= 0:
            return Decimal("0")
        extra = max(0, items - self.included_items)
        return self.base_price_usd + self.item_price_usd * extra


@dataclass(frozen=True)
class PricingModel:
    timeline: AxisPricing
    social_graph: AxisPricing

    @classmethod
    def from_settings(cls, settings) -> "PricingModel":
        return cls(
            timeline=AxisPricing.from_values(
                settings.TIMELINE_QUERY_BASE_USD,
                settings.TIMELINE_INCLUDED_ITEMS,
                settings.TIMELINE_EXTRA_ITEM_USD,
            ),
            social_graph=AxisPricing.from_values(
                settings.SOCIAL_GRAPH_QUERY_BASE_USD,
                settings.SOCIAL_GRAPH_INCLUDED_ITEMS,
                settings.SOCIAL_GRAPH_ITEM_USD,
            ),
        )


def estimate_cost(items: int, pricing: AxisPricing) -> float:
    """Estimated cost in USD of fetching ``items`` items on one axis."""
    cost = pricing.raw_cost(int(items or 0))
    return float(cost.quantize(CENT, rounding=ROUND_CEILING))


def max_items_for_budget(budget_usd: Any, pricing: AxisPricing) -> int:
    """Largest item count whose estimated cost does not exceed the budget."""
    budget = to_decimal(budget_usd).quantize(CENT, rounding=ROUND_FLOOR)
    if budget <= 0:
        return 0
    if pricing.base_price_usd > 0 and budget < pricing.base_price_usd:
        return 0
    if pricing.item_price_usd == 0:
        return UNBOUNDED_ITEMS

    remaining = budget - pricing.base_price_usd
    extra = int((remaining / pricing.item_price_usd).to_integral_value(rounding=ROUND_FLOOR))
    return max(0, pricing.included_items + extra)


def sum_costs(*costs: Any) -> float:
    total = sum((to_decimal(c) for c in costs), Decimal("0"))
    return round_usd(total)
