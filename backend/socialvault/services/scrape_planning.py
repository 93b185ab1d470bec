"""Snapshot scrape sizing.

Decides how many timeline and social-graph items one scrape run may fetch,
given the free-tier ceilings, the per-run cost ceiling and what is left of
the user's monthly allowance. Sizing fails before any provider call is
made when the cheapest viable request does not fit the budget.
"""

from __future__ import annotations

from dataclasses import dataclass

from socialvault.schemas.backup_jobs import ApiBudget, SnapshotScrapeRequest
from socialvault.services.pricing import (
    PricingModel,
    estimate_cost,
    max_items_for_budget,
    round_usd,
    sum_costs,
    to_decimal,
)


class ScrapeRequestError(ValueError):
    pass


class BudgetExceededError(ScrapeRequestError):
    pass


@dataclass(frozen=True)
class ScrapeLimits:
    min_timeline_items: int
    default_timeline_items: int
    max_timeline_items: int
    min_social_graph_items: int
    max_social_graph_items: int
    per_run_limit_usd: float
    monthly_limit_usd: float

    @classmethod
    def from_settings(cls, settings) -> "ScrapeLimits":
        return cls(
            min_timeline_items=int(settings.SCRAPE_MIN_TIMELINE_ITEMS),
            default_timeline_items=int(settings.SCRAPE_DEFAULT_TIMELINE_ITEMS),
            max_timeline_items=int(settings.SCRAPE_MAX_TIMELINE_ITEMS),
            min_social_graph_items=int(settings.SCRAPE_MIN_SOCIAL_GRAPH_ITEMS),
            max_social_graph_items=int(settings.SCRAPE_MAX_SOCIAL_GRAPH_ITEMS),
            per_run_limit_usd=float(settings.SCRAPE_MAX_COST_PER_RUN_USD),
            monthly_limit_usd=float(settings.SCRAPE_MONTHLY_BUDGET_USD),
        )


@dataclass(frozen=True)
class ScrapePlan:
    timeline_items: int
    social_graph_items: int
    monthly_spent_usd: float
    monthly_limit_usd: float
    monthly_remaining_usd: float
    per_run_limit_usd: float
    effective_run_budget_usd: float
    estimated_timeline_cost_usd: float
    estimated_social_graph_cost_usd: float

    @property
    def estimated_max_run_cost_usd(self) -> float:
        return sum_costs(self.estimated_timeline_cost_usd, self.estimated_social_graph_cost_usd)

    def to_api_budget(self) -> ApiBudget:
        return ApiBudget(
            monthly_spent_usd=self.monthly_spent_usd,
            monthly_limit_usd=self.monthly_limit_usd,
            monthly_remaining_usd=self.monthly_remaining_usd,
            per_run_limit_usd=self.per_run_limit_usd,
            effective_run_budget_usd=self.effective_run_budget_usd,
            timeline_items=self.timeline_items,
            social_graph_items=self.social_graph_items,
            estimated_timeline_cost_usd=self.estimated_timeline_cost_usd,
            estimated_social_graph_cost_usd=self.estimated_social_graph_cost_usd,
            estimated_max_run_cost_usd=self.estimated_max_run_cost_usd,
        )


def effective_run_budget(*, per_run_limit_usd: float, monthly_limit_usd: float, monthly_spent_usd: float) -> float:
    remaining = max(to_decimal(0), to_decimal(monthly_limit_usd) - to_decimal(monthly_spent_usd))
    return round_usd(min(to_decimal(per_run_limit_usd), remaining))


def plan_snapshot_scrape(
    request: SnapshotScrapeRequest,
    *,
    monthly_spent_usd: float,
    limits: ScrapeLimits,
    pricing: PricingModel,
) -> ScrapePlan:
    """Size a snapshot scrape against ceilings and the remaining budget.

    Raises:
        ScrapeRequestError: nothing selected, or a social graph request
            below the minimum viable size
        BudgetExceededError: the cheapest viable request exceeds the budget
    """
    targets = request.targets
    if not (targets.profile or targets.wants_timeline or targets.wants_social_graph):
        raise ScrapeRequestError("Select at least one type of data to back up")

    monthly_remaining = round_usd(
        max(to_decimal(0), to_decimal(limits.monthly_limit_usd) - to_decimal(monthly_spent_usd))
    )
    budget = effective_run_budget(
        per_run_limit_usd=limits.per_run_limit_usd,
        monthly_limit_usd=limits.monthly_limit_usd,
        monthly_spent_usd=monthly_spent_usd,
    )

    timeline_items = 0
    if targets.wants_timeline or targets.profile:
        if targets.wants_timeline:
            requested = request.timeline_items or limits.default_timeline_items
        else:
            # Profile-only runs still need one small timeline query.
            requested = limits.min_timeline_items
        requested = max(limits.min_timeline_items, min(int(requested), limits.max_timeline_items))

        affordable = max_items_for_budget(budget, pricing.timeline)
        if affordable < limits.min_timeline_items:
            cheapest = estimate_cost(limits.min_timeline_items, pricing.timeline)
            raise BudgetExceededError(
                f"Scrape budget exhausted: ${budget:.2f} available, "
                f"the smallest timeline request costs ${cheapest:.2f}"
            )
        timeline_items = min(requested, affordable)

    timeline_cost = estimate_cost(timeline_items, pricing.timeline)

    social_graph_items = 0
    if targets.wants_social_graph:
        requested_graph = request.social_graph_max_items or limits.max_social_graph_items
        if requested_graph < limits.min_social_graph_items:
            raise ScrapeRequestError(
                f"Social graph requests need at least {limits.min_social_graph_items} items"
            )
        requested_graph = min(int(requested_graph), limits.max_social_graph_items)

        remaining_budget = to_decimal(budget) - to_decimal(timeline_cost)
        affordable_graph = max_items_for_budget(remaining_budget, pricing.social_graph)
        social_graph_items = min(requested_graph, affordable_graph)
        if social_graph_items < limits.min_social_graph_items:
            raise BudgetExceededError(
                f"Scrape budget exhausted: ${round_usd(remaining_budget):.2f} left after the timeline, "
                f"below the minimum social graph request of {limits.min_social_graph_items} items"
            )

    return ScrapePlan(
        timeline_items=timeline_items,
        social_graph_items=social_graph_items,
        monthly_spent_usd=round_usd(monthly_spent_usd),
        monthly_limit_usd=round_usd(limits.monthly_limit_usd),
        monthly_remaining_usd=monthly_remaining,
        per_run_limit_usd=round_usd(limits.per_run_limit_usd),
        effective_run_budget_usd=budget,
        estimated_timeline_cost_usd=timeline_cost,
        estimated_social_graph_cost_usd=estimate_cost(social_graph_items, pricing.social_graph),
    )
