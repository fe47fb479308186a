"""Run-scoped cost and API call accounting."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Mapping

from keyword_universe.core.exceptions import BudgetExceededError
from keyword_universe.schemas.expansion import CostBreakdown, CostEstimate

logger = logging.getLogger(__name__)

PROVIDERS = ("llm", "metrics", "serp", "scraper")


class CostTracker:
    """Accumulates per-provider cost for one run.

    Shared by every concurrent worker in the run; updates happen under a
    lock so totals stay consistent.
    """

    def __init__(
        self,
        cost_table: Mapping[str, float],
        budget_limit: float | None = None,
    ) -> None:
        self.cost_table = dict(cost_table)
        self.budget_limit = budget_limit
        self._lock = asyncio.Lock()
        self._by_provider: dict[str, float] = {provider: 0.0 for provider in PROVIDERS}
        self._by_tier: dict[str, float] = defaultdict(float)
        self._calls: dict[str, int] = {provider: 0 for provider in PROVIDERS}

    @property
    def total(self) -> float:
        return round(sum(self._by_provider.values()), 4)

    @property
    def api_calls(self) -> dict[str, int]:
        return dict(self._calls)

    @property
    def total_api_calls(self) -> int:
        return sum(self._calls.values())

    def unit_cost(self, provider: str) -> float:
        return self.cost_table.get(provider, 0.0)

    def _fits(self, cost: float) -> bool:
        if self.budget_limit is None:
            return True
        return self.total + cost <= self.budget_limit + 1e-9

    async def reserve(self, provider: str, calls: int = 1, tier: str | None = None) -> float:
        """Charge ``calls`` calls before they are issued and return the new total.

        The budget check and the charge happen under one lock, so
        concurrent workers can never spend past the limit together.

        Raises:
            BudgetExceededError: the calls do not fit in the remaining budget.
        """
        cost = self.unit_cost(provider) * calls
        async with self._lock:
            if not self._fits(cost):
                raise BudgetExceededError(self.budget_limit or 0.0, self.total + cost)
            self._by_provider[provider] = self._by_provider.get(provider, 0.0) + cost
            self._calls[provider] = self._calls.get(provider, 0) + calls
            if tier:
                self._by_tier[tier] += cost
            return self.total

    def breakdown(self, estimate: CostEstimate | None, total_keywords: int) -> CostBreakdown:
        total = self.total
        utilization = None
        if self.budget_limit:
            utilization = round(total / self.budget_limit * 100, 2)
        estimated_total = estimate.total if estimate else None
        variance = None
        if estimated_total:
            variance = round((total - estimated_total) / estimated_total * 100, 2)

        return CostBreakdown(
            total=total,
            by_provider={provider: round(value, 4) for provider, value in self._by_provider.items()},
            by_tier={tier: round(value, 4) for tier, value in self._by_tier.items()},
            budget_limit=self.budget_limit,
            budget_utilization=utilization,
            cost_per_keyword=round(total / total_keywords, 6) if total_keywords else 0.0,
            estimated_total=estimated_total,
            variance_percent=variance,
        )
