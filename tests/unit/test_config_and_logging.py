"""Unit tests for settings, structured logging and cost accounting."""

from __future__ import annotations

import asyncio
import json
import logging

import pytest

from keyword_universe.config import Settings
from keyword_universe.core.exceptions import BudgetExceededError
from keyword_universe.core.logging import JSONExtrasFormatter, get_run_logger, setup_logging
from keyword_universe.schemas.expansion import CostEstimate
from keyword_universe.services.cost_tracker import CostTracker


def test_model_resolution_prefers_overrides() -> None:
    assert Settings(environment="production").get_model("fast") == "anthropic:claude-haiku-4-5"
    assert Settings(environment="development", dev_model_fast="openai:o-test").get_model("fast") == (
        "openai:o-test"
    )


def test_sizes_are_clamped_to_at_least_one() -> None:
    app = Settings(metrics_batch_size=0, metrics_max_workers=-3, progress_queue_size=0)

    assert app.metrics_batch_size == 1
    assert app.metrics_max_workers == 1
    assert app.progress_queue_size == 1


def test_cost_table_covers_every_provider() -> None:
    table = Settings(cost_per_llm_call=0.5).cost_table()

    assert table["llm"] == 0.5
    assert set(table) == {"llm", "metrics", "serp", "scraper"}


def test_formatter_appends_sorted_json_extras() -> None:
    record = logging.LogRecord("keyword_universe.test", logging.INFO, __file__, 1, "Tier capped", None, None)
    record.tier = "tier2"
    record.selected = 40

    line = JSONExtrasFormatter().format(record)

    message, payload = line.split("Tier capped ", 1)
    assert "| INFO     | keyword_universe.test |" in message
    assert json.loads(payload) == {"selected": 40, "tier": "tier2"}
    assert payload.index("selected") < payload.index("tier")


def test_run_logger_merges_run_id(caplog: pytest.LogCaptureFixture) -> None:
    log = get_run_logger("keyword_universe.tests", "run-42")

    with caplog.at_level(logging.INFO, logger="keyword_universe.tests"):
        log.info("Stage done", extra={"stage": "scoring"})

    assert caplog.records[0].run_id == "run-42"
    assert caplog.records[0].stage == "scoring"


def test_setup_logging_is_idempotent() -> None:
    logger = logging.getLogger("keyword_universe")
    existing = list(logger.handlers)
    logger.handlers.clear()
    try:
        setup_logging(logging.DEBUG)
        setup_logging(logging.DEBUG)

        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONExtrasFormatter)
        assert logger.propagate is False
    finally:
        logger.handlers[:] = existing
        logger.propagate = True


@pytest.mark.asyncio
async def test_cost_tracker_accumulates_and_enforces_budget() -> None:
    tracker = CostTracker({"llm": 0.15, "metrics": 0.2}, budget_limit=0.5)

    await tracker.reserve("llm", tier="dream100")
    await tracker.reserve("metrics", calls=1, tier="dream100")

    assert tracker.total == pytest.approx(0.35)
    with pytest.raises(BudgetExceededError) as exc_info:
        await tracker.reserve("metrics")
    assert exc_info.value.code == "budget_exceeded"
    assert tracker.total == pytest.approx(0.35)
    assert tracker.api_calls["metrics"] == 1

    await tracker.reserve("llm")
    assert tracker.total == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_concurrent_reservations_never_overspend() -> None:
    tracker = CostTracker({"llm": 0.15}, budget_limit=0.2)

    async def _attempt() -> bool:
        try:
            await tracker.reserve("llm")
        except BudgetExceededError:
            return False
        return True

    outcomes = await asyncio.gather(*(_attempt() for _ in range(5)))

    assert outcomes.count(True) == 1
    assert tracker.total == pytest.approx(0.15)


@pytest.mark.asyncio
async def test_cost_breakdown_reports_utilization_and_variance() -> None:
    tracker = CostTracker({"metrics": 0.2}, budget_limit=1.0)
    await tracker.reserve("metrics", calls=2, tier="tier2")
    estimate = CostEstimate(total=0.5, by_provider={"metrics": 0.5}, estimated_calls={"metrics": 5})

    breakdown = tracker.breakdown(estimate, total_keywords=8)

    assert breakdown.total == pytest.approx(0.4)
    assert breakdown.by_tier == {"tier2": 0.4}
    assert breakdown.budget_utilization == 40.0
    assert breakdown.cost_per_keyword == 0.05
    assert breakdown.variance_percent == -20.0


def test_provider_pacing_defaults_and_clamps() -> None:
    app = Settings(llm_burst=0, serp_burst=-2)

    assert app.llm_burst == 1
    assert app.serp_burst == 1
    assert app.llm_call_delay_seconds > 0
    assert app.serp_call_delay_seconds > 0
    assert "app_name" not in Settings.model_fields
