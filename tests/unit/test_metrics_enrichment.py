"""Unit tests for batched metrics enrichment and its failure policy."""

from __future__ import annotations

import asyncio

import pytest

from keyword_universe.core.deadline import RunDeadline
from keyword_universe.core.exceptions import (
    EnrichmentFailedError,
    ExternalAPIError,
    RunCancelledError,
)
from keyword_universe.core.rate_limiter import TokenBucket
from keyword_universe.schemas.keyword import KeywordCandidate, KeywordMetrics
from keyword_universe.services.cost_tracker import CostTracker
from keyword_universe.services.enrichment import MetricsEnrichmentBatcher
from keyword_universe.services.progress import BatchProgress


class _FakeMetricsProvider:
    def __init__(
        self,
        *,
        fail_on: tuple[str, ...] = (),
        missing: tuple[str, ...] = (),
        on_call=None,
    ) -> None:
        self.fail_on = fail_on
        self.missing = missing
        self.on_call = on_call
        self.calls: list[list[str]] = []

    async def get_metrics(self, keywords: list[str], market: str) -> list[KeywordMetrics]:
        self.calls.append(list(keywords))
        if self.on_call is not None:
            self.on_call()
        if any(keyword in self.fail_on for keyword in keywords):
            raise ExternalAPIError("DataForSEO", "service unavailable")
        return [
            KeywordMetrics(keyword=keyword.upper(), volume=500, difficulty=30.0, cpc=1.5, trend=0.2)
            for keyword in keywords
            if keyword not in self.missing
        ]


def _candidates(count: int) -> list[KeywordCandidate]:
    return [
        KeywordCandidate(keyword=f"keyword {i}", stage="dream100", relevance_score=0.5)
        for i in range(1, count + 1)
    ]


def _batcher(provider, **kwargs) -> MetricsEnrichmentBatcher:
    kwargs.setdefault("batch_size", 3)
    return MetricsEnrichmentBatcher(provider, TokenBucket("metrics", 0), **kwargs)


@pytest.mark.asyncio
async def test_metrics_are_merged_onto_matching_candidates() -> None:
    outcome = await _batcher(_FakeMetricsProvider()).enrich(_candidates(4), "US", tier="dream100")

    assert [c.keyword for c in outcome.candidates] == [f"keyword {i}" for i in range(1, 5)]
    assert all(c.volume == 500 and c.difficulty == 30.0 for c in outcome.candidates)
    assert all(c.metrics_source == "provider" for c in outcome.candidates)
    assert all(c.trend == 0.2 for c in outcome.candidates)
    assert outcome.batch_sizes == [3, 1]
    assert outcome.succeeded_batches == 2


@pytest.mark.asyncio
async def test_failed_batch_is_dropped_with_warning() -> None:
    provider = _FakeMetricsProvider(fail_on=("keyword 4",))

    outcome = await _batcher(provider).enrich(_candidates(6), "US", tier="dream100")

    assert [c.keyword for c in outcome.candidates] == ["keyword 1", "keyword 2", "keyword 3"]
    assert outcome.failed_batches == 1
    assert len(outcome.warnings) == 1
    assert "batch 2/2 failed" in outcome.warnings[0]
    assert "3 keywords dropped" in outcome.warnings[0]


@pytest.mark.asyncio
async def test_failed_batch_can_fall_back_to_estimates() -> None:
    provider = _FakeMetricsProvider(fail_on=("keyword 4",))

    outcome = await _batcher(provider, estimate_failed_batches=True).enrich(
        _candidates(6), "US", tier="dream100"
    )

    assert len(outcome.candidates) == 6
    estimated = [c for c in outcome.candidates if c.metrics_source == "estimated"]
    assert [c.keyword for c in estimated] == ["keyword 4", "keyword 5", "keyword 6"]
    assert all(c.confidence <= 0.3 for c in estimated)
    assert outcome.estimated_batches == 1


@pytest.mark.asyncio
async def test_every_batch_failing_is_fatal() -> None:
    provider = _FakeMetricsProvider(fail_on=tuple(f"keyword {i}" for i in range(1, 7)))

    with pytest.raises(EnrichmentFailedError) as exc_info:
        await _batcher(provider).enrich(_candidates(6), "US", tier="tier2")

    assert exc_info.value.code == "enrichment_failed"
    assert exc_info.value.tier == "tier2"
    assert exc_info.value.total_batches == 2


@pytest.mark.asyncio
async def test_unmatched_keywords_are_dropped() -> None:
    provider = _FakeMetricsProvider(missing=("keyword 2",))

    outcome = await _batcher(provider).enrich(_candidates(3), "US")

    assert [c.keyword for c in outcome.candidates] == ["keyword 1", "keyword 3"]
    assert outcome.unmatched_keywords == 1


@pytest.mark.asyncio
async def test_cancellation_before_start_raises() -> None:
    provider = _FakeMetricsProvider()
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(RunCancelledError):
        await _batcher(provider).enrich(_candidates(3), "US", cancel_event=cancel)

    assert provider.calls == []


@pytest.mark.asyncio
async def test_cancellation_mid_run_discards_results_and_stops() -> None:
    cancel = asyncio.Event()
    provider = _FakeMetricsProvider(on_call=cancel.set)

    with pytest.raises(RunCancelledError):
        await _batcher(provider).enrich(_candidates(9), "US", cancel_event=cancel)

    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_budget_exhaustion_skips_remaining_batches() -> None:
    tracker = CostTracker({"metrics": 0.2}, budget_limit=0.2)

    outcome = await _batcher(_FakeMetricsProvider(), cost_tracker=tracker).enrich(
        _candidates(6), "US", tier="dream100"
    )

    assert len(outcome.candidates) == 3
    assert outcome.skipped_batches == 1
    assert "cost budget exhausted" in outcome.warnings[0]
    assert tracker.api_calls["metrics"] == 1


@pytest.mark.asyncio
async def test_concurrent_workers_stay_within_budget() -> None:
    tracker = CostTracker({"metrics": 0.2}, budget_limit=0.4)
    provider = _FakeMetricsProvider()

    outcome = await _batcher(provider, cost_tracker=tracker, batch_size=1, max_workers=3).enrich(
        _candidates(6), "US", tier="tier2"
    )

    assert len(provider.calls) == 2
    assert tracker.total == pytest.approx(0.4)
    assert outcome.skipped_batches == 4


@pytest.mark.asyncio
async def test_expired_deadline_skips_batches() -> None:
    deadline = RunDeadline(0)

    outcome = await _batcher(_FakeMetricsProvider()).enrich(_candidates(3), "US", deadline=deadline)

    assert outcome.candidates == []
    assert outcome.deadline_reached is True
    assert outcome.skipped_batches == 1


@pytest.mark.asyncio
async def test_progress_reported_after_every_batch() -> None:
    seen: list[BatchProgress] = []

    async def _on_batch(progress: BatchProgress) -> None:
        seen.append(progress)

    provider = _FakeMetricsProvider(fail_on=("keyword 4",))
    await _batcher(provider).enrich(_candidates(7), "US", tier="tier3", on_batch=_on_batch)

    assert [p.completed_batches for p in seen] == [1, 2, 3]
    assert all(p.total_batches == 3 for p in seen)
    assert seen[-1].keywords_processed == 7
    assert [p.succeeded for p in seen] == [True, False, True]


@pytest.mark.asyncio
async def test_concurrent_workers_merge_in_batch_order() -> None:
    outcome = await _batcher(_FakeMetricsProvider(), batch_size=2, max_workers=3).enrich(
        _candidates(7), "US"
    )

    assert [c.keyword for c in outcome.candidates] == [f"keyword {i}" for i in range(1, 8)]


@pytest.mark.asyncio
async def test_empty_input_makes_no_calls() -> None:
    provider = _FakeMetricsProvider()

    outcome = await _batcher(provider).enrich([], "US")

    assert outcome.candidates == []
    assert provider.calls == []
