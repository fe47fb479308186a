"""Batched metrics enrichment with partial-failure tolerance."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from keyword_universe.core.deadline import RunDeadline
from keyword_universe.core.exceptions import BudgetExceededError, EnrichmentFailedError, RunCancelledError
from keyword_universe.core.rate_limiter import TokenBucket
from keyword_universe.integrations.base import MetricsProvider
from keyword_universe.schemas.keyword import KeywordCandidate, KeywordMetrics
from keyword_universe.services.cost_tracker import CostTracker
from keyword_universe.services.generator import candidate_quality, estimate_metrics
from keyword_universe.services.normalizer import canonical_keyword
from keyword_universe.services.progress import BatchCallback, BatchProgress

logger = logging.getLogger(__name__)

BATCH_SIZE = 100
ESTIMATED_CONFIDENCE = 0.3


@dataclass
class EnrichmentOutcome:
    candidates: list[KeywordCandidate] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    total_batches: int = 0
    succeeded_batches: int = 0
    failed_batches: int = 0
    skipped_batches: int = 0
    estimated_batches: int = 0
    unmatched_keywords: int = 0
    batch_sizes: list[int] = field(default_factory=list)
    deadline_reached: bool = False


@dataclass
class _BatchResult:
    status: str  # ok, failed, skipped_budget, skipped_deadline, cancelled
    metrics: list[KeywordMetrics] = field(default_factory=list)
    error: str | None = None


class MetricsEnrichmentBatcher:
    """Splits candidates into batches and merges provider metrics onto them.

    Batches share one token bucket (the inter-batch delay) and run on at
    most ``max_workers`` concurrent workers. Results merge in batch order,
    so the output does not depend on completion order.
    """

    def __init__(
        self,
        provider: MetricsProvider,
        rate_limiter: TokenBucket,
        cost_tracker: CostTracker | None = None,
        *,
        batch_size: int = BATCH_SIZE,
        max_workers: int = 1,
        estimate_failed_batches: bool = False,
    ) -> None:
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.cost_tracker = cost_tracker
        self.batch_size = max(1, batch_size)
        self.max_workers = max(1, max_workers)
        self.estimate_failed_batches = estimate_failed_batches

    async def enrich(
        self,
        candidates: list[KeywordCandidate],
        market: str,
        *,
        tier: str | None = None,
        cancel_event: asyncio.Event | None = None,
        deadline: RunDeadline | None = None,
        on_batch: BatchCallback | None = None,
    ) -> EnrichmentOutcome:
        """Enrich candidates with provider metrics.

        Raises:
            RunCancelledError: cancellation was requested before or during
                the batches.
            EnrichmentFailedError: every attempted batch failed.
        """
        outcome = EnrichmentOutcome()
        if not candidates:
            return outcome

        batches = [
            candidates[i : i + self.batch_size] for i in range(0, len(candidates), self.batch_size)
        ]
        outcome.total_batches = len(batches)
        outcome.batch_sizes = [len(batch) for batch in batches]
        semaphore = asyncio.Semaphore(self.max_workers)
        progress_lock = asyncio.Lock()
        completed = 0
        processed = 0

        logger.info(
            "Metrics enrichment started",
            extra={
                "tier": tier,
                "candidates": len(candidates),
                "total_batches": len(batches),
                "batch_size": self.batch_size,
                "max_workers": self.max_workers,
            },
        )

        async def _run_batch(batch_num: int, batch: list[KeywordCandidate]) -> _BatchResult:
            nonlocal completed, processed
            async with semaphore:
                result = await self._fetch_batch(batch_num, batch, market, tier, cancel_event, deadline)

            if result.status in ("ok", "failed") and on_batch is not None:
                async with progress_lock:
                    completed += 1
                    processed += len(batch)
                    await on_batch(
                        BatchProgress(
                            tier=tier,
                            completed_batches=completed,
                            total_batches=len(batches),
                            keywords_processed=processed,
                            succeeded=result.status == "ok",
                        )
                    )
            return result

        results = await asyncio.gather(
            *[_run_batch(index, batch) for index, batch in enumerate(batches)]
        )

        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelledError(stage="enrichment")

        last_error: str | None = None
        for batch_num, (batch, result) in enumerate(zip(batches, results, strict=True)):
            if result.status == "ok":
                outcome.succeeded_batches += 1
                self._merge(batch, result.metrics, outcome)
                continue

            if result.status == "failed":
                outcome.failed_batches += 1
                last_error = result.error
                if self.estimate_failed_batches:
                    outcome.estimated_batches += 1
                    outcome.candidates.extend(self._estimate(candidate) for candidate in batch)
                    outcome.warnings.append(
                        f"{tier} metrics batch {batch_num + 1}/{len(batches)} failed, "
                        f"estimated metrics used for {len(batch)} keywords: {result.error}"
                    )
                else:
                    outcome.warnings.append(
                        f"{tier} metrics batch {batch_num + 1}/{len(batches)} failed, "
                        f"{len(batch)} keywords dropped: {result.error}"
                    )
                continue

            outcome.skipped_batches += 1
            if result.status == "skipped_deadline":
                outcome.deadline_reached = True
                outcome.warnings.append(
                    f"{tier} metrics batch {batch_num + 1}/{len(batches)} skipped: run time budget exhausted"
                )
            else:
                outcome.warnings.append(
                    f"{tier} metrics batch {batch_num + 1}/{len(batches)} skipped: cost budget exhausted"
                )

        attempted = outcome.succeeded_batches + outcome.failed_batches
        if attempted and outcome.succeeded_batches == 0:
            logger.warning(
                "All metrics batches failed",
                extra={"tier": tier, "total_batches": len(batches), "error": last_error},
            )
            raise EnrichmentFailedError(
                len(batches),
                tier=tier,
                cause=RuntimeError(last_error) if last_error else None,
            )

        logger.info(
            "Metrics enrichment complete",
            extra={
                "tier": tier,
                "enriched": len(outcome.candidates),
                "succeeded_batches": outcome.succeeded_batches,
                "failed_batches": outcome.failed_batches,
                "skipped_batches": outcome.skipped_batches,
                "unmatched_keywords": outcome.unmatched_keywords,
            },
        )
        return outcome

    async def _fetch_batch(
        self,
        batch_num: int,
        batch: list[KeywordCandidate],
        market: str,
        tier: str | None,
        cancel_event: asyncio.Event | None,
        deadline: RunDeadline | None,
    ) -> _BatchResult:
        if cancel_event is not None and cancel_event.is_set():
            return _BatchResult("cancelled")
        if deadline is not None and deadline.expired():
            return _BatchResult("skipped_deadline")
        await self.rate_limiter.acquire()
        if cancel_event is not None and cancel_event.is_set():
            return _BatchResult("cancelled")
        if self.cost_tracker is not None:
            try:
                await self.cost_tracker.reserve("metrics", tier=tier)
            except BudgetExceededError:
                return _BatchResult("skipped_budget")

        try:
            metrics = await self.provider.get_metrics([c.keyword for c in batch], market)
        except Exception as exc:
            logger.warning(
                "Metrics batch failed",
                extra={"tier": tier, "batch_num": batch_num + 1, "batch_size": len(batch), "error": str(exc)},
            )
            return _BatchResult("failed", error=str(exc))

        # Results of a call that finished after cancellation are discarded
        if cancel_event is not None and cancel_event.is_set():
            return _BatchResult("cancelled")
        return _BatchResult("ok", metrics=metrics)

    def _merge(
        self,
        batch: list[KeywordCandidate],
        metrics: list[KeywordMetrics],
        outcome: EnrichmentOutcome,
    ) -> None:
        by_keyword = {canonical_keyword(item.keyword): item for item in metrics}
        for candidate in batch:
            item = by_keyword.get(canonical_keyword(candidate.keyword))
            if item is None:
                outcome.unmatched_keywords += 1
                continue
            outcome.candidates.append(
                candidate.model_copy(
                    update={
                        "volume": item.volume,
                        "difficulty": item.difficulty,
                        "cpc": item.cpc,
                        "trend": item.trend if item.trend is not None else candidate.trend,
                        "serp_features": tuple(item.serp_features),
                        "quality_score": candidate_quality(
                            item.volume, item.difficulty, candidate.relevance_score
                        ),
                        "metrics_source": "provider",
                    }
                )
            )

    def _estimate(self, candidate: KeywordCandidate) -> KeywordCandidate:
        volume, difficulty = estimate_metrics(candidate.keyword, candidate.stage)
        return candidate.model_copy(
            update={
                "volume": volume,
                "difficulty": difficulty,
                "quality_score": candidate_quality(volume, difficulty, candidate.relevance_score),
                "confidence": min(candidate.confidence, ESTIMATED_CONFIDENCE),
                "metrics_source": "estimated",
            }
        )
