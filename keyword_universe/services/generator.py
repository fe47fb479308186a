"""Multi-strategy candidate generation for each tier."""

from __future__ import annotations

import asyncio
import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from keyword_universe.core.exceptions import (
    BudgetExceededError,
    InsufficientCandidatesError,
    RunCancelledError,
)
from keyword_universe.schemas.expansion import ExpansionRequest
from keyword_universe.schemas.keyword import KeywordCandidate, KeywordStage
from keyword_universe.services.cost_tracker import CostTracker
from keyword_universe.services.normalizer import (
    keyword_similarity,
    normalize_candidates,
    normalize_keyword,
    relevance_to_seeds,
)
from keyword_universe.services.progress import BatchCallback, BatchProgress
from keyword_universe.services.strategies import ExpansionStrategy, RawIdea

logger = logging.getLogger(__name__)

TIER1_MAX_CANDIDATES = 300
TIER1_MIN_CANDIDATES = 50
MAX_CONCURRENT_PARENTS = 3

# (base volume, base difficulty) used before real metrics exist
_ESTIMATE_BASES: dict[KeywordStage, tuple[int, int]] = {
    "dream100": (1000, 55),
    "tier2": (500, 40),
    "tier3": (100, 25),
}


def estimate_metrics(keyword: str, stage: KeywordStage) -> tuple[int, float]:
    """Heuristic volume and difficulty; longer phrases get less of both."""
    base_volume, base_difficulty = _ESTIMATE_BASES[stage]
    extra_words = len(keyword.split()) - 2
    volume = int(base_volume * max(0.1, 1 - extra_words * 0.2))
    difficulty = max(10, math.floor(base_difficulty * (1 - min(0.3, extra_words * 0.1))))
    return max(0, volume), float(min(100, difficulty))


def quality_from_metrics(volume: int, difficulty: float) -> float:
    volume_part = min(math.log10(max(0, volume) + 1) / 5, 1.0)
    ease = 1 - max(0.0, min(100.0, difficulty)) / 100
    return round(volume_part * 0.6 + ease * 0.4, 4)


def candidate_quality(volume: int, difficulty: float, relevance: float) -> float:
    """Quality used to rank candidates within a parent and to break duplicates."""
    return round(min(1.0, quality_from_metrics(volume, difficulty) * 0.7 + relevance * 0.3), 4)


def minimum_tier1_candidates(target: int) -> int:
    return min(TIER1_MIN_CANDIDATES, math.ceil(target * 0.5))


@dataclass
class GenerationOutcome:
    candidates: list[KeywordCandidate] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    strategy_counts: dict[str, int] = field(default_factory=dict)
    competitor_domains: list[str] = field(default_factory=list)
    raw_count: int = 0
    invalid_filtered: int = 0
    duplicates_removed: int = 0


@runtime_checkable
class KeywordGenerator(Protocol):
    """Produces the candidates of each tier for the orchestrator."""

    async def generate_dream100(
        self,
        seeds: list[str],
        request: ExpansionRequest,
        max_candidates: int = TIER1_MAX_CANDIDATES,
        *,
        cancel_event: asyncio.Event | None = None,
        on_batch: BatchCallback | None = None,
    ) -> GenerationOutcome:
        """Generate head-term candidates from the seeds.

        All seeds go through the strategies together, so progress is
        reported as a single batch.

        Raises:
            RunCancelledError: cancellation was requested during generation.
            InsufficientCandidatesError: fewer than ``min(50, target * 0.5)``
                candidates survived normalization.
        """
        outcome = GenerationOutcome()
        self._check_cancelled(cancel_event)
        ideas = [
            RawIdea(keyword=seed, source="seed", relevance=1.0, confidence=0.9) for seed in seeds
        ]
        ideas.extend(
            await self._run_strategies("dream100", seeds, max_candidates, request, outcome, cancel_event)
        )
        self._check_cancelled(cancel_event)
        if on_batch is not None:
            await on_batch(
                BatchProgress(
                    tier="dream100",
                    completed_batches=1,
                    total_batches=1,
                    keywords_processed=len(seeds),
                    succeeded=True,
                )
            )

        candidates = [self._to_candidate(idea, "dream100", None, seeds) for idea in ideas]
        normalized = self._normalize(candidates, outcome)
        ranked = sorted(normalized, key=lambda c: (-c.quality_score, c.keyword))
        outcome.candidates = ranked[:max_candidates]

        required = minimum_tier1_candidates(request.dream100_count)
        logger.info(
            "Dream100 candidates generated",
            extra={
                "raw": outcome.raw_count,
                "kept": len(outcome.candidates),
                "required": required,
                "strategies": outcome.strategy_counts,
            },
        )
        if len(outcome.candidates) < required:
            raise InsufficientCandidatesError(len(outcome.candidates), required, tier="dream100")
        return outcome

    async def generate_children(
        self,
        stage: KeywordStage,
        parents: list[KeywordCandidate],
        request: ExpansionRequest,
        max_per_parent: int,
        *,
        cancel_event: asyncio.Event | None = None,
        on_batch: BatchCallback | None = None,
    ) -> GenerationOutcome:
        """Generate up to ``max_per_parent`` candidates for every parent.

        Raises:
            RunCancelledError: cancellation was requested during generation.
                Parents not yet started are never expanded.
        """
        outcome = GenerationOutcome()
        if not parents or max_per_parent <= 0:
            return outcome

        semaphore = asyncio.Semaphore(self.max_concurrent_parents)
        progress_lock = asyncio.Lock()
        completed = 0

        async def _expand_parent(parent: KeywordCandidate) -> tuple[list[KeywordCandidate], GenerationOutcome]:
            nonlocal completed
            parent_outcome = GenerationOutcome()
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return [], parent_outcome
                ideas = await self._run_strategies(
                    stage, [parent.keyword], max_per_parent, request, parent_outcome, cancel_event
                )
            parent_key = normalize_keyword(parent.keyword)
            children = [
                self._to_candidate(idea, stage, parent.keyword, [parent.keyword])
                for idea in ideas
                if normalize_keyword(idea.keyword) != parent_key
            ]
            kept = normalize_candidates(children)
            parent_outcome.invalid_filtered += kept.invalid_filtered
            parent_outcome.duplicates_removed += kept.duplicates_removed
            best = sorted(kept.candidates, key=lambda c: (-c.quality_score, c.keyword))

            if on_batch is not None and not (cancel_event is not None and cancel_event.is_set()):
                async with progress_lock:
                    completed += 1
                    await on_batch(
                        BatchProgress(
                            tier=stage,
                            completed_batches=completed,
                            total_batches=len(parents),
                            keywords_processed=completed,
                            succeeded=bool(best),
                        )
                    )
            return best[:max_per_parent], parent_outcome

        results = await asyncio.gather(*[_expand_parent(parent) for parent in parents])
        self._check_cancelled(cancel_event)

        merged: list[KeywordCandidate] = []
        strategy_counts: Counter[str] = Counter()
        for children, parent_outcome in results:
            merged.extend(children)
            outcome.warnings.extend(parent_outcome.warnings)
            outcome.raw_count += parent_outcome.raw_count
            outcome.invalid_filtered += parent_outcome.invalid_filtered
            outcome.duplicates_removed += parent_outcome.duplicates_removed
            strategy_counts.update(parent_outcome.strategy_counts)
            for domain in parent_outcome.competitor_domains:
                if domain not in outcome.competitor_domains:
                    outcome.competitor_domains.append(domain)

        outcome.strategy_counts = dict(strategy_counts)
        # Two parents can produce the same child; keep the better one
        outcome.candidates = self._normalize(merged, outcome)

        logger.info(
            "Tier candidates generated",
            extra={
                "stage": stage,
                "parents": len(parents),
                "raw": outcome.raw_count,
                "kept": len(outcome.candidates),
            },
        )
        return outcome

    async def _run_strategies(
        self,
        stage: KeywordStage,
        seeds: list[str],
        max_results: int,
        request: ExpansionRequest,
        outcome: GenerationOutcome,
        cancel_event: asyncio.Event | None = None,
    ) -> list[RawIdea]:
        active = [s for s in self.strategies.get(stage, []) if s.is_enabled(request)]
        if not active:
            return []

        async def _run(strategy: ExpansionStrategy) -> list[RawIdea]:
            slots = math.ceil(max_results * strategy.weight)
            try:
                result = await strategy.generate(seeds, slots, request, self.cost_tracker, cancel_event)
            except RunCancelledError:
                return []
            except BudgetExceededError as exc:
                outcome.warnings.append(f"{stage} strategy {strategy.name} skipped: {exc.message}")
                return []
            except Exception as exc:
                logger.warning(
                    "Expansion strategy failed",
                    extra={"stage": stage, "strategy": strategy.name, "seeds": seeds, "error": str(exc)},
                )
                outcome.warnings.append(f"{stage} strategy {strategy.name} failed for {', '.join(seeds)}: {exc}")
                return []

            for domain in result.competitor_domains:
                if domain not in outcome.competitor_domains:
                    outcome.competitor_domains.append(domain)
            outcome.warnings.extend(result.warnings)
            return result.ideas[:slots]

        per_strategy = await asyncio.gather(*[_run(strategy) for strategy in active])

        ideas: list[RawIdea] = []
        for strategy, strategy_ideas in zip(active, per_strategy, strict=True):
            outcome.strategy_counts[strategy.name] = (
                outcome.strategy_counts.get(strategy.name, 0) + len(strategy_ideas)
            )
            ideas.extend(strategy_ideas)
        outcome.raw_count += len(ideas)
        return ideas

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelledError(stage="generation")

    def _to_candidate(
        self,
        idea: RawIdea,
        stage: KeywordStage,
        parent: str | None,
        references: list[str],
    ) -> KeywordCandidate:
        keyword = normalize_keyword(idea.keyword)
        if idea.relevance is not None:
            relevance = idea.relevance
        elif parent is not None:
            relevance = keyword_similarity(keyword, parent)
        else:
            relevance = relevance_to_seeds(keyword, references)
        relevance = max(0.0, min(1.0, relevance))

        volume, difficulty = estimate_metrics(keyword, stage)
        return KeywordCandidate(
            keyword=keyword,
            stage=stage,
            parent_keyword=parent,
            intent=idea.intent,
            relevance_score=relevance,
            quality_score=candidate_quality(volume, difficulty, relevance),
            expansion_source=idea.source,
            confidence=idea.confidence,
            competitor_urls=(idea.competitor_url,) if idea.competitor_url else (),
        )

    def _normalize(
        self,
        candidates: list[KeywordCandidate],
        outcome: GenerationOutcome,
    ) -> list[KeywordCandidate]:
        result = normalize_candidates(candidates)
        outcome.invalid_filtered += result.invalid_filtered
        outcome.duplicates_removed += result.duplicates_removed
        return result.candidates
