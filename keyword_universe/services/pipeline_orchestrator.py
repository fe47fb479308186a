"""Pipeline orchestrator for Dream100 → tier-2 → tier-3 universe expansion."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from typing import Any
from urllib.parse import urlparse

from pydantic import ValidationError

from keyword_universe.config import Settings, get_settings
from keyword_universe.core.deadline import RunDeadline
from keyword_universe.core.exceptions import (
    InvalidRequestError,
    RunCancelledError,
    StageError,
)
from keyword_universe.core.logging import get_run_logger
from keyword_universe.core.rate_limiter import TokenBucket
from keyword_universe.integrations.base import (
    CompetitorContentSource,
    ExpansionProvider,
    MetricsProvider,
    ProgressSink,
    SerpProvider,
)
from keyword_universe.schemas.expansion import (
    BatchInfo,
    CostEstimate,
    ExpansionRequest,
    ExpansionResult,
    KeywordsByTier,
    NextStageData,
    PipelineStage,
    ProcessingStats,
    ProgressUpdate,
    QualityMetrics,
    StrategyBreakdown,
)
from keyword_universe.schemas.keyword import STAGES, KeywordCandidate, KeywordStage
from keyword_universe.schemas.scoring import ScoringResult, ScoringWeights
from keyword_universe.services.capping import SmartCapper, rank_key
from keyword_universe.services.cost_tracker import PROVIDERS, CostTracker
from keyword_universe.services.enrichment import MetricsEnrichmentBatcher
from keyword_universe.services.generator import CandidateGenerator, GenerationOutcome, KeywordGenerator
from keyword_universe.services.intent import (
    HeuristicIntentClassifier,
    IntentClassifier,
    ProviderIntentClassifier,
    ResilientIntentClassifier,
)
from keyword_universe.services.normalizer import canonical_keyword
from keyword_universe.services.progress import BatchProgress, ProgressReporter
from keyword_universe.services.quality_control import QualityController, difficulty_bucket
from keyword_universe.services.scoring import ScoringEngine, validate_scoring_quality
from keyword_universe.services.strategies import build_default_strategies

logger = logging.getLogger(__name__)

# Share of overall progress owned by each tier
TIER_PROGRESS_RANGES: dict[KeywordStage, tuple[float, float]] = {
    "dream100": (0.0, 35.0),
    "tier2": (35.0, 70.0),
    "tier3": (70.0, 98.0),
}

# Share of a tier's progress range at which each stage starts
STAGE_PROGRESS_OFFSETS: dict[str, float] = {
    "generation": 0.0,
    "enrichment": 0.25,
    "intent_classification": 0.75,
    "scoring": 0.85,
    "quality_control": 0.9,
    "capping": 0.95,
}

TIER_EXPANSION_SEED_MIN_SCORE = 0.8
MAX_TIER_EXPANSION_SEEDS = 20
CLUSTERING_DREAM100_SEEDS = 20
CLUSTERING_TIER2_SEEDS = 30
MAX_COMPETITOR_DOMAINS = 20


class _DeadlineReached(Exception):
    """Remaining run time cannot fit the next stage."""

    def __init__(self, stage: str, tier: str) -> None:
        self.stage = stage
        self.tier = tier
        super().__init__(f"{tier}.{stage}")


@dataclass
class _RunState:
    """Everything scoped to one run."""

    request: ExpansionRequest
    cost: CostTracker
    deadline: RunDeadline
    reporter: ProgressReporter
    generator: KeywordGenerator
    batcher: MetricsEnrichmentBatcher
    classifier: ResilientIntentClassifier
    scoring: ScoringEngine
    quality: QualityController
    log: logging.LoggerAdapter
    estimate: CostEstimate | None = None
    tiers: dict[str, list[KeywordCandidate]] = field(default_factory=dict)
    selected_keywords: set[str] = field(default_factory=set)
    warnings: list[str] = field(default_factory=list)
    stage_timings: dict[str, float] = field(default_factory=dict)
    strategy_counts: dict[str, dict[str, int]] = field(default_factory=dict)
    competitor_domains: list[str] = field(default_factory=list)
    candidates_generated: int = 0
    candidates_filtered: int = 0
    invalid_filtered: int = 0
    duplicates_removed: int = 0
    keywords_processed: int = 0
    batch_sizes: list[int] = field(default_factory=list)
    failed_batches: int = 0
    skipped_batches: int = 0
    partial: bool = False
    current_stage: PipelineStage = "initialization"
    current_tier: str | None = None
    percent: float = 0.0


class PipelineOrchestrator:
    """Runs one keyword universe expansion.

    Tiers run in order because each tier's capped output seeds the next.
    Within a tier the stages run strictly in sequence; only the external
    calls inside a stage run concurrently. An instance owns the
    cancellation flag for the run it executes.
    """

    def __init__(
        self,
        metrics_provider: MetricsProvider,
        expansion_provider: ExpansionProvider | None = None,
        *,
        serp_provider: SerpProvider | None = None,
        content_source: CompetitorContentSource | None = None,
        generator: KeywordGenerator | None = None,
        intent_classifier: IntentClassifier | None = None,
        scoring_weights: ScoringWeights | None = None,
        capper: SmartCapper | None = None,
        progress_sink: ProgressSink | None = None,
        app_settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.metrics_provider = metrics_provider
        self.expansion_provider = expansion_provider
        self.serp_provider = serp_provider
        self.content_source = content_source
        self._generator = generator
        self.settings = app_settings or get_settings()
        if intent_classifier is not None:
            self.intent_classifier: IntentClassifier | None = intent_classifier
        elif expansion_provider is not None:
            self.intent_classifier = ProviderIntentClassifier(expansion_provider)
        else:
            self.intent_classifier = None
        self.scoring_weights = scoring_weights
        self.capper = capper or SmartCapper()
        self.progress_sink = progress_sink
        self._clock = clock
        self._today = today
        self._cancel_event = asyncio.Event()

    def cancel(self) -> None:
        """Request cancellation; checked before every stage and batch."""
        self._cancel_event.set()

    @staticmethod
    def validate_request(request: ExpansionRequest | dict[str, Any]) -> ExpansionRequest:
        """Validate a request before any external call.

        Raises:
            InvalidRequestError: the request shape is invalid.
        """
        if isinstance(request, ExpansionRequest):
            return request
        try:
            return ExpansionRequest.model_validate(request)
        except ValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {}
            location = ".".join(str(part) for part in first.get("loc", ())) or None
            raise InvalidRequestError(
                first.get("msg", str(exc)).removeprefix("Value error, "),
                field=location,
            ) from exc

    def estimate_cost(self, request: ExpansionRequest) -> CostEstimate:
        """Rough upper bound of the run's external calls and their cost."""
        llm_batch = self.settings.llm_batch_size
        metrics_batch = self.settings.metrics_batch_size
        dream100 = min(request.dream100_count, request.total_target)
        tier2 = max(0, min(dream100 * request.tier2_per_parent, request.total_target - dream100))
        tier3 = max(
            0, min(tier2 * request.tier3_per_parent, request.total_target - dream100 - tier2)
        )
        tier1_candidates = self.settings.tier1_max_candidates
        tier2_candidates = dream100 * request.tier2_per_parent
        tier3_candidates = tier2 * request.tier3_per_parent

        llm_calls = 0
        if self.expansion_provider is not None:
            llm_calls += 1
            if request.enable_semantic_variations:
                llm_calls += dream100
        if self.intent_classifier is not None:
            llm_calls += sum(
                math.ceil(count / llm_batch)
                for count in (tier1_candidates, tier2_candidates, tier3_candidates)
            )

        metrics_calls = sum(
            math.ceil(count / metrics_batch)
            for count in (tier1_candidates, tier2_candidates, tier3_candidates)
        )

        serp_calls = 0
        if self.serp_provider is not None:
            per_query = int(request.enable_serp_analysis) + int(request.enable_competitor_mining)
            serp_calls = per_query * (len(request.seed_keywords) + dream100)

        calls = {"llm": llm_calls, "metrics": metrics_calls, "serp": serp_calls, "scraper": 0}
        costs = self.settings.cost_table()
        by_provider = {provider: round(calls[provider] * costs[provider], 4) for provider in calls}
        total = round(sum(by_provider.values()), 4)
        logger.debug(
            "Cost estimated",
            extra={"run_id": request.run_id, "total": total, "tiers": [dream100, tier2, tier3]},
        )
        return CostEstimate(
            total=total,
            by_provider=by_provider,
            estimated_calls=calls,
            within_budget=request.budget_limit is None or total <= request.budget_limit,
        )

    async def run(self, request: ExpansionRequest | dict[str, Any]) -> ExpansionResult:
        """Execute the full expansion.

        Returns ``success=True`` with warnings when the run completes, even
        partially, and ``success=False`` with an error code when a fatal
        stage error or cancellation stops it.

        Raises:
            InvalidRequestError: the request is invalid; nothing was called.
        """
        validated = self.validate_request(request)
        state = self._init_state(validated)
        state.log.info(
            "Expansion run started",
            extra={
                "seeds": validated.seed_keywords,
                "market": validated.market,
                "total_target": validated.total_target,
            },
        )

        await state.reporter.start()
        try:
            self._publish(state, "initialization", None, "Run initialized", 0.0)
            state.estimate = self.estimate_cost(validated)
            if not state.estimate.within_budget:
                state.warnings.append(
                    f"Estimated cost {state.estimate.total:.2f} exceeds budget "
                    f"{validated.budget_limit:.2f}; the run stops calling providers when the budget is spent"
                )

            try:
                await self._run_tiers(state)
            except _DeadlineReached as exc:
                state.partial = True
                state.warnings.append(
                    f"Run time budget exhausted before {exc.tier} {exc.stage}; returning partial results"
                )
                state.log.warning(
                    "Run deadline reached",
                    extra={"tier": exc.tier, "stage": exc.stage, "elapsed_s": round(state.deadline.elapsed, 2)},
                )

            self._enter(state, "result_preparation", None)
            result = self._build_result(state, success=True)
            self._publish(state, "done", None, "Expansion complete", 100.0)
            state.log.info(
                "Expansion run completed",
                extra={
                    "total_keywords": result.total_keywords,
                    "warnings": len(result.warnings),
                    "partial": result.partial,
                    "cost": result.cost_breakdown.total,
                },
            )
            return result
        except RunCancelledError as exc:
            failed_stage = exc.stage or state.current_stage
            if "." not in failed_stage and state.current_tier:
                failed_stage = f"{state.current_tier}.{failed_stage}"
            state.log.warning("Expansion run cancelled", extra={"stage": failed_stage})
            result = self._build_result(state, success=False, include_keywords=False)
            result.error_code = exc.code
            result.failed_stage = failed_stage
            result.retryable = True
            result.errors.append(exc.message)
            return result
        except StageError as exc:
            state.log.error(
                "Expansion run failed",
                extra={"stage": exc.stage, "tier": exc.tier, "code": exc.code, "error": exc.message},
            )
            result = self._build_result(state, success=False, include_keywords=False)
            result.error_code = exc.code
            result.failed_stage = f"{exc.tier}.{exc.stage}" if exc.tier else exc.stage
            result.retryable = exc.retryable
            result.errors.append(exc.message)
            return result
        finally:
            await state.reporter.close()

    def _init_state(self, request: ExpansionRequest) -> _RunState:
        app = self.settings
        cost = CostTracker(app.cost_table(), request.budget_limit)
        # One bucket per provider, shared by every worker calling it in this run
        llm_limiter = TokenBucket("llm", app.llm_call_delay_seconds, app.llm_burst)
        serp_limiter = TokenBucket("serp", app.serp_call_delay_seconds, app.serp_burst)
        metrics_limiter = TokenBucket("metrics", app.metrics_batch_delay_seconds, app.metrics_burst)
        generator = self._generator or CandidateGenerator(
            build_default_strategies(
                self.expansion_provider,
                self.serp_provider,
                self.content_source,
                app.competitor_pages_per_seed,
                llm_limiter=llm_limiter,
                serp_limiter=serp_limiter,
            ),
            cost_tracker=cost,
        )
        weights = (
            ScoringWeights.preset(request.scoring_preset)
            if request.scoring_preset
            else self.scoring_weights
        )
        return _RunState(
            request=request,
            cost=cost,
            deadline=RunDeadline(app.run_timeout_seconds, clock=self._clock),
            reporter=ProgressReporter(self.progress_sink, app.progress_queue_size),
            generator=generator,
            batcher=MetricsEnrichmentBatcher(
                self.metrics_provider,
                metrics_limiter,
                cost,
                batch_size=app.metrics_batch_size,
                max_workers=app.metrics_max_workers,
                estimate_failed_batches=app.estimate_failed_batches,
            ),
            classifier=ResilientIntentClassifier(
                self.intent_classifier,
                HeuristicIntentClassifier(),
                batch_size=app.llm_batch_size,
                max_concurrent_batches=app.llm_max_concurrent_batches,
                cost_tracker=cost,
                rate_limiter=llm_limiter,
            ),
            scoring=ScoringEngine(
                weights,
                use_cluster_median=app.use_cluster_median,
                seasonal_factors=request.seasonal_factors,
                today=self._today(),
            ),
            quality=QualityController(
                request.quality_threshold,
                difficulty_preference=request.difficulty_preference,
                intent_focus=request.intent_focus,
            ),
            log=get_run_logger(__name__, request.run_id),
        )

    async def _run_tiers(self, state: _RunState) -> None:
        request = state.request
        parents: list[KeywordCandidate] = []

        for stage in STAGES:
            target = self._tier_target(state, stage)
            if stage != "dream100" and not parents:
                state.warnings.append(f"No parent keywords available, {stage} skipped")
                state.log.warning("Tier skipped, no parents", extra={"tier": stage})
                continue
            if target <= 0:
                state.warnings.append(f"Total target of {request.total_target} reached, {stage} skipped")
                continue

            selected = await self._process_tier(state, stage, parents, target)
            state.tiers[stage] = selected
            state.selected_keywords.update(canonical_keyword(c.keyword) for c in selected)
            parents = selected

            if not selected:
                state.warnings.append(f"No {stage} keywords survived quality control")
            next_stage = self._next_stage(stage)
            if state.partial and next_stage is not None:
                # Enrichment ran out of time; later tiers cannot start
                raise _DeadlineReached("generation", next_stage)

    async def _process_tier(
        self,
        state: _RunState,
        stage: KeywordStage,
        parents: list[KeywordCandidate],
        target: int,
    ) -> list[KeywordCandidate]:
        request = state.request

        # Generation
        self._checkpoint(state, "generation", stage)
        started = self._clock()
        if stage == "dream100":
            generated: GenerationOutcome = await state.generator.generate_dream100(
                request.seed_keywords,
                request,
                max_candidates=self.settings.tier1_max_candidates,
                cancel_event=self._cancel_event,
                on_batch=lambda progress: self._on_batch(state, stage, "generation", progress),
            )
        else:
            per_parent = request.tier2_per_parent if stage == "tier2" else request.tier3_per_parent
            generated = await state.generator.generate_children(
                stage,
                parents,
                request,
                per_parent,
                cancel_event=self._cancel_event,
                on_batch=lambda progress: self._on_batch(state, stage, "generation", progress),
            )
        self._finish(state, stage, "generation", started)
        state.warnings.extend(generated.warnings)
        state.strategy_counts[stage] = dict(generated.strategy_counts)
        state.candidates_generated += len(generated.candidates)
        state.invalid_filtered += generated.invalid_filtered
        state.duplicates_removed += generated.duplicates_removed
        for domain in generated.competitor_domains:
            if domain not in state.competitor_domains:
                state.competitor_domains.append(domain)
        candidates = generated.candidates
        self._publish_stage_end(state, stage, "generation", f"Generated {len(candidates)} {stage} candidates")

        # Enrichment
        self._checkpoint(state, "enrichment", stage)
        started = self._clock()
        enriched = await state.batcher.enrich(
            candidates,
            request.market,
            tier=stage,
            cancel_event=self._cancel_event,
            deadline=state.deadline,
            on_batch=lambda progress: self._on_batch(state, stage, "enrichment", progress),
        )
        self._finish(state, stage, "enrichment", started)
        state.warnings.extend(enriched.warnings)
        state.batch_sizes.extend(enriched.batch_sizes)
        state.failed_batches += enriched.failed_batches
        state.skipped_batches += enriched.skipped_batches
        if enriched.deadline_reached:
            state.partial = True
        candidates = enriched.candidates

        # Intent classification
        self._checkpoint(state, "intent_classification", stage)
        started = self._clock()
        candidates = await self._classify(state, stage, candidates)
        self._finish(state, stage, "intent_classification", started)
        self._publish_stage_end(state, stage, "intent_classification", "Intent labels assigned")

        # Scoring
        self._checkpoint(state, "scoring", stage)
        started = self._clock()
        candidates, results = state.scoring.score_batch(candidates)
        self._check_scoring_quality(state, stage, results)
        self._finish(state, stage, "scoring", started)
        self._publish_stage_end(state, stage, "scoring", f"Scored {len(candidates)} candidates")

        # Quality control
        self._checkpoint(state, "quality_control", stage)
        started = self._clock()
        checked = state.quality.apply(
            candidates,
            stage,
            state.selected_keywords,
            apply_preference_filters=stage == "dream100",
        )
        self._finish(state, stage, "quality_control", started)
        state.duplicates_removed += checked.duplicates_removed + checked.cross_tier_duplicates
        state.candidates_filtered += checked.filtered
        self._publish_stage_end(
            state, stage, "quality_control", f"{len(checked.candidates)} candidates passed quality control"
        )

        # Capping
        self._checkpoint(state, "capping", stage)
        started = self._clock()
        capped = self.capper.select(
            checked.candidates,
            target,
            stage,
            balance_intents=request.balance_intents,
            ensure_quick_wins=request.ensure_quick_wins,
        )
        self._finish(state, stage, "capping", started)
        state.keywords_processed += len(capped.selected)
        end_percent = TIER_PROGRESS_RANGES[stage][1]
        self._publish(state, "capping", stage, f"Selected {len(capped.selected)} {stage} keywords", end_percent)

        state.log.info(
            "Tier complete",
            extra={
                "tier": stage,
                "generated": len(generated.candidates),
                "enriched": len(enriched.candidates),
                "passed_qc": len(checked.candidates),
                "selected": len(capped.selected),
                "target": target,
            },
        )
        return capped.selected

    async def _classify(
        self,
        state: _RunState,
        stage: KeywordStage,
        candidates: list[KeywordCandidate],
    ) -> list[KeywordCandidate]:
        unlabeled = [c.keyword for c in candidates if c.intent is None]
        if not unlabeled:
            return candidates

        context = ", ".join(
            part
            for part in (state.request.industry, f"market {state.request.market}")
            if part
        )
        outcome = await state.classifier.classify(
            unlabeled,
            context,
            tier=stage,
            cancel_event=self._cancel_event,
            on_batch=lambda progress: self._on_batch(state, stage, "intent_classification", progress),
        )
        state.warnings.extend(outcome.warnings)

        labeled: list[KeywordCandidate] = []
        for candidate in candidates:
            if candidate.intent is not None:
                labeled.append(candidate)
                continue
            label = outcome.labels.get(canonical_keyword(candidate.keyword))
            if label is None:
                labeled.append(candidate)
                continue
            labeled.append(candidate.model_copy(update={"intent": label.intent}))
        return labeled

    def _tier_target(self, state: _RunState, stage: KeywordStage) -> int:
        request = state.request
        dream100 = len(state.tiers.get("dream100", []))
        tier2 = len(state.tiers.get("tier2", []))
        if stage == "dream100":
            return min(request.dream100_count, request.total_target)
        if stage == "tier2":
            return max(0, min(dream100 * request.tier2_per_parent, request.total_target - dream100))
        return max(0, min(tier2 * request.tier3_per_parent, request.total_target - dream100 - tier2))

    @staticmethod
    def _next_stage(stage: KeywordStage) -> str | None:
        index = STAGES.index(stage)
        return STAGES[index + 1] if index + 1 < len(STAGES) else None

    def _checkpoint(self, state: _RunState, stage: PipelineStage, tier: KeywordStage) -> None:
        if self._cancel_event.is_set():
            raise RunCancelledError(stage=f"{tier}.{stage}", run_id=state.request.run_id)
        if not state.deadline.has_time_for(self.settings.min_stage_seconds):
            raise _DeadlineReached(stage, tier)
        self._enter(state, stage, tier)

    def _enter(self, state: _RunState, stage: PipelineStage, tier: str | None) -> None:
        state.current_stage = stage
        state.current_tier = tier
        if tier in TIER_PROGRESS_RANGES and stage in STAGE_PROGRESS_OFFSETS:
            low, high = TIER_PROGRESS_RANGES[tier]  # type: ignore[index]
            percent = low + (high - low) * STAGE_PROGRESS_OFFSETS[stage]
            self._publish(state, stage, tier, f"{tier} {stage.replace('_', ' ')}", percent)

    def _finish(self, state: _RunState, tier: str, stage: str, started: float) -> None:
        state.stage_timings[f"{tier}.{stage}"] = round(self._clock() - started, 4)

    def _publish_stage_end(self, state: _RunState, tier: KeywordStage, stage: str, message: str) -> None:
        stages = list(STAGE_PROGRESS_OFFSETS)
        index = stages.index(stage)
        low, high = TIER_PROGRESS_RANGES[tier]
        offset = STAGE_PROGRESS_OFFSETS[stages[index + 1]] if index + 1 < len(stages) else 1.0
        self._publish(state, state.current_stage, tier, message, low + (high - low) * offset)

    async def _on_batch(
        self,
        state: _RunState,
        tier: KeywordStage,
        stage: PipelineStage,
        progress: BatchProgress,
    ) -> None:
        stages = list(STAGE_PROGRESS_OFFSETS)
        index = stages.index(stage)
        low, high = TIER_PROGRESS_RANGES[tier]
        start = STAGE_PROGRESS_OFFSETS[stage]
        end = STAGE_PROGRESS_OFFSETS[stages[index + 1]] if index + 1 < len(stages) else 1.0
        fraction = progress.completed_batches / max(1, progress.total_batches)
        percent = low + (high - low) * (start + (end - start) * fraction)

        done = f"{progress.completed_batches}/{progress.total_batches}"
        if stage == "enrichment":
            message = f"Metrics batch {done} {'enriched' if progress.succeeded else 'failed'}"
        elif stage == "intent_classification":
            message = f"Intent batch {done} {'labeled' if progress.succeeded else 'labeled by fallback'}"
        elif tier == "dream100":
            message = "Seed keywords expanded"
        else:
            message = f"Parent {done} expanded"

        self._publish(
            state,
            stage,
            tier,
            message,
            percent,
            keywords_processed=state.keywords_processed + progress.keywords_processed,
        )

    def _check_scoring_quality(
        self,
        state: _RunState,
        tier: KeywordStage,
        results: list[ScoringResult],
    ) -> None:
        report = validate_scoring_quality(results)
        if report.is_valid:
            return
        state.log.warning(
            "Scoring quality check failed",
            extra={
                "tier": tier,
                "score_distribution": report.score_distribution,
                "quick_win_ratio": report.quick_win_ratio,
                "outliers": report.outlier_count,
            },
        )
        state.warnings.append(f"{tier} scoring quality check: {'; '.join(report.warnings)}")

    def _publish(
        self,
        state: _RunState,
        stage: PipelineStage,
        tier: str | None,
        message: str,
        percent: float,
        keywords_processed: int | None = None,
    ) -> None:
        state.percent = max(state.percent, min(100.0, percent))
        elapsed = state.deadline.elapsed
        eta = None
        if 0 < state.percent < 100:
            eta = round(elapsed * (100 - state.percent) / state.percent, 2)
        elif state.percent >= 100:
            eta = 0.0
        state.reporter.publish(
            ProgressUpdate(
                run_id=state.request.run_id,
                stage=stage,
                current_tier=tier,
                current_step=message,
                progress_percent=round(state.percent, 2),
                keywords_processed=(
                    keywords_processed if keywords_processed is not None else state.keywords_processed
                ),
                estimated_time_remaining=eta,
                current_cost=state.cost.total,
                elapsed_seconds=round(elapsed, 3),
            )
        )

    def _build_result(
        self,
        state: _RunState,
        *,
        success: bool,
        include_keywords: bool = True,
    ) -> ExpansionResult:
        tiers = KeywordsByTier(
            dream100=state.tiers.get("dream100", []) if include_keywords else [],
            tier2=state.tiers.get("tier2", []) if include_keywords else [],
            tier3=state.tiers.get("tier3", []) if include_keywords else [],
        )
        everything = tiers.all()
        total = len(everything)
        elapsed = state.deadline.elapsed
        minutes = elapsed / 60 if elapsed > 0 else 0.0
        api_calls = state.cost.api_calls

        stats = ProcessingStats(
            total_processing_seconds=round(elapsed, 3),
            stage_timings=dict(state.stage_timings),
            api_call_counts={provider: api_calls.get(provider, 0) for provider in PROVIDERS},
            batch_info=BatchInfo(
                total_batches=len(state.batch_sizes),
                average_batch_size=(
                    round(sum(state.batch_sizes) / len(state.batch_sizes), 2) if state.batch_sizes else 0.0
                ),
                failed_batches=state.failed_batches,
                skipped_batches=state.skipped_batches,
            ),
            keywords_per_minute=round(total / minutes, 2) if minutes else 0.0,
            api_calls_per_minute=round(state.cost.total_api_calls / minutes, 2) if minutes else 0.0,
            candidates_generated=state.candidates_generated,
            candidates_filtered=state.candidates_filtered,
            selection_rate=(
                round(total / state.candidates_generated, 4) if state.candidates_generated else 0.0
            ),
        )

        return ExpansionResult(
            success=success,
            run_id=state.request.run_id,
            keywords_by_tier=tiers,
            total_keywords=total,
            total_candidates_generated=state.candidates_generated,
            processing_stats=stats,
            cost_breakdown=state.cost.breakdown(state.estimate, total),
            quality_metrics=self._quality_metrics(state, tiers),
            strategy_breakdown=StrategyBreakdown(**state.strategy_counts),
            next_stage_data=self._next_stage_data(state, tiers) if include_keywords else NextStageData(),
            warnings=list(state.warnings),
            partial=state.partial,
        )

    @staticmethod
    def _quality_metrics(state: _RunState, tiers: KeywordsByTier) -> QualityMetrics:
        everything = tiers.all()

        def _average(values: list[float]) -> float:
            return round(sum(values) / len(values), 4) if values else 0.0

        def _volume_bucket(volume: int) -> str:
            if volume <= 100:
                return "low"
            if volume <= 1000:
                return "medium"
            if volume <= 10_000:
                return "high"
            return "very_high"

        quick_wins = {
            stage: sum(1 for c in getattr(tiers, stage) if c.quick_win) for stage in STAGES
        }
        return QualityMetrics(
            average_relevance=_average([c.relevance_score for c in everything]),
            average_quality=_average([c.quality_score for c in everything]),
            average_confidence=_average([c.confidence for c in everything]),
            intent_distribution=dict(Counter(c.intent or "unknown" for c in everything)),
            difficulty_distribution=dict(Counter(difficulty_bucket(c.difficulty) for c in everything)),
            volume_distribution=dict(Counter(_volume_bucket(c.volume) for c in everything)),
            quick_wins_by_tier=quick_wins,
            quick_win_count=sum(quick_wins.values()),
            duplicates_removed=state.duplicates_removed,
            invalid_filtered=state.invalid_filtered,
        )

    @staticmethod
    def _next_stage_data(state: _RunState, tiers: KeywordsByTier) -> NextStageData:
        dream100 = sorted(tiers.dream100, key=rank_key)
        tier2 = sorted(tiers.tier2, key=rank_key)

        domains = list(state.competitor_domains)
        for candidate in tiers.all():
            for url in candidate.competitor_urls:
                host = urlparse(url).netloc
                if host and host not in domains:
                    domains.append(host)

        return NextStageData(
            tier_expansion_seeds=[
                c.keyword for c in dream100 if c.blended_score >= TIER_EXPANSION_SEED_MIN_SCORE
            ][:MAX_TIER_EXPANSION_SEEDS],
            clustering_seeds=[
                *(c.keyword for c in dream100[:CLUSTERING_DREAM100_SEEDS]),
                *(c.keyword for c in tier2[:CLUSTERING_TIER2_SEEDS]),
            ],
            competitor_domains=domains[:MAX_COMPETITOR_DOMAINS],
        )
