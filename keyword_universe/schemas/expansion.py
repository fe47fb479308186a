"""Expansion request, progress and result schemas."""

from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from keyword_universe.schemas.keyword import KeywordCandidate
from keyword_universe.schemas.scoring import ScoringPreset, SeasonalFactor
from keyword_universe.services.normalizer import (
    MAX_KEYWORD_LENGTH,
    MIN_KEYWORD_LENGTH,
    normalize_keyword,
)

IntentFocus = Literal["commercial", "informational", "transactional", "navigational", "mixed"]
DifficultyPreference = Literal["easy", "medium", "hard", "mixed"]
PipelineStage = Literal[
    "initialization",
    "generation",
    "enrichment",
    "intent_classification",
    "scoring",
    "quality_control",
    "capping",
    "result_preparation",
    "done",
]

MAX_SEED_KEYWORDS = 5
MAX_TOTAL_KEYWORDS = 10_000


class ExpansionRequest(BaseModel):
    """Parameters for one keyword universe expansion run."""

    run_id: str = Field(default_factory=lambda: str(uuid4()))
    seed_keywords: list[str] = Field(min_length=1)
    dream100_count: int = Field(
        default=100,
        ge=10,
        le=100,
        description=(
            "Dream100 target, 10-100. Lowered to total_target when that is smaller, "
            "so a total_target below 10 yields a Dream100 of total_target keywords."
        ),
    )
    tier2_per_parent: int = Field(default=10, ge=1, le=10)
    tier3_per_parent: int = Field(default=10, ge=1, le=10)
    total_target: int = Field(default=MAX_TOTAL_KEYWORDS, ge=1, le=MAX_TOTAL_KEYWORDS)
    market: str = Field(default="US", min_length=2, max_length=2)
    industry: str | None = None
    intent_focus: IntentFocus = "mixed"
    difficulty_preference: DifficultyPreference = "mixed"
    budget_limit: float | None = None
    quality_threshold: float = Field(default=0.5, ge=0, le=1)
    enable_competitor_mining: bool = False
    enable_serp_analysis: bool = True
    enable_semantic_variations: bool = True
    balance_intents: bool = True
    ensure_quick_wins: bool = True
    scoring_preset: ScoringPreset | None = None
    seasonal_factors: list[SeasonalFactor] = Field(default_factory=list)

    @field_validator("seed_keywords")
    @classmethod
    def validate_seed_keywords(cls, value: list[str]) -> list[str]:
        seeds: list[str] = []
        for raw in value:
            seed = normalize_keyword(raw)
            if not MIN_KEYWORD_LENGTH <= len(seed) <= MAX_KEYWORD_LENGTH:
                raise ValueError(
                    f"Seed keyword {raw!r} must be {MIN_KEYWORD_LENGTH}-{MAX_KEYWORD_LENGTH} characters"
                )
            if seed.replace(" ", "").isdigit():
                raise ValueError(f"Seed keyword {raw!r} cannot be only numbers")
            if seed not in seeds:
                seeds.append(seed)
        if not 1 <= len(seeds) <= MAX_SEED_KEYWORDS:
            raise ValueError(f"Between 1 and {MAX_SEED_KEYWORDS} unique seed keywords are required")
        return seeds

    @field_validator("market")
    @classmethod
    def validate_market(cls, value: str) -> str:
        if not value.isalpha():
            raise ValueError("Market must be a two-letter country code")
        return value.upper()

    @field_validator("budget_limit")
    @classmethod
    def validate_budget_limit(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("Budget limit must be greater than zero")
        return value

    @model_validator(mode="after")
    def validate_targets(self) -> "ExpansionRequest":
        # Assignment skips the ge=10 bound, so total_target below 10 is honored
        if self.dream100_count > self.total_target:
            self.dream100_count = max(1, self.total_target)
        return self


class CostEstimate(BaseModel):
    """Pre-run cost projection."""

    total: float
    by_provider: dict[str, float]
    estimated_calls: dict[str, int]
    within_budget: bool = True


class CostBreakdown(BaseModel):
    total: float = 0.0
    by_provider: dict[str, float] = Field(default_factory=dict)
    by_tier: dict[str, float] = Field(default_factory=dict)
    budget_limit: float | None = None
    budget_utilization: float | None = None
    cost_per_keyword: float = 0.0
    estimated_total: float | None = None
    variance_percent: float | None = None


class BatchInfo(BaseModel):
    total_batches: int = 0
    average_batch_size: float = 0.0
    failed_batches: int = 0
    skipped_batches: int = 0


class ProcessingStats(BaseModel):
    total_processing_seconds: float = 0.0
    stage_timings: dict[str, float] = Field(default_factory=dict)
    api_call_counts: dict[str, int] = Field(default_factory=dict)
    batch_info: BatchInfo = Field(default_factory=BatchInfo)
    keywords_per_minute: float = 0.0
    api_calls_per_minute: float = 0.0
    candidates_generated: int = 0
    candidates_filtered: int = 0
    selection_rate: float = 0.0


class QualityMetrics(BaseModel):
    average_relevance: float = 0.0
    average_quality: float = 0.0
    average_confidence: float = 0.0
    intent_distribution: dict[str, int] = Field(default_factory=dict)
    difficulty_distribution: dict[str, int] = Field(default_factory=dict)
    volume_distribution: dict[str, int] = Field(default_factory=dict)
    quick_wins_by_tier: dict[str, int] = Field(default_factory=dict)
    quick_win_count: int = 0
    duplicates_removed: int = 0
    invalid_filtered: int = 0


class StrategyBreakdown(BaseModel):
    """Candidates produced per generation strategy, keyed by tier."""

    dream100: dict[str, int] = Field(default_factory=dict)
    tier2: dict[str, int] = Field(default_factory=dict)
    tier3: dict[str, int] = Field(default_factory=dict)


class NextStageData(BaseModel):
    tier_expansion_seeds: list[str] = Field(default_factory=list)
    clustering_seeds: list[str] = Field(default_factory=list)
    competitor_domains: list[str] = Field(default_factory=list)


class ProgressUpdate(BaseModel):
    """Snapshot published to the progress sink."""

    run_id: str
    stage: PipelineStage
    current_tier: str | None = None
    current_step: str
    progress_percent: float = Field(ge=0, le=100)
    keywords_processed: int = 0
    estimated_time_remaining: float | None = None
    current_cost: float = 0.0
    elapsed_seconds: float = 0.0


class KeywordsByTier(BaseModel):
    dream100: list[KeywordCandidate] = Field(default_factory=list)
    tier2: list[KeywordCandidate] = Field(default_factory=list)
    tier3: list[KeywordCandidate] = Field(default_factory=list)

    def all(self) -> list[KeywordCandidate]:
        return [*self.dream100, *self.tier2, *self.tier3]


class ExpansionResult(BaseModel):
    """Outcome of a run: success with warnings, or failure with an error code."""

    success: bool
    run_id: str
    keywords_by_tier: KeywordsByTier = Field(default_factory=KeywordsByTier)
    total_keywords: int = 0
    total_candidates_generated: int = 0
    processing_stats: ProcessingStats = Field(default_factory=ProcessingStats)
    cost_breakdown: CostBreakdown = Field(default_factory=CostBreakdown)
    quality_metrics: QualityMetrics = Field(default_factory=QualityMetrics)
    strategy_breakdown: StrategyBreakdown = Field(default_factory=StrategyBreakdown)
    next_stage_data: NextStageData = Field(default_factory=NextStageData)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    error_code: str | None = None
    failed_stage: str | None = None
    retryable: bool | None = None
    partial: bool = False

    @property
    def dream100_keywords(self) -> list[KeywordCandidate]:
        return self.keywords_by_tier.dream100
