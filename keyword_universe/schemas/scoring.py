"""Scoring schemas: stage weights, inputs and results."""

from datetime import date
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from keyword_universe.schemas.keyword import KeywordIntent, KeywordStage

VolumeTransform = Literal["log", "sqrt", "linear"]
EaseTransform = Literal["linear", "sigmoid", "exponential"]
ScoreTier = Literal["high", "medium", "low"]

WEIGHT_SUM_TOLERANCE = 0.01


class StageWeights(BaseModel):
    """Per-stage scoring coefficients, validated once at construction."""

    model_config = ConfigDict(frozen=True)

    volume: float = Field(ge=0, le=1)
    intent: float = Field(ge=0, le=1)
    relevance: float = Field(ge=0, le=1)
    trend: float = Field(ge=0, le=1)
    ease: float = Field(ge=0, le=1)

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "StageWeights":
        total = self.volume + self.intent + self.relevance + self.trend + self.ease
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ValueError(f"Stage weights must sum to 1.0 (got {total:.3f})")
        return self

    def as_dict(self) -> dict[str, float]:
        return {
            "volume": self.volume,
            "intent": self.intent,
            "relevance": self.relevance,
            "trend": self.trend,
            "ease": self.ease,
        }


class ScoringWeights(BaseModel):
    """One set of stage weights per tier."""

    model_config = ConfigDict(frozen=True)

    dream100: StageWeights = StageWeights(
        volume=0.40, intent=0.30, relevance=0.15, trend=0.10, ease=0.05
    )
    tier2: StageWeights = StageWeights(
        volume=0.35, ease=0.25, relevance=0.20, intent=0.15, trend=0.05
    )
    tier3: StageWeights = StageWeights(
        ease=0.35, relevance=0.30, volume=0.20, intent=0.10, trend=0.05
    )

    def for_stage(self, stage: KeywordStage) -> StageWeights:
        return getattr(self, stage)

    @classmethod
    def preset(cls, name: str) -> "ScoringWeights":
        """Named weight set for a business type.

        Raises:
            KeyError: unknown preset name.
        """
        return SCORING_PRESETS[name]


class QuickWinCriteria(BaseModel):
    """Thresholds a candidate must meet to be flagged a quick win."""

    model_config = ConfigDict(frozen=True)

    min_ease: float = Field(ge=0, le=1)
    min_volume: int = Field(ge=0)
    min_blended_score: float = Field(ge=0, le=1)
    rank_boost: float = Field(default=0.10, ge=0, le=1)


class StageScoringConfig(BaseModel):
    """Normalization and quick-win settings for one stage."""

    model_config = ConfigDict(frozen=True)

    volume_transform: VolumeTransform
    ease_transform: EaseTransform
    trend_sensitivity: float = Field(gt=0)
    intent_scores: dict[str, float]
    quick_win: QuickWinCriteria


class ScoringInput(BaseModel):
    """Raw factors for scoring one keyword."""

    keyword: str
    stage: KeywordStage
    volume: int = Field(ge=0)
    difficulty: float = Field(ge=0, le=100)
    intent: KeywordIntent | None = None
    relevance: float = Field(default=0.0, ge=0, le=1)
    trend: float = Field(default=0.0, ge=-1, le=1)


class ComponentScores(BaseModel):
    """Normalized factor values, each in [0, 1]."""

    volume: float = Field(ge=0, le=1)
    intent: float = Field(ge=0, le=1)
    relevance: float = Field(ge=0, le=1)
    trend: float = Field(ge=0, le=1)
    ease: float = Field(ge=0, le=1)


class ScoringResult(BaseModel):
    """Output of scoring one keyword."""

    keyword: str
    stage: KeywordStage
    component_scores: ComponentScores
    weighted_scores: dict[str, float]
    blended_score: float = Field(ge=0, le=1)
    quick_win: bool
    tier: ScoreTier
    recommendations: list[str] = Field(default_factory=list)


ScoringPreset = Literal["ecommerce", "saas", "content"]

# Weight sets tuned per business type; the class defaults suit a mixed site
SCORING_PRESETS: dict[str, ScoringWeights] = {
    "ecommerce": ScoringWeights(
        dream100=StageWeights(volume=0.45, intent=0.35, relevance=0.10, trend=0.05, ease=0.05),
        tier2=StageWeights(volume=0.40, ease=0.25, relevance=0.15, intent=0.15, trend=0.05),
        tier3=StageWeights(ease=0.40, relevance=0.25, volume=0.20, intent=0.10, trend=0.05),
    ),
    "saas": ScoringWeights(
        dream100=StageWeights(volume=0.35, intent=0.30, relevance=0.20, trend=0.10, ease=0.05),
        tier2=StageWeights(volume=0.30, ease=0.30, relevance=0.20, intent=0.15, trend=0.05),
        tier3=StageWeights(ease=0.35, relevance=0.35, volume=0.15, intent=0.10, trend=0.05),
    ),
    "content": ScoringWeights(
        dream100=StageWeights(volume=0.40, intent=0.25, relevance=0.20, trend=0.10, ease=0.05),
        tier2=StageWeights(volume=0.30, ease=0.25, relevance=0.25, intent=0.15, trend=0.05),
        tier3=StageWeights(ease=0.30, relevance=0.35, volume=0.20, intent=0.10, trend=0.05),
    ),
}


class SeasonalFactor(BaseModel):
    """Score multiplier for keywords during a yearly date window.

    Dates are ``MM-DD``; a window whose end precedes its start wraps
    over the new year.
    """

    model_config = ConfigDict(frozen=True)

    start_date: str = Field(pattern=r"^(0[1-9]|1[0-2])-(0[1-9]|[12]\d|3[01])$")
    end_date: str = Field(pattern=r"^(0[1-9]|1[0-2])-(0[1-9]|[12]\d|3[01])$")
    keywords: tuple[str, ...] = Field(min_length=1)
    multiplier: float = Field(ge=0.5, le=2.0)
    reason: str

    def is_active(self, today: date) -> bool:
        current = today.strftime("%m-%d")
        if self.start_date <= self.end_date:
            return self.start_date <= current <= self.end_date
        return current >= self.start_date or current <= self.end_date

    def matches(self, keyword: str) -> bool:
        """True when the keyword and a factor keyword contain one another."""
        lowered = keyword.lower()
        return any(
            term.lower() in lowered or lowered in term.lower() for term in self.keywords if term
        )


class ScoringQualityReport(BaseModel):
    """Sanity checks over one batch of scoring results."""

    is_valid: bool
    warnings: list[str] = Field(default_factory=list)
    score_distribution: dict[str, int] = Field(default_factory=dict)
    quick_win_ratio: float = 0.0
    average_contributions: dict[str, float] = Field(default_factory=dict)
    outlier_count: int = 0
