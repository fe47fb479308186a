"""Keyword candidate schemas."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

KeywordStage = Literal["dream100", "tier2", "tier3"]
KeywordIntent = Literal["transactional", "commercial", "informational", "navigational"]
MetricsSource = Literal["provider", "estimated"]

STAGES: tuple[KeywordStage, ...] = ("dream100", "tier2", "tier3")
INTENTS: tuple[KeywordIntent, ...] = (
    "transactional",
    "commercial",
    "informational",
    "navigational",
)


class KeywordCandidate(BaseModel):
    """A keyword moving through one tier of the pipeline.

    Instances are frozen. Stages produce updated copies with
    ``model_copy(update=...)``.
    """

    model_config = ConfigDict(frozen=True)

    keyword: str
    stage: KeywordStage
    parent_keyword: str | None = None
    volume: int = Field(default=0, ge=0)
    difficulty: float = Field(default=0.0, ge=0, le=100)
    cpc: float = Field(default=0.0, ge=0)
    intent: KeywordIntent | None = None
    relevance_score: float = Field(default=0.0, ge=0, le=1)
    quality_score: float = Field(default=0.0, ge=0, le=1)
    blended_score: float = Field(default=0.0, ge=0, le=1)
    quick_win: bool = False
    expansion_source: str = "unknown"
    confidence: float = Field(default=0.5, ge=0, le=1)
    trend: float = Field(default=0.0, ge=-1, le=1)
    serp_features: tuple[str, ...] = ()
    competitor_urls: tuple[str, ...] = ()
    metrics_source: MetricsSource | None = None


class KeywordMetrics(BaseModel):
    """Metrics returned by a metrics provider for one keyword."""

    keyword: str
    volume: int = Field(default=0, ge=0)
    difficulty: float = Field(default=0.0, ge=0, le=100)
    cpc: float = Field(default=0.0, ge=0)
    trend: float | None = Field(default=None, ge=-1, le=1)
    serp_features: list[str] = Field(default_factory=list)


class ExpansionIdea(BaseModel):
    """A raw keyword idea returned by an expansion provider."""

    keyword: str
    intent: KeywordIntent | None = None
    confidence: float = Field(default=0.7, ge=0, le=1)


class IntentClassification(BaseModel):
    """Intent label for one keyword."""

    keyword: str
    intent: KeywordIntent
    confidence: float = Field(default=0.5, ge=0, le=1)
    source: str = "llm"


class KeywordValidation(BaseModel):
    """Outcome of keyword quality validation."""

    is_valid: bool
    reasons: list[str] = Field(default_factory=list)
    score: float = Field(default=1.0, ge=0, le=1)
