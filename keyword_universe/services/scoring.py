"""Stage-specific weighted scoring with quick-win detection.

Every function here is pure: the same input, weights and stage config
always produce the same ``ScoringResult``. Nothing is cached or shared,
so candidates can be scored from any number of concurrent tasks.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping, Sequence
from datetime import date

from keyword_universe.schemas.keyword import KeywordCandidate, KeywordStage
from keyword_universe.schemas.scoring import (
    ComponentScores,
    QuickWinCriteria,
    ScoreTier,
    ScoringInput,
    ScoringQualityReport,
    ScoringResult,
    ScoringWeights,
    StageScoringConfig,
    SeasonalFactor,
    StageWeights,
)

logger = logging.getLogger(__name__)

HIGH_TIER_THRESHOLD = 0.7
MEDIUM_TIER_THRESHOLD = 0.4
OUTLIER_LOW = 0.05
OUTLIER_HIGH = 0.95

_HEAD_INTENT_SCORES = {
    "transactional": 1.0,
    "commercial": 0.9,
    "informational": 0.7,
    "navigational": 0.5,
}
_TAIL_INTENT_SCORES = {
    "transactional": 1.0,
    "commercial": 0.8,
    "informational": 0.6,
    "navigational": 0.4,
}

DEFAULT_STAGE_CONFIGS: dict[KeywordStage, StageScoringConfig] = {
    "dream100": StageScoringConfig(
        volume_transform="log",
        ease_transform="sigmoid",
        trend_sensitivity=1.2,
        intent_scores=_HEAD_INTENT_SCORES,
        quick_win=QuickWinCriteria(min_ease=0.7, min_volume=100, min_blended_score=0.6),
    ),
    "tier2": StageScoringConfig(
        volume_transform="sqrt",
        ease_transform="linear",
        trend_sensitivity=1.0,
        intent_scores=_TAIL_INTENT_SCORES,
        quick_win=QuickWinCriteria(min_ease=0.7, min_volume=100, min_blended_score=0.55),
    ),
    "tier3": StageScoringConfig(
        volume_transform="linear",
        ease_transform="exponential",
        trend_sensitivity=0.8,
        intent_scores=_TAIL_INTENT_SCORES,
        quick_win=QuickWinCriteria(min_ease=0.8, min_volume=50, min_blended_score=0.5),
    ),
}


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if math.isnan(value):
        return low
    return max(low, min(high, value))


def normalize_volume(volume: int, transform: str) -> float:
    """Map raw search volume into [0, 1]."""
    if volume <= 0:
        return 0.0
    if transform == "log":
        return _clamp(math.log10(volume + 1) / 6)
    if transform == "sqrt":
        return _clamp(math.sqrt(volume) / 1000)
    return _clamp(volume / 100_000)


def normalize_ease(difficulty: float, transform: str) -> float:
    """Convert difficulty (0-100) into ease in [0, 1], optionally reshaped."""
    bounded = _clamp(difficulty, 0.0, 100.0)
    if transform == "sigmoid":
        return _clamp(1 / (1 + math.exp((bounded - 50) / 20)))
    ease = 1 - bounded / 100
    if transform == "exponential":
        return _clamp(ease**0.5)
    return _clamp(ease)


def normalize_trend(trend: float, sensitivity: float) -> float:
    """Map a [-1, 1] trend into [0, 1]; 0.5 is flat."""
    return _clamp((trend * sensitivity + 1) / 2)


def classify_tier(score: float) -> ScoreTier:
    if score >= HIGH_TIER_THRESHOLD:
        return "high"
    if score >= MEDIUM_TIER_THRESHOLD:
        return "medium"
    return "low"


def is_quick_win(
    components: ComponentScores,
    volume: int,
    blended_score: float,
    criteria: QuickWinCriteria,
    cluster_median_volume: float | None = None,
) -> bool:
    """Test quick-win eligibility against the pre-boost blended score."""
    if components.ease < criteria.min_ease:
        return False
    if volume < criteria.min_volume:
        return False
    if cluster_median_volume is not None and volume < cluster_median_volume:
        return False
    return blended_score >= criteria.min_blended_score


def build_recommendations(
    scoring_input: ScoringInput,
    components: ComponentScores,
    blended_score: float,
    quick_win: bool,
) -> list[str]:
    """Advisory hints derived from component thresholds."""
    recommendations: list[str] = []

    if quick_win:
        recommendations.append("Quick win opportunity - prioritize for immediate content creation")

    if components.volume < 0.3:
        recommendations.append(
            f"Low search volume ({scoring_input.volume:,}) - consider for long-tail strategy"
        )
    elif components.volume > 0.8:
        recommendations.append(
            f"High search volume ({scoring_input.volume:,}) - good pillar candidate"
        )

    if components.ease < 0.3:
        recommendations.append(
            f"High difficulty ({scoring_input.difficulty:g}/100) - requires strong domain authority"
        )
    elif components.ease > 0.7:
        recommendations.append(
            f"Low difficulty ({scoring_input.difficulty:g}/100) - good opportunity for quick ranking"
        )

    if scoring_input.intent == "transactional":
        recommendations.append("Transactional intent - optimize for conversion and product pages")
    elif scoring_input.intent == "commercial":
        recommendations.append("Commercial intent - create comparison and review content")
    elif scoring_input.intent == "informational":
        recommendations.append("Informational intent - focus on educational and how-to content")

    if components.relevance < 0.4:
        recommendations.append("Low relevance score - verify alignment with content strategy")
    elif components.relevance > 0.9:
        recommendations.append("Highly relevant - strong fit for content pillars")

    if components.trend > 0.7:
        recommendations.append("Trending upward - time-sensitive opportunity")
    elif components.trend < 0.3:
        recommendations.append("Declining trend - deprioritize or plan seasonally")

    if scoring_input.stage == "dream100" and blended_score < 0.6:
        recommendations.append("Below average for Dream 100 - consider moving to supporting content")
    elif scoring_input.stage == "tier3" and blended_score > 0.8:
        recommendations.append("High-scoring tier-3 keyword - consider promoting to a higher tier")

    return recommendations


def score(
    scoring_input: ScoringInput,
    weights: StageWeights,
    cluster_median_volume: float | None = None,
    config: StageScoringConfig | None = None,
) -> ScoringResult:
    """Score one keyword for its stage.

    The quick-win test runs on the un-boosted blended score; a passing
    keyword then gets the rank boost, clamped to 1.0.
    """
    stage_config = config or DEFAULT_STAGE_CONFIGS[scoring_input.stage]
    intent_scores = stage_config.intent_scores

    components = ComponentScores(
        volume=normalize_volume(scoring_input.volume, stage_config.volume_transform),
        intent=_clamp(
            intent_scores.get(scoring_input.intent or "informational", intent_scores["informational"])
        ),
        relevance=_clamp(scoring_input.relevance),
        trend=normalize_trend(scoring_input.trend, stage_config.trend_sensitivity),
        ease=normalize_ease(scoring_input.difficulty, stage_config.ease_transform),
    )

    weight_map = weights.as_dict()
    component_map = components.model_dump()
    weighted = {name: component_map[name] * weight for name, weight in weight_map.items()}
    blended = _clamp(sum(weighted.values()))

    quick_win = is_quick_win(
        components,
        scoring_input.volume,
        blended,
        stage_config.quick_win,
        cluster_median_volume,
    )
    if quick_win:
        blended = _clamp(blended * (1 + stage_config.quick_win.rank_boost))

    return ScoringResult(
        keyword=scoring_input.keyword,
        stage=scoring_input.stage,
        component_scores=components,
        weighted_scores=weighted,
        blended_score=blended,
        quick_win=quick_win,
        tier=classify_tier(blended),
        recommendations=build_recommendations(scoring_input, components, blended, quick_win),
    )


def apply_seasonal_adjustments(
    result: ScoringResult,
    factors: Sequence[SeasonalFactor],
) -> ScoringResult:
    """Multiply the blended score by every matching factor, clamped to [0, 1].

    ``factors`` must already be filtered to the ones active today. The
    quick-win flag is left as scored.
    """
    adjusted = result.blended_score
    notes: list[str] = []
    for factor in factors:
        if not factor.matches(result.keyword):
            continue
        adjusted *= factor.multiplier
        percent = round((factor.multiplier - 1) * 100)
        notes.append(f"Seasonal adjustment: {factor.reason} ({'+' if percent > 0 else ''}{percent}%)")

    if not notes:
        return result
    adjusted = _clamp(adjusted)
    return result.model_copy(
        update={
            "blended_score": adjusted,
            "tier": classify_tier(adjusted),
            "recommendations": [*result.recommendations, *notes],
        }
    )


def validate_scoring_quality(results: Sequence[ScoringResult]) -> ScoringQualityReport:
    """Flag score distributions that suggest badly tuned weights or thresholds.

    The report is invalid once three or more checks warn.
    """
    if not results:
        return ScoringQualityReport(is_valid=True)

    total = len(results)
    distribution = {
        tier: sum(1 for result in results if result.tier == tier) for tier in ("high", "medium", "low")
    }
    warnings: list[str] = []

    if distribution["high"] / total > 0.5:
        warnings.append("Unusually high ratio of high-scoring keywords - review scoring criteria")
    if distribution["low"] / total > 0.7:
        warnings.append("High ratio of low-scoring keywords - consider adjusting thresholds")

    quick_win_ratio = sum(1 for result in results if result.quick_win) / total
    if quick_win_ratio < 0.05:
        warnings.append("Very few quick wins identified - review difficulty and volume thresholds")
    elif quick_win_ratio > 0.4:
        warnings.append("High quick win ratio - validate scoring accuracy")

    contributions = {
        name: round(sum(result.weighted_scores.get(name, 0.0) for result in results) / total, 4)
        for name in ("volume", "intent", "relevance", "trend", "ease")
    }
    low, high = min(contributions.values()), max(contributions.values())
    if high > 0 and (low == 0 or high / low > 10):
        warnings.append("Unbalanced component contributions - some factors may be overweighted")

    outliers = sum(
        1 for result in results if result.blended_score < OUTLIER_LOW or result.blended_score > OUTLIER_HIGH
    )
    if outliers > total * 0.1:
        warnings.append("High number of extreme scores - review normalization parameters")

    return ScoringQualityReport(
        is_valid=len(warnings) < 3,
        warnings=warnings,
        score_distribution=distribution,
        quick_win_ratio=round(quick_win_ratio, 4),
        average_contributions=contributions,
        outlier_count=outliers,
    )


class ScoringEngine:
    """Applies one run's weights, stage configs and seasonal factors.

    Seasonal factors are filtered against ``today`` once, at construction,
    so every candidate in a run sees the same calendar date.
    """

    def __init__(
        self,
        weights: ScoringWeights | None = None,
        stage_configs: Mapping[KeywordStage, StageScoringConfig] | None = None,
        use_cluster_median: bool = False,
        seasonal_factors: Sequence[SeasonalFactor] = (),
        today: date | None = None,
    ) -> None:
        self.weights = weights or ScoringWeights()
        self.stage_configs = dict(DEFAULT_STAGE_CONFIGS)
        if stage_configs:
            self.stage_configs.update(stage_configs)
        self.use_cluster_median = use_cluster_median
        run_date = today or date.today()
        self.active_factors = [factor for factor in seasonal_factors if factor.is_active(run_date)]

    def score(
        self,
        scoring_input: ScoringInput,
        cluster_median_volume: float | None = None,
    ) -> ScoringResult:
        result = score(
            scoring_input,
            self.weights.for_stage(scoring_input.stage),
            cluster_median_volume,
            self.stage_configs[scoring_input.stage],
        )
        if self.active_factors:
            result = apply_seasonal_adjustments(result, self.active_factors)
        return result

    def score_candidate(
        self,
        candidate: KeywordCandidate,
        cluster_median_volume: float | None = None,
    ) -> tuple[KeywordCandidate, ScoringResult]:
        """Return a rescored copy of the candidate and the full result."""
        result = self.score(
            ScoringInput(
                keyword=candidate.keyword,
                stage=candidate.stage,
                volume=candidate.volume,
                difficulty=candidate.difficulty,
                intent=candidate.intent,
                relevance=candidate.relevance_score,
                trend=candidate.trend,
            ),
            cluster_median_volume,
        )
        scored = candidate.model_copy(
            update={"blended_score": result.blended_score, "quick_win": result.quick_win}
        )
        return scored, result

    def score_batch(
        self,
        candidates: Iterable[KeywordCandidate],
    ) -> tuple[list[KeywordCandidate], list[ScoringResult]]:
        """Score candidates, preserving input order, and keep the full results."""
        batch = list(candidates)
        median: float | None = None
        if self.use_cluster_median and batch:
            volumes = sorted(candidate.volume for candidate in batch)
            middle = len(volumes) // 2
            median = (
                float(volumes[middle])
                if len(volumes) % 2
                else (volumes[middle - 1] + volumes[middle]) / 2
            )

        pairs = [self.score_candidate(candidate, median) for candidate in batch]
        scored = [candidate for candidate, _ in pairs]
        results = [result for _, result in pairs]
        if scored:
            logger.info(
                "Candidates scored",
                extra={
                    "stage": scored[0].stage,
                    "count": len(scored),
                    "quick_wins": sum(1 for candidate in scored if candidate.quick_win),
                    "seasonal_factors": len(self.active_factors),
                },
            )
        return scored, results

    def score_many(self, candidates: Iterable[KeywordCandidate]) -> list[KeywordCandidate]:
        return self.score_batch(candidates)[0]
