"""Deduplication and hard quality filters for scored candidates."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from keyword_universe.schemas.keyword import KeywordCandidate, KeywordStage
from keyword_universe.services.normalizer import canonical_keyword

logger = logging.getLogger(__name__)

VOLUME_FLOORS: dict[KeywordStage, int] = {"dream100": 10, "tier2": 5, "tier3": 5}


def difficulty_bucket(difficulty: float) -> str:
    if difficulty <= 30:
        return "easy"
    if difficulty <= 70:
        return "medium"
    return "hard"


def _is_better(candidate: KeywordCandidate, incumbent: KeywordCandidate) -> bool:
    if candidate.blended_score != incumbent.blended_score:
        return candidate.blended_score > incumbent.blended_score
    return candidate.keyword < incumbent.keyword


@dataclass
class QualityControlOutcome:
    candidates: list[KeywordCandidate] = field(default_factory=list)
    duplicates_removed: int = 0
    cross_tier_duplicates: int = 0
    filtered_by_score: int = 0
    filtered_by_volume: int = 0
    filtered_by_difficulty: int = 0
    filtered_by_intent: int = 0

    @property
    def filtered(self) -> int:
        return (
            self.filtered_by_score
            + self.filtered_by_volume
            + self.filtered_by_difficulty
            + self.filtered_by_intent
        )


class QualityController:
    """Removes duplicates and candidates that fail the hard filters.

    Candidates are keyed by canonical keyword. Running the controller
    on its own output returns the same candidates.
    """

    def __init__(
        self,
        quality_threshold: float,
        *,
        difficulty_preference: str = "mixed",
        intent_focus: str = "mixed",
        volume_floors: dict[KeywordStage, int] | None = None,
    ) -> None:
        self.quality_threshold = quality_threshold
        self.difficulty_preference = difficulty_preference
        self.intent_focus = intent_focus
        self.volume_floors = volume_floors or VOLUME_FLOORS

    def deduplicate(
        self,
        candidates: Iterable[KeywordCandidate],
        existing_keywords: set[str] | None = None,
    ) -> tuple[list[KeywordCandidate], int, int]:
        """Collapse intra-tier duplicates and drop keywords seen in earlier tiers.

        Returns the survivors in first-seen order with the count of
        intra-tier and cross-tier duplicates removed.
        """
        existing = existing_keywords or set()
        best: dict[str, KeywordCandidate] = {}
        order: list[str] = []
        intra = 0
        cross = 0

        for candidate in candidates:
            key = canonical_keyword(candidate.keyword)
            if key in existing:
                cross += 1
                continue
            incumbent = best.get(key)
            if incumbent is None:
                best[key] = candidate
                order.append(key)
                continue
            intra += 1
            if _is_better(candidate, incumbent):
                best[key] = candidate

        return [best[key] for key in order], intra, cross

    def apply(
        self,
        candidates: Iterable[KeywordCandidate],
        stage: KeywordStage,
        existing_keywords: set[str] | None = None,
        *,
        apply_preference_filters: bool = True,
    ) -> QualityControlOutcome:
        """Run both dedup passes then the hard filters."""
        deduped, intra, cross = self.deduplicate(candidates, existing_keywords)
        outcome = QualityControlOutcome(duplicates_removed=intra, cross_tier_duplicates=cross)
        volume_floor = self.volume_floors[stage]
        bucket_filter = (
            self.difficulty_preference
            if apply_preference_filters and self.difficulty_preference != "mixed"
            else None
        )
        intent_filter = (
            self.intent_focus if apply_preference_filters and self.intent_focus != "mixed" else None
        )

        for candidate in deduped:
            if candidate.blended_score < self.quality_threshold:
                outcome.filtered_by_score += 1
            elif candidate.volume < volume_floor:
                outcome.filtered_by_volume += 1
            elif bucket_filter and difficulty_bucket(candidate.difficulty) != bucket_filter:
                outcome.filtered_by_difficulty += 1
            elif intent_filter and candidate.intent != intent_filter:
                outcome.filtered_by_intent += 1
            else:
                outcome.candidates.append(candidate)

        logger.info(
            "Quality control complete",
            extra={
                "stage": stage,
                "kept": len(outcome.candidates),
                "duplicates_removed": intra,
                "cross_tier_duplicates": cross,
                "filtered": outcome.filtered,
            },
        )
        return outcome
