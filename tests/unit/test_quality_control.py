"""Unit tests for deduplication and hard quality filters."""

from __future__ import annotations

from keyword_universe.schemas.keyword import KeywordCandidate
from keyword_universe.services.quality_control import QualityController, difficulty_bucket


def _candidate(
    keyword: str,
    *,
    stage: str = "tier2",
    score: float = 0.7,
    volume: int = 500,
    difficulty: float = 40,
    intent: str | None = "commercial",
) -> KeywordCandidate:
    return KeywordCandidate(
        keyword=keyword,
        stage=stage,
        blended_score=score,
        volume=volume,
        difficulty=difficulty,
        intent=intent,
    )


def test_difficulty_buckets() -> None:
    assert difficulty_bucket(30) == "easy"
    assert difficulty_bucket(31) == "medium"
    assert difficulty_bucket(70) == "medium"
    assert difficulty_bucket(71) == "hard"


def test_duplicates_keep_the_higher_blended_score() -> None:
    controller = QualityController(0.0)

    outcome = controller.apply(
        [
            _candidate("crm tools", score=0.6),
            _candidate("CRM Tools", score=0.8),
            _candidate("crm software", score=0.5),
        ],
        "tier2",
    )

    assert outcome.duplicates_removed == 1
    kept = {c.keyword: c.blended_score for c in outcome.candidates}
    assert kept == {"CRM Tools": 0.8, "crm software": 0.5}


def test_cross_tier_duplicates_are_removed() -> None:
    controller = QualityController(0.0)

    outcome = controller.apply(
        [_candidate("crm tools"), _candidate("crm pricing")],
        "tier2",
        existing_keywords={"crm tools"},
    )

    assert [c.keyword for c in outcome.candidates] == ["crm pricing"]
    assert outcome.cross_tier_duplicates == 1


def test_quality_threshold_and_volume_floor() -> None:
    controller = QualityController(0.5)

    outcome = controller.apply(
        [
            _candidate("low score keyword", score=0.49),
            _candidate("tiny volume keyword", volume=3),
            _candidate("good keyword"),
        ],
        "tier2",
    )

    assert [c.keyword for c in outcome.candidates] == ["good keyword"]
    assert outcome.filtered_by_score == 1
    assert outcome.filtered_by_volume == 1
    assert outcome.filtered == 2


def test_preference_filters_apply_only_when_enabled() -> None:
    controller = QualityController(0.0, difficulty_preference="easy", intent_focus="commercial")
    candidates = [
        _candidate("easy commercial", stage="dream100", difficulty=20),
        _candidate("hard commercial", stage="dream100", difficulty=80),
        _candidate("easy informational", stage="dream100", difficulty=20, intent="informational"),
    ]

    filtered = controller.apply(candidates, "dream100")
    unfiltered = controller.apply(candidates, "dream100", apply_preference_filters=False)

    assert [c.keyword for c in filtered.candidates] == ["easy commercial"]
    assert filtered.filtered_by_difficulty == 1
    assert filtered.filtered_by_intent == 1
    assert len(unfiltered.candidates) == 3


def test_apply_is_idempotent() -> None:
    controller = QualityController(0.5)
    candidates = [
        _candidate("crm tools", score=0.9),
        _candidate("crm tools", score=0.7),
        _candidate("weak keyword", score=0.2),
        _candidate("crm pricing", score=0.6),
    ]

    first = controller.apply(candidates, "tier2")
    second = controller.apply(first.candidates, "tier2")

    assert second.candidates == first.candidates
    assert second.filtered == 0
    assert second.duplicates_removed == 0


def test_equal_scores_break_ties_on_keyword() -> None:
    controller = QualityController(0.0)

    first, _, _ = controller.deduplicate([_candidate("crm tools"), _candidate("CRM tools")])
    second, _, _ = controller.deduplicate([_candidate("CRM tools"), _candidate("crm tools")])

    assert first == second
    assert first[0].keyword == "CRM tools"
