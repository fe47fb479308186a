"""Unit tests for intent-balanced top-K selection."""

from __future__ import annotations

from keyword_universe.schemas.keyword import KeywordCandidate
from keyword_universe.services.capping import SmartCapper, rank_key


def _candidates(intent: str, count: int, *, start: float = 0.9, quick_win: bool = False) -> list[KeywordCandidate]:
    return [
        KeywordCandidate(
            keyword=f"{intent} keyword {i:02d}",
            stage="dream100",
            intent=intent,
            blended_score=round(start - i * 0.01, 4),
            quick_win=quick_win,
        )
        for i in range(count)
    ]


def test_quotas_use_floor_of_stage_ratios() -> None:
    assert SmartCapper().quotas_for("dream100", 20) == {
        "transactional": 8,
        "commercial": 7,
        "informational": 4,
        "navigational": 1,
    }
    assert SmartCapper().quotas_for("tier3", 10) == {
        "transactional": 1,
        "commercial": 2,
        "informational": 5,
        "navigational": 0,
    }


def test_balanced_selection_fills_every_bucket_to_quota() -> None:
    pool = [
        *_candidates("transactional", 10),
        *_candidates("commercial", 10),
        *_candidates("informational", 10),
        *_candidates("navigational", 10),
    ]

    outcome = SmartCapper().select(pool, 20, "dream100", ensure_quick_wins=False)

    assert len(outcome.selected) == 20
    assert outcome.filled_by_intent == outcome.quotas
    assert outcome.backfilled == 0


def test_short_buckets_are_backfilled_by_score() -> None:
    pool = _candidates("commercial", 30)

    outcome = SmartCapper().select(pool, 10, "dream100", ensure_quick_wins=False)

    assert len(outcome.selected) == 10
    assert outcome.filled_by_intent["commercial"] == 3
    assert outcome.backfilled == 7
    assert outcome.selected == sorted(pool, key=rank_key)[:10]


def test_selection_never_exceeds_target_or_available() -> None:
    pool = _candidates("informational", 4)

    assert len(SmartCapper().select(pool, 10, "tier2").selected) == 4
    assert SmartCapper().select(pool, 0, "tier2").selected == []
    assert SmartCapper().select([], 5, "tier2").selected == []


def test_unbalanced_selection_is_plain_top_k() -> None:
    pool = [*_candidates("commercial", 5, start=0.5), *_candidates("transactional", 5, start=0.9)]

    outcome = SmartCapper().select(pool, 5, "dream100", balance_intents=False, ensure_quick_wins=False)

    assert {c.intent for c in outcome.selected} == {"transactional"}


def test_quick_wins_swap_in_for_lowest_ranked() -> None:
    strong = _candidates("commercial", 20, start=0.95)
    quick_wins = _candidates("transactional", 3, start=0.4, quick_win=True)

    outcome = SmartCapper().select(
        [*strong, *quick_wins], 10, "dream100", balance_intents=False, ensure_quick_wins=True
    )

    assert len(outcome.selected) == 10
    assert outcome.quick_win_swaps == 1
    assert sum(1 for c in outcome.selected if c.quick_win) == 1
    # The weakest of the original top ten was swapped out
    assert strong[9] not in outcome.selected
    assert strong[8] in outcome.selected


def test_output_is_sorted_and_unique() -> None:
    pool = [*_candidates("commercial", 8), *_candidates("informational", 8, start=0.85)]

    outcome = SmartCapper().select(pool, 12, "tier2")

    assert outcome.selected == sorted(outcome.selected, key=rank_key)
    assert len({c.keyword for c in outcome.selected}) == len(outcome.selected)
