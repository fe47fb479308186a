"""Top-K selection with intent balancing and a quick-win minimum."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from keyword_universe.schemas.keyword import INTENTS, KeywordCandidate, KeywordStage

logger = logging.getLogger(__name__)

QUICK_WIN_MIN_RATIO = 0.10

DEFAULT_INTENT_RATIOS: dict[KeywordStage, dict[str, float]] = {
    "dream100": {
        "transactional": 0.40,
        "commercial": 0.35,
        "informational": 0.20,
        "navigational": 0.05,
    },
    "tier2": {
        "transactional": 0.30,
        "commercial": 0.35,
        "informational": 0.30,
        "navigational": 0.05,
    },
    "tier3": {
        "transactional": 0.15,
        "commercial": 0.25,
        "informational": 0.55,
        "navigational": 0.05,
    },
}


def rank_key(candidate: KeywordCandidate) -> tuple[float, str]:
    """Sort key: best score first, ties broken by keyword text."""
    return (-candidate.blended_score, candidate.keyword)


def _intent_of(candidate: KeywordCandidate) -> str:
    return candidate.intent or "informational"


@dataclass
class CappingOutcome:
    selected: list[KeywordCandidate] = field(default_factory=list)
    quotas: dict[str, int] = field(default_factory=dict)
    filled_by_intent: dict[str, int] = field(default_factory=dict)
    backfilled: int = 0
    quick_win_swaps: int = 0


class SmartCapper:
    """Selects at most ``target`` candidates for a tier.

    Scores are never modified; only membership and order change.
    """

    def __init__(
        self,
        intent_ratios: Mapping[KeywordStage, Mapping[str, float]] | None = None,
        quick_win_ratio: float = QUICK_WIN_MIN_RATIO,
    ) -> None:
        self.intent_ratios = intent_ratios or DEFAULT_INTENT_RATIOS
        self.quick_win_ratio = quick_win_ratio

    def quotas_for(self, stage: KeywordStage, target: int) -> dict[str, int]:
        ratios = self.intent_ratios[stage]
        return {intent: math.floor(target * ratios.get(intent, 0.0)) for intent in INTENTS}

    def select(
        self,
        candidates: Iterable[KeywordCandidate],
        target: int,
        stage: KeywordStage,
        *,
        balance_intents: bool = True,
        ensure_quick_wins: bool = True,
    ) -> CappingOutcome:
        ranked = sorted(candidates, key=rank_key)
        outcome = CappingOutcome()
        if target <= 0 or not ranked:
            return outcome

        if not balance_intents:
            selected = ranked[:target]
        else:
            selected = self._balanced(ranked, target, stage, outcome)

        if ensure_quick_wins:
            selected = self._enforce_quick_wins(ranked, selected, target, outcome)

        outcome.selected = sorted(selected, key=rank_key)
        logger.info(
            "Tier capped",
            extra={
                "stage": stage,
                "target": target,
                "available": len(ranked),
                "selected": len(outcome.selected),
                "backfilled": outcome.backfilled,
                "quick_win_swaps": outcome.quick_win_swaps,
            },
        )
        return outcome

    def _balanced(
        self,
        ranked: list[KeywordCandidate],
        target: int,
        stage: KeywordStage,
        outcome: CappingOutcome,
    ) -> list[KeywordCandidate]:
        outcome.quotas = self.quotas_for(stage, target)
        buckets: dict[str, list[KeywordCandidate]] = {intent: [] for intent in INTENTS}
        for candidate in ranked:
            buckets[_intent_of(candidate)].append(candidate)

        chosen: set[int] = set()
        selected: list[KeywordCandidate] = []
        for intent in INTENTS:
            picks = buckets[intent][: outcome.quotas[intent]]
            outcome.filled_by_intent[intent] = len(picks)
            selected.extend(picks)
            chosen.update(id(candidate) for candidate in picks)

        for candidate in ranked:
            if len(selected) >= target:
                break
            if id(candidate) not in chosen:
                selected.append(candidate)
                chosen.add(id(candidate))
                outcome.backfilled += 1
        return selected

    def _enforce_quick_wins(
        self,
        ranked: list[KeywordCandidate],
        selected: list[KeywordCandidate],
        target: int,
        outcome: CappingOutcome,
    ) -> list[KeywordCandidate]:
        required = math.floor(target * self.quick_win_ratio)
        have = sum(1 for candidate in selected if candidate.quick_win)
        if have >= required:
            return selected

        selected_ids = {id(candidate) for candidate in selected}
        available = [c for c in ranked if c.quick_win and id(c) not in selected_ids]
        # Lowest-ranked non-quick-wins are swapped out first
        removable = sorted(
            (c for c in selected if not c.quick_win),
            key=rank_key,
            reverse=True,
        )

        result = list(selected)
        for incoming, outgoing in zip(available, removable):
            if have >= required:
                break
            result[result.index(outgoing)] = incoming
            have += 1
            outcome.quick_win_swaps += 1
        return result
