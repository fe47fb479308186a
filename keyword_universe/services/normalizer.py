"""Keyword normalization, validation and exact-duplicate collapsing."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from keyword_universe.schemas.keyword import KeywordCandidate, KeywordValidation

logger = logging.getLogger(__name__)

MIN_KEYWORD_LENGTH = 2
MAX_KEYWORD_LENGTH = 100
MAX_KEYWORD_WORDS = 10

_WHITESPACE_RE = re.compile(r"\s+")
_DISALLOWED_CHARS_RE = re.compile(r"[^\w\s-]")
_DIGITS_ONLY_RE = re.compile(r"^[\d\s]*$")
_SYMBOLS_ONLY_RE = re.compile(r"^[\W\s_]*$")

SPAM_PATTERNS = [
    re.compile(r"^(buy|sale|cheap|free|best|top)\s*\d*$", re.IGNORECASE),
    re.compile(r"^\w{1,2}$"),
    re.compile(r"^\d+$"),
]

BLOCKED_TERMS = frozenset({"porn", "xxx", "casino bonus", "viagra", "cialis"})


@dataclass
class NormalizationOutcome:
    """Candidates that survived normalization plus drop counts."""

    candidates: list[KeywordCandidate] = field(default_factory=list)
    invalid_filtered: int = 0
    duplicates_removed: int = 0


def normalize_keyword(text: str) -> str:
    """Lowercase, strip punctuation except hyphens, collapse whitespace."""
    lowered = text.strip().lower()
    stripped = _DISALLOWED_CHARS_RE.sub("", lowered)
    return _WHITESPACE_RE.sub(" ", stripped).strip()


def canonical_keyword(text: str) -> str:
    """Canonical form used for every equality comparison between keywords."""
    return normalize_keyword(text)


def validate_keyword(text: str) -> KeywordValidation:
    """Check length, content and spam patterns for a keyword."""
    reasons: list[str] = []
    value = text.strip()

    if not value:
        reasons.append("Keyword cannot be empty")
    elif len(value) < MIN_KEYWORD_LENGTH:
        reasons.append(f"Keyword too short (minimum {MIN_KEYWORD_LENGTH} characters)")
    elif len(value) > MAX_KEYWORD_LENGTH:
        reasons.append(f"Keyword too long (maximum {MAX_KEYWORD_LENGTH} characters)")

    if value and _DIGITS_ONLY_RE.match(value):
        reasons.append("Keyword cannot be only numbers")
    if value and _SYMBOLS_ONLY_RE.match(value):
        reasons.append("Keyword cannot be only special characters")

    word_count = len(value.split())
    if word_count > MAX_KEYWORD_WORDS:
        reasons.append(f"Keyword has too many words (maximum {MAX_KEYWORD_WORDS})")

    lowered = value.lower()
    if any(pattern.match(value) for pattern in SPAM_PATTERNS) or any(
        term in lowered for term in BLOCKED_TERMS
    ):
        reasons.append("Keyword appears to be spam or low quality")

    score = 0.9 if not reasons else max(0.1, 0.9 - len(reasons) * 0.2)
    if 10 <= len(value) <= 50:
        score += 0.05
    if 2 <= word_count <= 5:
        score += 0.05

    return KeywordValidation(
        is_valid=not reasons,
        reasons=reasons,
        score=min(1.0, max(0.0, score)),
    )


def keyword_similarity(keyword: str, reference: str) -> float:
    """Jaccard word overlap minus a small penalty for length mismatch."""
    words = set(canonical_keyword(keyword).split())
    ref_words = set(canonical_keyword(reference).split())
    if not words or not ref_words:
        return 0.0

    overlap = len(words & ref_words) / len(words | ref_words)
    longest = max(len(words), len(ref_words))
    penalty = abs(len(words) - len(ref_words)) / longest * 0.2
    return max(0.0, min(1.0, overlap - penalty))


def relevance_to_seeds(keyword: str, seeds: Iterable[str]) -> float:
    """Best similarity of a keyword against any seed."""
    return max((keyword_similarity(keyword, seed) for seed in seeds), default=0.0)


def normalize_candidates(candidates: Iterable[KeywordCandidate]) -> NormalizationOutcome:
    """Normalize keywords, drop invalid ones and collapse exact duplicates.

    Duplicates keep the candidate with the higher ``quality_score``; on a
    tie the first occurrence wins.
    """
    outcome = NormalizationOutcome()
    positions: dict[str, int] = {}

    for candidate in candidates:
        normalized = normalize_keyword(candidate.keyword)
        if not validate_keyword(normalized).is_valid:
            outcome.invalid_filtered += 1
            continue

        if normalized != candidate.keyword:
            candidate = candidate.model_copy(update={"keyword": normalized})

        existing_index = positions.get(normalized)
        if existing_index is None:
            positions[normalized] = len(outcome.candidates)
            outcome.candidates.append(candidate)
            continue

        outcome.duplicates_removed += 1
        if candidate.quality_score > outcome.candidates[existing_index].quality_score:
            outcome.candidates[existing_index] = candidate

    if outcome.invalid_filtered or outcome.duplicates_removed:
        logger.info(
            "Candidates normalized",
            extra={
                "kept": len(outcome.candidates),
                "invalid_filtered": outcome.invalid_filtered,
                "duplicates_removed": outcome.duplicates_removed,
            },
        )
    return outcome
