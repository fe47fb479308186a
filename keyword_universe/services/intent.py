"""Search intent classification with a rule-based fallback."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

from keyword_universe.core.exceptions import BudgetExceededError, RunCancelledError
from keyword_universe.core.rate_limiter import TokenBucket
from keyword_universe.integrations.base import ExpansionProvider
from keyword_universe.schemas.keyword import IntentClassification, KeywordIntent
from keyword_universe.services.cost_tracker import CostTracker
from keyword_universe.services.normalizer import canonical_keyword
from keyword_universe.services.progress import BatchCallback, BatchProgress

logger = logging.getLogger(__name__)

# Checked in order; first matching intent wins
INTENT_RULES: dict[KeywordIntent, list[str]] = {
    "transactional": [
        r"\bbuy\b",
        r"\bpurchase\b",
        r"\border\b",
        r"\bprice",
        r"\bpricing\b",
        r"\bcost\b",
        r"\bdiscount\b",
        r"\bcoupon\b",
        r"\bdeal\b",
        r"\bsale\b",
        r"\bfree\s+trial\b",
    ],
    "commercial": [
        r"\bbest\b",
        r"\btop\b",
        r"\breview",
        r"\bcompar",
        r"\bvs\b",
        r"\bversus\b",
        r"\balternatives?\b",
        r"\btools?\b",
        r"\bsoftware\b",
        r"\bservices?\b",
        r"\bplatforms?\b",
    ],
    "navigational": [
        r"\blogin\b",
        r"\blog\s+in\b",
        r"\bsign\s+in\b",
        r"\bdashboard\b",
        r"\baccount\b",
        r"\bcontact\b",
    ],
    "informational": [
        r"\bhow\s+to\b",
        r"\bwhat\s+(is|are)\b",
        r"\bwhy\b",
        r"\bwhen\b",
        r"\bguide\b",
        r"\btutorial\b",
        r"\bexamples?\b",
        r"\btips\b",
        r"\blearn\b",
    ],
}

_COMPILED_RULES = {
    intent: [re.compile(pattern) for pattern in patterns]
    for intent, patterns in INTENT_RULES.items()
}

RULE_MATCH_CONFIDENCE = 0.6
DEFAULT_INTENT_CONFIDENCE = 0.4


class IntentClassifier(Protocol):
    """Anything that can label keywords with a search intent."""

    async def classify(self, keywords: list[str], context: str = "") -> list[IntentClassification]: ...


class HeuristicIntentClassifier:
    """Keyword pattern matching; never fails and never calls out."""

    def classify_one(self, keyword: str) -> IntentClassification:
        normalized = canonical_keyword(keyword)
        for intent, patterns in _COMPILED_RULES.items():
            if any(pattern.search(normalized) for pattern in patterns):
                return IntentClassification(
                    keyword=keyword,
                    intent=intent,
                    confidence=RULE_MATCH_CONFIDENCE,
                    source="heuristic",
                )
        return IntentClassification(
            keyword=keyword,
            intent="informational",
            confidence=DEFAULT_INTENT_CONFIDENCE,
            source="heuristic",
        )

    async def classify(self, keywords: list[str], context: str = "") -> list[IntentClassification]:
        return [self.classify_one(keyword) for keyword in keywords]


class ProviderIntentClassifier:
    """Delegates classification to an expansion provider's LLM."""

    def __init__(self, provider: ExpansionProvider) -> None:
        self.provider = provider

    async def classify(self, keywords: list[str], context: str = "") -> list[IntentClassification]:
        return await self.provider.classify_intent(keywords, context)


@dataclass
class IntentClassificationOutcome:
    labels: dict[str, IntentClassification] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    primary_batches: int = 0
    fallback_batches: int = 0


class ResilientIntentClassifier:
    """Batches keywords through a primary classifier with bounded concurrency.

    A batch the primary fails on, or leaves partly unlabeled, is labeled
    by the secondary classifier instead. Without a primary every batch
    goes to the secondary. Primary calls share ``rate_limiter`` and are
    paid for before they are issued.
    """

    def __init__(
        self,
        primary: IntentClassifier | None,
        secondary: IntentClassifier | None = None,
        *,
        batch_size: int = 30,
        max_concurrent_batches: int = 3,
        cost_tracker: CostTracker | None = None,
        rate_limiter: TokenBucket | None = None,
    ) -> None:
        self.primary = primary
        self.secondary = secondary or HeuristicIntentClassifier()
        self.batch_size = max(1, batch_size)
        self.max_concurrent_batches = max(1, max_concurrent_batches)
        self.cost_tracker = cost_tracker
        self.rate_limiter = rate_limiter

    async def classify(
        self,
        keywords: list[str],
        context: str = "",
        tier: str | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        on_batch: BatchCallback | None = None,
    ) -> IntentClassificationOutcome:
        """Label every keyword, one primary call per batch.

        Raises:
            RunCancelledError: cancellation was requested before or during
                the batches. Batches not yet started are never sent.
        """
        outcome = IntentClassificationOutcome()
        if not keywords:
            return outcome

        batches = [
            keywords[i : i + self.batch_size] for i in range(0, len(keywords), self.batch_size)
        ]
        semaphore = asyncio.Semaphore(min(self.max_concurrent_batches, len(batches)))
        progress_lock = asyncio.Lock()
        completed = 0
        processed = 0

        def _cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        async def _label_batch(
            batch_num: int,
            batch: list[str],
        ) -> tuple[list[IntentClassification], str | None, bool]:
            if self.primary is None:
                return await self.secondary.classify(batch, context), None, False

            async with semaphore:
                if self.rate_limiter is not None:
                    await self.rate_limiter.acquire()
                if _cancelled():
                    return [], None, True
                try:
                    if self.cost_tracker is not None:
                        await self.cost_tracker.reserve("llm", tier=tier)
                except BudgetExceededError:
                    labels = await self.secondary.classify(batch, context)
                    return labels, f"Intent batch {batch_num + 1} used heuristic labels: budget exhausted", True

                try:
                    labels = await self.primary.classify(batch, context)
                except Exception as exc:
                    logger.warning(
                        "Intent classification batch failed, using fallback",
                        extra={
                            "batch_num": batch_num + 1,
                            "total_batches": len(batches),
                            "batch_size": len(batch),
                            "error": str(exc),
                        },
                    )
                    labels = await self.secondary.classify(batch, context)
                    warning = f"Intent batch {batch_num + 1}/{len(batches)} failed, heuristic labels used: {exc}"
                    return labels, warning, True

            by_keyword = {canonical_keyword(label.keyword): label for label in labels}
            missing = [kw for kw in batch if canonical_keyword(kw) not in by_keyword]
            if missing:
                by_keyword.update(
                    {
                        canonical_keyword(label.keyword): label
                        for label in await self.secondary.classify(missing, context)
                    }
                )
            return [by_keyword[canonical_keyword(kw)] for kw in batch], None, False

        async def _process_batch(
            batch_num: int,
            batch: list[str],
        ) -> tuple[list[IntentClassification], str | None, bool]:
            nonlocal completed, processed
            if _cancelled():
                return [], None, True
            result = await _label_batch(batch_num, batch)
            if on_batch is not None and not _cancelled():
                async with progress_lock:
                    completed += 1
                    processed += len(batch)
                    await on_batch(
                        BatchProgress(
                            tier=tier,
                            completed_batches=completed,
                            total_batches=len(batches),
                            keywords_processed=processed,
                            succeeded=not result[2],
                        )
                    )
            return result

        results = await asyncio.gather(
            *[_process_batch(index, batch) for index, batch in enumerate(batches)]
        )

        if _cancelled():
            raise RunCancelledError(stage="intent_classification")

        for batch, (labels, warning, failed) in zip(batches, results, strict=True):
            if warning:
                outcome.warnings.append(warning)
            if failed or self.primary is None:
                outcome.fallback_batches += 1
            else:
                outcome.primary_batches += 1
            for keyword, label in zip(batch, labels, strict=False):
                outcome.labels[canonical_keyword(keyword)] = label

        logger.info(
            "Intent classification complete",
            extra={
                "keywords": len(keywords),
                "primary_batches": outcome.primary_batches,
                "fallback_batches": outcome.fallback_batches,
                "tier": tier,
            },
        )
        return outcome
