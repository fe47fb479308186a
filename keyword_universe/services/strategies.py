"""Candidate generation strategies.

Each strategy turns one or more seed keywords into raw keyword ideas.
Strategies are independent; the generator gives each a share of the
candidate budget proportional to its weight.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from urllib.parse import urlparse

from keyword_universe.core.exceptions import BudgetExceededError, RunCancelledError
from keyword_universe.core.rate_limiter import TokenBucket
from keyword_universe.integrations.base import (
    CompetitorContentSource,
    ExpansionProvider,
    SerpProvider,
)
from keyword_universe.schemas.expansion import ExpansionRequest
from keyword_universe.schemas.keyword import KeywordIntent
from keyword_universe.services.cost_tracker import CostTracker
from keyword_universe.services.normalizer import canonical_keyword, normalize_keyword

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawIdea:
    """A keyword idea before normalization and enrichment."""

    keyword: str
    source: str
    intent: KeywordIntent | None = None
    relevance: float | None = None
    confidence: float = 0.6
    competitor_url: str | None = None


@dataclass
class StrategyOutput:
    ideas: list[RawIdea] = field(default_factory=list)
    competitor_domains: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class ExpansionStrategy(ABC):
    """Base class for one way of producing keyword ideas."""

    name: str
    weight: float
    # Provider key charged per external call, None for in-memory strategies
    cost_provider: str | None = None
    rate_limiter: TokenBucket | None = None

    def is_enabled(self, request: ExpansionRequest) -> bool:
        return True

    @abstractmethod
    async def generate(
        self,
        seeds: list[str],
        max_results: int,
        request: ExpansionRequest,
        cost_tracker: CostTracker | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> StrategyOutput:
        """Produce at most ``max_results`` ideas for the seeds."""

    async def _before_call(
        self,
        cost_tracker: CostTracker | None,
        cancel_event: asyncio.Event | None,
        provider: str | None = None,
        calls: int = 1,
    ) -> None:
        """Pace and pay for one external call.

        Raises:
            RunCancelledError: the run was cancelled while waiting.
            BudgetExceededError: the call does not fit in the budget.
        """
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelledError(stage="generation")
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelledError(stage="generation")
        if cost_tracker is not None:
            await cost_tracker.reserve(provider or self.cost_provider or self.name, calls)


class SemanticExpansionStrategy(ExpansionStrategy):
    """LLM-driven semantic variants, biased toward commercial terms."""

    cost_provider = "llm"

    def __init__(
        self,
        provider: ExpansionProvider,
        weight: float,
        *,
        name: str = "llm_semantic",
        requires_semantic_toggle: bool = False,
        rate_limiter: TokenBucket | None = None,
    ) -> None:
        self.provider = provider
        self.weight = weight
        self.name = name
        self.requires_semantic_toggle = requires_semantic_toggle
        self.rate_limiter = rate_limiter

    def is_enabled(self, request: ExpansionRequest) -> bool:
        return request.enable_semantic_variations or not self.requires_semantic_toggle

    async def generate(
        self,
        seeds: list[str],
        max_results: int,
        request: ExpansionRequest,
        cost_tracker: CostTracker | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> StrategyOutput:
        await self._before_call(cost_tracker, cancel_event)
        ideas = await self.provider.expand(
            seeds,
            max_results,
            industry=request.industry,
            intent_focus=request.intent_focus,
        )

        return StrategyOutput(
            ideas=[
                RawIdea(
                    keyword=idea.keyword,
                    source=self.name,
                    intent=idea.intent,
                    confidence=idea.confidence,
                )
                for idea in ideas[:max_results]
            ]
        )


class TemplateStrategy(ExpansionStrategy):
    """Deterministic templates applied to every seed.

    Templates use ``{keyword}`` as the placeholder for the seed.
    """

    def __init__(
        self,
        name: str,
        weight: float,
        templates: tuple[str, ...],
        *,
        intent: KeywordIntent | None = None,
        relevance: float = 0.8,
        confidence: float = 0.7,
        requires_semantic_toggle: bool = False,
    ) -> None:
        self.name = name
        self.weight = weight
        self.templates = templates
        self.intent = intent
        self.relevance = relevance
        self.confidence = confidence
        self.requires_semantic_toggle = requires_semantic_toggle

    def is_enabled(self, request: ExpansionRequest) -> bool:
        return request.enable_semantic_variations or not self.requires_semantic_toggle

    def expand_seed(self, seed: str) -> list[str]:
        base = normalize_keyword(seed)
        variations: list[str] = []
        for template in self.templates:
            variation = normalize_keyword(template.format(keyword=base))
            if variation != base and variation not in variations:
                variations.append(variation)
        return variations

    async def generate(
        self,
        seeds: list[str],
        max_results: int,
        request: ExpansionRequest,
        cost_tracker: CostTracker | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> StrategyOutput:
        ideas = [
            RawIdea(
                keyword=variation,
                source=self.name,
                intent=self.intent,
                relevance=self.relevance,
                confidence=self.confidence,
            )
            for seed in seeds
            for variation in self.expand_seed(seed)
        ]
        return StrategyOutput(ideas=ideas[:max_results])


class SerpOverlapStrategy(ExpansionStrategy):
    """Keywords that rank alongside the seeds, from SERP related searches."""

    name = "serp_overlap"
    cost_provider = "serp"

    def __init__(
        self,
        serp: SerpProvider,
        weight: float,
        *,
        rate_limiter: TokenBucket | None = None,
    ) -> None:
        self.serp = serp
        self.weight = weight
        self.rate_limiter = rate_limiter

    def is_enabled(self, request: ExpansionRequest) -> bool:
        return request.enable_serp_analysis

    async def generate(
        self,
        seeds: list[str],
        max_results: int,
        request: ExpansionRequest,
        cost_tracker: CostTracker | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> StrategyOutput:
        output = StrategyOutput()
        if max_results <= 0:
            return output
        per_seed = max(1, -(-max_results // max(1, len(seeds))))
        seen: set[str] = set()

        for seed in seeds:
            try:
                await self._before_call(cost_tracker, cancel_event)
            except BudgetExceededError as exc:
                if not output.ideas:
                    raise
                output.warnings.append(f"{self.name} stopped after partial results: {exc.message}")
                break
            related = await self.serp.get_related_keywords(seed, request.market, limit=per_seed)

            for keyword in related:
                canonical = canonical_keyword(keyword)
                if canonical and canonical not in seen:
                    seen.add(canonical)
                    output.ideas.append(RawIdea(keyword=keyword, source=self.name, confidence=0.75))

        output.ideas = output.ideas[:max_results]
        return output


class CompetitorMiningStrategy(ExpansionStrategy):
    """Phrases mined from pages that rank for the seeds."""

    name = "competitor_mining"
    cost_provider = "serp"

    def __init__(
        self,
        serp: SerpProvider,
        weight: float,
        content_source: CompetitorContentSource | None = None,
        pages_per_seed: int = 3,
        *,
        rate_limiter: TokenBucket | None = None,
    ) -> None:
        self.serp = serp
        self.weight = weight
        self.content_source = content_source
        self.pages_per_seed = max(1, pages_per_seed)
        self.rate_limiter = rate_limiter

    def is_enabled(self, request: ExpansionRequest) -> bool:
        return request.enable_competitor_mining

    async def generate(
        self,
        seeds: list[str],
        max_results: int,
        request: ExpansionRequest,
        cost_tracker: CostTracker | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> StrategyOutput:
        output = StrategyOutput()
        seen: set[str] = set()

        for seed in seeds:
            try:
                await self._before_call(cost_tracker, cancel_event)
            except BudgetExceededError as exc:
                if not output.ideas:
                    raise
                output.warnings.append(f"{self.name} stopped after partial results: {exc.message}")
                break
            serp = await self.serp.get_serp_results(seed, request.market, depth=10)

            seed_words = set(canonical_keyword(seed).split())
            organic = serp.get("organic_results", [])[: self.pages_per_seed]
            for item in organic:
                url = item.get("url") or ""
                domain = item.get("domain") or urlparse(url).netloc
                if domain and domain not in output.competitor_domains:
                    output.competitor_domains.append(domain)

            phrases: list[tuple[str, str | None]] = [
                (item.get("title") or "", item.get("url")) for item in organic
            ]
            urls = [item["url"] for item in organic if item.get("url")]
            if self.content_source and urls:
                try:
                    if cost_tracker is not None:
                        await cost_tracker.reserve("scraper", calls=len(urls))
                except BudgetExceededError as exc:
                    output.warnings.append(f"{self.name} skipped page scraping for {seed}: {exc.message}")
                    urls = []
                pages = await asyncio.gather(
                    *[self.content_source.fetch_page_phrases(url) for url in urls],
                    return_exceptions=True,
                )
                for url, page in zip(urls, pages, strict=True):
                    if isinstance(page, BaseException):
                        logger.warning(
                            "Competitor page mining failed",
                            extra={"url": url, "error": str(page)},
                        )
                        continue
                    phrases.extend((phrase, url) for phrase in page)

            for phrase, url in phrases:
                canonical = canonical_keyword(phrase)
                words = canonical.split()
                # Keep short phrases that share vocabulary with the seed
                if not 2 <= len(words) <= 6 or not seed_words & set(words):
                    continue
                if canonical in seen:
                    continue
                seen.add(canonical)
                output.ideas.append(
                    RawIdea(
                        keyword=canonical,
                        source=self.name,
                        confidence=0.5,
                        competitor_url=url,
                    )
                )

        output.ideas = output.ideas[:max_results]
        return output


DREAM100_MODIFIERS = (
    "best {keyword}",
    "{keyword} tools",
    "{keyword} software",
    "{keyword} services",
    "{keyword} platform",
    "{keyword} strategy",
    "{keyword} agency",
    "{keyword} pricing",
    "{keyword} examples",
    "{keyword} guide",
    "{keyword} tips",
    "{keyword} ideas",
    "{keyword} trends",
    "{keyword} templates",
    "{keyword} course",
    "how to {keyword}",
    "what is {keyword}",
    "{keyword} for small business",
    "{keyword} for beginners",
    "{keyword} checklist",
)

TIER2_MODIFIERS = (
    "best {keyword}",
    "top {keyword}",
    "{keyword} review",
    "{keyword} reviews",
    "{keyword} vs",
    "{keyword} alternative",
    "{keyword} alternatives",
    "how to {keyword}",
    "how to choose {keyword}",
)

TIER3_QUESTIONS = (
    "what is {keyword}",
    "how to use {keyword}",
    "how does {keyword} work",
    "why use {keyword}",
    "when to use {keyword}",
    "where to find {keyword}",
    "which {keyword} is best",
    "what are the benefits of {keyword}",
)

TIER3_LONG_TAIL = (
    "{keyword} guide",
    "{keyword} tutorial",
    "{keyword} tips",
    "{keyword} examples",
    "{keyword} benefits",
    "{keyword} features",
    "{keyword} pricing",
    "{keyword} cost",
    "free {keyword}",
    "{keyword} checklist",
)

TIER3_COMPARISONS = (
    "{keyword} vs competitors",
    "{keyword} compared to alternatives",
    "difference between {keyword} options",
    "alternative to {keyword}",
)

TIER3_USE_CASES = (
    "{keyword} for beginners",
    "{keyword} for small business",
    "{keyword} for enterprise",
    "{keyword} examples",
    "{keyword} use cases",
)


def build_default_strategies(
    expansion_provider: ExpansionProvider | None,
    serp_provider: SerpProvider | None = None,
    content_source: CompetitorContentSource | None = None,
    competitor_pages_per_seed: int = 3,
    *,
    llm_limiter: TokenBucket | None = None,
    serp_limiter: TokenBucket | None = None,
) -> dict[str, list[ExpansionStrategy]]:
    """Strategy line-up per tier with their relative weights.

    Strategies calling the same provider share its rate limiter.
    """
    dream100: list[ExpansionStrategy] = []
    tier2: list[ExpansionStrategy] = []
    tier3: list[ExpansionStrategy] = []

    if expansion_provider is not None:
        dream100.append(SemanticExpansionStrategy(expansion_provider, 0.5, rate_limiter=llm_limiter))
        tier2.append(
            SemanticExpansionStrategy(
                expansion_provider, 0.4, requires_semantic_toggle=True, rate_limiter=llm_limiter
            )
        )

    dream100.append(TemplateStrategy("modifier_application", 0.2, DREAM100_MODIFIERS))
    tier2.append(TemplateStrategy("modifier_application", 0.2, TIER2_MODIFIERS, relevance=0.8))

    if serp_provider is not None:
        dream100.append(SerpOverlapStrategy(serp_provider, 0.2, rate_limiter=serp_limiter))
        tier2.append(SerpOverlapStrategy(serp_provider, 0.3, rate_limiter=serp_limiter))
        dream100.append(
            CompetitorMiningStrategy(
                serp_provider,
                0.1,
                content_source,
                competitor_pages_per_seed,
                rate_limiter=serp_limiter,
            )
        )
        tier2.append(
            CompetitorMiningStrategy(
                serp_provider,
                0.1,
                content_source,
                competitor_pages_per_seed,
                rate_limiter=serp_limiter,
            )
        )

    tier3.extend(
        [
            TemplateStrategy(
                "question_generation",
                0.4,
                TIER3_QUESTIONS,
                intent="informational",
                relevance=0.7,
                confidence=0.7,
            ),
            TemplateStrategy(
                "long_tail_variations",
                0.3,
                TIER3_LONG_TAIL,
                relevance=0.8,
                confidence=0.7,
                requires_semantic_toggle=True,
            ),
            TemplateStrategy(
                "comparison_keywords",
                0.2,
                TIER3_COMPARISONS,
                intent="commercial",
                relevance=0.8,
                confidence=0.7,
            ),
            TemplateStrategy(
                "use_case_keywords",
                0.1,
                TIER3_USE_CASES,
                intent="informational",
                relevance=0.7,
                confidence=0.6,
            ),
        ]
    )

    return {"dream100": dream100, "tier2": tier2, "tier3": tier3}
