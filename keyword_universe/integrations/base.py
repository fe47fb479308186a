"""Collaborator contracts consumed by the pipeline."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from keyword_universe.schemas.keyword import (
    ExpansionIdea,
    IntentClassification,
    KeywordMetrics,
)


@runtime_checkable
class ExpansionProvider(Protocol):
    """LLM-backed keyword expansion and intent labeling."""

    async def expand(
        self,
        seeds: list[str],
        target_count: int,
        industry: str | None = None,
        intent_focus: str = "mixed",
    ) -> list[ExpansionIdea]: ...

    async def classify_intent(
        self,
        keywords: list[str],
        context: str = "",
    ) -> list[IntentClassification]: ...


@runtime_checkable
class MetricsProvider(Protocol):
    """Batch keyword metrics lookup."""

    async def get_metrics(self, keywords: list[str], market: str) -> list[KeywordMetrics]: ...


@runtime_checkable
class SerpProvider(Protocol):
    """SERP data used for overlap and competitor mining."""

    async def get_related_keywords(
        self,
        keyword: str,
        market: str,
        limit: int = 50,
    ) -> list[str]: ...

    async def get_serp_results(
        self,
        keyword: str,
        market: str,
        depth: int = 10,
    ) -> dict[str, Any]: ...


@runtime_checkable
class CompetitorContentSource(Protocol):
    """Extracts candidate phrases from a competitor page."""

    async def fetch_page_phrases(self, url: str) -> list[str]: ...


ProgressSink = Callable[[Any], Awaitable[None] | None]
