"""Expansion provider backed by the pydantic-ai agents."""

import logging

from keyword_universe.agents.intent_classifier import (
    IntentClassifierAgent,
    IntentClassifierInput,
)
from keyword_universe.agents.keyword_expander import (
    KeywordExpanderAgent,
    KeywordExpanderInput,
)
from keyword_universe.core.exceptions import ExternalAPIError
from keyword_universe.schemas.keyword import ExpansionIdea, IntentClassification

logger = logging.getLogger(__name__)


class LLMExpansionProvider:
    """Implements ``ExpansionProvider`` with one agent per operation."""

    api_name = "LLM"

    def __init__(
        self,
        expander: KeywordExpanderAgent | None = None,
        classifier: IntentClassifierAgent | None = None,
    ) -> None:
        self.expander = expander or KeywordExpanderAgent()
        self.classifier = classifier or IntentClassifierAgent()

    @property
    def token_usage(self) -> dict[str, int]:
        """Cumulative tokens spent per agent."""
        return {
            "expansion": self.expander.usage.total_tokens,
            "intent": self.classifier.usage.total_tokens,
        }

    async def expand(
        self,
        seeds: list[str],
        target_count: int,
        industry: str | None = None,
        intent_focus: str = "mixed",
    ) -> list[ExpansionIdea]:
        if not seeds or target_count <= 0:
            return []
        try:
            output = await self.expander.run(
                KeywordExpanderInput(
                    seeds=seeds,
                    target_count=target_count,
                    industry=industry,
                    intent_focus=intent_focus,
                )
            )
        except Exception as exc:
            raise ExternalAPIError(self.api_name, f"keyword expansion failed: {exc}") from exc

        ideas = [
            ExpansionIdea(keyword=item.keyword, intent=item.intent, confidence=item.confidence)
            for item in output.keywords
        ]
        logger.info(
            "LLM expansion returned keywords",
            extra={"seeds": len(seeds), "requested": target_count, "returned": len(ideas)},
        )
        return ideas[:target_count]

    async def classify_intent(
        self,
        keywords: list[str],
        context: str = "",
    ) -> list[IntentClassification]:
        if not keywords:
            return []
        try:
            output = await self.classifier.run(
                IntentClassifierInput(keywords=keywords, context=context)
            )
        except Exception as exc:
            raise ExternalAPIError(self.api_name, f"intent classification failed: {exc}") from exc

        return [
            IntentClassification(
                keyword=item.keyword,
                intent=item.intent,
                confidence=item.confidence,
                source="llm",
            )
            for item in output.classifications
        ]
