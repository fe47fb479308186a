"""Keyword expander agent for semantic keyword variations."""

import logging
from typing import Literal

from pydantic import BaseModel, Field

from keyword_universe.agents.base_agent import BaseAgent

logger = logging.getLogger(__name__)


class ExpandedKeyword(BaseModel):
    """One keyword suggested by the expander."""

    keyword: str
    intent: Literal["transactional", "commercial", "informational", "navigational"] | None = None
    confidence: float = Field(default=0.7, ge=0, le=1)


class KeywordExpanderInput(BaseModel):
    """Input for keyword expander agent."""

    seeds: list[str]
    target_count: int = Field(ge=1)
    industry: str | None = None
    intent_focus: str = "mixed"


class KeywordExpanderOutput(BaseModel):
    """Output from keyword expander agent."""

    keywords: list[ExpandedKeyword]


class KeywordExpanderAgent(BaseAgent[KeywordExpanderInput, KeywordExpanderOutput]):
    """Agent that proposes semantically related search keywords.

    Head-term runs ask for broad category keywords; runs seeded with a
    single parent ask for narrower variants of that parent.
    """

    model_tier = "standard"

    @property
    def system_prompt(self) -> str:
        return """You are a keyword research specialist building a keyword universe for content marketing.

Given seed keywords, suggest real search queries people type into search engines:
- Stay on topic: every keyword must clearly relate to at least one seed
- Prefer commercially valuable variants (tools, software, services, comparisons, pricing)
- Mix short head terms (2-3 words) with more specific phrases (3-6 words)
- Use lowercase, no punctuation, no years, no brand names you are unsure exist
- Never repeat a seed verbatim and never return duplicates

Label each keyword with its most likely search intent and a confidence between 0 and 1."""

    @property
    def output_type(self) -> type[KeywordExpanderOutput]:
        return KeywordExpanderOutput

    def _build_prompt(self, input_data: KeywordExpanderInput) -> str:
        logger.info(
            "Building keyword expansion prompt",
            extra={
                "seed_count": len(input_data.seeds),
                "target_count": input_data.target_count,
                "intent_focus": input_data.intent_focus,
            },
        )
        seeds_text = "\n".join(f"- {seed}" for seed in input_data.seeds)

        focus_text = ""
        if input_data.intent_focus != "mixed":
            focus_text = f"\nFavor {input_data.intent_focus} intent keywords."

        industry_text = ""
        if input_data.industry:
            industry_text = f"\nIndustry: {input_data.industry}"

        return f"""Suggest up to {input_data.target_count} keywords related to these seeds:
{seeds_text}
{industry_text}{focus_text}"""
