"""Intent classifier agent for labeling keyword search intent."""

from typing import Literal

from pydantic import BaseModel, Field

from keyword_universe.agents.base_agent import BaseAgent


class KeywordIntentLabel(BaseModel):
    """Intent classification for a single keyword."""

    keyword: str
    intent: Literal["transactional", "commercial", "informational", "navigational"]
    confidence: float = Field(ge=0, le=1, description="Confidence 0-1")


class IntentClassifierInput(BaseModel):
    """Input for intent classifier agent."""

    keywords: list[str]
    context: str = Field(default="", description="Optional industry or market context")


class IntentClassifierOutput(BaseModel):
    """Output from intent classifier agent."""

    classifications: list[KeywordIntentLabel]


class IntentClassifierAgent(BaseAgent[IntentClassifierInput, IntentClassifierOutput]):
    """Agent for classifying keyword search intent in batches."""

    model_tier = "fast"

    @property
    def system_prompt(self) -> str:
        return """You are a search intent classification expert. For each keyword, choose exactly one intent:

- transactional: ready to buy or convert (buy, order, price, discount, deal, free trial)
- commercial: researching before a purchase (best, top, review, vs, alternatives, tools, software)
- informational: wants to learn (how to, what is, guide, tutorial, examples, tips)
- navigational: wants a specific site or page (brand name, login, dashboard, contact)

Give a confidence between 0 and 1. Return one classification per keyword, using the keyword text exactly as given."""

    @property
    def output_type(self) -> type[IntentClassifierOutput]:
        return IntentClassifierOutput

    def _build_prompt(self, input_data: IntentClassifierInput) -> str:
        keywords_text = "\n".join(f"- {kw}" for kw in input_data.keywords)

        context_text = ""
        if input_data.context:
            context_text = f"\n\nContext:\n{input_data.context}\n"

        return f"""Classify the search intent for each of these keywords:{context_text}

Keywords to classify:
{keywords_text}"""
