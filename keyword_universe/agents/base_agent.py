"""Shared plumbing for the structured-output keyword agents."""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Generic, TypeVar, cast

from pydantic import BaseModel
from pydantic_ai import Agent

from keyword_universe.config import settings

logger = logging.getLogger(__name__)

InputT = TypeVar("InputT", bound=BaseModel)
OutputT = TypeVar("OutputT", bound=BaseModel)


@dataclass
class AgentUsage:
    """Token totals across every run of one agent instance."""

    runs: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class BaseAgent(ABC, Generic[InputT, OutputT]):
    """One prompt template bound to one pydantic-ai ``Agent``.

    Subclasses supply ``system_prompt``, ``output_type`` and
    ``_build_prompt``. The model is picked once per instance: an explicit
    override, then the class ``model``, then the environment default for
    ``model_tier``.
    """

    model_tier: str = "standard"
    model: str | None = None
    max_retries: int = settings.llm_max_retries

    def __init__(self, model_override: str | None = None) -> None:
        self._model = model_override or self.model or settings.get_model(self.model_tier)
        self._agent: Agent[None, OutputT] | None = None
        self.usage = AgentUsage()

        logger.debug(
            "Agent initialized",
            extra={
                "agent": self.__class__.__name__,
                "model": self._model,
                "model_tier": self.model_tier,
            },
        )

    @property
    def agent(self) -> Agent[None, OutputT]:
        # Built on first use so constructing an agent never needs API keys
        if self._agent is None:
            self._agent = cast(
                Agent[None, OutputT],
                Agent(
                    model=self._model,
                    output_type=self.output_type,
                    system_prompt=self.system_prompt,
                    retries=self.max_retries,
                ),
            )
        return self._agent

    @property
    @abstractmethod
    def system_prompt(self) -> str: ...

    @property
    @abstractmethod
    def output_type(self) -> type[OutputT]: ...

    async def run(self, input_data: InputT) -> OutputT:
        """Prompt the model once and return its validated output.

        Token counts are added to ``usage`` after every successful run.
        """
        agent_name = self.__class__.__name__
        prompt = self._build_prompt(input_data)
        logger.info(
            "Agent run started",
            extra={"agent": agent_name, "prompt_length": len(prompt), "model": self._model},
        )

        t0 = time.perf_counter()
        result = await self.agent.run(prompt)
        elapsed = time.perf_counter() - t0

        run_usage = result.usage()
        input_tokens = run_usage.input_tokens or 0
        output_tokens = run_usage.output_tokens or 0
        self.usage.runs += 1
        self.usage.input_tokens += input_tokens
        self.usage.output_tokens += output_tokens
        logger.info(
            "Agent run completed",
            extra={
                "agent": agent_name,
                "duration_s": round(elapsed, 2),
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cumulative_tokens": self.usage.total_tokens,
            },
        )
        return result.output

    @abstractmethod
    def _build_prompt(self, input_data: InputT) -> str:
        """Render the user prompt for one input."""
