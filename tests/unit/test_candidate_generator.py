"""Unit tests for multi-strategy candidate generation."""

from __future__ import annotations

import asyncio

import pytest

from keyword_universe.core.exceptions import InsufficientCandidatesError, RunCancelledError
from keyword_universe.core.rate_limiter import TokenBucket
from keyword_universe.schemas.expansion import ExpansionRequest
from keyword_universe.schemas.keyword import ExpansionIdea, KeywordCandidate
from keyword_universe.services.cost_tracker import CostTracker
from keyword_universe.services.progress import BatchProgress
from keyword_universe.services.generator import (
    CandidateGenerator,
    KeywordGenerator,
    estimate_metrics,
    minimum_tier1_candidates,
)
from keyword_universe.services.strategies import (
    DREAM100_MODIFIERS,
    TIER2_MODIFIERS,
    ExpansionStrategy,
    SemanticExpansionStrategy,
    StrategyOutput,
    TemplateStrategy,
    build_default_strategies,
)


class _ExplodingStrategy(ExpansionStrategy):
    name = "exploding"
    weight = 0.5

    async def generate(
        self, seeds, max_results, request, cost_tracker=None, cancel_event=None
    ) -> StrategyOutput:
        raise RuntimeError("provider down")


class _FakeExpansionProvider:
    def __init__(self, keywords: list[str]) -> None:
        self.keywords = keywords
        self.calls: list[tuple[list[str], int]] = []
        self.on_call = None

    async def expand(self, seeds, target_count, industry=None, intent_focus="mixed"):
        self.calls.append((list(seeds), target_count))
        if self.on_call is not None:
            await self.on_call()
        return [ExpansionIdea(keyword=k, intent="commercial") for k in self.keywords][:target_count]

    async def classify_intent(self, keywords, context=""):
        return []


def _request(**overrides) -> ExpansionRequest:
    values = {"seed_keywords": ["content marketing"], "dream100_count": 10}
    values.update(overrides)
    return ExpansionRequest(**values)


def _parent(keyword: str) -> KeywordCandidate:
    return KeywordCandidate(keyword=keyword, stage="dream100", blended_score=0.7)


def test_minimum_tier1_candidates() -> None:
    assert minimum_tier1_candidates(10) == 5
    assert minimum_tier1_candidates(100) == 50


def test_estimate_metrics_shrink_for_longer_phrases() -> None:
    short_volume, short_difficulty = estimate_metrics("crm software", "dream100")
    long_volume, long_difficulty = estimate_metrics("best crm software for small teams", "dream100")

    assert (short_volume, short_difficulty) == (1000, 55.0)
    assert long_volume < short_volume
    assert long_difficulty < short_difficulty


@pytest.mark.asyncio
async def test_dream100_includes_seed_and_template_variations() -> None:
    generator = CandidateGenerator(
        {"dream100": [TemplateStrategy("modifier_application", 1.0, DREAM100_MODIFIERS)]}
    )

    outcome = await generator.generate_dream100(["Content Marketing"], _request())

    keywords = [c.keyword for c in outcome.candidates]
    assert "content marketing" in keywords
    assert "best content marketing" in keywords
    assert len(keywords) == len(set(keywords)) == len(DREAM100_MODIFIERS) + 1
    assert all(c.stage == "dream100" and c.parent_keyword is None for c in outcome.candidates)
    assert outcome.strategy_counts == {"modifier_application": len(DREAM100_MODIFIERS)}
    seed = next(c for c in outcome.candidates if c.keyword == "content marketing")
    assert seed.expansion_source == "seed"
    assert seed.relevance_score == 1.0
    ranked = sorted(outcome.candidates, key=lambda c: (-c.quality_score, c.keyword))
    assert outcome.candidates == ranked


@pytest.mark.asyncio
async def test_dream100_respects_max_candidates() -> None:
    generator = CandidateGenerator(
        {"dream100": [TemplateStrategy("modifier_application", 1.0, DREAM100_MODIFIERS)]}
    )

    outcome = await generator.generate_dream100(["content marketing"], _request(), max_candidates=8)

    assert len(outcome.candidates) == 8


@pytest.mark.asyncio
async def test_dream100_raises_when_too_few_candidates() -> None:
    generator = CandidateGenerator(
        {"dream100": [TemplateStrategy("modifier_application", 1.0, DREAM100_MODIFIERS)]}
    )

    with pytest.raises(InsufficientCandidatesError) as exc_info:
        await generator.generate_dream100(["content marketing"], _request(dream100_count=100))

    assert exc_info.value.required == 50
    assert exc_info.value.stage == "generation"
    assert exc_info.value.tier == "dream100"
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_failing_strategy_becomes_warning() -> None:
    generator = CandidateGenerator(
        {
            "dream100": [
                _ExplodingStrategy(),
                TemplateStrategy("modifier_application", 0.5, DREAM100_MODIFIERS),
            ]
        }
    )

    outcome = await generator.generate_dream100(["content marketing"], _request())

    assert len(outcome.candidates) > 5
    assert outcome.strategy_counts["exploding"] == 0
    assert any("exploding failed" in warning for warning in outcome.warnings)


@pytest.mark.asyncio
async def test_strategy_over_budget_is_skipped_with_warning() -> None:
    provider = _FakeExpansionProvider(["content marketing platform"])
    tracker = CostTracker({"llm": 0.15}, budget_limit=0.1)
    generator = CandidateGenerator(
        {
            "dream100": [
                SemanticExpansionStrategy(provider, 0.5),
                TemplateStrategy("modifier_application", 0.5, DREAM100_MODIFIERS),
            ]
        },
        cost_tracker=tracker,
    )

    outcome = await generator.generate_dream100(["content marketing"], _request())

    assert provider.calls == []
    assert any("llm_semantic skipped" in warning for warning in outcome.warnings)
    assert tracker.total == 0


@pytest.mark.asyncio
async def test_semantic_strategy_gets_weighted_share_and_records_cost() -> None:
    provider = _FakeExpansionProvider([f"content marketing idea {i}" for i in range(40)])
    tracker = CostTracker({"llm": 0.15})
    generator = CandidateGenerator(
        {"dream100": [SemanticExpansionStrategy(provider, 0.5)]},
        cost_tracker=tracker,
    )

    outcome = await generator.generate_dream100(["content marketing"], _request(), max_candidates=20)

    assert provider.calls == [(["content marketing"], 10)]
    assert outcome.strategy_counts == {"llm_semantic": 10}
    assert tracker.api_calls["llm"] == 1
    assert all(
        c.intent == "commercial" for c in outcome.candidates if c.expansion_source == "llm_semantic"
    )


@pytest.mark.asyncio
async def test_children_are_capped_per_parent_and_linked() -> None:
    generator = CandidateGenerator(
        {"tier2": [TemplateStrategy("modifier_application", 1.0, TIER2_MODIFIERS)]}
    )
    parents = [_parent("crm software"), _parent("email marketing")]

    outcome = await generator.generate_children("tier2", parents, _request(), max_per_parent=3)

    by_parent: dict[str, list[str]] = {}
    for child in outcome.candidates:
        by_parent.setdefault(child.parent_keyword, []).append(child.keyword)
    assert set(by_parent) == {"crm software", "email marketing"}
    assert all(len(children) <= 3 for children in by_parent.values())
    assert all(c.stage == "tier2" for c in outcome.candidates)
    assert all(c.keyword != c.parent_keyword for c in outcome.candidates)
    keywords = [c.keyword for c in outcome.candidates]
    assert len(keywords) == len(set(keywords))


@pytest.mark.asyncio
async def test_children_without_parents_is_empty() -> None:
    generator = CandidateGenerator({"tier2": []})

    outcome = await generator.generate_children("tier2", [], _request(), max_per_parent=5)

    assert outcome.candidates == []


def test_default_strategy_lineup_depends_on_providers() -> None:
    provider = _FakeExpansionProvider([])
    without_providers = build_default_strategies(None)
    with_llm = build_default_strategies(provider)

    assert [s.name for s in without_providers["dream100"]] == ["modifier_application"]
    assert [s.name for s in with_llm["dream100"]] == ["llm_semantic", "modifier_application"]
    assert [s.name for s in with_llm["tier3"]] == [
        "question_generation",
        "long_tail_variations",
        "comparison_keywords",
        "use_case_keywords",
    ]


def test_semantic_toggle_disables_tier_variations() -> None:
    strategies = build_default_strategies(_FakeExpansionProvider([]))
    request = _request(enable_semantic_variations=False)

    enabled_tier2 = [s.name for s in strategies["tier2"] if s.is_enabled(request)]
    enabled_tier3 = [s.name for s in strategies["tier3"] if s.is_enabled(request)]

    assert "llm_semantic" not in enabled_tier2
    assert "long_tail_variations" not in enabled_tier3
    assert "llm_semantic" in [s.name for s in strategies["dream100"] if s.is_enabled(request)]


def test_candidate_generator_satisfies_generator_protocol() -> None:
    generator = CandidateGenerator(build_default_strategies(_FakeExpansionProvider([])))

    assert isinstance(generator, KeywordGenerator)


@pytest.mark.asyncio
async def test_concurrent_parents_share_budget_without_overspending() -> None:
    provider = _FakeExpansionProvider(["crm tools comparison", "crm for teams"])

    async def _slow_call() -> None:
        await asyncio.sleep(0.01)

    provider.on_call = _slow_call
    tracker = CostTracker({"llm": 0.15}, budget_limit=0.2)
    generator = CandidateGenerator(
        {"tier2": [SemanticExpansionStrategy(provider, 1.0)]},
        cost_tracker=tracker,
        max_concurrent_parents=3,
    )
    parents = [_parent("crm software"), _parent("crm pricing"), _parent("crm setup")]

    outcome = await generator.generate_children("tier2", parents, _request(), max_per_parent=2)

    assert len(provider.calls) == 1
    assert tracker.total <= 0.2
    assert sum("llm_semantic skipped" in warning for warning in outcome.warnings) == 2


@pytest.mark.asyncio
async def test_cancel_during_children_stops_remaining_parents() -> None:
    cancel_event = asyncio.Event()
    provider = _FakeExpansionProvider(["crm tools comparison"])

    async def _cancel() -> None:
        cancel_event.set()

    provider.on_call = _cancel
    generator = CandidateGenerator(
        {"tier2": [SemanticExpansionStrategy(provider, 1.0)]},
        max_concurrent_parents=1,
    )
    parents = [_parent("crm software"), _parent("crm pricing"), _parent("crm setup")]

    with pytest.raises(RunCancelledError) as exc_info:
        await generator.generate_children(
            "tier2", parents, _request(), max_per_parent=2, cancel_event=cancel_event
        )

    assert len(provider.calls) == 1
    assert exc_info.value.code == "run_cancelled"


@pytest.mark.asyncio
async def test_cancelled_before_dream100_calls_nothing() -> None:
    cancel_event = asyncio.Event()
    cancel_event.set()
    provider = _FakeExpansionProvider(["crm tools comparison"])
    generator = CandidateGenerator({"dream100": [SemanticExpansionStrategy(provider, 1.0)]})

    with pytest.raises(RunCancelledError):
        await generator.generate_dream100(["crm software"], _request(), cancel_event=cancel_event)

    assert provider.calls == []


@pytest.mark.asyncio
async def test_children_report_progress_per_parent() -> None:
    generator = CandidateGenerator(
        {"tier2": [TemplateStrategy("modifier_application", 1.0, TIER2_MODIFIERS)]}
    )
    parents = [_parent("crm software"), _parent("email marketing"), _parent("seo audit")]
    updates: list[BatchProgress] = []

    async def _record(progress: BatchProgress) -> None:
        updates.append(progress)

    await generator.generate_children("tier2", parents, _request(), max_per_parent=3, on_batch=_record)

    assert [u.completed_batches for u in updates] == [1, 2, 3]
    assert {u.total_batches for u in updates} == {3}
    assert all(u.tier == "tier2" and u.succeeded for u in updates)


@pytest.mark.asyncio
async def test_llm_calls_are_spaced_by_shared_rate_limiter() -> None:
    class _FakeTime:
        def __init__(self) -> None:
            self.now = 0.0
            self.sleeps: list[float] = []

        def clock(self) -> float:
            return self.now

        async def sleep(self, seconds: float) -> None:
            self.sleeps.append(seconds)
            self.now += seconds

    fake = _FakeTime()
    limiter = TokenBucket("llm", 2.0, clock=fake.clock, sleep=fake.sleep)
    provider = _FakeExpansionProvider(["crm tools comparison"])
    strategies = build_default_strategies(provider, llm_limiter=limiter)
    generator = CandidateGenerator(strategies, max_concurrent_parents=3)
    parents = [_parent("crm software"), _parent("crm pricing"), _parent("crm setup")]

    await generator.generate_children("tier2", parents, _request(), max_per_parent=5)

    assert len(provider.calls) == 3
    assert fake.sleeps == [pytest.approx(2.0), pytest.approx(2.0)]
    assert limiter.total_wait_seconds == pytest.approx(4.0)
