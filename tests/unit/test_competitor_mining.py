"""Unit tests for competitor page scraping and phrase mining."""

from __future__ import annotations

import httpx
import pytest

from keyword_universe.core.exceptions import ExternalAPIError
from keyword_universe.integrations import scraper as scraper_module
from keyword_universe.integrations.scraper import WebsiteScraper, split_into_phrases
from keyword_universe.schemas.expansion import ExpansionRequest
from keyword_universe.services.cost_tracker import CostTracker
from keyword_universe.services.strategies import CompetitorMiningStrategy, SerpOverlapStrategy

PAGE = """
<html>
  <head>
    <title>Best CRM Software | Compare CRM Tools for Small Teams</title>
    <meta name="description" content="A CRM buyer guide">
    <script>var crm = "ignore me";</script>
  </head>
  <body>
    <nav><h2>Navigation Heading Here</h2></nav>
    <h1>CRM Software Buyer Guide</h1>
    <h2>How to choose a CRM: pricing and features</h2>
    <h3>FAQ</h3>
  </body>
</html>
"""


class _FakeSerp:
    def __init__(self) -> None:
        self.related_calls: list[tuple[str, int]] = []

    async def get_related_keywords(self, keyword, market, limit=50):
        self.related_calls.append((keyword, limit))
        return [f"{keyword} alternatives", f"{keyword} pricing", f"{keyword} alternatives"]

    async def get_serp_results(self, keyword, market, depth=10):
        return {
            "keyword": keyword,
            "organic_results": [
                {"url": "https://a.example/crm", "domain": "a.example", "title": "CRM Software Reviews 2024"},
                {"url": "https://b.example/post", "domain": "b.example", "title": "Gardening Tips And Tricks"},
                {"url": "https://c.example/x", "domain": "c.example", "title": "Top CRM Platforms"},
                {"url": "https://d.example/y", "domain": "d.example", "title": "Beyond the page limit"},
            ],
            "serp_features": [],
        }


class _FakeContentSource:
    def __init__(self, failing: tuple[str, ...] = ()) -> None:
        self.failing = failing
        self.urls: list[str] = []

    async def fetch_page_phrases(self, url: str) -> list[str]:
        self.urls.append(url)
        if url in self.failing:
            raise ExternalAPIError("Scraper", "timeout")
        return ["crm pipeline management", "unrelated phrase here"]


def test_split_into_phrases() -> None:
    assert split_into_phrases("Best CRM Software | Top 10 Tools for 2024") == [
        "best crm software",
        "top 10 tools for 2024",
    ]
    assert split_into_phrases("FAQ") == []
    assert split_into_phrases("one two three four five six seven") == []


@pytest.mark.asyncio
async def test_scraper_extracts_title_and_headings() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text=PAGE))

    async with WebsiteScraper(transport=transport) as scraper:
        page = await scraper.scrape_page("https://example.com/crm")
        phrases = await scraper.fetch_page_phrases("https://example.com/crm")

    assert page["title"] == "Best CRM Software | Compare CRM Tools for Small Teams"
    assert page["meta_description"] == "A CRM buyer guide"
    assert [h["level"] for h in page["headings"]] == [1, 2, 3]
    assert phrases == [
        "best crm software",
        "compare crm tools for small teams",
        "crm software buyer guide",
        "how to choose a crm",
        "pricing and features",
    ]


@pytest.mark.asyncio
async def test_scraper_http_error_raises_external_api_error() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(404))

    async with WebsiteScraper(transport=transport) as scraper:
        with pytest.raises(ExternalAPIError):
            await scraper.scrape_page("https://example.com/missing")


@pytest.mark.asyncio
async def test_competitor_mining_keeps_seed_related_phrases() -> None:
    content = _FakeContentSource(failing=("https://c.example/x",))
    tracker = CostTracker({"serp": 0.05, "scraper": 0.0})
    strategy = CompetitorMiningStrategy(_FakeSerp(), 0.1, content, pages_per_seed=3)
    request = ExpansionRequest(seed_keywords=["crm software"], enable_competitor_mining=True)

    output = await strategy.generate(["crm software"], 50, request, tracker)

    keywords = [idea.keyword for idea in output.ideas]
    assert "crm software reviews 2024" in keywords
    assert "crm pipeline management" in keywords
    assert "gardening tips and tricks" not in keywords
    assert "unrelated phrase here" not in keywords
    assert len(keywords) == len(set(keywords))
    assert output.competitor_domains == ["a.example", "b.example", "c.example"]
    assert content.urls == ["https://a.example/crm", "https://b.example/post", "https://c.example/x"]
    assert tracker.api_calls["serp"] == 1
    assert tracker.api_calls["scraper"] == 3
    mined = next(idea for idea in output.ideas if idea.keyword == "crm pipeline management")
    assert mined.competitor_url == "https://a.example/crm"


def test_competitor_mining_is_opt_in() -> None:
    strategy = CompetitorMiningStrategy(_FakeSerp(), 0.1)

    assert strategy.is_enabled(ExpansionRequest(seed_keywords=["crm"])) is False
    assert strategy.is_enabled(ExpansionRequest(seed_keywords=["crm"], enable_competitor_mining=True))


@pytest.mark.asyncio
async def test_serp_overlap_splits_budget_across_seeds() -> None:
    serp = _FakeSerp()
    strategy = SerpOverlapStrategy(serp, 0.2)
    request = ExpansionRequest(seed_keywords=["crm", "erp"])

    output = await strategy.generate(["crm", "erp"], 3, request)

    assert serp.related_calls == [("crm", 2), ("erp", 2)]
    assert [idea.keyword for idea in output.ideas] == ["crm alternatives", "crm pricing", "erp alternatives"]


def test_scraper_timeout_defaults_to_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(scraper_module.settings, "scraper_timeout_seconds", 12.5)

    assert WebsiteScraper().timeout == 12.5
    assert WebsiteScraper(timeout=3.0).timeout == 3.0


@pytest.mark.asyncio
async def test_scraping_is_skipped_when_budget_cannot_cover_pages() -> None:
    content = _FakeContentSource()
    tracker = CostTracker({"serp": 0.05, "scraper": 0.1}, budget_limit=0.2)
    strategy = CompetitorMiningStrategy(_FakeSerp(), 0.1, content, pages_per_seed=3)
    request = ExpansionRequest(seed_keywords=["crm software"], enable_competitor_mining=True)

    output = await strategy.generate(["crm software"], 50, request, tracker)

    assert content.urls == []
    assert tracker.total == pytest.approx(0.05)
    assert "crm software reviews 2024" in [idea.keyword for idea in output.ideas]
    assert any("skipped page scraping" in warning for warning in output.warnings)


@pytest.mark.asyncio
async def test_serp_overlap_keeps_partial_results_when_budget_runs_out() -> None:
    serp = _FakeSerp()
    tracker = CostTracker({"serp": 0.05}, budget_limit=0.05)
    strategy = SerpOverlapStrategy(serp, 0.2)

    request = ExpansionRequest(seed_keywords=["crm", "erp"])

    output = await strategy.generate(["crm", "erp"], 10, request, tracker)

    assert [call[0] for call in serp.related_calls] == ["crm"]
    assert [idea.keyword for idea in output.ideas] == ["crm alternatives", "crm pricing"]
    assert output.warnings == [
        "serp_overlap stopped after partial results: Budget 0.05 exceeded (projected 0.10)"
    ]
