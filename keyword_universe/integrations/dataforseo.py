"""DataForSEO API integration for keyword metrics and SERP data.

Implements both ``MetricsProvider`` and ``SerpProvider``.
"""

import base64
import logging
from typing import Any

import httpx

from keyword_universe.config import settings
from keyword_universe.core.exceptions import (
    APIKeyMissingError,
    ExternalAPIError,
    RateLimitExceededError,
)
from keyword_universe.schemas.keyword import KeywordMetrics

logger = logging.getLogger(__name__)

# Location codes for common markets
LOCATION_CODES = {
    "US": 2840,
    "GB": 2826,
    "UK": 2826,
    "DE": 2276,
    "FR": 2250,
    "ES": 2724,
    "IT": 2380,
    "NL": 2528,
    "AU": 2036,
    "CA": 2124,
    "IN": 2356,
}

LANGUAGE_CODES = {
    "DE": "de",
    "FR": "fr",
    "ES": "es",
    "IT": "it",
    "NL": "nl",
}

SERP_FEATURE_TYPES = {
    "featured_snippet": "featured_snippet",
    "people_also_ask": "paa",
    "knowledge_graph": "knowledge_graph",
    "local_pack": "local",
    "video": "video",
    "images": "images",
    "shopping": "shopping",
    "top_stories": "news",
    "related_searches": "related_searches",
}


def get_location_code(market: str) -> int:
    """Convert a two-letter market code to a DataForSEO location code."""
    return LOCATION_CODES.get(market.upper(), 2840)


def get_language_code(market: str) -> str:
    return LANGUAGE_CODES.get(market.upper(), "en")


def trend_from_series(series: list[int]) -> float:
    """Direction of a monthly volume series as a value in [-1, 1].

    DataForSEO lists the most recent month first. The recent quarter is
    compared with the oldest quarter of the series.
    """
    values = [max(0, int(v or 0)) for v in series]
    if len(values) < 6:
        return 0.0
    recent = sum(values[:3]) / 3
    early = sum(values[-3:]) / 3
    if recent == early:
        return 0.0
    change = (recent - early) / max(recent, early)
    return max(-1.0, min(1.0, change))


class DataForSEOClient:
    """Client for DataForSEO API.

    Provides methods for:
    - Keyword metrics (volume, CPC, difficulty, monthly trend)
    - Related keywords for SERP-overlap expansion
    - SERP results for competitor mining
    """

    BASE_URL = "https://api.dataforseo.com/v3"
    API_NAME = "DataForSEO"

    def __init__(
        self,
        login: str | None = None,
        password: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.login = login or settings.dataforseo_login
        self.password = password or settings.dataforseo_password
        self.timeout = timeout or settings.dataforseo_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        if not self.login or not self.password:
            raise APIKeyMissingError(self.API_NAME)

    @property
    def _auth_header(self) -> str:
        """Generate Basic Auth header."""
        credentials = f"{self.login}:{self.password}"
        encoded = base64.b64encode(credentials.encode()).decode()
        return f"Basic {encoded}"

    async def __aenter__(self) -> "DataForSEOClient":
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Authorization": self._auth_header,
                "Content-Type": "application/json",
            },
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Client must be used as async context manager")
        return self._client

    async def _make_request(
        self,
        endpoint: str,
        data: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        """POST to an endpoint and return the combined task results."""
        logger.info("DataForSEO API request", extra={"endpoint": endpoint})
        url = f"{self.BASE_URL}/{endpoint}"

        try:
            response = await self.client.post(url, json=data)

            if response.status_code == 429:
                logger.warning("DataForSEO rate limit hit", extra={"endpoint": endpoint})
                raise RateLimitExceededError(self.API_NAME)

            response.raise_for_status()
            result = response.json()
        except httpx.HTTPError as e:
            logger.warning("DataForSEO HTTP error", extra={"endpoint": endpoint, "error": str(e)})
            raise ExternalAPIError(self.API_NAME, str(e)) from e

        if result.get("status_code") != 20000:
            logger.warning(
                "DataForSEO API error",
                extra={"endpoint": endpoint, "status": result.get("status_message")},
            )
            raise ExternalAPIError(self.API_NAME, result.get("status_message", "Unknown error"))

        results: list[dict[str, Any]] = []
        for task in result.get("tasks") or []:
            if task.get("status_code") == 20000 and task.get("result"):
                results.extend(task["result"])
        return results

    async def get_metrics(self, keywords: list[str], market: str) -> list[KeywordMetrics]:
        """Get volume, CPC, difficulty and trend for one batch of keywords."""
        if not keywords:
            return []
        logger.info(
            "Fetching keyword metrics",
            extra={"keyword_count": len(keywords), "market": market},
        )

        results = await self._make_request(
            "dataforseo_labs/google/keyword_overview/live",
            [
                {
                    "keywords": keywords,
                    "location_code": get_location_code(market),
                    "language_code": get_language_code(market),
                }
            ],
        )

        metrics: list[KeywordMetrics] = []
        for result in results:
            for item in result.get("items") or []:
                keyword = item.get("keyword")
                if not keyword:
                    continue
                info = item.get("keyword_info") or {}
                props = item.get("keyword_properties") or {}
                serp_info = item.get("serp_info") or {}
                monthly = info.get("monthly_searches") or []
                features = [
                    SERP_FEATURE_TYPES[feature]
                    for feature in serp_info.get("serp_item_types") or []
                    if feature in SERP_FEATURE_TYPES
                ]

                metrics.append(
                    KeywordMetrics(
                        keyword=keyword,
                        volume=int(info.get("search_volume") or 0),
                        difficulty=float(props.get("keyword_difficulty") or 0),
                        cpc=float(info.get("cpc") or 0),
                        trend=trend_from_series([m.get("search_volume") or 0 for m in monthly]),
                        serp_features=sorted(set(features)),
                    )
                )
        return metrics

    async def get_related_keywords(
        self,
        keyword: str,
        market: str,
        limit: int = 50,
    ) -> list[str]:
        """Keywords that appear in the 'searches related to' block around a keyword."""
        results = await self._make_request(
            "dataforseo_labs/google/related_keywords/live",
            [
                {
                    "keyword": keyword,
                    "location_code": get_location_code(market),
                    "language_code": get_language_code(market),
                    "depth": 1,
                    "limit": limit,
                }
            ],
        )

        related: list[str] = []
        seen: set[str] = set()
        for result in results:
            for item in result.get("items") or []:
                data = item.get("keyword_data") or {}
                text = (data.get("keyword") or "").strip()
                if text and text.lower() not in seen:
                    seen.add(text.lower())
                    related.append(text)
        return related[:limit]

    async def get_serp_results(
        self,
        keyword: str,
        market: str,
        depth: int = 10,
    ) -> dict[str, Any]:
        """Organic results and SERP features for a keyword."""
        logger.info("Fetching SERP results", extra={"keyword": keyword, "market": market})
        results = await self._make_request(
            "serp/google/organic/live/regular",
            [
                {
                    "keyword": keyword,
                    "location_code": get_location_code(market),
                    "language_code": get_language_code(market),
                    "device": "desktop",
                    "depth": depth,
                }
            ],
        )

        if not results:
            return {"keyword": keyword, "organic_results": [], "serp_features": []}

        items = results[0].get("items") or []
        organic_results = [
            {
                "position": item.get("rank_absolute"),
                "title": item.get("title"),
                "url": item.get("url"),
                "domain": item.get("domain"),
                "snippet": item.get("description"),
            }
            for item in items
            if item.get("type") == "organic"
        ]
        serp_features = sorted(
            {SERP_FEATURE_TYPES[item["type"]] for item in items if item.get("type") in SERP_FEATURE_TYPES}
        )

        return {
            "keyword": keyword,
            "organic_results": organic_results,
            "serp_features": serp_features,
            "total_results": results[0].get("se_results_count"),
        }
