"""Competitor page scraper for keyword phrase mining."""

import logging
import re

import httpx
from bs4 import BeautifulSoup

from keyword_universe.config import settings
from keyword_universe.core.exceptions import ExternalAPIError

logger = logging.getLogger(__name__)

_SEPARATORS_RE = re.compile(r"\s*[|:–—\-,?!.()]\s*")
MAX_PHRASE_WORDS = 6


def split_into_phrases(text: str) -> list[str]:
    """Split a title or heading on separators into short candidate phrases."""
    phrases: list[str] = []
    for part in _SEPARATORS_RE.split(text):
        cleaned = " ".join(part.split()).lower()
        if cleaned and 2 <= len(cleaned.split()) <= MAX_PHRASE_WORDS:
            phrases.append(cleaned)
    return phrases


class WebsiteScraper:
    """Scraper that extracts headline phrases from competitor pages.

    Implements ``CompetitorContentSource``.
    """

    def __init__(
        self,
        timeout: float | None = None,
        user_agent: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout or settings.scraper_timeout_seconds
        self.user_agent = user_agent or "Mozilla/5.0 (compatible; KeywordUniverse/1.0)"
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "WebsiteScraper":
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            headers={"User-Agent": self.user_agent},
            follow_redirects=True,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Scraper must be used as async context manager")
        return self._client

    async def scrape_page(self, url: str) -> dict:
        """Fetch a page and extract its title, meta description and headings."""
        logger.info("Scraping page", extra={"url": url})
        try:
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Failed to scrape page", extra={"url": url, "error": str(e)})
            raise ExternalAPIError("Scraper", f"{url}: {e}") from e

        soup = BeautifulSoup(response.text, "lxml")

        for element in soup(["script", "style", "nav", "footer"]):
            element.decompose()

        title = soup.title.get_text(strip=True) if soup.title else ""
        meta_desc = ""
        meta_tag = soup.find("meta", attrs={"name": "description"})
        if meta_tag and meta_tag.get("content"):
            meta_desc = str(meta_tag["content"])

        headings = []
        for level in range(1, 4):
            for h in soup.find_all(f"h{level}"):
                text = h.get_text(" ", strip=True)
                if text:
                    headings.append({"level": level, "text": text})

        return {
            "url": url,
            "title": title,
            "meta_description": meta_desc,
            "headings": headings,
        }

    async def fetch_page_phrases(self, url: str) -> list[str]:
        """Candidate keyword phrases from a page's title and h1-h3 headings."""
        page = await self.scrape_page(url)
        phrases: list[str] = []
        for text in [page["title"], *(h["text"] for h in page["headings"])]:
            for phrase in split_into_phrases(text):
                if phrase not in phrases:
                    phrases.append(phrase)
        return phrases
