from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Sequence

import httpx
from loguru import logger

from deepresearch.config import settings
from deepresearch.errors import ScrapeError, TransientProviderError, ValidationError
from deepresearch.models.research import SearchHit
from deepresearch.services.rate_limiter import ConcurrencyGate
from deepresearch.services.resilience import ResilientClient, RetryPolicy
from deepresearch.tools.web_utils import html_to_text

CONTENT_UNAVAILABLE = "Content unavailable"
SCRAPE_PROVIDERS = ("jina", "direct")


@dataclass(slots=True)
class ScrapedPage:
    """Outcome of extracting one search hit. ``fallback`` marks snippet substitutes."""

    title: str
    url: str
    content: str
    fallback: bool = False
    error: str | None = None


class ScraperClient:
    """Extract page text through the Jina reader (or a plain fetch) behind a concurrency gate.

    Jina API: GET https://r.jina.ai/<url>
    Headers:
        - Accept: text/plain
        - X-Return-Format: markdown
        - Authorization: Bearer <api_key> (optional)
    """

    def __init__(
        self,
        *,
        provider: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        base_delay: float | None = None,
        max_concurrent: int | None = None,
        min_interval: float | None = None,
        http_client: httpx.AsyncClient | None = None,
        gate: ConcurrencyGate | None = None,
        resilient: ResilientClient | None = None,
    ):
        self.provider = (provider or settings.scrape_provider).lower().strip()
        if self.provider not in SCRAPE_PROVIDERS:
            raise ValidationError(f"Unsupported scrape provider: {self.provider}")
        self.base_url = base_url or settings.jina_reader_base_url
        if not self.base_url.endswith("/"):
            self.base_url += "/"
        self.api_key = settings.jina_api_key if api_key is None else api_key
        self.timeout = settings.scrape_timeout_seconds if timeout is None else timeout
        self.gate = gate or ConcurrencyGate(
            max_concurrent=settings.max_concurrent_scrapes if max_concurrent is None else max_concurrent,
            min_interval=settings.scrape_min_interval_seconds if min_interval is None else min_interval,
        )
        self._resilient = resilient or ResilientClient(
            f"scrape:{self.provider}",
            RetryPolicy(
                max_retries=settings.scrape_max_retries if max_retries is None else max_retries,
                base_delay=settings.scrape_retry_base_delay if base_delay is None else base_delay,
            ),
            exhausted_error=ScrapeError,
        )
        self._http = http_client
        self._owns_http = http_client is None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._http

    async def scrape(self, url: str) -> str:
        """Fetch ``url`` through the gate. Raises once retries are exhausted."""

        async def _attempt() -> str:
            if self.provider == "direct":
                return await self._fetch_direct(url)
            return await self._fetch_jina(url)

        async def _gated() -> str:
            result = await self._resilient.execute(_attempt)
            return result.value

        return await self.gate.run(_gated)

    async def _fetch_jina(self, url: str) -> str:
        headers = {"Accept": "text/plain", "X-Return-Format": "markdown"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        response = await self._client().get(f"{self.base_url}{url}", headers=headers, timeout=self.timeout)
        response.raise_for_status()
        content = response.text.strip()
        if not content:
            raise TransientProviderError(f"Empty content from reader for {url}", provider="jina")
        return content

    async def _fetch_direct(self, url: str) -> str:
        response = await self._client().get(
            url,
            headers={"User-Agent": "Mozilla/5.0 (compatible; deepresearch/0.1)"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        content_type = response.headers.get("content-type", "")
        if "html" in content_type or not content_type:
            _, content = html_to_text(response.text)
        else:
            content = response.text
        content = content.strip()
        if not content:
            raise TransientProviderError(f"No readable text at {url}", provider="direct")
        return content

    async def scrape_many(self, hits: Sequence[SearchHit]) -> list[ScrapedPage]:
        """Scrape every hit concurrently. Never raises for an individual page."""

        async def _one(hit: SearchHit) -> ScrapedPage:
            try:
                content = await self.scrape(hit.url)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(f"Scrape failed for {hit.url}, using snippet: {exc}")
                return ScrapedPage(
                    title=hit.title,
                    url=hit.url,
                    content=hit.snippet or CONTENT_UNAVAILABLE,
                    fallback=True,
                    error=str(exc),
                )
            return ScrapedPage(title=hit.title, url=hit.url, content=content)

        pages = await asyncio.gather(*(_one(hit) for hit in hits))
        failed = sum(1 for page in pages if page.fallback)
        logger.info(f"Scraped {len(pages) - failed}/{len(pages)} pages ({failed} fell back to snippets)")
        return list(pages)

    def stats(self) -> dict[str, int]:
        return self.gate.stats()

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None
