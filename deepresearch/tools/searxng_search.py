"""SearXNG metasearch client with per-instance retries and instance failover.

API: GET {instance}/search?q=<query>&format=json&safesearch=0
Response: {"results": [{"title": ..., "url": ..., "content": ...}, ...]}
"""
from __future__ import annotations

import random
from typing import Any, Sequence

import httpx
from loguru import logger

from deepresearch.config import settings
from deepresearch.errors import SearchError, TransientProviderError, ValidationError
from deepresearch.models.research import SearchHit
from deepresearch.services.resilience import (
    CallResult,
    EndpointRotation,
    Failure,
    ResilientClient,
    RetryPolicy,
)
from deepresearch.tools.web_utils import is_valid_url


class SearxngSearchClient:
    def __init__(
        self,
        instances: Sequence[str] | None = None,
        *,
        priority_order: bool | None = None,
        max_retries: int | None = None,
        base_delay: float | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
        rng: random.Random | None = None,
        resilient: ResilientClient | None = None,
    ):
        self.priority_order = settings.searxng_priority_order if priority_order is None else priority_order
        self.timeout = settings.search_timeout_seconds if timeout is None else timeout
        self._rng = rng
        self._http = http_client
        self._owns_http = http_client is None
        self._resilient = resilient or ResilientClient(
            "searxng",
            RetryPolicy(
                max_retries=settings.search_max_retries if max_retries is None else max_retries,
                base_delay=settings.search_retry_base_delay if base_delay is None else base_delay,
            ),
        )
        self.instances: list[str] = []
        self.update_instances(instances if instances is not None else settings.searxng_instance_list)

    def update_instances(self, instances: Sequence[str]) -> None:
        cleaned = [instance.strip().rstrip("/") for instance in instances if instance.strip()]
        if not cleaned:
            raise ValidationError("At least one SearXNG instance is required")
        invalid = [instance for instance in cleaned if not is_valid_url(instance)]
        if invalid:
            raise ValidationError(
                f"Invalid SearXNG instance URL: {invalid[0]}",
                details={"invalid_instances": invalid},
            )
        self.instances = cleaned
        logger.info(f"SearXNG instances: {', '.join(self.instances)}")

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._http

    async def search(self, query: str, limit: int = 10) -> list[SearchHit]:
        result = await self.search_with_retries(query, limit)
        return result.value

    async def search_with_retries(self, query: str, limit: int = 10) -> CallResult[list[SearchHit]]:
        rotation = EndpointRotation(self.instances, priority_order=self.priority_order, rng=self._rng)

        def _exhausted(retries: int, failure: Failure | None, exc: BaseException | None) -> SearchError:
            reason = failure.message if failure else "no instances tried"
            return SearchError(
                f"Search failed for '{query}' after {retries} retries: {reason}",
                query=query,
                retries=retries,
                last_error=str(exc) if exc else reason,
            )

        async def _attempt(instance: str) -> list[SearchHit]:
            return await self._execute_search(instance, query, limit)

        result = await self._resilient.execute_with_failover(_attempt, rotation, on_exhausted=_exhausted)
        logger.info(f"Search '{query}' returned {len(result.value)} results from {result.endpoint}")
        return result

    async def _execute_search(self, instance: str, query: str, limit: int) -> list[SearchHit]:
        response = await self._client().get(
            f"{instance}/search",
            params={"q": query, "format": "json", "safesearch": "0"},
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        response.raise_for_status()

        try:
            payload: Any = response.json()
        except ValueError as exc:
            raise TransientProviderError(
                f"Invalid JSON from {instance}", provider="searxng"
            ) from exc

        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            raise TransientProviderError(
                f"Invalid response format from {instance}", provider="searxng"
            )

        hits: list[SearchHit] = []
        for raw in results:
            if not isinstance(raw, dict):
                continue
            url = raw.get("url")
            if not isinstance(url, str) or not url:
                continue
            hits.append(
                SearchHit(
                    title=str(raw.get("title") or ""),
                    url=url,
                    snippet=str(raw.get("content") or ""),
                )
            )
            if len(hits) >= limit:
                break
        return hits

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None
