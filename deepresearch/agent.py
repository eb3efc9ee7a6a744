"""Public entry point: validate configuration, wire providers, run research sessions.

Example::

    async with ResearchAgent(ResearchAgentConfig.from_settings()) as agent:
        result = await agent.research(
            "What are the benefits of using creatine?",
            ResearchOptions(depth="normal", on_progress=lambda e: print(e.message)),
        )
        print(result.report)
"""
from __future__ import annotations

from dataclasses import replace
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from deepresearch.agents.orchestrator import ResearchOrchestrator
from deepresearch.config import settings
from deepresearch.errors import ValidationError
from deepresearch.llm_client import LLMClient, get_client
from deepresearch.models.research import ModelConfig, ResearchDepth, ResearchOptions, ResearchResult
from deepresearch.services.cache import KeyedCache
from deepresearch.tools.jina_scraper import ScraperClient
from deepresearch.tools.searxng_search import SearxngSearchClient
from deepresearch.tools.web_utils import is_valid_url


class ResearchAgentConfig(BaseModel):
    openrouter_api_key: str = ""
    searxng_instances: list[str] = Field(default_factory=list)
    searxng_priority_order: bool = False
    depth: ResearchDepth = ResearchDepth.NORMAL
    model: ModelConfig = Field(default_factory=ModelConfig)
    max_concurrent_scrapes: int = 20
    scrape_provider: str = "jina"
    cache_enabled: bool = False
    cache_path: str | None = None
    cache_ttl_hours: float = 24.0

    @classmethod
    def from_settings(cls, **overrides: Any) -> "ResearchAgentConfig":
        values: dict[str, Any] = {
            "openrouter_api_key": settings.openrouter_api_key,
            "searxng_instances": settings.searxng_instance_list,
            "searxng_priority_order": settings.searxng_priority_order,
            "depth": settings.default_depth,
            "max_concurrent_scrapes": settings.max_concurrent_scrapes,
            "scrape_provider": settings.scrape_provider,
            "cache_enabled": settings.cache_enabled,
            "cache_path": settings.cache_path,
            "cache_ttl_hours": settings.cache_ttl_hours,
        }
        values.update(overrides)
        return cls(**values)


def validate_config(config: ResearchAgentConfig) -> None:
    if not config.openrouter_api_key.strip():
        raise ValidationError("OpenRouter API key is required")
    if not config.searxng_instances:
        raise ValidationError("At least one SearXNG instance must be provided")
    for instance in config.searxng_instances:
        if not is_valid_url(instance.strip()):
            raise ValidationError(f"Invalid SearXNG instance URL: {instance}")
    if config.cache_enabled and not (config.cache_path or "").strip():
        raise ValidationError("cache_path is required when the cache is enabled")


class ResearchAgent:
    def __init__(
        self,
        config: ResearchAgentConfig,
        *,
        llm: Any | None = None,
        search: SearxngSearchClient | None = None,
        scraper: ScraperClient | None = None,
        cache: KeyedCache | None = None,
        search_pacing: float | None = None,
    ):
        validate_config(config)
        self.config = config

        self.llm = llm or LLMClient(get_client(config.openrouter_api_key))
        self.search = search or SearxngSearchClient(
            config.searxng_instances, priority_order=config.searxng_priority_order
        )
        self.scraper = scraper or ScraperClient(
            provider=config.scrape_provider, max_concurrent=config.max_concurrent_scrapes
        )
        self.cache = cache or KeyedCache(
            config.cache_path or settings.cache_path,
            enabled=config.cache_enabled,
            ttl_hours=config.cache_ttl_hours,
        )
        self.orchestrator = ResearchOrchestrator(
            self.llm,
            self.search,
            self.scraper,
            self.cache,
            config.model,
            default_depth=config.depth,
            search_pacing=search_pacing,
        )

    async def research(self, query: str, options: ResearchOptions | None = None) -> ResearchResult:
        if not query or not query.strip():
            raise ValidationError("Research query cannot be empty")
        options = options or ResearchOptions()
        if options.depth is None:
            options = replace(options, depth=self.config.depth)
        return await self.orchestrator.execute(query, options)

    def get_config(self) -> ResearchAgentConfig:
        return self.config.model_copy(deep=True)

    def update_search_instances(self, instances: list[str]) -> None:
        if not instances:
            raise ValidationError("At least one SearXNG instance must be provided")
        self.search.update_instances(instances)
        self.config.searxng_instances = list(instances)

    async def aclose(self) -> None:
        for resource in (self.search, self.scraper, self.llm):
            close = getattr(resource, "aclose", None)
            if close is not None:
                await close()
        await self.cache.close()
        logger.debug("Research agent closed")

    async def __aenter__(self) -> "ResearchAgent":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
