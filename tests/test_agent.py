from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from deepresearch import agent as agent_module
from deepresearch.agent import ResearchAgent, ResearchAgentConfig, validate_config
from deepresearch.errors import ValidationError
from deepresearch.models.research import ResearchDepth, ResearchOptions


def _config(**overrides) -> ResearchAgentConfig:
    values = {"openrouter_api_key": "test-key", "searxng_instances": ["https://searx.example"]}
    values.update(overrides)
    return ResearchAgentConfig(**values)


class ClosableFake:
    def __init__(self):
        self.closed = False

    async def aclose(self):
        self.closed = True


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"openrouter_api_key": "  "}, "API key"),
        ({"searxng_instances": []}, "At least one"),
        ({"searxng_instances": ["ftp://searx.example"]}, "Invalid SearXNG"),
        ({"cache_enabled": True, "cache_path": ""}, "cache_path"),
    ],
)
def test_invalid_configuration_is_rejected(overrides, message):
    with pytest.raises(ValidationError, match=message):
        validate_config(_config(**overrides))


def test_agent_construction_validates_config():
    with pytest.raises(ValidationError):
        ResearchAgent(_config(searxng_instances=[]))


@pytest.mark.asyncio
async def test_empty_query_is_rejected_before_research():
    agent = ResearchAgent(_config(), llm=ClosableFake())
    agent.orchestrator.execute = AsyncMock()

    with pytest.raises(ValidationError):
        await agent.research("   ")
    agent.orchestrator.execute.assert_not_awaited()
    await agent.aclose()


@pytest.mark.asyncio
async def test_configured_depth_applies_when_options_leave_it_unset():
    agent = ResearchAgent(_config(depth=ResearchDepth.DEEP), llm=ClosableFake())
    agent.orchestrator.execute = AsyncMock(return_value="result")

    await agent.research("solar panels")
    await agent.research("solar panels", ResearchOptions(depth="shallow", enable_cost_tracking=True))

    first, second = agent.orchestrator.execute.await_args_list
    assert first.args[1].depth == ResearchDepth.DEEP
    assert second.args[1].depth == "shallow"
    assert second.args[1].enable_cost_tracking is True
    await agent.aclose()


@pytest.mark.asyncio
async def test_update_search_instances():
    agent = ResearchAgent(_config(), llm=ClosableFake())

    agent.update_search_instances(["https://searx.one/", "https://searx.two"])

    assert agent.search.instances == ["https://searx.one", "https://searx.two"]
    assert agent.get_config().searxng_instances == ["https://searx.one/", "https://searx.two"]
    with pytest.raises(ValidationError):
        agent.update_search_instances([])
    await agent.aclose()


def test_get_config_returns_a_copy():
    agent = ResearchAgent(_config(), llm=ClosableFake())

    copy = agent.get_config()
    copy.searxng_instances.append("https://other.example")

    assert agent.config.searxng_instances == ["https://searx.example"]


@pytest.mark.asyncio
async def test_context_manager_closes_providers():
    llm, search, scraper = ClosableFake(), ClosableFake(), ClosableFake()

    async with ResearchAgent(_config(), llm=llm, search=search, scraper=scraper) as agent:
        assert agent.orchestrator.llm is llm

    assert llm.closed and search.closed and scraper.closed


def test_from_settings_reads_environment(monkeypatch):
    monkeypatch.setattr(agent_module.settings, "openrouter_api_key", "env-key")
    monkeypatch.setattr(agent_module.settings, "searxng_instances", "https://a.example, https://b.example")
    monkeypatch.setattr(agent_module.settings, "default_depth", "shallow")

    config = ResearchAgentConfig.from_settings(scrape_provider="direct")

    assert config.openrouter_api_key == "env-key"
    assert config.searxng_instances == ["https://a.example", "https://b.example"]
    assert config.depth == ResearchDepth.SHALLOW
    assert config.scrape_provider == "direct"
