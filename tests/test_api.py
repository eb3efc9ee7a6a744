"""Tests for API routes."""
import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from deepresearch.agent import ResearchAgent, ResearchAgentConfig
from deepresearch.api.deps import get_agent
from deepresearch.api.main import app
from deepresearch.api.routes.research import stream_research
from deepresearch.errors import SearchError
from deepresearch.models.research import (
    ProgressEvent,
    ProgressStage,
    ResearchMetadata,
    ResearchResult,
)
from deepresearch.models.schemas import ResearchRequest


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    # sse-starlette keeps a module level exit event bound to the first loop it saw.
    import sse_starlette.sse as sse

    status = getattr(sse, "AppStatus", None)
    if status is not None and hasattr(status, "should_exit_event"):
        status.should_exit_event = None
    yield


@pytest.fixture
def client():
    yield TestClient(app)
    app.dependency_overrides.clear()


def _agent(execute) -> ResearchAgent:
    config = ResearchAgentConfig(openrouter_api_key="test", searxng_instances=["https://searx.example"])
    agent = ResearchAgent(config, llm=object(), search_pacing=0)
    agent.orchestrator.execute = execute
    return agent


def _events(body: str) -> list[tuple[str, dict]]:
    events = []
    for block in body.replace("\r\n", "\n").split("\n\n"):
        fields = dict(line.split(": ", 1) for line in block.splitlines() if ": " in line)
        if "event" in fields:
            events.append((fields["event"], json.loads(fields["data"])))
    return events


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "deepresearch"


def test_list_models(client):
    response = client.get("/api/models")
    assert response.status_code == 200
    data = response.json()
    by_id = {m["id"]: m for m in data["models"]}
    assert by_id["meta-llama/llama-3.1-8b-instruct"]["tier"] == "small"
    assert by_id["deepseek/deepseek-chat"]["tier"] == "large"
    assert by_id["openai/gpt-4o-mini"]["tier"] is None
    assert data["agent_tiers"]["reporter"] == "large"


def test_stream_emits_progress_then_result(client):
    async def execute(query, options):
        assert options.depth == "shallow"
        options.on_progress(ProgressEvent(ProgressStage.PLANNING, "Planning", 10))
        metadata = ResearchMetadata(queries_executed=[query], sources_scraped=2, total_duration_ms=5, rounds=1)
        return ResearchResult(report="# Report", metadata=metadata)

    app.dependency_overrides[get_agent] = lambda: _agent(execute)

    response = client.post("/api/research/stream", json={"query": "solar panels", "depth": "shallow"})

    assert response.status_code == 200
    events = _events(response.text)
    assert [name for name, _ in events] == ["research_started", "progress", "research_complete"]
    assert events[0][1] == {"query": "solar panels", "depth": "shallow"}
    assert events[1][1]["stage"] == "planning"
    assert events[2][1]["report"] == "# Report"
    assert events[2][1]["metadata"]["sources_scraped"] == 2


def test_stream_reports_agent_errors_with_code(client):
    async def execute(query, options):
        raise SearchError("All SearXNG instances failed", query=query, retries=6)

    app.dependency_overrides[get_agent] = lambda: _agent(execute)

    response = client.post("/api/research/stream", json={"query": "solar panels"})

    events = _events(response.text)
    assert events[0] == ("research_started", {"query": "solar panels", "depth": "normal"})
    assert events[-1] == ("error", {"message": "All SearXNG instances failed", "code": "SEARCH_ERROR"})


def test_stream_rejects_empty_query(client):
    execute = AsyncMock()
    app.dependency_overrides[get_agent] = lambda: _agent(execute)

    response = client.post("/api/research/stream", json={"query": ""})

    assert response.status_code == 422
    execute.assert_not_awaited()


def test_stream_unavailable_without_configuration(client, monkeypatch):
    from deepresearch import agent as agent_module

    monkeypatch.setattr(agent_module.settings, "openrouter_api_key", "")
    monkeypatch.setattr(agent_module.settings, "searxng_instances", "")

    response = client.post("/api/research/stream", json={"query": "solar panels"})

    assert response.status_code == 503
    assert "API key" in response.json()["detail"]


@pytest.mark.asyncio
async def test_disconnect_waits_for_session_before_closing_agent():
    order: list[str] = []
    started = asyncio.Event()

    async def execute(query, options):
        started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            order.append("session cancelled")
            raise

    agent = _agent(execute)
    close_agent = agent.aclose

    async def aclose():
        order.append("agent closed")
        await close_agent()

    agent.aclose = aclose

    response = await stream_research(ResearchRequest(query="solar panels"), agent)
    events = response.body_iterator
    first = await events.__anext__()
    await started.wait()
    await events.aclose()

    assert first["event"] == "research_started"
    assert order == ["session cancelled", "agent closed"]
