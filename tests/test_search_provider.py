from __future__ import annotations

import httpx
import pytest

from deepresearch.errors import SearchError, ValidationError
from deepresearch.tools.searxng_search import SearxngSearchClient

RESULTS = {
    "results": [
        {"title": "First", "url": "https://example.com/1", "content": "First snippet"},
        {"title": "Second", "url": "https://example.com/2", "content": "Second snippet"},
        {"title": "No url"},
        {"title": "Third", "url": "https://example.com/3"},
    ]
}


def _client(handler, instances, **kwargs) -> SearxngSearchClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SearxngSearchClient(
        instances,
        priority_order=kwargs.pop("priority_order", True),
        base_delay=0,
        http_client=http,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_search_parses_results_and_sends_searxng_params():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=RESULTS)

    client = _client(handler, ["https://searx.one/"])

    hits = await client.search("solar panels", limit=10)

    assert [hit.url for hit in hits] == ["https://example.com/1", "https://example.com/2", "https://example.com/3"]
    assert hits[0].snippet == "First snippet"
    assert hits[2].snippet == ""
    request = seen[0]
    assert request.url.path == "/search"
    assert request.url.params["q"] == "solar panels"
    assert request.url.params["format"] == "json"
    assert request.url.params["safesearch"] == "0"


@pytest.mark.asyncio
async def test_search_respects_limit():
    client = _client(lambda request: httpx.Response(200, json=RESULTS), ["https://searx.one"])

    hits = await client.search("solar panels", limit=1)

    assert len(hits) == 1


@pytest.mark.asyncio
async def test_search_fails_over_to_next_instance_on_server_error():
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.host == "searx.one":
            return httpx.Response(503)
        return httpx.Response(200, json=RESULTS)

    client = _client(handler, ["https://searx.one", "https://searx.two"])

    result = await client.search_with_retries("solar panels")

    assert hosts == ["searx.one", "searx.two"]
    assert result.endpoint == "https://searx.two"
    assert result.retries == 1
    assert len(result.value) == 3


@pytest.mark.asyncio
async def test_invalid_payload_is_retried_then_reported():
    client = _client(lambda request: httpx.Response(200, json={"unexpected": True}), ["https://searx.one"])

    with pytest.raises(SearchError) as exc_info:
        await client.search("solar panels")

    assert exc_info.value.query == "solar panels"
    assert exc_info.value.retries == 3


@pytest.mark.asyncio
async def test_all_instances_failing_raises_search_error():
    client = _client(lambda request: httpx.Response(500), ["https://searx.one", "https://searx.two"])

    with pytest.raises(SearchError) as exc_info:
        await client.search("solar panels")

    assert exc_info.value.retries == 2
    assert exc_info.value.code == "SEARCH_ERROR"


def test_instances_are_validated():
    with pytest.raises(ValidationError):
        SearxngSearchClient([])
    with pytest.raises(ValidationError):
        SearxngSearchClient(["not-a-url"])


def test_update_instances_replaces_list():
    client = SearxngSearchClient(["https://searx.one"])

    client.update_instances(["https://searx.two/", " https://searx.three "])

    assert client.instances == ["https://searx.two", "https://searx.three"]
