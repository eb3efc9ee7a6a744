from __future__ import annotations

import random

import httpx
import pytest

from deepresearch.errors import (
    LLMError,
    PermanentProviderError,
    ResearchCancelledError,
    SearchError,
    TransientProviderError,
)
from deepresearch.services.resilience import (
    EndpointRotation,
    FailureKind,
    ResilientClient,
    RetryPolicy,
    classify_error,
    parse_retry_after,
)


def _status_error(status: int, headers: dict[str, str] | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://example.com/search")
    response = httpx.Response(status, request=request, headers=headers)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class _RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _Scripted:
    """Raise the queued exceptions in order, then return ``value``."""

    def __init__(self, failures: list[Exception], value: str = "ok"):
        self.failures = list(failures)
        self.value = value
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.value


def _client(max_retries: int = 3, base_delay: float = 0.1, **kwargs) -> tuple[ResilientClient, _RecordingSleep]:
    sleep = _RecordingSleep()
    client = ResilientClient(
        "test", RetryPolicy(max_retries=max_retries, base_delay=base_delay), sleep=sleep, **kwargs
    )
    return client, sleep


@pytest.mark.asyncio
async def test_two_server_errors_then_success_reports_two_retries():
    client, sleep = _client()
    operation = _Scripted([_status_error(503), _status_error(503)], value="done")

    result = await client.execute(operation)

    assert result.value == "done"
    assert result.retries == 2
    assert operation.calls == 3
    assert sleep.delays == [pytest.approx(0.1), pytest.approx(0.2)]


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    client, sleep = _client()
    operation = _Scripted([_status_error(404)] * 3)

    with pytest.raises(PermanentProviderError) as exc_info:
        await client.execute(operation)

    assert operation.calls == 1
    assert exc_info.value.retries == 0
    assert exc_info.value.status_code == 404
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_retry_after_header_overrides_backoff():
    client, sleep = _client()
    operation = _Scripted([_status_error(429, {"Retry-After": "7"})])

    result = await client.execute(operation)

    assert result.retries == 1
    assert sleep.delays == [7.0]


@pytest.mark.asyncio
async def test_network_errors_are_retried():
    client, _ = _client(base_delay=0)
    request = httpx.Request("GET", "https://example.com")
    operation = _Scripted([httpx.ConnectError("boom", request=request), httpx.ReadTimeout("slow", request=request)])

    result = await client.execute(operation)

    assert result.retries == 2


@pytest.mark.asyncio
async def test_exhausted_retries_raise_configured_error():
    client, sleep = _client(exhausted_error=LLMError)
    operation = _Scripted([_status_error(500)] * 5)

    with pytest.raises(LLMError) as exc_info:
        await client.execute(operation)

    assert operation.calls == 3
    assert exc_info.value.retries == 2
    assert exc_info.value.code == "LLM_ERROR"
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_default_exhausted_error_is_transient():
    client, _ = _client(max_retries=2, base_delay=0)

    with pytest.raises(TransientProviderError):
        await client.execute(_Scripted([_status_error(502)] * 2))


@pytest.mark.asyncio
async def test_cancellation_passes_through_unchanged():
    client, sleep = _client()
    operation = _Scripted([ResearchCancelledError()])

    with pytest.raises(ResearchCancelledError):
        await client.execute(operation)

    assert operation.calls == 1
    assert sleep.delays == []


def test_classify_error_kinds():
    assert classify_error(_status_error(429)).kind is FailureKind.RATE_LIMITED
    assert classify_error(_status_error(503)).kind is FailureKind.SERVER
    assert classify_error(_status_error(403)).kind is FailureKind.CLIENT
    assert classify_error(ValueError("bad payload")).kind is FailureKind.NO_RESPONSE
    assert classify_error(PermanentProviderError("nope")).retryable is False
    assert classify_error(TransientProviderError("empty")).retryable is True


def test_parse_retry_after():
    assert parse_retry_after("3") == 3.0
    assert parse_retry_after("1.5") == 1.5
    assert parse_retry_after(None) is None
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None


class _EndpointScript:
    def __init__(self, behaviour: dict[str, list[Exception | str]]):
        self.behaviour = {key: list(value) for key, value in behaviour.items()}
        self.calls: list[str] = []

    async def __call__(self, endpoint: str) -> str:
        self.calls.append(endpoint)
        outcome = self.behaviour[endpoint].pop(0) if self.behaviour[endpoint] else "ok"
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _search_error(query: str):
    def factory(retries, failure, exc):
        return SearchError(
            "search failed", query=query, retries=retries, last_error=failure.message if failure else ""
        )

    return factory


@pytest.mark.asyncio
async def test_failover_server_error_moves_to_next_endpoint_immediately():
    client, sleep = _client()
    operation = _EndpointScript({"https://a": [_status_error(503)], "https://b": ["from b"]})
    rotation = EndpointRotation(["https://a", "https://b"], priority_order=True)

    result = await client.execute_with_failover(operation, rotation, on_exhausted=_search_error("q"))

    assert result.value == "from b"
    assert result.endpoint == "https://b"
    assert result.retries == 1
    assert operation.calls == ["https://a", "https://b"]
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_failover_exhausts_retries_within_endpoint_first():
    client, sleep = _client()
    operation = _EndpointScript(
        {"https://a": [_status_error(429), _status_error(429), _status_error(429)], "https://b": ["from b"]}
    )
    rotation = EndpointRotation(["https://a", "https://b"], priority_order=True)

    result = await client.execute_with_failover(operation, rotation, on_exhausted=_search_error("q"))

    assert operation.calls == ["https://a"] * 3 + ["https://b"]
    assert result.retries == 3
    assert sleep.delays == [pytest.approx(0.1), pytest.approx(0.2)]


@pytest.mark.asyncio
async def test_failover_exhaustion_raises_search_error_with_query_and_retries():
    client, _ = _client(base_delay=0)
    operation = _EndpointScript(
        {"https://a": [_status_error(429)] * 3, "https://b": [_status_error(429)] * 3}
    )
    rotation = EndpointRotation(["https://a", "https://b"], priority_order=True)

    with pytest.raises(SearchError) as exc_info:
        await client.execute_with_failover(operation, rotation, on_exhausted=_search_error("solar"))

    assert exc_info.value.query == "solar"
    assert exc_info.value.retries == 6
    assert exc_info.value.details["total_retries"] == 6


@pytest.mark.asyncio
async def test_failover_client_error_skips_to_next_endpoint_without_retry():
    client, sleep = _client()
    operation = _EndpointScript({"https://a": [_status_error(403)], "https://b": ["ok"]})
    rotation = EndpointRotation(["https://a", "https://b"], priority_order=True)

    result = await client.execute_with_failover(operation, rotation, on_exhausted=_search_error("q"))

    assert operation.calls == ["https://a", "https://b"]
    assert result.retries == 1
    assert sleep.delays == []


def test_random_rotation_picks_from_endpoints_per_attempt():
    endpoints = ["https://a", "https://b", "https://c"]
    rotation = EndpointRotation(endpoints, rng=random.Random(42))

    for _ in range(20):
        order = rotation.order()
        assert len(order) == len(endpoints)
        assert set(order) <= set(endpoints)


def test_priority_rotation_keeps_order():
    rotation = EndpointRotation(["https://a", "https://b"], priority_order=True)
    assert rotation.order() == ["https://a", "https://b"]
