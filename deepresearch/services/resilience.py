"""Retry, backoff and endpoint failover shared by every outbound provider call.

One ``ResilientClient`` wraps one call type (LLM completion, web search,
content extraction). Failures are classified into retryable conditions
(no response, HTTP 429, HTTP >= 500) and permanent ones (any other 4xx).
Retry *n* (0-indexed) waits ``base_delay * 2**n`` unless the remote sent a
``Retry-After`` value, which wins.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

import httpx
import openai
from loguru import logger

from deepresearch.errors import (
    PermanentProviderError,
    ProviderError,
    ResearchAgentError,
    TransientProviderError,
)

T = TypeVar("T")


class FailureKind(StrEnum):
    NO_RESPONSE = "no_response"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    CLIENT = "client"

    @property
    def retryable(self) -> bool:
        return self is not FailureKind.CLIENT


@dataclass(frozen=True, slots=True)
class Failure:
    kind: FailureKind
    status_code: int | None = None
    retry_after: float | None = None
    message: str = ""

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return max(seconds, 0.0)


def _kind_for_status(status_code: int) -> FailureKind:
    if status_code == 429:
        return FailureKind.RATE_LIMITED
    if status_code >= 500:
        return FailureKind.SERVER
    return FailureKind.CLIENT


def describe_status(status_code: int) -> str:
    if status_code == 429:
        return "Rate limited (429)"
    if status_code == 403:
        return "Access forbidden (403)"
    if status_code >= 500:
        return f"Server error ({status_code})"
    return f"HTTP {status_code}"


def classify_error(exc: BaseException) -> Failure:
    """Map an exception raised by a provider call onto a retry decision."""
    if isinstance(exc, ProviderError):
        if exc.status_code is not None:
            return Failure(
                _kind_for_status(exc.status_code),
                exc.status_code,
                exc.retry_after,
                describe_status(exc.status_code),
            )
        kind = FailureKind.CLIENT if isinstance(exc, PermanentProviderError) else FailureKind.NO_RESPONSE
        return Failure(kind, retry_after=exc.retry_after, message=exc.message)

    status_code: int | None = None
    headers: Any = None
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        headers = exc.response.headers
    elif isinstance(exc, openai.APIStatusError):
        status_code = exc.status_code
        headers = exc.response.headers if exc.response is not None else None

    if status_code is not None:
        retry_after = parse_retry_after(headers.get("retry-after")) if headers is not None else None
        return Failure(_kind_for_status(status_code), status_code, retry_after, describe_status(status_code))

    if isinstance(exc, (httpx.TimeoutException, openai.APITimeoutError)):
        return Failure(FailureKind.NO_RESPONSE, message="Request timeout")
    if isinstance(exc, (httpx.TransportError, openai.APIConnectionError)):
        return Failure(FailureKind.NO_RESPONSE, message=f"Network error: {exc}")

    # Anything else never produced an HTTP response (bad payload, empty body, ...).
    return Failure(FailureKind.NO_RESPONSE, message=str(exc) or exc.__class__.__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0

    @property
    def attempts(self) -> int:
        return max(int(self.max_retries), 1)

    def backoff(self, retry_index: int, retry_after: float | None = None) -> float:
        if retry_after is not None:
            return retry_after
        return self.base_delay * (2 ** retry_index)


@dataclass(slots=True)
class CallResult(Generic[T]):
    value: T
    retries: int = 0
    endpoint: str | None = None


class EndpointRotation:
    """Order in which failover endpoints are tried for one call."""

    def __init__(
        self,
        endpoints: Sequence[str],
        *,
        priority_order: bool = False,
        rng: random.Random | None = None,
    ):
        self.endpoints = list(endpoints)
        self.priority_order = priority_order
        self._rng = rng or random.Random()

    def order(self) -> list[str]:
        if self.priority_order:
            return list(self.endpoints)
        # One uniform pick per attempt; repeats are allowed.
        return [self._rng.choice(self.endpoints) for _ in self.endpoints]


ExhaustedFactory = Callable[[int, Failure | None, BaseException | None], Exception]


class ResilientClient:
    """Retry/backoff/failover strategy for one kind of external call."""

    def __init__(
        self,
        name: str,
        policy: RetryPolicy,
        *,
        classify: Callable[[BaseException], Failure] = classify_error,
        exhausted_error: type[ProviderError] = TransientProviderError,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.name = name
        self.policy = policy
        self.classify = classify
        self.exhausted_error = exhausted_error
        self._sleep = sleep

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> CallResult[T]:
        """Run ``operation`` until it succeeds, fails permanently, or runs out of attempts."""
        attempts = self.policy.attempts
        retries = 0
        for attempt in range(attempts):
            try:
                value = await operation()
            except Exception as exc:
                if isinstance(exc, ResearchAgentError) and not isinstance(exc, ProviderError):
                    raise
                failure = self.classify(exc)
                if not failure.retryable:
                    logger.error(f"{self.name} call failed permanently: {failure.message}")
                    raise self._error(PermanentProviderError, failure, retries, exc) from exc
                if attempt >= attempts - 1:
                    logger.error(
                        f"{self.name} call failed after {attempts} attempts: {failure.message}"
                    )
                    raise self._error(self.exhausted_error, failure, retries, exc) from exc

                delay = self.policy.backoff(attempt, failure.retry_after)
                retries += 1
                logger.warning(
                    f"{self.name} retry {retries}/{attempts - 1} - {failure.message} - waiting {delay:.2f}s"
                )
                await self._sleep(delay)
                continue

            if retries:
                logger.info(f"{self.name} call succeeded after {retries} retries")
            return CallResult(value=value, retries=retries)

        raise AssertionError("unreachable")  # pragma: no cover

    async def execute_with_failover(
        self,
        operation: Callable[[str], Awaitable[T]],
        rotation: EndpointRotation,
        *,
        on_exhausted: ExhaustedFactory,
    ) -> CallResult[T]:
        """Try endpoints in rotation order, exhausting retries on each before moving on.

        A server error (>= 500) skips the remaining retries on that endpoint.
        """
        attempts = self.policy.attempts
        total_retries = 0
        last_failure: Failure | None = None
        last_exc: BaseException | None = None

        for endpoint in rotation.order():
            for retry in range(attempts):
                try:
                    value = await operation(endpoint)
                except Exception as exc:
                    if isinstance(exc, ResearchAgentError) and not isinstance(exc, ProviderError):
                        raise
                    total_retries += 1
                    last_exc = exc
                    last_failure = self.classify(exc)

                    if last_failure.kind is FailureKind.SERVER:
                        logger.warning(
                            f"{self.name}: {last_failure.message} from {endpoint}, trying next endpoint"
                        )
                        break
                    if last_failure.retryable and retry < attempts - 1:
                        delay = self.policy.backoff(retry, last_failure.retry_after)
                        logger.warning(
                            f"{self.name} retry {total_retries} on {endpoint} - "
                            f"{last_failure.message} - waiting {delay:.2f}s"
                        )
                        await self._sleep(delay)
                        continue
                    break

                if total_retries:
                    logger.info(f"{self.name} succeeded on {endpoint} after {total_retries} retries")
                return CallResult(value=value, retries=total_retries, endpoint=endpoint)

        message = last_failure.message if last_failure else "no endpoints"
        logger.error(f"{self.name} failed across all endpoints after {total_retries} retries: {message}")
        raise on_exhausted(total_retries, last_failure, last_exc)

    def _error(
        self,
        error_cls: type[ProviderError],
        failure: Failure,
        retries: int,
        exc: BaseException,
    ) -> ProviderError:
        return error_cls(
            f"{self.name} request failed: {failure.message}",
            provider=self.name,
            status_code=failure.status_code,
            retry_after=failure.retry_after,
            retries=retries,
            details={"error": str(exc)},
        )
