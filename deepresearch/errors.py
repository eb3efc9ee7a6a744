"""Error taxonomy shared by the providers and the orchestrator."""
from __future__ import annotations

from typing import Any


class ResearchAgentError(Exception):
    """Base error carrying a machine-readable code."""

    code = "RESEARCH_ERROR"

    def __init__(self, message: str, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details: dict[str, Any] = details or {}


class ValidationError(ResearchAgentError):
    code = "VALIDATION_ERROR"


class ProviderError(ResearchAgentError):
    """A failed call to an external provider."""

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        status_code: int | None = None,
        retry_after: float | None = None,
        retries: int = 0,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details=details)
        self.provider = provider
        self.status_code = status_code
        self.retry_after = retry_after
        self.retries = retries


class TransientProviderError(ProviderError):
    code = "TRANSIENT_PROVIDER_ERROR"


class PermanentProviderError(ProviderError):
    code = "PERMANENT_PROVIDER_ERROR"


class LLMError(ProviderError):
    code = "LLM_ERROR"


class ScrapeError(ProviderError):
    code = "SCRAPE_ERROR"


class SearchError(ProviderError):
    code = "SEARCH_ERROR"

    def __init__(self, message: str, *, query: str, retries: int, last_error: str = ""):
        super().__init__(
            message,
            provider="searxng",
            retries=retries,
            details={"query": query, "total_retries": retries, "last_error": last_error},
        )
        self.query = query


class MalformedResponseError(ResearchAgentError):
    """LLM output did not match the expected structure."""

    code = "MALFORMED_RESPONSE"

    def __init__(self, message: str, *, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class ResearchCancelledError(ResearchAgentError):
    code = "CANCELLED"

    def __init__(self, message: str = "Research cancelled by user"):
        super().__init__(message)
