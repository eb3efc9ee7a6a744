"""OpenRouter chat-completion client with retry and backoff."""
from __future__ import annotations

from typing import Any

from loguru import logger

from deepresearch.config import settings
from deepresearch.errors import LLMError, TransientProviderError
from deepresearch.services.resilience import CallResult, ResilientClient, RetryPolicy

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


def get_client(
    api_key: str | None = None,
    *,
    base_url: str | None = None,
    timeout: float | None = None,
) -> Any:
    """Build an OpenAI-compatible SDK client pointed at OpenRouter.

    SDK-level retries are disabled; ``LLMClient`` owns the retry policy.
    """
    from openai import AsyncOpenAI

    resolved_base = (base_url or settings.openrouter_base_url).strip() or DEFAULT_BASE_URL
    return AsyncOpenAI(
        api_key=api_key if api_key is not None else settings.openrouter_api_key,
        base_url=resolved_base,
        timeout=timeout if timeout is not None else settings.llm_timeout_seconds,
        max_retries=0,
        default_headers={
            "HTTP-Referer": settings.openrouter_referer,
            "X-Title": settings.openrouter_title,
        },
    )


class LLMClient:
    """``generate`` one completion; transient failures are retried with exponential backoff."""

    def __init__(
        self,
        client: Any | None = None,
        *,
        max_retries: int | None = None,
        base_delay: float | None = None,
        default_temperature: float | None = None,
        default_max_tokens: int | None = None,
        resilient: ResilientClient | None = None,
    ):
        self._client = client if client is not None else get_client()
        self.default_temperature = (
            settings.llm_temperature if default_temperature is None else default_temperature
        )
        self.default_max_tokens = default_max_tokens or settings.llm_max_tokens
        self._resilient = resilient or ResilientClient(
            "openrouter",
            RetryPolicy(
                max_retries=settings.llm_max_retries if max_retries is None else max_retries,
                base_delay=settings.llm_retry_base_delay if base_delay is None else base_delay,
            ),
            exhausted_error=LLMError,
        )

    async def generate(
        self,
        prompt: str,
        *,
        model: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
        system_prompt: str | None = None,
    ) -> str:
        result = await self.generate_with_retries(
            prompt,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            system_prompt=system_prompt,
        )
        return result.value

    async def generate_with_retries(
        self,
        prompt: str,
        *,
        model: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
        system_prompt: str | None = None,
    ) -> CallResult[str]:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        async def _complete() -> str:
            response = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=self.default_temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.default_max_tokens,
            )
            choices = getattr(response, "choices", None) or []
            content = choices[0].message.content if choices else None
            if not content or not content.strip():
                raise TransientProviderError("Empty response from LLM", provider="openrouter")
            return content

        result = await self._resilient.execute(_complete)
        logger.debug(f"LLM {model} returned {len(result.value)} chars after {result.retries} retries")
        return result

    async def aclose(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()
