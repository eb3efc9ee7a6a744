from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from deepresearch.errors import LLMError
from deepresearch.llm_client import LLMClient, get_client


def _completion(content: str | None) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _fake_openai(*responses) -> SimpleNamespace:
    create = AsyncMock(side_effect=list(responses))
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


@pytest.mark.asyncio
async def test_generate_returns_message_content():
    fake = _fake_openai(_completion("hello"))
    client = LLMClient(fake, base_delay=0, default_temperature=0.2, default_max_tokens=100)

    text = await client.generate("prompt", model="openai/gpt-4o-mini", system_prompt="be brief")

    assert text == "hello"
    kwargs = fake.chat.completions.create.await_args.kwargs
    assert kwargs["model"] == "openai/gpt-4o-mini"
    assert kwargs["temperature"] == 0.2
    assert kwargs["max_tokens"] == 100
    assert kwargs["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "prompt"},
    ]


@pytest.mark.asyncio
async def test_empty_content_is_retried():
    fake = _fake_openai(_completion(""), _completion("second try"))
    client = LLMClient(fake, base_delay=0)

    result = await client.generate_with_retries("prompt", model="m")

    assert result.value == "second try"
    assert result.retries == 1


@pytest.mark.asyncio
async def test_exhausted_retries_raise_llm_error():
    fake = _fake_openai(_completion(None), _completion("  "), _completion(""))
    client = LLMClient(fake, max_retries=3, base_delay=0)

    with pytest.raises(LLMError) as exc_info:
        await client.generate("prompt", model="m")

    assert exc_info.value.retries == 2
    assert fake.chat.completions.create.await_count == 3


def test_get_client_targets_openrouter_without_sdk_retries():
    client = get_client("test-key", base_url="https://openrouter.ai/api/v1", timeout=5)

    assert client.max_retries == 0
    assert "openrouter.ai" in str(client.base_url)
    assert client.api_key == "test-key"
