"""Tests for the LangChain-backed completion provider."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage

from makercode.llm.provider import (
    LangChainProvider,
    ProviderConnectionError,
    ProviderError,
    to_langchain_messages,
)

MESSAGES = [
    {"role": "system", "content": "Be brief"},
    {"role": "user", "content": "Write add"},
]


def _llm(response=None, side_effect=None) -> MagicMock:
    llm = MagicMock()
    llm.ainvoke = AsyncMock(return_value=response, side_effect=side_effect)
    return llm


def test_message_conversion():
    converted = to_langchain_messages(
        [*MESSAGES, {"role": "assistant", "content": "ok"}, {"content": "no role"}]
    )
    assert [type(m) for m in converted] == [SystemMessage, HumanMessage, AIMessage, HumanMessage]
    assert converted[1].content == "Write add"


@pytest.mark.asyncio
async def test_complete_returns_content_and_usage():
    response = AIMessage(
        content="def add(a, b): return a + b",
        usage_metadata={"input_tokens": 12, "output_tokens": 9, "total_tokens": 21},
    )
    llm = _llm(response)
    provider = LangChainProvider("test-model", llm=llm)

    completion = await provider.complete(MESSAGES, temperature=0.4, max_tokens=64)

    assert completion.content == "def add(a, b): return a + b"
    assert completion.usage.prompt_tokens == 12
    assert completion.usage.completion_tokens == 9
    args, kwargs = llm.ainvoke.await_args
    assert isinstance(args[0][0], SystemMessage)
    assert kwargs == {"temperature": 0.4, "max_tokens": 64}


@pytest.mark.asyncio
async def test_missing_usage_is_none():
    provider = LangChainProvider("test-model", llm=_llm(AIMessage(content="x = 1")))
    completion = await provider.complete(MESSAGES)
    assert completion.usage is None
    assert "max_tokens" not in provider._llm.ainvoke.await_args.kwargs


@pytest.mark.asyncio
async def test_connection_errors_are_distinguished():
    provider = LangChainProvider("test-model", llm=_llm(side_effect=ConnectionError("refused")))
    with pytest.raises(ProviderConnectionError, match="test-model"):
        await provider.complete(MESSAGES)


@pytest.mark.asyncio
async def test_other_errors_become_provider_errors():
    provider = LangChainProvider("test-model", llm=_llm(side_effect=ValueError("bad request")))
    with pytest.raises(ProviderError) as exc:
        await provider.complete(MESSAGES)
    assert not isinstance(exc.value, ProviderConnectionError)


@pytest.mark.asyncio
async def test_streaming_concatenates_chunks():
    async def fake_astream(messages, **kwargs):
        yield AIMessageChunk(content="def add")
        yield AIMessageChunk(content="(a, b): ...")
        yield AIMessageChunk(
            content="",
            usage_metadata={"input_tokens": 5, "output_tokens": 6, "total_tokens": 11},
        )

    llm = MagicMock()
    llm.astream = fake_astream
    completion = await LangChainProvider("test-model", llm=llm).complete(MESSAGES, stream=True)

    assert completion.content == "def add(a, b): ..."
    assert completion.usage.completion_tokens == 6


def test_default_llm_comes_from_factory():
    with patch("makercode.llm.provider.get_llm") as mock_get_llm:
        provider = LangChainProvider("gpt-4o-mini", api_base="http://localhost:4000")
    mock_get_llm.assert_called_once_with("gpt-4o-mini", api_base="http://localhost:4000")
    assert provider._llm is mock_get_llm.return_value
