"""Completion provider contract and the LangChain/LiteLLM adapter."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import litellm
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from makercode.llm.factory import get_llm

logger = logging.getLogger(__name__)

Message = Mapping[str, str]


class ProviderError(Exception):
    """A single completion request failed."""


class ProviderConnectionError(ProviderError):
    """The provider could not be reached at all; retrying the batch is pointless."""


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass
class Completion:
    """Final content of one completion request."""

    content: str
    usage: Usage | None = None


class CompletionProvider(Protocol):
    """Anything that can answer a chat message list with text."""

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        stream: bool = False,
    ) -> Completion: ...


_CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    litellm.APIConnectionError,
)


def to_langchain_messages(messages: Sequence[Message]) -> list[BaseMessage]:
    """Translate ``{role, content}`` dicts into LangChain message objects."""
    converted: list[BaseMessage] = []
    for message in messages:
        role = message.get("role", "user")
        content = message.get("content", "")
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "assistant":
            converted.append(AIMessage(content=content))
        else:
            converted.append(HumanMessage(content=content))
    return converted


def _usage_from(meta: Mapping[str, Any] | None) -> Usage | None:
    if not meta:
        return None
    return Usage(
        prompt_tokens=int(meta.get("input_tokens", 0) or 0),
        completion_tokens=int(meta.get("output_tokens", 0) or 0),
    )


class LangChainProvider:
    """CompletionProvider backed by a LangChain chat model.

    Usage:
        provider = LangChainProvider(model_name="gpt-4o-mini")
        completion = await provider.complete(
            [{"role": "user", "content": "Write a function"}],
            temperature=0.6,
        )
    """

    def __init__(
        self,
        model_name: str = "claude-sonnet-4-6",
        llm: BaseChatModel | None = None,
        api_base: str | None = None,
    ) -> None:
        self.model_name = model_name
        self._llm = llm if llm is not None else get_llm(model_name, api_base=api_base)

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        stream: bool = False,
    ) -> Completion:
        lc_messages = to_langchain_messages(messages)
        kwargs: dict[str, Any] = {"temperature": temperature}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        try:
            if stream:
                return await self._complete_streaming(lc_messages, kwargs)
            response = await self._llm.ainvoke(lc_messages, **kwargs)
        except _CONNECTION_ERRORS as e:
            raise ProviderConnectionError(f"{self.model_name}: {e}") from e
        except Exception as e:
            raise ProviderError(f"{self.model_name}: {e}") from e

        content = response.content if isinstance(response.content, str) else str(response.content)
        return Completion(
            content=content,
            usage=_usage_from(getattr(response, "usage_metadata", None)),
        )

    async def _complete_streaming(
        self,
        lc_messages: list[BaseMessage],
        kwargs: dict[str, Any],
    ) -> Completion:
        parts: list[str] = []
        usage: Usage | None = None
        async for chunk in self._llm.astream(lc_messages, **kwargs):
            if isinstance(chunk.content, str):
                parts.append(chunk.content)
            chunk_usage = _usage_from(getattr(chunk, "usage_metadata", None))
            if chunk_usage is not None:
                usage = chunk_usage
        return Completion(content="".join(parts), usage=usage)
