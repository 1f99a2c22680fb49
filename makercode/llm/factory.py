"""LLM factory: returns a LangChain BaseChatModel backed by LiteLLM."""

from __future__ import annotations

from functools import lru_cache

from langchain_core.language_models import BaseChatModel


@lru_cache(maxsize=32)
def get_llm(
    model_name: str = "claude-sonnet-4-6",
    temperature: float = 0.7,
    api_base: str | None = None,
) -> BaseChatModel:
    """Return a cached LangChain chat model via LiteLLM.

    Supports any model string that LiteLLM understands:
      - "claude-sonnet-4-6" / "claude-opus-4-6"
      - "gpt-4o" / "gpt-4o-mini"
      - "ollama/qwen2.5-coder" (local, with ``api_base``)

    Sampling temperature is overridden per call by the provider adapter, so
    one cached model serves a whole voting round.
    """
    from langchain_litellm import ChatLiteLLM  # type: ignore[import-untyped]

    if api_base:
        return ChatLiteLLM(  # type: ignore[return-value]
            model=model_name, temperature=temperature, api_base=api_base
        )
    return ChatLiteLLM(model=model_name, temperature=temperature)  # type: ignore[return-value]
