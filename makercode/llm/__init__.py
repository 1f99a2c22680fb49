"""Completion-provider boundary for makercode."""

from makercode.llm.provider import (
    Completion,
    CompletionProvider,
    LangChainProvider,
    ProviderConnectionError,
    ProviderError,
    Usage,
)

__all__ = [
    "Completion",
    "CompletionProvider",
    "LangChainProvider",
    "ProviderConnectionError",
    "ProviderError",
    "Usage",
]
