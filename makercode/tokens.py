"""Approximate token counting used for length checks and context budgets."""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping

# Code averages ~3 chars/token, English prose ~4; split the difference.
_CHARS_PER_TOKEN = 3.5
_MESSAGE_OVERHEAD = 4
_ENVELOPE_OVERHEAD = 2

TRUNCATION_MARKER = "\n... [truncated]"


class TokenCounter:
    """Deterministic, monotonic token estimator.

    Exact tokenization is a property of the completion provider; every
    consumer here only needs a stable estimate that grows with the text.
    """

    def __init__(self, chars_per_token: float = _CHARS_PER_TOKEN) -> None:
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self.chars_per_token = chars_per_token

    def count(self, text: str | None) -> int:
        """Return the estimated token count of *text*."""
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def count_messages(self, messages: Iterable[Mapping[str, str]]) -> int:
        """Estimate tokens for a chat message list, including role framing."""
        total = 0
        seen = False
        for message in messages:
            seen = True
            total += _MESSAGE_OVERHEAD
            total += self.count(message.get("role", ""))
            total += self.count(message.get("content", ""))
        if not seen:
            return 0
        return total + _ENVELOPE_OVERHEAD

    def truncate_to_limit(self, text: str | None, max_tokens: int) -> str:
        """Cut *text* so it fits within *max_tokens*, appending a marker."""
        if not text:
            return ""
        if self.count(text) <= max_tokens:
            return text
        max_chars = max(0, int(max_tokens * self.chars_per_token))
        truncated = text[:max_chars]
        while truncated and self.count(truncated) > max_tokens:
            truncated = truncated[:-1]
        return truncated + TRUNCATION_MARKER

