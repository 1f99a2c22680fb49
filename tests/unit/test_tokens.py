"""Tests for the approximate token counter."""

from __future__ import annotations

import pytest

from makercode.tokens import TRUNCATION_MARKER, TokenCounter


class TestCount:
    def test_empty_and_none_are_zero(self):
        counter = TokenCounter()
        assert counter.count("") == 0
        assert counter.count(None) == 0

    def test_rounds_up(self):
        counter = TokenCounter()
        assert counter.count("abc") == 1
        assert counter.count("a" * 7) == 2
        assert counter.count("a" * 8) == 3

    def test_monotonic_in_length(self):
        counter = TokenCounter()
        counts = [counter.count("x" * n) for n in range(0, 200, 7)]
        assert counts == sorted(counts)

    def test_rejects_non_positive_ratio(self):
        with pytest.raises(ValueError):
            TokenCounter(chars_per_token=0)


class TestCountMessages:
    def test_empty_list(self):
        assert TokenCounter().count_messages([]) == 0

    def test_adds_per_message_and_envelope_overhead(self):
        counter = TokenCounter()
        messages = [{"role": "user", "content": "hello"}]
        expected = 4 + counter.count("user") + counter.count("hello") + 2
        assert counter.count_messages(messages) == expected


class TestTruncate:
    def test_short_text_untouched(self):
        assert TokenCounter().truncate_to_limit("short", 100) == "short"

    def test_long_text_gets_marker(self):
        counter = TokenCounter()
        text = "word " * 500
        out = counter.truncate_to_limit(text, 50)
        assert out.endswith(TRUNCATION_MARKER)
        assert counter.count(out[: -len(TRUNCATION_MARKER)]) <= 50

    def test_empty(self):
        assert TokenCounter().truncate_to_limit(None, 10) == ""
