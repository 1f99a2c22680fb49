"""Red-flagging: reject or penalise unreliable responses from static signals.

A response that apologises, trails off, is absurdly long, or does not parse
is more likely to be wrong than one that does not. Flags are cheap to
compute, so every candidate goes through them before it may vote.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from makercode.maker.types import Flag, Severity, TaskProfile, ValidationResult
from makercode.parsing import GRAMMAR_MODES, ParseError, PythonParser, SourceParser
from makercode.tokens import TokenCounter

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1500
DEFAULT_MIN_TOKENS = 5
LENGTH_TOLERANCE = 2.0

SEVERITY_WEIGHTS: dict[Severity, float] = {
    Severity.CRITICAL: 1.0,
    Severity.HIGH: 0.3,
    Severity.MEDIUM: 0.1,
    Severity.LOW: 0.05,
}


@dataclass(frozen=True)
class RedFlagRule:
    """One row of a red-flag table."""

    pattern: re.Pattern[str]
    severity: Severity
    label: str


def _rule(pattern: str, severity: Severity, label: str, flags: int = re.IGNORECASE) -> RedFlagRule:
    return RedFlagRule(re.compile(pattern, flags), severity, label)


# Refusal and uncertainty phrasing
HALLUCINATION_RULES: list[RedFlagRule] = [
    _rule(r"sorry,?\s+(?:i|but)\s+(?:can't|cannot|couldn't)", Severity.CRITICAL, "refusal"),
    _rule(r"(?:i'm|i am)\s+(?:not|un)able\s+to", Severity.CRITICAL, "inability"),
    _rule(r"(?:i|i'm)\s+(?:confused|uncertain|unsure)", Severity.CRITICAL, "uncertainty"),
    _rule(
        r"(?:i\s+)?(?:don't|do not)\s+(?:have|know|understand)",
        Severity.CRITICAL,
        "lack of knowledge",
    ),
    _rule(r"as an ai", Severity.CRITICAL, "self-reference"),
    _rule(r"i apologize", Severity.CRITICAL, "apology"),
    _rule(r"(?:i'm|i am)\s+sorry", Severity.CRITICAL, "apology"),
]

# Signs the response was cut off or deferred
INCOMPLETENESS_RULES: list[RedFlagRule] = [
    _rule(r"\.\.\.\s*\Z", Severity.HIGH, "trailing ellipsis", flags=0),
    _rule(r"\[(?:truncated|incomplete|rest omitted)\]", Severity.HIGH, "truncation marker"),
    _rule(r"(?:to be continued|will continue|see next)", Severity.HIGH, "continuation phrase"),
    _rule(r"(?:and so on|etc\.?)\s*\Z", Severity.HIGH, "open-ended ending"),
]

# Heuristics for "this is probably Python code"
CODE_INDICATORS: list[re.Pattern[str]] = [
    re.compile(r"^\s*(?:async\s+)?def\s+\w+\s*\(", re.MULTILINE),
    re.compile(r"^\s*class\s+\w+", re.MULTILINE),
    re.compile(r"\blambda\b[^:\n]*:"),
    re.compile(r"^\s*import\s+[\w.]+", re.MULTILINE),
    re.compile(r"^\s*from\s+[\w.]+\s+import\b", re.MULTILINE),
    re.compile(r"^\s*__all__\s*=", re.MULTILINE),
    re.compile(r"^\s*[A-Za-z_]\w*\s*(?::\s*[\w\[\], .|]+)?=\s*\S", re.MULTILINE),
]

# Minimal syntactic marker for each expected structural format
FORMAT_MARKERS: dict[str, tuple[re.Pattern[str], str]] = {
    "function": (
        re.compile(r"\bdef\s+\w+|\blambda\b"),
        "Expected a function definition",
    ),
    "class": (re.compile(r"\bclass\s+\w+"), "Expected a class definition"),
    "import": (re.compile(r"\bimport\s+"), "Expected an import statement"),
    "export": (re.compile(r"\b__all__\s*="), "Expected an export list (__all__)"),
}

_BRACKET_PAIRS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {v: k for k, v in _BRACKET_PAIRS.items()}


class ResponseValidator:
    """Score a single candidate response for reliability.

    Usage:
        validator = ResponseValidator()
        result = validator.validate(text, TaskProfile(expected_format="function"))
        if not result.valid:
            print(result.summary)
    """

    def __init__(
        self,
        token_counter: TokenCounter | None = None,
        parser: SourceParser | None = None,
        hallucination_rules: Sequence[RedFlagRule] | None = None,
        incompleteness_rules: Sequence[RedFlagRule] | None = None,
    ) -> None:
        self.token_counter = token_counter or TokenCounter()
        self.parser = parser or PythonParser()
        self.hallucination_rules = list(hallucination_rules or HALLUCINATION_RULES)
        self.incompleteness_rules = list(incompleteness_rules or INCOMPLETENESS_RULES)

    def validate(
        self,
        text: str | None,
        task: TaskProfile | None = None,
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        min_tokens: int = DEFAULT_MIN_TOKENS,
    ) -> ValidationResult:
        task = task or TaskProfile()

        if not text or not text.strip():
            flags = [
                Flag(
                    type="empty_response",
                    severity=Severity.CRITICAL,
                    message="Response is empty or whitespace-only",
                )
            ]
            return ValidationResult(
                valid=False, flags=flags, confidence=0.0, summary=summarize_flags(flags)
            )

        flags: list[Flag] = []
        flags.extend(self.check_hallucinations(text))
        flags.extend(self.check_completeness(text))
        flags.extend(self.check_length(text, task, max_tokens=max_tokens, min_tokens=min_tokens))
        if task.type == "code" or looks_like_code(text):
            flags.extend(self.check_syntax(text))
        if task.expected_format:
            flags.extend(check_format(text, task.expected_format))

        return ValidationResult(
            valid=not any(f.severity == Severity.CRITICAL for f in flags),
            flags=flags,
            confidence=confidence_from_flags(flags),
            summary=summarize_flags(flags),
        )

    def validate_batch(
        self,
        responses: Sequence[str],
        task: TaskProfile | None = None,
        **options: int,
    ) -> list[ValidationResult]:
        return [self.validate(r, task, **options) for r in responses]

    def filter_valid(
        self,
        responses: Sequence[str],
        task: TaskProfile | None = None,
        **options: int,
    ) -> list[tuple[int, str, ValidationResult]]:
        """Return ``(index, response, result)`` for every response that passed."""
        results = self.validate_batch(responses, task, **options)
        return [(i, r, v) for i, (r, v) in enumerate(zip(responses, results)) if v.valid]

    # ── Individual checks ────────────────────────────────────────────────

    def check_hallucinations(self, text: str) -> list[Flag]:
        return [
            Flag(
                type="hallucination_marker",
                severity=rule.severity,
                message=f"Contains {rule.label} phrasing: /{rule.pattern.pattern}/",
            )
            for rule in self.hallucination_rules
            if rule.pattern.search(text)
        ]

    def check_completeness(self, text: str) -> list[Flag]:
        flags = [
            Flag(
                type="incomplete_response",
                severity=rule.severity,
                message=f"Response appears incomplete ({rule.label})",
            )
            for rule in self.incompleteness_rules
            if rule.pattern.search(text)
        ]
        problem = unbalanced_brackets(text)
        if problem:
            flags.append(
                Flag(
                    type="unbalanced_brackets",
                    severity=Severity.HIGH,
                    message=f"Unbalanced brackets: {problem}",
                )
            )
        return flags

    def check_length(
        self,
        text: str,
        task: TaskProfile,
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        min_tokens: int = DEFAULT_MIN_TOKENS,
    ) -> list[Flag]:
        flags: list[Flag] = []
        tokens = self.token_counter.count(text)

        if tokens > max_tokens:
            flags.append(
                Flag(
                    type="too_verbose",
                    severity=Severity.CRITICAL,
                    message=f"Response is excessively long ({tokens} tokens, max {max_tokens})",
                )
            )
        elif tokens > task.expected_length * LENGTH_TOLERANCE:
            flags.append(
                Flag(
                    type="possibly_verbose",
                    severity=Severity.MEDIUM,
                    message=(
                        f"Response is longer than expected "
                        f"({tokens} tokens, expected ~{task.expected_length})"
                    ),
                )
            )

        if tokens < min_tokens:
            flags.append(
                Flag(
                    type="too_short",
                    severity=Severity.HIGH,
                    message=f"Response is too short ({tokens} tokens, min {min_tokens})",
                )
            )
        return flags

    def check_syntax(self, text: str) -> list[Flag]:
        """Valid in any grammar mode means no flag; otherwise report the last mode's error."""
        for position, mode in enumerate(GRAMMAR_MODES, start=1):
            try:
                self.parser.parse(text, mode)
            except ParseError as e:
                if position < len(GRAMMAR_MODES):
                    continue
                return [
                    Flag(
                        type="syntax_error",
                        severity=Severity.CRITICAL,
                        message=f"Syntax error: {e.message}",
                        line=e.line,
                        column=e.column,
                    )
                ]
            return []
        return []


def looks_like_code(text: str) -> bool:
    return any(pattern.search(text) for pattern in CODE_INDICATORS)


def check_format(text: str, expected_format: str) -> list[Flag]:
    marker = FORMAT_MARKERS.get(expected_format)
    if marker is None:
        return []
    pattern, message = marker
    if pattern.search(text):
        return []
    return [Flag(type="format_mismatch", severity=Severity.HIGH, message=message)]


def unbalanced_brackets(text: str) -> str | None:
    """Return a description of the first bracket problem, or None if balanced."""
    stack: list[str] = []
    for char in text:
        if char in _BRACKET_PAIRS:
            stack.append(char)
        elif char in _CLOSERS:
            if not stack or stack.pop() != _CLOSERS[char]:
                return f"Unexpected '{char}' without matching opening"
    if stack:
        return f"Unclosed '{stack[-1]}'"
    return None


def confidence_from_flags(flags: Sequence[Flag]) -> float:
    penalty = sum(SEVERITY_WEIGHTS[f.severity] for f in flags)
    return max(0.0, 1.0 - penalty)


def summarize_flags(flags: Sequence[Flag]) -> str:
    if not flags:
        return "Response passed all validation checks"

    summary = f"Found {len(flags)} issue(s)"
    for severity in (Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM):
        count = sum(1 for f in flags if f.severity == severity)
        if count:
            summary += f" ({count} {severity.value})"
    return summary
