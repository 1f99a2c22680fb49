"""Source-text parsing for candidate code (Python grammar via ``ast``)."""

from __future__ import annotations

import ast
import re
import textwrap
from typing import Literal, Protocol

GrammarMode = Literal["module", "script"]

GRAMMAR_MODES: tuple[GrammarMode, ...] = ("module", "script")

_FENCE_RE = re.compile(r"^\s*```[\w+-]*[ \t]*\n(.*?)\n\s*```\s*$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Unwrap text that is exactly one fenced Markdown block; anything else is returned as-is."""
    match = _FENCE_RE.match(text)
    return match.group(1) if match else text


class ParseError(Exception):
    """Raised when text cannot be parsed under the requested grammar mode."""

    def __init__(self, message: str, line: int | None = None, column: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.line = line
        self.column = column

    def __str__(self) -> str:
        if self.line is None:
            return self.message
        return f"{self.message} ({self.line}:{self.column or 0})"


class SourceParser(Protocol):
    """Anything that can turn text into a syntax tree."""

    def parse(self, text: str, mode: GrammarMode = "module") -> ast.AST: ...


class PythonParser:
    """Parse Python source under two grammar modes.

    - ``module``: the whole text as a module; top-level ``await`` is accepted.
    - ``script``: the dedented text as plain statements, which tolerates
      snippets that arrive uniformly indented.

    A response wrapped in a single Markdown code fence is unwrapped first.
    """

    filename = "<candidate>"

    def parse(self, text: str, mode: GrammarMode = "module") -> ast.AST:
        text = strip_code_fences(text)
        if mode == "module":
            source = text
            flags = ast.PyCF_ONLY_AST | ast.PyCF_ALLOW_TOP_LEVEL_AWAIT
        elif mode == "script":
            source = textwrap.dedent(text)
            flags = ast.PyCF_ONLY_AST
        else:
            raise ValueError(f"Unknown grammar mode: {mode!r}")

        try:
            return compile(source, self.filename, "exec", flags=flags, dont_inherit=True)
        except SyntaxError as e:
            raise ParseError(e.msg or "invalid syntax", e.lineno, e.offset) from e
        except ValueError as e:
            # e.g. source containing null bytes
            raise ParseError(str(e)) from e
