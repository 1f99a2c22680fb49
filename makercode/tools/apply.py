"""Apply voted subtask results to the working tree (cwd-relative, traversal-safe)."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from makercode.maker.types import SubtaskType
from makercode.parsing import strip_code_fences
from makercode.safety.guardrails import SafetyGuard

logger = logging.getLogger(__name__)


def _safe_resolve(path: str, cwd: str) -> Path:
    """Resolve *path* relative to *cwd* and ensure it stays inside the tree."""
    root = Path(cwd).resolve()
    full = (root / path).resolve()
    if not (full == root or str(full).startswith(str(root) + "/")):
        raise PermissionError(f"Path traversal blocked: '{path}' resolves outside project root")
    return full


@dataclass
class AppliedChange:
    """What one ``apply`` call did (or would have done, in dry-run mode)."""

    action: str
    target: str
    dry_run: bool
    detail: str = ""


Handler = Callable[["ResultApplier", str, str], Awaitable[AppliedChange]]


class ResultApplier:
    """Turn a subtask's winning text into a file-system mutation.

    Every ``SubtaskType`` has exactly one handler in ``HANDLERS``; adding a
    new type without a handler fails at import time.

    ``create``/``write`` extend a target that already has content, so a
    multi-step run builds one file up step by step. ``edit`` replaces the
    target with the winner, which is expected to be the complete file. In
    dry-run mode written content is staged in memory and ``read`` returns it,
    so later steps see earlier ones.

    Usage:
        applier = ResultApplier(cwd=".", dry_run=True)
        change = await applier.apply(SubtaskType.CREATE, "utils.py", code)
        print(change.action, change.target)
    """

    def __init__(
        self,
        cwd: str = ".",
        dry_run: bool = False,
        guard: SafetyGuard | None = None,
    ) -> None:
        self.cwd = str(Path(cwd).resolve())
        self.dry_run = dry_run
        self.guard = guard or SafetyGuard()
        self.changes: list[AppliedChange] = []
        self._staged: dict[Path, str | None] = {}

    async def read(self, target: str) -> str | None:
        """Current text of *target*, or None when it is not a readable file."""
        if not _has_target(target):
            return None
        full_path = _safe_resolve(target, self.cwd)
        if full_path in self._staged:
            return self._staged[full_path]

        def _read() -> str | None:
            if not full_path.is_file():
                return None
            return full_path.read_text(encoding="utf-8", errors="replace")

        return await asyncio.get_running_loop().run_in_executor(None, _read)

    async def apply(self, subtask_type: SubtaskType, target: str, result: str) -> AppliedChange:
        handler = HANDLERS[SubtaskType(subtask_type)]
        change = await handler(self, target, result)
        self.changes.append(change)
        logger.info(
            "%s %s: %s%s",
            change.action,
            change.target,
            change.detail,
            " (dry run)" if change.dry_run else "",
        )
        return change

    # ── Handlers ─────────────────────────────────────────────────────────

    async def _extend(self, target: str, result: str) -> AppliedChange:
        if not _has_target(target):
            return AppliedChange("skip", target, self.dry_run, "no target file")

        addition = _normalise(result)
        existing = await self.read(target)
        # A winner that starts with the current file is a full rewrite.
        if not existing or not existing.strip() or addition.lstrip().startswith(existing.strip()):
            return await self._store(target, addition, f"{len(addition)} chars")
        content = existing.rstrip("\n") + "\n\n\n" + addition
        return await self._store(target, content, f"appended {len(addition)} chars")

    async def _write(self, target: str, result: str) -> AppliedChange:
        if not _has_target(target):
            return AppliedChange("skip", target, self.dry_run, "no target file")

        content = _normalise(result)
        return await self._store(target, content, f"{len(content)} chars")

    async def _store(self, target: str, content: str, detail: str) -> AppliedChange:
        full_path = _safe_resolve(target, self.cwd)

        violations = self.guard.check_write(target, content)
        if self.guard.should_block(violations):
            raise PermissionError(
                f"Refusing to write {target}: {self.guard.format_violations(violations)}"
            )
        for v in violations:
            logger.warning("Safety warning for %s: %s", target, v.description)

        if self.dry_run:
            self._staged[full_path] = content
            return AppliedChange("write", target, True, detail)

        def _do_write() -> None:
            full_path.parent.mkdir(parents=True, exist_ok=True)
            full_path.write_text(content, encoding="utf-8")

        await asyncio.get_running_loop().run_in_executor(None, _do_write)
        return AppliedChange("write", target, False, detail)

    async def _delete(self, target: str, result: str) -> AppliedChange:
        if not _has_target(target):
            return AppliedChange("skip", target, self.dry_run, "no target file")

        violations = self.guard.check_file_delete(target)
        if violations:
            raise PermissionError(
                f"Refusing to delete {target}: {self.guard.format_violations(violations)}"
            )
        full_path = _safe_resolve(target, self.cwd)

        if self.dry_run:
            self._staged[full_path] = None
            return AppliedChange("delete", target, True)

        def _do_delete() -> str:
            if not full_path.exists():
                raise FileNotFoundError(f"File not found: {target}")
            if full_path.is_dir():
                raise IsADirectoryError(f"Refusing to delete directory: {target}")
            full_path.unlink()
            return f"deleted {full_path}"

        detail = await asyncio.get_running_loop().run_in_executor(None, _do_delete)
        return AppliedChange("delete", target, False, detail)

    async def _noop(self, target: str, result: str) -> AppliedChange:
        return AppliedChange("none", target, self.dry_run, "no file change")


def _has_target(target: str) -> bool:
    return bool(target) and target != "unknown"


def _normalise(result: str) -> str:
    content = strip_code_fences(result)
    if not content.endswith("\n"):
        content += "\n"
    return content


HANDLERS: dict[SubtaskType, Handler] = {
    SubtaskType.CREATE: ResultApplier._extend,
    SubtaskType.WRITE: ResultApplier._extend,
    SubtaskType.EDIT: ResultApplier._write,
    SubtaskType.DELETE: ResultApplier._delete,
    SubtaskType.READ: ResultApplier._noop,
    SubtaskType.EXECUTE: ResultApplier._noop,
}

if set(HANDLERS) != set(SubtaskType):
    raise RuntimeError(f"Missing apply handlers: {set(SubtaskType) - set(HANDLERS)}")
