"""Task decomposition into minimal, dependency-ordered subtasks.

Smaller steps mean higher per-step reliability: each step needs less
context and its candidates are cheaper to vote on. The decomposer asks the
completion provider for a tagged step list and falls back to a keyword and
sentence heuristic whenever that does not produce anything usable.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from collections.abc import Sequence
from datetime import UTC, datetime

from makercode.llm.provider import CompletionProvider
from makercode.maker.errors import CyclicDependencyError
from makercode.maker.types import (
    Complexity,
    ComplexityLevel,
    DependencyNode,
    Plan,
    Subtask,
    SubtaskStatus,
    SubtaskType,
    TaskContext,
)
from makercode.tokens import TokenCounter

logger = logging.getLogger(__name__)

# Extra tokens a step of each type tends to need beyond its description.
TYPE_OVERHEAD: dict[SubtaskType, int] = {
    SubtaskType.CREATE: 100,
    SubtaskType.WRITE: 80,
    SubtaskType.EDIT: 60,
    SubtaskType.READ: 40,
    SubtaskType.DELETE: 20,
    SubtaskType.EXECUTE: 50,
}
DEFAULT_OVERHEAD = 50

# First match wins, in this order.
_VERB_PATTERNS: list[tuple[SubtaskType, re.Pattern[str]]] = [
    (SubtaskType.CREATE, re.compile(r"\b(?:create|add|implement|write|new)", re.IGNORECASE)),
    (SubtaskType.READ, re.compile(r"\b(?:read|get|fetch|load|check)", re.IGNORECASE)),
    (SubtaskType.EDIT, re.compile(r"\b(?:modify|update|change|edit|fix)", re.IGNORECASE)),
    (SubtaskType.DELETE, re.compile(r"\b(?:remove|delete|clear)", re.IGNORECASE)),
]

_SENTENCE_SPLIT = re.compile(r"[.;]")
_CONJUNCTION = re.compile(r"\b(?:and|then|also|plus)\b", re.IGNORECASE)
_CONJUNCTION_SPLIT = re.compile(r"\s+(?:and|then|also|plus)\s+", re.IGNORECASE)

_STEP_PATTERN = re.compile(
    r"STEP\s+(\d+):\s*(.+?)\s*-\s*(.+?)\s*TYPE:\s*(\w+)\s*TARGET:\s*(.+?)\s*"
    r"DEPENDS:\s*(.+?)(?=\n\s*\n|\n\s*STEP\s+\d+:|\n*\Z)",
    re.DOTALL | re.IGNORECASE,
)
_LOOSE_STEP_LINE = re.compile(r"^\s*(?:STEP\b|\d+[.)])", re.IGNORECASE)
_LOOSE_STEP_PREFIX = re.compile(r"^\s*(?:STEP\s*\d+:?\s*|\d+[.)]\s*)", re.IGNORECASE)

_SYSTEM_PROMPT = (
    "You are an expert at breaking down programming tasks into minimal atomic "
    "steps. Each step should be simple, focused, and independently executable."
)


class TaskDecomposer:
    """Turn a task description into a dependency-ordered :class:`Plan`.

    Usage:
        decomposer = TaskDecomposer(provider)
        plan = await decomposer.decompose("Add a parser. Then test it.")
        for subtask_id in plan.execution_order:
            ...
    """

    def __init__(
        self,
        provider: CompletionProvider | None = None,
        token_counter: TokenCounter | None = None,
        temperature: float = 0.3,
        max_tokens: int = 1000,
    ) -> None:
        self.provider = provider
        self.token_counter = token_counter or TokenCounter()
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def decompose(
        self,
        description: str,
        context: TaskContext | None = None,
        *,
        use_ai: bool = True,
    ) -> Plan:
        """Decompose *description* into a plan of atomic subtasks."""
        context = context or TaskContext()
        logger.info("Decomposing task: %s", description[:80])

        if use_ai and self.provider is not None:
            raw = await self._decompose_with_ai(self.provider, description, context)
        else:
            raw = self.decompose_rule_based(description, context)

        subtasks = normalize_subtasks(raw)
        graph = build_dependency_graph(subtasks)
        order = topological_sort(graph)
        complexity = self.estimate_complexity(subtasks)

        logger.info(
            "Decomposed into %d subtasks (depth %d, %s complexity)",
            complexity.total_steps,
            complexity.max_depth,
            complexity.complexity,
        )
        return Plan(
            original_task=description,
            subtasks=subtasks,
            dependency_graph=graph,
            execution_order=order,
            complexity=complexity,
        )

    # ── AI-assisted ──────────────────────────────────────────────────────

    async def _decompose_with_ai(
        self, provider: CompletionProvider, description: str, context: TaskContext
    ) -> list[Subtask]:
        messages = [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": build_decompose_prompt(description, context)},
        ]
        try:
            response = await provider.complete(
                messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                stream=False,
            )
        except Exception as e:
            logger.warning("AI decomposition failed, falling back to rule-based: %s", e)
            return self.decompose_rule_based(description, context)

        subtasks = self.parse_decomposition(response.content or "")
        if not subtasks:
            logger.warning("Could not parse AI decomposition, falling back to rule-based")
            return self.decompose_rule_based(description, context)
        return subtasks

    def parse_decomposition(self, response: str) -> list[Subtask]:
        """Parse the tagged ``STEP n`` format, then a looser numbered-line form."""
        subtasks: list[Subtask] = []
        for match in _STEP_PATTERN.finditer(response):
            step_num, action, desc, type_str, target, depends_str = match.groups()
            subtask_type = SubtaskType.parse(type_str)
            subtasks.append(
                Subtask(
                    id=int(step_num),
                    action=action.strip(),
                    description=desc.strip(),
                    type=subtask_type,
                    target=target.strip(),
                    depends=_parse_depends(depends_str),
                    estimated_tokens=self.estimate_step_tokens(subtask_type, desc),
                )
            )
        if subtasks:
            return subtasks

        lines = [line for line in response.splitlines() if line.strip()]
        for idx, line in enumerate(lines):
            if not _LOOSE_STEP_LINE.match(line):
                continue
            desc = _LOOSE_STEP_PREFIX.sub("", line).strip()
            subtasks.append(
                Subtask(
                    id=idx + 1,
                    action="execute",
                    description=desc,
                    type=SubtaskType.EXECUTE,
                    depends=[idx] if idx > 0 else [],
                    estimated_tokens=self.estimate_step_tokens(SubtaskType.EXECUTE, desc),
                )
            )
        return subtasks

    # ── Rule-based ───────────────────────────────────────────────────────

    def decompose_rule_based(
        self,
        description: str,
        context: TaskContext | None = None,
    ) -> list[Subtask]:
        """Split on sentence boundaries, or on conjunctions for a single sentence."""
        context = context or TaskContext()
        subtask_type = classify_task(description)
        target = context.files[0] if context.files else "unknown"

        parts = [s.strip() for s in _SENTENCE_SPLIT.split(description) if s.strip()]
        if len(parts) == 1 and _CONJUNCTION.search(parts[0]):
            parts = [p.strip() for p in _CONJUNCTION_SPLIT.split(parts[0]) if p.strip()]
        if not parts:
            parts = [description.strip() or description]

        return [
            Subtask(
                id=idx + 1,
                action=str(subtask_type),
                description=part,
                type=subtask_type,
                target=target,
                depends=[idx] if idx > 0 else [],
                estimated_tokens=self.estimate_step_tokens(subtask_type, part),
            )
            for idx, part in enumerate(parts)
        ]

    # ── Estimates ────────────────────────────────────────────────────────

    def estimate_step_tokens(self, subtask_type: SubtaskType | str, description: str) -> int:
        overhead = TYPE_OVERHEAD.get(SubtaskType.parse(str(subtask_type)), DEFAULT_OVERHEAD)
        return self.token_counter.count(description) + overhead

    def estimate_complexity(self, subtasks: Sequence[Subtask]) -> Complexity:
        total_steps = len(subtasks)
        total_tokens = sum(s.estimated_tokens for s in subtasks)
        by_id = {s.id: s for s in subtasks}

        def depth(subtask: Subtask, path: frozenset[int]) -> int:
            if subtask.id in path:
                return 0
            if not subtask.depends:
                return 1
            path = path | {subtask.id}
            dep_depths = [
                depth(by_id[dep_id], path) if dep_id in by_id else 0
                for dep_id in subtask.depends
            ]
            return 1 + max(dep_depths)

        max_depth = max((depth(s, frozenset()) for s in subtasks), default=0)
        parallelizable = sum(1 for s in subtasks if not s.depends)

        if max_depth > 5:
            level = ComplexityLevel.HIGH
        elif max_depth > 2:
            level = ComplexityLevel.MEDIUM
        else:
            level = ComplexityLevel.LOW

        return Complexity(
            total_steps=total_steps,
            total_tokens=total_tokens,
            max_depth=max_depth,
            parallelizable=parallelizable,
            avg_tokens_per_step=round(total_tokens / total_steps) if total_steps else 0,
            complexity=level,
        )

    # ── Progress helpers ─────────────────────────────────────────────────

    @staticmethod
    def get_ready_subtasks(subtasks: Sequence[Subtask]) -> list[Subtask]:
        """Pending subtasks whose dependencies have all completed."""
        status = {s.id: s.status for s in subtasks}
        return [
            s
            for s in subtasks
            if s.status == SubtaskStatus.PENDING
            and all(status.get(dep) == SubtaskStatus.COMPLETED for dep in s.depends)
        ]

    @staticmethod
    def complete_subtask(plan: Plan, subtask_id: int) -> Subtask | None:
        """Flip a subtask from pending to completed. Returns it, or None if unknown."""
        subtask = plan.get(subtask_id)
        if subtask is None:
            return None
        if subtask.status != SubtaskStatus.COMPLETED:
            subtask.status = SubtaskStatus.COMPLETED
            subtask.completed_at = datetime.now(UTC).isoformat()
        return subtask


def classify_task(description: str) -> SubtaskType:
    for subtask_type, pattern in _VERB_PATTERNS:
        if pattern.search(description):
            return subtask_type
    return SubtaskType.EXECUTE


def _parse_depends(depends_str: str) -> list[int]:
    text = depends_str.strip().lower()
    if not text or text == "none":
        return []
    depends: list[int] = []
    for part in text.split(","):
        digits = re.search(r"\d+", part)
        if digits:
            depends.append(int(digits.group()))
    return depends


def normalize_subtasks(subtasks: Sequence[Subtask]) -> list[Subtask]:
    """Renumber subtasks 1..N in order and remap their dependencies.

    A dependency that names an unknown step, the step itself, or a later
    step is dropped, so every surviving edge points strictly backwards.
    """
    new_ids: dict[int, int] = {}
    for position, subtask in enumerate(subtasks, start=1):
        new_ids.setdefault(subtask.id, position)

    normalized: list[Subtask] = []
    for position, subtask in enumerate(subtasks, start=1):
        depends: list[int] = []
        for old_id in subtask.depends:
            new_id = new_ids.get(old_id)
            if new_id is None or new_id >= position or new_id in depends:
                continue
            depends.append(new_id)
        normalized.append(dataclasses.replace(subtask, id=position, depends=depends))
    return normalized


def build_dependency_graph(subtasks: Sequence[Subtask]) -> dict[int, DependencyNode]:
    graph = {s.id: DependencyNode(task=s, depends_on=list(s.depends)) for s in subtasks}
    for subtask in subtasks:
        for dep_id in subtask.depends:
            if dep_id in graph:
                graph[dep_id].required_by.append(subtask.id)
    return graph


def topological_sort(graph: dict[int, DependencyNode]) -> list[int]:
    """Depth-first post-order: dependencies are emitted before dependents.

    Raises :class:`CyclicDependencyError` when a dependency leads back to a
    node still on the current path. Unknown dependency ids are ignored.
    """
    visited: set[int] = set()
    on_path: list[int] = []
    order: list[int] = []

    def visit(node_id: int) -> None:
        if node_id in on_path:
            start = on_path.index(node_id)
            raise CyclicDependencyError(on_path[start:] + [node_id])
        if node_id in visited or node_id not in graph:
            return
        on_path.append(node_id)
        for dep_id in graph[node_id].depends_on:
            visit(dep_id)
        on_path.pop()
        visited.add(node_id)
        order.append(node_id)

    for node_id in graph:
        visit(node_id)
    return order


def build_decompose_prompt(description: str, context: TaskContext) -> str:
    parts = [
        f"Break down this programming task into minimal atomic steps:\n\nTASK: {description}\n"
    ]
    if context.files:
        parts.append(f"Available files: {', '.join(context.files)}")
    if context.codebase:
        parts.append(f"Codebase context: {context.codebase}")

    parts.append(
        """
RULES:
1. Each step should be atomic - one clear action
2. Steps should be 1-3 lines of code maximum
3. Each step should be independently verifiable
4. Minimize dependencies between steps
5. Order steps logically

Format each step as:
STEP N: [action] - [description]
TYPE: [read|write|edit|create|delete]
TARGET: [file/function/variable]
DEPENDS: [comma-separated step numbers or "none"]

Example:
STEP 1: Create helper function - Add validation function
TYPE: write
TARGET: utils.py
DEPENDS: none
"""
    )
    return "\n".join(parts)
