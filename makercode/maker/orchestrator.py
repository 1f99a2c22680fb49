"""Run a decomposed task step by step, voting on every step.

Phases:
  1. decompose the task into a plan
  2. pick k from the plan size (plus one for critical tasks)
  3. for each subtask in dependency order: build a minimal context,
     vote, apply the winner, log the outcome
  4. summarise

Each call to :meth:`Orchestrator.execute_task` owns a fresh
:class:`ExecutionContext`, so one orchestrator can serve concurrent runs.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from makercode.llm.provider import CompletionProvider, Message, ProviderConnectionError
from makercode.maker.decomposer import TaskDecomposer
from makercode.maker.errors import (
    ExecutionAbortedError,
    SubtaskExecutionError,
    VotingCancelledError,
)
from makercode.maker.types import (
    DependencyOutput,
    ExecutionLogEntry,
    ExecutionSummary,
    LogStatus,
    MinimalContext,
    Plan,
    Subtask,
    SubtaskResult,
    SubtaskStatus,
    SubtaskType,
    TargetFile,
    TaskContext,
    TaskProfile,
)
from makercode.maker.voting import VotingManager
from makercode.parsing import strip_code_fences
from makercode.tokens import TokenCounter

if TYPE_CHECKING:
    from makercode.tools.apply import ResultApplier

logger = logging.getLogger(__name__)

MAX_RELEVANT_FILES = 2
DEFAULT_EXPECTED_LENGTH = 200

_TARGET_CONTEXT_TYPES = (
    SubtaskType.READ,
    SubtaskType.EDIT,
    SubtaskType.CREATE,
    SubtaskType.WRITE,
)

_SYSTEM_PROMPT = (
    "You are a focused coding agent. Complete the specific task exactly as "
    "described. Be concise and precise."
)


@dataclass
class ExecutionOptions:
    """Knobs for one :meth:`Orchestrator.execute_task` call."""

    use_ai: bool = True
    base_reliability: float = 0.7
    critical_task: bool = False
    max_candidates: int = 5
    temperature: float = 0.7
    max_tokens: int | None = None
    require_high_confidence: bool = False
    stop_on_error: bool = False
    context_token_budget: int = 500
    cancel: asyncio.Event | None = None


@dataclass
class ExecutionContext:
    """Mutable state of a single execution. Log and results are append-only."""

    plan: Plan
    k: int
    log: list[ExecutionLogEntry] = field(default_factory=list)
    results: list[SubtaskResult] = field(default_factory=list)
    completed: int = 0
    errors: int = 0

    def progress(self) -> dict[str, Any]:
        subtasks = self.plan.subtasks
        done = sum(1 for s in subtasks if s.status == SubtaskStatus.COMPLETED)
        current = next((s for s in subtasks if s.status == SubtaskStatus.PENDING), None)
        return {
            "status": "executing" if current else "done",
            "completed": done,
            "total": len(subtasks),
            "progress": done / len(subtasks) if subtasks else 1.0,
            "current_subtask": current.to_dict() if current else None,
        }

    def summary(self) -> ExecutionSummary:
        total = len(self.plan.subtasks)
        confidences = [r.confidence for r in self.results]
        return ExecutionSummary(
            task=self.plan.original_task,
            total_subtasks=total,
            completed=self.completed,
            errors=self.errors,
            success_rate=self.completed / total if total else 0.0,
            avg_confidence=sum(confidences) / len(confidences) if confidences else 0.0,
            k=self.k,
            execution_log=list(self.log),
            results=list(self.results),
            plan=self.plan,
        )


class Orchestrator:
    """Decompose, vote, apply.

    Usage:
        orchestrator = Orchestrator(provider, ResultApplier(cwd, dry_run=True))
        summary = await orchestrator.execute_task(
            "Create a slugify helper. Then write a test for it.",
            TaskContext(files=["text_utils.py"]),
            ExecutionOptions(critical_task=True),
        )
        print(summary.success_rate)
    """

    def __init__(
        self,
        provider: CompletionProvider,
        applier: ResultApplier | None = None,
        token_counter: TokenCounter | None = None,
        decomposer: TaskDecomposer | None = None,
        voting: VotingManager | None = None,
    ) -> None:
        self.provider = provider
        self.token_counter = token_counter or TokenCounter()
        if applier is None:
            from makercode.tools.apply import ResultApplier

            applier = ResultApplier(dry_run=True)
        self.applier = applier
        self.decomposer = decomposer or TaskDecomposer(provider, self.token_counter)
        self.voting = voting or VotingManager(provider, self.token_counter)

    async def execute_task(
        self,
        description: str,
        context: TaskContext | None = None,
        options: ExecutionOptions | None = None,
    ) -> ExecutionSummary:
        context = context or TaskContext()
        options = options or ExecutionOptions()

        # Phase 1: decompose
        plan = await self.decomposer.decompose(description, context, use_ai=options.use_ai)

        # Phase 2: voting margin for the whole plan
        k = self.voting.calculate_optimal_k(
            plan.complexity.total_steps, options.base_reliability or 0.7
        )
        if options.critical_task:
            k += 1
        logger.info("Executing %d subtasks with k=%d", len(plan.subtasks), k)

        # Phase 3: one voted step at a time
        execution = ExecutionContext(plan=plan, k=k)
        for position, subtask_id in enumerate(plan.execution_order, start=1):
            subtask = plan.get(subtask_id)
            if subtask is None:
                continue
            logger.info(
                "[%d/%d] %s: %s",
                position,
                len(plan.execution_order),
                subtask.type,
                subtask.description,
            )
            try:
                await self._run_subtask(subtask, context, options, execution)
            except (VotingCancelledError, ProviderConnectionError) as e:
                execution.errors += 1
                execution.log.append(self._error_entry(subtask, e))
                logger.error("Execution stopped at subtask %d: %s", subtask.id, e)
                raise
            except Exception as e:
                execution.errors += 1
                execution.log.append(self._error_entry(subtask, e))
                logger.warning("Subtask %d failed: %s", subtask.id, e)
                if options.stop_on_error:
                    logger.error("Stopping execution after subtask %d failed", subtask.id)
                    raise ExecutionAbortedError(
                        f"Execution aborted at subtask {subtask.id}: {e}", execution
                    ) from e
            finally:
                self.decomposer.complete_subtask(plan, subtask.id)

        # Phase 4: summarise
        summary = execution.summary()
        logger.info(
            "Execution complete: %d/%d subtasks, success rate %.1f%%, avg confidence %.1f%%",
            summary.completed,
            summary.total_subtasks,
            summary.success_rate * 100,
            summary.avg_confidence * 100,
        )
        return summary

    async def _run_subtask(
        self,
        subtask: Subtask,
        context: TaskContext,
        options: ExecutionOptions,
        execution: ExecutionContext,
    ) -> None:
        minimal = await self.build_minimal_context(
            subtask, context, execution.results, options.context_token_budget
        )
        target_file = minimal.target_file
        if subtask.type == SubtaskType.EDIT and target_file and target_file.truncated:
            raise SubtaskExecutionError(
                subtask.id,
                f"{subtask.target} exceeds the context budget of "
                f"{options.context_token_budget} tokens and cannot be rewritten safely",
            )
        messages = self.build_subtask_prompt(subtask, minimal)
        profile = TaskProfile(
            type="code",
            expected_length=subtask.estimated_tokens or DEFAULT_EXPECTED_LENGTH,
            estimated_steps=1,
            critical=options.critical_task,
            base_reliability=options.base_reliability,
        )

        result = await self.voting.vote(
            messages,
            profile,
            k=execution.k,
            max_candidates=options.max_candidates,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            cancel=options.cancel,
        )

        if not result.reliable and options.require_high_confidence:
            raise SubtaskExecutionError(
                subtask.id, f"Subtask failed confidence threshold: {result.warning}"
            )

        await self.applier.apply(subtask.type, subtask.target, result.winner)
        execution.completed += 1
        execution.results.append(
            SubtaskResult(
                subtask_id=subtask.id,
                description=subtask.description,
                result=result.winner,
                confidence=result.confidence,
                warning=None if result.reliable else result.warning,
            )
        )

        if result.reliable:
            status = LogStatus.SUCCESS
            logger.info("Subtask %d completed (confidence %.2f)", subtask.id, result.confidence)
        else:
            status = LogStatus.WARNING
            logger.warning(
                "Subtask %d applied with low confidence (%.2f)", subtask.id, result.confidence
            )
        execution.log.append(
            ExecutionLogEntry(
                subtask_id=subtask.id,
                description=subtask.description,
                status=status,
                confidence=result.confidence,
                warning=None if result.reliable else result.warning,
                voting_stats=result.voting_stats,
            )
        )

    @staticmethod
    def _error_entry(subtask: Subtask, error: Exception) -> ExecutionLogEntry:
        return ExecutionLogEntry(
            subtask_id=subtask.id,
            description=subtask.description,
            status=LogStatus.ERROR,
            error=str(error),
        )

    # ── Context and prompt ───────────────────────────────────────────────

    async def build_minimal_context(
        self,
        subtask: Subtask,
        context: TaskContext,
        previous_results: list[SubtaskResult],
        token_budget: int = 500,
    ) -> MinimalContext:
        """Only what this step needs: its own fields, direct dependency outputs,
        the current target file, and at most two relevant files.

        Dependency outputs and the target file are each cut to *token_budget*.
        """
        dependencies = [
            DependencyOutput(
                subtask_id=r.subtask_id,
                description=r.description,
                result=self.token_counter.truncate_to_limit(
                    strip_code_fences(r.result), token_budget
                ),
            )
            for r in previous_results
            if r.subtask_id in subtask.depends
        ]

        target_file = None
        if subtask.type in _TARGET_CONTEXT_TYPES:
            try:
                content = await self.applier.read(subtask.target)
            except OSError as e:
                logger.warning("Could not read target file %s: %s", subtask.target, e)
                content = None
            if content is not None:
                truncated = self.token_counter.count(content) > token_budget
                if truncated:
                    content = self.token_counter.truncate_to_limit(content, token_budget)
                target_file = TargetFile(path=subtask.target, content=content, truncated=truncated)

        return MinimalContext(
            task=subtask.description,
            type=subtask.type,
            target=subtask.target,
            dependencies=dependencies,
            target_file=target_file,
            relevant_files=list(context.relevant_files[:MAX_RELEVANT_FILES]),
        )

    @staticmethod
    def build_subtask_prompt(subtask: Subtask, context: MinimalContext) -> list[Message]:
        lines = [f"Task: {subtask.description}", "", f"Operation: {subtask.type}"]
        if subtask.target and subtask.target != "unknown":
            lines.append(f"Target: {subtask.target}")
        lines.append("")

        if context.dependencies:
            lines.append("Previous steps:")
            for i, dep in enumerate(context.dependencies, start=1):
                lines.append(f"{i}. {dep.description}")
                if dep.result.strip():
                    lines.append(f"```python\n{dep.result.rstrip()}\n```")
            lines.append("")

        if context.relevant_files:
            lines.append(f"Relevant files: {', '.join(context.relevant_files)}")
            lines.append("")

        if context.target_file:
            lines.append(f"Current file content ({context.target_file.path}):")
            lines.append(f"```python\n{context.target_file.content}\n```")
            if context.target_file.truncated:
                lines.append("(Content truncated for brevity)")
            lines.append("")

        lines.append("Requirements:")
        if context.target_file and subtask.type == SubtaskType.EDIT:
            lines.append(
                f"- Output the complete updated content of {context.target_file.path}, "
                "keeping everything this step does not change"
            )
        elif context.target_file and subtask.type in (SubtaskType.CREATE, SubtaskType.WRITE):
            lines.append(
                "- Write ONLY the new code for this step; it is appended to "
                f"{context.target_file.path} and the current content is kept"
            )
        else:
            lines.append("- Write ONLY the code needed for this specific step")
        lines += [
            "- Keep it minimal and focused",
            "- Do not include explanations or comments (unless required)",
            "- Output valid Python code",
        ]
        return [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": "\n".join(lines)},
        ]
