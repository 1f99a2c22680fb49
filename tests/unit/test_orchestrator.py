"""Tests for step-by-step voted execution."""

from __future__ import annotations

import asyncio
import itertools
from unittest.mock import AsyncMock

import pytest

from makercode.llm.provider import Completion, ProviderConnectionError
from makercode.maker.decomposer import TaskDecomposer
from makercode.maker.errors import ExecutionAbortedError, VotingCancelledError
from makercode.maker.orchestrator import ExecutionContext, ExecutionOptions, Orchestrator
from makercode.maker.types import (
    DependencyOutput,
    LogStatus,
    MinimalContext,
    Subtask,
    SubtaskResult,
    SubtaskType,
    TaskContext,
)
from makercode.tools.apply import ResultApplier

TWO_STEPS = "Write a function. Then write a test."
ADD = "def add(a, b):\n    return a + b\n"
SLUGIFY = 'def slugify(text):\n    return "-".join(text.lower().split())\n'
TEST_SLUGIFY = 'def test_slugify():\n    assert slugify("A B") == "a-b"\n'
LIB = "def keep_me():\n    return 1\n\n\ndef parse(x):\n    return x\n"
LIB_FIXED = "def keep_me():\n    return 1\n\n\ndef parse(x):\n    return x.strip()\n"
DISTINCT = [
    "def alpha(a, b, c):\n    return a + b + c\n",
    "class Bravo:\n    def one(self): pass\n    def two(self): pass\n",
    "import os\nimport sys\nfrom json import loads\n",
    "delta = 1\necho = 2\nfoxtrot = 3\n",
    '__all__ = ["golf"]\nhotel = lambda x, y: x * y\n',
]


def _always(content: str):
    provider = AsyncMock()
    provider.complete.side_effect = lambda *args, **kwargs: Completion(content)
    return provider


def _cycling(responses):
    pool = itertools.cycle(responses)
    provider = AsyncMock()
    provider.complete.side_effect = lambda *args, **kwargs: Completion(next(pool))
    return provider


def _options(**overrides) -> ExecutionOptions:
    return ExecutionOptions(use_ai=False, **overrides)


# ── execute_task ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_agreeing_candidates_complete_every_step():
    provider = _always(ADD)
    summary = await Orchestrator(provider).execute_task(TWO_STEPS, options=_options())

    assert summary.total_subtasks == 2
    assert summary.completed == 2
    assert summary.errors == 0
    assert summary.success_rate == 1.0
    assert summary.avg_confidence == pytest.approx(1.0)
    assert summary.k == 2
    assert [e.status for e in summary.execution_log] == [LogStatus.SUCCESS] * 2
    assert all(e.voting_stats is not None for e in summary.execution_log)
    assert provider.complete.await_count == 10


@pytest.mark.asyncio
async def test_critical_task_adds_one_to_k():
    summary = await Orchestrator(_always(ADD)).execute_task(
        TWO_STEPS, options=_options(critical_task=True)
    )
    assert summary.k == 3


@pytest.mark.asyncio
async def test_divergent_candidates_apply_with_warning():
    summary = await Orchestrator(_cycling(DISTINCT)).execute_task(TWO_STEPS, options=_options())

    assert summary.completed == 2
    assert summary.errors == 0
    assert [e.status for e in summary.execution_log] == [LogStatus.WARNING] * 2
    assert summary.results[0].warning.startswith("Margin (0)")


@pytest.mark.asyncio
async def test_strict_mode_turns_low_confidence_into_errors():
    summary = await Orchestrator(_cycling(DISTINCT)).execute_task(
        TWO_STEPS, options=_options(require_high_confidence=True)
    )

    assert summary.completed == 0
    assert summary.errors == 2
    assert summary.success_rate == 0.0
    assert summary.avg_confidence == 0.0
    entry = summary.execution_log[0]
    assert entry.status == LogStatus.ERROR
    assert "confidence threshold" in entry.error


@pytest.mark.asyncio
async def test_stop_on_error_aborts_with_partial_context():
    provider = _cycling(DISTINCT)
    options = _options(require_high_confidence=True, stop_on_error=True)

    with pytest.raises(ExecutionAbortedError) as exc:
        await Orchestrator(provider).execute_task(TWO_STEPS, options=options)

    assert "subtask 1" in str(exc.value)
    context = exc.value.context
    assert context.errors == 1
    assert len(context.log) == 1
    assert context.summary().total_subtasks == 2
    assert provider.complete.await_count == 5


@pytest.mark.asyncio
async def test_cancellation_propagates():
    cancel = asyncio.Event()
    cancel.set()
    with pytest.raises(VotingCancelledError):
        await Orchestrator(_always(ADD)).execute_task(TWO_STEPS, options=_options(cancel=cancel))


@pytest.mark.asyncio
async def test_winner_is_written_to_target(tmp_path):
    applier = ResultApplier(str(tmp_path))
    summary = await Orchestrator(_always(f"```python\n{ADD}```"), applier).execute_task(
        "Write an add function", TaskContext(files=["calc.py"]), _options()
    )

    assert summary.completed == 1
    assert (tmp_path / "calc.py").read_text() == ADD
    assert [c.action for c in applier.changes] == ["write"]


@pytest.mark.asyncio
async def test_steps_build_up_one_file(tmp_path):
    def respond(*args, **kwargs):
        user = args[0][1]["content"]
        return Completion(SLUGIFY if user.startswith("Task: Create") else TEST_SLUGIFY)

    provider = AsyncMock()
    provider.complete.side_effect = respond
    summary = await Orchestrator(provider, ResultApplier(str(tmp_path))).execute_task(
        "Create a slugify helper. Then write a test for it.",
        TaskContext(files=["text_utils.py"]),
        _options(),
    )

    assert summary.completed == 2
    content = (tmp_path / "text_utils.py").read_text()
    assert content == SLUGIFY.rstrip("\n") + "\n\n\n" + TEST_SLUGIFY

    second = provider.complete.await_args_list[-1].args[0][1]["content"]
    assert "1. Create a slugify helper\n```python\ndef slugify" in second
    assert "Current file content (text_utils.py):" in second
    assert "appended to text_utils.py" in second


@pytest.mark.asyncio
async def test_edit_keeps_the_rest_of_the_file(tmp_path):
    (tmp_path / "lib.py").write_text(LIB)
    provider = _always(LIB_FIXED)
    summary = await Orchestrator(provider, ResultApplier(str(tmp_path))).execute_task(
        "Fix parse to strip whitespace", TaskContext(files=["lib.py"]), _options()
    )

    assert summary.plan.subtasks[0].type == SubtaskType.EDIT
    assert summary.completed == 1
    assert (tmp_path / "lib.py").read_text() == LIB_FIXED
    user = provider.complete.await_args.args[0][1]["content"]
    assert "def keep_me" in user
    assert "complete updated content of lib.py" in user


@pytest.mark.asyncio
async def test_edit_of_file_over_budget_is_refused(tmp_path):
    original = "x = 1\n" * 500
    (tmp_path / "big.py").write_text(original)
    provider = _always(ADD)
    summary = await Orchestrator(provider, ResultApplier(str(tmp_path))).execute_task(
        "Fix the parser", TaskContext(files=["big.py"]), _options(context_token_budget=50)
    )

    assert summary.errors == 1
    assert "context budget" in summary.execution_log[0].error
    provider.complete.assert_not_awaited()
    assert (tmp_path / "big.py").read_text() == original


@pytest.mark.asyncio
async def test_connection_error_ends_the_run():
    provider = AsyncMock()
    provider.complete.side_effect = ProviderConnectionError("refused")
    with pytest.raises(ProviderConnectionError):
        await Orchestrator(provider).execute_task(TWO_STEPS, options=_options())
    assert provider.complete.await_count == 1


@pytest.mark.asyncio
async def test_default_applier_is_dry_run(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    orchestrator = Orchestrator(_always(ADD))
    await orchestrator.execute_task(
        "Write an add function", TaskContext(files=["calc.py"]), _options()
    )
    assert not (tmp_path / "calc.py").exists()
    assert orchestrator.applier.changes[0].dry_run is True


# ── Context and prompt ───────────────────────────────────────


@pytest.mark.asyncio
async def test_minimal_context_keeps_only_direct_dependencies(tmp_path):
    (tmp_path / "big.py").write_text("x = 1\n" * 500)
    orchestrator = Orchestrator(_always(ADD), ResultApplier(str(tmp_path)))
    subtask = Subtask(
        id=3, description="Fix it", type=SubtaskType.EDIT, target="big.py", depends=[2]
    )
    previous = [
        SubtaskResult(subtask_id=1, description="first", result="a = 1", confidence=1.0),
        SubtaskResult(subtask_id=2, description="second", result="b = 2", confidence=1.0),
    ]
    context = TaskContext(relevant_files=["a.py", "b.py", "c.py"])

    minimal = await orchestrator.build_minimal_context(subtask, context, previous, 50)

    assert [d.subtask_id for d in minimal.dependencies] == [2]
    assert minimal.relevant_files == ["a.py", "b.py"]
    assert minimal.target_file is not None
    assert minimal.target_file.truncated is True
    assert len(minimal.target_file.content) < 3000


@pytest.mark.asyncio
async def test_minimal_context_skips_missing_target(tmp_path):
    orchestrator = Orchestrator(_always(ADD), ResultApplier(str(tmp_path)))
    subtask = Subtask(id=1, description="Read it", type=SubtaskType.READ, target="missing.py")
    minimal = await orchestrator.build_minimal_context(subtask, TaskContext(), [])
    assert minimal.target_file is None


def test_prompt_layout():
    subtask = Subtask(id=2, description="Add a test", type=SubtaskType.WRITE, target="test_x.py")
    context = MinimalContext(
        task="Add a test",
        type=SubtaskType.WRITE,
        target="test_x.py",
        dependencies=[DependencyOutput(1, "Create a slugify helper", SLUGIFY)],
        relevant_files=["x.py"],
    )
    messages = Orchestrator.build_subtask_prompt(subtask, context)

    assert messages[0]["role"] == "system"
    assert "focused coding agent" in messages[0]["content"]
    user = messages[1]["content"]
    assert user.startswith("Task: Add a test")
    assert "Operation: write" in user
    assert "Target: test_x.py" in user
    assert "Previous steps:\n1. Create a slugify helper\n```python\ndef slugify" in user
    assert "Relevant files: x.py" in user
    assert "- Write ONLY the code needed for this specific step" in user
    assert user.endswith("- Output valid Python code")


def test_prompt_omits_unknown_target():
    subtask = Subtask(id=1, description="Do it")
    context = MinimalContext(task="Do it", type=SubtaskType.EXECUTE, target="unknown")
    user = Orchestrator.build_subtask_prompt(subtask, context)[1]["content"]
    assert "Target:" not in user
    assert "Previous steps:" not in user


# ── Progress ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_progress_and_empty_summary():
    plan = await TaskDecomposer().decompose(TWO_STEPS)
    execution = ExecutionContext(plan=plan, k=2)

    progress = execution.progress()
    assert progress["status"] == "executing"
    assert progress["completed"] == 0
    assert progress["total"] == 2
    assert progress["current_subtask"]["id"] == 1
    assert execution.summary().avg_confidence == 0.0

    for subtask in plan.subtasks:
        TaskDecomposer.complete_subtask(plan, subtask.id)
    progress = execution.progress()
    assert progress["status"] == "done"
    assert progress["progress"] == 1.0
    assert progress["current_subtask"] is None
