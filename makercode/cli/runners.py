"""Async runner functions for CLI commands (no Typer coupling)."""

from __future__ import annotations

import asyncio
import contextlib
import json
import signal
import time
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from makercode.config import MakerConfig
from makercode.llm.provider import LangChainProvider, ProviderConnectionError
from makercode.maker.decomposer import TaskDecomposer
from makercode.maker.errors import ExecutionAbortedError, MakerError, VotingCancelledError
from makercode.maker.orchestrator import ExecutionOptions, Orchestrator
from makercode.maker.types import (
    ExecutionSummary,
    LogStatus,
    Plan,
    TaskContext,
    TaskProfile,
    VotingResult,
)
from makercode.maker.voting import VotingManager
from makercode.tokens import TokenCounter
from makercode.tools.apply import ResultApplier

console = Console()
err_console = Console(stderr=True)

VOTE_MODES = ("standard", "adaptive", "quick", "reliable")

_STATUS_STYLE = {
    LogStatus.SUCCESS: "[green]✓ success[/green]",
    LogStatus.WARNING: "[yellow]⚠ warning[/yellow]",
    LogStatus.ERROR: "[red]✗ error[/red]",
}


def build_provider(cfg: MakerConfig) -> LangChainProvider:
    return LangChainProvider(model_name=cfg.model_name, api_base=cfg.api_base)


def build_voting(provider: Any, cfg: MakerConfig, counter: TokenCounter) -> VotingManager:
    return VotingManager(
        provider,
        counter,
        default_k=cfg.default_k,
        max_candidates=cfg.max_candidates,
        similarity_threshold=cfg.similarity_threshold,
        temperature=cfg.temperature,
        max_tokens=cfg.max_tokens,
    )


def _emit_json(data: dict[str, Any]) -> None:
    console.print_json(json.dumps(data, default=str))


# ── Rendering ────────────────────────────────────────────────────────────


def render_plan(plan: Plan) -> None:
    table = Table(
        title=f"[bold cyan]Plan[/bold cyan]: {escape(plan.original_task[:60])}",
        border_style="cyan",
    )
    table.add_column("#", justify="right")
    table.add_column("Type", style="cyan")
    table.add_column("Target", style="dim")
    table.add_column("Description")
    table.add_column("Depends", justify="right", style="dim")
    table.add_column("Tokens", justify="right")
    for subtask in plan.subtasks:
        table.add_row(
            str(subtask.id),
            subtask.type.value,
            escape(subtask.target),
            escape(subtask.description),
            ", ".join(str(d) for d in subtask.depends) or "-",
            str(subtask.estimated_tokens),
        )
    console.print(table)

    c = plan.complexity
    console.print(
        f"  order: [bold]{' → '.join(str(i) for i in plan.execution_order)}[/bold]  ·  "
        f"steps: [bold]{c.total_steps}[/bold]  ·  depth: [bold]{c.max_depth}[/bold]  ·  "
        f"parallelizable: [bold]{c.parallelizable}[/bold]  ·  "
        f"tokens: [bold]{c.total_tokens}[/bold]  ·  complexity: [bold]{c.complexity}[/bold]"
    )


def render_vote(result: VotingResult) -> None:
    stats = result.voting_stats
    color = "green" if result.reliable else "yellow"
    console.print(
        Panel(
            Syntax(result.winner, "python", word_wrap=True),
            title=f"[bold {color}]Winner[/bold {color}] (confidence {result.confidence:.0%})",
            border_style=color,
        )
    )
    console.print(
        f"  candidates: [bold]{stats.valid_candidates}/{stats.total_candidates}[/bold] valid  ·  "
        f"clusters: [bold]{stats.cluster_count}[/bold]  ·  "
        f"votes: [bold]{stats.winner_votes}[/bold] vs [bold]{stats.runner_up_votes}[/bold]  ·  "
        f"margin: [bold]{stats.margin}[/bold] (k={stats.votes_needed})"
    )
    if result.warning:
        console.print(f"  [yellow]⚠ {escape(result.warning)}[/yellow]")


def render_summary(summary: ExecutionSummary) -> None:
    table = Table(title="[bold cyan]Execution Log[/bold cyan]", border_style="cyan")
    table.add_column("#", justify="right")
    table.add_column("Subtask")
    table.add_column("Status")
    table.add_column("Confidence", justify="right")
    table.add_column("Note", style="dim")
    for entry in summary.execution_log:
        table.add_row(
            str(entry.subtask_id),
            escape(entry.description),
            _STATUS_STYLE[entry.status],
            f"{entry.confidence:.0%}" if entry.confidence is not None else "-",
            escape(entry.error or entry.warning or ""),
        )
    console.print(table)

    color = "green" if summary.errors == 0 else ("yellow" if summary.completed else "red")
    console.print(
        Panel(
            f"Completed: [bold]{summary.completed}/{summary.total_subtasks}[/bold]  ·  "
            f"Errors: [bold]{summary.errors}[/bold]  ·  "
            f"Success rate: [bold]{summary.success_rate:.1%}[/bold]  ·  "
            f"Avg confidence: [bold]{summary.avg_confidence:.1%}[/bold]  ·  "
            f"k: [bold]{summary.k}[/bold]",
            title="[bold]Execution Complete[/bold]",
            border_style=color,
        )
    )


# ── Runners ──────────────────────────────────────────────────────────────


async def run_task(
    description: str,
    cfg: MakerConfig,
    cwd: str,
    options: ExecutionOptions,
    context: TaskContext,
    dry_run: bool = True,
    as_json: bool = False,
) -> int:
    """Decompose and execute *description*. Ctrl-C cancels before the next provider call."""
    counter = TokenCounter()
    provider = build_provider(cfg)
    orchestrator = Orchestrator(
        provider,
        ResultApplier(cwd, dry_run=dry_run),
        counter,
        TaskDecomposer(provider, counter),
        build_voting(provider, cfg, counter),
    )

    cancel = asyncio.Event()
    options.cancel = cancel
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, cancel.set)

    started_at = time.time()
    try:
        summary = await orchestrator.execute_task(description, context, options)
    except ExecutionAbortedError as e:
        err_console.print(f"\n[red]Aborted: {escape(str(e))}[/red]")
        summary = e.context.summary()
        if as_json:
            _emit_json(summary.to_dict())
        else:
            render_summary(summary)
        return 1
    except VotingCancelledError:
        err_console.print("\n[yellow]Cancelled.[/yellow]")
        return 130
    except (MakerError, ProviderConnectionError) as e:
        err_console.print(f"\n[red]Run failed: {escape(str(e))}[/red]")
        return 1
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)

    if as_json:
        _emit_json(summary.to_dict())
    else:
        render_summary(summary)
        suffix = " (dry run)" if dry_run else ""
        console.print(f"[dim]{time.time() - started_at:.1f}s{suffix}[/dim]")
    return 0 if summary.errors == 0 else 1


async def run_decompose(
    description: str,
    cfg: MakerConfig,
    context: TaskContext,
    as_json: bool = False,
) -> int:
    provider = build_provider(cfg) if cfg.use_ai else None
    decomposer = TaskDecomposer(provider)
    plan = await decomposer.decompose(description, context, use_ai=cfg.use_ai)
    if as_json:
        _emit_json(plan.to_dict())
    else:
        render_plan(plan)
    return 0


async def run_vote(
    prompt: str,
    cfg: MakerConfig,
    mode: str = "standard",
    system: str | None = None,
    steps: int = 1,
    critical: bool = False,
    as_json: bool = False,
) -> int:
    """One voting round on a free-form prompt."""
    counter = TokenCounter()
    provider = build_provider(cfg)
    voting = build_voting(provider, cfg, counter)

    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})
    task = TaskProfile(
        estimated_steps=steps, critical=critical, base_reliability=cfg.base_reliability
    )

    try:
        if mode == "adaptive":
            result = await voting.adaptive_vote(messages, task)
        elif mode == "quick":
            result = await voting.quick_vote(messages, task)
        elif mode == "reliable":
            result = await voting.reliable_vote(messages, task)
        else:
            result = await voting.vote(messages, task)
    except (MakerError, ProviderConnectionError) as e:
        err_console.print(f"[red]Voting failed: {escape(str(e))}[/red]")
        return 1

    if as_json:
        _emit_json(result.to_dict())
    else:
        render_vote(result)
    return 0 if result.reliable else 2
