"""Typer CLI for makercode."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from makercode.config import MakerConfig, load_maker_config

if TYPE_CHECKING:
    from makercode.maker.types import TaskContext

console = Console()
app = typer.Typer(
    name="makercode",
    help="Reliable multi-step code generation: decompose, red-flag, and vote.",
    add_completion=False,
    no_args_is_help=True,
)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _resolve_config(cwd: str, **overrides: object) -> MakerConfig:
    """Merge: CLI args > .makercode.yml > defaults."""
    from dotenv import load_dotenv

    load_dotenv()
    return load_maker_config(cwd).merge(**overrides)


def _task_context(files: list[str] | None, relevant: list[str] | None) -> TaskContext:
    from makercode.maker.types import TaskContext

    return TaskContext(files=list(files or []), relevant_files=list(relevant or []))


@app.command()
def run(
    task: str = typer.Argument(..., help="What to build, in plain language"),
    cwd: str = typer.Option(".", "--cwd", "-C", help="Project directory (default: current dir)"),
    model: str | None = typer.Option(
        None, "--model", "-m", help="LLM model name (LiteLLM format)"
    ),
    api_base: str | None = typer.Option(
        None, "--api-base", help="Custom API base URL (e.g. for Ollama, vLLM)"
    ),
    candidates: int | None = typer.Option(
        None, "--candidates", "-n", help="Candidates per subtask (default: config)"
    ),
    temperature: float | None = typer.Option(None, "--temperature", "-t", help="Base temperature"),
    reliability: float | None = typer.Option(
        None, "--reliability", help="Assumed per-step reliability used to pick k"
    ),
    files: list[str] | None = typer.Option(
        None, "--file", "-f", help="File the task is about (repeatable)"
    ),
    relevant: list[str] | None = typer.Option(
        None, "--relevant", help="Relevant file hint passed to each step (repeatable)"
    ),
    critical: bool = typer.Option(False, "--critical", help="Raise k by one for every step"),
    strict: bool = typer.Option(
        False, "--strict", help="Treat an unreliable vote as a subtask error"
    ),
    stop_on_error: bool = typer.Option(False, "--stop-on-error", help="Abort on first error"),
    no_ai: bool = typer.Option(False, "--no-ai", help="Rule-based decomposition only"),
    apply: bool = typer.Option(
        False, "--apply/--dry-run", help="Write results to disk (default: dry run)"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the summary as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show pipeline logs"),
) -> None:
    """Decompose TASK and execute every step with first-to-ahead-by-k voting."""
    from makercode.cli.runners import run_task
    from makercode.maker.orchestrator import ExecutionOptions

    _setup_logging(verbose)
    resolved_cwd = str(Path(cwd).resolve())
    cfg = _resolve_config(
        resolved_cwd,
        model_name=model,
        api_base=api_base,
        temperature=temperature,
        base_reliability=reliability,
        max_candidates=candidates,
        use_ai=False if no_ai else None,
    )
    options = ExecutionOptions(
        use_ai=cfg.use_ai,
        base_reliability=cfg.base_reliability,
        critical_task=critical,
        max_candidates=cfg.max_candidates,
        temperature=cfg.temperature,
        max_tokens=cfg.max_tokens,
        require_high_confidence=strict,
        stop_on_error=stop_on_error,
        context_token_budget=cfg.context_token_budget,
    )

    if not as_json:
        console.print(
            Panel(
                Text.from_markup(
                    f"[bold cyan]makercode[/bold cyan]  "
                    f"model=[bold]{cfg.model_name}[/bold]  "
                    f"candidates=[bold]{cfg.max_candidates}[/bold]  "
                    f"critical=[bold]{'on' if critical else 'off'}[/bold]  "
                    f"mode=[bold]{'apply' if apply else 'dry-run'}[/bold]\n"
                    f"[dim]cwd: {resolved_cwd}[/dim]"
                ),
                border_style="cyan",
            )
        )

    exit_code = asyncio.run(
        run_task(
            task,
            cfg,
            resolved_cwd,
            options,
            _task_context(files, relevant),
            dry_run=not apply,
            as_json=as_json,
        )
    )
    raise typer.Exit(code=exit_code)


@app.command()
def decompose(
    task: str = typer.Argument(..., help="What to build, in plain language"),
    cwd: str = typer.Option(".", "--cwd", "-C", help="Project directory"),
    model: str | None = typer.Option(None, "--model", "-m", help="LLM model"),
    api_base: str | None = typer.Option(None, "--api-base", help="Custom API base URL"),
    files: list[str] | None = typer.Option(None, "--file", "-f", help="Target file (repeatable)"),
    no_ai: bool = typer.Option(False, "--no-ai", help="Rule-based decomposition only"),
    as_json: bool = typer.Option(False, "--json", help="Print the plan as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show pipeline logs"),
) -> None:
    """Show the dependency-ordered plan for TASK without executing it."""
    from makercode.cli.runners import run_decompose

    _setup_logging(verbose)
    cfg = _resolve_config(
        str(Path(cwd).resolve()),
        model_name=model,
        api_base=api_base,
        use_ai=False if no_ai else None,
    )
    exit_code = asyncio.run(
        run_decompose(task, cfg, _task_context(files, None), as_json=as_json)
    )
    raise typer.Exit(code=exit_code)


@app.command()
def vote(
    prompt: str = typer.Argument(..., help="Prompt to sample candidates for"),
    cwd: str = typer.Option(".", "--cwd", "-C", help="Project directory"),
    mode: str = typer.Option(
        "standard", "--mode", help="Voting mode: standard | adaptive | quick | reliable"
    ),
    system: str | None = typer.Option(None, "--system", help="Optional system message"),
    k: int | None = typer.Option(None, "--k", "-k", help="Votes ahead needed (standard mode)"),
    candidates: int | None = typer.Option(None, "--candidates", "-n", help="Max candidates"),
    steps: int = typer.Option(1, "--steps", help="Estimated steps (adaptive/reliable modes)"),
    critical: bool = typer.Option(False, "--critical", help="Critical task (adaptive mode)"),
    model: str | None = typer.Option(None, "--model", "-m", help="LLM model"),
    api_base: str | None = typer.Option(None, "--api-base", help="Custom API base URL"),
    temperature: float | None = typer.Option(None, "--temperature", "-t", help="Base temperature"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show pipeline logs"),
) -> None:
    """Run one voting round on PROMPT.

    Exit code 0 when the winner is reliable, 2 when it is not, 1 on failure.
    """
    from makercode.cli.runners import VOTE_MODES, run_vote

    if mode not in VOTE_MODES:
        console.print(f"[red]Unknown mode: '{mode}'. Available: {', '.join(VOTE_MODES)}[/red]")
        raise typer.Exit(code=1)

    _setup_logging(verbose)
    cfg = _resolve_config(
        str(Path(cwd).resolve()),
        model_name=model,
        api_base=api_base,
        temperature=temperature,
        default_k=k,
        max_candidates=candidates,
    )
    exit_code = asyncio.run(
        run_vote(
            prompt,
            cfg,
            mode=mode,
            system=system,
            steps=steps,
            critical=critical,
            as_json=as_json,
        )
    )
    raise typer.Exit(code=exit_code)


@app.command(name="k")
def optimal_k(
    steps: int = typer.Argument(..., help="Number of steps in the task"),
    reliability: float = typer.Option(0.7, "--reliability", "-r", help="Per-step reliability"),
    candidates: int = typer.Option(10, "--candidates", "-n", help="Candidates per round"),
    avg_tokens: int = typer.Option(200, "--avg-tokens", help="Average tokens per candidate"),
) -> None:
    """Print the voting margin k for STEPS and the projected cost of one round."""
    from makercode.maker.voting import VotingManager

    if steps < 0 or not 0.0 <= reliability <= 1.0:
        console.print("[red]steps must be >= 0 and reliability within [0, 1][/red]")
        raise typer.Exit(code=1)

    k = VotingManager.calculate_optimal_k(steps, reliability)
    cost = VotingManager.estimate_cost(k, candidates, avg_tokens)

    table = Table(title="[bold cyan]Voting margin[/bold cyan]", border_style="cyan")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("steps", str(steps))
    table.add_row("base reliability", f"{reliability:.2f}")
    table.add_row("k", f"[bold]{k}[/bold]")
    table.add_row("candidates / round", str(cost.max_candidates))
    table.add_row("expected valid", f"{cost.expected_valid_candidates:.1f}")
    table.add_row("completion tokens / round", f"{cost.total_completion_tokens:,}")
    table.add_row("scaling factor", f"{cost.scaling_factor:.2f}")
    console.print(table)


@app.command()
def validate(
    file: Path = typer.Argument(..., help="File whose contents to red-flag"),
    max_tokens: int = typer.Option(1500, "--max-tokens", help="Hard length limit"),
    expected_length: int = typer.Option(200, "--expected-length", help="Expected length"),
    expected_format: str | None = typer.Option(
        None, "--format", help="Expected structure: function | class | import | export"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Red-flag the contents of FILE. Exit code 1 when it is not valid."""
    import json

    from makercode.maker.types import TaskProfile
    from makercode.maker.validator import ResponseValidator

    if not file.is_file():
        console.print(f"[red]File not found: {file}[/red]")
        raise typer.Exit(code=1)

    text = file.read_text(encoding="utf-8", errors="replace")
    task = TaskProfile(
        type="code" if file.suffix == ".py" else "text",
        expected_length=expected_length,
        expected_format=expected_format,
    )
    result = ResponseValidator().validate(text, task, max_tokens=max_tokens)

    if as_json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        color = "green" if result.valid else "red"
        console.print(
            f"[bold {color}]{'VALID' if result.valid else 'INVALID'}[/bold {color}]  "
            f"confidence=[bold]{result.confidence:.2f}[/bold]  {escape(result.summary)}"
        )
        for flag in result.flags:
            where = f" (line {flag.line})" if flag.line else ""
            console.print(f"  \\[{flag.severity.value}] {flag.type}: {escape(flag.message)}{where}")

    raise typer.Exit(code=0 if result.valid else 1)


if __name__ == "__main__":
    app()
