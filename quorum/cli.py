"""Quorum CLI: Typer + Rich terminal interface.

Commands: review, setups, models.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from quorum import __version__
from quorum.git import DiffScope, GitDiffProvider
from quorum.instructions import load_project_guidance, resolve_instructions
from quorum.output.markdown import REVIEW_MARKER, format_review_markdown
from quorum.output.previous import FilePriorReviewLookup
from quorum.output.run_logs import RunLogWriter
from quorum.providers.litellm_provider import LiteLLMProvider
from quorum.providers.registry import load_config, resolve_setup
from quorum.providers.tools import RepositoryTools
from quorum.review.aggregator import ReviewOutcome, aggregate
from quorum.review.cancellation import CancellationToken
from quorum.review.compactor import build_steps, matches_any
from quorum.review.errors import ConfigurationError, RunCancelledError, TotalPipelineFailure
from quorum.review.events import EventType, ReviewEvent, ReviewEventEmitter
from quorum.review.pipeline import ReviewPipeline, ReviewRequest, prepare_diff
from quorum.schemas.config import QuorumConfig
from quorum.schemas.review import PREVIOUS_CHECK_LABEL

logger = logging.getLogger(__name__)

console = Console()

EXIT_TOTAL_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_CANCELLED = 130

# ── App ──────────────────────────────────────────────────────────

app = typer.Typer(
    name="quorum",
    help="Multi-model AI code review with a validating consensus pass.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


class OutputFormat(StrEnum):
    MARKDOWN = "markdown"
    JSON = "json"


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"quorum {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Quorum: multi-model AI code review."""


# ── Helpers ──────────────────────────────────────────────────────


def setup_logging(verbose: bool = False) -> None:
    """Route logging through Rich; DEBUG when verbose, INFO otherwise."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    # LiteLLM is chatty at INFO
    logging.getLogger("LiteLLM").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load_config(config_path: Path | None) -> QuorumConfig:
    """Load configuration, exit on error."""
    try:
        return load_config(config_path)
    except (ConfigurationError, FileNotFoundError) as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        raise typer.Exit(EXIT_CONFIG_ERROR) from None


def _task_name(task_id: str) -> str:
    if task_id == PREVIOUS_CHECK_LABEL:
        return "previous check"
    return f"reviewer {task_id}"


def _progress_listener(event: ReviewEvent) -> None:
    data = event.data
    if event.type == EventType.TASK_STARTED:
        console.print(f"[dim]▸ {_task_name(data['task_id'])} started ({data['model']})[/dim]")
    elif event.type == EventType.TASK_COMPLETED:
        console.print(
            f"[green]✓[/green] {_task_name(data['task_id'])} done "
            f"[dim]({data['total_tokens']:,} tokens)[/dim]"
        )
    elif event.type == EventType.TASK_FAILED:
        console.print(f"[red]✗[/red] {_task_name(data['task_id'])} failed: {data['error']}")
    elif event.type == EventType.COMPACTION_STEP_APPLIED:
        console.print(
            f"[yellow]⊘[/yellow] compaction '{data['step']}': "
            f"{data['files']} file(s), ~{data['tokens']:,} tokens"
        )
    elif event.type == EventType.VALIDATION_STARTED:
        console.print(f"[dim]▸ validating {data['reviews']} review(s) with {data['model']}[/dim]")


def _display_outcome(outcome: ReviewOutcome, output_path: Path, failures: int) -> None:
    stats = outcome.stats
    console.print(
        Panel(
            f"{outcome.validated_review.summary}\n\n"
            f"[red]{stats.critical} critical[/red] · "
            f"[yellow]{stats.possible} possible[/yellow] · "
            f"[cyan]{stats.suggestion} suggestions[/cyan] "
            f"across {stats.files} file(s)",
            title="Review",
            border_style="blue",
        )
    )

    table = Table(title="Token Usage", show_lines=False)
    table.add_column("Call", style="bold")
    table.add_column("Model")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Total", justify="right")
    for entry in outcome.breakdown:
        table.add_row(
            entry.label,
            entry.model,
            f"{entry.usage.prompt_tokens:,}",
            f"{entry.usage.completion_tokens:,}",
            f"{entry.usage.total_tokens:,}",
        )
    total = outcome.total_usage
    table.add_row(
        "[bold]Total[/bold]", "",
        f"{total.prompt_tokens:,}", f"{total.completion_tokens:,}", f"{total.total_tokens:,}",
    )
    console.print(table)

    if failures:
        console.print(f"[yellow]{failures} reviewer(s) failed and were excluded[/yellow]")
    console.print(f"💬 Review saved to [bold]{output_path}[/bold]")


# ── review ───────────────────────────────────────────────────────


async def _run_review(
    config: QuorumConfig,
    setup_id: str,
    scope: DiffScope,
    base: str | None,
    output: Path | None,
    previous_check: bool,
    instructions: str,
    output_format: OutputFormat,
) -> None:
    started_at = datetime.now(UTC)
    setup = resolve_setup(config, setup_id)
    settings = config.review.model_copy(
        update={
            "previous_check": config.review.previous_check and previous_check,
            "base_branch": base or config.review.base_branch,
        }
    )

    diff_provider = GitDiffProvider(Path.cwd(), scope=scope, base_branch=settings.base_branch)
    repo_root = diff_provider.repo_root()
    branch = diff_provider.current_branch()

    files = [f for f in diff_provider.changed_files() if not matches_any(f, settings.exclude_patterns)]
    if not files:
        console.print("[yellow]No changes to review.[/yellow]")
        return
    snapshot = await diff_provider.get_diff(files)
    if not snapshot.diff.strip():
        console.print("[yellow]Diff is empty; nothing to review.[/yellow]")
        return

    emitter = ReviewEventEmitter()
    emitter.add_listener(_progress_listener)

    compaction = await prepare_diff(
        snapshot, settings.max_diff_tokens, build_steps(settings.compaction), diff_provider, emitter
    )
    resolved = resolve_instructions(repo_root, settings.review_instructions_path, instructions)
    guidance = load_project_guidance(repo_root, settings.include_agents_file)

    request = ReviewRequest(
        context_label=diff_provider.context_label(),
        files=compaction.files,
        diff=compaction.diff,
        review_instructions=resolved.text,
        supplementary_context=guidance.text,
        supplementary_source=guidance.source,
        exclude_supplementary_context=compaction.exclude_supplementary_context,
        review_marker=REVIEW_MARKER,
    )

    output_path = output or Path(settings.output_path)
    pipeline = ReviewPipeline(
        lambda model: LiteLLMProvider(model, max_tool_steps=settings.max_tool_steps),
        prior_lookup=FilePriorReviewLookup(output_path),
        tools=RepositoryTools(repo_root),
        emitter=emitter,
        timeout=settings.timeout,
    )

    cancel = CancellationToken()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, cancel.cancel, "interrupted by user")

    console.print(
        f"[bold]Reviewing {len(request.files)} file(s)[/bold] with setup "
        f"[cyan]{setup.id}[/cyan] ({len(setup.reviewers)} reviewer(s))"
    )
    try:
        run = await pipeline.run(request, setup, settings, cancel)
    finally:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGINT)

    outcome = aggregate(run)
    markdown = format_review_markdown(
        outcome, request.context_label, commit=diff_provider.head_commit()
    )
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(markdown, encoding="utf-8")

    if settings.logs_dir:
        RunLogWriter(Path(settings.logs_dir)).write(
            run=run,
            outcome=outcome,
            markdown=markdown,
            branch=branch,
            started_at=started_at,
            output_path=str(output_path),
            scope=scope.value,
            events=emitter.history,
        )

    if output_format == OutputFormat.JSON:
        console.print_json(outcome.model_dump_json())
    else:
        _display_outcome(outcome, output_path, len(run.failures))


@app.command()
def review(
    setup: str = typer.Option(
        "default", "--setup", "-s",
        help="Setup id from the config (see `quorum setups`)",
    ),
    scope: str = typer.Option(
        "all", "--scope",
        help="Changes to review: all (vs base branch), staged",
    ),
    base: str = typer.Option(
        None, "--base", "-b",
        help="Base branch for the 'all' scope",
    ),
    output: str = typer.Option(
        None, "--output", "-o",
        help="Path of the review markdown file",
    ),
    config: str = typer.Option(
        None, "--config", "-c",
        help="Project config file (default: ./quorum.toml)",
    ),
    no_previous_check: bool = typer.Option(
        False, "--no-previous-check",
        help="Skip checking issues from the previous review",
    ),
    instructions: str = typer.Option(
        "", "--instructions", "-i",
        help="Extra focus instructions for this review",
    ),
    output_format: str = typer.Option(
        "markdown", "--format", "-f",
        help="Console output: markdown (summary tables) or json",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Enable debug logging",
    ),
) -> None:
    """Review local changes with several models and a validator."""
    try:
        diff_scope = DiffScope(scope)
        fmt = OutputFormat(output_format)
    except ValueError as e:
        console.print(f"[red]Invalid option:[/red] {e}")
        raise typer.Exit(EXIT_CONFIG_ERROR) from None

    setup_logging(verbose)
    cfg = _load_config(Path(config) if config else None)

    try:
        asyncio.run(
            _run_review(
                cfg, setup, diff_scope, base or None,
                Path(output) if output else None,
                not no_previous_check, instructions, fmt,
            )
        )
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(EXIT_CONFIG_ERROR) from None
    except TotalPipelineFailure as e:
        console.print(f"[red]Review failed:[/red] {e}")
        raise typer.Exit(EXIT_TOTAL_FAILURE) from None
    except RunCancelledError:
        console.print("[yellow]Review cancelled.[/yellow]")
        raise typer.Exit(EXIT_CANCELLED) from None


# ── setups / models ──────────────────────────────────────────────


@app.command()
def setups(
    config: str = typer.Option(None, "--config", "-c", help="Project config file"),
) -> None:
    """List configured review setups."""
    cfg = _load_config(Path(config) if config else None)

    table = Table(title="Review Setups", show_lines=True)
    table.add_column("Id", style="bold cyan")
    table.add_column("Label")
    table.add_column("Reviewers")
    table.add_column("Validator")

    for key, entry in sorted(cfg.setups.items()):
        validator = entry.validator or cfg.review.default_validator or entry.reviewers[0]
        table.add_row(key, entry.label, ", ".join(entry.reviewers), validator)

    console.print(table)
    console.print(f"\n[dim]{len(cfg.setups)} setups configured[/dim]")


@app.command()
def models(
    config: str = typer.Option(None, "--config", "-c", help="Project config file"),
) -> None:
    """Show all registered models as a table."""
    cfg = _load_config(Path(config) if config else None)

    table = Table(title="Registered Models", show_lines=True)
    table.add_column("Key", style="bold cyan")
    table.add_column("Display Name")
    table.add_column("Provider", style="dim")
    table.add_column("Concurrency", justify="right")
    table.add_column("Effort")
    table.add_column("Input $/M", justify="right")
    table.add_column("Output $/M", justify="right")
    table.add_column("Tools", justify="center")

    for key, model in sorted(cfg.models.items()):
        table.add_row(
            key,
            model.display_name,
            model.provider,
            str(cfg.review.ceiling_for(model.provider)),
            model.effort,
            f"${model.cost_input:.2f}",
            f"${model.cost_output:.2f}",
            "✓" if model.supports_tools else "—",
        )

    console.print(table)
    console.print(f"\n[dim]{len(cfg.models)} models registered[/dim]")
