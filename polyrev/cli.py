"""Main CLI entry point for polyrev."""

import asyncio
import json
import logging
import sys
from datetime import UTC, datetime, tzinfo
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from .config import Config, settings
from .errors import ConfigurationError, NoFragmentsToReduceError, ParseError, ProviderError
from .orchestrate import RunOptions, execution_plan, run_review
from .planner import (
    PlanOptions,
    PlanOrchestrator,
    PerspectiveStatus,
    UnifiedPlan,
    apply_selection_policy,
    plan_output_dir,
    reduce_plan,
    revise_plan,
    select_perspectives,
    write_fragments,
    write_plan,
)
from .planner.orchestrator import select_for_run
from .postprocess import run_postprocess
from .report import dated_report_dir, format_status
from .runner import FindingCounts, RunReport
from .state import RunState

console = Console()


def _setup_logging(verbose: bool) -> None:
    level = logging.INFO if verbose else getattr(logging, settings.log_level.upper(), logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _load_config(config_path: Path, required: bool) -> Config:
    if not config_path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {config_path}")
        return Config()
    return Config.load(config_path)


def _local_tz() -> tzinfo:
    return datetime.now().astimezone().tzinfo or UTC


def _first_line(text: str) -> str:
    stripped = text.strip()
    return stripped.splitlines()[0] if stripped else ""


@click.group()
@click.version_option(version="0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Enable info-level logging")
def main(verbose: bool) -> None:
    """Parallel AI code review and feature planning.

    Runs reviewers and planning perspectives through the Claude Code and Codex CLIs.
    """
    _setup_logging(verbose)


@main.command()
@click.option(
    "--config", "config_path", type=click.Path(path_type=Path), default=None, help="Config file"
)
@click.option("--reviewer", "reviewers", multiple=True, help="Only run these reviewer ids")
@click.option("--scope", "scopes", multiple=True, help="Only run reviewers covering these scopes")
@click.option("--diff-base", default=None, help="Only review files changed since this git ref")
@click.option("--dry-run", is_flag=True, help="Show what would run without calling providers")
@click.option("--force", is_flag=True, help="Re-run reviewers that already ran today")
@click.option("--fail-on-critical", is_flag=True, help="Exit 1 when any p0 finding is reported")
@click.option("--concurrency", type=int, default=None, help="Override max parallel reviewers")
@click.option(
    "--report-dir", type=click.Path(path_type=Path), default=None, help="Override report base dir"
)
def run(
    config_path: Path | None,
    reviewers: tuple[str, ...],
    scopes: tuple[str, ...],
    diff_base: str | None,
    dry_run: bool,
    force: bool,
    fail_on_critical: bool,
    concurrency: int | None,
    report_dir: Path | None,
) -> None:
    """Run the configured reviewers against the target."""
    config = _load_config(config_path or settings.config_path, required=True)
    overrides: dict[str, object] = {}
    if concurrency is not None:
        overrides["concurrency"] = max(1, concurrency)
    if report_dir is not None:
        overrides["report_dir"] = report_dir.resolve()
    if overrides:
        config = config.model_copy(update=overrides)
    config.validate_reviewers()

    options = RunOptions(
        reviewer_filter=list(reviewers) or None,
        scope_filter=list(scopes) or None,
        diff_base=diff_base or config.diff_base,
        force=force,
    )

    if dry_run:
        state = RunState.load_or_empty(config.target)
        table = Table(title="Execution Plan (dry run)")
        table.add_column("Reviewer", style="cyan")
        table.add_column("Provider")
        table.add_column("Scopes")
        table.add_column("Action")
        for reviewer, action in execution_plan(config, options, state):
            style = "green" if action == "run" else "dim"
            table.add_row(
                reviewer.id,
                reviewer.provider.value,
                ", ".join(reviewer.scopes),
                f"[{style}]{action}[/{style}]",
            )
        console.print(table)
        return

    # Local timezone is resolved once, before the event loop starts.
    out_dir = dated_report_dir(config.resolve_path(config.report_dir), _local_tz())

    console.print(f"[bold]Running reviewers[/bold] (concurrency {config.concurrency})")
    outcome = asyncio.run(run_review(config, options, out_dir))
    _print_run_report(outcome.report)

    totals = outcome.report.totals
    console.print(
        Panel(
            f"p0: [red]{totals.p0}[/red]  p1: [yellow]{totals.p1}[/yellow]  p2: {totals.p2}\n"
            f"Reports: {out_dir}",
            title="Summary",
        )
    )
    if outcome.postprocess is not None:
        console.print(
            f"Reduced {outcome.postprocess.original_count} -> "
            f"{outcome.postprocess.reduced_count} findings"
        )

    if fail_on_critical and totals.p0 > 0:
        console.print(f"[red]{totals.p0} critical findings[/red]")
        sys.exit(1)


def _print_run_report(report: RunReport) -> None:
    table = Table(title=f"Review Results ({report.duration_seconds:.1f}s)")
    table.add_column("Reviewer", style="cyan")
    table.add_column("Status")
    table.add_column("Files", justify="right")
    table.add_column("p0", justify="right", style="red")
    table.add_column("p1", justify="right", style="yellow")
    table.add_column("p2", justify="right")
    table.add_column("Duration", justify="right")

    for result in report.results:
        counts = FindingCounts.of(result.findings)
        table.add_row(
            result.reviewer_id,
            format_status(result),
            str(result.files_scanned),
            str(counts.p0),
            str(counts.p1),
            str(counts.p2),
            f"{result.duration_seconds:.1f}s",
        )
    console.print(table)


@main.command()
@click.option(
    "--report-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Report directory to reduce (default: today's)",
)
@click.option(
    "--config", "config_path", type=click.Path(path_type=Path), default=None, help="Config file"
)
def postprocess(report_dir: Path | None, config_path: Path | None) -> None:
    """Merge duplicate findings across reviewers into reduced.json."""
    config = _load_config(config_path or settings.config_path, required=False)
    if report_dir is None:
        report_dir = dated_report_dir(config.resolve_path(config.report_dir), _local_tz())

    if not report_dir.exists():
        raise click.ClickException(f"Report directory not found: {report_dir}")

    try:
        result = asyncio.run(run_postprocess(config, report_dir))
    except (ParseError, ProviderError) as e:
        raise click.ClickException(f"Postprocess failed: {e}") from e
    console.print(
        f"[green]Reduced {result.original_count} -> {result.reduced_count} findings[/green] "
        f"({len(result.clusters)} clusters)"
    )
    if result.summary:
        console.print(Panel(result.summary, title="Summary"))
    console.print(f"Wrote {report_dir / 'reduced.json'}")


def _ask_questions(plan: UnifiedPlan) -> list[tuple[str, str]] | None:
    """Walk the human through the plan's questions; None means they quit."""
    console.print(
        Panel(
            "Type a number to pick an option, or enter text.\n"
            "Press Enter to skip, 'q' to quit.",
            title=f"Questions ({len(plan.questions)})",
        )
    )

    pairs: list[tuple[str, str]] = []
    for i, question in enumerate(plan.questions, 1):
        console.print(f"[bold]{i}. {question.question}[/bold]")
        if question.context:
            console.print(f"   [dim]{question.context}[/dim]")
        for j, option in enumerate(question.options, 1):
            console.print(f"   [{j}] {option}")

        reply = Prompt.ask("   →", default="", show_default=False).strip()
        if reply.lower() == "q":
            return None
        if not reply:
            console.print("   [dim]Skipped.[/dim]\n")
            continue

        answer = reply
        if reply.isdigit() and 0 < int(reply) <= len(question.options):
            answer = question.options[int(reply) - 1]
        question.answer = answer
        pairs.append((question.question, answer))
        console.print(f"   [green]✓ {answer}[/green]\n")
    return pairs


@main.command()
@click.argument("spec", nargs=-1)
@click.option("--file", "spec_file", type=click.Path(exists=True, path_type=Path), help="Read spec from file")
@click.option("--perspectives", default=None, help="Comma-separated perspective ids to run")
@click.option("--auto-select", is_flag=True, help="Let the provider pick perspectives")
@click.option("--max-perspectives", default=4, show_default=True, help="Max perspectives to run")
@click.option("--dry-run", is_flag=True, help="Show which perspectives would run")
@click.option("--skip-reduce", is_flag=True, help="Stop after writing fragments")
@click.option("--save-fragments", is_flag=True, help="Also write each perspective's fragment")
@click.option("-y", "--yes", is_flag=True, help="Skip questions")
@click.option(
    "--config", "config_path", type=click.Path(path_type=Path), default=None, help="Config file"
)
def plan(
    spec: tuple[str, ...],
    spec_file: Path | None,
    perspectives: str | None,
    auto_select: bool,
    max_perspectives: int,
    dry_run: bool,
    skip_reduce: bool,
    save_fragments: bool,
    yes: bool,
    config_path: Path | None,
) -> None:
    """Plan a feature from several perspectives and merge the result.

    SPEC: Description of the feature or task to plan
    """
    # Local timezone is resolved once, before any event loop starts.
    tz = _local_tz()
    config = _load_config(config_path or settings.config_path, required=False)
    spec_text = spec_file.read_text() if spec_file else " ".join(spec)
    if not spec_text.strip():
        raise click.UsageError("No spec provided. Use positional args or --file")

    available = config.planning.perspectives
    console.print(f"[bold]Planning:[/bold] {_first_line(spec_text)}")

    perspective_filter: list[str] | None = None
    if auto_select:
        # One slot is reserved for the fallback perspective.
        try:
            with console.status("Selecting perspectives..."):
                selection = asyncio.run(
                    select_perspectives(config, available, spec_text, max(max_perspectives - 1, 0))
                )
        except (ParseError, ProviderError) as e:
            raise click.ClickException(f"Perspective selection failed: {e}") from e
        perspective_filter = apply_selection_policy(
            selection.selected, config.planning.fallback_perspective
        )
        names = [p.name for p in available if p.id in perspective_filter]
        console.print(f"Selected: [cyan]{', '.join(names)}[/cyan]")
        if selection.reasoning:
            console.print(f"  [dim]{selection.reasoning}[/dim]")
    elif perspectives:
        ids = [p.strip() for p in perspectives.split(",") if p.strip()]
        perspective_filter = ids[:max_perspectives]

    options = PlanOptions(spec=spec_text, perspective_filter=perspective_filter)

    if dry_run:
        table = Table(title="Perspectives to run (dry run)")
        table.add_column("Id", style="cyan")
        table.add_column("Name")
        table.add_column("Focus")
        for p in select_for_run(available, options):
            table.add_row(p.id, p.name, p.focus)
        console.print(table)
        return

    output_dir = plan_output_dir(spec_text, tz)

    with console.status("Running perspectives..."):
        planning_result = asyncio.run(PlanOrchestrator(config, available).run(options))

    table = Table(title=f"Perspectives ({planning_result.duration_seconds:.1f}s)")
    table.add_column("Perspective", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")
    for result in planning_result.results:
        if result.status == PerspectiveStatus.COMPLETED and result.fragment is not None:
            detail = f"{len(result.fragment.tasks)} tasks, {len(result.fragment.concerns)} concerns"
            status = "[green]✓ completed[/green]"
        else:
            error = result.error or ""
            detail = error if len(error) <= 60 else error[:57] + "..."
            status = "[red]✗ failed[/red]"
        table.add_row(result.perspective_name, status, detail)
    console.print(table)

    if not planning_result.completed_fragments():
        raise NoFragmentsToReduceError("All perspectives failed")

    if skip_reduce or save_fragments:
        write_fragments(output_dir, planning_result)
        if skip_reduce:
            console.print(f"\nFragments saved to {output_dir}")
            return

    try:
        with console.status("Reducing to unified plan..."):
            reduction = asyncio.run(reduce_plan(config, planning_result))
    except (ParseError, ProviderError) as e:
        raise click.ClickException(f"Plan reduction failed: {e}") from e
    console.print(
        f"Reduced {reduction.task_count_before} suggestions → "
        f"[bold]{reduction.task_count_after}[/bold] tasks"
    )

    final_plan = reduction.plan.model_copy(deep=True)
    if final_plan.questions and not yes:
        answers = _ask_questions(final_plan)
        if answers is None:
            console.print("Cancelled.")
            return
        if answers:
            try:
                with console.status("Revising plan based on answers..."):
                    revised = asyncio.run(revise_plan(config, final_plan, answers))
                console.print(f"Revised plan: {len(revised.tasks)} tasks")
                final_plan = revised
            except Exception as e:
                console.print(f"[red]Revision failed after retries:[/red] {e}")
                console.print("  Your answers won't be reflected in the task list.")
                if not Confirm.ask("  Continue anyway?", default=False):
                    raise click.ClickException(
                        "Revision failed and user chose not to continue"
                    ) from e

    if final_plan.risks:
        console.print("\n[bold]Risks[/bold]")
        for risk in final_plan.risks:
            console.print(f"  [yellow]⚠[/yellow] {risk.description} [dim]({risk.severity})[/dim]")

    plan_path = output_dir / "plan.json"
    write_plan(plan_path, final_plan)

    tasks_table = Table(title="Tasks")
    tasks_table.add_column("Id", style="cyan")
    tasks_table.add_column("Title")
    tasks_table.add_column("Depends on")
    for task in final_plan.tasks:
        tasks_table.add_row(task.id, task.title, ", ".join(task.depends_on) or "-")
    console.print(tasks_table)
    console.print(f"\n[green]Plan written to {plan_path}[/green]")


@main.command()
def schema() -> None:
    """Print the JSON schema of polyrev.yaml."""
    click.echo(json.dumps(Config.model_json_schema(), indent=2))


if __name__ == "__main__":
    main()
