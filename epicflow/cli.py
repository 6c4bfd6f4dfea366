"""CLI for epicflow.

Provides commands to preview, run, inspect and cancel orchestration runs.
"""

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from epicflow.config import EpicflowConfig
from epicflow.errors import HumanInterventionRequired, LockHeldError
from epicflow.event_store import FileEventStore
from epicflow.lock import TaskLock
from epicflow.run_state import RunStateStore
from epicflow.runner import RunResult, build_services, load_plan, order_epics, run_task
from epicflow.scheduler import plan_batches
from epicflow.telemetry import create_metrics, setup_telemetry
from epicflow.workspace import WorkspaceManager

console = Console()

STATUS_COLORS = {
    "completed": "green",
    "partial": "yellow",
    "failed": "red",
    "cancelled": "magenta",
    "in_progress": "cyan",
    "pending": "white",
}


@click.group()
@click.version_option(package_name="epicflow")
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
def cli(verbose: bool) -> None:
    """Epicflow - multi-team orchestration of epics and stories."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


@cli.command()
@click.argument("plan_file", type=click.Path(exists=True, path_type=Path))
def plan(plan_file: Path) -> None:
    """Show the execution batches a plan would run in."""
    config = EpicflowConfig.from_env()
    try:
        task_plan = load_plan(plan_file)
        epics = order_epics(task_plan.epics, task_plan.stories, task_plan.repositories)
        workspaces = WorkspaceManager(
            config.workspace_root, task_plan.repositories, task_plan.sources
        )
        execution_plan = plan_batches(epics, workspaces)
    except (ValueError, HumanInterventionRequired) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    table = Table(title=f"Execution Plan: {task_plan.task_id}")
    table.add_column("Order", justify="right")
    table.add_column("Epics")
    table.add_column("Repositories")
    table.add_column("Mode")
    for batch in execution_plan.batches:
        mode = "[green]concurrent[/green]" if batch.concurrent else "sequential"
        table.add_row(
            str(batch.execution_order),
            ", ".join(e.id for e in batch.epics),
            ", ".join(sorted(batch.repositories)),
            mode,
        )
    console.print(table)
    console.print(
        f"{execution_plan.epic_count} epics in {len(execution_plan.batches)} batches"
    )


@cli.command()
@click.argument("plan_file", type=click.Path(exists=True, path_type=Path))
def run(plan_file: Path) -> None:
    """Run (or resume) the task described by a plan file."""
    result = asyncio.run(_run(plan_file))
    if result is None or result.status in ("failed", "cancelled"):
        sys.exit(1)


async def _run(plan_file: Path) -> RunResult | None:
    """Internal async implementation of a run."""
    config = EpicflowConfig.from_env()
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    try:
        task_plan = load_plan(plan_file)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        return None

    services = build_services(config, tracer=tracer)
    console.print(f"[bold]Starting task:[/bold] {task_plan.task_id}")
    try:
        result = await run_task(task_plan, config, services)
    except LockHeldError as e:
        console.print(f"[red]Error:[/red] {e}")
        return None

    _print_run_summary(result)
    return result


def _print_run_summary(result: RunResult) -> None:
    color = STATUS_COLORS.get(result.status, "white")
    lines = [
        f"Duration: {_format_duration(result.duration_seconds)}",
        f"Tokens: {result.total_tokens / 1000:.1f}k",
        f"Cost: ${result.total_cost_usd:.2f}",
        f"Context: {result.rehydrated_from}",
    ]
    if result.output is not None:
        output = result.output
        lines.insert(
            0,
            f"Teams: {output.teams_total - output.teams_failed}/"
            f"{output.teams_total} succeeded",
        )
        for name, cost in output.cost_breakdown.items():
            lines.append(f"  {name}: ${cost:.2f}")
        if output.failed_epics:
            lines.append(f"[red]Failed epics: {', '.join(output.failed_epics)}[/red]")
    if result.error:
        lines.append(f"[red]Error:[/red] {result.error}")

    console.print(
        Panel(
            "\n".join(lines),
            title=f"[bold {color}]Run {result.status.upper()}[/bold {color}]",
        )
    )


def _format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes}m {secs}s"


@cli.command()
@click.argument("task_id")
def status(task_id: str) -> None:
    """Show epic and story state folded from the event log."""
    config = EpicflowConfig.from_env()
    event_store = FileEventStore(config.state_dir / "events")
    state = event_store.get_current_state(task_id)
    if not state.epics:
        console.print(f"[yellow]No events recorded for {task_id}[/yellow]")
        return

    table = Table(title=f"Task {task_id}")
    table.add_column("Epic")
    table.add_column("Repository")
    table.add_column("Status")
    table.add_column("Stories", justify="right")
    table.add_column("Branch")
    for epic in state.epics:
        stories = state.stories_for_epic(epic.id)
        done = sum(1 for s in stories if s.status == "completed")
        color = STATUS_COLORS.get(epic.status, "white")
        table.add_row(
            epic.id,
            epic.target_repository or "-",
            f"[{color}]{epic.status}[/{color}]",
            f"{done}/{len(stories)}",
            epic.branch_name or "-",
        )
    console.print(table)

    conflicted = [s for s in state.stories if s.conflict_metadata]
    for story in conflicted:
        files = ", ".join(story.conflict_metadata.get("files", []))
        console.print(
            f"[yellow]Conflicted:[/yellow] {story.id} on {story.branch_name} ({files})"
        )

    run_state = RunStateStore(config.state_dir).find_by_id(task_id)
    if run_state is not None:
        line = (
            f"Run: {run_state.status}, phase: {state.current_phase or '-'}, "
            f"cost: ${state.total_cost:.2f}"
        )
        if run_state.cancel_requested:
            line += " [magenta](cancel requested)[/magenta]"
        console.print(line)

    holder = TaskLock(config.state_dir, task_id).holder()
    if holder is not None and holder.is_alive:
        console.print(f"[cyan]Running in PID {holder.pid}[/cyan]")


@cli.command()
@click.argument("task_id")
def validate(task_id: str) -> None:
    """Check folded state invariants and event log integrity."""
    config = EpicflowConfig.from_env()
    event_store = FileEventStore(config.state_dir / "events")
    problems = 0
    for label, report in (
        ("State", event_store.validate_state(task_id)),
        ("Integrity", event_store.verify_integrity(task_id)),
    ):
        if report.valid:
            console.print(f"[green]{label}: OK[/green]")
            continue
        problems += len(report.errors)
        console.print(f"[red]{label}: {len(report.errors)} problem(s)[/red]")
        for error in report.errors:
            console.print(f"  - {error}")
    sys.exit(1 if problems else 0)


@cli.command()
@click.argument("task_id")
def cancel(task_id: str) -> None:
    """Ask a running task to stop at its next cancellation check."""
    config = EpicflowConfig.from_env()
    RunStateStore(config.state_dir).request_cancel(task_id)
    console.print(f"Cancellation requested for {task_id}")


def main() -> None:
    """Main entry point for the epicflow CLI."""
    cli()


if __name__ == "__main__":
    main()
