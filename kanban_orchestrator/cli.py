"""CLI for the Kanban Orchestrator.

Provides the command-line interface for running a kanban board through
external coding agents, plus board inspection commands.
"""

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from kanban_orchestrator.advisor import (
    collect_affected_files,
    load_rules,
    print_recommendations,
    recommend,
)
from kanban_orchestrator.config import OrchestratorConfig
from kanban_orchestrator.dependencies import DependencyResolver
from kanban_orchestrator.errors import OrchestratorError, StructuralError
from kanban_orchestrator.models import BoardStatus, utc_now
from kanban_orchestrator.planner import WavePlanner, wave_of
from kanban_orchestrator.retry import RetryAction, detect_non_interactive
from kanban_orchestrator.roles import detect_stack_signals
from kanban_orchestrator.runner import Orchestrator, RunOptions, RunResult
from kanban_orchestrator.store import (
    BOARD_FILE,
    PROGRESS_FILE,
    ProgressStore,
    TaskStore,
    atomic_write_json,
)
from kanban_orchestrator.telemetry import create_metrics, setup_telemetry

console = Console()

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

STATUS_COLORS = {
    BoardStatus.PENDING: "white",
    BoardStatus.IN_PROGRESS: "cyan",
    BoardStatus.BLOCKED: "yellow",
    BoardStatus.CODE_REVIEW: "magenta",
    BoardStatus.COMPLETED: "green",
}

project_root_option = click.option(
    "--project-root",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="Project containing the board directory",
)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        force=True,
    )


@click.group()
@click.version_option(package_name="kanban-orchestrator")
def cli() -> None:
    """Kanban Orchestrator - run a task board through coding agents."""
    pass


@cli.command()
@project_root_option
@click.option(
    "--parallel",
    "-p",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum concurrent agents per batch (default: 3)",
)
@click.option("--dry-run", is_flag=True, help="Show planned batches without running")
@click.option(
    "--non-interactive",
    is_flag=True,
    help="Never prompt; apply --default-fail-action (auto-detected in CI)",
)
@click.option(
    "--default-fail-action",
    type=click.Choice(["Skip", "Retry", "Quit"], case_sensitive=False),
    default="Skip",
    show_default=True,
    help="Action for failed tasks when not prompting",
)
@click.option("--fail-fast", is_flag=True, help="Abort the run when verification fails")
@click.option(
    "--run-verification/--no-verification",
    default=True,
    help="Run typecheck/lint/test after each wave",
)
@click.option("-m", "--model", default=None, help="Model passed to the agent command")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def run(
    project_root: Path,
    parallel: int | None,
    dry_run: bool,
    non_interactive: bool,
    default_fail_action: str,
    fail_fast: bool,
    run_verification: bool,
    model: str | None,
    verbose: bool,
) -> None:
    """Run all ready tasks, wave by wave."""
    _configure_logging(verbose)

    config = OrchestratorConfig.from_env()
    if model:
        config.model = model
    options = RunOptions(
        parallel=parallel or config.parallel,
        dry_run=dry_run,
        non_interactive=detect_non_interactive(non_interactive),
        default_fail_action=RetryAction.parse(default_fail_action),
        fail_fast=fail_fast,
        run_verification=run_verification,
    )

    try:
        asyncio.run(_run_board(project_root.resolve(), config, options))
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except RuntimeError as e:
        # Run lock held by another process
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


async def _run_board(
    project_root: Path, config: OrchestratorConfig, options: RunOptions
) -> RunResult:
    """Internal async implementation of a board run."""
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    orchestrator = Orchestrator(project_root, config, options, tracer=tracer, console=console)
    return await orchestrator.run()


@cli.command()
@project_root_option
def status(project_root: Path) -> None:
    """Show every task with its wave and board status."""
    config = OrchestratorConfig.from_env()
    board_dir = config.board_dir(project_root)

    try:
        tasks = TaskStore(board_dir).load()
        progress = ProgressStore(board_dir).load()
    except StructuralError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if not tasks:
        console.print("[yellow]No tasks on the board[/yellow]")
        return

    planner = WavePlanner(tasks, progress)
    table = Table(title="Kanban Board")
    table.add_column("Task")
    table.add_column("Category")
    table.add_column("Wave", justify="right")
    table.add_column("Status")
    table.add_column("Tokens", justify="right")

    counts: dict[BoardStatus, int] = {}
    for task in tasks:
        board_status = planner.get_task_status(task)
        counts[board_status] = counts.get(board_status, 0) + 1
        entry = progress.get(task.name)
        color = STATUS_COLORS[board_status]
        wave = wave_of(task.category)
        table.add_row(
            task.name,
            task.category,
            str(wave) if wave is not None else "-",
            f"[{color}]{board_status.value}[/{color}]",
            f"{entry.final_tokens:,}" if entry and entry.tokens_used else "-",
        )

    console.print(table)
    console.print(
        ", ".join(f"{count} {board_status.value}" for board_status, count in counts.items())
    )


@cli.command()
@project_root_option
def validate(project_root: Path) -> None:
    """Check that the board can be scheduled."""
    config = OrchestratorConfig.from_env()
    board_dir = config.board_dir(project_root)

    try:
        tasks = TaskStore(board_dir).load()
        ProgressStore(board_dir).load()
        DependencyResolver(tasks).validate_acyclic()
    except StructuralError as e:
        console.print(f"[red]Invalid:[/red] {e}")
        sys.exit(1)

    names = {task.name for task in tasks}
    warnings = []
    for task in tasks:
        if wave_of(task.category) is None:
            warnings.append(f"{task.name}: unknown category {task.category!r}")
        for dep in task.blocked_by:
            if dep not in names:
                warnings.append(f"{task.name}: depends on unknown task {dep!r}")

    for warning in warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    console.print(f"[green]Board is valid[/green] ({len(tasks)} tasks)")


@cli.command("next-steps")
@project_root_option
def next_steps(project_root: Path) -> None:
    """Recommend follow-up commands for the files agents changed."""
    config = OrchestratorConfig.from_env()
    board_dir = config.board_dir(project_root)

    try:
        progress = ProgressStore(board_dir).load()
        rules = load_rules(board_dir)
    except StructuralError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    files = collect_affected_files(progress, project_root.resolve())
    recommendations = recommend(files, rules)
    if not recommendations:
        console.print("No recommended next steps.")
        return
    print_recommendations(recommendations, console)


@cli.command()
@project_root_option
@click.option("--name", default=None, help="Project name (default: directory name)")
def init(project_root: Path, name: str | None) -> None:
    """Create an empty board in the project."""
    config = OrchestratorConfig.from_env()
    board_dir = config.board_dir(project_root)
    board_dir.mkdir(parents=True, exist_ok=True)

    board_path = board_dir / BOARD_FILE
    if board_path.exists():
        console.print(f"[yellow]Task store already exists:[/yellow] {board_path}")
    else:
        signals = detect_stack_signals(project_root)
        atomic_write_json(
            board_path,
            {
                "project": name or project_root.resolve().name,
                "created": utc_now(),
                "projectType": signals.frontend or signals.language or "unknown",
                "tasks": [],
            },
        )
        console.print(f"Created {board_path}")

    progress_path = board_dir / PROGRESS_FILE
    if progress_path.exists():
        console.print(f"[yellow]Progress store already exists:[/yellow] {progress_path}")
    else:
        atomic_write_json(progress_path, {})
        console.print(f"Created {progress_path}")


def main() -> None:
    """Main entry point for the kanban orchestrator CLI."""
    cli()


if __name__ == "__main__":
    main()
