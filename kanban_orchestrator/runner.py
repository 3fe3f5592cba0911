"""Orchestration loop.

Runs the board wave by wave:

1. Under the run lock, load both stores and reject dependency cycles.
2. For each wave, plan the ready tasks and run them in batches of at most
   ``parallel`` tasks. After every batch the outcomes are reconciled into
   the stores, a result line is printed per task, failures go through the
   retry policy, and the planner is consulted again for tasks that became
   ready.
3. After each wave that ran anything, run the verification gate.
4. Print a summary and the next-steps recommendations.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Literal

from opentelemetry import trace
from rich.console import Console

from kanban_orchestrator import telemetry
from kanban_orchestrator.advisor import (
    NextStepRule,
    Recommendation,
    collect_affected_files,
    load_rules,
    print_recommendations,
    recommend,
)
from kanban_orchestrator.agent import AgentLauncher
from kanban_orchestrator.config import OrchestratorConfig, ProjectConfig
from kanban_orchestrator.dependencies import DependencyResolver
from kanban_orchestrator.errors import (
    PolicyAbort,
    StoreWriteError,
    StructuralError,
    VerificationError,
)
from kanban_orchestrator.lock import RunLock
from kanban_orchestrator.models import (
    NormalizedWorkerOutput,
    ProgressEntry,
    ProgressStatus,
    Task,
    TaskOutcome,
)
from kanban_orchestrator.planner import WAVE_NUMBERS, WavePlanner, split_batches, wave_of
from kanban_orchestrator.reconciler import OutputReconciler
from kanban_orchestrator.retry import RetryAction, RetryPolicy, is_failure
from kanban_orchestrator.roles import build_role_table, detect_stack_signals, role_for
from kanban_orchestrator.scheduler import BatchScheduler
from kanban_orchestrator.store import ProgressStore, TaskStore
from kanban_orchestrator.verification import VerificationReport, run_verification

logger = logging.getLogger(__name__)

console = Console()


@dataclass
class RunOptions:
    """Per-run switches, as given on the command line."""

    parallel: int = 3
    dry_run: bool = False
    non_interactive: bool = False
    default_fail_action: RetryAction = RetryAction.SKIP
    fail_fast: bool = False
    run_verification: bool = True


@dataclass
class RunResult:
    """Result of one orchestrator run.

    Status values:
        completed: At least one task ran
        nothing-to-do: No task was ready in any wave
        dry-run: Batches were planned but nothing was launched
    """

    status: Literal["completed", "nothing-to-do", "dry-run"]
    outcomes: list[TaskOutcome] = field(default_factory=list)
    verification: list[VerificationReport] = field(default_factory=list)
    recommendations: list[Recommendation] = field(default_factory=list)
    planned: list[list[str]] = field(default_factory=list)

    @property
    def total_final_tokens(self) -> int:
        return sum(outcome.final_tokens for outcome in self.outcomes)

    @property
    def passed_count(self) -> int:
        return sum(1 for outcome in self.outcomes if not is_failure(outcome))

    @property
    def failed_count(self) -> int:
        return sum(1 for outcome in self.outcomes if is_failure(outcome))


def _record_metrics(outcome: TaskOutcome, category: str) -> None:
    try:
        telemetry.tasks_counter.add(1, {"status": outcome.status, "category": category})
        telemetry.tokens_counter.add(outcome.final_tokens)
        telemetry.cost_counter.add(outcome.cost_usd)
        telemetry.task_duration.record(outcome.duration_ms / 1000)
    except (AttributeError, NameError):
        pass  # Metrics not initialized


class Orchestrator:
    """Drives one run against the board of ``project_root``.

    Args:
        project_root: Project the agents work in
        config: Orchestrator configuration
        options: Run switches
        tracer: OpenTelemetry tracer (uses no-op if None)
        console: Rich console for operator output
    """

    def __init__(
        self,
        project_root: Path,
        config: OrchestratorConfig,
        options: RunOptions,
        tracer: trace.Tracer | None = None,
        console: Console = console,
    ) -> None:
        self.project_root = project_root
        self.config = config
        self.options = options
        self.tracer = tracer or trace.get_tracer("kanban_orchestrator")
        self.console = console

        self.board_dir = config.board_dir(project_root)
        self.task_store = TaskStore(
            self.board_dir, config.store_write_attempts, config.store_retry_base_delay
        )
        self.progress_store = ProgressStore(
            self.board_dir, config.store_write_attempts, config.store_retry_base_delay
        )
        self.reconciler = OutputReconciler(self.task_store, self.progress_store)
        self.policy = RetryPolicy(
            default_action=options.default_fail_action,
            non_interactive=options.non_interactive,
            max_task_attempts=config.max_task_attempts,
            console=self.console,
        )

    async def run(self) -> RunResult:
        """Run every wave.

        Raises:
            StructuralError: Missing or malformed stores, cyclic dependencies
            RuntimeError: Another run holds the board
            VerificationError: A check failed under fail-fast
            PolicyAbort: Quit was chosen after a failed batch
        """
        if not self.board_dir.is_dir():
            raise StructuralError(
                f"Board directory not found: {self.board_dir}. Run: kanban-orchestrator init"
            )

        with RunLock(self.board_dir):
            tasks = self.task_store.load()
            progress = self.progress_store.load()
            DependencyResolver(tasks).validate_acyclic()

            project_config = ProjectConfig.load(self.board_dir)
            rules = load_rules(self.board_dir)
            role_table = build_role_table(detect_stack_signals(self.project_root))
            logger.debug("Role table: %s", role_table)

            unknown = [task.name for task in tasks if wave_of(task.category) is None]
            if unknown:
                logger.warning("Tasks with unknown category: %s", ", ".join(unknown))

            if self.options.dry_run:
                return self._dry_run(tasks, progress, role_table)

            launcher = AgentLauncher(
                self.config,
                self.project_root,
                self.board_dir / "logs",
                project_config.transcript_poll_timeout_seconds,
            )
            self.scheduler = BatchScheduler(
                launcher, self.progress_store, role_table, self.tracer
            )

            result = RunResult(status="nothing-to-do")
            with self.tracer.start_as_current_span("kanban.run") as run_span:
                run_span.set_attribute("run.parallel", self.options.parallel)

                for wave in WAVE_NUMBERS:
                    with self.tracer.start_as_current_span("kanban.wave") as wave_span:
                        wave_span.set_attribute("wave.number", wave)
                        outcomes = await self._run_wave(wave)
                        wave_span.set_attribute("wave.tasks", len(outcomes))
                    result.outcomes.extend(outcomes)

                    if outcomes and self.options.run_verification:
                        report = self._verify(wave, project_config)
                        if report is not None:
                            result.verification.append(report)

                if result.outcomes:
                    result.status = "completed"
                run_span.set_attribute("run.tasks", len(result.outcomes))
                run_span.set_attribute("run.final_tokens", result.total_final_tokens)

            self._print_summary(result)
            result.recommendations = self._advise(rules)
            return result

    # ------------------------------------------------------------------
    # Waves and batches
    # ------------------------------------------------------------------

    async def _run_wave(self, wave: int) -> list[TaskOutcome]:
        queue: list[Task] = []
        seen: set[str] = set()
        outcomes: list[TaskOutcome] = []

        def refill() -> list[Task]:
            plan = WavePlanner(
                self.task_store.load(), self.progress_store.load()
            ).plan_wave(wave)
            for task in plan.ready:
                if task.name not in seen:
                    seen.add(task.name)
                    queue.append(task)
            return plan.deferred

        deferred = refill()
        if not queue:
            if deferred:
                logger.info(
                    "Wave %d: %d task(s) waiting on dependencies", wave, len(deferred)
                )
            return outcomes

        self.console.print(f"\n[bold]Wave {wave}[/bold] ({len(queue)} ready)")
        batch_number = 0
        while queue:
            batch = queue[: self.options.parallel]
            del queue[: self.options.parallel]
            batch_number += 1

            for task in batch:
                self.policy.record_attempt(task.name)

            batch_outcomes = await self._run_batch(wave, batch_number, batch)
            outcomes.extend(batch_outcomes)

            failures = [outcome for outcome in batch_outcomes if is_failure(outcome)]
            if failures:
                self._handle_failures(batch, failures, queue)

            deferred = refill()

        if deferred:
            names = ", ".join(task.name for task in deferred)
            self.console.print(f"[dim]Deferred (dependencies not passed): {names}[/dim]")
        return outcomes

    async def _run_batch(
        self, wave: int, batch_number: int, batch: list[Task]
    ) -> list[TaskOutcome]:
        names = ", ".join(task.name for task in batch)
        self.console.print(f"[dim]Batch {batch_number}: {names}[/dim]")

        with self.tracer.start_as_current_span("kanban.batch") as span:
            span.set_attribute("wave.number", wave)
            span.set_attribute("batch.number", batch_number)
            span.set_attribute("batch.size", len(batch))
            outputs = await self.scheduler.run_batch(batch)

        outcomes = []
        for task, output in zip(batch, outputs):
            outcome = await asyncio.to_thread(self._reconcile, output)
            _record_metrics(outcome, task.category)
            self._print_outcome(outcome)
            outcomes.append(outcome)
        return outcomes

    def _reconcile(self, output: NormalizedWorkerOutput) -> TaskOutcome:
        warnings = []
        if output.status == "success" and output.verification.passed is None:
            warnings.append("no verification steps reported")
        if not output.tokens_used:
            warnings.append("no token usage in transcript")

        try:
            outcome = self.reconciler.reconcile(output)
        except StoreWriteError as e:
            logger.error("Could not record result of %s: %s", output.task_name, e)
            return TaskOutcome(
                task_name=output.task_name,
                status="unknown",
                final_tokens=output.final_tokens,
                cost_usd=output.cost_usd,
                duration_ms=output.duration_ms,
                warnings=warnings,
                error=str(e),
            )

        outcome.warnings.extend(warnings)
        return outcome

    def _handle_failures(
        self, batch: list[Task], failures: list[TaskOutcome], queue: list[Task]
    ) -> None:
        action = self.policy.choose(failures)

        if action is RetryAction.QUIT:
            raise PolicyAbort(f"Run aborted after {len(failures)} failed task(s)")

        if action is RetryAction.RETRY:
            allowed, exhausted = self.policy.retryable(failures)
            for name in exhausted:
                self.console.print(
                    f"[yellow]Not retrying {name}: "
                    f"{self.config.max_task_attempts} attempts used[/yellow]"
                )
            retry = [task for task in batch if task.name in allowed]
            queue[:0] = retry
            if retry:
                self.console.print(f"Retrying: {', '.join(task.name for task in retry)}")
                try:
                    telemetry.retries_counter.add(len(retry))
                except (AttributeError, NameError):
                    pass  # Metrics not initialized
            return

        names = ", ".join(outcome.task_name for outcome in failures)
        self.console.print(f"[yellow]Skipped for manual follow-up: {names}[/yellow]")

    # ------------------------------------------------------------------
    # Verification, summary, advice
    # ------------------------------------------------------------------

    def _verify(self, wave: int, project_config: ProjectConfig) -> VerificationReport | None:
        commands = project_config.verification_commands(self.project_root)
        if not commands:
            logger.info("No verification commands for this project; skipping")
            return None

        timeout = (
            project_config.verification_timeout_seconds
            or self.config.verification_timeout_seconds
        )
        self.console.print(f"[bold]Verifying wave {wave}...[/bold]")
        with self.tracer.start_as_current_span("kanban.verification") as span:
            span.set_attribute("wave.number", wave)
            report = run_verification(wave, commands, self.project_root, timeout)
            span.set_attribute("verification.passed", report.passed)

        for check in report.checks:
            label = "[green]PASS[/green]" if check.passed else "[red]FAIL[/red]"
            self.console.print(f"  {label} {check.name}: {check.command}")
            try:
                telemetry.verification_counter.add(
                    1, {"check": check.name, "status": "pass" if check.passed else "fail"}
                )
            except (AttributeError, NameError):
                pass  # Metrics not initialized

        if not report.passed:
            if self.options.fail_fast:
                raise VerificationError(wave, report)
            logger.warning("Verification failed after wave %d; continuing", wave)
        return report

    def _print_outcome(self, outcome: TaskOutcome) -> None:
        if not is_failure(outcome):
            label = "[bold green]PASS[/bold green]"
        elif outcome.status == "blocked":
            label = "[bold yellow]BLOCKED[/bold yellow]"
        else:
            label = "[bold red]FAIL[/bold red]"

        line = f"{label} {outcome.task_name} ({outcome.final_tokens:,} tokens)"
        if outcome.error and is_failure(outcome):
            line += f" - {outcome.error}"
        self.console.print(line)
        for warning in outcome.warnings:
            self.console.print(f"  [yellow]warning:[/yellow] {warning}")

    def _print_summary(self, result: RunResult) -> None:
        if not result.outcomes:
            self.console.print("Nothing to do: no ready tasks.")
            return

        cost = sum(outcome.cost_usd for outcome in result.outcomes)
        self.console.print()
        self.console.print("[bold]Summary[/bold]")
        self.console.print(
            f"  {result.passed_count} passed, {result.failed_count} failed, "
            f"{len(result.outcomes)} run"
        )
        self.console.print(f"  Tokens: {result.total_final_tokens:,} (final turns)")
        self.console.print(f"  Cost: ${cost:.2f}")
        failed_checks = [
            f"wave {report.wave}: {check.name}"
            for report in result.verification
            for check in report.failed_checks
        ]
        if failed_checks:
            self.console.print(f"  [red]Failed checks:[/red] {', '.join(failed_checks)}")

    def _advise(self, rules: list[NextStepRule]) -> list[Recommendation]:
        files = collect_affected_files(self.progress_store.load(), self.project_root)
        recommendations = recommend(files, rules)
        print_recommendations(recommendations, self.console)
        return recommendations

    # ------------------------------------------------------------------
    # Dry run
    # ------------------------------------------------------------------

    def _dry_run(
        self,
        tasks: list[Task],
        progress: dict[str, ProgressEntry],
        role_table: dict[str, str],
    ) -> RunResult:
        """Plan every wave as if each planned task passed; launches nothing."""
        result = RunResult(status="dry-run")
        simulated: set[str] = set()

        for wave in WAVE_NUMBERS:
            header_printed = False
            deferred: list[Task] = []
            while True:
                view = [replace(t, passes=True) if t.name in simulated else t for t in tasks]
                view_progress = dict(progress)
                for name in simulated:
                    view_progress[name] = ProgressEntry(status=ProgressStatus.CODE_REVIEW)

                plan = WavePlanner(view, view_progress).plan_wave(wave)
                deferred = plan.deferred
                if not plan.ready:
                    break

                if not header_printed:
                    self.console.print(f"\n[bold]Wave {wave}[/bold] (dry run)")
                    header_printed = True
                for batch in split_batches(plan.ready, self.options.parallel):
                    result.planned.append([task.name for task in batch])
                    listed = ", ".join(
                        f"{task.name} [{role_for(task.category, role_table)}]"
                        for task in batch
                    )
                    self.console.print(f"  Batch {len(result.planned)}: {listed}")
                simulated.update(task.name for task in plan.ready)

            if deferred:
                names = ", ".join(task.name for task in deferred)
                self.console.print(f"  [dim]Deferred: {names}[/dim]")

        if not result.planned:
            self.console.print("Nothing to do: no ready tasks.")
        return result
