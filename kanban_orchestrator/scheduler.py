"""Two-phase batch execution.

Every task in a batch goes through:

Phase A: a test author writes failing tests (skipped for the testing
category). All Phase A jobs of the batch run concurrently.

Phase B: the category's implementation role implements the task against
those tests. All Phase B jobs run concurrently, after Phase A has finished
for the whole batch.

Each task is durably marked running before its process starts. A failure
in one task never affects the others.
"""

import asyncio
import logging

from opentelemetry import trace

from kanban_orchestrator.agent import AgentLauncher
from kanban_orchestrator.errors import StoreWriteError
from kanban_orchestrator.models import (
    NormalizedWorkerOutput,
    ProgressEntry,
    Task,
    utc_now,
)
from kanban_orchestrator.prompts import build_implementation_prompt, build_test_prompt
from kanban_orchestrator.roles import TEST_AUTHOR_ROLE, role_for
from kanban_orchestrator.store import ProgressStore

logger = logging.getLogger(__name__)


class BatchScheduler:
    """Runs batches of tasks through the test and implementation phases.

    Args:
        launcher: Starts agent processes and parses their transcripts
        progress_store: Receives the running marks and test-phase results
        role_table: Category to implementation role, fixed for the run
        tracer: Optional tracer for per-task spans
    """

    def __init__(
        self,
        launcher: AgentLauncher,
        progress_store: ProgressStore,
        role_table: dict[str, str],
        tracer: trace.Tracer | None = None,
    ) -> None:
        self.launcher = launcher
        self.progress_store = progress_store
        self.role_table = role_table
        self.tracer = tracer or trace.get_tracer(__name__)

    async def run_batch(self, tasks: list[Task]) -> list[NormalizedWorkerOutput]:
        """Run one batch and return the implementation outputs, in batch order.

        An unexpected failure in one task's phase becomes that task's error
        output; the other tasks of the batch are unaffected.
        """
        test_results = await asyncio.gather(
            *(self._test_phase(task) for task in tasks), return_exceptions=True
        )
        test_files: dict[str, list[str]] = {}
        for task, files in zip(tasks, test_results):
            if isinstance(files, Exception):
                logger.error("Test phase for %s failed: %r", task.name, files)
                files = []
            elif isinstance(files, BaseException):
                raise files
            test_files[task.name] = files

        outputs = await asyncio.gather(
            *(self._implementation_phase(task, test_files[task.name]) for task in tasks),
            return_exceptions=True,
        )
        results = []
        for task, output in zip(tasks, outputs):
            if isinstance(output, Exception):
                logger.error("Implementation phase for %s failed: %r", task.name, output)
                output = NormalizedWorkerOutput(
                    task_name=task.name,
                    status="error",
                    completed_at=utc_now(),
                    agent=role_for(task.category, self.role_table),
                    error=f"Task {task.name}: {type(output).__name__}: {output}",
                )
            elif isinstance(output, BaseException):
                raise output
            results.append(output)
        return results

    async def _test_phase(self, task: Task) -> list[str]:
        """Run the test author for ``task``; returns the test files written."""
        if task.category == "testing":
            await self._mark_new_attempt(task, tdd_agent=None)
            return []

        if not await self._mark_new_attempt(task, tdd_agent=TEST_AUTHOR_ROLE):
            return []

        with self.tracer.start_as_current_span("kanban.task.tests") as span:
            span.set_attribute("task.name", task.name)
            output = await self.launcher.run(
                task, "test", TEST_AUTHOR_ROLE, build_test_prompt(task, TEST_AUTHOR_ROLE)
            )
            span.set_attribute("task.tests.status", output.status)

        if output.status != "success":
            logger.warning(
                "Test authoring for %s ended with %s: %s",
                task.name,
                output.status,
                output.error,
            )

        files = output.affected_files

        def _record(current: ProgressEntry | None) -> ProgressEntry:
            entry = current or ProgressEntry()
            entry.tdd_affected_files = list(files)
            entry.tokens_used.extend(output.tokens_used)
            return entry

        try:
            await asyncio.to_thread(self.progress_store.update_entry, task.name, _record)
        except StoreWriteError as e:
            logger.error("Could not record test files for %s: %s", task.name, e)
        return files

    async def _implementation_phase(
        self, task: Task, test_files: list[str]
    ) -> NormalizedWorkerOutput:
        role = role_for(task.category, self.role_table)
        try:
            await asyncio.to_thread(
                self.progress_store.mark_running, task.name, utc_now(), agent=role
            )
        except StoreWriteError as e:
            logger.error("Could not mark %s running: %s", task.name, e)
            return NormalizedWorkerOutput(
                task_name=task.name,
                status="error",
                agent=role,
                error=f"Could not mark task running: {e}",
            )

        with self.tracer.start_as_current_span("kanban.task") as span:
            span.set_attribute("task.name", task.name)
            span.set_attribute("task.category", task.category)
            span.set_attribute("task.role", role)
            prompt = build_implementation_prompt(task, role, test_files)
            output = await self.launcher.run(task, "implementation", role, prompt)
            span.set_attribute("task.status", output.status)
            span.set_attribute("task.final_tokens", output.final_tokens)
        return output

    async def _mark_new_attempt(self, task: Task, tdd_agent: str | None) -> bool:
        try:
            await asyncio.to_thread(
                self.progress_store.mark_running,
                task.name,
                utc_now(),
                tdd_agent=tdd_agent,
                new_attempt=True,
            )
        except StoreWriteError as e:
            logger.error("Could not mark %s running: %s", task.name, e)
            return False
        return True
