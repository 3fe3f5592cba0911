"""Launching external agent processes.

Each invocation runs the configured agent command (Claude Code by
default) as a child process in the project root. The prompt is written to
``logs/<task>.prompt.md`` and fed on stdin; stdout, the stream-json
transcript, goes straight to ``logs/<task>.json`` (``.tdd`` variants for
the test-authoring phase). After the process exits, the transcript is
polled briefly for its terminal result event, since the file may still be
flushing.
"""

import asyncio
import hashlib
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from kanban_orchestrator.config import OrchestratorConfig
from kanban_orchestrator.errors import TaskExecutionError
from kanban_orchestrator.models import NormalizedWorkerOutput, Task, utc_now
from kanban_orchestrator.transcript import (
    has_result_event,
    parse_transcript_file,
    write_worker_output,
)

logger = logging.getLogger(__name__)

Phase = Literal["test", "implementation"]

STDERR_TAIL_CHARS = 500

_UNSAFE_STEM_CHARS = re.compile(r"[^A-Za-z0-9_-]+")


def log_stem(task_name: str, phase: Phase) -> str:
    """File name stem for a task's log files.

    Names made only of letters, digits, ``_`` and ``-`` are used as-is. Any
    other name is sanitized and suffixed with a short hash of the original,
    so distinct tasks never share log files. The test phase adds ``.tdd``;
    plain stems contain no dot, so it cannot collide with a task name.
    """
    stem = _UNSAFE_STEM_CHARS.sub("-", task_name).strip("-")
    if stem != task_name:
        digest = hashlib.sha1(task_name.encode("utf-8")).hexdigest()[:8]
        stem = f"{stem or 'task'}.{digest}"
    return f"{stem}.tdd" if phase == "test" else stem


@dataclass
class AgentJob:
    """One running (or finished) agent invocation."""

    task: Task
    phase: Phase
    role: str
    prompt_path: Path
    transcript_path: Path
    stderr_path: Path
    started_at: str = field(default_factory=utc_now)
    completed_at: str | None = None
    process: asyncio.subprocess.Process | None = None
    returncode: int | None = None


class AgentLauncher:
    """Runs agent processes for tasks and parses their transcripts.

    Args:
        config: Orchestrator configuration (agent command, model, polling)
        project_root: Working directory of every agent process
        logs_dir: Where prompts, transcripts and side files are written
        transcript_timeout: Seconds to wait for the result event after exit
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        project_root: Path,
        logs_dir: Path,
        transcript_timeout: float | None = None,
    ) -> None:
        self.config = config
        self.project_root = project_root.resolve()
        self.logs_dir = logs_dir
        self.transcript_timeout = (
            transcript_timeout
            if transcript_timeout is not None
            else config.transcript_poll_timeout_seconds
        )

    def command(self) -> list[str]:
        cmd = list(self.config.agent_command)
        if self.config.model:
            cmd.extend(["--model", self.config.model])
        return cmd

    def prepare(self, task: Task, phase: Phase, role: str, prompt: str) -> AgentJob:
        """Write the prompt file and clear stale logs for a new invocation."""
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        stem = log_stem(task.name, phase)
        job = AgentJob(
            task=task,
            phase=phase,
            role=role,
            prompt_path=self.logs_dir / f"{stem}.prompt.md",
            transcript_path=self.logs_dir / f"{stem}.json",
            stderr_path=self.logs_dir / f"{stem}.stderr.log",
        )
        job.prompt_path.write_text(prompt, encoding="utf-8")
        job.transcript_path.unlink(missing_ok=True)
        return job

    async def launch(self, job: AgentJob) -> None:
        """Start the agent process for ``job``.

        Raises:
            TaskExecutionError: If the agent command cannot be started
        """
        cmd = self.command()
        logger.debug("Launching %s agent for %s: %s", job.phase, job.task.name, cmd)
        try:
            with (
                open(job.prompt_path, "rb") as stdin,
                open(job.transcript_path, "wb") as stdout,
                open(job.stderr_path, "wb") as stderr,
            ):
                job.process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=stdin,
                    stdout=stdout,
                    stderr=stderr,
                    cwd=self.project_root,
                )
        except OSError as e:
            raise TaskExecutionError(
                job.task.name, f"Cannot start agent command {cmd[0]!r}: {e}"
            ) from e

    async def wait(self, job: AgentJob) -> None:
        """Wait for the process to exit, then for the transcript to settle."""
        assert job.process is not None
        job.returncode = await job.process.wait()
        job.completed_at = utc_now()

        if job.returncode != 0:
            logger.warning(
                "Agent for %s (%s) exited with code %d",
                job.task.name,
                job.phase,
                job.returncode,
            )

        deadline = time.monotonic() + self.transcript_timeout
        while not has_result_event(job.transcript_path):
            if time.monotonic() >= deadline:
                logger.warning(
                    "No result event in %s after %.1fs",
                    job.transcript_path.name,
                    self.transcript_timeout,
                )
                break
            await asyncio.sleep(self.config.transcript_poll_interval_seconds)

    def collect(self, job: AgentJob) -> NormalizedWorkerOutput:
        """Parse the finished job's transcript into a worker output."""
        output = parse_transcript_file(
            job.transcript_path,
            job.task.name,
            agent=job.role,
            started_at=job.started_at,
            completed_at=job.completed_at,
            project_root=self.project_root,
        )

        if output.status == "error" and job.returncode:
            stderr_tail = self._stderr_tail(job)
            detail = f"Agent exited with code {job.returncode}"
            if stderr_tail:
                detail += f": {stderr_tail}"
            output.error = f"{output.error}. {detail}" if output.error else detail

        if job.phase == "implementation":
            stem = log_stem(job.task.name, job.phase)
            try:
                write_worker_output(output, self.logs_dir / f"{stem}.output.json")
            except OSError as e:
                logger.warning("Could not write output file for %s: %s", job.task.name, e)
        return output

    def _stderr_tail(self, job: AgentJob) -> str:
        try:
            text = job.stderr_path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""
        return text.strip()[-STDERR_TAIL_CHARS:]

    async def run(
        self, task: Task, phase: Phase, role: str, prompt: str
    ) -> NormalizedWorkerOutput:
        """Launch, await and parse one agent invocation.

        Never raises for task-level failures: a command that cannot be
        started, or a transcript that cannot be handled, becomes an error
        output for this task only.
        """
        started_at = utc_now()
        try:
            job = self.prepare(task, phase, role, prompt)
            started_at = job.started_at
            await self.launch(job)
            await self.wait(job)
            return self.collect(job)
        except TaskExecutionError as e:
            logger.error(str(e))
            error = str(e)
        except Exception as e:
            logger.exception("Agent run for %s (%s) failed", task.name, phase)
            error = str(TaskExecutionError(task.name, f"{type(e).__name__}: {e}"))

        return NormalizedWorkerOutput(
            task_name=task.name,
            status="error",
            started_at=started_at,
            completed_at=utc_now(),
            agent=role,
            error=error,
        )
