"""Shared error types for the kanban orchestrator package."""

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kanban_orchestrator.verification import VerificationReport


class OrchestratorError(Exception):
    """Base exception for orchestrator errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class StructuralError(OrchestratorError):
    """The board cannot be scheduled at all (missing or malformed stores).

    Raised before any agent is launched; aborts the whole run.
    """

    pass


class CyclicDependencyError(StructuralError):
    """Raised when task ``blockedBy`` edges form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Cyclic dependency detected: {' -> '.join(cycle)}")


class StoreBusyError(OrchestratorError):
    """Another writer holds the store write guard. Transient, retried."""

    pass


class StoreWriteError(OrchestratorError):
    """A store update could not be committed within the retry ceiling.

    The last underlying error is chained as ``__cause__``.
    """

    def __init__(self, path: Path, attempts: int, last_error: BaseException) -> None:
        self.path = path
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Failed to update {path} after {attempts} attempts: {last_error}"
        )


class TaskExecutionError(OrchestratorError):
    """A single task could not be executed or its transcript not understood.

    Captured into the task's progress entry; never aborts a batch.
    """

    def __init__(self, task_name: str, message: str) -> None:
        self.task_name = task_name
        super().__init__(f"Task {task_name}: {message}")


class VerificationError(OrchestratorError):
    """An independent post-wave check failed under the fail-fast policy."""

    def __init__(self, wave: int, report: "VerificationReport") -> None:
        self.wave = wave
        self.report = report
        failed = ", ".join(check.name for check in report.failed_checks)
        super().__init__(f"Verification failed after wave {wave}: {failed}")


class PolicyAbort(OrchestratorError):
    """The operator (or the non-interactive default) chose to quit the run."""

    pass
