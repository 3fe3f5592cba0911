"""Writing normalized worker output back to the stores."""

import logging

from kanban_orchestrator.models import (
    NormalizedWorkerOutput,
    ProgressEntry,
    ProgressStatus,
    TaskOutcome,
)
from kanban_orchestrator.store import ProgressStore, TaskStore

logger = logging.getLogger(__name__)

STATUS_MAP: dict[str, ProgressStatus] = {
    "success": ProgressStatus.CODE_REVIEW,
    "error": ProgressStatus.ERROR,
    "blocked": ProgressStatus.BLOCKED,
}


def should_pass(output: NormalizedWorkerOutput) -> bool:
    """Whether the task's ``passes`` flag may be flipped.

    Step evidence decides when present; without it, a clean success does.
    An explicit agent error never passes.
    """
    if output.status == "error":
        return False
    if output.verification.passed is not None:
        return output.verification.passed
    return output.status == "success"


class OutputReconciler:
    """Applies one NormalizedWorkerOutput to the progress and task stores.

    StoreWriteError propagates to the caller; the outcome of that task is
    then unknown.
    """

    def __init__(self, task_store: TaskStore, progress_store: ProgressStore) -> None:
        self.task_store = task_store
        self.progress_store = progress_store

    def reconcile(
        self,
        output: NormalizedWorkerOutput,
        tokens_used: list[int] | None = None,
    ) -> TaskOutcome:
        """Merge ``output`` into the task's progress entry.

        Args:
            output: Parsed transcript of the implementation phase
            tokens_used: Per-turn token counts reported outside the
                transcript; preferred over the parsed ones when given

        Returns:
            The task outcome as it was recorded
        """
        tokens = list(tokens_used) if tokens_used else list(output.tokens_used)
        status = STATUS_MAP[output.status]

        def _merge(current: ProgressEntry | None) -> ProgressEntry:
            entry = current or ProgressEntry(started_at=output.started_at)
            entry.status = status
            entry.completed_at = output.completed_at
            if output.agent:
                entry.agent = output.agent
            entry.work_log.extend(output.work_log)
            for path in output.affected_files:
                if path not in entry.affected_files:
                    entry.affected_files.append(path)
            entry.tokens_used.extend(tokens)
            entry.error = output.error if status is not ProgressStatus.CODE_REVIEW else None
            return entry

        self.progress_store.update_entry(output.task_name, _merge)

        if should_pass(output):
            self.task_store.mark_passes(output.task_name)
            logger.info("Task %s passes; awaiting review", output.task_name)

        return TaskOutcome(
            task_name=output.task_name,
            status=status.value,
            final_tokens=tokens[-1] if tokens else 0,
            cost_usd=output.cost_usd,
            duration_ms=output.duration_ms,
            error=output.error,
        )
