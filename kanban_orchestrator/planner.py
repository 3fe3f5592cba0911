"""Wave planning for board tasks.

Categories are processed in a fixed order of waves. Within a wave, only
pending tasks whose dependencies have all passed are scheduled; tasks that
are not ready yet are picked up by a later planner invocation (after the
next batch or wave), never retried inside the same pass.
"""

from dataclasses import dataclass

from kanban_orchestrator.dependencies import DependencyResolver
from kanban_orchestrator.models import (
    BoardStatus,
    LifecycleState,
    ProgressEntry,
    ProgressStatus,
    StateKind,
    Task,
)

# Category to wave number
WAVES: dict[str, int] = {
    "data": 1,
    "config": 1,
    "api": 2,
    "integration": 3,
    "ui": 4,
    "testing": 5,
}

WAVE_NUMBERS: list[int] = sorted(set(WAVES.values()))


def wave_of(category: str) -> int | None:
    return WAVES.get(category)


def lifecycle_state(task: Task, entry: ProgressEntry | None) -> LifecycleState:
    """Normalize a task and its progress entry into one tagged state.

    Legacy entries without a status field (or with a status the store does
    not know) count as running.
    """
    if entry is None:
        return LifecycleState(StateKind.NO_ENTRY, passes=task.passes)

    accepted = entry.status is ProgressStatus.COMPLETED
    if entry.status is ProgressStatus.BLOCKED:
        kind = StateKind.BLOCKED
    elif entry.status in (
        ProgressStatus.COMPLETED,
        ProgressStatus.ERROR,
        ProgressStatus.CODE_REVIEW,
    ):
        kind = StateKind.TERMINAL
    else:
        kind = StateKind.RUNNING
    return LifecycleState(kind, passes=task.passes, accepted=accepted)


def get_task_status(task: Task, entry: ProgressEntry | None) -> BoardStatus:
    """Board column for a task.

    A passing task is "completed" once its progress says so, otherwise it
    waits in "code-review". A task that has not passed is "pending" with no
    progress entry, "blocked" when blocked, and "in-progress" otherwise
    (running, or finished but not accepted).
    """
    state = lifecycle_state(task, entry)

    if state.passes:
        return BoardStatus.COMPLETED if state.accepted else BoardStatus.CODE_REVIEW
    if state.kind is StateKind.NO_ENTRY:
        return BoardStatus.PENDING
    if state.kind is StateKind.BLOCKED:
        return BoardStatus.BLOCKED
    return BoardStatus.IN_PROGRESS


@dataclass
class WavePlan:
    """Planner output for one wave.

    Attributes:
        wave: Wave number
        ready: Pending tasks whose dependencies have all passed, board order
        deferred: Pending tasks in this wave still waiting on dependencies
    """

    wave: int
    ready: list[Task]
    deferred: list[Task]


class WavePlanner:
    """Selects what to run next from a snapshot of both stores."""

    def __init__(self, tasks: list[Task], progress: dict[str, ProgressEntry]) -> None:
        self.tasks = tasks
        self.progress = progress
        self.resolver = DependencyResolver(tasks)

    def get_task_status(self, task: Task) -> BoardStatus:
        return get_task_status(task, self.progress.get(task.name))

    def plan_wave(self, wave: int) -> WavePlan:
        ready: list[Task] = []
        deferred: list[Task] = []
        for task in self.tasks:
            if WAVES.get(task.category) != wave:
                continue
            if self.get_task_status(task) is not BoardStatus.PENDING:
                continue
            if self.resolver.is_ready(task):
                ready.append(task)
            else:
                deferred.append(task)
        return WavePlan(wave=wave, ready=ready, deferred=deferred)

    def get_tasks_for_wave(self, wave: int) -> list[Task]:
        """Pending, ready tasks whose category belongs to ``wave``."""
        return self.plan_wave(wave).ready


def split_batches(tasks: list[Task], parallel: int) -> list[list[Task]]:
    """Split tasks into consecutive batches of at most ``parallel`` tasks."""
    size = max(1, parallel)
    return [tasks[i : i + size] for i in range(0, len(tasks), size)]
