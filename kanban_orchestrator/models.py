"""Data models for the Kanban Orchestrator.

Defines dataclasses for board tasks, progress entries, normalized worker
output and the lifecycle state used by the wave planner. Store-facing
models convert to and from the camelCase JSON documents with
``from_dict()``/``to_dict()``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

CATEGORIES: tuple[str, ...] = ("data", "config", "api", "integration", "ui", "testing")


class ProgressStatus(str, Enum):
    """Status values a progress entry may hold. There is no "pending"."""

    RUNNING = "running"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    ERROR = "error"
    CODE_REVIEW = "code-review"


class BoardStatus(str, Enum):
    """Board column a task is displayed in."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    BLOCKED = "blocked"
    CODE_REVIEW = "code-review"
    COMPLETED = "completed"


class StateKind(Enum):
    """Tag of the normalized lifecycle state of a task."""

    NO_ENTRY = "no_entry"
    RUNNING = "running"
    BLOCKED = "blocked"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class LifecycleState:
    """Normalized view of a task plus its (possibly legacy) progress entry.

    Attributes:
        kind: Which lifecycle variant the task is in
        passes: The task's acceptance flag from the board
        accepted: True when the progress entry says "completed"
    """

    kind: StateKind
    passes: bool = False
    accepted: bool = False


@dataclass
class Task:
    """A unit of work authored on the board.

    Only ``passes`` is ever mutated by the orchestrator.
    """

    name: str
    category: str
    description: str = ""
    steps: list[str] = field(default_factory=list)
    passes: bool = False
    blocked_by: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        return cls(
            name=data["name"],
            category=data.get("category", ""),
            description=data.get("description", ""),
            steps=list(data.get("steps") or []),
            passes=bool(data.get("passes", False)),
            blocked_by=list(data.get("blockedBy") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "steps": list(self.steps),
            "passes": self.passes,
        }
        if self.blocked_by:
            data["blockedBy"] = list(self.blocked_by)
        return data


@dataclass
class ProgressEntry:
    """Lifecycle record for one task in the progress store.

    ``status`` is None only for legacy entries written without a status
    field; ``tokens_used`` is a per-turn series, not a running total.
    """

    status: ProgressStatus | None = None
    started_at: str | None = None
    completed_at: str | None = None
    agent: str | None = None
    tdd_agent: str | None = None
    work_log: list[str] = field(default_factory=list)
    affected_files: list[str] = field(default_factory=list)
    tdd_affected_files: list[str] = field(default_factory=list)
    tokens_used: list[int] = field(default_factory=list)
    error: str | None = None

    @property
    def final_tokens(self) -> int:
        """Tokens reported by the last turn (0 when none recorded)."""
        return self.tokens_used[-1] if self.tokens_used else 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProgressEntry":
        """Build an entry, normalizing legacy data.

        Unknown or "pending" statuses load as None so that the planner treats
        them like a missing status field.
        """
        raw_status = data.get("status")
        try:
            status = ProgressStatus(raw_status) if raw_status else None
        except ValueError:
            status = None

        tokens = data.get("tokensUsed") or []
        if isinstance(tokens, int):
            tokens = [tokens]

        return cls(
            status=status,
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
            agent=data.get("agent"),
            tdd_agent=data.get("tddAgent"),
            work_log=list(data.get("workLog") or []),
            affected_files=list(data.get("affectedFiles") or []),
            tdd_affected_files=list(data.get("tddAffectedFiles") or []),
            tokens_used=[int(t) for t in tokens],
            error=data.get("error"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status.value if self.status else None,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "agent": self.agent,
            "tddAgent": self.tdd_agent,
            "workLog": list(self.work_log),
            "affectedFiles": list(self.affected_files),
            "tddAffectedFiles": list(self.tdd_affected_files),
            "tokensUsed": list(self.tokens_used),
        }
        if self.error:
            data["error"] = self.error
        return {key: value for key, value in data.items() if value is not None}


@dataclass
class StepCheck:
    """One numbered verification step reported by the agent."""

    number: int
    description: str
    passed: bool


@dataclass
class VerificationSummary:
    """Verification evidence extracted from a transcript.

    ``passed`` is None when the transcript contained no step evidence.
    """

    passed: bool | None = None
    steps: list[StepCheck] = field(default_factory=list)


WorkerStatus = Literal["success", "error", "blocked"]


@dataclass
class NormalizedWorkerOutput:
    """Canonical parse of one agent transcript.

    The single input to reconciliation, whatever the agent claimed.
    """

    task_name: str
    status: WorkerStatus
    started_at: str | None = None
    completed_at: str | None = None
    agent: str | None = None
    verification: VerificationSummary = field(default_factory=VerificationSummary)
    work_log: list[str] = field(default_factory=list)
    affected_files: list[str] = field(default_factory=list)
    tokens_used: list[int] = field(default_factory=list)
    duration_ms: int = 0
    cost_usd: float = 0.0
    summary: str = ""
    error: str | None = None

    @property
    def final_tokens(self) -> int:
        return self.tokens_used[-1] if self.tokens_used else 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "taskName": self.task_name,
            "status": self.status,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "agent": self.agent,
            "verification": {
                "passed": self.verification.passed,
                "steps": [
                    {
                        "number": step.number,
                        "description": step.description,
                        "passed": step.passed,
                    }
                    for step in self.verification.steps
                ],
            },
            "workLog": list(self.work_log),
            "affectedFiles": list(self.affected_files),
            "tokensUsed": list(self.tokens_used),
            "durationMs": self.duration_ms,
            "costUsd": self.cost_usd,
            "summary": self.summary,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class TaskOutcome:
    """Result of one task within a batch, as reported to the operator.

    Status values follow the progress store ("code-review", "error",
    "blocked") plus "unknown" when the outcome could not be recorded.
    """

    task_name: str
    status: str
    final_tokens: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0
    warnings: list[str] = field(default_factory=list)
    error: str | None = None


def utc_now() -> str:
    """Current time as an ISO 8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat()
