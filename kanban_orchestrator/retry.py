"""Retry policy for failed batch results.

Batch outcomes are split into success-like and failure-like. When a batch
has failures the operator chooses Retry, Skip or Quit; in non-interactive
mode (explicit flag, CI environment, or no terminal on stdin) the
configured default applies without prompting. Retries are bounded per
task by ``max_task_attempts``.
"""

import logging
import os
import sys
from enum import Enum

from rich.console import Console
from rich.prompt import Prompt

from kanban_orchestrator.models import TaskOutcome

logger = logging.getLogger(__name__)

SUCCESS_LIKE = frozenset({"success", "completed", "code-review"})
FAILURE_LIKE = frozenset({"blocked", "error", "unknown"})


class RetryAction(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    QUIT = "quit"

    @classmethod
    def parse(cls, value: str) -> "RetryAction":
        """Case-insensitive lookup ("Skip", "RETRY", "quit")."""
        return cls(value.strip().lower())


def is_failure(outcome: TaskOutcome) -> bool:
    """Anything not explicitly success-like counts as a failure."""
    return outcome.status not in SUCCESS_LIKE


def detect_non_interactive(explicit: bool = False) -> bool:
    """True when no operator can be asked."""
    if explicit:
        return True
    if os.getenv("CI"):
        return True
    return not sys.stdin.isatty()


class RetryPolicy:
    """Decides what happens to the failures of a batch.

    Args:
        default_action: Applied automatically when non-interactive
        non_interactive: Skip the prompt entirely
        max_task_attempts: Attempts per task before retries are refused
        console: Rich console for the interactive prompt
    """

    def __init__(
        self,
        default_action: RetryAction = RetryAction.SKIP,
        non_interactive: bool = False,
        max_task_attempts: int = 3,
        console: Console | None = None,
    ) -> None:
        self.default_action = default_action
        self.non_interactive = non_interactive
        self.max_task_attempts = max_task_attempts
        self.console = console or Console()
        self.attempts: dict[str, int] = {}

    def record_attempt(self, task_name: str) -> int:
        """Count one more attempt of ``task_name``; returns the new count."""
        self.attempts[task_name] = self.attempts.get(task_name, 0) + 1
        return self.attempts[task_name]

    def can_retry(self, task_name: str) -> bool:
        return self.attempts.get(task_name, 0) < self.max_task_attempts

    def choose(self, failures: list[TaskOutcome]) -> RetryAction:
        """Ask the operator (or apply the default) for a failed batch."""
        if self.non_interactive:
            logger.info(
                "Non-interactive: applying %s to %d failed task(s)",
                self.default_action.value,
                len(failures),
            )
            return self.default_action

        self.console.print()
        self.console.print(f"[bold yellow]{len(failures)} task(s) failed:[/bold yellow]")
        for outcome in failures:
            reason = f" - {outcome.error}" if outcome.error else ""
            self.console.print(f"  {outcome.task_name}: {outcome.status}{reason}")

        answer = Prompt.ask(
            "Retry, Skip or Quit?",
            choices=[action.value for action in RetryAction],
            default=self.default_action.value,
            console=self.console,
        )
        return RetryAction.parse(answer)

    def retryable(self, failures: list[TaskOutcome]) -> tuple[list[str], list[str]]:
        """Split failures into (may retry, attempt ceiling reached)."""
        allowed: list[str] = []
        exhausted: list[str] = []
        for outcome in failures:
            if self.can_retry(outcome.task_name):
                allowed.append(outcome.task_name)
            else:
                exhausted.append(outcome.task_name)
        return allowed, exhausted
