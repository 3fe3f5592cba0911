"""Persistence for the kanban board stores.

Both stores are plain JSON documents shared with other processes (the
board viewer, other tooling, concurrent orchestrator workers). Every write
is a fresh read-modify-write under a StoreLock, committed with
write-to-temp + fsync + rename so readers never see a partial file.
Contention is retried with randomized exponential backoff; exhausting the
retry ceiling raises StoreWriteError with the last error chained.
"""

import json
import logging
import os
import random
import time
from pathlib import Path
from typing import Any, Callable

from kanban_orchestrator.errors import StoreBusyError, StoreWriteError, StructuralError
from kanban_orchestrator.lock import StoreLock
from kanban_orchestrator.models import ProgressEntry, ProgressStatus, Task

logger = logging.getLogger(__name__)

BOARD_FILE = "kanban-board.json"
PROGRESS_FILE = "kanban-progress.json"

MAX_BACKOFF_SECONDS = 2.0

# Keys owned by ProgressEntry; anything else in an entry is preserved as-is
ENTRY_KEYS = frozenset(ProgressEntry().to_dict()) | {
    "status",
    "startedAt",
    "completedAt",
    "agent",
    "tddAgent",
    "error",
}


def read_json(path: Path) -> Any:
    """Read a JSON document, tolerating a UTF-8 byte order mark."""
    return json.loads(path.read_text(encoding="utf-8-sig"))


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to a file atomically.

    Serializes first so that unserializable data never touches the disk,
    then writes a sibling temp file, fsyncs and renames it over the target.
    """
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")

    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def update_json(
    path: Path,
    update: Callable[[Any], Any],
    max_attempts: int = 8,
    base_delay: float = 0.05,
) -> Any:
    """Atomically apply ``update`` to the JSON document at ``path``.

    The document is re-read on every attempt, so ``update`` always sees the
    latest committed content. ``update`` may mutate its argument in place
    and return it.

    Args:
        path: Store file to update (must exist)
        update: Function from current document to new document
        max_attempts: Retry ceiling
        base_delay: Base of the randomized exponential backoff, in seconds

    Returns:
        The document as written

    Raises:
        StoreWriteError: If no attempt could commit
    """
    last_error: BaseException | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            with StoreLock(path):
                current = read_json(path)
                updated = update(current)
                atomic_write_json(path, updated)
                return updated
        except (StoreBusyError, OSError, json.JSONDecodeError) as e:
            last_error = e
            if attempt == max_attempts:
                break
            delay = min(MAX_BACKOFF_SECONDS, base_delay * 2 ** (attempt - 1))
            delay = random.uniform(delay / 2, delay)
            logger.debug(
                "Store update contention on %s (attempt %d/%d): %s; retrying in %.3fs",
                path.name,
                attempt,
                max_attempts,
                e,
                delay,
            )
            time.sleep(delay)

    assert last_error is not None
    raise StoreWriteError(path, max_attempts, last_error) from last_error


class TaskStore:
    """The authored task list (``kanban-board.json``).

    The orchestrator only ever flips ``passes``; all other fields, including
    ones it does not know about, are written back untouched.
    """

    def __init__(
        self, board_dir: Path, max_attempts: int = 8, base_delay: float = 0.05
    ) -> None:
        self.path = board_dir / BOARD_FILE
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> list[Task]:
        """Load all tasks.

        Raises:
            StructuralError: If the store is missing or malformed
        """
        if not self.path.exists():
            raise StructuralError(
                f"Task store not found: {self.path}. Run: kanban-orchestrator init"
            )
        try:
            data = read_json(self.path)
            return [Task.from_dict(item) for item in data.get("tasks", [])]
        except (json.JSONDecodeError, KeyError, AttributeError) as e:
            raise StructuralError(f"Malformed task store {self.path}: {e}") from e

    def mark_passes(self, task_name: str) -> None:
        """Set ``passes=true`` on a task."""

        def _apply(data: dict[str, Any]) -> dict[str, Any]:
            for item in data.get("tasks", []):
                if item.get("name") == task_name:
                    item["passes"] = True
            return data

        update_json(self.path, _apply, self.max_attempts, self.base_delay)


class ProgressStore:
    """Lifecycle records keyed by task name (``kanban-progress.json``)."""

    def __init__(
        self, board_dir: Path, max_attempts: int = 8, base_delay: float = 0.05
    ) -> None:
        self.path = board_dir / PROGRESS_FILE
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> dict[str, ProgressEntry]:
        """Load all entries, normalizing legacy data.

        Raises:
            StructuralError: If the store is missing or malformed
        """
        if not self.path.exists():
            raise StructuralError(
                f"Progress store not found: {self.path}. Run: kanban-orchestrator init"
            )
        try:
            data = read_json(self.path)
            return {
                name: ProgressEntry.from_dict(entry or {})
                for name, entry in data.items()
            }
        except (json.JSONDecodeError, AttributeError) as e:
            raise StructuralError(f"Malformed progress store {self.path}: {e}") from e

    def get(self, task_name: str) -> ProgressEntry | None:
        return self.load().get(task_name)

    def update_entry(
        self,
        task_name: str,
        update: Callable[[ProgressEntry | None], ProgressEntry],
    ) -> ProgressEntry:
        """Atomically replace one entry with ``update(current_entry)``.

        Other entries are written back exactly as read.
        """
        result: list[ProgressEntry] = []

        def _apply(data: dict[str, Any]) -> dict[str, Any]:
            raw = data.get(task_name)
            current = ProgressEntry.from_dict(raw) if raw is not None else None
            entry = update(current)
            written = entry.to_dict()
            merged = {
                key: value
                for key, value in (raw or {}).items()
                if key not in ENTRY_KEYS or key in written
            }
            merged.update(written)
            data[task_name] = merged
            result[:] = [entry]
            return data

        update_json(self.path, _apply, self.max_attempts, self.base_delay)
        return result[0]

    def mark_running(
        self,
        task_name: str,
        started_at: str,
        agent: str | None = None,
        tdd_agent: str | None = None,
        new_attempt: bool = False,
    ) -> ProgressEntry:
        """Durably mark a task as running.

        Fields already recorded (test-authoring results, work log history)
        are kept. ``new_attempt`` restarts the attempt clock and clears the
        previous attempt's test files.
        """

        def _update(current: ProgressEntry | None) -> ProgressEntry:
            entry = current or ProgressEntry()
            entry.status = ProgressStatus.RUNNING
            if new_attempt or not entry.started_at:
                entry.started_at = started_at
            if new_attempt:
                entry.tdd_affected_files = []
            entry.completed_at = None
            entry.error = None
            if agent is not None:
                entry.agent = agent
            if tdd_agent is not None:
                entry.tdd_agent = tdd_agent
            return entry

        return self.update_entry(task_name, _update)
