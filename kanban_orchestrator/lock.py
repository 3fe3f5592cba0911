"""Lock files for the kanban board.

Provides two locks:

- RunLock, a PID file, prevents two orchestrator runs against the same board.
- StoreLock guards a single read-modify-write of a store file across
  processes and threads; a held guard raises StoreBusyError, which callers
  retry.
"""

import os
from pathlib import Path
from types import TracebackType

from filelock import FileLock, Timeout

from kanban_orchestrator.errors import StoreBusyError


def _read_pid(lock_path: Path) -> int | None:
    try:
        return int(lock_path.read_text().strip())
    except (FileNotFoundError, ValueError):
        return None


def _is_process_running(pid: int) -> bool:
    """Check if a process with given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks existence
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Process exists but we don't have permission to signal it
        return True


class RunLock:
    """PID-based lock for an orchestrator run.

    Usage:
        lock = RunLock(board_dir)
        with lock:
            # Run waves - lock is held
            ...
        # Lock is released

    Attributes:
        lock_path: Path to the lock file
    """

    def __init__(self, board_dir: Path) -> None:
        self.lock_path = board_dir / "orchestrator.lock"

    def acquire(self) -> bool:
        """Try to acquire the lock.

        Stale locks (from dead processes) are automatically cleaned up.

        Returns:
            True if lock acquired, False if held by another running process
        """
        if self.lock_path.exists():
            holder_pid = self.get_holder_pid()
            if holder_pid is not None and _is_process_running(holder_pid):
                return False

        self.lock_path.write_text(str(os.getpid()))
        return True

    def release(self) -> None:
        """Release the lock. Safe to call even if lock doesn't exist."""
        self.lock_path.unlink(missing_ok=True)

    def get_holder_pid(self) -> int | None:
        return _read_pid(self.lock_path)

    def __enter__(self) -> "RunLock":
        """Acquire lock on context entry.

        Raises:
            RuntimeError: If lock is already held by a running process
        """
        if not self.acquire():
            holder_pid = self.get_holder_pid()
            raise RuntimeError(f"Orchestrator already running (PID: {holder_pid})")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()


class StoreLock:
    """Exclusive write guard for one store file.

    The guard is an OS-level lock on ``<store>.lock`` next to the store
    (``kanban-progress.json.lock``), taken with a single non-blocking
    attempt. The OS drops it when the holder exits, so a crashed writer
    never leaves a stale guard and the file itself carries no meaning.
    """

    def __init__(self, store_path: Path) -> None:
        self.lock_path = store_path.with_name(store_path.name + ".lock")
        self._lock = FileLock(str(self.lock_path), timeout=0)

    def acquire(self) -> None:
        """Take the guard.

        Raises:
            StoreBusyError: If another writer holds it
        """
        try:
            self._lock.acquire()
        except Timeout:
            raise StoreBusyError(f"Store is locked: {self.lock_path}") from None

    def release(self) -> None:
        self._lock.release()

    @property
    def is_locked(self) -> bool:
        return self._lock.is_locked

    def __enter__(self) -> "StoreLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
