"""Tests for the run lock and store write guard."""

import os
from pathlib import Path

import pytest

from kanban_orchestrator.errors import StoreBusyError
from kanban_orchestrator.lock import RunLock, StoreLock


class TestRunLock:
    """Tests for RunLock."""

    def test_acquire_writes_current_pid(self, tmp_path: Path) -> None:
        """Lock file contains current process PID."""
        lock = RunLock(tmp_path)

        assert lock.acquire() is True
        assert (tmp_path / "orchestrator.lock").read_text().strip() == str(os.getpid())

    def test_acquire_fails_when_held_by_running_process(self, tmp_path: Path) -> None:
        """Cannot acquire while another live process holds the board."""
        (tmp_path / "orchestrator.lock").write_text(str(os.getpid()))

        assert RunLock(tmp_path).acquire() is False

    def test_stale_lock_reclaimed(self, tmp_path: Path) -> None:
        """A lock from a dead process is taken over."""
        (tmp_path / "orchestrator.lock").write_text("99999999")

        assert RunLock(tmp_path).acquire() is True

    def test_context_manager_releases(self, tmp_path: Path) -> None:
        """The lock file is removed on exit."""
        with RunLock(tmp_path):
            assert (tmp_path / "orchestrator.lock").exists()

        assert not (tmp_path / "orchestrator.lock").exists()

    def test_context_manager_raises_when_held(self, tmp_path: Path) -> None:
        """Entering a held lock raises RuntimeError with the holder PID."""
        (tmp_path / "orchestrator.lock").write_text(str(os.getpid()))

        with pytest.raises(RuntimeError, match="already running"):
            with RunLock(tmp_path):
                pass


class TestStoreLock:
    """Tests for StoreLock."""

    def test_guard_path_next_to_store(self, tmp_path: Path) -> None:
        lock = StoreLock(tmp_path / "kanban-progress.json")

        assert lock.lock_path == tmp_path / "kanban-progress.json.lock"

    def test_second_acquire_is_busy(self, tmp_path: Path) -> None:
        """A held guard raises StoreBusyError."""
        store = tmp_path / "kanban-progress.json"

        with StoreLock(store):
            with pytest.raises(StoreBusyError):
                StoreLock(store).acquire()

    def test_released_guard_can_be_taken(self, tmp_path: Path) -> None:
        store = tmp_path / "kanban-progress.json"
        first = StoreLock(store)

        with first:
            assert first.is_locked
        assert not first.is_locked

        with StoreLock(store) as second:
            assert second.is_locked

    def test_leftover_guard_file_does_not_block(self, tmp_path: Path) -> None:
        """A guard file left by a crashed writer is not a held guard."""
        store = tmp_path / "kanban-progress.json"
        lock = StoreLock(store)
        lock.lock_path.write_text("99999999")

        with lock:
            assert lock.is_locked

    def test_leftover_guard_file_never_admits_two_writers(self, tmp_path: Path) -> None:
        """Contenders for a held guard stay out, whatever the guard file says."""
        store = tmp_path / "kanban-progress.json"
        holder = StoreLock(store)
        holder.lock_path.write_text("99999999")

        with holder:
            for _ in range(3):
                with pytest.raises(StoreBusyError):
                    StoreLock(store).acquire()
            assert holder.is_locked
