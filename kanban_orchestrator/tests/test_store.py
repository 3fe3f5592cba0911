"""Tests for the board stores and atomic JSON updates."""

import json
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from kanban_orchestrator.errors import StoreWriteError, StructuralError
from kanban_orchestrator.lock import StoreLock
from kanban_orchestrator.models import ProgressEntry, ProgressStatus
from kanban_orchestrator.store import (
    ProgressStore,
    TaskStore,
    atomic_write_json,
    read_json,
    update_json,
)


class TestAtomicWrite:
    """Tests for atomic_write_json() and read_json()."""

    def test_writes_and_reads_back(self, tmp_path: Path) -> None:
        """Written JSON can be read back."""
        path = tmp_path / "doc.json"

        atomic_write_json(path, {"a": [1, 2]})

        assert read_json(path) == {"a": [1, 2]}

    def test_leaves_no_temp_file(self, tmp_path: Path) -> None:
        """The temp file is renamed over the target."""
        path = tmp_path / "doc.json"

        atomic_write_json(path, {})

        assert [p.name for p in tmp_path.iterdir()] == ["doc.json"]

    def test_unserializable_data_keeps_original(self, tmp_path: Path) -> None:
        """A failed serialization never touches the existing file."""
        path = tmp_path / "doc.json"
        path.write_text('{"keep": true}')

        with pytest.raises(TypeError):
            atomic_write_json(path, {"bad": object()})

        assert read_json(path) == {"keep": True}

    def test_read_tolerates_bom(self, tmp_path: Path) -> None:
        """A UTF-8 byte order mark is accepted."""
        path = tmp_path / "doc.json"
        path.write_bytes(b"\xef\xbb\xbf" + b'{"ok": 1}')

        assert read_json(path) == {"ok": 1}


class TestUpdateJson:
    """Tests for update_json() retry behavior."""

    def test_applies_update(self, tmp_path: Path) -> None:
        """The update function receives the current document."""
        path = tmp_path / "doc.json"
        path.write_text('{"count": 1}')

        update_json(path, lambda d: {**d, "count": d["count"] + 1})

        assert read_json(path) == {"count": 2}

    def test_releases_guard(self, tmp_path: Path) -> None:
        """The write guard is free again after the update."""
        path = tmp_path / "doc.json"
        path.write_text("{}")

        update_json(path, lambda d: d)

        with StoreLock(path) as lock:
            assert lock.is_locked

    def test_concurrent_updates_lose_nothing(self, tmp_path: Path) -> None:
        """Simultaneous updates from many threads all land."""
        path = tmp_path / "kanban-progress.json"
        path.write_text("{}")
        errors: list[BaseException] = []

        def worker(n: int) -> None:
            def add(doc: dict) -> dict:
                doc[f"task-{n}"] = {"status": "running"}
                return doc

            try:
                update_json(path, add, max_attempts=200, base_delay=0.001)
            except StoreWriteError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert sorted(read_json(path)) == sorted(f"task-{n}" for n in range(8))

    def test_ceiling_raises_with_cause(self, tmp_path: Path) -> None:
        """Exhausting the retry ceiling raises StoreWriteError chaining the last error."""
        path = tmp_path / "doc.json"
        path.write_text("{}")
        with StoreLock(path), patch("kanban_orchestrator.store.time.sleep") as mock_sleep:
            with pytest.raises(StoreWriteError) as exc_info:
                update_json(path, lambda d: d, max_attempts=3, base_delay=0.01)

        assert exc_info.value.attempts == 3
        assert exc_info.value.__cause__ is exc_info.value.last_error
        assert mock_sleep.call_count == 2

    def test_backoff_is_randomized_and_bounded(self, tmp_path: Path) -> None:
        """Each delay lies in [d/2, d] for the exponential d."""
        path = tmp_path / "doc.json"
        path.write_text("{}")
        with StoreLock(path), patch("kanban_orchestrator.store.time.sleep") as mock_sleep:
            with pytest.raises(StoreWriteError):
                update_json(path, lambda d: d, max_attempts=4, base_delay=0.1)

        delays = [c.args[0] for c in mock_sleep.call_args_list]
        for attempt, delay in enumerate(delays, start=1):
            upper = 0.1 * 2 ** (attempt - 1)
            assert upper / 2 <= delay <= upper

    def test_malformed_json_is_retried(self, tmp_path: Path) -> None:
        """A half-written document is treated as transient."""
        path = tmp_path / "doc.json"
        path.write_text("{not json")

        with patch("kanban_orchestrator.store.time.sleep"):
            with pytest.raises(StoreWriteError) as exc_info:
                update_json(path, lambda d: d, max_attempts=2)

        assert isinstance(exc_info.value.__cause__, json.JSONDecodeError)

    def test_leftover_guard_file_does_not_block(self, tmp_path: Path) -> None:
        """A guard file left behind by a crashed writer does not block writers."""
        path = tmp_path / "doc.json"
        path.write_text("{}")
        StoreLock(path).lock_path.write_text("99999999")

        with patch("kanban_orchestrator.store.time.sleep"):
            update_json(path, lambda d: {"ok": True})

        assert read_json(path) == {"ok": True}


class TestTaskStore:
    """Tests for TaskStore."""

    def test_load_tasks(self, make_board, make_task) -> None:
        """Tasks load with their dependencies."""
        board_dir = make_board([make_task("a"), make_task("b", "api", ["a"])])

        tasks = TaskStore(board_dir).load()

        assert [t.name for t in tasks] == ["a", "b"]
        assert tasks[1].blocked_by == ["a"]

    def test_missing_store_is_structural(self, tmp_path: Path) -> None:
        """A missing task store is a StructuralError naming the init command."""
        with pytest.raises(StructuralError, match="init"):
            TaskStore(tmp_path).load()

    def test_malformed_store_is_structural(self, tmp_path: Path) -> None:
        """Invalid JSON is a StructuralError."""
        (tmp_path / "kanban-board.json").write_text("{")

        with pytest.raises(StructuralError):
            TaskStore(tmp_path).load()

    def test_mark_passes_preserves_other_fields(self, make_board, make_task) -> None:
        """Only passes is changed; unknown fields survive."""
        raw = make_task("a")
        raw["owner"] = "someone"
        board_dir = make_board([raw, make_task("b")])

        TaskStore(board_dir).mark_passes("a")

        data = read_json(board_dir / "kanban-board.json")
        assert data["tasks"][0]["passes"] is True
        assert data["tasks"][0]["owner"] == "someone"
        assert data["tasks"][1]["passes"] is False
        assert data["project"] == "demo"


class TestProgressStore:
    """Tests for ProgressStore."""

    def test_legacy_entry_without_status(self, make_board, make_task) -> None:
        """Entries without a status load with status None."""
        board_dir = make_board([make_task("a")], {"a": {"workLog": ["x"]}})

        entry = ProgressStore(board_dir).get("a")

        assert entry is not None
        assert entry.status is None
        assert entry.work_log == ["x"]

    def test_update_entry_preserves_unknown_keys(self, make_board, make_task) -> None:
        """Keys the orchestrator does not own are kept."""
        board_dir = make_board([make_task("a")], {"a": {"status": "running", "note": "hi"}})
        store = ProgressStore(board_dir)

        def complete(entry: ProgressEntry | None) -> ProgressEntry:
            assert entry is not None
            entry.status = ProgressStatus.COMPLETED
            return entry

        store.update_entry("a", complete)

        raw = read_json(store.path)["a"]
        assert raw["status"] == "completed"
        assert raw["note"] == "hi"

    def test_update_entry_drops_cleared_fields(self, make_board, make_task) -> None:
        """A field cleared on the entry is removed from the file."""
        board_dir = make_board([make_task("a")], {"a": {"status": "error", "error": "boom"}})
        store = ProgressStore(board_dir)

        store.mark_running("a", "2025-01-01T00:00:00+00:00")

        raw = read_json(store.path)["a"]
        assert raw["status"] == "running"
        assert "error" not in raw

    def test_mark_running_keeps_test_phase_fields(self, make_board, make_task) -> None:
        """Marking the implementation phase running keeps tddAffectedFiles."""
        board_dir = make_board(
            [make_task("a")],
            {"a": {"status": "running", "tddAffectedFiles": ["tests/a.test.ts"]}},
        )
        store = ProgressStore(board_dir)

        entry = store.mark_running("a", "2025-01-01T00:00:00+00:00", agent="dev")

        assert entry.tdd_affected_files == ["tests/a.test.ts"]
        assert entry.agent == "dev"

    def test_mark_running_new_attempt_resets(self, make_board, make_task) -> None:
        """A new attempt restarts the clock and clears previous test files."""
        board_dir = make_board(
            [make_task("a")],
            {
                "a": {
                    "status": "error",
                    "startedAt": "old",
                    "tddAffectedFiles": ["tests/a.test.ts"],
                }
            },
        )
        store = ProgressStore(board_dir)

        entry = store.mark_running("a", "new", tdd_agent="tdd-test-writer", new_attempt=True)

        assert entry.started_at == "new"
        assert entry.tdd_affected_files == []
        assert entry.tdd_agent == "tdd-test-writer"
