"""Tests for two-phase batch scheduling."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from kanban_orchestrator.agent import AgentLauncher
from kanban_orchestrator.config import OrchestratorConfig
from kanban_orchestrator.errors import StoreWriteError
from kanban_orchestrator.lock import StoreLock
from kanban_orchestrator.models import NormalizedWorkerOutput, ProgressStatus
from kanban_orchestrator.scheduler import BatchScheduler
from kanban_orchestrator.store import ProgressStore, TaskStore, read_json

ROLES = {"data": "backend-dev", "api": "backend-dev", "testing": "test-engineer"}


class TestBatchScheduler:
    """Tests for BatchScheduler.run_batch()."""

    @pytest.mark.asyncio
    async def test_test_phase_completes_before_implementation(
        self, make_board, make_task, agent_config: OrchestratorConfig, project_root: Path
    ) -> None:
        """All Phase A jobs finish before any Phase B job starts."""
        board_dir = make_board([make_task("a"), make_task("b")])
        calls = project_root / "calls.log"
        tasks = TaskStore(board_dir).load()
        progress = ProgressStore(board_dir)
        launcher = AgentLauncher(agent_config, project_root, board_dir / "logs")

        with patch.dict("os.environ", {"FAKE_AGENT_LOG": str(calls)}):
            outputs = await BatchScheduler(launcher, progress, ROLES).run_batch(tasks)

        phases = [line.split()[0] for line in calls.read_text().splitlines()]
        assert phases == ["test", "test", "implementation", "implementation"]
        assert [o.task_name for o in outputs] == ["a", "b"]
        assert all(o.status == "success" for o in outputs)

    @pytest.mark.asyncio
    async def test_progress_marked_with_both_agents(
        self, make_board, make_task, agent_config: OrchestratorConfig, project_root: Path
    ) -> None:
        """Test files are recorded and the entry carries both roles."""
        board_dir = make_board([make_task("a")])
        progress = ProgressStore(board_dir)
        launcher = AgentLauncher(agent_config, project_root, board_dir / "logs")

        await BatchScheduler(launcher, progress, ROLES).run_batch(TaskStore(board_dir).load())

        entry = progress.get("a")
        assert entry is not None
        assert entry.status is ProgressStatus.RUNNING
        assert entry.tdd_agent == "tdd-test-writer"
        assert entry.agent == "backend-dev"
        assert entry.tdd_affected_files == ["tests/test_a.py"]
        assert entry.tokens_used == [150, 310]

    @pytest.mark.asyncio
    async def test_implementation_prompt_lists_test_files(
        self, make_board, make_task, agent_config: OrchestratorConfig, project_root: Path
    ) -> None:
        board_dir = make_board([make_task("a")])
        launcher = AgentLauncher(agent_config, project_root, board_dir / "logs")

        await BatchScheduler(launcher, ProgressStore(board_dir), ROLES).run_batch(
            TaskStore(board_dir).load()
        )

        prompt = (board_dir / "logs" / "a.prompt.md").read_text()
        assert "- tests/test_a.py" in prompt

    @pytest.mark.asyncio
    async def test_testing_category_skips_test_phase(
        self, make_board, make_task, project_root: Path
    ) -> None:
        """Testing tasks go straight to their implementation role."""
        board_dir = make_board([make_task("e2e", "testing")])
        launcher = MagicMock(spec=AgentLauncher)
        launcher.run = AsyncMock(
            return_value=NormalizedWorkerOutput(task_name="e2e", status="success")
        )

        await BatchScheduler(launcher, ProgressStore(board_dir), ROLES).run_batch(
            TaskStore(board_dir).load()
        )

        assert launcher.run.await_count == 1
        _, phase, role, _ = launcher.run.await_args.args
        assert phase == "implementation"
        assert role == "test-engineer"
        assert read_json(board_dir / "kanban-progress.json")["e2e"]["status"] == "running"

    @pytest.mark.asyncio
    async def test_mark_running_failure_is_per_task(
        self, make_board, make_task, project_root: Path
    ) -> None:
        """A store failure for one task becomes that task's error output."""
        board_dir = make_board([make_task("a")])
        progress = ProgressStore(board_dir)
        launcher = MagicMock(spec=AgentLauncher)
        launcher.run = AsyncMock()
        failure = StoreWriteError(Path("x"), 8, OSError("disk full"))

        with patch.object(progress, "mark_running", side_effect=failure):
            outputs = await BatchScheduler(launcher, progress, ROLES).run_batch(
                TaskStore(board_dir).load()
            )

        assert outputs[0].status == "error"
        assert "Could not mark task running" in (outputs[0].error or "")
        launcher.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_per_task(
        self, make_board, make_task, project_root: Path
    ) -> None:
        """One task blowing up does not take the rest of the batch with it."""
        board_dir = make_board([make_task("good"), make_task("bad")])

        async def run(task, phase, role, prompt):
            if task.name == "bad":
                raise ValueError("could not convert string to float: 'n/a'")
            return NormalizedWorkerOutput(task_name=task.name, status="success", agent=role)

        launcher = MagicMock(spec=AgentLauncher)
        launcher.run = AsyncMock(side_effect=run)

        outputs = await BatchScheduler(launcher, ProgressStore(board_dir), ROLES).run_batch(
            TaskStore(board_dir).load()
        )

        assert [o.task_name for o in outputs] == ["good", "bad"]
        assert outputs[0].status == "success"
        assert outputs[1].status == "error"
        assert "ValueError" in (outputs[1].error or "")
        # bad still reached its implementation phase after its test phase failed
        bad_phases = [c.args[1] for c in launcher.run.await_args_list if c.args[0].name == "bad"]
        assert bad_phases == ["test", "implementation"]

    @pytest.mark.asyncio
    async def test_store_contention_does_not_stall_event_loop(
        self, make_board, make_task, project_root: Path
    ) -> None:
        """Other coroutines keep running while a store write backs off."""
        board_dir = make_board([make_task("e2e", "testing")])
        progress = ProgressStore(board_dir, max_attempts=40, base_delay=0.02)
        launcher = MagicMock(spec=AgentLauncher)
        launcher.run = AsyncMock(
            return_value=NormalizedWorkerOutput(task_name="e2e", status="success")
        )
        ticks = 0

        async def ticker() -> None:
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        guard = StoreLock(progress.path)
        guard.acquire()
        ticking = asyncio.create_task(ticker())
        batch = asyncio.create_task(
            BatchScheduler(launcher, progress, ROLES).run_batch(TaskStore(board_dir).load())
        )
        await asyncio.sleep(0.3)
        ticks_while_held = ticks
        guard.release()
        outputs = await batch
        ticking.cancel()

        assert ticks_while_held >= 10
        assert outputs[0].status == "success"
        assert read_json(board_dir / "kanban-progress.json")["e2e"]["status"] == "running"
