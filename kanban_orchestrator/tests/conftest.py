"""Shared fixtures for kanban orchestrator tests."""

import json
import sys
import textwrap
from pathlib import Path
from typing import Any, Callable

import pytest

from kanban_orchestrator.config import OrchestratorConfig

# Stand-in for the agent CLI: reads the prompt on stdin and writes a
# stream-json transcript to stdout.
#   FAKE_AGENT_LOG    file that receives one "<phase> <task>" line per call
#   FAKE_AGENT_ERROR  comma-separated tasks that report is_error=true
#   FAKE_AGENT_BLOCK  comma-separated tasks that report STATUS: blocked
#   FAKE_AGENT_FAIL_STEP  comma-separated tasks whose step 1 FAILs
FAKE_AGENT = textwrap.dedent(
    '''
    import json
    import os
    import re
    import sys

    prompt = sys.stdin.read()
    name = re.search(r"^Task: (.+)$", prompt, re.M).group(1).strip()
    phase = "test" if "Only create or edit test files" in prompt else "implementation"

    def listed(var):
        return [n for n in os.environ.get(var, "").split(",") if n]

    log = os.environ.get("FAKE_AGENT_LOG")
    if log:
        with open(log, "a") as f:
            f.write(f"{phase} {name}\\n")

    root = os.getcwd()
    if phase == "test":
        target = os.path.join(root, "tests", f"test_{name}.py")
    else:
        target = os.path.join(root, "src", f"{name}.py")

    events = [
        {"type": "system", "subtype": "init"},
        {
            "type": "assistant",
            "message": {
                "id": f"msg-{phase}-1",
                "content": [
                    {"type": "tool_use", "name": "Write", "input": {"file_path": target}},
                ],
                "usage": {"input_tokens": 100, "output_tokens": 50},
            },
        },
        {
            "type": "assistant",
            "message": {
                "id": f"msg-{phase}-2",
                "content": [{"type": "text", "text": "Work finished."}],
                "usage": {
                    "input_tokens": 200,
                    "output_tokens": 100,
                    "cache_read_input_tokens": 10,
                },
            },
        },
    ]

    is_error = name in listed("FAKE_AGENT_ERROR")
    if name in listed("FAKE_AGENT_BLOCK"):
        summary = "Cannot continue.\\nSTATUS: blocked"
    elif phase == "implementation":
        step = "FAIL" if name in listed("FAKE_AGENT_FAIL_STEP") else "PASS"
        summary = (
            "Completed successfully\\n\\n"
            "| Step | Description | Result |\\n"
            "|------|-------------|--------|\\n"
            f"| 1 | {name} works | {step} |"
        )
    else:
        summary = "Tests written."

    events.append(
        {
            "type": "result",
            "subtype": "success",
            "is_error": is_error,
            "result": summary,
            "duration_ms": 1500,
            "total_cost_usd": 0.02,
        }
    )
    for event in events:
        print(json.dumps(event))
    '''
)


@pytest.fixture
def fake_agent(tmp_path: Path) -> Path:
    """Path to the stand-in agent script."""
    script = tmp_path / "fake_agent.py"
    script.write_text(FAKE_AGENT)
    return script


@pytest.fixture
def agent_config(fake_agent: Path) -> OrchestratorConfig:
    """Config that runs the stand-in agent with fast polling."""
    return OrchestratorConfig(
        agent_command=[sys.executable, str(fake_agent)],
        transcript_poll_timeout_seconds=1.0,
        transcript_poll_interval_seconds=0.05,
        store_retry_base_delay=0.001,
    )


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def make_board(project_root: Path) -> Callable[..., Path]:
    """Create ``.kanban`` with the given tasks and progress; returns the board dir."""

    def _make(
        tasks: list[dict[str, Any]],
        progress: dict[str, Any] | None = None,
    ) -> Path:
        board_dir = project_root / ".kanban"
        board_dir.mkdir(exist_ok=True)
        (board_dir / "kanban-board.json").write_text(
            json.dumps(
                {
                    "project": "demo",
                    "created": "2025-01-01T00:00:00Z",
                    "projectType": "node",
                    "tasks": tasks,
                }
            )
        )
        (board_dir / "kanban-progress.json").write_text(json.dumps(progress or {}))
        return board_dir

    return _make


def task_dict(
    name: str,
    category: str = "data",
    blocked_by: list[str] | None = None,
    passes: bool = False,
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "name": name,
        "category": category,
        "description": f"Implement {name}",
        "steps": [f"{name} works"],
        "passes": passes,
    }
    if blocked_by:
        data["blockedBy"] = blocked_by
    return data


@pytest.fixture
def make_task() -> Callable[..., dict[str, Any]]:
    """Factory for raw task dicts as they appear in the board file."""
    return task_dict


@pytest.fixture(autouse=True)
def _no_ci(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CI", raising=False)
    monkeypatch.delenv("KANBAN_AGENT_COMMAND", raising=False)
    monkeypatch.delenv("FAKE_AGENT_ERROR", raising=False)
    monkeypatch.delenv("FAKE_AGENT_BLOCK", raising=False)
    monkeypatch.delenv("FAKE_AGENT_FAIL_STEP", raising=False)
