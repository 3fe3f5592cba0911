"""Configuration for the Kanban Orchestrator.

Provides centralized run configuration with sensible defaults and
environment variable overrides, plus loading of the per-project
configuration file that overrides verification commands and timeouts.
"""

import json
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from kanban_orchestrator.errors import StructuralError

DEFAULT_AGENT_COMMAND = [
    "claude",
    "-p",
    "--dangerously-skip-permissions",
    "--output-format",
    "stream-json",
    "--verbose",
]

# Order in which verification checks run after each wave
VERIFICATION_ORDER: list[str] = ["typecheck", "lintFix", "lint", "test"]


@dataclass
class OrchestratorConfig:
    """Configuration for orchestrator execution.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method.
    """

    # Scheduling
    parallel: int = 3
    max_task_attempts: int = 3

    # Board layout
    kanban_dir: str = ".kanban"

    # External agent
    agent_command: list[str] = field(default_factory=lambda: list(DEFAULT_AGENT_COMMAND))
    model: str | None = None
    transcript_poll_timeout_seconds: float = 30.0
    transcript_poll_interval_seconds: float = 0.5

    # Store writes
    store_write_attempts: int = 8
    store_retry_base_delay: float = 0.05

    # Verification
    verification_timeout_seconds: int = 600

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "kanban-orchestrator"

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Load config with environment variable overrides.

        Environment variables:
            KANBAN_PARALLEL: Override parallel (default: 3)
            KANBAN_MAX_TASK_ATTEMPTS: Override max_task_attempts (default: 3)
            KANBAN_AGENT_COMMAND: Agent command line, shell-quoted
            KANBAN_TRANSCRIPT_TIMEOUT: Override transcript poll timeout (default: 30)
            KANBAN_VERIFICATION_TIMEOUT: Override verification timeout (default: 600)
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
        """
        agent_command = os.getenv("KANBAN_AGENT_COMMAND")
        return cls(
            parallel=int(os.getenv("KANBAN_PARALLEL", "3")),
            max_task_attempts=int(os.getenv("KANBAN_MAX_TASK_ATTEMPTS", "3")),
            agent_command=(
                shlex.split(agent_command)
                if agent_command
                else list(DEFAULT_AGENT_COMMAND)
            ),
            transcript_poll_timeout_seconds=float(
                os.getenv("KANBAN_TRANSCRIPT_TIMEOUT", "30")
            ),
            verification_timeout_seconds=int(
                os.getenv("KANBAN_VERIFICATION_TIMEOUT", "600")
            ),
            otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
        )

    def board_dir(self, project_root: Path) -> Path:
        return project_root / self.kanban_dir


@dataclass
class ProjectConfig:
    """Per-project settings read from ``<board>/config.json``.

    Attributes:
        verification: Explicit command per check. A value of None disables
            the check; a missing key falls back to the heuristic.
        verification_timeout_seconds: Per-command timeout override
        transcript_poll_timeout_seconds: Transcript readiness timeout override
    """

    verification: dict[str, str | None] = field(default_factory=dict)
    verification_timeout_seconds: int | None = None
    transcript_poll_timeout_seconds: float | None = None

    @classmethod
    def load(cls, board_dir: Path) -> "ProjectConfig":
        """Load project config, returning defaults when the file is absent.

        Raises:
            StructuralError: If the file exists but is not valid JSON
        """
        path = board_dir / "config.json"
        if not path.exists():
            return cls()

        try:
            data = json.loads(path.read_text(encoding="utf-8-sig"))
        except json.JSONDecodeError as e:
            raise StructuralError(f"Invalid project config {path}: {e}") from e

        verification: dict[str, str | None] = {}
        for key, value in (data.get("verification") or {}).items():
            if key in VERIFICATION_ORDER:
                verification[key] = value or None

        timeouts = data.get("timeouts") or {}
        return cls(
            verification=verification,
            verification_timeout_seconds=timeouts.get("verification"),
            transcript_poll_timeout_seconds=timeouts.get("transcriptPoll"),
        )

    def verification_commands(self, project_root: Path) -> list[tuple[str, str]]:
        """Resolve the ordered (check name, command) list to run.

        Explicit configuration wins per key; anything not configured comes
        from detect_verification_commands().
        """
        detected = detect_verification_commands(project_root)
        commands = []
        for name in VERIFICATION_ORDER:
            command = (
                self.verification[name]
                if name in self.verification
                else detected.get(name)
            )
            if command:
                commands.append((name, command))
        return commands


def detect_verification_commands(project_root: Path) -> dict[str, str]:
    """Guess verification commands from the project's build files.

    Args:
        project_root: Directory containing package.json / pyproject.toml

    Returns:
        Map of check name to shell command (missing checks are omitted)
    """
    commands: dict[str, str] = {}

    package_json = project_root / "package.json"
    if package_json.exists():
        try:
            scripts = json.loads(package_json.read_text(encoding="utf-8-sig")).get(
                "scripts", {}
            )
        except json.JSONDecodeError:
            scripts = {}

        for script in ("typecheck", "type-check"):
            if script in scripts:
                commands["typecheck"] = f"npm run {script}"
                break
        else:
            if (project_root / "tsconfig.json").exists():
                commands["typecheck"] = "npx tsc --noEmit"
        if "lint:fix" in scripts:
            commands["lintFix"] = "npm run lint:fix"
        if "lint" in scripts:
            commands["lint"] = "npm run lint"
        if "test" in scripts:
            commands["test"] = "npm test"
        return commands

    pyproject = project_root / "pyproject.toml"
    if pyproject.exists():
        content = pyproject.read_text(encoding="utf-8")
        if "[tool.mypy]" in content:
            commands["typecheck"] = "mypy ."
        commands["lintFix"] = "ruff check --fix ."
        commands["lint"] = "ruff check ."
        commands["test"] = "pytest"

    return commands
