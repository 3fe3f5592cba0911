"""Next-steps recommendations after a run.

The union of affected files across all progress entries is matched against
rules (``<board>/next-steps.json`` when present, the bundled defaults
otherwise). Each rule whose regular expression matches at least one file
yields a recommended command.
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rich.console import Console

from kanban_orchestrator.errors import StructuralError
from kanban_orchestrator.models import ProgressEntry
from kanban_orchestrator.transcript import normalize_path

RULES_FILE = "next-steps.json"


@dataclass
class NextStepRule:
    """A follow-up command triggered by changed files matching ``pattern``."""

    name: str
    pattern: str
    command: str
    reason: str = ""
    priority: int = 100
    critical: bool = False

    def __post_init__(self) -> None:
        self._regex = re.compile(self.pattern)

    def matches(self, path: str) -> bool:
        return self._regex.search(path) is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NextStepRule":
        return cls(
            name=data.get("name") or data["command"],
            pattern=data["pattern"],
            command=data["command"],
            reason=data.get("reason", ""),
            priority=int(data.get("priority", 100)),
            critical=bool(data.get("critical", False)),
        )


DEFAULT_RULES: list[NextStepRule] = [
    NextStepRule(
        name="prisma-migrate",
        pattern=r"(^|/)schema\.prisma$",
        command="npx prisma migrate dev",
        reason="Database schema changed",
        priority=10,
        critical=True,
    ),
    NextStepRule(
        name="alembic-upgrade",
        pattern=r"(^|/)(alembic|migrations)/.+\.py$",
        command="alembic upgrade head",
        reason="New database migrations",
        priority=10,
        critical=True,
    ),
    NextStepRule(
        name="npm-install",
        pattern=r"(^|/)package\.json$",
        command="npm install",
        reason="Dependencies changed",
        priority=20,
    ),
    NextStepRule(
        name="pip-install",
        pattern=r"(^|/)(pyproject\.toml|requirements[^/]*\.txt)$",
        command="pip install -e .",
        reason="Dependencies changed",
        priority=20,
    ),
    NextStepRule(
        name="env-review",
        pattern=r"(^|/)\.env(\.[\w-]+)?$",
        command="Review your local .env against .env.example",
        reason="Environment configuration changed",
        priority=30,
    ),
    NextStepRule(
        name="docker-rebuild",
        pattern=r"(^|/)(Dockerfile[^/]*|docker-compose[^/]*\.ya?ml)$",
        command="docker compose up -d --build",
        reason="Container configuration changed",
        priority=40,
    ),
]


@dataclass
class Recommendation:
    rule: NextStepRule
    files: list[str] = field(default_factory=list)


def load_rules(board_dir: Path) -> list[NextStepRule]:
    """Rules from the board's rule file, or the bundled defaults.

    Raises:
        StructuralError: If the rule file is not valid JSON or a rule is
            missing its pattern/command or has an invalid pattern
    """
    path = board_dir / RULES_FILE
    if not path.exists():
        return list(DEFAULT_RULES)

    try:
        data = json.loads(path.read_text(encoding="utf-8-sig"))
        return [NextStepRule.from_dict(item) for item in data.get("rules", [])]
    except (json.JSONDecodeError, KeyError, AttributeError, re.error) as e:
        raise StructuralError(f"Invalid next-steps rules {path}: {e}") from e


def collect_affected_files(
    progress: dict[str, ProgressEntry], project_root: Path | None = None
) -> list[str]:
    """Union of affected files across all entries, first-seen order."""
    files: list[str] = []
    for entry in progress.values():
        for path in entry.affected_files:
            normalized = normalize_path(path, project_root)
            if normalized not in files:
                files.append(normalized)
    return files


def recommend(files: list[str], rules: list[NextStepRule]) -> list[Recommendation]:
    """Matching rules ordered by ascending priority (ties keep rule order)."""
    recommendations = []
    for rule in rules:
        matched = [path for path in files if rule.matches(path)]
        if matched:
            recommendations.append(Recommendation(rule=rule, files=matched))
    return sorted(recommendations, key=lambda rec: rec.rule.priority)


def print_recommendations(recommendations: list[Recommendation], console: Console) -> None:
    """Print recommended follow-ups; prints nothing when there are none."""
    if not recommendations:
        return

    console.print()
    console.print("[bold]Recommended next steps:[/bold]")
    for rec in recommendations:
        marker = "[bold red]![/bold red] " if rec.rule.critical else "  "
        console.print(f"{marker}[cyan]{rec.rule.command}[/cyan]")
        detail = rec.rule.reason or rec.rule.name
        shown = ", ".join(rec.files[:3])
        if len(rec.files) > 3:
            shown += f" (+{len(rec.files) - 3} more)"
        console.print(f"    [dim]{detail}: {shown}[/dim]")
