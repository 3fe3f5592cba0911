"""Agent role selection.

The implementation role for each category is decided once at startup from
the project's stack signals (frontend framework, primary language) and the
set of agent roles defined in the project. The result is a plain mapping
passed to the scheduler; nothing is re-detected while waves run.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path

TEST_AUTHOR_ROLE = "tdd-test-writer"
FALLBACK_ROLE = "general-purpose"

# Frameworks checked in order; meta-frameworks before their base library
FRONTEND_FRAMEWORKS: list[tuple[str, str]] = [
    ("nuxt", "vue"),
    ("next", "react"),
    ("@angular/core", "angular"),
    ("svelte", "svelte"),
    ("vue", "vue"),
    ("react", "react"),
]

BACKEND_CATEGORIES = ("data", "config", "api", "integration")


@dataclass(frozen=True)
class StackSignals:
    """What the project looks like, as far as role selection cares.

    Attributes:
        frontend: Frontend framework key (vue, react, angular, svelte) or None
        language: Primary language (typescript, javascript, python, go, rust) or None
        available_roles: Agent roles defined for the project
    """

    frontend: str | None = None
    language: str | None = None
    available_roles: frozenset[str] = field(default_factory=frozenset)


def detect_stack_signals(project_root: Path) -> StackSignals:
    """Inspect build files and agent definitions under ``project_root``."""
    frontend = None
    language = None

    package_json = project_root / "package.json"
    if package_json.exists():
        try:
            data = json.loads(package_json.read_text(encoding="utf-8-sig"))
        except json.JSONDecodeError:
            data = {}
        deps = {**data.get("dependencies", {}), **data.get("devDependencies", {})}
        frontend = next(
            (framework for package, framework in FRONTEND_FRAMEWORKS if package in deps),
            None,
        )
        has_ts = "typescript" in deps or (project_root / "tsconfig.json").exists()
        language = "typescript" if has_ts else "javascript"
    elif (project_root / "pyproject.toml").exists() or (
        project_root / "requirements.txt"
    ).exists():
        language = "python"
    elif (project_root / "go.mod").exists():
        language = "go"
    elif (project_root / "Cargo.toml").exists():
        language = "rust"

    agents_dir = project_root / ".claude" / "agents"
    available = (
        frozenset(path.stem for path in agents_dir.glob("*.md"))
        if agents_dir.is_dir()
        else frozenset()
    )

    return StackSignals(frontend=frontend, language=language, available_roles=available)


def build_role_table(signals: StackSignals) -> dict[str, str]:
    """Map each category to the implementation role that should handle it.

    Candidates are derived from the signals (``vue-developer``,
    ``python-backend-developer``, ``test-engineer``). When the project
    defines agent roles, a candidate is used only if it is defined;
    otherwise the generic fallback role is used.
    """

    def pick(candidate: str | None) -> str:
        if candidate is None:
            return FALLBACK_ROLE
        if signals.available_roles and candidate not in signals.available_roles:
            return FALLBACK_ROLE
        return candidate

    backend = f"{signals.language}-backend-developer" if signals.language else None
    frontend = f"{signals.frontend}-developer" if signals.frontend else None

    table = {category: pick(backend) for category in BACKEND_CATEGORIES}
    table["ui"] = pick(frontend)
    table["testing"] = pick("test-engineer")
    return table


def role_for(category: str, table: dict[str, str]) -> str:
    return table.get(category, FALLBACK_ROLE)
