"""Independent post-wave verification.

After each wave the project's own typecheck, lint and test commands run
against the working tree. Their results are reported regardless of what
the agents claimed; under fail-fast a failing check aborts the run.
"""

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 2000


@dataclass
class CheckResult:
    """Outcome of one verification command."""

    name: str
    command: str
    passed: bool
    returncode: int | None
    output: str = ""
    timed_out: bool = False


@dataclass
class VerificationReport:
    """All checks run after one wave."""

    wave: int
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def failed_checks(self) -> list[CheckResult]:
        return [check for check in self.checks if not check.passed]

    @property
    def passed(self) -> bool:
        return not self.failed_checks


def run_check(name: str, command: str, project_root: Path, timeout: int) -> CheckResult:
    """Run one verification command in the project root.

    Args:
        name: Check name (typecheck, lintFix, lint, test)
        command: Shell command line
        project_root: Working directory
        timeout: Maximum execution time in seconds

    Returns:
        CheckResult; a timeout or missing command counts as a failure
    """
    logger.info("Verification %s: %s", name, command)
    try:
        result = subprocess.run(
            command,
            shell=True,
            cwd=project_root,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return CheckResult(
            name=name,
            command=command,
            passed=False,
            returncode=None,
            output=f"Timed out after {timeout}s",
            timed_out=True,
        )

    output = (result.stdout + result.stderr).strip()
    return CheckResult(
        name=name,
        command=command,
        passed=result.returncode == 0,
        returncode=result.returncode,
        output=output[-OUTPUT_TAIL_CHARS:],
    )


def run_verification(
    wave: int,
    commands: list[tuple[str, str]],
    project_root: Path,
    timeout: int,
) -> VerificationReport:
    """Run every configured check in order; all checks run even after a failure."""
    report = VerificationReport(wave=wave)
    for name, command in commands:
        check = run_check(name, command, project_root, timeout)
        if not check.passed:
            logger.warning("Verification %s failed after wave %d", name, wave)
        report.checks.append(check)
    return report
