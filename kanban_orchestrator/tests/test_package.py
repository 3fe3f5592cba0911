"""Tests for package structure and the module entry point."""

import subprocess
import sys
from pathlib import Path


class TestPackageImportable:
    """Test that the package is properly importable."""

    def test_package_has_version(self) -> None:
        import kanban_orchestrator

        assert isinstance(kanban_orchestrator.__version__, str)
        assert kanban_orchestrator.__version__

    def test_py_typed_marker_exists(self) -> None:
        import kanban_orchestrator

        package_dir = Path(kanban_orchestrator.__file__).parent
        assert (package_dir / "py.typed").exists()


class TestCLIEntryPoint:
    """Test that the CLI entry point works correctly."""

    def test_module_help_works(self) -> None:
        """Running 'python -m kanban_orchestrator --help' lists the commands."""
        result = subprocess.run(
            [sys.executable, "-m", "kanban_orchestrator", "--help"],
            capture_output=True,
            text=True,
            timeout=30,
        )

        assert result.returncode == 0, result.stderr
        for command in ("run", "status", "validate", "next-steps", "init"):
            assert command in result.stdout
