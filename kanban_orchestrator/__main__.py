"""Allow running the orchestrator with ``python -m kanban_orchestrator``."""

from kanban_orchestrator.cli import main

if __name__ == "__main__":
    main()
