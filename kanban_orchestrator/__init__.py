"""
Kanban Orchestrator - Wave-based task execution for kanban boards.

This package dispatches board tasks to an external coding agent in
category-ordered waves, reconciles the agent transcripts into the shared
board stores and verifies each wave independently.
"""

__version__ = "0.1.0"
