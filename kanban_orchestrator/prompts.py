"""Prompt construction for agent invocations."""

from kanban_orchestrator.models import Task


def _format_steps(task: Task) -> str:
    if not task.steps:
        return "1. Implement the task as described."
    return "\n".join(f"{i}. {step}" for i, step in enumerate(task.steps, start=1))


def _format_dependencies(task: Task) -> str:
    if not task.blocked_by:
        return ""
    return f"\nThis task builds on: {', '.join(task.blocked_by)}\n"


def build_test_prompt(task: Task, role: str) -> str:
    """Build the prompt for the test-authoring phase.

    The test author writes failing tests only; its written files become the
    tests the implementation phase must satisfy.
    """
    return f"""You are the {role} agent.

Task: {task.name}
Category: {task.category}

{task.description}
{_format_dependencies(task)}
Acceptance steps:
{_format_steps(task)}

Write automated tests that verify every acceptance step above.
Only create or edit test files. Do not implement the feature.
The tests are expected to fail until the task is implemented.
"""


def build_implementation_prompt(
    task: Task,
    role: str,
    test_files: list[str] | None = None,
) -> str:
    """Build the prompt for the implementation phase.

    Args:
        task: Task to implement
        role: Implementation role selected for the task's category
        test_files: Tests written by the test-authoring phase, if any

    Returns:
        Formatted prompt string
    """
    tests_section = ""
    if test_files:
        listed = "\n".join(f"- {path}" for path in test_files)
        tests_section = (
            f"\nTests the implementation must satisfy:\n{listed}\n"
            "Do not weaken or delete these tests.\n"
        )

    return f"""You are the {role} agent.

Task: {task.name}
Category: {task.category}

{task.description}
{_format_dependencies(task)}
Acceptance steps:
{_format_steps(task)}
{tests_section}
When you are done, verify each acceptance step yourself and report the
results as a markdown table:

| Step | Description | Result |
|------|-------------|--------|
| 1 | <step> | PASS or FAIL |

If you cannot proceed without outside help, end your reply with
"STATUS: blocked" and explain what is missing.
"""
