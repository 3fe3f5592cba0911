"""Transcript parsing for agent invocations.

Turns the raw stream-json transcript of one agent run into a
NormalizedWorkerOutput. The transcript is semi-structured and written by
a process we do not control:

- The file may be a JSON array, a single JSON object (``--output-format
  json``) or newline-delimited JSON, possibly with a byte order mark.
  Unparsable lines are skipped.
- An explicit error on the terminal ``result`` event decides status first,
  then the numbered verification steps the agent reported, and only then
  the summary text. Step evidence wins over free text.
"""

import json
import logging
import math
import re
from pathlib import Path
from typing import Any

from kanban_orchestrator.models import (
    NormalizedWorkerOutput,
    StepCheck,
    VerificationSummary,
    WorkerStatus,
)

logger = logging.getLogger(__name__)

# Tools whose target file counts as affected, with the input key holding it
WRITE_TOOLS: dict[str, str] = {
    "Write": "file_path",
    "Edit": "file_path",
    "MultiEdit": "file_path",
    "NotebookEdit": "notebook_path",
}

USAGE_FIELDS = (
    "input_tokens",
    "output_tokens",
    "cache_read_input_tokens",
    "cache_creation_input_tokens",
)

# "Step 3: PASS", "step 2 - FAILED", "Step 1: **PASS** schema created"
_PROSE_STEP = re.compile(
    r"(?i:\bstep)\s+(\d+)\s*[:.)\-\u2013\u2014]\s*\**\s*(PASS|FAIL)(?:ED)?\b\**[ \t]*[-:\u2013\u2014]?[ \t]*([^\n]*)"
)

# "| 2 | Create endpoint | PASS |", "| 2 | desc | **FAIL** |", "| 2 | desc | \u2705 PASS |"
_TABLE_STEP = re.compile(
    r"\|\s*(\d+)\s*\|\s*([^|\n]*?)\s*\|[^|\n\w]*(PASS|FAIL)(?:ED)?\b[^|\n]*\|"
)

_FAILURE_KEYWORD = re.compile(
    r"\b(errors?|failed|failures?|failing|exceptions?|traceback|could not|unable to)\b",
    re.IGNORECASE,
)
_NEGATION_BEFORE = re.compile(
    r"(?:\bno|\b0|\bzero|\bwithout|\bnever|\bnot any)\s+(?:\w+\s+){0,2}$",
    re.IGNORECASE,
)
_PASS_INDICATOR = re.compile(r"\bPASS(?:ED|ES)?\b|\u2705|\bpass(?:ed|es)\b")

_BLOCKED_MARKERS = ("STATUS: blocked", "BLOCKED:")


# =============================================================================
# EVENT LOADING
# =============================================================================


def load_events(text: str) -> list[dict[str, Any]]:
    """Decode a transcript into its list of events.

    Args:
        text: Raw transcript file content

    Returns:
        Event dicts in transcript order (non-object items dropped)
    """
    text = text.lstrip("\ufeff").strip()
    if not text:
        return []

    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        decoded = None

    if isinstance(decoded, list):
        return [event for event in decoded if isinstance(event, dict)]
    if isinstance(decoded, dict):
        return [_as_event(decoded)]

    events = []
    skipped = 0
    for line in text.splitlines():
        line = line.strip().lstrip("\ufeff")
        if not line:
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            skipped += 1
            continue
        if isinstance(event, dict):
            events.append(event)

    if skipped:
        logger.debug("Skipped %d unparsable transcript lines", skipped)
    return events


def _as_event(obj: dict[str, Any]) -> dict[str, Any]:
    """A bare ``--output-format json`` object is the result event."""
    if "type" not in obj and ("result" in obj or "is_error" in obj):
        return {**obj, "type": "result"}
    return obj


def has_result_event(path: Path) -> bool:
    """True once the transcript at ``path`` contains a terminal result event."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return False
    return any(event.get("type") == "result" for event in load_events(text))


# =============================================================================
# TEXT HEURISTICS
# =============================================================================


def extract_steps(text: str) -> list[StepCheck]:
    """Extract numbered PASS/FAIL verification steps from free text.

    Both prose ("Step 2: FAIL") and markdown-table rows
    ("| 2 | desc | PASS |") are recognized. For the same step number the
    table form overrides the prose form; within one form the last report
    wins. Results are sorted by step number.
    """
    steps: dict[int, StepCheck] = {}

    for match in _PROSE_STEP.finditer(text):
        number = int(match.group(1))
        steps[number] = StepCheck(
            number=number,
            description=match.group(3).strip(),
            passed=match.group(2) == "PASS",
        )

    for match in _TABLE_STEP.finditer(text):
        number = int(match.group(1))
        steps[number] = StepCheck(
            number=number,
            description=match.group(2).strip().strip("*").strip(),
            passed=match.group(3) == "PASS",
        )

    return [steps[number] for number in sorted(steps)]


def text_indicates_failure(text: str) -> bool:
    """Scan free text for failure keywords.

    A keyword does not count when it is negated ("no errors", "0 failed")
    or when it shares a line with a PASS indicator, e.g.
    ``Error: | 1 | desc | **PASS** |``.
    """
    for line in text.splitlines():
        if _PASS_INDICATOR.search(line):
            continue
        for match in _FAILURE_KEYWORD.finditer(line):
            if _NEGATION_BEFORE.search(line[: match.start()]):
                continue
            return True
    return False


def has_blocked_marker(text: str) -> bool:
    return any(marker in text for marker in _BLOCKED_MARKERS)


def normalize_path(path: str, project_root: Path | str | None = None) -> str:
    """Forward slashes, relative to the project root when under it."""
    normalized = path.replace("\\", "/")
    if project_root is not None:
        root = str(project_root).replace("\\", "/").rstrip("/") + "/"
        if normalized.startswith(root):
            normalized = normalized[len(root) :]
        elif normalized.lower().startswith(root.lower()) and ":" in root[:3]:
            # Windows drive letters compare case-insensitively
            normalized = normalized[len(root) :]
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def describe_tool_call(tool_name: str, tool_input: dict[str, Any], project_root=None) -> str:
    """Format a tool call as a work log line, e.g. "Writing src/db.ts"."""
    target = tool_input.get("file_path") or tool_input.get("notebook_path") or ""
    target = normalize_path(str(target), project_root) if target else ""

    if tool_name == "Read":
        return f"Reading {target or 'file'}"
    elif tool_name == "Write":
        return f"Writing {target or 'file'}"
    elif tool_name in ("Edit", "MultiEdit", "NotebookEdit"):
        return f"Editing {target or 'file'}"
    elif tool_name == "Bash":
        command = str(tool_input.get("command") or "")
        if len(command) > 80:
            command = command[:80] + "..."
        return f"Running: {command}"
    elif tool_name == "Grep":
        return f"Searching for {tool_input.get('pattern', '')}"
    elif tool_name == "Glob":
        return f"Finding {tool_input.get('pattern', '')}"
    else:
        return tool_name


# =============================================================================
# TRANSCRIPT PARSING
# =============================================================================


def _as_number(value: Any) -> float:
    """A numeric field as float; anything unusable counts as 0."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    if isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return 0.0
        return number if math.isfinite(number) else 0.0
    return 0.0


def _turn_tokens(usage: dict[str, Any]) -> int:
    return sum(int(_as_number(usage.get(name))) for name in USAGE_FIELDS)


def parse_transcript(
    text: str,
    task_name: str,
    agent: str | None = None,
    started_at: str | None = None,
    completed_at: str | None = None,
    project_root: Path | str | None = None,
) -> NormalizedWorkerOutput:
    """Parse a transcript into the canonical worker output.

    Args:
        text: Raw transcript content
        task_name: Task the transcript belongs to
        agent: Role that produced the transcript
        started_at: ISO timestamp the job was launched
        completed_at: ISO timestamp the job finished
        project_root: Prefix stripped from affected file paths

    Returns:
        NormalizedWorkerOutput. Never raises on malformed content; an
        unusable transcript yields status "error" with an explanation.
    """
    events = load_events(text)

    affected_files: list[str] = []
    work_log: list[str] = []
    text_parts: list[str] = []
    # Streamed assistant messages repeat their usage on every content
    # block; one turn per message id
    turn_usage: dict[str, int] = {}
    result_event: dict[str, Any] | None = None

    for index, event in enumerate(events):
        event_type = event.get("type")

        if event_type == "assistant":
            message = event.get("message")
            if not isinstance(message, dict):
                message = {}
            turn_id = str(message.get("id") or f"turn-{index}")
            usage = message.get("usage") or event.get("usage")
            if isinstance(usage, dict):
                turn_usage[turn_id] = _turn_tokens(usage)

            content = message.get("content") or []
            if isinstance(content, str):
                text_parts.append(content)
                continue
            if not isinstance(content, list):
                continue
            for block in content:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text":
                    block_text = block.get("text")
                    if isinstance(block_text, str):
                        text_parts.append(block_text)
                elif block.get("type") == "tool_use":
                    tool_name = str(block.get("name") or "")
                    tool_input = block.get("input")
                    if not isinstance(tool_input, dict):
                        tool_input = {}
                    work_log.append(
                        describe_tool_call(tool_name, tool_input, project_root)
                    )
                    key = WRITE_TOOLS.get(tool_name)
                    target = tool_input.get(key) if key else None
                    if isinstance(target, str) and target:
                        path = normalize_path(target, project_root)
                        if path not in affected_files:
                            affected_files.append(path)

        elif event_type == "result":
            result_event = event

    tokens_used = list(turn_usage.values())

    summary = ""
    if result_event is not None:
        raw_summary = result_event.get("result")
        summary = raw_summary if isinstance(raw_summary, str) else ""

    steps = extract_steps("\n".join(text_parts + [summary]))
    status, error = _derive_status(result_event, summary, steps)

    if summary:
        first_line = summary.strip().splitlines()[0] if summary.strip() else ""
        if first_line:
            work_log.append(f"Result: {first_line}")

    verification = VerificationSummary(
        passed=all(step.passed for step in steps) if steps else None,
        steps=steps,
    )

    return NormalizedWorkerOutput(
        task_name=task_name,
        status=status,
        started_at=started_at,
        completed_at=completed_at,
        agent=agent,
        verification=verification,
        work_log=work_log,
        affected_files=affected_files,
        tokens_used=tokens_used,
        duration_ms=int(_as_number((result_event or {}).get("duration_ms"))),
        cost_usd=_as_number((result_event or {}).get("total_cost_usd")),
        summary=summary,
        error=error,
    )


def _derive_status(
    result_event: dict[str, Any] | None,
    summary: str,
    steps: list[StepCheck],
) -> tuple[WorkerStatus, str | None]:
    """Decide the worker status and error message.

    Order of authority: explicit error flag or error subtype, then failed
    steps, then all-passed steps, then the blocked marker and the keyword
    scan of the summary.
    """
    if result_event is None:
        return "error", "Transcript has no result event"

    subtype = str(result_event.get("subtype") or "")
    if result_event.get("is_error") is True or subtype.startswith("error"):
        reason = subtype or "is_error"
        return "error", _error_message(f"Agent reported an error ({reason})", summary)

    failed = [step for step in steps if not step.passed]
    if failed:
        numbers = ", ".join(str(step.number) for step in failed)
        return "error", f"Verification failed for step(s) {numbers}"
    if steps:
        return "success", None

    if has_blocked_marker(summary):
        return "blocked", _error_message("Agent reported it is blocked", summary)
    if text_indicates_failure(summary):
        return "error", _error_message("Agent summary reports a failure", summary)
    return "success", None


def _error_message(prefix: str, summary: str) -> str:
    first_line = summary.strip().splitlines()[0] if summary.strip() else ""
    return f"{prefix}: {first_line}" if first_line else prefix


def parse_transcript_file(
    path: Path,
    task_name: str,
    agent: str | None = None,
    started_at: str | None = None,
    completed_at: str | None = None,
    project_root: Path | str | None = None,
) -> NormalizedWorkerOutput:
    """Parse the transcript file for a task; a missing file is an error output."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return NormalizedWorkerOutput(
            task_name=task_name,
            status="error",
            started_at=started_at,
            completed_at=completed_at,
            agent=agent,
            error=f"Transcript not found: {path}",
        )

    return parse_transcript(
        text,
        task_name,
        agent=agent,
        started_at=started_at,
        completed_at=completed_at,
        project_root=project_root,
    )


def write_worker_output(output: NormalizedWorkerOutput, path: Path) -> None:
    """Write the normalized output next to the transcript for the board viewer."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(output.to_dict(), indent=2) + "\n", encoding="utf-8")
