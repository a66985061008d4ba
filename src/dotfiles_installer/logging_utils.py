"""Format and summarize task and phase results for logs."""

import json
import re
from typing import Any

from .models import PhaseResult, TaskResult, TaskState

_ERROR_LINE_RE = re.compile(r"^.*(?:\bERR!|\bERROR\b|\bError\b|\berror:|\bFATAL\b|\bTraceback\b).*$", re.M)


def first_error_line(output: str) -> str | None:
    """Return the first line of `output` that looks like an error message."""
    if not output:
        return None
    match = _ERROR_LINE_RE.search(output)
    return match.group(0).strip() if match else None


def summarize_task_result(result: TaskResult) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of a task result.

    Args:
        result: The task's terminal result.

    Returns:
        A dictionary suitable for logging or serialization.
    """
    d: dict[str, Any] = {
        "task": result.name,
        "phase": result.phase,
        "state": result.state.value,
        "criticality": result.criticality.value,
        "duration": round(result.duration_seconds, 2),
    }
    if result.exit_code is not None:
        d["exit_code"] = result.exit_code
    if result.log_path:
        d["log"] = result.log_path

    if result.state != TaskState.SUCCEEDED:
        d["error_type"] = result.error_type
        detail = str(result.detail or "")
        d["detail"] = (detail[:240] + "…") if len(detail) > 240 else detail
        first_error = first_error_line(result.output_tail)
        if first_error:
            d["first_error"] = (first_error[:240] + "…") if len(first_error) > 240 else first_error

    return d


def summarize_phase(result: PhaseResult) -> dict[str, Any]:
    """Summarize a phase as counts plus the names that need attention."""
    d: dict[str, Any] = {
        "phase": result.phase,
        "succeeded_n": len(result.succeeded),
        "failed": result.failed,
        "timed_out": result.timed_out,
        "cancelled": result.cancelled,
    }
    if result.required_unmet:
        d["required_unmet"] = result.required_unmet
    if result.phase_timed_out:
        d["phase_timed_out"] = True
    return d


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs.

    Args:
        obj: Object to serialize.
        indent: Indentation level for JSON output.

    Returns:
        A JSON string when possible; otherwise `str(obj)`.
    """
    try:
        return json.dumps(obj, indent=indent, default=str)
    except Exception:
        return str(obj)
