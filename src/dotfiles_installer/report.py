"""Final run reporting: summary table, summary.json and completion markers."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .constants import ABORT_RESOLUTION_STEPS, JUST_INSTALLED_MARKER, SUMMARY_MARKER
from .io_utils import _atomic_write_json, _atomic_write_text, _load_data_with_error
from .models import RunReport, RunState, TaskState
from .progress import StatusFileSink
from .utils import _format_duration, _now_iso

_STATE_MARKUP = {
    TaskState.SUCCEEDED: "[green]✓ Succeeded[/green]",
    TaskState.FAILED: "[red]✗ Failed[/red]",
    TaskState.TIMED_OUT: "[magenta]⏱ Timed out[/magenta]",
    TaskState.CANCELLED: "[yellow]⊘ Cancelled[/yellow]",
}


def render_summary_table(report: RunReport) -> Table:
    """Build a per-task table for the final console summary."""
    table = Table(title=f"Installation Summary ({report.run_id})", show_header=True)
    table.add_column("Phase", style="cyan")
    table.add_column("Task", style="bold")
    table.add_column("Criticality")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Detail", style="dim")

    for result in report.task_results:
        table.add_row(
            result.phase,
            result.name,
            result.criticality.value,
            _STATE_MARKUP.get(result.state, result.state.value),
            _format_duration(result.duration_seconds),
            escape((result.detail or "")[:60]),
        )
    for name in report.not_started:
        phase, _, task = name.partition("/")
        table.add_row(phase, task, "", "[dim]Not started[/dim]", "", "")
    return table


def resolution_steps(report: RunReport) -> list[str]:
    if report.state == RunState.ABORTED and report.abort_reason is not None:
        return list(ABORT_RESOLUTION_STEPS.get(report.abort_reason.value, []))
    if report.required_unmet:
        return list(ABORT_RESOLUTION_STEPS["required_failure"])
    return []


def headline(report: RunReport) -> str:
    if report.state == RunState.ABORTED:
        if report.signal_name:
            return f"⚠️  INSTALLATION INTERRUPTED ({report.signal_name})"
        reason = report.abort_reason.value if report.abort_reason else "unknown"
        return f"❌ INSTALLATION ABORTED ({reason})"
    if report.required_unmet:
        return "❌ INSTALLATION FINISHED WITH REQUIRED FAILURES"
    if report.fail_count:
        return "✅ INSTALLATION COMPLETE (with optional failures)"
    return "✅ INSTALLATION COMPLETE"


def print_report(report: RunReport, console: Optional[Console] = None) -> None:
    console = console or Console()
    console.print(render_summary_table(report))
    console.print(
        f"[bold]{headline(report)}[/bold]  "
        f"passed={report.pass_count} failed={report.fail_count} "
        f"duration={_format_duration(report.duration_seconds)}",
        markup=True,
    )
    for step in resolution_steps(report):
        console.print(f"  • {step}", markup=False)


def finish_status_file(sink: StatusFileSink, report: RunReport) -> None:
    """Append the completion or interruption footer to the visible status file."""
    details = [
        f"Passed: {report.pass_count}",
        f"Failed: {report.fail_count}",
        f"Duration: {_format_duration(report.duration_seconds)}",
    ]
    for result in report.task_results:
        if not result.ok:
            line = f"  - {result.phase}/{result.name}: {result.state.value}"
            if result.log_path:
                line += f" (log: {result.log_path})"
            details.append(line)
    if report.not_started:
        details.append(f"Not started: {', '.join(report.not_started)}")
    steps = resolution_steps(report)
    if steps:
        details.append("")
        details.append("Next steps:")
        details.extend(f"  • {step}" for step in steps)
    sink.finish(headline(report), details)


def write_summary(path: Path, report: RunReport) -> None:
    _atomic_write_json(path, report.to_dict())


def load_summary(path: Path) -> tuple[dict[str, Any], str | None]:
    return _load_data_with_error(path, {})


def write_completion_markers(cache_dir: Path, report: RunReport) -> None:
    """Write the shell-readable markers the login banner looks for.

    `dotfiles_summary` holds `PASS_COUNT=` / `FAIL_COUNT=` lines. The
    `dotfiles_just_installed` marker is only written for a run that was not
    aborted.
    """
    _atomic_write_text(
        cache_dir / SUMMARY_MARKER,
        f"PASS_COUNT={report.pass_count}\nFAIL_COUNT={report.fail_count}\n",
    )
    if report.state == RunState.COMPLETED:
        _atomic_write_text(cache_dir / JUST_INSTALLED_MARKER, _now_iso() + "\n")
