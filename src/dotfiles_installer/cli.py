"""Command-line entry point for `dotfiles-installer`."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from .config import (
    VALID_LOG_LEVELS,
    get_logging_config,
    get_paths_config,
    get_policy_config,
    get_timeouts_config,
    load_runner_config,
)
from .constants import (
    EVENTS_FILE,
    EXIT_CONFIG_ERROR,
    LATEST_LOG_POINTER,
    LOGS_DIR,
    PLAN_FILE,
    RUNS_DIR,
    STATE_DIR_NAME,
    SUMMARY_FILE,
    VISIBLE_STATUS_FILE,
)
from .controller import RunController, RunPolicy
from .errors import PlanError
from .io_utils import _atomic_write_text, _read_events, _tail_lines
from .logging_utils import pretty, summarize_phase, summarize_task_result
from .models import RunPlan, TaskState
from .plan import default_plan, load_plan
from .progress import ConsoleSink, EventLogSink, LoggerSink, MultiSink, ProgressSink, StatusFileSink
from .report import finish_status_file, load_summary, print_report, write_completion_markers, write_summary
from .utils import _run_id


def _configure_logging(level: str = "INFO", log_file: Optional[Path] = None, *, stderr: bool = True) -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    if stderr:
        logger.add(
            sys.stderr,
            level=level.upper(),
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
                "{message}"
            ),
        )
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_file),
            level=level.upper(),
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {module}:{line} | {message}",
            colorize=False,
        )


# Initialize with default level; will be reconfigured in main() based on CLI args
_configure_logging()


def _add_dotfiles_dir(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--dotfiles-dir",
        type=Path,
        default=Path("."),
        help="Dotfiles checkout (default: current directory)",
    )


def _add_timeout_overrides(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--plan",
        type=Path,
        default=None,
        help=f"Install plan YAML (default: .dotfiles_installer/{PLAN_FILE}, else the built-in plan)",
    )
    parser.add_argument(
        "--global-timeout",
        type=float,
        default=None,
        help="Emergency limit for the whole run in seconds (default: 900)",
    )
    parser.add_argument(
        "--package-timeout",
        type=float,
        default=None,
        help="Per-task timeout for tasks that do not set one (default: 300)",
    )
    parser.add_argument(
        "--phase-timeout",
        type=float,
        default=None,
        help="Per-phase timeout for phases that do not set one (default: 600)",
    )


def _build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Dotfiles installer - supervised parallel installation for Codespaces",
    )
    _add_dotfiles_dir(parser)
    _add_timeout_overrides(parser)
    parser.add_argument(
        "--heartbeat-seconds",
        type=float,
        default=None,
        help="Seconds between 'still working' messages for a task (default: 10)",
    )
    parser.add_argument(
        "--grace-seconds",
        type=float,
        default=None,
        help="Seconds between SIGTERM and SIGKILL when cancelling (default: 1)",
    )
    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help="Cap on concurrently running tasks within a phase (default: no cap)",
    )
    parser.add_argument(
        "--continue-on-required-failure",
        action="store_true",
        help="Keep running later phases after a required task fails",
    )
    parser.add_argument(
        "--no-cancel-siblings",
        action="store_true",
        help="Let the rest of a phase finish after a required task fails",
    )
    parser.add_argument(
        "--status-file",
        type=Path,
        default=None,
        help=f"Visible status file (default: {VISIBLE_STATUS_FILE} in the workspace)",
    )
    parser.add_argument(
        "--cache-dir",
        type=Path,
        default=None,
        help="Where completion markers are written (default: ~/.cache)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Log level (default: INFO, or LOG_LEVEL)",
    )
    parser.add_argument(
        "--no-console",
        action="store_true",
        help="Log progress through the logger instead of the rich console",
    )
    return parser


def _build_dry_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Dotfiles installer - validate and show the install plan without running it",
    )
    _add_dotfiles_dir(parser)
    _add_timeout_overrides(parser)
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON",
    )
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Dotfiles installer - show the result of the last run",
    )
    _add_dotfiles_dir(parser)
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON",
    )
    return parser


def _build_logs_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Dotfiles installer - show the latest run log",
    )
    _add_dotfiles_dir(parser)
    parser.add_argument(
        "--lines",
        type=int,
        default=50,
        help="Number of lines to show (default: 50)",
    )
    parser.add_argument(
        "--errors",
        action="store_true",
        help="Only show warnings and errors",
    )
    return parser


def _state_dir(dotfiles_dir: Path) -> Path:
    return dotfiles_dir.resolve() / STATE_DIR_NAME


def _resolve_plan(
    dotfiles_dir: Path,
    plan_path: Optional[Path],
    config: dict[str, Any],
    timeouts: dict[str, float],
    *,
    global_timeout: Optional[float],
) -> RunPlan:
    """Pick the plan: --plan, then config `paths.plan`, then the state dir, then the built-in plan."""
    candidate = plan_path or get_paths_config(config)["plan"]
    if candidate is None:
        default_path = _state_dir(dotfiles_dir) / PLAN_FILE
        if default_path.exists():
            candidate = default_path
    if candidate is not None:
        return load_plan(
            candidate,
            package_timeout=timeouts["package"],
            phase_timeout=timeouts["phase"],
            global_timeout=global_timeout,
            default_global_timeout=timeouts["global"],
        )
    return default_plan(
        dotfiles_dir=dotfiles_dir.resolve(),
        package_timeout=timeouts["package"],
        phase_timeout=timeouts["phase"],
        global_timeout=global_timeout or timeouts["global"],
    )


def _merged_timeouts(config: dict[str, Any], args: argparse.Namespace) -> dict[str, float]:
    timeouts = get_timeouts_config(config)
    overrides = {
        "package": getattr(args, "package_timeout", None),
        "phase": getattr(args, "phase_timeout", None),
        "global": getattr(args, "global_timeout", None),
        "heartbeat": getattr(args, "heartbeat_seconds", None),
        "grace": getattr(args, "grace_seconds", None),
    }
    for key, value in overrides.items():
        if value is not None and value > 0:
            timeouts[key] = float(value)
    return timeouts


def _status_file_path(dotfiles_dir: Path, override: Optional[Path]) -> Path:
    if override is not None:
        return override
    workspace = os.environ.get("CODESPACE_VSCODE_FOLDER")
    if workspace and Path(workspace).is_dir():
        return Path(workspace) / VISIBLE_STATUS_FILE
    return dotfiles_dir.resolve() / VISIBLE_STATUS_FILE


def _run_command(args: argparse.Namespace) -> int:
    dotfiles_dir: Path = args.dotfiles_dir
    state_dir = _state_dir(dotfiles_dir)
    config, config_err = load_runner_config(dotfiles_dir)
    if config_err:
        logger.error("Invalid runner config: {}", config_err)
        return EXIT_CONFIG_ERROR

    timeouts = _merged_timeouts(config, args)
    policy_cfg = get_policy_config(config)
    paths_cfg = get_paths_config(config)
    log_level = (args.log_level or get_logging_config(config)["level"]).upper()
    if log_level not in VALID_LOG_LEVELS:
        logger.error("Invalid --log-level {!r}; expected one of {}", args.log_level, ", ".join(sorted(VALID_LOG_LEVELS)))
        return EXIT_CONFIG_ERROR
    if args.max_concurrency is not None and args.max_concurrency < 1:
        logger.error("--max-concurrency must be at least 1, got {}", args.max_concurrency)
        return EXIT_CONFIG_ERROR
    console_enabled = not args.no_console

    run_id = _run_id()
    run_dir = state_dir / RUNS_DIR / run_id
    log_file = state_dir / LOGS_DIR / f"install-{run_id}.log"
    _configure_logging(log_level, log_file, stderr=not console_enabled)
    _atomic_write_text(state_dir / LOGS_DIR / LATEST_LOG_POINTER, f"{log_file}\n")

    try:
        plan = _resolve_plan(
            dotfiles_dir,
            args.plan,
            config,
            timeouts,
            global_timeout=args.global_timeout if args.global_timeout else None,
        )
    except PlanError as exc:
        for issue in exc.issues:
            logger.error("Plan issue: {}", issue)
        return EXIT_CONFIG_ERROR

    max_concurrency = args.max_concurrency if args.max_concurrency is not None else policy_cfg["max_concurrency"]
    policy = RunPolicy(
        abort_on_required_failure=(
            policy_cfg["abort_on_required_failure"] and not args.continue_on_required_failure
        ),
        cancel_siblings_on_required_failure=(
            policy_cfg["cancel_siblings_on_required_failure"] and not args.no_cancel_siblings
        ),
        grace_period=timeouts["grace"],
        heartbeat_interval=timeouts["heartbeat"],
        phase_heartbeat_interval=timeouts["phase_heartbeat"],
        max_concurrency=max_concurrency,
    )

    status_sink = StatusFileSink(_status_file_path(dotfiles_dir, args.status_file or paths_cfg["status_file"]))
    status_sink.start(expected="2-5 minutes")
    sinks: list[ProgressSink] = [
        LoggerSink(),
        EventLogSink(run_dir / EVENTS_FILE, run_id),
        status_sink,
    ]
    if console_enabled:
        sinks.append(ConsoleSink())

    logger.info("Run {} using plan with {} phase(s); log file {}", run_id, len(plan.phases), log_file)
    controller = RunController(plan, MultiSink(sinks), policy, run_id=run_id, log_dir=run_dir)
    report = controller.run()

    for phase_result in report.phases:
        logger.debug("Phase summary: {}", pretty(summarize_phase(phase_result)))
        for task_result in phase_result.results:
            if task_result.state != TaskState.SUCCEEDED:
                logger.warning("Task did not succeed: {}", pretty(summarize_task_result(task_result)))

    try:
        finish_status_file(status_sink, report)
        write_summary(state_dir / SUMMARY_FILE, report)
        cache_dir = args.cache_dir.expanduser() if args.cache_dir else paths_cfg["cache_dir"]
        write_completion_markers(cache_dir, report)
    except OSError as exc:
        logger.error("Failed to write run artifacts: {}", exc)

    if console_enabled:
        print_report(report)
    return report.exit_code


def _dry_run_command(args: argparse.Namespace) -> int:
    config, config_err = load_runner_config(args.dotfiles_dir)
    if config_err:
        sys.stderr.write(f"Invalid runner config: {config_err}\n")
        return EXIT_CONFIG_ERROR
    timeouts = _merged_timeouts(config, args)
    try:
        plan = _resolve_plan(
            args.dotfiles_dir,
            args.plan,
            config,
            timeouts,
            global_timeout=args.global_timeout if args.global_timeout else None,
        )
    except PlanError as exc:
        if args.json:
            sys.stdout.write(json.dumps({"valid": False, "issues": exc.issues}) + "\n")
        else:
            for issue in exc.issues:
                sys.stderr.write(f"Plan issue: {issue}\n")
        return EXIT_CONFIG_ERROR

    if args.json:
        sys.stdout.write(pretty({"valid": True, "plan": plan.to_dict()}) + "\n")
        return 0

    tree = Tree(f"[bold]Install plan[/bold] (global timeout {plan.global_timeout:g}s)")
    for index, phase in enumerate(plan.phases, start=1):
        branch = tree.add(f"[cyan]Phase {index}: {phase.name}[/cyan] (timeout {phase.phase_timeout:g}s)")
        for task in phase.tasks:
            style = "bold" if task.required else "dim"
            branch.add(
                f"[{style}]{escape(task.name)}[/{style}] ({task.criticality.value}, {task.timeout:g}s) "
                f"{escape(task.display_command)}",
                highlight=False,
            )
    if plan.detached:
        detached = tree.add("[yellow]Detached (not supervised)[/yellow]")
        for job in plan.detached:
            detached.add(f"{escape(job.name)} after {job.after_phase or 'start'}")
    Console().print(tree)
    return 0


def _status_command(dotfiles_dir: Path, *, as_json: bool = False) -> int:
    state_dir = _state_dir(dotfiles_dir)
    summary_path = state_dir / SUMMARY_FILE
    if not summary_path.exists():
        if as_json:
            sys.stdout.write('{"status":"no_runs"}\n')
        else:
            sys.stdout.write(f"No installation summary found at {summary_path}\n")
        return 0

    summary, err = load_summary(summary_path)
    if err:
        sys.stderr.write(f"Could not read {summary_path}: {err}\n")
        return 1
    if as_json:
        sys.stdout.write(json.dumps(summary, indent=2) + "\n")
        return 0

    table = Table(title=f"Last run {summary.get('run_id', '?')}: {summary.get('state', '?')}", show_header=True)
    table.add_column("Phase", style="cyan")
    table.add_column("Task", style="bold")
    table.add_column("State")
    table.add_column("Detail", style="dim")
    for phase in summary.get("phases") or []:
        for task in phase.get("tasks") or []:
            table.add_row(
                str(phase.get("phase", "")),
                str(task.get("name", "")),
                str(task.get("state", "")),
                escape(str(task.get("detail") or "")[:60]),
            )
    console = Console()
    console.print(table)
    console.print(
        f"passed={summary.get('pass_count', 0)} failed={summary.get('fail_count', 0)} "
        f"exit_code={summary.get('exit_code')} abort_reason={summary.get('abort_reason')}",
        markup=False,
    )
    run_id = summary.get("run_id")
    if run_id:
        events = _read_events(state_dir / RUNS_DIR / str(run_id) / EVENTS_FILE)
        if events:
            last = events[-1]
            console.print(f"last event ({last.get('phase', '?')}): {last.get('message', '')}", markup=False)
    return 0


def _logs_command(dotfiles_dir: Path, *, lines: int = 50, errors_only: bool = False) -> int:
    pointer = _state_dir(dotfiles_dir) / LOGS_DIR / LATEST_LOG_POINTER
    if not pointer.exists():
        sys.stdout.write("No installation logs found\n")
        return 1
    log_path = Path(pointer.read_text(encoding="utf-8").strip())
    if not log_path.exists():
        sys.stdout.write(f"Log file missing: {log_path}\n")
        return 1

    if errors_only:
        selected = [
            line
            for line in _tail_lines(log_path, 10_000)
            if "| ERROR" in line or "| WARNING" in line or "| CRITICAL" in line
        ][-lines:]
    else:
        selected = _tail_lines(log_path, lines)
    for line in selected:
        sys.stdout.write(line + "\n")
    return 0


def main(argv: list[str] | None = None) -> None:
    """Run the `dotfiles-installer` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Always, carrying the process exit code.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if argv:
        if argv[0] == "status":
            args = _build_status_parser().parse_args(argv[1:])
            raise SystemExit(_status_command(args.dotfiles_dir, as_json=bool(args.json)))
        if argv[0] == "dry-run":
            args = _build_dry_run_parser().parse_args(argv[1:])
            raise SystemExit(_dry_run_command(args))
        if argv[0] == "logs":
            args = _build_logs_parser().parse_args(argv[1:])
            raise SystemExit(_logs_command(args.dotfiles_dir, lines=args.lines, errors_only=bool(args.errors)))
        if argv[0] == "run":
            argv = argv[1:]

    args = _build_run_parser().parse_args(argv)
    raise SystemExit(_run_command(args))
