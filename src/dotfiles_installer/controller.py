"""Drive a whole installation: phases in order under a global deadline.

The controller owns the run state machine (INITIALIZING -> RUNNING ->
COMPLETED | ABORTED). Three things can abort a run: the global-deadline
watcher, SIGINT/SIGTERM, and a REQUIRED task failing while
`abort_on_required_failure` is set. All three go through `abort()`, which
cancels every live task via the shared `TaskRegistry`.
"""

from __future__ import annotations

import signal
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .constants import (
    DEFAULT_GRACE_SECONDS,
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_MAX_OUTPUT_BYTES,
    DEFAULT_PHASE_HEARTBEAT_SECONDS,
)
from .detached import launch_detached
from .errors import InstallerError, RequiredTaskUnmet, RunAbort
from .models import (
    AbortReason,
    DetachedJob,
    Level,
    PhaseResult,
    RunPlan,
    RunReport,
    RunState,
)
from .progress import ProgressSink, progress_bar
from .task_group import TaskGroup, TaskRegistry
from .utils import _format_duration, _now_iso, _run_id, _sanitize_name

RUN_SCOPE = "run"

_HANDLED_SIGNALS = ("SIGINT", "SIGTERM")


@dataclass
class RunPolicy:
    """Tunable behaviour of a run; the deadlines themselves live on the plan."""

    abort_on_required_failure: bool = True
    cancel_siblings_on_required_failure: bool = True
    grace_period: float = DEFAULT_GRACE_SECONDS
    heartbeat_interval: float = DEFAULT_HEARTBEAT_SECONDS
    phase_heartbeat_interval: float = DEFAULT_PHASE_HEARTBEAT_SECONDS
    max_concurrency: Optional[int] = None
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES


class RunController:
    """Run an install plan phase by phase and report how it ended."""

    def __init__(
        self,
        plan: RunPlan,
        sink: ProgressSink,
        policy: Optional[RunPolicy] = None,
        *,
        run_id: Optional[str] = None,
        log_dir: Optional[Path] = None,
        install_signal_handlers: bool = True,
        detached_launcher: Optional[Callable[[DetachedJob], Optional[int]]] = None,
    ):
        self.plan = plan
        self.sink = sink
        self.policy = policy or RunPolicy()
        self.run_id = run_id or _run_id()
        self.log_dir = log_dir
        self.install_signal_handlers = install_signal_handlers
        self.detached_launcher = detached_launcher or self._launch_detached_job
        self.registry = TaskRegistry()
        self.detached_pids: dict[str, int] = {}

        self._lock = threading.Lock()
        self._state = RunState.INITIALIZING
        self._abort_event = threading.Event()
        self._finished = threading.Event()
        self._abort_reason: Optional[AbortReason] = None
        self._abort_detail = ""
        self._signal_name: Optional[str] = None
        self._current_phase: Optional[str] = None
        self._current_group: Optional[TaskGroup] = None

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state

    @property
    def aborted(self) -> bool:
        return self._abort_event.is_set()

    def status(self) -> dict[str, Any]:
        """Snapshot of the run for status displays."""
        with self._lock:
            group = self._current_group
            payload: dict[str, Any] = {
                "run_id": self.run_id,
                "state": self._state.value,
                "phase": self._current_phase,
                "abort_reason": self._abort_reason.value if self._abort_reason else None,
            }
        payload["tasks"] = group.status() if group else {}
        return payload

    def abort(self, reason: AbortReason, detail: str = "") -> bool:
        """Abort the run and cancel every live task.

        Idempotent: only the first call records a reason; later calls return
        False and change nothing. Blocks until the cancelled tasks have been
        signalled, which takes at most one grace period plus the kill wait.
        """
        with self._lock:
            if self._abort_reason is not None or self._finished.is_set():
                return False
            self._abort_reason = reason
            self._abort_detail = detail
            if reason == AbortReason.SIGNAL:
                self._signal_name = detail or None
        self._abort_event.set()
        if reason == AbortReason.SIGNAL:
            logger.warning("Received {}; stopping installation", detail)

        message = f"Aborting run ({reason.value})"
        if detail:
            message += f": {detail}"
        logger.warning(message)
        self.sink.report(RUN_SCOPE, message, Level.ERROR)
        cancelled = self.registry.cancel_all(f"run aborted ({reason.value})")
        if cancelled:
            logger.info("Cancelled {} live task(s)", cancelled)
        logger.debug("Run status after abort: {}", self.status())
        return True

    def request_abort(self, reason: AbortReason, detail: str = "") -> None:
        """Abort from a context that must not block, such as a signal handler."""
        threading.Thread(
            target=self.abort,
            args=(reason, detail),
            name="run-abort",
            daemon=True,
        ).start()

    def _handle_signal(self, signum: int, frame: Any) -> None:
        # Runs on the main thread between bytecodes: no locks, no logging.
        self.request_abort(AbortReason.SIGNAL, signal.Signals(signum).name)

    def _install_handlers(self) -> dict[int, Any]:
        previous: dict[int, Any] = {}
        if not self.install_signal_handlers:
            return previous
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread; leaving signal handlers alone")
            return previous
        for name in _HANDLED_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            previous[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle_signal)
        return previous

    @staticmethod
    def _restore_handlers(previous: dict[int, Any]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)

    def _watch_deadline(self) -> None:
        if self._finished.wait(self.plan.global_timeout):
            return
        self.abort(
            AbortReason.GLOBAL_TIMEOUT,
            f"installation exceeded {self.plan.global_timeout:g}s",
        )

    def _launch_detached_job(self, job: DetachedJob) -> Optional[int]:
        log_path = None
        if self.log_dir is not None:
            log_path = self.log_dir / "detached" / f"{_sanitize_name(job.name)}.log"
        return launch_detached(job, log_path)

    def _launch_detached(self, after_phase: Optional[str]) -> None:
        for job in self.plan.detached:
            if job.after_phase != after_phase or self.aborted:
                continue
            try:
                pid = self.detached_launcher(job)
            except OSError as exc:
                logger.error("Could not start detached job '{}': {}", job.name, exc)
                self.sink.report(RUN_SCOPE, f"Background job {job.name} failed to start: {exc}", Level.WARN)
                continue
            if pid is not None:
                self.detached_pids[job.name] = pid
            self.sink.report(RUN_SCOPE, f"Started background job {job.name} (not supervised)", Level.INFO)

    def _report_phase(self, result: PhaseResult) -> None:
        counts = (
            f"{len(result.succeeded)} succeeded, {len(result.failed)} failed, "
            f"{len(result.timed_out)} timed out, {len(result.cancelled)} cancelled"
        )
        if result.required_unmet:
            level = Level.ERROR
            message = f"Phase {result.phase} finished with required task(s) unmet ({', '.join(result.required_unmet)}): {counts}"
        elif result.phase_timed_out or len(result.succeeded) < len(result.results):
            level = Level.WARN
            message = f"Phase {result.phase} finished with optional failures: {counts}"
        else:
            level = Level.INFO
            message = f"Phase {result.phase} complete: {counts}"
        self.sink.report(result.phase, f"{message} ({_format_duration(result.duration_seconds)})", level)

    def _report_final(self, report: RunReport) -> None:
        summary = f"{report.pass_count} passed, {report.fail_count} failed"
        if report.not_started:
            summary += f", {len(report.not_started)} not started"
        if report.state == RunState.ABORTED:
            reason = report.abort_reason.value if report.abort_reason else "unknown"
            self.sink.report(RUN_SCOPE, f"Installation aborted ({reason}): {summary}", Level.ERROR)
        elif report.required_unmet:
            self.sink.report(
                RUN_SCOPE,
                f"Installation finished with required failures ({', '.join(report.required_unmet)}): {summary}",
                Level.ERROR,
            )
        elif report.fail_count:
            self.sink.report(RUN_SCOPE, f"Installation complete with optional failures: {summary}", Level.WARN)
        else:
            self.sink.report(RUN_SCOPE, f"Installation complete: {summary}", Level.INFO)

    def run(self) -> RunReport:
        """Execute every phase in order and return the final report.

        Returns:
            A `RunReport`. Its `error` holds the run-level exception (if any);
            call `raise_for_status()` to raise it. Every task in the report
            is terminal, and tasks of phases that never started are listed
            in `not_started`.

        Raises:
            RuntimeError: If the controller has already been run.
        """
        with self._lock:
            if self._state != RunState.INITIALIZING:
                raise RuntimeError("RunController.run() can only be called once")
            self._state = RunState.RUNNING

        start_iso = _now_iso()
        started = time.monotonic()
        phases = self.plan.phases
        self.sink.report(
            RUN_SCOPE,
            f"Starting installation: {len(phases)} phase(s), {self.plan.task_count} task(s), "
            f"global timeout {self.plan.global_timeout:g}s",
            Level.INFO,
        )
        logger.info("Run {} starting", self.run_id)

        watcher = threading.Thread(target=self._watch_deadline, name="global-deadline", daemon=True)
        watcher.start()
        previous_handlers = self._install_handlers()
        phase_results: list[PhaseResult] = []
        try:
            self._launch_detached(None)
            for index, phase in enumerate(phases, start=1):
                if self.aborted:
                    break
                with self._lock:
                    self._current_phase = phase.name
                self.sink.report(
                    phase.name,
                    f"Phase {index}/{len(phases)}: {phase.name} {progress_bar(index - 1, len(phases))}",
                    Level.INFO,
                )
                group = TaskGroup(
                    sink=self.sink,
                    registry=self.registry,
                    grace_period=self.policy.grace_period,
                    heartbeat_interval=self.policy.heartbeat_interval,
                    phase_heartbeat_interval=self.policy.phase_heartbeat_interval,
                    max_concurrency=self.policy.max_concurrency,
                    cancel_siblings_on_required_failure=self.policy.cancel_siblings_on_required_failure,
                    log_dir=self.log_dir,
                    max_output_bytes=self.policy.max_output_bytes,
                )
                with self._lock:
                    self._current_group = group
                result = group.run(phase)
                phase_results.append(result)
                self._report_phase(result)
                if self.aborted:
                    break
                self._launch_detached(phase.name)
                if result.required_unmet and self.policy.abort_on_required_failure:
                    self.abort(AbortReason.REQUIRED_FAILURE, ", ".join(result.required_unmet))
        finally:
            self._finished.set()
            self._restore_handlers(previous_handlers)
            leftover = self.registry.live()
            if leftover:
                logger.warning("Cancelling {} task(s) still live at shutdown", len(leftover))
            self.registry.cancel_all("run finished")
            watcher.join(timeout=1.0)
            with self._lock:
                self._current_phase = None
                self._current_group = None

        not_started = [
            f"{phase.name}/{task.name}"
            for phase in phases[len(phase_results):]
            for task in phase.tasks
        ]
        with self._lock:
            reason = self._abort_reason
            detail = self._abort_detail
            signal_name = self._signal_name
            self._state = RunState.ABORTED if reason else RunState.COMPLETED
            state = self._state

        report = RunReport(
            run_id=self.run_id,
            state=state,
            phases=phase_results,
            abort_reason=reason,
            signal_name=signal_name,
            not_started=not_started,
            start_time=start_iso,
            end_time=_now_iso(),
            duration_seconds=time.monotonic() - started,
        )
        report.error = self._run_error(report, detail)
        self._report_final(report)
        logger.info("Run {} {} in {}", self.run_id, state.value, _format_duration(report.duration_seconds))
        return report

    @staticmethod
    def _run_error(report: RunReport, detail: str) -> Optional[InstallerError]:
        if report.state == RunState.ABORTED and report.abort_reason is not None:
            if report.abort_reason == AbortReason.REQUIRED_FAILURE:
                return RequiredTaskUnmet(report.required_unmet, aborted=True)
            return RunAbort(report.abort_reason, detail)
        if report.required_unmet:
            return RequiredTaskUnmet(report.required_unmet, aborted=False)
        return None
