"""Supervise one task: deadline, heartbeat, and single terminal-state resolution."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .constants import (
    DEFAULT_GRACE_SECONDS,
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_MAX_OUTPUT_BYTES,
    ERROR_TYPE_SPAWN_FAILED,
    ERROR_TYPE_TASK_FAILURE,
    ERROR_TYPE_TASK_TIMEOUT,
)
from .models import HeartbeatEvent, Task, TaskResult, TaskState
from .process import KILL_WAIT_SECONDS, ProcessResult, ProcessRunner
from .utils import _now_iso, _sanitize_name

OUTPUT_TAIL_CHARS = 4000


class Heartbeat:
    """Emit elapsed-time beats on a fixed cadence until stopped.

    Built on `threading.Event.wait`, so `stop()` takes effect immediately
    instead of after the current sleep.
    """

    def __init__(
        self,
        interval: float,
        on_beat: Callable[[float], None],
        *,
        limit: Optional[float] = None,
        name: str = "heartbeat",
    ):
        self.interval = interval
        self.on_beat = on_beat
        self.limit = limit
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self.interval <= 0:
            return
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _loop(self) -> None:
        started = time.monotonic()
        while not self._stop.wait(self.interval):
            elapsed = time.monotonic() - started
            if self.limit is not None and elapsed >= self.limit:
                return
            try:
                self.on_beat(elapsed)
            except Exception:
                logger.exception("Heartbeat callback failed ({})", self.name)


class TaskHandle:
    """Live handle for one task in a phase.

    The handle owns the task's terminal state. Completion, deadline expiry
    and cancellation all race through `_resolve`, and the first caller wins;
    later callers change nothing.
    """

    def __init__(self, task: Task, phase: str):
        self.task = task
        self.phase = phase
        self._lock = threading.Lock()
        self._resolved = threading.Event()
        self._state = TaskState.PENDING
        self._runner: Optional[ProcessRunner] = None
        self._error_type: Optional[str] = None
        self._detail: Optional[str] = None
        self._exit_code: Optional[int] = None
        self._output = ""
        self._log_path: Optional[str] = None
        self._start_time: Optional[str] = None
        self._end_time: Optional[str] = None
        self._started_at: Optional[float] = None
        self._finished_at: Optional[float] = None

    @property
    def name(self) -> str:
        return self.task.name

    @property
    def state(self) -> TaskState:
        with self._lock:
            return self._state

    @property
    def terminal(self) -> bool:
        return self._resolved.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._resolved.wait(timeout)

    def attach(self, runner: ProcessRunner, log_path: Optional[Path] = None) -> bool:
        """Move PENDING -> RUNNING with `runner`; False if already terminal."""
        with self._lock:
            if self._state.terminal:
                return False
            self._runner = runner
            self._state = TaskState.RUNNING
            self._log_path = str(log_path) if log_path else None
            self._start_time = _now_iso()
            self._started_at = time.monotonic()
            return True

    def _resolve(
        self,
        state: TaskState,
        *,
        error_type: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> bool:
        with self._lock:
            if self._state.terminal:
                return False
            self._state = state
            self._error_type = error_type
            self._detail = detail
            self._end_time = _now_iso()
            self._finished_at = time.monotonic()
        self._resolved.set()
        return True

    def complete(self, outcome: ProcessResult) -> bool:
        with self._lock:
            self._exit_code = outcome.exit_code
            self._output = outcome.text(OUTPUT_TAIL_CHARS)
        if outcome.exit_code == 0:
            return self._resolve(TaskState.SUCCEEDED)
        return self._resolve(
            TaskState.FAILED,
            error_type=ERROR_TYPE_TASK_FAILURE,
            detail=f"exit code {outcome.exit_code}",
        )

    def fail(self, detail: str, error_type: str = ERROR_TYPE_SPAWN_FAILED) -> bool:
        return self._resolve(TaskState.FAILED, error_type=error_type, detail=detail)

    def time_out(self, error_type: str = ERROR_TYPE_TASK_TIMEOUT, detail: Optional[str] = None) -> bool:
        """Record TIMED_OUT and kill the process; no-op if already terminal."""
        won = self._resolve(TaskState.TIMED_OUT, error_type=error_type, detail=detail)
        if won:
            self._cancel_runner()
        return won

    def cancel(self, detail: str = "cancelled") -> bool:
        """Record CANCELLED and kill the process; no-op if already terminal."""
        won = self._resolve(TaskState.CANCELLED, detail=detail)
        if won:
            self._cancel_runner()
        return won

    def _cancel_runner(self) -> None:
        with self._lock:
            runner = self._runner
        if runner is not None:
            runner.cancel()

    def result(self) -> TaskResult:
        with self._lock:
            if not self._state.terminal:
                raise RuntimeError(f"Task {self.task.name!r} has not reached a terminal state")
            duration = 0.0
            if self._started_at is not None and self._finished_at is not None:
                duration = max(0.0, self._finished_at - self._started_at)
            return TaskResult(
                name=self.task.name,
                phase=self.phase,
                state=self._state,
                criticality=self.task.criticality,
                exit_code=self._exit_code,
                output_tail=self._output,
                log_path=self._log_path,
                error_type=self._error_type,
                detail=self._detail,
                start_time=self._start_time,
                end_time=self._end_time,
                duration_seconds=duration,
            )


class TimeoutSupervisor:
    """Race a task's completion against its deadline while emitting heartbeats."""

    def __init__(
        self,
        *,
        grace_period: float = DEFAULT_GRACE_SECONDS,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_SECONDS,
        on_heartbeat: Optional[Callable[[str, HeartbeatEvent], None]] = None,
        log_dir: Optional[Path] = None,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    ):
        self.grace_period = grace_period
        self.heartbeat_interval = heartbeat_interval
        self.on_heartbeat = on_heartbeat
        self.log_dir = log_dir
        self.max_output_bytes = max_output_bytes

    def _log_path_for(self, handle: TaskHandle) -> Optional[Path]:
        if self.log_dir is None:
            return None
        return self.log_dir / _sanitize_name(handle.phase) / f"{_sanitize_name(handle.name)}.log"

    def execute(self, handle: TaskHandle) -> TaskResult:
        """Run the handle's task to a terminal state and return its result.

        Args:
            handle: A PENDING handle. A handle cancelled before this call
                returns immediately without spawning anything.

        Returns:
            The task's `TaskResult`: SUCCEEDED, FAILED, TIMED_OUT or CANCELLED.
        """
        task = handle.task
        log_path = self._log_path_for(handle)
        runner = ProcessRunner(
            grace_period=self.grace_period,
            log_path=log_path,
            max_output_bytes=self.max_output_bytes,
            cwd=task.cwd,
            env=task.env,
        )
        if not handle.attach(runner, log_path):
            return handle.result()

        logger.info("Running '{}' (timeout={}s): {}", task.name, task.timeout, task.display_command)
        done = threading.Event()

        def _target() -> None:
            try:
                outcome = runner.run(task.command)
            except (OSError, ValueError) as exc:
                logger.error("Could not start '{}': {}", task.name, exc)
                handle.fail(f"{exc.__class__.__name__}: {exc}")
            except Exception as exc:
                logger.exception("Runner for '{}' crashed", task.name)
                handle.fail(f"{exc.__class__.__name__}: {exc}", error_type=ERROR_TYPE_TASK_FAILURE)
            else:
                handle.complete(outcome)
            finally:
                done.set()

        worker = threading.Thread(target=_target, name=f"task-{_sanitize_name(task.name)}", daemon=True)

        def _beat(elapsed: float) -> None:
            if self.on_heartbeat:
                self.on_heartbeat(handle.phase, HeartbeatEvent(task.name, elapsed, task.timeout))

        heartbeat = Heartbeat(
            self.heartbeat_interval,
            _beat,
            limit=task.timeout,
            name=f"heartbeat-{_sanitize_name(task.name)}",
        )

        worker.start()
        heartbeat.start()
        try:
            if not handle.wait(timeout=task.timeout):
                if handle.time_out(ERROR_TYPE_TASK_TIMEOUT, f"timed out after {task.timeout:g}s"):
                    logger.warning("'{}' timed out after {}s", task.name, task.timeout)
        finally:
            heartbeat.stop()

        # A cancel issued by another thread may still be killing the process.
        if not done.wait(timeout=self.grace_period + KILL_WAIT_SECONDS + 1.0):
            logger.warning("'{}' did not exit within the kill window", task.name)

        result = handle.result()
        logger.debug("'{}' resolved as {}", task.name, result.state.value)
        return result
