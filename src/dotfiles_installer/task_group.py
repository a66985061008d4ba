"""Run one phase's tasks concurrently under a phase-wide deadline.

Each task gets its own `TimeoutSupervisor` call on a thread pool. The group
waits for every task to settle or for the phase deadline, whichever comes
first, and reports "k of n complete" as each task finishes.
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, Optional

from loguru import logger

from .constants import (
    DEFAULT_GRACE_SECONDS,
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_MAX_OUTPUT_BYTES,
    DEFAULT_PHASE_HEARTBEAT_SECONDS,
    ERROR_TYPE_PHASE_TIMEOUT,
    ERROR_TYPE_TASK_FAILURE,
)
from .models import HeartbeatEvent, Level, Phase, PhaseResult, TaskResult, TaskState
from .process import KILL_WAIT_SECONDS
from .progress import ProgressSink
from .supervisor import Heartbeat, TaskHandle, TimeoutSupervisor
from .utils import _format_duration, _now_iso


def cancel_handles(handles: Iterable[TaskHandle], action: Callable[[TaskHandle], bool]) -> int:
    """Apply `action` (cancel or time out) to every handle in parallel.

    Each action may block for a full grace period while its process shuts
    down, so they run side by side to keep the total bounded by one period.

    Returns:
        The number of handles whose state this call changed.
    """
    targets = [handle for handle in handles if not handle.terminal]
    if not targets:
        return 0
    changed = 0
    lock = threading.Lock()

    def _apply(handle: TaskHandle) -> None:
        nonlocal changed
        try:
            if action(handle):
                with lock:
                    changed += 1
        except Exception:
            logger.exception("Failed to stop task '{}'", handle.name)

    threads = [
        threading.Thread(target=_apply, args=(handle,), name=f"stop-{handle.name}", daemon=True)
        for handle in targets
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return changed


class TaskRegistry:
    """Every live task handle of a run, so one call can cancel them all.

    Once closed by `cancel_all`, the registry cancels anything registered
    afterwards, which closes the gap between an abort and a phase that was
    just about to start.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: list[TaskHandle] = []
        self._closed = False
        self._close_detail = "cancelled"

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def register(self, handle: TaskHandle) -> bool:
        with self._lock:
            if not self._closed:
                self._handles.append(handle)
                return True
            detail = self._close_detail
        handle.cancel(detail)
        return False

    def discard(self, handle: TaskHandle) -> None:
        with self._lock:
            if handle in self._handles:
                self._handles.remove(handle)

    def live(self) -> list[TaskHandle]:
        with self._lock:
            return [handle for handle in self._handles if not handle.terminal]

    def cancel_all(self, detail: str = "cancelled") -> int:
        with self._lock:
            self._closed = True
            self._close_detail = detail
            handles = list(self._handles)
        return cancel_handles(handles, lambda handle: handle.cancel(detail))


def _describe(result: TaskResult) -> tuple[str, Level]:
    if result.state == TaskState.SUCCEEDED:
        return f"✅ {result.name} ({_format_duration(result.duration_seconds)})", Level.INFO
    if result.state == TaskState.FAILED:
        detail = result.detail or f"exit code {result.exit_code}"
        level = Level.ERROR if result.required else Level.WARN
        return f"{result.name} failed ({detail})", level
    if result.state == TaskState.TIMED_OUT:
        level = Level.ERROR if result.required else Level.WARN
        return f"{result.name} timed out ({result.detail or 'no detail'})", level
    return f"{result.name} cancelled ({result.detail or 'run aborted'})", Level.WARN


class TaskGroup:
    """Execute a phase's tasks in parallel and aggregate their outcomes.

    Concurrency defaults to one worker per task. `max_concurrency` caps it;
    tasks beyond the cap wait in the pool queue and their own timeout only
    starts once they are picked up, while the phase deadline covers the wait.
    """

    def __init__(
        self,
        *,
        sink: ProgressSink,
        registry: Optional[TaskRegistry] = None,
        grace_period: float = DEFAULT_GRACE_SECONDS,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_SECONDS,
        phase_heartbeat_interval: float = DEFAULT_PHASE_HEARTBEAT_SECONDS,
        max_concurrency: Optional[int] = None,
        cancel_siblings_on_required_failure: bool = True,
        log_dir: Optional[Path] = None,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    ):
        self.sink = sink
        self.registry = registry or TaskRegistry()
        self.grace_period = grace_period
        self.heartbeat_interval = heartbeat_interval
        self.phase_heartbeat_interval = phase_heartbeat_interval
        self.max_concurrency = max_concurrency
        self.cancel_siblings_on_required_failure = cancel_siblings_on_required_failure
        self.log_dir = log_dir
        self.max_output_bytes = max_output_bytes
        self._lock = threading.Lock()
        self._handles: list[TaskHandle] = []
        self._completed = 0

    def _on_task_heartbeat(self, phase: str, event: HeartbeatEvent) -> None:
        self.sink.report(
            phase,
            f"Still working on {event.task_name}... ({event.elapsed:.0f}s elapsed, max {event.limit:g}s)",
            Level.INFO,
        )

    def status(self) -> dict[str, str]:
        """Current state of every task in the running phase."""
        with self._lock:
            handles = list(self._handles)
        return {handle.name: handle.state.value for handle in handles}

    def run(self, phase: Phase) -> PhaseResult:
        """Run every task of `phase` and return the aggregate result.

        Args:
            phase: The phase to execute.

        Returns:
            A `PhaseResult` in which every task has exactly one terminal state.
        """
        handles = [TaskHandle(task, phase.name) for task in phase.tasks]
        total = len(handles)
        with self._lock:
            self._handles = handles
            self._completed = 0

        start_iso = _now_iso()
        started = time.monotonic()
        if not handles:
            return PhaseResult(phase=phase.name, start_time=start_iso, end_time=_now_iso())

        for handle in handles:
            self.registry.register(handle)

        supervisor = TimeoutSupervisor(
            grace_period=self.grace_period,
            heartbeat_interval=self.heartbeat_interval,
            on_heartbeat=self._on_task_heartbeat,
            log_dir=self.log_dir,
            max_output_bytes=self.max_output_bytes,
        )
        workers = max(1, min(self.max_concurrency or total, total))
        deadline = started + phase.phase_timeout
        results: dict[int, TaskResult] = {}
        phase_timed_out = False

        def _phase_beat(elapsed: float) -> None:
            with self._lock:
                done = self._completed
            self.sink.report(
                phase.name,
                f"Parallel tasks in progress... ({done}/{total} complete, {elapsed:.0f}s elapsed)",
                Level.INFO,
            )

        phase_heartbeat = Heartbeat(
            self.phase_heartbeat_interval,
            _phase_beat,
            limit=phase.phase_timeout,
            name=f"heartbeat-phase-{phase.name}",
        )

        logger.info("Phase '{}': starting {} task(s) with {} worker(s)", phase.name, total, workers)
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"phase-{phase.name}")
        try:
            futures = {pool.submit(supervisor.execute, handle): idx for idx, handle in enumerate(handles)}
            pending = set(futures)
            phase_heartbeat.start()

            while pending:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                done, pending = concurrent.futures.wait(
                    pending,
                    timeout=remaining,
                    return_when=concurrent.futures.FIRST_COMPLETED,
                )
                for future in done:
                    idx = futures[future]
                    result = self._collect(future, handles[idx])
                    results[idx] = result
                    self._record_completion(phase.name, result, total)
                    if result.required and not result.ok and result.state != TaskState.CANCELLED:
                        self._on_required_failure(handles, result)

            if pending:
                phase_timed_out = True
                self.sink.report(
                    phase.name,
                    f"Phase timed out after {phase.phase_timeout:g}s with {len(pending)} task(s) outstanding",
                    Level.ERROR,
                )
                detail = f"phase '{phase.name}' timed out after {phase.phase_timeout:g}s"
                cancel_handles(
                    [handles[futures[future]] for future in pending],
                    lambda handle: handle.time_out(ERROR_TYPE_PHASE_TIMEOUT, detail),
                )
                concurrent.futures.wait(pending, timeout=self.grace_period + KILL_WAIT_SECONDS + 1.0)
                for future in pending:
                    idx = futures[future]
                    if future.done() and not future.cancelled():
                        results[idx] = self._collect(future, handles[idx])
                    else:
                        results[idx] = handles[idx].result()
                    self._record_completion(phase.name, results[idx], total)
        finally:
            phase_heartbeat.stop()
            pool.shutdown(wait=False, cancel_futures=True)
            for handle in handles:
                self.registry.discard(handle)

        ordered = [results[idx] for idx in range(total)]
        phase_result = PhaseResult(
            phase=phase.name,
            results=ordered,
            phase_timed_out=phase_timed_out,
            start_time=start_iso,
            end_time=_now_iso(),
            duration_seconds=time.monotonic() - started,
        )
        logger.info(
            "Phase '{}' settled: {} succeeded, {} failed, {} timed out, {} cancelled",
            phase.name,
            len(phase_result.succeeded),
            len(phase_result.failed),
            len(phase_result.timed_out),
            len(phase_result.cancelled),
        )
        return phase_result

    def _collect(self, future: concurrent.futures.Future, handle: TaskHandle) -> TaskResult:
        try:
            return future.result()
        except Exception as exc:
            logger.exception("Unexpected error supervising '{}': {}", handle.name, exc)
            handle.fail(f"Unexpected error: {exc}", error_type=ERROR_TYPE_TASK_FAILURE)
            return handle.result()

    def _record_completion(self, phase: str, result: TaskResult, total: int) -> None:
        with self._lock:
            self._completed += 1
            completed = self._completed
        message, level = _describe(result)
        self.sink.report(phase, f"{message} [{completed} of {total} complete]", level)

    def _on_required_failure(self, handles: list[TaskHandle], failed: TaskResult) -> None:
        if not self.cancel_siblings_on_required_failure:
            return
        siblings = [handle for handle in handles if handle.name != failed.name and not handle.terminal]
        if not siblings:
            return
        self.sink.report(
            failed.phase,
            f"Required task '{failed.name}' did not succeed; cancelling {len(siblings)} sibling task(s)",
            Level.ERROR,
        )
        detail = f"cancelled after required task '{failed.name}' failed"
        cancel_handles(siblings, lambda handle: handle.cancel(detail))
