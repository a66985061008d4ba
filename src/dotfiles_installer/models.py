"""Define the task, phase and run models shared by the supervised runner."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Union

from .constants import (
    DEFAULT_PACKAGE_TIMEOUT_SECONDS,
    DEFAULT_PHASE_TIMEOUT_SECONDS,
    DEFAULT_SCRIPT_TIMEOUT_SECONDS,
    EXIT_GLOBAL_TIMEOUT,
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_REQUIRED_FAILURE,
)

if TYPE_CHECKING:
    from .errors import InstallerError

Command = Union[str, list[str]]


class Criticality(str, Enum):
    """Describe whether a task failure escalates beyond its phase."""

    REQUIRED = "required"
    OPTIONAL = "optional"


class TaskState(str, Enum):
    """Represent the lifecycle state of a single task."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in {TaskState.PENDING, TaskState.RUNNING}


class RunState(str, Enum):
    """Represent the state of the whole run."""

    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class AbortReason(str, Enum):
    """Explain why a run was aborted."""

    GLOBAL_TIMEOUT = "global_timeout"
    SIGNAL = "signal"
    REQUIRED_FAILURE = "required_failure"


class Level(str, Enum):
    """Severity of a progress message."""

    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


@dataclass(frozen=True)
class Task:
    """One external command with its own timeout and criticality."""

    name: str
    command: Command
    timeout: float = DEFAULT_PACKAGE_TIMEOUT_SECONDS
    criticality: Criticality = Criticality.REQUIRED
    cwd: Optional[str] = None
    env: Optional[dict[str, str]] = None

    @property
    def required(self) -> bool:
        return self.criticality == Criticality.REQUIRED

    @property
    def display_command(self) -> str:
        if isinstance(self.command, str):
            return self.command
        return " ".join(self.command)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command if isinstance(self.command, str) else list(self.command),
            "timeout": self.timeout,
            "criticality": self.criticality.value,
            "cwd": self.cwd,
        }


@dataclass(frozen=True)
class Phase:
    """A batch of tasks executed concurrently under one aggregate deadline."""

    name: str
    tasks: tuple[Task, ...]
    phase_timeout: float = DEFAULT_PHASE_TIMEOUT_SECONDS

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "phase_timeout": self.phase_timeout,
            "tasks": [task.to_dict() for task in self.tasks],
        }


@dataclass(frozen=True)
class DetachedJob:
    """A background job deliberately left outside the run's cancellation contract."""

    name: str
    command: Command
    after_phase: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command if isinstance(self.command, str) else list(self.command),
            "after_phase": self.after_phase,
        }


@dataclass
class RunPlan:
    """Ordered phases plus the global deadline for a whole installation."""

    phases: list[Phase]
    global_timeout: float = DEFAULT_SCRIPT_TIMEOUT_SECONDS
    detached: list[DetachedJob] = field(default_factory=list)

    @property
    def task_count(self) -> int:
        return sum(len(phase.tasks) for phase in self.phases)

    def to_dict(self) -> dict[str, Any]:
        return {
            "global_timeout": self.global_timeout,
            "phases": [phase.to_dict() for phase in self.phases],
            "detached": [job.to_dict() for job in self.detached],
        }


@dataclass(frozen=True)
class HeartbeatEvent:
    """Periodic 'still working' signal while a task or phase is pending."""

    task_name: str
    elapsed: float
    limit: float


@dataclass(frozen=True)
class TaskResult:
    """Terminal outcome of one task."""

    name: str
    phase: str
    state: TaskState
    criticality: Criticality
    exit_code: Optional[int] = None
    output_tail: str = ""
    log_path: Optional[str] = None
    error_type: Optional[str] = None
    detail: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state == TaskState.SUCCEEDED

    @property
    def required(self) -> bool:
        return self.criticality == Criticality.REQUIRED

    def error(self) -> Optional["InstallerError"]:
        from .errors import error_for_result

        return error_for_result(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "phase": self.phase,
            "state": self.state.value,
            "criticality": self.criticality.value,
            "exit_code": self.exit_code,
            "log_path": self.log_path,
            "error_type": self.error_type,
            "detail": self.detail,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class PhaseResult:
    """Aggregate of task outcomes for one phase."""

    phase: str
    results: list[TaskResult] = field(default_factory=list)
    phase_timed_out: bool = False
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_seconds: float = 0.0

    def _names(self, state: TaskState) -> list[str]:
        return [result.name for result in self.results if result.state == state]

    @property
    def succeeded(self) -> list[str]:
        return self._names(TaskState.SUCCEEDED)

    @property
    def failed(self) -> list[str]:
        return self._names(TaskState.FAILED)

    @property
    def timed_out(self) -> list[str]:
        return self._names(TaskState.TIMED_OUT)

    @property
    def cancelled(self) -> list[str]:
        return self._names(TaskState.CANCELLED)

    @property
    def required_unmet(self) -> list[str]:
        return [result.name for result in self.results if result.required and not result.ok]

    @property
    def ok(self) -> bool:
        return not self.required_unmet

    def result_for(self, name: str) -> Optional[TaskResult]:
        for result in self.results:
            if result.name == name:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "timed_out": self.timed_out,
            "cancelled": self.cancelled,
            "required_unmet": self.required_unmet,
            "phase_timed_out": self.phase_timed_out,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_seconds": round(self.duration_seconds, 3),
            "tasks": [result.to_dict() for result in self.results],
        }


@dataclass
class RunReport:
    """Final outcome of a run, including why it stopped."""

    run_id: str
    state: RunState
    phases: list[PhaseResult] = field(default_factory=list)
    abort_reason: Optional[AbortReason] = None
    signal_name: Optional[str] = None
    not_started: list[str] = field(default_factory=list)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_seconds: float = 0.0
    error: Optional["InstallerError"] = None

    @property
    def task_results(self) -> list[TaskResult]:
        return [result for phase in self.phases for result in phase.results]

    @property
    def required_unmet(self) -> list[str]:
        return [name for phase in self.phases for name in phase.required_unmet]

    @property
    def pass_count(self) -> int:
        return sum(1 for result in self.task_results if result.ok)

    @property
    def fail_count(self) -> int:
        return sum(1 for result in self.task_results if not result.ok)

    @property
    def exit_code(self) -> int:
        if self.state == RunState.ABORTED:
            if self.abort_reason == AbortReason.GLOBAL_TIMEOUT:
                return EXIT_GLOBAL_TIMEOUT
            if self.abort_reason == AbortReason.SIGNAL:
                return EXIT_INTERRUPTED
            return EXIT_REQUIRED_FAILURE
        if self.required_unmet:
            return EXIT_REQUIRED_FAILURE
        return EXIT_OK

    def raise_for_status(self) -> None:
        """Raise the run-level error, if any, after cleanup has completed."""
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "abort_reason": self.abort_reason.value if self.abort_reason else None,
            "signal": self.signal_name,
            "exit_code": self.exit_code,
            "pass_count": self.pass_count,
            "fail_count": self.fail_count,
            "required_unmet": self.required_unmet,
            "not_started": list(self.not_started),
            "error": str(self.error) if self.error else None,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_seconds": round(self.duration_seconds, 3),
            "phases": [phase.to_dict() for phase in self.phases],
        }
