"""Error taxonomy for task, phase and run outcomes."""

from __future__ import annotations

from typing import Optional

from .constants import ERROR_TYPE_PHASE_TIMEOUT
from .models import AbortReason, TaskResult, TaskState


class InstallerError(Exception):
    """Base class for runner errors."""

    pass


class PlanError(ValueError):
    """Raised when an install plan or runner config is invalid."""

    def __init__(self, issues: list[str]):
        self.issues = list(issues)
        super().__init__("; ".join(self.issues) or "invalid plan")


class TaskTimeout(InstallerError):
    """A task exceeded its individual deadline."""

    def __init__(self, task_name: str, limit: Optional[float] = None, message: Optional[str] = None):
        self.task_name = task_name
        self.limit = limit
        suffix = f" after {limit:g}s" if limit is not None else ""
        super().__init__(message or f"{task_name} timed out{suffix}")


class PhaseTimeout(TaskTimeout):
    """A phase deadline fired while the task was still outstanding."""

    def __init__(self, task_name: str, phase: str):
        self.phase = phase
        super().__init__(task_name, message=f"{task_name} was still running when phase '{phase}' timed out")


class TaskFailure(InstallerError):
    """A task exited non-zero within its deadline."""

    def __init__(self, task_name: str, exit_code: Optional[int]):
        self.task_name = task_name
        self.exit_code = exit_code
        super().__init__(f"{task_name} failed with exit code {exit_code}")


class RunAbort(InstallerError):
    """The run was aborted and every live task was cancelled."""

    def __init__(self, reason: AbortReason, detail: str = ""):
        self.reason = reason
        self.detail = detail
        message = f"run aborted ({reason.value})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class RequiredTaskUnmet(RunAbort):
    """One or more REQUIRED tasks did not succeed."""

    def __init__(self, task_names: list[str], *, aborted: bool = True):
        self.task_names = list(task_names)
        self.aborted = aborted
        super().__init__(AbortReason.REQUIRED_FAILURE, ", ".join(self.task_names))


def error_for_result(result: TaskResult) -> Optional[InstallerError]:
    """Map a task's terminal state onto the error taxonomy.

    Cancelled tasks have no error of their own; the run-level `RunAbort`
    explains them.
    """
    if result.state == TaskState.TIMED_OUT:
        if result.error_type == ERROR_TYPE_PHASE_TIMEOUT:
            return PhaseTimeout(result.name, result.phase)
        return TaskTimeout(result.name)
    if result.state == TaskState.FAILED:
        return TaskFailure(result.name, result.exit_code)
    return None
