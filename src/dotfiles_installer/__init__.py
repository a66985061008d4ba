"""Provide the public `dotfiles_installer` package exports."""

from __future__ import annotations

from .controller import RunController, RunPolicy
from .errors import (
    InstallerError,
    PhaseTimeout,
    PlanError,
    RequiredTaskUnmet,
    RunAbort,
    TaskFailure,
    TaskTimeout,
)
from .models import (
    AbortReason,
    Criticality,
    DetachedJob,
    Level,
    Phase,
    PhaseResult,
    RunPlan,
    RunReport,
    RunState,
    Task,
    TaskResult,
    TaskState,
)
from .plan import default_plan, load_plan
from .process import ProcessResult, ProcessRunner
from .progress import ProgressSink
from .supervisor import TaskHandle, TimeoutSupervisor
from .task_group import TaskGroup, TaskRegistry

__all__ = [
    "AbortReason",
    "Criticality",
    "DetachedJob",
    "InstallerError",
    "Level",
    "Phase",
    "PhaseResult",
    "PhaseTimeout",
    "PlanError",
    "ProcessResult",
    "ProcessRunner",
    "ProgressSink",
    "RequiredTaskUnmet",
    "RunAbort",
    "RunController",
    "RunPlan",
    "RunPolicy",
    "RunReport",
    "RunState",
    "Task",
    "TaskFailure",
    "TaskGroup",
    "TaskHandle",
    "TaskRegistry",
    "TaskResult",
    "TaskState",
    "TaskTimeout",
    "TimeoutSupervisor",
    "default_plan",
    "load_plan",
]
