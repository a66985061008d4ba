"""Load, validate and build install plans.

A plan file is YAML:

    global_timeout: 900
    phases:
      - name: core-tools
        phase_timeout: 600
        tasks:
          - name: claude-code
            command: npm install -g @anthropic-ai/claude-code@latest
            timeout: 300
            criticality: required
    detached:
      - name: extension-watchdog
        command: ~/.local/bin/extension-watchdog.sh
        after_phase: core-tools

A task `command` given as a list is a chain of fallbacks: each alternative
runs only if the previous one failed.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from .constants import (
    DEFAULT_PACKAGE_TIMEOUT_SECONDS,
    DEFAULT_PHASE_TIMEOUT_SECONDS,
    DEFAULT_SCRIPT_TIMEOUT_SECONDS,
    VALID_CRITICALITIES,
)
from .errors import PlanError
from .io_utils import _load_data_with_error
from .models import Criticality, DetachedJob, Phase, RunPlan, Task

NPM_FLAGS = "--force --progress=false --loglevel=error"
PIP_FLAGS = "--break-system-packages --user --upgrade --force-reinstall --no-input"

MCP_PACKAGES = [
    ("github-mcp", "@modelcontextprotocol/server-github"),
    ("filesystem-mcp", "@modelcontextprotocol/server-filesystem"),
    ("playwright-mcp", "@playwright/mcp"),
    ("sequential-thinking-mcp", "@modelcontextprotocol/server-sequential-thinking"),
]


def _is_positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def _validate_command(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return None if value.strip() else "command is empty"
    if isinstance(value, list):
        if not value:
            return "command list is empty"
        if not all(isinstance(item, str) and item.strip() for item in value):
            return "command alternatives must be non-empty strings"
        return None
    return "command must be a string or a list of strings"


def _validate_task(task: Any, where: str) -> list[str]:
    if not isinstance(task, dict):
        return [f"{where} must be an object"]
    issues: list[str] = []
    name = task.get("name")
    if not isinstance(name, str) or not name.strip():
        issues.append(f"{where}.name missing")
    problem = _validate_command(task.get("command"))
    if problem:
        issues.append(f"{where}.{problem}")
    if "timeout" in task and not _is_positive_number(task.get("timeout")):
        issues.append(f"{where}.timeout must be a positive number")
    criticality = task.get("criticality")
    if criticality is not None and str(criticality).lower() not in VALID_CRITICALITIES:
        issues.append(f"{where}.criticality must be one of {sorted(VALID_CRITICALITIES)}")
    if task.get("cwd") is not None and not isinstance(task.get("cwd"), str):
        issues.append(f"{where}.cwd must be a string")
    env = task.get("env")
    if env is not None and not isinstance(env, dict):
        issues.append(f"{where}.env must be a mapping")
    return issues


def validate_plan_schema(data: Any) -> list[str]:
    """Check a raw plan mapping and return human-readable issues.

    Args:
        data: Parsed YAML/JSON content of a plan file.

    Returns:
        A list of issues. An empty list means the plan can be built.
    """
    if not isinstance(data, dict):
        return ["Plan must be an object"]

    issues: list[str] = []
    if "global_timeout" in data and not _is_positive_number(data.get("global_timeout")):
        issues.append("global_timeout must be a positive number")

    phases = data.get("phases")
    if not isinstance(phases, list) or not phases:
        issues.append("phases must be a non-empty list")
        phases = []

    phase_names: set[str] = set()
    for idx, phase in enumerate(phases):
        where = f"phases[{idx}]"
        if not isinstance(phase, dict):
            issues.append(f"{where} must be an object")
            continue
        name = phase.get("name")
        if not isinstance(name, str) or not name.strip():
            issues.append(f"{where}.name missing")
        elif name in phase_names:
            issues.append(f"{where}.name duplicates phase '{name}'")
        else:
            phase_names.add(name)
        if "phase_timeout" in phase and not _is_positive_number(phase.get("phase_timeout")):
            issues.append(f"{where}.phase_timeout must be a positive number")

        tasks = phase.get("tasks", [])
        if not isinstance(tasks, list):
            issues.append(f"{where}.tasks must be a list")
            continue
        task_names: set[str] = set()
        for task_idx, task in enumerate(tasks):
            task_where = f"{where}.tasks[{task_idx}]"
            issues.extend(_validate_task(task, task_where))
            task_name = task.get("name") if isinstance(task, dict) else None
            if isinstance(task_name, str) and task_name.strip():
                if task_name in task_names:
                    issues.append(f"{task_where}.name duplicates task '{task_name}' in the same phase")
                task_names.add(task_name)

    detached = data.get("detached", [])
    if not isinstance(detached, list):
        issues.append("detached must be a list")
        detached = []
    for idx, job in enumerate(detached):
        where = f"detached[{idx}]"
        if not isinstance(job, dict):
            issues.append(f"{where} must be an object")
            continue
        if not isinstance(job.get("name"), str) or not job.get("name", "").strip():
            issues.append(f"{where}.name missing")
        problem = _validate_command(job.get("command"))
        if problem:
            issues.append(f"{where}.{problem}")
        after = job.get("after_phase")
        if after is not None and after not in phase_names:
            issues.append(f"{where}.after_phase '{after}' is not a phase in this plan")

    return issues


def join_alternatives(command: Any) -> str:
    """Collapse a list of fallback commands into one shell command."""
    if isinstance(command, list):
        return " || ".join(f"( {item} )" if len(command) > 1 else item for item in command)
    return str(command)


def plan_from_dict(
    data: dict[str, Any],
    *,
    package_timeout: float = DEFAULT_PACKAGE_TIMEOUT_SECONDS,
    phase_timeout: float = DEFAULT_PHASE_TIMEOUT_SECONDS,
    global_timeout: Optional[float] = None,
    default_global_timeout: float = DEFAULT_SCRIPT_TIMEOUT_SECONDS,
) -> RunPlan:
    """Build a `RunPlan` from a raw mapping.

    Timeouts given in the mapping win; the keyword arguments fill in tasks and
    phases that do not set their own. An explicit `global_timeout` argument
    overrides the file; `default_global_timeout` applies when neither sets one.

    Raises:
        PlanError: If the mapping does not validate.
    """
    issues = validate_plan_schema(data)
    if issues:
        raise PlanError(issues)

    phases: list[Phase] = []
    for raw_phase in data["phases"]:
        tasks = tuple(
            Task(
                name=raw_task["name"],
                command=join_alternatives(raw_task["command"]),
                timeout=float(raw_task.get("timeout", package_timeout)),
                criticality=Criticality(str(raw_task.get("criticality", "required")).lower()),
                cwd=raw_task.get("cwd"),
                env={str(k): str(v) for k, v in raw_task["env"].items()} if raw_task.get("env") else None,
            )
            for raw_task in raw_phase.get("tasks", [])
        )
        phases.append(
            Phase(
                name=raw_phase["name"],
                tasks=tasks,
                phase_timeout=float(raw_phase.get("phase_timeout", phase_timeout)),
            )
        )

    detached = [
        DetachedJob(
            name=job["name"],
            command=join_alternatives(job["command"]),
            after_phase=job.get("after_phase"),
        )
        for job in data.get("detached", []) or []
    ]
    if global_timeout is None:
        global_timeout = float(data.get("global_timeout", default_global_timeout))
    return RunPlan(phases=phases, global_timeout=float(global_timeout), detached=detached)


def load_plan(
    path: Path,
    *,
    package_timeout: float = DEFAULT_PACKAGE_TIMEOUT_SECONDS,
    phase_timeout: float = DEFAULT_PHASE_TIMEOUT_SECONDS,
    global_timeout: Optional[float] = None,
    default_global_timeout: float = DEFAULT_SCRIPT_TIMEOUT_SECONDS,
) -> RunPlan:
    """Read and validate a plan file.

    Raises:
        PlanError: If the file is missing, unreadable or invalid.
    """
    if not path.exists():
        raise PlanError([f"Plan file not found: {path}"])
    data, err = _load_data_with_error(path, {})
    if err:
        raise PlanError([err])
    return plan_from_dict(
        data,
        package_timeout=package_timeout,
        phase_timeout=phase_timeout,
        global_timeout=global_timeout,
        default_global_timeout=default_global_timeout,
    )


def default_plan(
    *,
    dotfiles_dir: Optional[Path] = None,
    package_timeout: float = DEFAULT_PACKAGE_TIMEOUT_SECONDS,
    phase_timeout: float = DEFAULT_PHASE_TIMEOUT_SECONDS,
    global_timeout: float = DEFAULT_SCRIPT_TIMEOUT_SECONDS,
) -> RunPlan:
    """The stock Codespaces installation: Claude tooling, MCP servers, checks."""
    phases: list[Phase] = []

    if dotfiles_dir is not None:
        source = dotfiles_dir / ".claude.json"
        phases.append(
            Phase(
                name="config",
                tasks=(
                    Task(
                        name="claude-json",
                        command=f"cp '{source}' ~/.claude.json && chmod 600 ~/.claude.json",
                        timeout=30,
                    ),
                ),
                phase_timeout=60,
            )
        )

    phases.append(
        Phase(
            name="core-tools",
            tasks=(
                Task(
                    name="claude-code",
                    command=f"npm install -g @anthropic-ai/claude-code@latest {NPM_FLAGS}",
                    timeout=package_timeout,
                ),
                Task(
                    name="superclaude",
                    command=join_alternatives(
                        [
                            "pipx install SuperClaude --force",
                            "pipx upgrade SuperClaude",
                            f"pip install {PIP_FLAGS} SuperClaude",
                        ]
                    ),
                    timeout=package_timeout,
                    criticality=Criticality.OPTIONAL,
                ),
                Task(
                    name="claude-flow",
                    command=f"npm install -g claude-flow@alpha {NPM_FLAGS}",
                    timeout=package_timeout,
                    criticality=Criticality.OPTIONAL,
                ),
            ),
            phase_timeout=phase_timeout,
        )
    )

    phases.append(
        Phase(
            name="mcp-servers",
            tasks=tuple(
                Task(
                    name=name,
                    command=f"npm install -g '{package}@latest' {NPM_FLAGS}",
                    timeout=package_timeout,
                    criticality=Criticality.OPTIONAL,
                )
                for name, package in MCP_PACKAGES
            ),
            phase_timeout=phase_timeout,
        )
    )

    mcp_list = " ".join(package for _, package in MCP_PACKAGES)
    phases.append(
        Phase(
            name="verify",
            tasks=(
                Task(name="claude-cli", command="claude --version", timeout=30),
                Task(
                    name="superclaude-import",
                    command="python3 -c 'import SuperClaude'",
                    timeout=30,
                    criticality=Criticality.OPTIONAL,
                ),
                Task(name="claude-json-present", command="test -f ~/.claude.json", timeout=10),
                Task(
                    name="mcp-packages",
                    command=f"npm list -g {mcp_list}",
                    timeout=60,
                    criticality=Criticality.OPTIONAL,
                ),
            ),
            phase_timeout=120,
        )
    )

    watchdog = "~/.local/bin/extension-watchdog.sh"
    detached = [
        DetachedJob(
            name="extension-watchdog",
            command=f"if [ -x {watchdog} ]; then exec {watchdog}; fi",
            after_phase="core-tools",
        )
    ]
    return RunPlan(phases=phases, global_timeout=global_timeout, detached=detached)
