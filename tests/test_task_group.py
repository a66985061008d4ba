"""Test concurrent phase execution, phase deadlines and sibling cancellation."""

from __future__ import annotations

import time
from pathlib import Path

from dotfiles_installer.constants import ERROR_TYPE_PHASE_TIMEOUT, ERROR_TYPE_TASK_TIMEOUT
from dotfiles_installer.errors import PhaseTimeout
from dotfiles_installer.models import Criticality, Level, Phase, Task, TaskState
from dotfiles_installer.progress import RecordingSink
from dotfiles_installer.task_group import TaskGroup, TaskRegistry

OPTIONAL = Criticality.OPTIONAL


def _group(sink: RecordingSink, **kwargs) -> TaskGroup:
    kwargs.setdefault("grace_period", 0.2)
    kwargs.setdefault("heartbeat_interval", 60)
    kwargs.setdefault("phase_heartbeat_interval", 60)
    return TaskGroup(sink=sink, **kwargs)


class TestMixedOutcomes:
    def test_each_task_gets_its_own_terminal_state(self) -> None:
        sink = RecordingSink()
        phase = Phase(
            "mixed",
            (
                Task("a", "sleep 0.2", timeout=5),
                Task("b", "sleep 0.3; exit 1", timeout=5, criticality=OPTIONAL),
                Task("c", "sleep 5", timeout=0.5, criticality=OPTIONAL),
            ),
            phase_timeout=10,
        )

        started = time.monotonic()
        result = _group(sink).run(phase)
        elapsed = time.monotonic() - started

        states = {r.name: r.state for r in result.results}
        assert states == {
            "a": TaskState.SUCCEEDED,
            "b": TaskState.FAILED,
            "c": TaskState.TIMED_OUT,
        }
        assert result.result_for("c").error_type == ERROR_TYPE_TASK_TIMEOUT
        assert result.ok is True
        assert result.required_unmet == []
        assert result.phase_timed_out is False
        assert elapsed < 4

    def test_results_keep_declared_order(self) -> None:
        phase = Phase(
            "order",
            (
                Task("slow", "sleep 0.4", timeout=5),
                Task("fast", "true", timeout=5),
            ),
        )
        result = _group(RecordingSink()).run(phase)

        assert [r.name for r in result.results] == ["slow", "fast"]

    def test_completion_progress_counts_up(self) -> None:
        sink = RecordingSink()
        phase = Phase(
            "count",
            tuple(Task(f"t{i}", f"sleep 0.{i}", timeout=5) for i in range(1, 4)),
        )
        _group(sink).run(phase)

        progress = [m for m in sink.messages(phase="count") if "complete]" in m]
        assert [m.rsplit("[", 1)[1] for m in progress] == [
            "1 of 3 complete]",
            "2 of 3 complete]",
            "3 of 3 complete]",
        ]

    def test_optional_failure_reports_warning(self) -> None:
        sink = RecordingSink()
        phase = Phase("warn", (Task("opt", "exit 2", timeout=5, criticality=OPTIONAL),))
        result = _group(sink).run(phase)

        assert result.ok
        assert any("opt failed" in m for m in sink.messages(phase="warn", level=Level.WARN))
        assert sink.messages(phase="warn", level=Level.ERROR) == []


class TestRequiredFailure:
    def test_required_failure_cancels_siblings(self) -> None:
        sink = RecordingSink()
        phase = Phase(
            "core",
            (
                Task("req", "sleep 0.2; exit 1", timeout=10),
                Task("sib", "sleep 30", timeout=60, criticality=OPTIONAL),
            ),
            phase_timeout=60,
        )

        started = time.monotonic()
        result = _group(sink).run(phase)

        assert time.monotonic() - started < 5
        assert result.result_for("req").state == TaskState.FAILED
        sibling = result.result_for("sib")
        assert sibling.state == TaskState.CANCELLED
        assert "req" in sibling.detail
        assert result.required_unmet == ["req"]
        assert result.ok is False

    def test_siblings_finish_when_cancellation_is_disabled(self) -> None:
        phase = Phase(
            "core",
            (
                Task("req", "exit 1", timeout=10),
                Task("sib", "sleep 0.5", timeout=10, criticality=OPTIONAL),
            ),
        )
        result = _group(RecordingSink(), cancel_siblings_on_required_failure=False).run(phase)

        assert result.result_for("sib").state == TaskState.SUCCEEDED
        assert result.required_unmet == ["req"]


class TestPhaseDeadline:
    def test_outstanding_tasks_become_phase_timeouts(self) -> None:
        sink = RecordingSink()
        phase = Phase(
            "stuck",
            (
                Task("x", "sleep 30", timeout=60, criticality=OPTIONAL),
                Task("y", "sleep 30", timeout=60, criticality=OPTIONAL),
                Task("z", "true", timeout=60, criticality=OPTIONAL),
            ),
            phase_timeout=0.5,
        )

        started = time.monotonic()
        result = _group(sink).run(phase)

        assert time.monotonic() - started < 5
        assert result.phase_timed_out is True
        assert result.result_for("z").state == TaskState.SUCCEEDED
        for name in ("x", "y"):
            task_result = result.result_for(name)
            assert task_result.state == TaskState.TIMED_OUT
            assert task_result.error_type == ERROR_TYPE_PHASE_TIMEOUT
            assert isinstance(task_result.error(), PhaseTimeout)
        assert any("Phase timed out" in m for m in sink.messages(phase="stuck", level=Level.ERROR))

    def test_queued_tasks_time_out_with_the_phase(self, tmp_path: Path) -> None:
        marker = tmp_path / "queued-ran"
        phase = Phase(
            "capped",
            (
                Task("first", "sleep 30", timeout=60, criticality=OPTIONAL),
                Task("queued", f"touch {marker}", timeout=60, criticality=OPTIONAL),
            ),
            phase_timeout=0.5,
        )
        result = _group(RecordingSink(), max_concurrency=1).run(phase)

        assert result.result_for("first").state == TaskState.TIMED_OUT
        assert result.result_for("queued").state == TaskState.TIMED_OUT
        assert not marker.exists()


def test_max_concurrency_serializes_tasks() -> None:
    phase = Phase(
        "serial",
        (
            Task("one", "sleep 0.3", timeout=5),
            Task("two", "sleep 0.3", timeout=5),
        ),
    )
    started = time.monotonic()
    result = _group(RecordingSink(), max_concurrency=1).run(phase)

    assert result.ok
    assert time.monotonic() - started >= 0.6


def test_empty_phase_returns_immediately() -> None:
    result = _group(RecordingSink()).run(Phase("empty", ()))

    assert result.results == []
    assert result.ok


def test_closed_registry_cancels_new_tasks(tmp_path: Path) -> None:
    marker = tmp_path / "ran"
    registry = TaskRegistry()
    registry.cancel_all("run aborted")
    assert registry.closed

    phase = Phase("late", (Task("never", f"touch {marker}", timeout=5),))
    result = _group(RecordingSink(), registry=registry).run(phase)

    assert result.result_for("never").state == TaskState.CANCELLED
    assert not marker.exists()
    assert registry.live() == []


def test_phase_heartbeat_reports_progress() -> None:
    sink = RecordingSink()
    phase = Phase("beat", (Task("waiting", "sleep 0.5", timeout=5),))
    _group(sink, phase_heartbeat_interval=0.1).run(phase)

    assert any("Parallel tasks in progress" in m for m in sink.messages(phase="beat"))


def test_task_heartbeat_reaches_sink() -> None:
    sink = RecordingSink()
    phase = Phase("beat", (Task("npm", "sleep 0.5", timeout=5),))
    _group(sink, heartbeat_interval=0.1).run(phase)

    assert any("Still working on npm" in m for m in sink.messages(phase="beat"))
