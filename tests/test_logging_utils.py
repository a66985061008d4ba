"""Tests for logging_utils module."""

from __future__ import annotations

from dotfiles_installer.constants import ERROR_TYPE_TASK_TIMEOUT
from dotfiles_installer.logging_utils import (
    first_error_line,
    pretty,
    summarize_phase,
    summarize_task_result,
)
from dotfiles_installer.models import Criticality, PhaseResult, TaskResult, TaskState


def _result(state: TaskState, **kwargs) -> TaskResult:
    kwargs.setdefault("criticality", Criticality.REQUIRED)
    return TaskResult(name=kwargs.pop("name", "npm"), phase="core", state=state, **kwargs)


class TestFirstErrorLine:
    """Test first_error_line function."""

    def test_empty_output(self):
        assert first_error_line("") is None

    def test_npm_error(self):
        output = "fetching...\nnpm ERR! code E404\nnpm ERR! 404 Not Found\n"
        assert first_error_line(output) == "npm ERR! code E404"

    def test_python_traceback(self):
        output = "Collecting SuperClaude\nTraceback (most recent call last):\n  File ...\n"
        assert first_error_line(output) == "Traceback (most recent call last):"

    def test_clean_output(self):
        assert first_error_line("added 12 packages in 3s") is None


class TestSummarizeTaskResult:
    """Test summarize_task_result function."""

    def test_success_is_compact(self):
        summary = summarize_task_result(_result(TaskState.SUCCEEDED, exit_code=0, duration_seconds=1.234))

        assert summary == {
            "task": "npm",
            "phase": "core",
            "state": "succeeded",
            "criticality": "required",
            "duration": 1.23,
            "exit_code": 0,
        }

    def test_timeout_includes_error_type(self):
        summary = summarize_task_result(
            _result(TaskState.TIMED_OUT, error_type=ERROR_TYPE_TASK_TIMEOUT, detail="timed out after 300s")
        )

        assert summary["error_type"] == ERROR_TYPE_TASK_TIMEOUT
        assert summary["detail"] == "timed out after 300s"
        assert "exit_code" not in summary

    def test_long_detail_is_truncated(self):
        summary = summarize_task_result(_result(TaskState.FAILED, detail="x" * 500))

        assert len(summary["detail"]) == 241
        assert summary["detail"].endswith("…")

    def test_first_error_from_output(self):
        summary = summarize_task_result(
            _result(TaskState.FAILED, exit_code=1, output_tail="ok\nERROR: could not resolve host\n")
        )

        assert summary["first_error"] == "ERROR: could not resolve host"


class TestSummarizePhase:
    """Test summarize_phase function."""

    def test_clean_phase(self):
        phase = PhaseResult("core", [_result(TaskState.SUCCEEDED)])

        assert summarize_phase(phase) == {
            "phase": "core",
            "succeeded_n": 1,
            "failed": [],
            "timed_out": [],
            "cancelled": [],
        }

    def test_phase_with_problems(self):
        phase = PhaseResult(
            "mcp",
            [
                _result(TaskState.FAILED, name="github", criticality=Criticality.OPTIONAL),
                _result(TaskState.TIMED_OUT, name="cli"),
            ],
            phase_timed_out=True,
        )

        summary = summarize_phase(phase)

        assert summary["failed"] == ["github"]
        assert summary["required_unmet"] == ["cli"]
        assert summary["phase_timed_out"] is True


class TestPretty:
    """Test pretty function."""

    def test_dict(self):
        assert pretty({"a": 1}) == '{\n  "a": 1\n}'

    def test_non_serializable_falls_back_to_str(self):
        class Thing:
            def __str__(self) -> str:
                return "thing"

        assert pretty({"t": Thing()}) == '{\n  "t": "thing"\n}'

    def test_indent(self):
        assert pretty([1], indent=0) == "[\n1\n]"
