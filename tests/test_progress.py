"""Test the progress sinks and the progress bar."""

from __future__ import annotations

import io
from pathlib import Path

from rich.console import Console

from dotfiles_installer.io_utils import _read_events
from dotfiles_installer.models import Level
from dotfiles_installer.progress import (
    ConsoleSink,
    EventLogSink,
    MultiSink,
    RecordingSink,
    StatusFileSink,
    progress_bar,
)


def test_progress_bar() -> None:
    assert progress_bar(0, 4) == "[░░░░░░░░░░░░░░░░░░░░] 0%"
    assert progress_bar(1, 4) == "[█████░░░░░░░░░░░░░░░] 25%"
    assert progress_bar(4, 4) == "[████████████████████] 100%"
    assert progress_bar(9, 4).endswith("100%")
    assert progress_bar(1, 0).endswith("0%")


def test_status_file_lifecycle(tmp_path: Path) -> None:
    path = tmp_path / "DOTFILES-INSTALLATION-STATUS.txt"
    sink = StatusFileSink(path)

    sink.start(started_at="2026-01-01 10:00:00", expected="2-5 minutes")
    sink.report("core-tools", "Installing Claude Code", Level.INFO)
    sink.report("core-tools", "claude-flow failed", Level.WARN)
    sink.finish("✅ INSTALLATION COMPLETE", ["Passed: 3"])

    text = path.read_text()
    assert "DOTFILES INSTALLATION IN PROGRESS" in text
    assert "Installation started at: 2026-01-01 10:00:00" in text
    assert "[core-tools] Installing Claude Code" in text
    assert "⚠️" in text
    assert text.index("Installing Claude Code") < text.index("INSTALLATION COMPLETE")
    assert "Passed: 3" in text


def test_event_log_sink_writes_jsonl(tmp_path: Path) -> None:
    events_path = tmp_path / "events.jsonl"
    sink = EventLogSink(events_path, run_id="run-1")

    sink.report("verify", "claude --version ok")
    sink.report("verify", "missing ~/.claude.json", Level.ERROR)

    events = _read_events(events_path)
    assert [e["level"] for e in events] == ["INFO", "ERROR"]
    assert events[0]["run_id"] == "run-1"
    assert events[1]["message"] == "missing ~/.claude.json"
    assert "timestamp" in events[0]


def test_console_sink_prints_brackets_literally() -> None:
    buffer = io.StringIO()
    sink = ConsoleSink(Console(file=buffer, force_terminal=False, width=200))

    sink.report("mcp", "npm ERR! [bold]not markup[/bold]", Level.ERROR)

    output = buffer.getvalue()
    assert "[bold]not markup[/bold]" in output
    assert "mcp" in output


def test_multi_sink_survives_broken_sink() -> None:
    class Broken:
        def report(self, phase, message, level=Level.INFO):
            raise OSError("disk full")

    recorder = RecordingSink()
    MultiSink([Broken(), recorder]).report("p", "still delivered", Level.WARN)

    assert recorder.messages() == ["still delivered"]


def test_recording_sink_filters_and_coerces_levels() -> None:
    sink = RecordingSink()
    sink.report("a", "one")
    sink.report("b", "two", "warn")
    sink.report("a", "three", "bogus")

    assert sink.messages(phase="a") == ["one", "three"]
    assert sink.messages(level=Level.WARN) == ["two"]
