"""Progress sinks: where the runner's `report(phase, message, level)` calls end up."""

from __future__ import annotations

import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Protocol, Union

from loguru import logger
from rich.console import Console
from rich.markup import escape

from .io_utils import _append_event, _append_text
from .models import Level

RULE = "═" * 68

_LEVEL_ICONS = {
    Level.INFO: "⏳",
    Level.WARN: "⚠️ ",
    Level.ERROR: "❌",
}

_LEVEL_STYLES = {
    Level.INFO: "yellow",
    Level.WARN: "bold yellow",
    Level.ERROR: "bold red",
}

_LOGURU_LEVELS = {
    Level.INFO: "INFO",
    Level.WARN: "WARNING",
    Level.ERROR: "ERROR",
}


class ProgressSink(Protocol):
    def report(self, phase: str, message: str, level: Level = Level.INFO) -> None: ...


def _coerce_level(level: Union[Level, str]) -> Level:
    if isinstance(level, Level):
        return level
    try:
        return Level(str(level).upper())
    except ValueError:
        return Level.INFO


def _clock() -> str:
    return datetime.now().strftime("%H:%M:%S")


class LoggerSink:
    """Forward progress to loguru."""

    def report(self, phase: str, message: str, level: Level = Level.INFO) -> None:
        level = _coerce_level(level)
        logger.bind(phase=phase).log(_LOGURU_LEVELS[level], "[{}] {}", phase, message)


class ConsoleSink:
    """Print coloured, emoji-tagged progress lines with rich."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(highlight=False)
        self._lock = threading.Lock()

    def report(self, phase: str, message: str, level: Level = Level.INFO) -> None:
        level = _coerce_level(level)
        icon = _LEVEL_ICONS[level]
        with self._lock:
            self.console.print(
                f"{icon} [dim]{escape(phase)}[/dim] {escape(message)}",
                style=_LEVEL_STYLES[level],
                markup=True,
            )


class StatusFileSink:
    """Maintain a human-readable status file that refreshes in the editor.

    The file lives in the workspace so it is visible while the Codespace is
    still being set up.
    """

    def __init__(self, path: Path):
        self.path = path

    def start(self, started_at: Optional[str] = None, expected: str = "") -> None:
        started_at = started_at or datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        lines = [
            RULE,
            "🚀 DOTFILES INSTALLATION IN PROGRESS",
            RULE,
            "",
            f"Installation started at: {started_at}",
        ]
        if expected:
            lines.append(f"⏱️  Expected time: {expected}")
        lines += [
            "",
            "This file updates in real-time. Refresh to see latest progress!",
            "",
            f"File location: {self.path}",
            "",
            RULE,
            "PROGRESS LOG:",
            RULE,
            "",
        ]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    def report(self, phase: str, message: str, level: Level = Level.INFO) -> None:
        level = _coerce_level(level)
        _append_text(self.path, f"[{_clock()}] {_LEVEL_ICONS[level]} [{phase}] {message}\n")

    def finish(self, headline: str, details: Iterable[str] = ()) -> None:
        lines = ["", RULE, headline, RULE, ""]
        lines.extend(details)
        lines += ["", f"Finished at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}", RULE, ""]
        _append_text(self.path, "\n".join(lines) + "\n")


class EventLogSink:
    """Append every report as a JSON line for later inspection."""

    def __init__(self, events_path: Path, run_id: Optional[str] = None):
        self.events_path = events_path
        self.run_id = run_id

    def report(self, phase: str, message: str, level: Level = Level.INFO) -> None:
        level = _coerce_level(level)
        event = {"phase": phase, "level": level.value, "message": message}
        if self.run_id:
            event["run_id"] = self.run_id
        _append_event(self.events_path, event)


class RecordingSink:
    """Keep reports in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.records: list[tuple[str, str, Level]] = []

    def report(self, phase: str, message: str, level: Level = Level.INFO) -> None:
        with self._lock:
            self.records.append((phase, message, _coerce_level(level)))

    def messages(self, phase: Optional[str] = None, level: Optional[Level] = None) -> list[str]:
        with self._lock:
            return [
                message
                for rec_phase, message, rec_level in self.records
                if (phase is None or rec_phase == phase) and (level is None or rec_level == level)
            ]


class MultiSink:
    """Fan a report out to several sinks; one broken sink never stops the run."""

    def __init__(self, sinks: Iterable[ProgressSink]):
        self.sinks = list(sinks)

    def report(self, phase: str, message: str, level: Level = Level.INFO) -> None:
        for sink in self.sinks:
            try:
                sink.report(phase, message, level)
            except Exception:
                logger.exception("Progress sink {} failed", sink.__class__.__name__)


def progress_bar(current: int, total: int, width: int = 20) -> str:
    """Render `[████░░░░] 40%` for step `current` of `total`."""
    if total <= 0:
        return f"[{'░' * width}] 0%"
    current = max(0, min(current, total))
    percent = current * 100 // total
    filled = percent * width // 100
    return f"[{'█' * filled}{'░' * (width - filled)}] {percent}%"
