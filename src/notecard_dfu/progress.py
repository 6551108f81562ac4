"""
Progress and log sinks for long-running operations.

The transfer engine talks to a sink through two calls, ``log_message`` and
``report_progress``. Sinks are best-effort: a failing sink is logged and
ignored so it can never break a transfer.
"""

import sys
import logging
from typing import Optional, Protocol, runtime_checkable

LEVEL_DEBUG = "debug"
LEVEL_INFO = "info"
LEVEL_WARNING = "warning"
LEVEL_ERROR = "error"

LOG_LEVELS = {
    LEVEL_DEBUG: logging.DEBUG,
    LEVEL_INFO: logging.INFO,
    LEVEL_WARNING: logging.WARNING,
    LEVEL_ERROR: logging.ERROR,
}


@runtime_checkable
class ProgressSink(Protocol):
    """Receives human-readable log lines and progress fractions."""

    def log_message(self, level: str, text: str) -> None:
        ...

    def report_progress(self, current: float, total: float, text: str) -> None:
        ...


class NullSink:
    """Discards everything."""

    def log_message(self, level: str, text: str) -> None:
        pass

    def report_progress(self, current: float, total: float, text: str) -> None:
        pass


class LoggingSink:
    """
    Forwards log lines to a logger and draws a one-line progress display on
    stdout. The progress display is suppressed in quiet mode.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, stream=None):
        self.log = logger or logging.getLogger("progress")
        self.stream = stream or sys.stdout
        self._drawn = False

    def log_message(self, level: str, text: str) -> None:
        if self._drawn:
            self.stream.write("\n")
            self._drawn = False
        self.log.log(LOG_LEVELS.get(level, logging.INFO), text)

    def report_progress(self, current: float, total: float, text: str) -> None:
        # Check if we're in quiet mode
        if logging.getLogger().getEffectiveLevel() >= logging.WARNING:
            return
        percent = min(100.0, (current / total) * 100) if total else 0.0
        self.stream.write(f"\rProgress: {percent:5.1f}% {text}\x1b[K")
        if percent >= 100.0:
            self.stream.write("\n")
            self._drawn = False
        else:
            self._drawn = True
        self.stream.flush()


class SafeSink:
    """Wraps any sink (or None) so calls never raise."""

    def __init__(self, sink: Optional[ProgressSink]):
        self.sink = sink if sink is not None else NullSink()
        self.log = logging.getLogger("progress")

    def log_message(self, level: str, text: str) -> None:
        try:
            self.sink.log_message(level, text)
        except Exception as e:
            self.log.debug(f"Ignoring log sink error: {e}")

    def report_progress(self, current: float, total: float, text: str) -> None:
        try:
            self.sink.report_progress(current, total, text)
        except Exception as e:
            self.log.debug(f"Ignoring progress sink error: {e}")
