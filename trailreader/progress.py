"""Progress reporting: start/end brackets around every pipeline stage.

``report_start`` returns an opaque token that the pipeline hands back,
unchanged, to ``report_end``. Reporters are observability hooks only; the
pipeline logs and ignores anything they raise.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from trailreader.models import LogFile, Source

logger = logging.getLogger(__name__)


class ProgressState(Enum):
    POLL_QUEUE = "poll"
    DELETE_MESSAGE = "delete-message"
    DELETE_FILTERED_MESSAGE = "delete-filtered-message"
    PARSE_MESSAGE = "parse-message"
    PROCESS_SOURCE = "process-source"
    DOWNLOAD_LOG = "download-log"
    PROCESS_LOG = "process-log"
    UNCAUGHT_EXCEPTION = "uncaught-exception"


@dataclass(frozen=True)
class ProcessLogInfo:
    source: Source
    log_file: LogFile
    success: bool = False


@dataclass(frozen=True)
class ProcessSourceInfo:
    source: Source
    success: bool = False


@dataclass(frozen=True)
class ParseMessageInfo:
    message: dict
    success: bool = False


@dataclass(frozen=True)
class UncaughtExceptionInfo:
    exception: BaseException
    source: Source | None = None
    success: bool = False


@dataclass(frozen=True)
class ProgressStatus:
    state: ProgressState
    info: Any

    @property
    def success(self) -> bool:
        return bool(getattr(self.info, "success", False))


@runtime_checkable
class ProgressReporter(Protocol):
    def report_start(self, status: ProgressStatus) -> Any: ...

    def report_end(self, status: ProgressStatus, token: Any) -> None: ...


class NullProgressReporter:
    def report_start(self, status: ProgressStatus) -> Any:
        return None

    def report_end(self, status: ProgressStatus, token: Any) -> None:
        pass


class LoggingProgressReporter:
    """Logs every bracket at DEBUG, with elapsed milliseconds on end."""

    def report_start(self, status: ProgressStatus) -> Any:
        logger.debug("Start %s", status.state.value)
        return time.monotonic()

    def report_end(self, status: ProgressStatus, token: Any) -> None:
        elapsed_ms = (time.monotonic() - token) * 1000 if token is not None else 0.0
        logger.debug(
            "End %s success=%s (%.1f ms)", status.state.value, status.success, elapsed_ms,
        )


class MetricsProgressReporter:
    """Thread-safe per-stage counters and timings.

    One instance may observe many pipelines running in separate workers.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started: dict[ProgressState, int] = {}
        self._succeeded: dict[ProgressState, int] = {}
        self._failed: dict[ProgressState, int] = {}
        self._durations: dict[ProgressState, list[float]] = {}
        self._start_time = time.monotonic()

    def report_start(self, status: ProgressStatus) -> Any:
        with self._lock:
            self._started[status.state] = self._started.get(status.state, 0) + 1
        return time.monotonic()

    def report_end(self, status: ProgressStatus, token: Any) -> None:
        duration_ms = (time.monotonic() - token) * 1000 if token is not None else 0.0
        with self._lock:
            counts = self._succeeded if status.success else self._failed
            counts[status.state] = counts.get(status.state, 0) + 1
            self._durations.setdefault(status.state, []).append(duration_ms)

    def snapshot(self) -> dict:
        """Return a point-in-time copy of all counters, keyed by stage name."""
        with self._lock:
            stages = {}
            for state in set(self._started) | set(self._durations):
                durations = self._durations.get(state, [])
                stages[state.value] = {
                    "started": self._started.get(state, 0),
                    "succeeded": self._succeeded.get(state, 0),
                    "failed": self._failed.get(state, 0),
                    "avg_duration_ms": sum(durations) / len(durations) if durations else 0.0,
                    "max_duration_ms": max(durations) if durations else 0.0,
                }
            return {
                "stages": stages,
                "uptime_seconds": time.monotonic() - self._start_time,
            }


class GuardedProgressReporter:
    """Wraps a user reporter so that its failures never alter control flow."""

    def __init__(self, reporter: ProgressReporter):
        self._reporter = reporter

    def report_start(self, status: ProgressStatus) -> Any:
        try:
            return self._reporter.report_start(status)
        except Exception:
            logger.exception("Progress reporter failed on start of %s", status.state.value)
            return None

    def report_end(self, status: ProgressStatus, token: Any) -> None:
        try:
            self._reporter.report_end(status, token)
        except Exception:
            logger.exception("Progress reporter failed on end of %s", status.state.value)
