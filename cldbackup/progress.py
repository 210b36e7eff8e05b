"""Process-wide download progress shared between the backup run and pollers."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum


class ProgressStatus(str, Enum):
    """Textual status tag exposed to observers."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class ProgressSnapshot:
    """Immutable copy of the tracker state."""

    total: int
    downloaded: int
    current_file: str
    status: ProgressStatus

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.downloaded / self.total * 100


class ProgressTracker:
    """
    Lock-guarded progress counter.

    Methods hold the lock only for attribute assignments, never across I/O
    or an await. Pollers may call `snapshot` from any thread.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total = 0
        self._downloaded = 0
        self._current_file = ""
        self._status = ProgressStatus.IDLE

    def reset(self, total: int) -> None:
        with self._lock:
            self._total = max(int(total), 0)
            self._downloaded = 0
            self._current_file = ""
            self._status = ProgressStatus.STARTING

    def set_status(self, status: ProgressStatus) -> None:
        with self._lock:
            self._status = ProgressStatus(status)

    def record_completion(self, item_name: str) -> None:
        """Count one finished attempt, successful or not."""
        with self._lock:
            self._downloaded += 1
            self._current_file = item_name

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return ProgressSnapshot(
                total=self._total,
                downloaded=self._downloaded,
                current_file=self._current_file,
                status=self._status,
            )


tracker = ProgressTracker()


def get_download_progress() -> ProgressSnapshot:
    """Poll the process-wide tracker."""
    return tracker.snapshot()
