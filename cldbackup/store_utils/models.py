"""Data models for the photo index SQLite store."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class DownloadState(str, Enum):
    """Three-valued download state of one indexed photo."""

    PENDING = "pending"
    DOWNLOADED = "downloaded"
    FAILED = "failed"


class SessionKind(str, Enum):
    """Kind of backup session."""

    FULL = "full"
    INCREMENTAL = "incremental"
    SCAN = "scan"


class SessionStatus(str, Enum):
    """Lifecycle status stored on a session row."""

    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class IndexedPhoto:
    """One photo row, mirroring the remote asset plus local-only fields."""

    id: int
    public_id: str
    format: str
    version: int
    resource_type: str
    resource_kind: str
    created_at: str
    bytes: int
    width: int | None
    height: int | None
    secure_url: str
    local_path: str | None
    backup_date: str | None
    checksum: str | None
    state: DownloadState
    failure_reason: str | None
    first_seen_at: str = ""
    updated_at: str = ""
    tags: tuple[str, ...] = ()
    context: dict[str, str] = field(default_factory=dict)

    @property
    def is_downloaded(self) -> bool:
        return self.state is DownloadState.DOWNLOADED

    @property
    def download_failed(self) -> bool:
        return self.state is DownloadState.FAILED


@dataclass(frozen=True)
class BackupSession:
    """One orchestration run."""

    id: int
    session_type: SessionKind
    started_at: str
    completed_at: str | None
    cloud_name: str
    status: SessionStatus
    total_photos: int
    successful_photos: int
    failed_photos: int
    total_bytes: int
    notes: str | None
    last_activity_at: str | None = None

    @property
    def is_interrupted(self) -> bool:
        return self.completed_at is None


@dataclass(frozen=True)
class DownloadStatistics:
    """Aggregate counters read from the `download_statistics` view."""

    total_photos: int
    downloaded_photos: int
    failed_photos: int
    total_bytes: int
    downloaded_bytes: int
    download_percentage: float


@dataclass(frozen=True)
class DownloadStateSummary:
    """Summary for local file presence refresh."""

    checked_items: int
    downloaded_items: int
    missing_items: int


@dataclass(frozen=True)
class PhotoQuery:
    """Filters for `search_photos`; unset fields do not filter."""

    tags: tuple[str, ...] = ()
    format: str | None = None
    date_from: str | None = None
    date_to: str | None = None
    min_bytes: int | None = None
    max_bytes: int | None = None
    state: DownloadState | None = None
    limit: int | None = None
