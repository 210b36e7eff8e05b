"""Public photo index store facade built from smaller store utility modules."""

from __future__ import annotations

from cldbackup.store_utils.models import (
    BackupSession,
    DownloadState,
    DownloadStateSummary,
    DownloadStatistics,
    IndexedPhoto,
    PhotoQuery,
    SessionKind,
    SessionStatus,
)
from cldbackup.store_utils.operations import (
    abandon_interrupted_sessions,
    aggregate_statistics,
    attach_context,
    attach_tags,
    compact,
    create_session,
    export_to_json,
    find_interrupted_sessions,
    get_photo,
    get_photos,
    get_session,
    has_completed_session,
    list_photos,
    list_sessions,
    refresh_download_state,
    search_photos,
    seal_session,
    update_download_outcome,
    update_session,
    upsert_photo,
    upsert_photo_batch,
)

__all__ = [
    "BackupSession",
    "DownloadState",
    "DownloadStateSummary",
    "DownloadStatistics",
    "IndexedPhoto",
    "PhotoQuery",
    "SessionKind",
    "SessionStatus",
    "abandon_interrupted_sessions",
    "aggregate_statistics",
    "attach_context",
    "attach_tags",
    "compact",
    "create_session",
    "export_to_json",
    "find_interrupted_sessions",
    "get_photo",
    "get_photos",
    "get_session",
    "has_completed_session",
    "list_photos",
    "list_sessions",
    "refresh_download_state",
    "search_photos",
    "seal_session",
    "update_download_outcome",
    "update_session",
    "upsert_photo",
    "upsert_photo_batch",
]
