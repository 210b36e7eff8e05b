"""Low-level DB and row helpers for the photo index SQLite store."""

from __future__ import annotations

import functools
import os
import sqlite3
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, TypeVar

from cldbackup.errors import StoreError

from .models import (
    BackupSession,
    DownloadState,
    IndexedPhoto,
    SessionKind,
    SessionStatus,
)

DEFAULT_DB_NAME = "photos.db"
DEFAULT_PARENT_FOLDER = "downloads"

_F = TypeVar("_F", bound=Callable[..., Any])


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _default_db_path() -> str:
    env_path = os.environ.get("CLDBACKUP_DB_PATH", "").strip()
    if env_path:
        return os.path.abspath(env_path)
    return os.path.join(os.getcwd(), DEFAULT_PARENT_FOLDER, DEFAULT_DB_NAME)


def _resolve_db_path(db_path: str | None) -> str:
    resolved = os.path.abspath(db_path) if db_path else _default_db_path()
    db_dir = os.path.dirname(resolved)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    return resolved


def _connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS photos (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            public_id TEXT NOT NULL UNIQUE,
            format TEXT,
            version INTEGER NOT NULL DEFAULT 0,
            resource_type TEXT,
            resource_kind TEXT,
            created_at TEXT,
            bytes INTEGER NOT NULL DEFAULT 0,
            width INTEGER,
            height INTEGER,
            secure_url TEXT,
            local_path TEXT,
            backup_date TEXT,
            checksum TEXT,
            is_downloaded INTEGER NOT NULL DEFAULT 0,
            download_failed INTEGER NOT NULL DEFAULT 0,
            failure_reason TEXT,
            first_seen_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS tags (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE
        );

        CREATE TABLE IF NOT EXISTS photo_tags (
            photo_id INTEGER NOT NULL,
            tag_id INTEGER NOT NULL,
            PRIMARY KEY(photo_id, tag_id),
            FOREIGN KEY(photo_id) REFERENCES photos(id) ON DELETE CASCADE,
            FOREIGN KEY(tag_id) REFERENCES tags(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS photo_context (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            photo_id INTEGER NOT NULL,
            key TEXT NOT NULL,
            value TEXT,
            UNIQUE(photo_id, key),
            FOREIGN KEY(photo_id) REFERENCES photos(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS backup_sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_type TEXT NOT NULL,
            started_at TEXT NOT NULL,
            completed_at TEXT,
            cloud_name TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'running',
            total_photos INTEGER NOT NULL DEFAULT 0,
            successful_photos INTEGER NOT NULL DEFAULT 0,
            failed_photos INTEGER NOT NULL DEFAULT 0,
            total_bytes INTEGER NOT NULL DEFAULT 0,
            last_activity_at TEXT,
            notes TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_photos_state
            ON photos(is_downloaded, download_failed);
        CREATE INDEX IF NOT EXISTS idx_photos_created_at
            ON photos(created_at);
        CREATE INDEX IF NOT EXISTS idx_photo_tags_tag_id
            ON photo_tags(tag_id);
        CREATE INDEX IF NOT EXISTS idx_backup_sessions_cloud
            ON backup_sessions(cloud_name, started_at);

        CREATE VIEW IF NOT EXISTS download_statistics AS
        SELECT
            COUNT(*) AS total_photos,
            COALESCE(SUM(is_downloaded), 0) AS downloaded_photos,
            COALESCE(SUM(download_failed), 0) AS failed_photos,
            COALESCE(SUM(bytes), 0) AS total_bytes,
            COALESCE(SUM(CASE WHEN is_downloaded = 1 THEN bytes ELSE 0 END), 0)
                AS downloaded_bytes,
            CASE
                WHEN COALESCE(SUM(is_downloaded), 0)
                     + COALESCE(SUM(download_failed), 0) > 0
                THEN SUM(is_downloaded) * 100.0
                     / (SUM(is_downloaded) + SUM(download_failed))
                ELSE 0.0
            END AS download_percentage
        FROM photos;
        """
    )


def _open_db(db_path: str | None = None) -> tuple[sqlite3.Connection, str]:
    resolved = _resolve_db_path(db_path)
    conn = _connect(resolved)
    try:
        _ensure_schema(conn)
    except sqlite3.Error:
        conn.close()
        raise
    return conn, resolved


def _translate_errors(func: _F) -> _F:
    """Re-raise sqlite and OS failures from store operations as `StoreError`."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except sqlite3.Error as error:
            raise StoreError(f"{func.__name__} failed: {error}") from error
        except OSError as error:
            raise StoreError(f"{func.__name__} failed: {error}") from error

    return wrapper  # type: ignore[return-value]


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _coerce_int(value: Any) -> int | None:
    try:
        if value is None or value == "":
            return None
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_mapping(raw: Any) -> Mapping[str, Any]:
    if isinstance(raw, Mapping):
        return raw
    if is_dataclass(raw) and not isinstance(raw, type):
        return asdict(raw)
    return vars(raw)


def _normalize_asset(raw: Any) -> dict[str, Any]:
    """Coerce a remote asset (dataclass or mapping) into a photos row payload."""
    data = _as_mapping(raw)
    return {
        "public_id": _coerce_text(data.get("public_id")),
        "format": _coerce_text(data.get("format")),
        "version": _coerce_int(data.get("version")) or 0,
        "resource_type": _coerce_text(data.get("resource_type")),
        "resource_kind": _coerce_text(
            data.get("resource_kind", data.get("type"))
        ),
        "created_at": _coerce_text(data.get("created_at")),
        "bytes": _coerce_int(data.get("bytes")) or 0,
        "width": _coerce_int(data.get("width")),
        "height": _coerce_int(data.get("height")),
        "secure_url": _coerce_text(data.get("secure_url")),
    }


def _state_from_row(row: sqlite3.Row) -> DownloadState:
    if int(row["is_downloaded"]):
        return DownloadState.DOWNLOADED
    if int(row["download_failed"]):
        return DownloadState.FAILED
    return DownloadState.PENDING


def _state_flags(state: DownloadState) -> tuple[int, int]:
    return (
        1 if state is DownloadState.DOWNLOADED else 0,
        1 if state is DownloadState.FAILED else 0,
    )


def _to_indexed_photo(
    row: sqlite3.Row,
    tags: tuple[str, ...] = (),
    context: Mapping[str, str] | None = None,
) -> IndexedPhoto:
    return IndexedPhoto(
        id=int(row["id"]),
        public_id=str(row["public_id"]),
        format=_coerce_text(row["format"]),
        version=int(row["version"] or 0),
        resource_type=_coerce_text(row["resource_type"]),
        resource_kind=_coerce_text(row["resource_kind"]),
        created_at=_coerce_text(row["created_at"]),
        bytes=int(row["bytes"] or 0),
        width=_coerce_int(row["width"]),
        height=_coerce_int(row["height"]),
        secure_url=_coerce_text(row["secure_url"]),
        local_path=row["local_path"] or None,
        backup_date=row["backup_date"] or None,
        checksum=row["checksum"] or None,
        state=_state_from_row(row),
        failure_reason=row["failure_reason"] or None,
        first_seen_at=_coerce_text(row["first_seen_at"]),
        updated_at=_coerce_text(row["updated_at"]),
        tags=tags,
        context=dict(context or {}),
    )


def _to_backup_session(row: sqlite3.Row) -> BackupSession:
    return BackupSession(
        id=int(row["id"]),
        session_type=SessionKind(str(row["session_type"])),
        started_at=str(row["started_at"]),
        completed_at=row["completed_at"] or None,
        cloud_name=str(row["cloud_name"]),
        status=SessionStatus(str(row["status"] or SessionStatus.RUNNING.value)),
        total_photos=int(row["total_photos"]),
        successful_photos=int(row["successful_photos"]),
        failed_photos=int(row["failed_photos"]),
        total_bytes=int(row["total_bytes"]),
        notes=row["notes"],
        last_activity_at=row["last_activity_at"] or None,
    )


def _get_photo_id(conn: sqlite3.Connection, public_id: str) -> int | None:
    row = conn.execute(
        "SELECT id FROM photos WHERE public_id = ? LIMIT 1", (public_id,)
    ).fetchone()
    if not row:
        return None
    return int(row["id"])


def _load_tags(
    conn: sqlite3.Connection, photo_ids: list[int]
) -> dict[int, tuple[str, ...]]:
    if not photo_ids:
        return {}
    placeholders = ",".join(["?"] * len(photo_ids))
    rows = conn.execute(
        f"""
        SELECT pt.photo_id, t.name
        FROM photo_tags pt
        JOIN tags t ON t.id = pt.tag_id
        WHERE pt.photo_id IN ({placeholders})
        ORDER BY t.name ASC
        """,
        tuple(photo_ids),
    ).fetchall()
    out: dict[int, list[str]] = {}
    for row in rows:
        out.setdefault(int(row["photo_id"]), []).append(str(row["name"]))
    return {photo_id: tuple(names) for photo_id, names in out.items()}


def _load_context(
    conn: sqlite3.Connection, photo_ids: list[int]
) -> dict[int, dict[str, str]]:
    if not photo_ids:
        return {}
    placeholders = ",".join(["?"] * len(photo_ids))
    rows = conn.execute(
        f"""
        SELECT photo_id, key, value
        FROM photo_context
        WHERE photo_id IN ({placeholders})
        ORDER BY id ASC
        """,
        tuple(photo_ids),
    ).fetchall()
    out: dict[int, dict[str, str]] = {}
    for row in rows:
        out.setdefault(int(row["photo_id"]), {})[str(row["key"])] = _coerce_text(
            row["value"]
        )
    return out


def _rows_to_photos(
    conn: sqlite3.Connection, rows: list[sqlite3.Row]
) -> list[IndexedPhoto]:
    ids = [int(row["id"]) for row in rows]
    tags = _load_tags(conn, ids)
    context = _load_context(conn, ids)
    return [
        _to_indexed_photo(
            row, tags.get(int(row["id"]), ()), context.get(int(row["id"]))
        )
        for row in rows
    ]
