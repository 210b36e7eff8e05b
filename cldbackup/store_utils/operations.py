"""High-level photo index store operations."""

from __future__ import annotations

import json
import os
from dataclasses import asdict
from typing import Any, Iterable, Mapping, Sequence

from cldbackup.errors import StoreError

from .db import (
    _coerce_text,
    _get_photo_id,
    _normalize_asset,
    _open_db,
    _rows_to_photos,
    _state_flags,
    _to_backup_session,
    _translate_errors,
    _utc_now,
)
from .models import (
    BackupSession,
    DownloadState,
    DownloadStateSummary,
    DownloadStatistics,
    IndexedPhoto,
    PhotoQuery,
    SessionKind,
    SessionStatus,
)

# Stay well below SQLITE_MAX_VARIABLE_NUMBER on older builds.
_IN_CHUNK = 500

_UPSERT_PHOTO_SQL = """
    INSERT INTO photos (
        public_id, format, version, resource_type, resource_kind, created_at,
        bytes, width, height, secure_url, is_downloaded, download_failed,
        first_seen_at, updated_at
    )
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 0, ?, ?)
    ON CONFLICT(public_id) DO UPDATE SET
        format = excluded.format,
        resource_type = excluded.resource_type,
        resource_kind = excluded.resource_kind,
        created_at = excluded.created_at,
        bytes = excluded.bytes,
        width = excluded.width,
        height = excluded.height,
        secure_url = excluded.secure_url,
        is_downloaded = CASE
            WHEN excluded.version > photos.version THEN 0
            ELSE photos.is_downloaded
        END,
        download_failed = CASE
            WHEN excluded.version > photos.version THEN 0
            ELSE photos.download_failed
        END,
        failure_reason = CASE
            WHEN excluded.version > photos.version THEN NULL
            ELSE photos.failure_reason
        END,
        version = MAX(photos.version, excluded.version),
        updated_at = excluded.updated_at
"""


def _upsert_params(item: Mapping[str, Any], now: str) -> tuple:
    return (
        item["public_id"],
        item["format"],
        item["version"],
        item["resource_type"],
        item["resource_kind"],
        item["created_at"],
        item["bytes"],
        item["width"],
        item["height"],
        item["secure_url"],
        now,
        now,
    )


def _chunks(values: Sequence[Any], size: int = _IN_CHUNK) -> Iterable[Sequence[Any]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


@_translate_errors
def upsert_photo(asset: Any, db_path: str | None = None) -> int:
    """
    Insert or refresh one photo row and return its row id.

    A new row starts as pending. An existing row keeps its download state
    unless the incoming version is newer, in which case it is reset to
    pending so the asset is fetched again.
    """
    item = _normalize_asset(asset)
    if not item["public_id"]:
        raise StoreError("Cannot upsert a photo without public_id")

    now = _utc_now()
    conn, _ = _open_db(db_path)
    try:
        with conn:
            conn.execute(_UPSERT_PHOTO_SQL, _upsert_params(item, now))
            photo_id = _get_photo_id(conn, item["public_id"])
            if photo_id is None:
                raise StoreError(f"Failed to upsert photo row for {item['public_id']}")
            return photo_id
    finally:
        conn.close()


@_translate_errors
def upsert_photo_batch(assets: Sequence[Any], db_path: str | None = None) -> list[int]:
    """
    Upsert many photos in a single transaction.

    Args:
        assets (Sequence[Any]): Remote assets (dataclasses or mappings).
        db_path (str | None): Optional path override for SQLite DB.

    Returns:
        list[int]: Row ids, one per distinct public_id, in first-seen order.
    """
    deduped: dict[str, dict[str, Any]] = {}
    for raw in assets:
        normalized = _normalize_asset(raw)
        key = normalized["public_id"]
        if key:
            deduped[key] = normalized
    if not deduped:
        return []

    now = _utc_now()
    conn, _ = _open_db(db_path)
    try:
        with conn:
            conn.executemany(
                _UPSERT_PHOTO_SQL,
                [_upsert_params(item, now) for item in deduped.values()],
            )
            keys = list(deduped)
            id_map: dict[str, int] = {}
            for chunk in _chunks(keys):
                placeholders = ",".join(["?"] * len(chunk))
                rows = conn.execute(
                    f"SELECT id, public_id FROM photos WHERE public_id IN ({placeholders})",
                    tuple(chunk),
                ).fetchall()
                id_map.update({str(row["public_id"]): int(row["id"]) for row in rows})
        return [id_map[key] for key in keys if key in id_map]
    finally:
        conn.close()


@_translate_errors
def update_download_outcome(
    public_id: str,
    state: DownloadState,
    local_path: str | None = None,
    reason: str | None = None,
    checksum: str | None = None,
    db_path: str | None = None,
) -> bool:
    """Record the result of one download attempt; returns False for unknown ids."""
    state = DownloadState(state)
    if state is DownloadState.DOWNLOADED and not local_path:
        raise StoreError(f"Downloaded state for {public_id} requires a local path")

    now = _utc_now()
    is_downloaded, download_failed = _state_flags(state)
    conn, _ = _open_db(db_path)
    try:
        with conn:
            if state is DownloadState.DOWNLOADED:
                cur = conn.execute(
                    """
                    UPDATE photos
                    SET is_downloaded = 1, download_failed = 0, failure_reason = NULL,
                        local_path = ?, checksum = COALESCE(?, checksum),
                        backup_date = ?, updated_at = ?
                    WHERE public_id = ?
                    """,
                    (os.path.abspath(local_path), checksum, now, now, public_id),
                )
            else:
                cur = conn.execute(
                    """
                    UPDATE photos
                    SET is_downloaded = ?, download_failed = ?, failure_reason = ?,
                        local_path = COALESCE(?, local_path), updated_at = ?
                    WHERE public_id = ?
                    """,
                    (is_downloaded, download_failed, reason, local_path, now, public_id),
                )
            return cur.rowcount > 0
    finally:
        conn.close()


@_translate_errors
def attach_tags(photo_id: int, tags: Iterable[str], db_path: str | None = None) -> int:
    """
    Link tags to a photo; returns how many new links were created.

    Tag names are deduplicated in `tags` and each (photo, tag) pair is
    stored at most once, so repeated calls are harmless.
    """
    names = [name for name in dict.fromkeys(_coerce_text(t) for t in tags) if name]
    if not names:
        return 0

    conn, _ = _open_db(db_path)
    try:
        created = 0
        with conn:
            conn.executemany(
                "INSERT OR IGNORE INTO tags (name) VALUES (?)",
                [(name,) for name in names],
            )
            for name in names:
                cur = conn.execute(
                    """
                    INSERT OR IGNORE INTO photo_tags (photo_id, tag_id)
                    SELECT ?, id FROM tags WHERE name = ?
                    """,
                    (photo_id, name),
                )
                created += max(cur.rowcount, 0)
        return created
    finally:
        conn.close()


@_translate_errors
def attach_context(
    photo_id: int, context: Mapping[str, Any], db_path: str | None = None
) -> None:
    """Store key/value context for a photo; a repeated key overwrites its value."""
    pairs = [
        (photo_id, _coerce_text(key), _coerce_text(value))
        for key, value in (context or {}).items()
        if _coerce_text(key)
    ]
    if not pairs:
        return

    conn, _ = _open_db(db_path)
    try:
        with conn:
            conn.executemany(
                """
                INSERT INTO photo_context (photo_id, key, value)
                VALUES (?, ?, ?)
                ON CONFLICT(photo_id, key) DO UPDATE SET value = excluded.value
                """,
                pairs,
            )
    finally:
        conn.close()


@_translate_errors
def get_photo(public_id: str, db_path: str | None = None) -> IndexedPhoto | None:
    """Get one photo by its remote identifier."""
    conn, _ = _open_db(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM photos WHERE public_id = ? LIMIT 1", (public_id,)
        ).fetchone()
        if not row:
            return None
        return _rows_to_photos(conn, [row])[0]
    finally:
        conn.close()


@_translate_errors
def get_photos(
    public_ids: Sequence[str], db_path: str | None = None
) -> dict[str, IndexedPhoto]:
    """Batch lookup keyed by public_id; unknown ids are simply absent."""
    keys = [key for key in dict.fromkeys(public_ids) if key]
    if not keys:
        return {}

    conn, _ = _open_db(db_path)
    try:
        out: dict[str, IndexedPhoto] = {}
        for chunk in _chunks(keys):
            placeholders = ",".join(["?"] * len(chunk))
            rows = conn.execute(
                f"SELECT * FROM photos WHERE public_id IN ({placeholders})",
                tuple(chunk),
            ).fetchall()
            for photo in _rows_to_photos(conn, rows):
                out[photo.public_id] = photo
        return out
    finally:
        conn.close()


@_translate_errors
def list_photos(
    limit: int | None = None, offset: int = 0, db_path: str | None = None
) -> list[IndexedPhoto]:
    """List photos ordered by ID."""
    conn, _ = _open_db(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM photos ORDER BY id ASC LIMIT ? OFFSET ?",
            (-1 if limit is None else int(limit), max(int(offset), 0)),
        ).fetchall()
        return _rows_to_photos(conn, rows)
    finally:
        conn.close()


@_translate_errors
def search_photos(query: PhotoQuery, db_path: str | None = None) -> list[IndexedPhoto]:
    """Filter photos by tags (any of), format, creation date, size and state."""
    clauses: list[str] = []
    params: list[Any] = []

    tags = [name for name in (_coerce_text(t) for t in query.tags) if name]
    if tags:
        placeholders = ",".join(["?"] * len(tags))
        clauses.append(
            f"""
            p.id IN (
                SELECT pt.photo_id FROM photo_tags pt
                JOIN tags t ON t.id = pt.tag_id
                WHERE t.name IN ({placeholders})
            )
            """
        )
        params.extend(tags)
    if query.format:
        clauses.append("LOWER(p.format) = LOWER(?)")
        params.append(query.format)
    if query.date_from:
        clauses.append("p.created_at >= ?")
        params.append(query.date_from)
    if query.date_to:
        clauses.append("p.created_at <= ?")
        params.append(query.date_to)
    if query.min_bytes is not None:
        clauses.append("p.bytes >= ?")
        params.append(int(query.min_bytes))
    if query.max_bytes is not None:
        clauses.append("p.bytes <= ?")
        params.append(int(query.max_bytes))
    if query.state is not None:
        is_downloaded, download_failed = _state_flags(DownloadState(query.state))
        clauses.append("p.is_downloaded = ? AND p.download_failed = ?")
        params.extend([is_downloaded, download_failed])

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(-1 if query.limit is None else int(query.limit))

    conn, _ = _open_db(db_path)
    try:
        rows = conn.execute(
            f"SELECT p.* FROM photos p {where} ORDER BY p.created_at ASC, p.id ASC LIMIT ?",
            tuple(params),
        ).fetchall()
        return _rows_to_photos(conn, rows)
    finally:
        conn.close()


@_translate_errors
def create_session(
    kind: SessionKind,
    cloud_name: str,
    notes: str | None = None,
    db_path: str | None = None,
) -> int:
    """Open a new running session row and return its ID."""
    now = _utc_now()
    conn, _ = _open_db(db_path)
    try:
        with conn:
            cur = conn.execute(
                """
                INSERT INTO backup_sessions (
                    session_type, started_at, completed_at, cloud_name, status,
                    total_photos, successful_photos, failed_photos, total_bytes,
                    last_activity_at, notes
                )
                VALUES (?, ?, NULL, ?, ?, 0, 0, 0, 0, ?, ?)
                """,
                (
                    SessionKind(kind).value,
                    now,
                    cloud_name,
                    SessionStatus.RUNNING.value,
                    now,
                    notes,
                ),
            )
            return int(cur.lastrowid)
    finally:
        conn.close()


def _session_assignments(
    totals: Mapping[str, int | None], notes: str | None
) -> tuple[list[str], list[Any]]:
    sets: list[str] = []
    params: list[Any] = []
    for column in ("total_photos", "successful_photos", "failed_photos", "total_bytes"):
        value = totals.get(column)
        if value is not None:
            sets.append(f"{column} = ?")
            params.append(int(value))
    if notes is not None:
        sets.append("notes = ?")
        params.append(notes)
    return sets, params


@_translate_errors
def update_session(
    session_id: int,
    total_photos: int | None = None,
    successful_photos: int | None = None,
    failed_photos: int | None = None,
    total_bytes: int | None = None,
    notes: str | None = None,
    db_path: str | None = None,
) -> bool:
    """Write running totals for a session still in progress."""
    sets, params = _session_assignments(
        {
            "total_photos": total_photos,
            "successful_photos": successful_photos,
            "failed_photos": failed_photos,
            "total_bytes": total_bytes,
        },
        notes,
    )
    if not sets:
        return False
    sets.append("last_activity_at = ?")
    params.append(_utc_now())

    conn, _ = _open_db(db_path)
    try:
        with conn:
            cur = conn.execute(
                f"UPDATE backup_sessions SET {', '.join(sets)} WHERE id = ?",
                (*params, session_id),
            )
            return cur.rowcount > 0
    finally:
        conn.close()


@_translate_errors
def seal_session(
    session_id: int,
    status: SessionStatus = SessionStatus.DONE,
    total_photos: int | None = None,
    successful_photos: int | None = None,
    failed_photos: int | None = None,
    total_bytes: int | None = None,
    notes: str | None = None,
    db_path: str | None = None,
) -> bool:
    """Set completion time, final status and final totals of a session."""
    sets, params = _session_assignments(
        {
            "total_photos": total_photos,
            "successful_photos": successful_photos,
            "failed_photos": failed_photos,
            "total_bytes": total_bytes,
        },
        notes,
    )
    now = _utc_now()
    sets = ["completed_at = ?", "status = ?", "last_activity_at = ?", *sets]
    params = [now, SessionStatus(status).value, now, *params]

    conn, _ = _open_db(db_path)
    try:
        with conn:
            cur = conn.execute(
                f"UPDATE backup_sessions SET {', '.join(sets)} WHERE id = ?",
                (*params, session_id),
            )
            return cur.rowcount > 0
    finally:
        conn.close()


@_translate_errors
def get_session(session_id: int, db_path: str | None = None) -> BackupSession | None:
    """Get one session by numeric ID."""
    conn, _ = _open_db(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM backup_sessions WHERE id = ? LIMIT 1", (session_id,)
        ).fetchone()
        if not row:
            return None
        return _to_backup_session(row)
    finally:
        conn.close()


@_translate_errors
def list_sessions(
    cloud_name: str | None = None,
    limit: int | None = None,
    db_path: str | None = None,
) -> list[BackupSession]:
    """List sessions newest first."""
    where = "WHERE cloud_name = ?" if cloud_name else ""
    params: list[Any] = [cloud_name] if cloud_name else []
    params.append(-1 if limit is None else int(limit))

    conn, _ = _open_db(db_path)
    try:
        rows = conn.execute(
            f"""
            SELECT * FROM backup_sessions
            {where}
            ORDER BY started_at DESC, id DESC
            LIMIT ?
            """,
            tuple(params),
        ).fetchall()
        return [_to_backup_session(row) for row in rows]
    finally:
        conn.close()


@_translate_errors
def find_interrupted_sessions(
    cloud_name: str | None = None, db_path: str | None = None
) -> list[BackupSession]:
    """Sessions that never got a completion time, newest first."""
    where = "AND cloud_name = ?" if cloud_name else ""
    params = (cloud_name,) if cloud_name else ()

    conn, _ = _open_db(db_path)
    try:
        rows = conn.execute(
            f"""
            SELECT * FROM backup_sessions
            WHERE completed_at IS NULL {where}
            ORDER BY started_at DESC, id DESC
            """,
            params,
        ).fetchall()
        return [_to_backup_session(row) for row in rows]
    finally:
        conn.close()


@_translate_errors
def abandon_interrupted_sessions(cloud_name: str, db_path: str | None = None) -> int:
    """
    Seal stale running sessions of `cloud_name` as failed; returns the count.

    `completed_at` is set to the session's last recorded activity, the note
    says when it was closed.
    """
    note = f"interrupted (closed {_utc_now()})"
    conn, _ = _open_db(db_path)
    try:
        with conn:
            cur = conn.execute(
                """
                UPDATE backup_sessions
                SET completed_at = COALESCE(last_activity_at, started_at),
                    status = ?,
                    notes = CASE
                        WHEN notes IS NULL OR notes = '' THEN ?
                        ELSE notes || '; ' || ?
                    END
                WHERE completed_at IS NULL AND cloud_name = ?
                """,
                (SessionStatus.FAILED.value, note, note, cloud_name),
            )
            return max(cur.rowcount, 0)
    finally:
        conn.close()


@_translate_errors
def has_completed_session(cloud_name: str, db_path: str | None = None) -> bool:
    """True when a download run for `cloud_name` has finished before."""
    conn, _ = _open_db(db_path)
    try:
        row = conn.execute(
            """
            SELECT 1 FROM backup_sessions
            WHERE cloud_name = ? AND status = ? AND session_type IN (?, ?)
            LIMIT 1
            """,
            (
                cloud_name,
                SessionStatus.DONE.value,
                SessionKind.FULL.value,
                SessionKind.INCREMENTAL.value,
            ),
        ).fetchone()
        return row is not None
    finally:
        conn.close()


@_translate_errors
def aggregate_statistics(db_path: str | None = None) -> DownloadStatistics:
    """Read the `download_statistics` view."""
    conn, _ = _open_db(db_path)
    try:
        row = conn.execute("SELECT * FROM download_statistics").fetchone()
        return DownloadStatistics(
            total_photos=int(row["total_photos"] or 0),
            downloaded_photos=int(row["downloaded_photos"] or 0),
            failed_photos=int(row["failed_photos"] or 0),
            total_bytes=int(row["total_bytes"] or 0),
            downloaded_bytes=int(row["downloaded_bytes"] or 0),
            download_percentage=float(row["download_percentage"] or 0.0),
        )
    finally:
        conn.close()


def _local_file_ok(path: str | None) -> bool:
    if not path:
        return False
    try:
        return os.path.getsize(path) > 0
    except OSError:
        return False


@_translate_errors
def refresh_download_state(db_path: str | None = None) -> DownloadStateSummary:
    """
    Re-check every downloaded row against the filesystem.

    Rows whose local file is gone or empty are put back to pending so the
    next run fetches them again.
    """
    conn, _ = _open_db(db_path)
    try:
        rows = conn.execute(
            "SELECT id, local_path FROM photos WHERE is_downloaded = 1"
        ).fetchall()

        now = _utc_now()
        missing = 0
        with conn:
            for row in rows:
                if _local_file_ok(row["local_path"]):
                    continue
                missing += 1
                conn.execute(
                    """
                    UPDATE photos
                    SET is_downloaded = 0, download_failed = 0,
                        failure_reason = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    ("local file missing or empty", now, int(row["id"])),
                )

        return DownloadStateSummary(
            checked_items=len(rows),
            downloaded_items=len(rows) - missing,
            missing_items=missing,
        )
    finally:
        conn.close()


def _photo_to_dict(photo: IndexedPhoto) -> dict[str, Any]:
    data = asdict(photo)
    data["state"] = photo.state.value
    data["tags"] = list(photo.tags)
    return data


def _session_to_dict(session: BackupSession) -> dict[str, Any]:
    data = asdict(session)
    data["session_type"] = session.session_type.value
    data["status"] = session.status.value
    return data


@_translate_errors
def export_to_json(output_path: str, db_path: str | None = None) -> int:
    """Dump every photo (with tags and context) and every session to JSON."""
    photos = list_photos(db_path=db_path)
    sessions = list_sessions(db_path=db_path)
    payload = {
        "exported_at": _utc_now(),
        "photos": [_photo_to_dict(photo) for photo in photos],
        "sessions": [_session_to_dict(session) for session in sessions],
    }

    out_dir = os.path.dirname(os.path.abspath(output_path))
    os.makedirs(out_dir, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, ensure_ascii=False)
    return len(photos)


@_translate_errors
def compact(db_path: str | None = None) -> None:
    """Run VACUUM; only safe while no other write is in flight."""
    conn, _ = _open_db(db_path)
    try:
        conn.execute("VACUUM")
    finally:
        conn.close()
