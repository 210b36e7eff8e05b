import json
import sqlite3

import pytest

from cldbackup.errors import StoreError
from cldbackup.store import (
    DownloadState,
    PhotoQuery,
    SessionKind,
    SessionStatus,
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

from helpers import make_asset


def _downloaded(public_id, tmp_path, db_path, content=b"data"):
    target = tmp_path / f"{public_id}.jpg"
    target.write_bytes(content)
    update_download_outcome(
        public_id,
        DownloadState.DOWNLOADED,
        local_path=str(target),
        checksum="abc",
        db_path=db_path,
    )
    return target


def test_upsert_photo_inserts_pending_row(db_path):
    photo_id = upsert_photo(make_asset("a1", size=2048), db_path=db_path)

    photo = get_photo("a1", db_path=db_path)
    assert photo.id == photo_id
    assert photo.state is DownloadState.PENDING
    assert photo.bytes == 2048
    assert photo.resource_kind == "upload"
    assert photo.local_path is None
    assert get_photo("missing", db_path=db_path) is None


def test_upsert_accepts_plain_mappings(db_path):
    upsert_photo(
        {"public_id": "m1", "format": "png", "version": "3", "type": "private", "bytes": 5},
        db_path=db_path,
    )
    photo = get_photo("m1", db_path=db_path)
    assert photo.version == 3
    assert photo.resource_kind == "private"


def test_upsert_without_public_id_is_rejected(db_path):
    with pytest.raises(StoreError):
        upsert_photo({"public_id": "  "}, db_path=db_path)


def test_same_version_upsert_keeps_download_state(tmp_path, db_path):
    upsert_photo(make_asset("a1"), db_path=db_path)
    _downloaded("a1", tmp_path, db_path)

    upsert_photo(make_asset("a1", version=1, size=999), db_path=db_path)

    photo = get_photo("a1", db_path=db_path)
    assert photo.state is DownloadState.DOWNLOADED
    assert photo.bytes == 999


def test_newer_version_resets_row_to_pending(tmp_path, db_path):
    upsert_photo(make_asset("a1", version=1), db_path=db_path)
    _downloaded("a1", tmp_path, db_path)

    upsert_photo(make_asset("a1", version=2), db_path=db_path)

    photo = get_photo("a1", db_path=db_path)
    assert photo.version == 2
    assert photo.state is DownloadState.PENDING


def test_older_version_does_not_roll_back_stamp(db_path):
    upsert_photo(make_asset("a1", version=5), db_path=db_path)
    upsert_photo(make_asset("a1", version=3), db_path=db_path)
    assert get_photo("a1", db_path=db_path).version == 5


def test_batch_upsert_collapses_duplicates(db_path):
    ids = upsert_photo_batch(
        [make_asset("a1"), make_asset("a2"), make_asset("a1", version=2)],
        db_path=db_path,
    )

    assert len(ids) == 2
    assert len(set(ids)) == 2
    photos = list_photos(db_path=db_path)
    assert [p.public_id for p in photos] == ["a1", "a2"]
    assert photos[0].version == 2

    assert upsert_photo_batch([make_asset("a1")], db_path=db_path) == [ids[0]]
    assert upsert_photo_batch([], db_path=db_path) == []


def test_update_download_outcome_states(tmp_path, db_path):
    upsert_photo_batch([make_asset("a1"), make_asset("a2")], db_path=db_path)

    target = _downloaded("a1", tmp_path, db_path)
    assert update_download_outcome(
        "a2", DownloadState.FAILED, reason="HTTP 404", db_path=db_path
    )

    ok = get_photo("a1", db_path=db_path)
    assert ok.state is DownloadState.DOWNLOADED
    assert ok.local_path == str(target)
    assert ok.checksum == "abc"
    assert ok.backup_date

    bad = get_photo("a2", db_path=db_path)
    assert bad.state is DownloadState.FAILED
    assert bad.failure_reason == "HTTP 404"

    assert update_download_outcome("a2", DownloadState.PENDING, db_path=db_path)
    assert get_photo("a2", db_path=db_path).state is DownloadState.PENDING

    assert not update_download_outcome("nope", DownloadState.FAILED, db_path=db_path)


def test_downloaded_state_requires_path(db_path):
    upsert_photo(make_asset("a1"), db_path=db_path)
    with pytest.raises(StoreError):
        update_download_outcome("a1", DownloadState.DOWNLOADED, db_path=db_path)


def test_attach_tags_is_idempotent(db_path):
    photo_id = upsert_photo(make_asset("a1"), db_path=db_path)
    other_id = upsert_photo(make_asset("a2"), db_path=db_path)

    assert attach_tags(photo_id, ["beach", "summer", "beach", " "], db_path=db_path) == 2
    assert attach_tags(photo_id, ["beach", "summer"], db_path=db_path) == 0
    assert attach_tags(other_id, ["beach"], db_path=db_path) == 1

    assert get_photo("a1", db_path=db_path).tags == ("beach", "summer")
    assert get_photo("a2", db_path=db_path).tags == ("beach",)


def test_attach_context_overwrites_per_key(db_path):
    photo_id = upsert_photo(make_asset("a1"), db_path=db_path)

    attach_context(photo_id, {"alt": "old", "caption": "sunset"}, db_path=db_path)
    attach_context(photo_id, {"alt": "new"}, db_path=db_path)

    assert get_photo("a1", db_path=db_path).context == {"alt": "new", "caption": "sunset"}


def test_get_photos_returns_known_ids_only(db_path):
    upsert_photo_batch([make_asset("a1"), make_asset("a2")], db_path=db_path)
    found = get_photos(["a1", "zz", "a2", "a1"], db_path=db_path)
    assert sorted(found) == ["a1", "a2"]
    assert get_photos([], db_path=db_path) == {}


def test_list_photos_paging(db_path):
    upsert_photo_batch([make_asset(f"p{i}") for i in range(5)], db_path=db_path)
    assert [p.public_id for p in list_photos(limit=2, offset=1, db_path=db_path)] == ["p1", "p2"]
    assert len(list_photos(db_path=db_path)) == 5


def test_aggregate_statistics(tmp_path, db_path):
    assets = [make_asset("a1", size=10), make_asset("a2", size=20), make_asset("a3", size=40), make_asset("a4", size=80)]
    upsert_photo_batch(assets, db_path=db_path)
    _downloaded("a1", tmp_path, db_path)
    _downloaded("a2", tmp_path, db_path)
    update_download_outcome("a3", DownloadState.FAILED, reason="boom", db_path=db_path)

    stats = aggregate_statistics(db_path=db_path)

    assert stats.total_photos == 4
    assert stats.downloaded_photos == 2
    assert stats.failed_photos == 1
    assert stats.total_bytes == 150
    assert stats.downloaded_bytes == 30
    assert stats.download_percentage == pytest.approx(2 / 3 * 100)


def test_aggregate_statistics_empty(db_path):
    stats = aggregate_statistics(db_path=db_path)
    assert stats.total_photos == 0
    assert stats.download_percentage == 0.0


def test_session_lifecycle(db_path):
    first = create_session(SessionKind.FULL, "demo", db_path=db_path)
    second = create_session(SessionKind.INCREMENTAL, "demo", db_path=db_path)

    assert update_session(first, total_photos=2, successful_photos=1, db_path=db_path)
    assert not update_session(first, db_path=db_path)
    assert seal_session(
        first, SessionStatus.DONE, failed_photos=1, total_bytes=64, notes="failed: a2", db_path=db_path
    )

    sealed = get_session(first, db_path=db_path)
    assert sealed.completed_at is not None
    assert sealed.status is SessionStatus.DONE
    assert (sealed.total_photos, sealed.successful_photos, sealed.failed_photos) == (2, 1, 1)
    assert sealed.total_bytes == 64
    assert sealed.notes == "failed: a2"

    assert [s.id for s in list_sessions(db_path=db_path)] == [second, first]
    assert [s.id for s in find_interrupted_sessions("demo", db_path=db_path)] == [second]


def test_abandon_interrupted_sessions(db_path):
    stale = create_session(SessionKind.FULL, "demo", db_path=db_path)
    other_cloud = create_session(SessionKind.FULL, "other", db_path=db_path)

    update_session(stale, total_photos=1, successful_photos=1, db_path=db_path)
    last_activity = get_session(stale, db_path=db_path).last_activity_at

    assert abandon_interrupted_sessions("demo", db_path=db_path) == 1

    row = get_session(stale, db_path=db_path)
    assert row.status is SessionStatus.FAILED
    assert row.completed_at == last_activity
    assert row.notes.startswith("interrupted (closed ")
    assert get_session(other_cloud, db_path=db_path).is_interrupted


def test_abandon_without_activity_uses_start_time(db_path):
    stale = create_session(SessionKind.FULL, "demo", db_path=db_path, notes="resumed")
    started = get_session(stale, db_path=db_path).started_at

    abandon_interrupted_sessions("demo", db_path=db_path)

    row = get_session(stale, db_path=db_path)
    assert row.completed_at == started
    assert row.notes.startswith("resumed; interrupted (closed ")


def test_has_completed_session_ignores_scans_and_failures(db_path):
    scan = create_session(SessionKind.SCAN, "demo", db_path=db_path)
    seal_session(scan, SessionStatus.DONE, db_path=db_path)
    failed = create_session(SessionKind.FULL, "demo", db_path=db_path)
    seal_session(failed, SessionStatus.FAILED, db_path=db_path)
    assert not has_completed_session("demo", db_path=db_path)

    full = create_session(SessionKind.FULL, "demo", db_path=db_path)
    seal_session(full, SessionStatus.DONE, db_path=db_path)
    assert has_completed_session("demo", db_path=db_path)
    assert not has_completed_session("other", db_path=db_path)


def test_refresh_download_state_requeues_missing_and_empty_files(tmp_path, db_path):
    upsert_photo_batch([make_asset("a1"), make_asset("a2"), make_asset("a3")], db_path=db_path)
    _downloaded("a1", tmp_path, db_path)
    gone = _downloaded("a2", tmp_path, db_path)
    empty = _downloaded("a3", tmp_path, db_path)
    gone.unlink()
    empty.write_bytes(b"")

    summary = refresh_download_state(db_path=db_path)

    assert (summary.checked_items, summary.downloaded_items, summary.missing_items) == (3, 1, 2)
    assert get_photo("a1", db_path=db_path).state is DownloadState.DOWNLOADED
    for public_id in ("a2", "a3"):
        photo = get_photo(public_id, db_path=db_path)
        assert photo.state is DownloadState.PENDING
        assert photo.failure_reason == "local file missing or empty"


def test_search_photos_filters(tmp_path, db_path):
    ids = upsert_photo_batch(
        [
            make_asset("a1", size=10, fmt="jpg"),
            make_asset("a2", size=500, fmt="png"),
            make_asset("a3", size=50, fmt="jpg"),
        ],
        db_path=db_path,
    )
    attach_tags(ids[0], ["beach"], db_path=db_path)
    attach_tags(ids[1], ["city"], db_path=db_path)
    _downloaded("a3", tmp_path, db_path)

    def ids_of(query):
        return [p.public_id for p in search_photos(query, db_path=db_path)]

    assert ids_of(PhotoQuery(tags=("beach", "city"))) == ["a1", "a2"]
    assert ids_of(PhotoQuery(format="JPG")) == ["a1", "a3"]
    assert ids_of(PhotoQuery(min_bytes=20, max_bytes=600)) == ["a2", "a3"]
    assert ids_of(PhotoQuery(state=DownloadState.DOWNLOADED)) == ["a3"]
    assert ids_of(PhotoQuery(state=DownloadState.PENDING, format="jpg")) == ["a1"]
    assert ids_of(PhotoQuery(date_from="2025-01-01")) == []
    assert ids_of(PhotoQuery(limit=1)) == ["a1"]


def test_export_to_json(tmp_path, db_path):
    photo_id = upsert_photo(make_asset("a1"), db_path=db_path)
    attach_tags(photo_id, ["beach"], db_path=db_path)
    create_session(SessionKind.FULL, "demo", db_path=db_path)
    out = tmp_path / "export" / "index.json"

    assert export_to_json(str(out), db_path=db_path) == 1

    data = json.loads(out.read_text(encoding="utf-8"))
    assert data["photos"][0]["public_id"] == "a1"
    assert data["photos"][0]["state"] == "pending"
    assert data["photos"][0]["tags"] == ["beach"]
    assert data["sessions"][0]["session_type"] == "full"


def test_compact_keeps_data(db_path):
    upsert_photo(make_asset("a1"), db_path=db_path)
    compact(db_path=db_path)
    assert get_photo("a1", db_path=db_path) is not None


def test_reopening_index_keeps_schema_and_rows(db_path):
    upsert_photo(make_asset("a1"), db_path=db_path)
    session_id = create_session(SessionKind.FULL, "demo", db_path=db_path)

    with sqlite3.connect(db_path) as conn:
        columns = [row[1] for row in conn.execute("PRAGMA table_info(backup_sessions)")]
    assert columns.count("last_activity_at") == 1

    assert get_photo("a1", db_path=db_path) is not None
    assert get_session(session_id, db_path=db_path).last_activity_at


def test_corrupt_index_raises_store_error(tmp_path):
    broken = tmp_path / "broken.db"
    broken.write_bytes(b"this is not a sqlite database" * 100)
    with pytest.raises(StoreError):
        get_photo("a1", db_path=str(broken))


def test_default_db_path_from_env(tmp_path, monkeypatch):
    target = tmp_path / "env" / "photos.db"
    monkeypatch.setenv("CLDBACKUP_DB_PATH", str(target))
    upsert_photo(make_asset("a1"))
    assert target.exists()
