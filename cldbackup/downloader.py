"""This module drives a full backup run: list, reconcile, download, seal."""

# pylint: disable=broad-exception-caught,line-too-long

import asyncio
import functools
import json
import os
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from aiohttp import ClientSession, ClientTimeout
from tqdm import tqdm

from cldbackup.api import CloudinaryClient, ListingPage, RemoteAsset
from cldbackup.credentials import Credentials, SecretStore
from cldbackup.data_processing import (
    BACKOFF_BASE,
    LIMIT,
    MAX_CONCURRENT_DOWNLOADS,
    MAX_RETRIES,
    DownloadClient,
    DownloadOutcome,
    dbg,
)
from cldbackup.errors import (
    BackupError,
    CredentialsError,
    FilesystemError,
    RemoteRejected,
    is_retryable,
)
from cldbackup.progress import ProgressStatus, ProgressTracker, tracker
from cldbackup.store import (
    DownloadState,
    IndexedPhoto,
    SessionKind,
    SessionStatus,
    abandon_interrupted_sessions,
    attach_context,
    attach_tags,
    create_session,
    get_photo,
    get_photos,
    has_completed_session,
    refresh_download_state,
    seal_session,
    update_download_outcome,
    update_session,
    upsert_photo_batch,
)
from cldbackup.store_utils.db import DEFAULT_DB_NAME
from cldbackup.utils import ASSETS_FOLDER, asset_relpath, format_size, plural

# Failed ids beyond this count are summarised in the session notes.
NOTES_MAX_IDS = 20


class RunPhase(str, Enum):
    """Where a backup run currently is."""

    IDLE = "idle"
    LISTING = "listing"
    RECONCILING = "reconciling"
    DOWNLOADING = "downloading"
    SEALING = "sealing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class BackupReport:
    """Outcome of one run, as returned to the caller."""

    session_id: Optional[int] = None
    kind: Optional[SessionKind] = None
    phase: RunPhase = RunPhase.IDLE
    listed: int = 0
    queued: int = 0
    skipped: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    bytes: int = 0
    repaired: int = 0
    interrupted_sessions: int = 0
    failed_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def needs_download(asset: RemoteAsset, indexed: Optional[IndexedPhoto]) -> bool:
    """
    Decide whether a listed asset has to be fetched.

    Unknown assets, failed or never-attempted rows and rows whose remote
    version advanced are fetched; downloaded rows at the same version are not.
    """
    if indexed is None:
        return True
    if indexed.is_downloaded and asset.version <= indexed.version:
        return False
    return True


def export_metadata(resources: Sequence[RemoteAsset], file_path: str) -> None:
    """Write the listed assets as pretty-printed JSON."""
    folder = os.path.dirname(os.path.abspath(file_path))
    os.makedirs(folder, exist_ok=True)
    payload = []
    for asset in resources:
        item = asdict(asset)
        item["tags"] = list(asset.tags)
        payload.append(item)
    with open(file_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)


class BackupOrchestrator:
    """
    One-directional backup of a Cloudinary cloud into a folder plus index.

    Args:
        credentials (Credentials): Account to back up.
        download_dir (str): Backup root; files go to its ``assets/`` subfolder.
        db_path (Optional[str]): Index file; defaults to ``<download_dir>/photos.db``.
        concurrency (int): Maximum downloads in flight.
        max_retries (int): Attempts per listing page or asset for retryable errors.
        backoff_base (float): Base seconds for exponential backoff.
        limit (int): Cap on downloads for this run, 0 for none.
        scan_only (bool): Index the listing without downloading anything.
        metadata_path (Optional[str]): Also dump the listing to this JSON file.
        progress (ProgressTracker): Tracker updated once per attempt.
        listing_client: Object with ``list_resources(cursor)``; built from the
            credentials when omitted.
        download_client: Object with ``fetch(url, destination)``; built on a
            shared session when omitted.
        show_progress (bool): Draw a tqdm bar and print status lines.
    """

    def __init__(
        self,
        credentials: Credentials,
        download_dir: str,
        db_path: Optional[str] = None,
        concurrency: int = MAX_CONCURRENT_DOWNLOADS,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE,
        limit: int = LIMIT,
        scan_only: bool = False,
        metadata_path: Optional[str] = None,
        progress: ProgressTracker = tracker,
        listing_client: Any = None,
        download_client: Any = None,
        show_progress: bool = True,
    ) -> None:
        self.credentials = credentials
        self.download_dir = os.path.abspath(download_dir)
        self.db_path = db_path or os.path.join(self.download_dir, DEFAULT_DB_NAME)
        self.concurrency = max(int(concurrency), 1)
        self.max_retries = max(int(max_retries), 1)
        self.backoff_base = backoff_base
        self.limit = max(int(limit), 0)
        self.scan_only = scan_only
        self.metadata_path = metadata_path
        self.progress = progress
        self.listing_client = listing_client
        self.download_client = download_client
        self.show_progress = show_progress
        self.phase = RunPhase.IDLE
        self._photo_ids: dict[str, int] = {}
        self._listed: List[RemoteAsset] = []

    @classmethod
    def from_secret_store(
        cls, store: SecretStore, token: str, download_dir: str, **kwargs: Any
    ) -> "BackupOrchestrator":
        """Build an orchestrator from credentials kept in a secret store."""
        credentials = store.load(token)
        if credentials is None:
            raise CredentialsError(f"No saved credentials for '{token}'")
        return cls(credentials, download_dir, **kwargs)

    def _say(self, msg: str) -> None:
        if self.show_progress:
            tqdm.write(msg)

    async def _store(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking store call off the event loop."""
        return await asyncio.to_thread(func, *args, db_path=self.db_path, **kwargs)

    async def _with_retry(self, factory: Callable[[], Awaitable[Any]], label: str) -> Any:
        last_exc: Optional[BaseException] = None
        for attempt in range(self.max_retries):
            try:
                return await factory()
            except BackupError as e:
                last_exc = e
                if not is_retryable(e) or attempt == self.max_retries - 1:
                    raise
                delay = (
                    e.retry_after
                    if isinstance(e, RemoteRejected) and e.retry_after is not None
                    else self.backoff_base * (2**attempt)
                )
                self._say(
                    f"[~] {label}: {e} (attempt {attempt + 1}/{self.max_retries}), retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
        if last_exc:
            raise last_exc
        raise RuntimeError("Unexpected retry loop exit")

    async def run(self) -> BackupReport:
        """
        Execute one backup run and return its report.

        Per-asset failures are recorded in the index and the run goes on.
        Listing failures (after retries) and store failures seal the session
        as failed, flip the tracker to ``error`` and are re-raised.
        """
        if self.listing_client is not None and (
            self.download_client is not None or self.scan_only
        ):
            return await self._run(self.listing_client, self.download_client)

        # Finite timeouts to avoid hanging forever (no overall cap, but idle/read capped)
        timeout = ClientTimeout(total=None, connect=30, sock_connect=30, sock_read=300)
        async with ClientSession(timeout=timeout) as session:
            listing = self.listing_client or CloudinaryClient(session, self.credentials)
            fetcher = self.download_client or DownloadClient(session)
            return await self._run(listing, fetcher)

    async def _run(self, listing: Any, fetcher: Any) -> BackupReport:
        report = BackupReport()
        cloud = self.credentials.cloud_name
        self.phase = RunPhase.IDLE
        self._photo_ids = {}
        self._listed = []
        self.progress.reset(0)

        try:
            repaired = await self._store(refresh_download_state)
            report.repaired = repaired.missing_items
            if repaired.missing_items:
                self._say(
                    f"[*] {plural(repaired.missing_items)} missing on disk, queued again."
                )

            report.interrupted_sessions = await self._store(
                abandon_interrupted_sessions, cloud
            )
            if report.interrupted_sessions:
                self._say(
                    f"[*] Found {plural(report.interrupted_sessions, 'interrupted session')}, resuming from the index."
                )

            if self.scan_only:
                report.kind = SessionKind.SCAN
            elif await self._store(has_completed_session, cloud):
                report.kind = SessionKind.INCREMENTAL
            else:
                report.kind = SessionKind.FULL
            report.session_id = await self._store(create_session, report.kind, cloud)
            self._say(f"[*] Backing up cloud '{cloud}' ({report.kind.value} run)")

            work = await self._list_and_reconcile(listing, report)

            if self.metadata_path:
                await asyncio.to_thread(export_metadata, self._listed, self.metadata_path)
                self._say(f"[*] Metadata exported to: {self.metadata_path}")

            if self.scan_only:
                work = []
            elif 0 < self.limit < len(work):
                dbg(f"Limiting downloads to first {self.limit} of {len(work)} queued item(s)")
                work = work[: self.limit]
            report.queued = len(work)

            self.phase = RunPhase.DOWNLOADING
            self.progress.reset(len(work))
            self.progress.set_status(ProgressStatus.RUNNING)
            if work:
                total_size = sum(asset.bytes for asset in work)
                self._say(
                    f"[*] Downloading {plural(len(work))} (~{format_size(total_size)}), "
                    f"skipping {report.skipped} already backed up"
                )
                await self._download_all(fetcher, work, report)

            self.phase = RunPhase.SEALING
            await self._store(
                seal_session,
                report.session_id,
                SessionStatus.DONE,
                total_photos=report.attempted,
                successful_photos=report.succeeded,
                failed_photos=report.failed,
                total_bytes=report.bytes,
                notes=self._failure_notes(report),
            )
            self.phase = RunPhase.DONE
            report.phase = RunPhase.DONE
            self.progress.set_status(ProgressStatus.DONE)
            return report
        except Exception as error:
            self.phase = RunPhase.FAILED
            report.phase = RunPhase.FAILED
            report.errors.append(f"[!] Backup aborted: {error}")
            self.progress.set_status(ProgressStatus.ERROR)
            if report.session_id is not None:
                await self._seal_failed(report, error)
            raise

    async def _seal_failed(self, report: BackupReport, error: BaseException) -> None:
        notes = f"fatal: {type(error).__name__}: {error}"
        failures = self._failure_notes(report)
        if failures:
            notes = f"{notes}; {failures}"
        try:
            await self._store(
                seal_session,
                report.session_id,
                SessionStatus.FAILED,
                total_photos=report.attempted,
                successful_photos=report.succeeded,
                failed_photos=report.failed,
                total_bytes=report.bytes,
                notes=notes,
            )
        except BackupError as seal_error:
            # The run error is what gets raised; the session stays open and is
            # picked up as interrupted next time.
            dbg(f"Could not seal session {report.session_id}: {seal_error}")

    @staticmethod
    def _failure_notes(report: BackupReport) -> Optional[str]:
        if not report.failed_ids:
            return None
        shown = ", ".join(report.failed_ids[:NOTES_MAX_IDS])
        extra = len(report.failed_ids) - NOTES_MAX_IDS
        if extra > 0:
            shown = f"{shown} (+{extra} more)"
        return f"failed: {shown}"

    async def _list_and_reconcile(
        self, listing: Any, report: BackupReport
    ) -> List[RemoteAsset]:
        """Walk every listing page in order and build the download work list."""
        seen: set[str] = set()
        work: List[RemoteAsset] = []
        cursor: Optional[str] = None
        page_no = 0

        while True:
            self.phase = RunPhase.LISTING
            page_no += 1
            page: ListingPage = await self._with_retry(
                functools.partial(listing.list_resources, cursor),
                f"listing page {page_no}",
            )
            report.listed += len(page.resources)
            if page.rate_limit is not None:
                dbg(
                    f"Rate limit: {page.rate_limit.remaining}/{page.rate_limit.allowed} "
                    f"reset at {page.rate_limit.reset_at}"
                )

            self.phase = RunPhase.RECONCILING
            fresh: List[RemoteAsset] = []
            for asset in page.resources:
                if asset.public_id in seen:
                    dbg(f"Duplicate listing entry skipped: {asset.public_id}")
                    continue
                seen.add(asset.public_id)
                fresh.append(asset)

            queued, skipped = await self._reconcile(fresh)
            work.extend(queued)
            report.skipped += skipped
            self._listed.extend(fresh)
            self._say(
                f"[*] Page {page_no}: {plural(len(page.resources), 'resource')}, "
                f"{len(queued)} queued (total listed: {report.listed})"
            )

            cursor = page.next_cursor
            if not cursor:
                return work

    async def _reconcile(
        self, assets: List[RemoteAsset]
    ) -> Tuple[List[RemoteAsset], int]:
        if not assets:
            return [], 0
        existing = await self._store(get_photos, [asset.public_id for asset in assets])
        queued = [
            asset for asset in assets if needs_download(asset, existing.get(asset.public_id))
        ]
        ids = await self._store(upsert_photo_batch, assets)
        if len(ids) == len(assets):
            self._photo_ids.update(zip((asset.public_id for asset in assets), ids))
        return queued, len(assets) - len(queued)

    async def _download_all(
        self, fetcher: Any, work: List[RemoteAsset], report: BackupReport
    ) -> None:
        semaphore = asyncio.Semaphore(self.concurrency)
        write_lock = asyncio.Lock()
        progress_bar = tqdm(
            total=len(work),
            desc="Files",
            unit="file",
            leave=False,
            disable=not self.show_progress,
        )

        async def download_wrapper(asset: RemoteAsset) -> None:
            async with semaphore:
                outcome, error = await self._attempt(fetcher, asset)
            async with write_lock:
                await self._persist(asset, outcome, error, report)
            self.progress.record_completion(asset.public_id)
            progress_bar.update(1)

        tasks = [asyncio.create_task(download_wrapper(asset)) for asset in work]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            progress_bar.close()

    def destination_for(self, asset: RemoteAsset) -> str:
        """
        Local file for `asset`: ``<download_dir>/assets/<mirrored public id>``.

        Raises:
            FilesystemError: If the path would land on the index or the
                metadata export.
        """
        destination = os.path.join(
            self.download_dir, ASSETS_FOLDER, asset_relpath(asset.public_id, asset.format)
        )
        reserved = {os.path.abspath(self.db_path)}
        if self.metadata_path:
            reserved.add(os.path.abspath(self.metadata_path))
        if os.path.abspath(destination) in reserved:
            raise FilesystemError(
                f"Refusing to write '{asset.public_id}' over '{destination}'"
            )
        return destination

    async def _attempt(
        self, fetcher: Any, asset: RemoteAsset
    ) -> Tuple[Optional[DownloadOutcome], Optional[BaseException]]:
        try:
            destination = self.destination_for(asset)
            outcome = await self._with_retry(
                functools.partial(
                    fetcher.fetch,
                    asset.secure_url,
                    destination,
                    expected_bytes=asset.bytes,
                ),
                asset.public_id,
            )
            return outcome, None
        except Exception as e:
            return None, e

    async def _photo_id(self, public_id: str) -> Optional[int]:
        photo_id = self._photo_ids.get(public_id)
        if photo_id is None:
            photo = await self._store(get_photo, public_id)
            photo_id = photo.id if photo else None
        return photo_id

    async def _persist(
        self,
        asset: RemoteAsset,
        outcome: Optional[DownloadOutcome],
        error: Optional[BaseException],
        report: BackupReport,
    ) -> None:
        """Write one asset's outcome and the session totals to the index."""
        report.attempted += 1
        if outcome is not None:
            await self._store(
                update_download_outcome,
                asset.public_id,
                DownloadState.DOWNLOADED,
                local_path=outcome.path,
                checksum=outcome.checksum,
            )
            photo_id = await self._photo_id(asset.public_id)
            if photo_id is not None:
                if asset.tags:
                    await self._store(attach_tags, photo_id, asset.tags)
                if asset.context:
                    await self._store(attach_context, photo_id, asset.context)
            report.succeeded += 1
            report.bytes += outcome.size_bytes
        else:
            reason = f"{type(error).__name__}: {error}"
            await self._store(
                update_download_outcome,
                asset.public_id,
                DownloadState.FAILED,
                reason=reason,
            )
            report.failed += 1
            report.failed_ids.append(asset.public_id)
            message = f"[!] Failed to download '{asset.public_id}': {error}"
            report.errors.append(message)
            self._say(message)

        await self._store(
            update_session,
            report.session_id,
            total_photos=report.attempted,
            successful_photos=report.succeeded,
            failed_photos=report.failed,
            total_bytes=report.bytes,
        )


async def run_backup(
    credentials: Credentials, download_dir: str, **kwargs: Any
) -> BackupReport:
    """Wrapper: build a BackupOrchestrator and run it once."""
    return await BackupOrchestrator(credentials, download_dir, **kwargs).run()


def print_summary(report: BackupReport) -> None:
    """Print the end-of-run counters the way the CLI shows them."""
    print(
        f"\n[^] Downloaded: {plural(report.succeeded)}, "
        f"Failed: {plural(report.failed)}, "
        f"Skipped: {plural(report.skipped)} "
        f"({format_size(report.bytes)} this run)."
    )
    for error in report.errors:
        print(error)
