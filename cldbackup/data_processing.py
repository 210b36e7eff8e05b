"""Download engine and runtime tunables for cldbackup."""

# pylint: disable=broad-exception-caught,line-too-long

import asyncio
import hashlib
import os
from dataclasses import dataclass
from typing import Optional

from aiohttp import ClientSession, ClientTimeout, client_exceptions

from cldbackup.errors import (
    FilesystemError,
    RemoteRejected,
    TransportError,
    parse_retry_after,
)
from cldbackup.utils import get_random_user_agent


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, "") or default)
    except ValueError:
        return default


# A single outstanding download keeps index writes trivially ordered.
MAX_CONCURRENT_DOWNLOADS = max(_env_int("CLDBACKUP_CONCURRENCY", 1), 1)
MAX_RETRIES = max(_env_int("CLDBACKUP_MAX_RETRIES", 3), 1)
DOWNLOAD_TIMEOUT = max(_env_int("CLDBACKUP_TIMEOUT", 30), 1)
BACKOFF_BASE = 1.5
LIMIT = max(_env_int("CLDBACKUP_LIMIT", 0), 0)

# Debug flag controlled by env var CLDBACKUP_DEBUG
DEBUG = os.environ.get("CLDBACKUP_DEBUG", "").lower() in {"1", "true", "yes", "on"}


def dbg(msg: str) -> None:
    """
    Print a debug message when the DEBUG flag is enabled.

    Args:
        msg (str): Message to print when debug logging is active.

    Returns:
        None
    """
    if DEBUG:
        print(f"[debug] {msg}")


@dataclass(frozen=True)
class DownloadOutcome:
    """Result of one successful fetch."""

    path: str
    checksum: str
    size_bytes: int


def _write_file(destination: str, payload: bytes) -> None:
    """Write to ``<destination>.part`` then swap it into place."""
    tmp_path = f"{destination}.part"
    try:
        with open(tmp_path, "wb") as file:
            file.write(payload)
        os.replace(tmp_path, destination)
    except OSError:
        try:
            os.remove(tmp_path)
        except FileNotFoundError:
            pass
        raise


class DownloadClient:
    """Fetches single assets to disk through a shared HTTP session."""

    def __init__(self, session: ClientSession, timeout: int = DOWNLOAD_TIMEOUT) -> None:
        self.session = session
        self.timeout = ClientTimeout(total=timeout)

    async def fetch(
        self, url: str, destination: str, expected_bytes: Optional[int] = None
    ) -> DownloadOutcome:
        """
        Download `url` into `destination` and return its SHA-256 checksum.

        The whole body is buffered in memory before it is written, which is
        fine for photos. Nothing is written for an empty body, or for one
        shorter than `expected_bytes` when that is given.

        Raises:
            TransportError: On timeouts, connection failures and empty or
                truncated bodies.
            RemoteRejected: On any non-2xx status.
            FilesystemError: When the folder or the file cannot be written.
        """
        parent = os.path.dirname(os.path.abspath(destination))
        try:
            await asyncio.to_thread(os.makedirs, parent, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"Failed to create directory '{parent}': {e}") from e

        headers = {
            "User-Agent": get_random_user_agent(),
            "Accept": "*/*",
        }
        dbg(f"GET {url} -> '{destination}'")
        try:
            async with self.session.get(
                url, headers=headers, timeout=self.timeout, allow_redirects=True
            ) as response:
                if not 200 <= response.status < 300:
                    raise RemoteRejected(
                        response.status,
                        retry_after=parse_retry_after(response.headers.get("Retry-After")),
                    )
                payload = await response.read()
        except (asyncio.TimeoutError, client_exceptions.ClientError) as e:
            raise TransportError(f"Download failed for {url}: {e}") from e

        if not payload:
            raise TransportError(f"Empty response body for {url}")
        if expected_bytes and len(payload) < expected_bytes:
            raise TransportError(
                f"Truncated body for {url}: {len(payload)} of {expected_bytes} bytes"
            )

        try:
            await asyncio.to_thread(_write_file, destination, payload)
        except OSError as e:
            raise FilesystemError(f"Failed to write file '{destination}': {e}") from e

        checksum = hashlib.sha256(payload).hexdigest()
        dbg(f"Saved '{destination}' size={len(payload)} sha256={checksum[:12]}")
        return DownloadOutcome(path=destination, checksum=checksum, size_bytes=len(payload))


async def fetch_resource(
    session: ClientSession,
    url: str,
    destination: str,
    expected_bytes: Optional[int] = None,
) -> DownloadOutcome:
    """Wrapper: use a transient DownloadClient to fetch a single asset."""
    return await DownloadClient(session).fetch(url, destination, expected_bytes)
