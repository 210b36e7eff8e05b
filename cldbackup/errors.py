"""Error taxonomy shared by the listing client, downloader and index store."""

from __future__ import annotations


class BackupError(Exception):
    """Base exception for cldbackup operations."""


class TransportError(BackupError):
    """Network-layer failure (timeout, DNS, connection reset)."""


class RemoteRejected(BackupError):
    """Remote answered with a non-2xx status."""

    def __init__(
        self, status: int, body: str = "", retry_after: float | None = None
    ) -> None:
        self.status = status
        self.body = body
        self.retry_after = retry_after
        detail = f" - {body[:200]}" if body else ""
        super().__init__(f"HTTP {status}{detail}")

    @property
    def retryable(self) -> bool:
        return self.status == 429 or self.status >= 500


class MalformedResponse(BackupError):
    """A 2xx body that does not match the expected listing schema."""


class FilesystemError(BackupError):
    """Local write failed (permission denied, disk full, ...)."""


class StoreError(BackupError):
    """The local index is unreachable or corrupt."""


class CredentialsError(BackupError, ValueError):
    """Saved credentials are unreadable or incomplete."""


def is_retryable(exc: BaseException) -> bool:
    """Return True when `exc` is worth another attempt after a backoff."""
    if isinstance(exc, TransportError):
        return True
    if isinstance(exc, RemoteRejected):
        return exc.retryable
    return False


def parse_retry_after(value: str | None) -> float | None:
    """Parse a numeric Retry-After header; HTTP-date forms are ignored."""
    if value and str(value).strip().isdigit():
        return float(value)
    return None
