import pytest

from cldbackup.downloader import BackupOrchestrator
from cldbackup.progress import ProgressTracker

from helpers import CREDS, FakeDownloader


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "index" / "photos.db")


@pytest.fixture
def backup_dir(tmp_path):
    return str(tmp_path / "backup")


@pytest.fixture
def make_orchestrator(backup_dir):
    def _make(listing, downloader=None, **kwargs):
        kwargs.setdefault("progress", ProgressTracker())
        kwargs.setdefault("backoff_base", 0)
        kwargs.setdefault("show_progress", False)
        return BackupOrchestrator(
            CREDS,
            backup_dir,
            listing_client=listing,
            download_client=downloader if downloader is not None else FakeDownloader(),
            **kwargs,
        )

    return _make
