"""Shared fakes and builders for the test-suite."""

import hashlib
import os

from cldbackup.api import ListingPage, RemoteAsset
from cldbackup.credentials import Credentials
from cldbackup.data_processing import DownloadOutcome

CREDS = Credentials(cloud_name="demo", api_key="key-123", api_secret="s3cret")


def make_asset(public_id, version=1, size=100, tags=(), context=None, fmt="jpg"):
    return RemoteAsset(
        public_id=public_id,
        format=fmt,
        version=version,
        resource_type="image",
        resource_kind="upload",
        created_at="2024-05-01T10:00:00Z",
        bytes=size,
        secure_url=f"https://res.cloudinary.com/demo/image/upload/v{version}/{public_id}.{fmt}",
        width=640,
        height=480,
        tags=tuple(tags),
        context=dict(context or {}),
    )


def page(assets, next_cursor=None):
    return ListingPage(resources=list(assets), next_cursor=next_cursor)


class FakeListing:
    """Serves pre-built pages (or raises pre-built errors) in order."""

    def __init__(self, pages):
        self.pages = list(pages)
        self.cursors = []

    async def list_resources(self, cursor=None):
        self.cursors.append(cursor)
        item = self.pages.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class FakeDownloader:
    """Writes a small file per URL; `failures` maps URL -> error or list of errors."""

    def __init__(self, failures=None):
        self.failures = {
            url: list(errs) if isinstance(errs, (list, tuple)) else errs
            for url, errs in (failures or {}).items()
        }
        self.calls = []

    async def fetch(self, url, destination, expected_bytes=None):
        self.calls.append(url)
        planned = self.failures.get(url)
        if isinstance(planned, list):
            if planned:
                raise planned.pop(0)
        elif planned is not None:
            raise planned

        payload = f"bytes of {url}".encode()
        os.makedirs(os.path.dirname(destination), exist_ok=True)
        with open(destination, "wb") as f:
            f.write(payload)
        return DownloadOutcome(
            path=destination,
            checksum=hashlib.sha256(payload).hexdigest(),
            size_bytes=len(payload),
        )


