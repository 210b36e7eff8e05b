"""Cloudinary account credentials and the opaque secret store around them."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from cldbackup.errors import CredentialsError

DEFAULT_SECRETS_PATH = Path.home() / ".config" / "cldbackup" / "credentials.json"


@dataclass(frozen=True)
class Credentials:
    """API credentials for one Cloudinary cloud."""

    cloud_name: str
    api_key: str
    api_secret: str

    def __repr__(self) -> str:
        return (
            f"Credentials(cloud_name={self.cloud_name!r}, "
            f"api_key={self.api_key!r}, api_secret='***')"
        )

    @property
    def complete(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)


class SecretStore(Protocol):
    """Opaque credential storage; the token format is up to the implementation."""

    def save(self, credentials: Credentials) -> str: ...

    def load(self, token: str) -> Optional[Credentials]: ...


def credentials_from_env() -> Optional[Credentials]:
    """Read ``CLOUDINARY_CLOUD_NAME`` / ``_API_KEY`` / ``_API_SECRET``."""
    creds = Credentials(
        cloud_name=os.environ.get("CLOUDINARY_CLOUD_NAME", "").strip(),
        api_key=os.environ.get("CLOUDINARY_API_KEY", "").strip(),
        api_secret=os.environ.get("CLOUDINARY_API_SECRET", "").strip(),
    )
    return creds if creds.complete else None


class FileSecretStore:
    """
    Keep credentials in a JSON file readable only by the current user.

    The token handed back by `save` is the cloud name; `load` returns None
    for unknown tokens and for entries with a blank field.
    """

    def __init__(self, path: str | os.PathLike | None = None) -> None:
        env_path = os.environ.get("CLDBACKUP_SECRETS_PATH", "").strip()
        self.path = Path(path or env_path or DEFAULT_SECRETS_PATH)

    def _read(self) -> dict[str, dict[str, str]]:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as error:
            raise CredentialsError(f"Failed to parse credentials file {self.path}: {error}") from error
        return data if isinstance(data, dict) else {}

    def save(self, credentials: Credentials) -> str:
        if not credentials.complete:
            raise CredentialsError("cloud name, API key and API secret are all required")
        entries = self._read()
        entries[credentials.cloud_name] = {
            "cloud_name": credentials.cloud_name,
            "api_key": credentials.api_key,
            "api_secret": credentials.api_secret,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(entries, handle, indent=2)
        return credentials.cloud_name

    def load(self, token: str) -> Optional[Credentials]:
        entry = self._read().get(token)
        if not isinstance(entry, dict):
            return None
        creds = Credentials(
            cloud_name=str(entry.get("cloud_name") or ""),
            api_key=str(entry.get("api_key") or ""),
            api_secret=str(entry.get("api_secret") or ""),
        )
        return creds if creds.complete else None

    def tokens(self) -> list[str]:
        """Saved tokens, in insertion order."""
        return list(self._read())
