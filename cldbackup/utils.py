"""This modules contains common utils"""

# pylint: disable=broad-exception-caught

import hashlib
import os
import re
from typing import Optional

from fake_useragent import UserAgent

DEFAULT_PARENT_FOLDER = "downloads"
ASSETS_FOLDER = "assets"


def get_random_user_agent() -> str:
    """
    Return a random user agent string; fallback to a generic UA if generator fails.
    """
    try:
        return UserAgent().random
    except Exception:
        return "Mozilla/5.0"


def sanitize(name: Optional[str]) -> str:
    """
    Sanitize a string to be safe for folder/file names by replacing invalid
    characters with underscores. If input is None or empty, returns "asset".

    Args:
        name (Optional[str]): The input string to sanitize.

    Returns:
        str: A sanitized string safe to use as filename or folder name.
    """
    return re.sub(r'[\\/*?:"<>|]', "_", name) if name else "asset"


def asset_relpath(public_id: str, fmt: Optional[str]) -> str:
    """
    Build the path of a remote asset relative to the assets folder.

    Folders in the public id (``summer/beach``) are mirrored on disk. Each
    segment is sanitized and ``.``/``..`` segments are neutralised, so the
    result never leaves the assets folder. When sanitizing changed anything,
    a short hash of the public id is appended to the file stem; two distinct
    public ids therefore never share a file.

    Args:
        public_id (str): Remote identifier of the asset.
        fmt (Optional[str]): Remote format, used as the file extension.

    Returns:
        str: Relative path such as ``summer/beach.jpg``.
    """
    segments = []
    altered = False
    for part in (public_id or "").split("/"):
        if not part:
            altered = True
            continue
        clean = sanitize(part)
        if clean in (".", ".."):
            clean = clean.replace(".", "_")
        if clean != part:
            altered = True
        segments.append(clean)
    if not segments:
        segments = ["asset"]
        altered = True

    ext = (fmt or "").strip().lstrip(".")
    stem = segments[-1]
    if altered or not ext:
        digest = hashlib.sha1((public_id or "").encode("utf-8")).hexdigest()[:8]
        stem = f"{stem}-{digest}"
    segments[-1] = f"{stem}.{sanitize(ext)}" if ext else stem
    return os.path.join(*segments)


def default_download_dir(cloud_name: str) -> str:
    """Return ``./downloads/<cloud_name>`` under the current working directory."""
    return os.path.join(os.getcwd(), DEFAULT_PARENT_FOLDER, sanitize(cloud_name))


def format_size(num_bytes: int) -> str:
    """Return human readable size string."""
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(num_bytes)
    for unit in units:
        if size < 1024 or unit == units[-1]:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def plural(count: int, word: str = "file") -> str:
    """Return ``"<count> <word>"`` with a trailing ``s`` when needed."""
    return f"{count} {word}{'s' if count != 1 else ''}"
