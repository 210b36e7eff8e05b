"""API helper to page through the Cloudinary resource listing."""

import asyncio
import base64
import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union
from urllib.parse import quote

from aiohttp import ClientSession, ClientTimeout, client_exceptions
from validators import url as validate_url

from cldbackup.credentials import Credentials
from cldbackup.data_processing import dbg
from cldbackup.errors import (
    MalformedResponse,
    RemoteRejected,
    TransportError,
    parse_retry_after,
)

API_BASE = "https://api.cloudinary.com/v1_1"
PAGE_SIZE = 100
# Small pause before each listing call, keeps bursts under the admin API rate limit.
LISTING_DELAY = 0.1
LISTING_TIMEOUT = ClientTimeout(total=30)

_REQUIRED_FIELDS: dict[str, type] = {
    "public_id": str,
    "format": str,
    "version": int,
    "resource_type": str,
    "type": str,
    "created_at": str,
    "bytes": int,
    "secure_url": str,
}


@dataclass(frozen=True)
class RemoteAsset:
    """One resource entry from the listing."""

    public_id: str
    format: str
    version: int
    resource_type: str
    resource_kind: str
    created_at: str
    bytes: int
    secure_url: str
    width: Optional[int] = None
    height: Optional[int] = None
    tags: tuple[str, ...] = ()
    context: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RateLimitInfo:
    """Admin API quota as reported with a listing page."""

    allowed: Optional[int]
    remaining: Optional[int]
    reset_at: Optional[str]


@dataclass(frozen=True)
class ListingPage:
    """One page of the listing plus its continuation cursor."""

    resources: list[RemoteAsset]
    next_cursor: Optional[str]
    rate_limit: Optional[RateLimitInfo] = None


def _optional_int(raw: Mapping[str, Any], key: str) -> Optional[int]:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedResponse(f"Field '{key}' must be an integer, got {value!r}")
    return value


def _flatten_context(raw: Any) -> dict[str, str]:
    """Accept both ``{"custom": {...}}`` and a flat mapping."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise MalformedResponse(f"Field 'context' must be an object, got {raw!r}")
    custom = raw.get("custom")
    source = custom if isinstance(custom, dict) else raw
    return {str(k): "" if v is None else str(v) for k, v in source.items()}


def parse_resource(raw: Any) -> RemoteAsset:
    """
    Validate one listing entry and turn it into a `RemoteAsset`.

    Raises:
        MalformedResponse: If a required field is missing or has the wrong type.
    """
    if not isinstance(raw, dict):
        raise MalformedResponse(f"Resource entry must be an object, got {type(raw).__name__}")
    for key, expected in _REQUIRED_FIELDS.items():
        value = raw.get(key)
        if value is None or isinstance(value, bool) or not isinstance(value, expected):
            raise MalformedResponse(
                f"Resource {raw.get('public_id')!r}: field '{key}' missing or not {expected.__name__}"
            )
    if not validate_url(raw["secure_url"]):
        raise MalformedResponse(
            f"Resource {raw['public_id']!r}: invalid secure_url {raw['secure_url']!r}"
        )

    tags = raw.get("tags") or []
    if not isinstance(tags, list):
        raise MalformedResponse(f"Resource {raw['public_id']!r}: 'tags' must be a list")

    return RemoteAsset(
        public_id=raw["public_id"],
        format=raw["format"],
        version=raw["version"],
        resource_type=raw["resource_type"],
        resource_kind=raw["type"],
        created_at=raw["created_at"],
        bytes=raw["bytes"],
        secure_url=raw["secure_url"],
        width=_optional_int(raw, "width"),
        height=_optional_int(raw, "height"),
        tags=tuple(str(tag) for tag in tags),
        context=_flatten_context(raw.get("context")),
    )


def _header_int(headers: Mapping[str, str], key: str) -> Optional[int]:
    value = headers.get(key)
    if value is None or not str(value).strip().isdigit():
        return None
    return int(value)


def parse_rate_limit(
    headers: Mapping[str, str], data: Mapping[str, Any]
) -> Optional[RateLimitInfo]:
    """Prefer the X-FeatureRateLimit-* headers, fall back to body fields."""
    allowed = _header_int(headers, "X-FeatureRateLimit-Limit")
    remaining = _header_int(headers, "X-FeatureRateLimit-Remaining")
    reset_at = headers.get("X-FeatureRateLimit-Reset")

    if allowed is None and isinstance(data.get("rate_limit_allowed"), int):
        allowed = data["rate_limit_allowed"]
    if remaining is None and isinstance(data.get("rate_limit_remaining"), int):
        remaining = data["rate_limit_remaining"]
    if reset_at is None and data.get("rate_limit_reset_at"):
        reset_at = str(data["rate_limit_reset_at"])

    if allowed is None and remaining is None and reset_at is None:
        return None
    return RateLimitInfo(allowed=allowed, remaining=remaining, reset_at=reset_at)


def parse_listing(
    body: Union[bytes, str], headers: Optional[Mapping[str, str]] = None
) -> ListingPage:
    """Decode a 2xx listing body into a `ListingPage`."""
    try:
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        data = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise MalformedResponse(f"Listing body is not UTF-8 JSON: {error}") from error
    if not isinstance(data, dict) or not isinstance(data.get("resources"), list):
        raise MalformedResponse("Listing body has no 'resources' array")

    next_cursor = data.get("next_cursor")
    if next_cursor is not None and not isinstance(next_cursor, str):
        raise MalformedResponse(f"'next_cursor' must be a string, got {next_cursor!r}")

    return ListingPage(
        resources=[parse_resource(raw) for raw in data["resources"]],
        next_cursor=next_cursor or None,
        rate_limit=parse_rate_limit(headers or {}, data),
    )


def _basic_auth_header(credentials: Credentials) -> str:
    token = f"{credentials.api_key}:{credentials.api_secret}".encode("utf-8")
    return f"Basic {base64.b64encode(token).decode('ascii')}"


class CloudinaryClient:
    """Client wrapper for the paginated admin API resource listing."""

    def __init__(
        self,
        session: ClientSession,
        credentials: Credentials,
        page_size: int = PAGE_SIZE,
        api_base: str = API_BASE,
        delay: float = LISTING_DELAY,
    ) -> None:
        self.session = session
        self.credentials = credentials
        self.page_size = page_size
        self.api_base = api_base.rstrip("/")
        self.delay = delay

    async def list_resources(self, cursor: Optional[str] = None) -> ListingPage:
        """
        Fetch one listing page.

        Args:
            cursor (Optional[str]): Continuation token from the previous page.

        Returns:
            ListingPage: Assets of this page, the next cursor and quota info.

        Raises:
            TransportError: On timeouts and connection failures.
            RemoteRejected: On any non-2xx status.
            MalformedResponse: When a 2xx body does not match the schema.
        """
        url = f"{self.api_base}/{quote(self.credentials.cloud_name)}/resources/image"
        params = {"max_results": str(self.page_size)}
        if cursor:
            params["next_cursor"] = cursor
        request_headers = {"Authorization": _basic_auth_header(self.credentials)}

        if self.delay:
            await asyncio.sleep(self.delay)

        dbg(f"List page cursor={cursor or '-'} size={self.page_size}")
        try:
            async with self.session.get(
                url, params=params, headers=request_headers, timeout=LISTING_TIMEOUT
            ) as resp:
                body = await resp.read()
                if not 200 <= resp.status < 300:
                    raise RemoteRejected(
                        resp.status,
                        body.decode("utf-8", errors="replace"),
                        parse_retry_after(resp.headers.get("Retry-After")),
                    )
                headers = resp.headers
        except (client_exceptions.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Listing request failed: {e}") from e

        page = parse_listing(body, headers)
        dbg(
            f"Listed {len(page.resources)} resource(s), next_cursor={page.next_cursor or '-'}"
        )
        return page
