"""Room model and URL canonicalization helpers."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, Field, ValidationInfo, field_validator

PRIMARY_DOMAIN = "twitter.com"
ALTERNATE_DOMAINS: tuple[str, ...] = (
    "x.com",
    "www.x.com",
    "mobile.x.com",
    "www.twitter.com",
    "mobile.twitter.com",
)
PREVIEW_SUFFIXES: tuple[str, ...] = ("/peek",)

_ROOM_ID_RE = re.compile(r"/i/spaces/([^/?#]+)")
_COUNT_RE = re.compile(r"(\d[\d,]*(?:\.\d+)?)\s*([kKmM]?)(?![A-Za-z\d])")
_THOUSANDS_RE = re.compile(r"\d{1,3}(?:,\d{3})+(?:\.\d+)?")
_DECIMAL_COMMA_RE = re.compile(r"\d+,\d{1,2}")


class RoomStatus(str, Enum):
    """Lifecycle status of a room as reported by a listing surface."""

    LIVE = "live"
    ENDED = "ended"
    SCHEDULED = "scheduled"
    UNKNOWN = "unknown"


def normalize_room_url(
    url: str,
    *,
    primary_domain: str = PRIMARY_DOMAIN,
    alternate_domains: tuple[str, ...] | list[str] = ALTERNATE_DOMAINS,
    preview_suffixes: tuple[str, ...] | list[str] = PREVIEW_SUFFIXES,
) -> str:
    """Return the canonical form of a room URL.

    Alternate hosts collapse to ``primary_domain``, a trailing preview
    suffix is removed, and the query string, fragment and trailing slash
    are dropped. Scheme-less input is treated as ``https``. Returns an
    empty string for empty input.
    """
    url = (url or "").strip()
    if not url:
        return ""
    if "://" not in url:
        url = "https://" + url.lstrip("/")

    parts = urlsplit(url)
    host = parts.netloc.lower()
    if host in alternate_domains:
        host = primary_domain

    path = parts.path.rstrip("/")
    for suffix in preview_suffixes:
        if path.endswith(suffix):
            path = path[: -len(suffix)].rstrip("/")
            break

    return urlunsplit(("https", host, path, "", ""))


def extract_room_id(url: str) -> str:
    """Extract the room id from a room URL, or ``""`` if none is present."""
    match = _ROOM_ID_RE.search(url or "")
    return match.group(1) if match else ""


def parse_listener_count(value: object) -> int:
    """Parse a listener count such as ``"1,234"``, ``"1.2K"`` or ``"3 listening"``.

    Unparseable input yields 0; the result is never negative.
    """
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(0, int(value))

    text = str(value or "").strip()
    if not text:
        return 0

    match = _COUNT_RE.search(text)
    if not match:
        return 0
    digits, suffix = match.group(1).rstrip(","), match.group(2).lower()
    if _THOUSANDS_RE.fullmatch(digits):
        digits = digits.replace(",", "")
    elif suffix and _DECIMAL_COMMA_RE.fullmatch(digits):
        # "1,5K" uses the comma as a decimal point
        digits = digits.replace(",", ".")
    else:
        digits = digits.replace(",", "")
    multiplier = {"k": 1_000, "m": 1_000_000}.get(suffix, 1)
    return max(0, round(float(digits) * multiplier))


class Room(BaseModel):
    """A discovered or targeted live audio room."""

    id: str = ""
    title: str = ""
    host: str = ""
    listeners: int = Field(default=0, ge=0)
    status: RoomStatus = RoomStatus.UNKNOWN
    url: str
    discovered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("url")
    @classmethod
    def _canonical_url(cls, value: str, info: ValidationInfo) -> str:
        rules = (info.context or {}).get("url_rules") or {}
        normalized = normalize_room_url(value, **rules)
        if not normalized:
            raise ValueError("room url must not be empty")
        return normalized

    @field_validator("listeners", mode="before")
    @classmethod
    def _coerce_listeners(cls, value: object) -> int:
        return parse_listener_count(value)

    @classmethod
    def from_url(cls, url: str, *, url_rules: dict[str, Any] | None = None, **fields: Any) -> "Room":
        """Build a ``Room`` for a user-supplied URL, deriving the id.

        ``url_rules`` are ``normalize_room_url`` keyword arguments, usually
        ``settings.platform.url_rules``; the module defaults apply otherwise.
        """
        canonical = normalize_room_url(url, **(url_rules or {}))
        data = {**fields, "id": fields.get("id") or extract_room_id(canonical), "url": canonical}
        return cls.model_validate(data, context={"url_rules": url_rules or {}})
