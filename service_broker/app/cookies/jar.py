"""
Cookie jar for upstream sessions.

The upstream platform authenticates with a browser cookie jar. This module
keeps that jar as an ordered, name-keyed collection: parsing never raises,
a repeated name overwrites the earlier entry in place, and serialization
skips entries whose value is empty or the ``EXPIRED`` sentinel so they can be
kept in the jar without being sent.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

EXPIRED_SENTINEL = "EXPIRED"

AttributeValue = Union[str, bool]


@dataclass
class Cookie:
    """A single cookie as received in a Set-Cookie header."""
    name: str
    value: str
    attributes: Dict[str, AttributeValue] = field(default_factory=dict)
    expires_timestamp: Optional[float] = None

    @property
    def is_sendable(self) -> bool:
        return bool(self.value) and self.value != EXPIRED_SENTINEL

    def to_record(self) -> Dict[str, Any]:
        # Attributes are nested so an attribute named "name" or "value"
        # cannot shadow the cookie's own fields
        record: Dict[str, Any] = {
            "name": self.name,
            "value": self.value,
            "attributes": dict(self.attributes),
        }
        if self.expires_timestamp is not None:
            record["expires_timestamp"] = self.expires_timestamp
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Cookie":
        attributes = record.get("attributes") or {}
        if not isinstance(attributes, dict):
            attributes = {}
        expires_timestamp = record.get("expires_timestamp")
        return cls(
            name=str(record.get("name", "")),
            value=str(record.get("value", "")),
            attributes=dict(attributes),
            expires_timestamp=float(expires_timestamp) if expires_timestamp is not None else None,
        )


def _parse_expires(value: str) -> Optional[float]:
    """Best-effort HTTP date parse; None when the value is not a date."""
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def parse_set_cookie(raw: str) -> Optional[Cookie]:
    """Parse one Set-Cookie value. Returns None when no cookie name is present."""
    if not isinstance(raw, str):
        return None

    segments = [segment.strip() for segment in raw.split(";")]
    if not segments or not segments[0]:
        return None

    name, _, value = segments[0].partition("=")
    name = name.strip()
    if not name:
        return None

    cookie = Cookie(name=name, value=value.strip())
    for segment in segments[1:]:
        key, _, attr_value = segment.partition("=")
        key = key.strip().lower()
        if not key:
            continue
        attr_value = attr_value.strip()
        cookie.attributes[key] = attr_value or True

        if key == "expires" and attr_value:
            cookie.expires_timestamp = _parse_expires(attr_value)

    return cookie


class CookieJar:
    """Ordered, name-keyed cookie collection."""

    def __init__(self, cookies: Optional[Iterable[Cookie]] = None):
        self._cookies: Dict[str, Cookie] = {}
        for cookie in cookies or ():
            self.set(cookie)

    @classmethod
    def parse(cls, raw_set_cookie_headers: Optional[Iterable[str]]) -> "CookieJar":
        """Build a jar from raw Set-Cookie header values."""
        jar = cls()
        jar.merge(raw_set_cookie_headers)
        return jar

    @classmethod
    def from_records(cls, records: Optional[Iterable[Dict[str, Any]]]) -> "CookieJar":
        """Rebuild a jar from its persisted JSON form."""
        jar = cls()
        for record in records or ():
            if isinstance(record, dict):
                cookie = Cookie.from_record(record)
                if cookie.name:
                    jar.set(cookie)
        return jar

    def merge(self, raw_set_cookie_headers: Optional[Iterable[str]]) -> "CookieJar":
        """Apply raw Set-Cookie values; the last value for a name wins."""
        for raw in raw_set_cookie_headers or ():
            cookie = parse_set_cookie(raw)
            if cookie is not None:
                self.set(cookie)
        return self

    def set(self, cookie: Cookie) -> None:
        # Dict assignment keeps the first-seen position of an existing name
        self._cookies[cookie.name] = cookie

    def get(self, name: str) -> Optional[Cookie]:
        return self._cookies.get(name)

    def serialize(self) -> str:
        """Render the jar as a Cookie request header value."""
        return "; ".join(
            f"{cookie.name}={cookie.value}"
            for cookie in self._cookies.values()
            if cookie.is_sendable
        )

    def to_records(self) -> List[Dict[str, Any]]:
        return [cookie.to_record() for cookie in self._cookies.values()]

    def names(self) -> List[str]:
        return list(self._cookies)

    def __contains__(self, name: object) -> bool:
        return name in self._cookies

    def __iter__(self) -> Iterator[Cookie]:
        return iter(list(self._cookies.values()))

    def __len__(self) -> int:
        return len(self._cookies)

    def __str__(self) -> str:
        return self.serialize()

    def __repr__(self) -> str:
        return f"CookieJar({self.names()!r})"


def filter_set_cookies(raw_set_cookie_headers: Iterable[str], name: str) -> List[str]:
    """Keep only the raw Set-Cookie values that set ``name``."""
    kept = []
    for raw in raw_set_cookie_headers:
        cookie = parse_set_cookie(raw)
        if cookie is not None and cookie.name == name:
            kept.append(raw)
    return kept


def format_set_cookie(
    name: str,
    value: str,
    *,
    expires: Optional[datetime] = None,
    path: str = "/",
    secure: bool = True,
    http_only: bool = True,
) -> str:
    """Build a client-facing Set-Cookie header value."""
    parts = [f"{name}={value}", f"Path={path}"]
    if expires is not None:
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        parts.append(f"Expires={format_datetime(expires.astimezone(timezone.utc), usegmt=True)}")
    if secure:
        parts.append("Secure")
    if http_only:
        parts.append("HttpOnly")
    return "; ".join(parts)


def expire_set_cookie(name: str) -> str:
    """Instruct the client to drop ``name`` immediately."""
    return format_set_cookie(
        name,
        EXPIRED_SENTINEL,
        expires=datetime(1970, 1, 1, tzinfo=timezone.utc),
    )
