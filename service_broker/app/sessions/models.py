"""
Session data model for the broker.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from ..cookies import CookieJar

DEFAULT_SESSION_TTL = timedelta(days=4)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    """An upstream login bound to an opaque session key."""
    session_key: str
    owner_user_id: str
    upstream_token: str
    cookie_jar: CookieJar = field(default_factory=CookieJar)
    created_at: datetime = field(default_factory=utcnow)
    expires_at: datetime = field(default_factory=lambda: utcnow() + DEFAULT_SESSION_TTL)
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now

    @property
    def cookie_string(self) -> str:
        return self.cookie_jar.serialize()

    def to_public_dict(self) -> Dict[str, Any]:
        """Client-safe view: no token, no cookies."""
        return {
            "owner_user_id": self.owner_user_id,
            "nickname": self.display_name or "",
            "avatar": self.avatar_url or "",
            "created_at": self.created_at.isoformat(),
            "expires": self.expires_at.isoformat(),
        }
