"""
Cached session store.

Maps an opaque session key to the upstream token and cookie jar. Reads go
through an in-process cache before the durable repository; expiry is checked
lazily on read and an expired row is deleted at that point.

Writes favor availability: ``create_or_update_session`` always updates the
cache, even when the durable write fails. A failed write is logged and
reported through the return value, and the session is lost on restart.
"""

import secrets
from datetime import timedelta
from typing import TYPE_CHECKING, Dict, Iterable, Optional

from shared.logging import get_logger, mask_key
from ..cookies import CookieJar
from .models import DEFAULT_SESSION_TTL, Session, utcnow

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..persistence.base import SessionRepository
    from shared.metrics import MetricsCollector


def mint_session_key() -> str:
    """New 128-bit opaque session key, hex encoded."""
    return secrets.token_hex(16)


class SessionStore:
    """Opaque session key to upstream credential mapping."""

    def __init__(
        self,
        repository: "SessionRepository",
        *,
        ttl: timedelta = DEFAULT_SESSION_TTL,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.repository = repository
        self.ttl = ttl
        self.metrics = metrics
        self.logger = get_logger("broker.session_store")
        self._cache: Dict[str, Session] = {}

    async def get_session(self, session_key: Optional[str]) -> Optional[Session]:
        """Return the live session for ``session_key`` or None."""
        if not session_key:
            return None

        cached = self._cache.get(session_key)
        if cached is not None:
            if not cached.is_expired():
                self._count_cache("hit")
                return cached
            self._cache.pop(session_key, None)
            await self._drop_expired(session_key)
            return None

        self._count_cache("miss")
        session = await self.repository.fetch(session_key)
        if session is None:
            return None

        if session.is_expired():
            await self._drop_expired(session_key)
            return None

        self._cache[session_key] = session
        return session

    async def create_or_update_session(
        self,
        session_key: str,
        token: str,
        raw_cookies: Iterable[str],
        owner_user_id: str,
    ) -> bool:
        """Store a freshly completed login.

        Returns True when the durable write succeeded. The cache is written
        either way, so the session is usable in this process regardless.
        """
        now = utcnow()
        session = Session(
            session_key=session_key,
            owner_user_id=owner_user_id,
            upstream_token=token,
            cookie_jar=CookieJar.parse(raw_cookies),
            created_at=now,
            expires_at=now + self.ttl,
        )
        self._cache[session_key] = session

        try:
            persisted = bool(await self.repository.upsert(session))
        except Exception as e:
            self.logger.error(
                "Session repository raised on upsert",
                session_key=mask_key(session_key),
                error=str(e),
                error_type=type(e).__name__,
            )
            persisted = False

        if persisted:
            self.logger.info(
                "Session stored",
                session_key=mask_key(session_key),
                owner_user_id=owner_user_id,
                cookie_count=len(session.cookie_jar),
            )
        else:
            self.logger.error(
                "Session persisted to cache only; durable write failed",
                session_key=mask_key(session_key),
                owner_user_id=owner_user_id,
            )
        if self.metrics:
            self.metrics.increment_counter("sessions_created_total", persisted=persisted)
        return persisted

    async def get_token(self, session_key: Optional[str]) -> Optional[str]:
        session = await self.get_session(session_key)
        return session.upstream_token if session else None

    async def get_cookie_string(self, session_key: Optional[str]) -> Optional[str]:
        session = await self.get_session(session_key)
        return session.cookie_string if session else None

    async def update_display_info(self, session_key: str, display_name: str, avatar_url: str) -> None:
        """Best-effort metadata patch; never raises."""
        cached = self._cache.get(session_key)
        if cached is not None:
            cached.display_name = display_name
            cached.avatar_url = avatar_url

        try:
            updated = await self.repository.update_display_info(session_key, display_name, avatar_url)
        except Exception as e:
            self.logger.warning("Failed to update session display info", session_key=mask_key(session_key), error=str(e))
            return

        if not updated:
            self.logger.warning("Session display info not persisted", session_key=mask_key(session_key))

    async def resolve_owner_user_id(self, session_key: Optional[str]) -> Optional[str]:
        """Internal user that owns ``session_key``, if the session is live."""
        session = await self.get_session(session_key)
        return session.owner_user_id if session else None

    def invalidate_cache(self, session_key: str) -> None:
        """Forget the cached copy; the durable row is untouched."""
        self._cache.pop(session_key, None)

    async def _drop_expired(self, session_key: str) -> None:
        self.logger.info("Session expired", session_key=mask_key(session_key))
        await self.repository.delete(session_key)

    def _count_cache(self, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("session_cache_total", result=result)
