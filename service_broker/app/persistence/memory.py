"""
In-memory session repository for local runs and tests.
"""

import copy
from typing import Dict, Optional

from shared.logging import get_logger, mask_key
from .base import SessionRepository
from ..sessions.models import Session


class InMemorySessionRepository(SessionRepository):
    """Dictionary-backed repository; rows do not survive a restart."""

    def __init__(self):
        self.rows: Dict[str, Session] = {}
        self.logger = get_logger("broker.persistence.memory")

    async def fetch(self, session_key: str) -> Optional[Session]:
        row = self.rows.get(session_key)
        # Callers get their own copy so cache mutations never leak into the rows
        return copy.deepcopy(row) if row is not None else None

    async def upsert(self, session: Session) -> bool:
        existing = self.rows.get(session.session_key)
        stored = copy.deepcopy(session)
        if existing is not None:
            # Same column list as the Postgres ON CONFLICT clause: display
            # metadata and created_at belong to the existing row
            stored.display_name = existing.display_name
            stored.avatar_url = existing.avatar_url
            stored.created_at = existing.created_at
        self.rows[session.session_key] = stored
        self.logger.debug("Session stored", session_key=mask_key(session.session_key))
        return True

    async def delete(self, session_key: str) -> bool:
        return self.rows.pop(session_key, None) is not None

    async def update_display_info(self, session_key: str, display_name: str, avatar_url: str) -> bool:
        row = self.rows.get(session_key)
        if row is None:
            return False
        row.display_name = display_name
        row.avatar_url = avatar_url
        return True
