"""
Repository contract for durable session storage.
"""

from abc import ABC, abstractmethod
from typing import Optional

from ..sessions.models import Session


class SessionRepository(ABC):
    """Key-value persistence for sessions.

    Implementations log and swallow backend errors: reads return ``None`` and
    writes return ``False`` on failure.
    """

    async def start(self) -> None:
        """Acquire backend resources."""

    async def stop(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def fetch(self, session_key: str) -> Optional[Session]:
        """Load a session row, expired or not."""

    @abstractmethod
    async def upsert(self, session: Session) -> bool:
        """Insert or replace the row for ``session.session_key``."""

    @abstractmethod
    async def delete(self, session_key: str) -> bool:
        """Remove a session row."""

    @abstractmethod
    async def update_display_info(self, session_key: str, display_name: str, avatar_url: str) -> bool:
        """Patch display metadata on an existing row."""

    async def health_check(self) -> bool:
        return True
