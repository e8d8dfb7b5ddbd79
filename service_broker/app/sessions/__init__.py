"""
Session store package.

Maps opaque session keys to upstream credentials, with an in-process cache
in front of a durable repository.
"""

from .models import Session, DEFAULT_SESSION_TTL
from .store import SessionStore, mint_session_key

__all__ = ["Session", "SessionStore", "DEFAULT_SESSION_TTL", "mint_session_key"]
