"""
Request-scoped helpers for the broker: caller identity and session key.
"""

from .context import IdentityMiddleware, build_request_context, get_session_key, require_user_id

__all__ = ["IdentityMiddleware", "build_request_context", "get_session_key", "require_user_id"]
