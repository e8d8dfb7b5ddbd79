"""
Inbound request context for the broker.

The internal user is authenticated by the layer in front of the broker, which
forwards the verified id in a trusted header. The broker copies it onto
``request.state.user_info`` and never re-validates it.
"""

from typing import Any, Dict, Optional

from fastapi import Request

from shared.config import BaseConfig
from shared.errors import AuthenticationError
from shared.logging import get_logger, set_user_context
from ..proxy.models import RequestContext


class IdentityMiddleware:
    """Attaches the pre-verified internal user to the request state."""

    def __init__(self, trusted_user_header: str):
        self.trusted_user_header = trusted_user_header
        self.logger = get_logger("broker.identity")

    def attach(self, request: Request) -> Optional[Dict[str, Any]]:
        user_id = request.headers.get(self.trusted_user_header)
        if not user_id:
            return None

        user_info = {"user_id": user_id, "auth_method": "trusted_header"}
        request.state.user_info = user_info
        set_user_context(user_id)
        self.logger.debug("Internal user attached", path=request.url.path)
        return user_info


def get_user_id(request: Request) -> Optional[str]:
    user_info = getattr(request.state, "user_info", None)
    if isinstance(user_info, dict) and user_info.get("user_id"):
        return str(user_info["user_id"])
    return None


def require_user_id(request: Request) -> str:
    user_id = get_user_id(request)
    if not user_id:
        raise AuthenticationError("Internal user identity missing")
    return user_id


def get_session_key(request: Request, config: BaseConfig) -> Optional[str]:
    """Opaque session key from the header, falling back to the cookie."""
    return request.headers.get(config.session_header_name) or request.cookies.get(config.session_cookie_name)


def build_request_context(request: Request, config: BaseConfig) -> RequestContext:
    return RequestContext(
        session_key=get_session_key(request, config),
        user_id=get_user_id(request),
        client_cookies=dict(request.cookies),
    )
