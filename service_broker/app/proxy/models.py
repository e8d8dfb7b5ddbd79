"""
Request and result models for the proxy gateway.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import httpx
from pydantic import BaseModel

from .actions import BootstrapAction

QueryValue = Union[str, int, float, None]

# Headers that describe the upstream connection rather than the payload
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
    "content-length",
    "content-encoding",
    "set-cookie",
})


@dataclass
class UpstreamRequest:
    """A logical call to the upstream platform."""
    method: str
    path: str
    query: Dict[str, QueryValue] = field(default_factory=dict)
    form: Optional[Dict[str, Any]] = None
    action: Optional[BootstrapAction] = None
    follow_redirects: bool = True

    def filtered_query(self) -> Dict[str, str]:
        return {key: str(value) for key, value in self.query.items() if value is not None}


@dataclass
class RequestContext:
    """What the gateway knows about the inbound caller."""
    session_key: Optional[str] = None
    user_id: Optional[str] = None
    client_cookies: Mapping[str, str] = field(default_factory=dict)

    @property
    def caller_id(self) -> str:
        return self.user_id or "anonymous"


class LoginFailure(BaseModel):
    """Structured, non-exceptional login handshake failure."""

    code: str = "LOGIN_FAILED"
    message: str = "Login failed, please retry"
    details: Dict[str, Any] = {}


class AccountInfo(BaseModel):
    """Display metadata of the upstream account."""

    nickname: str = ""
    avatar: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.nickname or self.avatar)


@dataclass
class ProxyResult:
    """Upstream response as handed back to the internal caller.

    ``headers`` never contains upstream Set-Cookie values; ``set_cookies``
    holds the only cookie instructions meant for the client.
    """
    status_code: int
    headers: httpx.Headers
    content: bytes
    set_cookies: List[str] = field(default_factory=list)
    session_key: Optional[str] = None
    expires_at: Optional[datetime] = None
    account: Optional[AccountInfo] = None
    login_failure: Optional[LoginFailure] = None

    @classmethod
    def from_response(cls, response: httpx.Response, set_cookies: Optional[List[str]] = None) -> "ProxyResult":
        headers = httpx.Headers(response.headers)
        if "set-cookie" in headers:
            del headers["set-cookie"]
        return cls(
            status_code=response.status_code,
            headers=headers,
            content=response.content,
            set_cookies=list(set_cookies or []),
        )

    @property
    def ok(self) -> bool:
        return self.login_failure is None and self.status_code < 400

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.content)

    def client_headers(self) -> List[Tuple[str, str]]:
        """Headers to relay to the client, Set-Cookie instructions last."""
        relayed = [
            (key, value)
            for key, value in self.headers.multi_items()
            if key.lower() not in HOP_BY_HOP_HEADERS
        ]
        relayed.extend(("set-cookie", cookie) for cookie in self.set_cookies)
        return relayed
