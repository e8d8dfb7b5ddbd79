"""
Proxy gateway to the upstream MP platform.

Steady-state requests carry only the opaque session key; the gateway swaps it
for the real cookie jar from the session store and strips every upstream
Set-Cookie from the response. The login handshake is the exception:

- START_LOGIN may forward the client's correlation cookie and re-emits only
  that cookie.
- LOGIN forwards the client's handshake cookies, turns the upstream cookie
  set into a new session and hands the client nothing but the opaque key.
- SWITCH_ACCOUNT only signals the frontend to reload account info.

Every outbound call waits for its turn in the rate limiter first.
"""

import re
import time
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional
from urllib.parse import parse_qs, parse_qsl, urljoin, urlsplit

import httpx

from shared.errors import AuthenticationError, SessionNotFoundError, ValidationError
from shared.logging import get_logger, mask_key
from ..cookies import expire_set_cookie, filter_set_cookies, format_set_cookie
from ..ratelimit import UpstreamRateLimiter
from ..sessions import DEFAULT_SESSION_TTL, SessionStore, mint_session_key
from ..sessions.models import utcnow
from .actions import BootstrapAction
from .models import AccountInfo, LoginFailure, ProxyResult, RequestContext, UpstreamRequest

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


UPSTREAM_ORIGIN = "https://mp.weixin.qq.com"
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)

# base_resp.ret the upstream uses for frequency control
UPSTREAM_THROTTLED_RET = 200013

SWITCH_ACCOUNT_COOKIE = "switch_account=1; Path=/"

NICKNAME_PATTERN = re.compile(r'wx\.cgiData\.nick_name\s*?=\s*?"(?P<nick_name>[^"]+)"')
AVATAR_PATTERN = re.compile(r'wx\.cgiData\.head_img\s*?=\s*?"(?P<head_img>[^"]+)"')

# Tried in order against a public article page
ARTICLE_NICKNAME_PATTERNS = (
    re.compile(r'class="wx_follow_nickname"[^>]*>(?P<nickname>[^<]+)<'),
    re.compile(r'var\s+nickname\s*=\s*[\'"](?P<nickname>[^\'"]+)[\'"]'),
    re.compile(r'profile_nickname\s*=\s*[\'"](?P<nickname>[^\'"]+)[\'"]'),
)

Handler = Callable[[UpstreamRequest, RequestContext], Awaitable[ProxyResult]]


def extract_login_token(payload: Any) -> Optional[str]:
    """Pull the access token out of a login response's ``redirect_url``."""
    if not isinstance(payload, dict):
        return None
    redirect_url = payload.get("redirect_url")
    if not isinstance(redirect_url, str) or not redirect_url:
        return None
    try:
        query = urlsplit(urljoin("http://localhost", redirect_url)).query
    except ValueError:
        return None
    tokens = parse_qs(query).get("token")
    if not tokens or not tokens[0]:
        return None
    return tokens[0]


def parse_account_info(html: str) -> AccountInfo:
    """Scrape display name and avatar from the upstream home page."""
    nickname = NICKNAME_PATTERN.search(html)
    avatar = AVATAR_PATTERN.search(html)
    return AccountInfo(
        nickname=nickname.group("nick_name") if nickname else "",
        avatar=avatar.group("head_img") if avatar else "",
    )


def parse_article_nickname(html: str) -> Optional[str]:
    """Publishing account's name as shown on an article page."""
    for pattern in ARTICLE_NICKNAME_PATTERNS:
        match = pattern.search(html)
        if match and match.group("nickname").strip():
            return match.group("nickname").strip()
    return None


class ProxyGateway:
    """Forwards requests to the upstream platform on behalf of internal users."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        session_store: SessionStore,
        rate_limiter: UpstreamRateLimiter,
        *,
        base_url: str = UPSTREAM_ORIGIN,
        session_cookie_name: str = "auth-key",
        correlation_cookie_name: str = "uuid",
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.http_client = http_client
        self.session_store = session_store
        self.rate_limiter = rate_limiter
        self.base_url = base_url.rstrip("/")
        self.session_cookie_name = session_cookie_name
        self.correlation_cookie_name = correlation_cookie_name
        self.session_ttl = session_ttl
        self.metrics = metrics
        self.logger = get_logger("broker.proxy")

        self._handlers: Dict[Optional[BootstrapAction], Handler] = {
            None: self._passthrough,
            BootstrapAction.START_LOGIN: self._start_login,
            BootstrapAction.LOGIN: self._login,
            BootstrapAction.SWITCH_ACCOUNT: self._switch_account,
        }
        missing = [action.value for action in BootstrapAction if action not in self._handlers]
        if missing:
            raise TypeError(f"Unhandled bootstrap actions: {', '.join(missing)}")

    async def request(self, upstream_request: UpstreamRequest, context: RequestContext) -> ProxyResult:
        """Forward one logical request and return the client-safe result."""
        handler = self._handlers[upstream_request.action]
        return await handler(upstream_request, context)

    async def request_json(self, upstream_request: UpstreamRequest, context: RequestContext) -> Any:
        """Forward a request and return its parsed JSON body."""
        result = await self.request(upstream_request, context)
        payload = result.json()
        self._observe_throttling(payload, upstream_request)
        return payload

    async def fetch_account_info(self, session_key: str, caller_id: Optional[str] = None) -> AccountInfo:
        """Read the upstream account's display name and avatar."""
        token = await self.session_store.get_token(session_key)
        if not token:
            raise SessionNotFoundError()

        result = await self._passthrough(
            UpstreamRequest(
                method="GET",
                path="/cgi-bin/home",
                query={"t": "home/index", "token": token, "lang": "zh_CN"},
            ),
            RequestContext(session_key=session_key, user_id=caller_id),
        )
        return parse_account_info(result.text)

    async def resolve_article_nickname(self, url: str, caller_id: Optional[str] = None) -> Optional[str]:
        """Name of the account that published the article at ``url``.

        The article page is public, so it is fetched without session cookies.
        Returns None when the page cannot be fetched or carries no name.
        Raises ValidationError for URLs outside the upstream origin.
        """
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or parts.hostname != urlsplit(self.base_url).hostname:
            raise ValidationError("Article URL must point to the upstream platform")

        article_request = UpstreamRequest(
            method="GET",
            path=parts.path or "/",
            query=dict(parse_qsl(parts.query, keep_blank_values=True)),
        )
        try:
            response = await self._send(article_request, None, RequestContext(user_id=caller_id).caller_id)
        except httpx.HTTPError as e:
            self.logger.warning("Failed to fetch article page", path=parts.path, error=str(e))
            return None
        return parse_article_nickname(response.text)

    def headers_for(self, cookie: Optional[str]) -> Dict[str, str]:
        """Fixed browser headers plus the outbound Cookie header."""
        headers = {
            "User-Agent": USER_AGENT,
            "Referer": f"{self.base_url}/",
            "Origin": self.base_url,
            "Accept-Encoding": "identity",
        }
        if cookie:
            headers["Cookie"] = cookie
        return headers

    async def _send(
        self,
        upstream_request: UpstreamRequest,
        cookie: Optional[str],
        caller_id: str,
    ) -> httpx.Response:
        await self.rate_limiter.enqueue(caller_id)

        action = upstream_request.action.value if upstream_request.action else "passthrough"
        start_time = time.time()
        response = await self.http_client.request(
            upstream_request.method,
            f"{self.base_url}{upstream_request.path}",
            params=upstream_request.filtered_query(),
            data=upstream_request.form if upstream_request.method.upper() != "GET" else None,
            headers=self.headers_for(cookie),
            follow_redirects=upstream_request.follow_redirects,
        )
        duration = time.time() - start_time

        self.logger.debug(
            "Upstream call completed",
            action=action,
            path=upstream_request.path,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2),
        )
        if self.metrics:
            self.metrics.increment_counter("upstream_requests_total", action=action, status_code=response.status_code)
            self.metrics.observe_histogram("upstream_request_duration_seconds", duration, action=action)
        return response

    async def _passthrough(self, upstream_request: UpstreamRequest, context: RequestContext) -> ProxyResult:
        # Cookies only ever come from the store here, never from the client
        cookie = await self.session_store.get_cookie_string(context.session_key)
        response = await self._send(upstream_request, cookie, context.caller_id)
        return ProxyResult.from_response(response)

    async def _start_login(self, upstream_request: UpstreamRequest, context: RequestContext) -> ProxyResult:
        correlation = context.client_cookies.get(self.correlation_cookie_name)
        cookie = f"{self.correlation_cookie_name}={correlation}" if correlation else None

        response = await self._send(upstream_request, cookie, context.caller_id)
        set_cookies = filter_set_cookies(
            response.headers.get_list("set-cookie"),
            self.correlation_cookie_name,
        )
        return ProxyResult.from_response(response, set_cookies)

    async def _login(self, upstream_request: UpstreamRequest, context: RequestContext) -> ProxyResult:
        if not context.user_id:
            raise AuthenticationError("Internal user identity required to complete login")

        cookie = "; ".join(
            f"{name}={value}"
            for name, value in context.client_cookies.items()
            if name != self.session_cookie_name
        )
        response = await self._send(upstream_request, cookie or None, context.caller_id)
        result = ProxyResult.from_response(response)

        try:
            payload = response.json()
        except ValueError:
            payload = None
        token = extract_login_token(payload)
        if token is None:
            base_resp = payload.get("base_resp") if isinstance(payload, dict) else None
            self.logger.warning(
                "Login handshake returned no token",
                status_code=response.status_code,
                base_resp=base_resp,
            )
            if self.metrics:
                self.metrics.increment_counter("login_failures_total", reason="missing_token")
            result.login_failure = LoginFailure(
                details={"upstream_status": response.status_code, "base_resp": base_resp},
            )
            return result

        session_key = mint_session_key()
        await self.session_store.create_or_update_session(
            session_key,
            token,
            response.headers.get_list("set-cookie"),
            context.user_id,
        )
        self.logger.info("Upstream login completed", session_key=mask_key(session_key), owner_user_id=context.user_id)

        result.account = await self._refresh_account_info(session_key, context.caller_id)

        expires_at = utcnow() + self.session_ttl
        result.session_key = session_key
        result.expires_at = expires_at
        result.set_cookies = [
            format_set_cookie(self.session_cookie_name, session_key, expires=expires_at),
            expire_set_cookie(self.correlation_cookie_name),
        ]
        return result

    async def _switch_account(self, upstream_request: UpstreamRequest, context: RequestContext) -> ProxyResult:
        response = await self._send(upstream_request, None, context.caller_id)
        set_cookies = [SWITCH_ACCOUNT_COOKIE] if context.session_key else []
        return ProxyResult.from_response(response, set_cookies)

    async def _refresh_account_info(self, session_key: str, caller_id: str) -> AccountInfo:
        """Fetch and store display info for a new session; failures are ignored."""
        try:
            account = await self.fetch_account_info(session_key, caller_id)
        except Exception as e:
            self.logger.warning("Failed to fetch upstream account info", session_key=mask_key(session_key), error=str(e))
            return AccountInfo()

        if not account.is_empty:
            await self.session_store.update_display_info(session_key, account.nickname, account.avatar)
        return account

    def _observe_throttling(self, payload: Any, upstream_request: UpstreamRequest) -> None:
        if not isinstance(payload, dict):
            return
        base_resp = payload.get("base_resp")
        if isinstance(base_resp, dict) and base_resp.get("ret") == UPSTREAM_THROTTLED_RET:
            self.logger.warning("Upstream frequency control triggered", path=upstream_request.path)
            self.rate_limiter.slowdown()
