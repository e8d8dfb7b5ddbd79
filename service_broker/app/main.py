"""
Session broker service for the upstream MP platform.
"""

import time
from datetime import timedelta
from typing import Any, Dict, Optional

import httpx
from fastapi import Query, Request, Response
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import AuthorizationError, SessionNotFoundError, ValidationError
from shared.logging import set_session_context
from .domain.context import IdentityMiddleware, build_request_context, get_session_key, require_user_id
from .persistence import InMemorySessionRepository, PostgresSessionRepository, SessionRepository
from .proxy import BootstrapAction, ProxyGateway, ProxyResult, UpstreamRequest
from .ratelimit import UpstreamRateLimiter
from .sessions import SessionStore


# Form fields the upstream login page sends with every bizlogin call
BIZLOGIN_FORM: Dict[str, Any] = {
    "userlang": "zh_CN",
    "redirect_url": "",
    "login_type": 3,
    "token": "",
    "lang": "zh_CN",
    "f": "json",
    "ajax": 1,
}

APPMSGEXT_REQUIRED = ("__biz", "mid", "idx", "uin", "key", "pass_ticket")

# Fields the article page's own stats call sends unchanged
APPMSGEXT_FIXED: Dict[str, Any] = {
    "f": "json",
    "is_need_ad": 0,
    "comment_id": "",
    "is_need_reward": 0,
    "both_hierarchical_comment": 0,
    "reward_uin_count": 0,
    "send_time": "",
    "msg_daily_idx": "",
    "is_original": "",
    "is_only_read": 1,
    "req_id": "",
    "pass_ticket_only_read": "",
    "is_temp_url": 0,
    "item_show_type": 0,
}


class BrokerService(BaseService):
    """Session broker and rate-limited upstream proxy."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        repository: Optional[SessionRepository] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__("broker", 8000, config=config or get_config("broker", 8000))

        self.repository = repository or self._build_repository()
        self.rate_limiter = UpstreamRateLimiter(
            min_interval=self.config.rate_limit_min_interval,
            slowdown_floor=self.config.rate_limit_slowdown_floor,
            slowdown_cap=self.config.rate_limit_slowdown_cap,
            slowdown_duration=self.config.rate_limit_slowdown_duration,
            metrics=self.metrics,
        )
        session_ttl = timedelta(days=self.config.session_ttl_days)
        self.session_store = SessionStore(self.repository, ttl=session_ttl, metrics=self.metrics)
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.upstream_timeout_seconds)
        )
        self.gateway = ProxyGateway(
            self.http_client,
            self.session_store,
            self.rate_limiter,
            base_url=self.config.upstream_base_url,
            session_cookie_name=self.config.session_cookie_name,
            correlation_cookie_name=self.config.correlation_cookie_name,
            session_ttl=session_ttl,
            metrics=self.metrics,
        )
        self.identity = IdentityMiddleware(self.config.trusted_user_header)

        self._setup_identity_middleware()
        self._setup_login_routes()
        self._setup_mp_routes()
        self._setup_article_routes()
        self._setup_rate_limit_routes()

        # Expose components via app state for introspection/testing
        self.app.state.broker_service = self
        self.app.state.session_store = self.session_store
        self.app.state.rate_limiter = self.rate_limiter

    async def on_startup(self) -> None:
        await self.repository.start()

    async def on_shutdown(self) -> None:
        await self.rate_limiter.close()
        await self.http_client.aclose()
        await self.repository.stop()

    def _build_repository(self) -> SessionRepository:
        if self.config.session_backend == "memory":
            self.logger.warning("Using in-memory session repository; sessions will not survive restart")
            return InMemorySessionRepository()
        return PostgresSessionRepository(self.config.postgres_dsn)

    async def _check_dependencies(self) -> Dict[str, str]:
        repository_ok = await self.repository.health_check()
        return {
            "session_repository": "ok" if repository_ok else "error",
            "rate_limiter_queue": str(self.rate_limiter.queue_length),
        }

    def _setup_identity_middleware(self):
        @self.app.middleware("http")
        async def attach_identity(request: Request, call_next):
            self.identity.attach(request)
            set_session_context(get_session_key(request, self.config))
            return await call_next(request)

    def _relay(self, result: ProxyResult) -> Response:
        """Turn a proxy result into a client response."""
        response = Response(content=result.content, status_code=result.status_code)
        for key, value in result.client_headers():
            response.headers.append(key, value)
        return response

    def _upstream_failure(self, message: str, exc: Exception) -> JSONResponse:
        self.logger.error(message, error=str(exc), error_type=type(exc).__name__)
        return JSONResponse(
            status_code=502,
            content={"base_resp": {"ret": -1, "err_msg": message}},
        )

    async def _require_token(self, request: Request) -> str:
        token = await self.session_store.get_token(get_session_key(request, self.config))
        if not token:
            raise SessionNotFoundError()
        return token

    def _setup_login_routes(self):
        """Login handshake routes."""

        @self.app.post("/api/web/login/session/{sid}")
        async def start_login(sid: str, request: Request):
            """Start a QR login; the upstream hands out the correlation cookie."""
            form = dict(BIZLOGIN_FORM, sessionid=sid)
            result = await self.gateway.request(
                UpstreamRequest(
                    method="POST",
                    path="/cgi-bin/bizlogin",
                    query={"action": "startlogin"},
                    form=form,
                    action=BootstrapAction.START_LOGIN,
                ),
                build_request_context(request, self.config),
            )
            return self._relay(result)

        @self.app.get("/api/web/login/getqrcode")
        async def get_qrcode(request: Request):
            """QR code image for the pending login."""
            result = await self.gateway.request(
                UpstreamRequest(
                    method="GET",
                    path="/cgi-bin/scanloginqrcode",
                    query={"action": "getqrcode", "random": int(time.time() * 1000)},
                    action=BootstrapAction.START_LOGIN,
                ),
                build_request_context(request, self.config),
            )
            return self._relay(result)

        @self.app.get("/api/web/login/scan")
        async def scan_status(request: Request):
            """Poll whether the QR code has been scanned and confirmed."""
            result = await self.gateway.request(
                UpstreamRequest(
                    method="GET",
                    path="/cgi-bin/scanloginqrcode",
                    query={"action": "ask", "token": "", "lang": "zh_CN", "f": "json", "ajax": 1},
                    action=BootstrapAction.START_LOGIN,
                ),
                build_request_context(request, self.config),
            )
            return self._relay(result)

        @self.app.post("/api/web/login/bizlogin")
        async def complete_login(request: Request):
            """Confirm the login and swap the upstream cookies for a session key."""
            require_user_id(request)
            form = dict(BIZLOGIN_FORM, cookie_forbidden=0, cookie_cleaned=0, plugin_used=0)
            result = await self.gateway.request(
                UpstreamRequest(
                    method="POST",
                    path="/cgi-bin/bizlogin",
                    query={"action": "login"},
                    form=form,
                    action=BootstrapAction.LOGIN,
                ),
                build_request_context(request, self.config),
            )

            if result.login_failure is not None:
                return JSONResponse(
                    content={
                        "err": result.login_failure.message,
                        "code": result.login_failure.code,
                    }
                )

            account = result.account
            response = JSONResponse(
                content={
                    "nickname": account.nickname if account else "",
                    "avatar": account.avatar if account else "",
                    "expires": result.expires_at.isoformat() if result.expires_at else None,
                }
            )
            for cookie in result.set_cookies:
                response.headers.append("set-cookie", cookie)
            return response

        @self.app.post("/api/web/login/switch-account")
        async def switch_account(request: Request):
            """Ask the frontend to reload account info after switching accounts."""
            result = await self.gateway.request(
                UpstreamRequest(
                    method="POST",
                    path="/cgi-bin/bizlogin",
                    query={"action": "prelogin"},
                    form={"lang": "zh_CN", "f": "json", "ajax": 1},
                    action=BootstrapAction.SWITCH_ACCOUNT,
                ),
                build_request_context(request, self.config),
            )
            return self._relay(result)

    def _setup_mp_routes(self):
        """Steady-state routes authenticated by the opaque session key."""

        @self.app.get("/api/web/mp/info")
        async def account_info(request: Request):
            """Display name and avatar of the logged-in upstream account."""
            session_key = get_session_key(request, self.config)
            context = build_request_context(request, self.config)
            account = await self.gateway.fetch_account_info(session_key, context.caller_id)
            if not account.is_empty:
                await self.session_store.update_display_info(session_key, account.nickname, account.avatar)
            return {"nick_name": account.nickname, "head_img": account.avatar}

        @self.app.get("/api/web/mp/searchbiz")
        async def search_biz(
            request: Request,
            keyword: str = Query(""),
            begin: int = Query(0),
            size: int = Query(5),
        ):
            """Search upstream official accounts by keyword."""
            token = await self._require_token(request)
            try:
                return await self.gateway.request_json(
                    UpstreamRequest(
                        method="GET",
                        path="/cgi-bin/searchbiz",
                        query={
                            "action": "search_biz",
                            "begin": begin,
                            "count": size,
                            "query": keyword,
                            "token": token,
                            "lang": "zh_CN",
                            "f": "json",
                            "ajax": "1",
                        },
                    ),
                    build_request_context(request, self.config),
                )
            except (httpx.HTTPError, ValueError) as e:
                return self._upstream_failure("Account search failed, please retry", e)

        @self.app.get("/api/web/mp/appmsgpublish")
        async def list_published(
            request: Request,
            fakeid: str = Query(..., alias="id"),
            keyword: str = Query(""),
            begin: int = Query(0),
            size: int = Query(5),
        ):
            """List or search articles published by an account."""
            token = await self._require_token(request)
            searching = bool(keyword)
            try:
                return await self.gateway.request_json(
                    UpstreamRequest(
                        method="GET",
                        path="/cgi-bin/appmsgpublish",
                        query={
                            "sub": "search" if searching else "list",
                            "search_field": "7" if searching else "null",
                            "begin": begin,
                            "count": size,
                            "query": keyword,
                            "fakeid": fakeid,
                            "type": "101_1",
                            "free_publish_type": 1,
                            "sub_action": "list_ex",
                            "token": token,
                            "lang": "zh_CN",
                            "f": "json",
                            "ajax": 1,
                        },
                    ),
                    build_request_context(request, self.config),
                )
            except (httpx.HTTPError, ValueError) as e:
                return self._upstream_failure("Article list request failed, please retry", e)

        @self.app.get("/api/web/mp/searchbyurl")
        async def search_by_url(request: Request, url: str = Query(...)):
            """Find the account that published the article at ``url``."""
            token = await self._require_token(request)
            context = build_request_context(request, self.config)
            nickname = await self.gateway.resolve_article_nickname(url, context.caller_id)
            if not nickname:
                return {"base_resp": {"ret": -1, "err_msg": "Could not read the account name from the article URL"}}

            try:
                payload = await self.gateway.request_json(
                    UpstreamRequest(
                        method="GET",
                        path="/cgi-bin/searchbiz",
                        query={
                            "action": "search_biz",
                            "begin": 0,
                            "count": 20,
                            "query": nickname,
                            "token": token,
                            "lang": "zh_CN",
                            "f": "json",
                            "ajax": 1,
                        },
                    ),
                    context,
                )
            except (httpx.HTTPError, ValueError) as e:
                return self._upstream_failure("Account search failed, please retry", e)

            if not isinstance(payload, dict) or (payload.get("base_resp") or {}).get("ret") != 0:
                return payload

            matches = [
                item for item in payload.get("list") or []
                if isinstance(item, dict) and item.get("nickname") == nickname
            ]
            if not matches:
                return {
                    "base_resp": {"ret": -1, "err_msg": f"No account named {nickname!r} found"},
                    "resolved_name": nickname,
                    "original_resp": payload,
                }
            return dict(payload, list=matches, total=len(matches))

        @self.app.get("/api/web/mp/profile_ext_getmsg")
        async def profile_messages(
            request: Request,
            biz: str = Query(..., alias="id"),
            begin: int = Query(0),
            size: int = Query(10),
            uin: Optional[str] = Query(None),
            key: Optional[str] = Query(None),
            pass_ticket: Optional[str] = Query(None),
        ):
            """Message history of an account, read with reader credentials."""
            try:
                return await self.gateway.request_json(
                    UpstreamRequest(
                        method="GET",
                        path="/mp/profile_ext",
                        query={
                            "action": "getmsg",
                            "__biz": biz,
                            "offset": begin,
                            "count": size,
                            "uin": uin,
                            "key": key,
                            "pass_ticket": pass_ticket,
                            "f": "json",
                            "is_ok": 1,
                            "scene": 124,
                        },
                    ),
                    build_request_context(request, self.config),
                )
            except (httpx.HTTPError, ValueError) as e:
                return self._upstream_failure("Message history request failed, please retry", e)

        @self.app.get("/api/web/mp/session")
        async def current_session(request: Request, refresh: bool = Query(False)):
            """Metadata of the caller's upstream session."""
            user_id = require_user_id(request)
            session_key = get_session_key(request, self.config)
            if not session_key:
                raise SessionNotFoundError()

            if refresh:
                self.session_store.invalidate_cache(session_key)

            owner_user_id = await self.session_store.resolve_owner_user_id(session_key)
            if owner_user_id is None:
                raise SessionNotFoundError()
            if owner_user_id != user_id:
                raise AuthorizationError("Session belongs to another user")

            session = await self.session_store.get_session(session_key)
            if session is None:
                raise SessionNotFoundError()
            return session.to_public_dict()

    def _setup_article_routes(self):
        """Article data routes keyed by reader credentials (uin/key/pass_ticket)."""

        @self.app.get("/api/web/misc/appmsgext")
        async def article_stats(request: Request):
            """Read, like and share counts of one article."""
            params = request.query_params
            missing = [name for name in APPMSGEXT_REQUIRED if not params.get(name)]
            if missing:
                raise ValidationError("Missing required query parameters", details={"missing": missing})

            query = dict(APPMSGEXT_FIXED, action="getappmsgext", sn=params.get("sn") or "")
            query.update({name: params[name] for name in APPMSGEXT_REQUIRED})
            try:
                payload = await self.gateway.request_json(
                    UpstreamRequest(method="GET", path="/mp/getappmsgext", query=query),
                    build_request_context(request, self.config),
                )
            except (httpx.HTTPError, ValueError) as e:
                self.logger.error("Article stats request failed", error=str(e), error_type=type(e).__name__)
                return JSONResponse(status_code=502, content={"success": False, "error": "Article stats request failed"})
            return {"success": True, "data": payload}

        @self.app.get("/api/web/misc/appmsgalbum")
        async def album_articles(
            request: Request,
            fakeid: str = Query(...),
            album_id: str = Query(...),
            is_reverse: str = Query("0"),
            begin_msgid: Optional[str] = Query(None),
            begin_itemidx: Optional[str] = Query(None),
            count: int = Query(20),
        ):
            """One page of an article album."""
            try:
                return await self.gateway.request_json(
                    UpstreamRequest(
                        method="GET",
                        path="/mp/appmsgalbum",
                        query={
                            "action": "getalbum",
                            "__biz": fakeid,
                            "album_id": album_id,
                            "begin_msgid": begin_msgid,
                            "begin_itemidx": begin_itemidx,
                            "count": count or 20,
                            "is_reverse": is_reverse or "0",
                            "f": "json",
                        },
                    ),
                    build_request_context(request, self.config),
                )
            except (httpx.HTTPError, ValueError) as e:
                return self._upstream_failure("Album request failed, please retry", e)

        @self.app.get("/api/web/misc/comment")
        async def article_comments(
            request: Request,
            biz: Optional[str] = Query(None, alias="__biz"),
            comment_id: Optional[str] = Query(None),
            uin: Optional[str] = Query(None),
            key: Optional[str] = Query(None),
            pass_ticket: Optional[str] = Query(None),
        ):
            """Comment thread of an article, relayed as the upstream sent it."""
            result = await self.gateway.request(
                UpstreamRequest(
                    method="GET",
                    path="/mp/appmsg_comment",
                    query={
                        "action": "getcomment",
                        "__biz": biz,
                        "comment_id": comment_id,
                        "uin": uin,
                        "key": key,
                        "pass_ticket": pass_ticket,
                        "limit": 1000,
                        "f": "json",
                    },
                ),
                build_request_context(request, self.config),
            )
            response = self._relay(result)
            response.headers["content-type"] = "application/json"
            return response

    def _setup_rate_limit_routes(self):
        """Upstream admission queue status and control."""

        @self.app.get("/api/v1/rate-limits")
        async def rate_limit_status():
            return self.rate_limiter.snapshot()

        @self.app.post("/api/v1/rate-limits/reset")
        async def reset_rate_limit():
            self.rate_limiter.reset_speed()
            return self.rate_limiter.snapshot()


def create_app(config: Optional[ServiceConfig] = None, **kwargs):
    """Create FastAPI application."""
    service = BrokerService(config, **kwargs)
    return service.app


if __name__ == "__main__":
    service = BrokerService()
    service.run()
