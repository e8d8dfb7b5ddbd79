"""
Unit tests for the proxy gateway.
"""

import pytest
import httpx
from unittest.mock import patch

from service_broker.app.persistence import InMemorySessionRepository
from service_broker.app.proxy import BootstrapAction, ProxyGateway, UpstreamRequest
from service_broker.app.proxy.gateway import extract_login_token, parse_account_info, parse_article_nickname
from service_broker.app.proxy.models import RequestContext
from service_broker.app.ratelimit import UpstreamRateLimiter
from service_broker.app.sessions import SessionStore
from shared.errors import AuthenticationError, SessionNotFoundError, ValidationError
from shared.metrics import MetricsCollector

BASE_URL = "https://upstream.test"

HOME_HTML = """
<script>
  wx.cgiData.nick_name = "Daily Reads";
  wx.cgiData.head_img = "https://img.test/avatar.png";
</script>
"""


class FakeUpstream:
    """Scripted upstream that records every request it receives."""

    def __init__(self):
        self.requests = []
        self.routes = {}

    def route(self, path, response):
        self.routes[path] = response

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.routes.get(request.url.path)
        if response is None:
            return httpx.Response(404, text="not found")
        if isinstance(response, Exception):
            raise response
        # Fresh copy so a scripted response can be served more than once
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)

    def last(self, path):
        return [request for request in self.requests if request.url.path == path][-1]


class TestProxyGateway:
    """Test cases for ProxyGateway."""

    @pytest.fixture
    def upstream(self):
        return FakeUpstream()

    @pytest.fixture
    def repository(self):
        return InMemorySessionRepository()

    @pytest.fixture
    def store(self, repository):
        return SessionStore(repository)

    @pytest.fixture
    def limiter(self):
        return UpstreamRateLimiter(min_interval=0.0, slowdown_floor=0.01, slowdown_cap=0.04, slowdown_duration=0.05)

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("broker")

    @pytest.fixture
    def gateway(self, upstream, store, limiter, metrics):
        client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
        return ProxyGateway(client, store, limiter, base_url=BASE_URL, metrics=metrics)

    def login_request(self):
        return UpstreamRequest(
            method="POST",
            path="/cgi-bin/bizlogin",
            query={"action": "login"},
            form={"f": "json", "ajax": 1},
            action=BootstrapAction.LOGIN,
        )

    @pytest.mark.asyncio
    async def test_passthrough_uses_stored_cookies_and_strips_set_cookie(self, gateway, upstream, store):
        await store.create_or_update_session("k1", "T123", ["slave_sid=abc; Path=/", "data_ticket=t"], "user-1")
        upstream.route(
            "/cgi-bin/searchbiz",
            httpx.Response(
                200,
                json={"list": []},
                headers=[("set-cookie", "slave_sid=rotated; Path=/"), ("x-upstream", "1")],
            ),
        )

        result = await gateway.request(
            UpstreamRequest(method="GET", path="/cgi-bin/searchbiz", query={"token": "T123", "skip": None}),
            RequestContext(session_key="k1", user_id="user-1", client_cookies={"slave_sid": "client-forged"}),
        )

        sent = upstream.last("/cgi-bin/searchbiz")
        assert sent.headers["cookie"] == "slave_sid=abc; data_ticket=t"
        assert sent.url.params["token"] == "T123"
        assert "skip" not in sent.url.params
        assert sent.headers["referer"] == f"{BASE_URL}/"
        assert sent.headers["origin"] == BASE_URL
        assert "Mozilla/5.0" in sent.headers["user-agent"]

        assert result.status_code == 200
        assert result.json() == {"list": []}
        assert "set-cookie" not in result.headers
        assert result.set_cookies == []
        assert all(key != "set-cookie" for key, _ in result.client_headers())
        assert ("x-upstream", "1") in result.client_headers()

    @pytest.mark.asyncio
    async def test_passthrough_without_session_sends_no_cookie(self, gateway, upstream):
        upstream.route("/cgi-bin/searchbiz", httpx.Response(200, json={}))

        await gateway.request(
            UpstreamRequest(method="GET", path="/cgi-bin/searchbiz"),
            RequestContext(session_key="unknown", client_cookies={"slave_sid": "client"}),
        )

        assert "cookie" not in upstream.last("/cgi-bin/searchbiz").headers

    @pytest.mark.asyncio
    async def test_start_login_relays_only_correlation_cookie(self, gateway, upstream):
        upstream.route(
            "/cgi-bin/bizlogin",
            httpx.Response(
                200,
                json={"base_resp": {"ret": 0}},
                headers=[
                    ("set-cookie", "uuid=abc123; Path=/; Secure"),
                    ("set-cookie", "ua_id=zzz; Path=/"),
                ],
            ),
        )

        result = await gateway.request(
            UpstreamRequest(
                method="POST",
                path="/cgi-bin/bizlogin",
                query={"action": "startlogin"},
                form={"sessionid": "s1"},
                action=BootstrapAction.START_LOGIN,
            ),
            RequestContext(client_cookies={"auth-key": "secret", "other": "x"}),
        )

        sent = upstream.last("/cgi-bin/bizlogin")
        assert "cookie" not in sent.headers
        assert b"sessionid=s1" in sent.content
        assert result.set_cookies == ["uuid=abc123; Path=/; Secure"]
        assert "set-cookie" not in result.headers

    @pytest.mark.asyncio
    async def test_start_login_forwards_existing_correlation_cookie(self, gateway, upstream):
        upstream.route("/cgi-bin/scanloginqrcode", httpx.Response(200, content=b"\x89PNG"))

        result = await gateway.request(
            UpstreamRequest(
                method="GET",
                path="/cgi-bin/scanloginqrcode",
                query={"action": "getqrcode"},
                action=BootstrapAction.START_LOGIN,
            ),
            RequestContext(client_cookies={"uuid": "abc123", "auth-key": "secret"}),
        )

        assert upstream.last("/cgi-bin/scanloginqrcode").headers["cookie"] == "uuid=abc123"
        assert result.content == b"\x89PNG"

    @pytest.mark.asyncio
    async def test_login_creates_session(self, gateway, upstream, store, repository):
        upstream.route(
            "/cgi-bin/bizlogin",
            httpx.Response(
                200,
                json={"redirect_url": "/x?token=T123"},
                headers=[("set-cookie", "sess=abc; Path=/")],
            ),
        )
        upstream.route("/cgi-bin/home", httpx.Response(200, text=HOME_HTML))

        result = await gateway.request(
            self.login_request(),
            RequestContext(user_id="user-1", client_cookies={"uuid": "abc123", "auth-key": "stale"}),
        )

        # Handshake cookies forwarded, the broker's own key is not
        assert upstream.last("/cgi-bin/bizlogin").headers["cookie"] == "uuid=abc123"

        assert len(repository.rows) == 1
        session_key = result.session_key
        row = repository.rows[session_key]
        assert row.upstream_token == "T123"
        assert row.owner_user_id == "user-1"
        assert row.cookie_jar.names() == ["sess"]
        assert await store.get_cookie_string(session_key) == "sess=abc"

        assert len(result.set_cookies) == 2
        assert result.set_cookies[0].startswith(f"auth-key={session_key}; Path=/; Expires=")
        assert result.set_cookies[0].endswith("; Secure; HttpOnly")
        assert result.set_cookies[1].startswith("uuid=EXPIRED;")
        assert "set-cookie" not in result.headers
        assert result.login_failure is None
        assert result.ok

        # Display info fetched with the stored cookies
        home = upstream.last("/cgi-bin/home")
        assert home.headers["cookie"] == "sess=abc"
        assert home.url.params["token"] == "T123"
        assert result.account.nickname == "Daily Reads"
        assert row.display_name == "Daily Reads"
        assert row.avatar_url == "https://img.test/avatar.png"

    @pytest.mark.asyncio
    async def test_login_without_token_is_a_structured_failure(self, gateway, upstream, repository, metrics):
        upstream.route(
            "/cgi-bin/bizlogin",
            httpx.Response(
                200,
                json={"base_resp": {"ret": 200003, "err_msg": "invalid session"}},
                headers=[("set-cookie", "sess=abc; Path=/")],
            ),
        )

        result = await gateway.request(self.login_request(), RequestContext(user_id="user-1"))

        assert result.login_failure is not None
        assert result.login_failure.code == "LOGIN_FAILED"
        assert result.login_failure.details["base_resp"]["ret"] == 200003
        assert result.session_key is None
        assert result.set_cookies == []
        assert result.ok is False
        assert repository.rows == {}
        assert metrics.registry.get_sample_value(
            "login_failures_total", {"reason": "missing_token"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_login_with_non_json_body_is_a_failure(self, gateway, upstream, repository):
        upstream.route("/cgi-bin/bizlogin", httpx.Response(200, text="<html>oops</html>"))

        result = await gateway.request(self.login_request(), RequestContext(user_id="user-1"))

        assert result.login_failure is not None
        assert repository.rows == {}

    @pytest.mark.asyncio
    async def test_login_requires_internal_user(self, gateway, upstream):
        with pytest.raises(AuthenticationError):
            await gateway.request(self.login_request(), RequestContext())
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_login_survives_display_info_failure(self, gateway, upstream, repository):
        upstream.route(
            "/cgi-bin/bizlogin",
            httpx.Response(200, json={"redirect_url": "/x?token=T123"}, headers=[("set-cookie", "sess=abc")]),
        )
        upstream.route("/cgi-bin/home", httpx.ConnectError("connection refused"))

        result = await gateway.request(self.login_request(), RequestContext(user_id="user-1"))

        assert result.login_failure is None
        assert result.session_key in repository.rows
        assert result.account.is_empty
        assert len(result.set_cookies) == 2

    @pytest.mark.asyncio
    async def test_login_succeeds_when_durable_write_fails(self, gateway, upstream, store, repository):
        upstream.route(
            "/cgi-bin/bizlogin",
            httpx.Response(200, json={"redirect_url": "/x?token=T123"}, headers=[("set-cookie", "sess=abc")]),
        )
        upstream.route("/cgi-bin/home", httpx.Response(200, text=""))

        with patch.object(repository, "upsert", return_value=False):
            result = await gateway.request(self.login_request(), RequestContext(user_id="user-1"))

        assert result.session_key is not None
        assert repository.rows == {}
        assert await store.get_token(result.session_key) == "T123"

    @pytest.mark.asyncio
    async def test_login_succeeds_when_repository_raises(self, gateway, upstream, store, repository):
        upstream.route(
            "/cgi-bin/bizlogin",
            httpx.Response(200, json={"redirect_url": "/x?token=T123"}, headers=[("set-cookie", "sess=abc")]),
        )
        upstream.route("/cgi-bin/home", httpx.Response(200, text=""))

        with patch.object(repository, "upsert", side_effect=ConnectionError("connection reset")):
            result = await gateway.request(self.login_request(), RequestContext(user_id="user-1"))

        assert result.login_failure is None
        assert len(result.set_cookies) == 2
        assert result.set_cookies[0].startswith(f"auth-key={result.session_key};")
        assert await store.get_cookie_string(result.session_key) == "sess=abc"

    @pytest.mark.asyncio
    async def test_resolve_article_nickname(self, gateway, upstream, limiter):
        upstream.route("/s", httpx.Response(200, text="profile_nickname = \"Daily Reads\";"))

        with patch.object(limiter, "enqueue", wraps=limiter.enqueue) as enqueue:
            nickname = await gateway.resolve_article_nickname(f"{BASE_URL}/s?__biz=B1&mid=7", "u9")

        assert nickname == "Daily Reads"
        sent = upstream.last("/s")
        assert sent.url.params["mid"] == "7"
        assert "cookie" not in sent.headers
        enqueue.assert_awaited_once_with("u9")

    @pytest.mark.asyncio
    async def test_resolve_article_nickname_fetch_failure(self, gateway, upstream):
        upstream.route("/s", httpx.ConnectError("connection refused"))

        assert await gateway.resolve_article_nickname(f"{BASE_URL}/s?__biz=B1") is None

    @pytest.mark.asyncio
    async def test_resolve_article_nickname_rejects_other_hosts(self, gateway, upstream):
        with pytest.raises(ValidationError):
            await gateway.resolve_article_nickname("https://elsewhere.test/s")
        with pytest.raises(ValidationError):
            await gateway.resolve_article_nickname("file:///etc/passwd")
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_switch_account_signals_reload(self, gateway, upstream, repository):
        upstream.route(
            "/cgi-bin/bizlogin",
            httpx.Response(200, json={"base_resp": {"ret": 0}}, headers=[("set-cookie", "sess=new")]),
        )

        result = await gateway.request(
            UpstreamRequest(method="POST", path="/cgi-bin/bizlogin", action=BootstrapAction.SWITCH_ACCOUNT),
            RequestContext(session_key="k1", client_cookies={"sess": "client"}),
        )

        assert "cookie" not in upstream.last("/cgi-bin/bizlogin").headers
        assert result.set_cookies == ["switch_account=1; Path=/"]
        assert repository.rows == {}

    @pytest.mark.asyncio
    async def test_switch_account_without_session_sets_nothing(self, gateway, upstream):
        upstream.route("/cgi-bin/bizlogin", httpx.Response(200, json={}))

        result = await gateway.request(
            UpstreamRequest(method="POST", path="/cgi-bin/bizlogin", action=BootstrapAction.SWITCH_ACCOUNT),
            RequestContext(),
        )

        assert result.set_cookies == []

    @pytest.mark.asyncio
    async def test_transport_errors_propagate(self, gateway, upstream):
        upstream.route("/cgi-bin/searchbiz", httpx.ConnectTimeout("timed out"))

        with pytest.raises(httpx.ConnectTimeout):
            await gateway.request(UpstreamRequest(method="GET", path="/cgi-bin/searchbiz"), RequestContext())

    @pytest.mark.asyncio
    async def test_throttled_response_triggers_slowdown(self, gateway, upstream, limiter):
        upstream.route(
            "/cgi-bin/searchbiz",
            httpx.Response(200, json={"base_resp": {"ret": 200013, "err_msg": "freq control"}}),
        )

        payload = await gateway.request_json(UpstreamRequest(method="GET", path="/cgi-bin/searchbiz"), RequestContext())

        assert payload["base_resp"]["ret"] == 200013
        assert limiter.slowed_down is True
        assert limiter.slowdown_interval == pytest.approx(0.02)

    @pytest.mark.asyncio
    async def test_request_json_rejects_non_json(self, gateway, upstream):
        upstream.route("/cgi-bin/searchbiz", httpx.Response(200, text="<html></html>"))

        with pytest.raises(ValueError):
            await gateway.request_json(UpstreamRequest(method="GET", path="/cgi-bin/searchbiz"), RequestContext())

    @pytest.mark.asyncio
    async def test_fetch_account_info_requires_session(self, gateway, upstream):
        with pytest.raises(SessionNotFoundError):
            await gateway.fetch_account_info("missing")
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_every_call_goes_through_rate_limiter(self, gateway, upstream, limiter):
        upstream.route("/cgi-bin/searchbiz", httpx.Response(200, json={}))

        with patch.object(limiter, "enqueue", wraps=limiter.enqueue) as enqueue:
            await gateway.request(UpstreamRequest(method="GET", path="/cgi-bin/searchbiz"), RequestContext(user_id="u9"))

        enqueue.assert_awaited_once_with("u9")

    @pytest.mark.asyncio
    async def test_upstream_metrics_are_recorded(self, gateway, upstream, metrics):
        upstream.route("/cgi-bin/searchbiz", httpx.Response(200, json={}))

        await gateway.request(UpstreamRequest(method="GET", path="/cgi-bin/searchbiz"), RequestContext())

        assert metrics.registry.get_sample_value(
            "upstream_requests_total", {"action": "passthrough", "status_code": "200"}
        ) == 1.0

    def test_every_bootstrap_action_has_a_handler(self, store, limiter):
        gateway = ProxyGateway(httpx.AsyncClient(), store, limiter)
        for action in BootstrapAction:
            assert action in gateway._handlers
        assert None in gateway._handlers


class TestLoginHelpers:
    """Test cases for login response helpers."""

    def test_extract_login_token(self):
        assert extract_login_token({"redirect_url": "/cgi-bin/home?t=home/index&token=12345"}) == "12345"
        assert extract_login_token({"redirect_url": "https://mp.test/x?token=abc"}) == "abc"

    def test_extract_login_token_missing(self):
        assert extract_login_token(None) is None
        assert extract_login_token({}) is None
        assert extract_login_token({"redirect_url": ""}) is None
        assert extract_login_token({"redirect_url": "/x?other=1"}) is None
        assert extract_login_token({"redirect_url": "/x?token="}) is None
        assert extract_login_token(["not", "a", "dict"]) is None

    def test_parse_account_info(self):
        account = parse_account_info(HOME_HTML)
        assert account.nickname == "Daily Reads"
        assert account.avatar == "https://img.test/avatar.png"

    def test_parse_account_info_missing_fields(self):
        assert parse_account_info("<html></html>").is_empty

    def test_parse_article_nickname_tries_each_pattern(self):
        assert parse_article_nickname('<span class="wx_follow_nickname" id="n">Daily Reads</span>') == "Daily Reads"
        assert parse_article_nickname("var nickname = \"Daily Reads\";") == "Daily Reads"
        assert parse_article_nickname("profile_nickname = 'Daily Reads'") == "Daily Reads"

    def test_parse_article_nickname_missing(self):
        assert parse_article_nickname("<html></html>") is None
        assert parse_article_nickname('<span class="wx_follow_nickname">  </span>') is None
