"""Server-held secret injection tests."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from skygate.cache import MemoryCache
from skygate.config import GatewayConfig
from skygate.errors import ConfigurationIncomplete, UpstreamTimeout, UpstreamUnreachable
from skygate.routes import build_default_routes
from skygate.upstream_auth import (
    N8N_API_KEY_HEADER,
    PANEL_SESSION_CACHE_KEY,
    SecretInjector,
    extract_session_cookie,
)

from conftest import BASE_ENV, PANEL_HOST, UpstreamRecorder


def _injector(
    upstream: UpstreamRecorder,
    env: dict[str, str] | None = None,
    cache: MemoryCache | None = None,
) -> SecretInjector:
    config = GatewayConfig.from_env({**BASE_ENV, **(env or {})})
    return SecretInjector(
        n8n=config.n8n,
        panel=config.panel,
        cache=cache if cache is not None else MemoryCache(),
        client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
    )


def test_extract_session_cookie() -> None:
    assert extract_session_cookie(["lang=en; Path=/", "3x-ui=abc123; Path=/; HttpOnly"]) == (
        "3x-ui=abc123"
    )
    assert extract_session_cookie(["lang=en"]) is None
    assert extract_session_cookie([]) is None


async def test_api_key_header_for_webhook_rules(upstream: UpstreamRecorder) -> None:
    injector = _injector(upstream)
    rule = build_default_routes(GatewayConfig.from_env(BASE_ENV)).get("vpn_add_client")
    assert rule is not None
    assert await injector.headers_for(rule) == {N8N_API_KEY_HEADER: "n8n-secret-key"}


async def test_rule_without_secret_gets_no_headers(upstream: UpstreamRecorder) -> None:
    env = {"N8N_API_KEY": ""}
    injector = _injector(upstream, env)
    rule = build_default_routes(GatewayConfig.from_env({**BASE_ENV, **env})).get("webhook")
    assert rule is not None
    assert await injector.headers_for(rule) == {}


async def test_missing_api_key_is_configuration_incomplete(upstream: UpstreamRecorder) -> None:
    injector = _injector(upstream, {"N8N_API_KEY": ""})
    with pytest.raises(ConfigurationIncomplete):
        await injector.headers_for_kind("api_key")


async def test_bearer_token(upstream: UpstreamRecorder) -> None:
    injector = _injector(upstream, {"XUI_API_TOKEN": "panel-token"})
    assert await injector.headers_for_kind("bearer") == {"Authorization": "Bearer panel-token"}


async def test_panel_session_logs_in_once_and_caches(upstream: UpstreamRecorder) -> None:
    cache = MemoryCache()
    injector = _injector(upstream, cache=cache)

    first = await injector.headers_for_kind("panel_session")
    second = await injector.headers_for_kind("panel_session")

    assert first == second == {"Cookie": "3x-ui=session-token"}
    assert upstream.paths() == ["/login"]
    assert str(upstream.last.url) == f"{PANEL_HOST}/login"
    assert upstream.last_json() == {"username": "operator", "password": "panel-password"}
    assert await cache.get(PANEL_SESSION_CACHE_KEY) == "3x-ui=session-token"


async def test_concurrent_callers_share_one_login(upstream: UpstreamRecorder) -> None:
    async def slow_login(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.01)
        return UpstreamRecorder.default_handler(request)

    upstream.handler = slow_login
    injector = _injector(upstream)
    cookies = await asyncio.gather(*(injector.panel_session() for _ in range(5)))
    assert set(cookies) == {"3x-ui=session-token"}
    assert upstream.paths() == ["/login"]


async def test_invalidate_forces_new_login(upstream: UpstreamRecorder) -> None:
    injector = _injector(upstream)
    await injector.panel_session()
    await injector.invalidate_panel_session()
    await injector.panel_session()
    assert upstream.paths() == ["/login", "/login"]


async def test_login_without_cookie_fails(upstream: UpstreamRecorder, caplog) -> None:
    upstream.handler = lambda request: httpx.Response(200, json={"success": False})
    injector = _injector(upstream)
    with pytest.raises(UpstreamUnreachable) as exc_info:
        await injector.panel_session()
    assert exc_info.value.public_message == "Upstream authentication failed"
    assert "panel_login_rejected" in caplog.text
    assert "panel-password" not in caplog.text


async def test_login_timeout(upstream: UpstreamRecorder) -> None:
    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    upstream.handler = timeout
    with pytest.raises(UpstreamTimeout):
        await _injector(upstream).panel_session()


async def test_login_connection_failure(upstream: UpstreamRecorder) -> None:
    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    upstream.handler = refused
    with pytest.raises(UpstreamUnreachable):
        await _injector(upstream).panel_session()


async def test_login_requires_credentials(upstream: UpstreamRecorder) -> None:
    injector = _injector(upstream, {"XUI_USERNAME": ""})
    with pytest.raises(ConfigurationIncomplete):
        await injector.panel_session()
    assert upstream.requests == []
