"""Server-held secrets attached to upstream calls.

The browser never sees or supplies these. Three kinds exist:

- ``api_key``: the workflow engine's ``X-N8N-API-KEY`` header.
- ``bearer``: a static panel API token sent as ``Authorization: Bearer``.
- ``panel_session``: a panel session cookie obtained by logging in with
  the operator's panel credentials; cached for an hour and shared by all
  requests.
"""

from __future__ import annotations

import asyncio

import httpx

from skygate.cache import TTLCache
from skygate.config import N8nConfig, PanelConfig
from skygate.errors import ConfigurationIncomplete, UpstreamTimeout, UpstreamUnreachable
from skygate.logging import get_logger
from skygate.models import RouteRule, SecretKind

logger = get_logger(__name__)

N8N_API_KEY_HEADER = "X-N8N-API-KEY"
PANEL_SESSION_COOKIE = "3x-ui"
PANEL_SESSION_CACHE_KEY = "panel_session"
PANEL_SESSION_TTL_SECONDS = 3600
PANEL_LOGIN_TIMEOUT_SECONDS = 10.0


def extract_session_cookie(set_cookie_values: list[str]) -> str | None:
    """Return ``name=value`` of the panel session cookie, if present."""
    for raw in set_cookie_values:
        pair = raw.split(";", 1)[0].strip()
        if pair.startswith(f"{PANEL_SESSION_COOKIE}="):
            return pair
    return None


class SecretInjector:
    """Build the upstream headers that carry a rule's server-held secret."""

    def __init__(
        self,
        *,
        n8n: N8nConfig,
        panel: PanelConfig,
        cache: TTLCache,
        client: httpx.AsyncClient,
        login_timeout: float = PANEL_LOGIN_TIMEOUT_SECONDS,
    ) -> None:
        self.n8n = n8n
        self.panel = panel
        self.cache = cache
        self.client = client
        self.login_timeout = login_timeout
        self._login_lock = asyncio.Lock()

    async def headers_for(self, rule: RouteRule) -> dict[str, str]:
        if not rule.requires_injected_secret or rule.secret is None:
            return {}
        return await self.headers_for_kind(rule.secret)

    async def headers_for_kind(self, kind: SecretKind) -> dict[str, str]:
        if kind == "api_key":
            if not self.n8n.api_key:
                raise ConfigurationIncomplete(detail="N8N_API_KEY not set")
            return {N8N_API_KEY_HEADER: self.n8n.api_key}
        if kind == "bearer":
            if not self.panel.api_token:
                raise ConfigurationIncomplete(detail="XUI_API_TOKEN not set")
            return {"Authorization": f"Bearer {self.panel.api_token}"}
        cookie = await self.panel_session()
        return {"Cookie": cookie}

    async def panel_session(self) -> str:
        """Return a cached panel session cookie, logging in when needed."""
        cached = await self.cache.get(PANEL_SESSION_CACHE_KEY)
        if cached:
            return cached
        async with self._login_lock:
            cached = await self.cache.get(PANEL_SESSION_CACHE_KEY)
            if cached:
                return cached
            cookie = await self._login()
            await self.cache.set(PANEL_SESSION_CACHE_KEY, cookie, PANEL_SESSION_TTL_SECONDS)
            return cookie

    async def invalidate_panel_session(self) -> None:
        await self.cache.delete(PANEL_SESSION_CACHE_KEY)
        logger.info("panel_session_invalidated")

    async def _login(self) -> str:
        if not self.panel.has_login:
            raise ConfigurationIncomplete(detail="XUI_HOST, XUI_USERNAME or XUI_PASSWORD not set")
        login_url = f"{self.panel.host}/login"
        try:
            response = await self.client.post(
                login_url,
                json={"username": self.panel.username, "password": self.panel.password},
                headers={"Accept": "application/json"},
                timeout=self.login_timeout,
            )
        except httpx.TimeoutException as exc:
            logger.error("panel_login_timeout", error=type(exc).__name__)
            raise UpstreamTimeout(detail="panel login timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("panel_login_failed", error=type(exc).__name__)
            raise UpstreamUnreachable(detail="panel login connection failed") from exc

        cookie = extract_session_cookie(response.headers.get_list("set-cookie"))
        if cookie is None:
            logger.error("panel_login_rejected", status_code=response.status_code)
            raise UpstreamUnreachable(
                "Upstream authentication failed",
                detail=f"panel login returned {response.status_code} without a session cookie",
            )
        logger.info("panel_login_succeeded", status_code=response.status_code)
        return cookie
