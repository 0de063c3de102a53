"""pytest fixtures for SkyGate."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from skygate.cache import MemoryCache
from skygate.config import GatewayConfig
from skygate.errors import SettingsStoreUnavailable
from skygate.logging import configure_logging
from skygate.main import create_app
from skygate.metrics import reset_metrics

N8N_BASE = "https://n8n.internal.test"
PANEL_HOST = "https://panel.internal.test"
FRONTEND = "https://app.skypath.test"

BASE_ENV: dict[str, str] = {
    "N8N_BASE_URL": N8N_BASE,
    "N8N_WEBHOOK_ID": "wf-main",
    "N8N_WEBHOOK_TEST_ID": "wf-health",
    "N8N_API_KEY": "n8n-secret-key",
    "XUI_HOST": PANEL_HOST,
    "XUI_USERNAME": "operator",
    "XUI_PASSWORD": "panel-password",
    "FRONTEND_URL": FRONTEND,
    "ALLOWED_ORIGINS": "https://admin.skypath.test",
    "FIREBASE_PROJECT_ID": "skypath-test",
}


class FakeRedis:
    """Minimal async Redis stub for tests."""

    def __init__(self, *, fail: bool = False) -> None:
        self._data: dict[str, str] = {}
        self.expiries: dict[str, int | None] = {}
        self.fail = fail
        self.closed = False

    def _maybe_fail(self) -> None:
        if self.fail:
            raise ConnectionError("redis down")

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self._maybe_fail()
        self._data[key] = value
        self.expiries[key] = ex

    async def get(self, key: str) -> str | None:
        self._maybe_fail()
        return self._data.get(key)

    async def delete(self, key: str) -> None:
        self._maybe_fail()
        self._data.pop(key, None)

    async def ping(self) -> bool:
        self._maybe_fail()
        return True

    async def aclose(self) -> None:
        self.closed = True


class UpstreamRecorder:
    """Fake upstream: records every request and answers via ``handler``."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.handler: Callable[[httpx.Request], Any] = self.default_handler

    @staticmethod
    def default_handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/login":
            return httpx.Response(
                200,
                json={"success": True},
                headers={"set-cookie": "3x-ui=session-token; Path=/; HttpOnly"},
            )
        return httpx.Response(200, json={"status": "ok"})

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        result = self.handler(request)
        if hasattr(result, "__await__"):
            result = await result
        return result

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def last_json(self) -> Any:
        return json.loads(self.last.content)

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


class FakeSettingsStore:
    """In-memory stand-in for the document store."""

    def __init__(
        self,
        *,
        available: bool = True,
        settings: dict[str, Any] | None = None,
        payments: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        self._available = available
        self.settings = settings or {}
        self.payments = payments or {}
        self.settings_reads = 0

    @property
    def available(self) -> bool:
        return self._available

    async def load_payment_settings(self) -> dict[str, Any]:
        self.settings_reads += 1
        if not self._available:
            return {}
        return dict(self.settings)

    async def get_payment(self, order_id: str) -> dict[str, Any] | None:
        if not self._available:
            raise SettingsStoreUnavailable(detail="test store offline")
        return self.payments.get(order_id)


@pytest.fixture(autouse=True)
def _fresh_state(caplog: pytest.LogCaptureFixture) -> Iterator[None]:
    configure_logging("DEBUG")
    caplog.set_level(logging.DEBUG)
    reset_metrics()
    yield


@pytest.fixture()
def upstream() -> UpstreamRecorder:
    return UpstreamRecorder()


@pytest.fixture()
def settings_store() -> FakeSettingsStore:
    return FakeSettingsStore()


@pytest.fixture()
def make_app(
    upstream: UpstreamRecorder,
    settings_store: FakeSettingsStore,
) -> Callable[..., FastAPI]:
    def factory(env: dict[str, str] | None = None, **overrides: Any) -> FastAPI:
        merged = {**BASE_ENV, **(env or {})}
        return create_app(
            config=GatewayConfig.from_env(merged),
            env=merged,
            upstream_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
            settings_store=overrides.pop("settings_store", settings_store),
            cache=overrides.pop("cache", MemoryCache()),
            **overrides,
        )

    return factory


@pytest.fixture()
def app(make_app: Callable[..., FastAPI]) -> FastAPI:
    return make_app()


@pytest.fixture()
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def production_app(make_app: Callable[..., FastAPI]) -> FastAPI:
    return make_app({"SKYGATE_ENV": "production"})


@pytest.fixture()
def production_client(production_app: FastAPI) -> TestClient:
    return TestClient(production_app, base_url="https://gateway.skypath.test")


@pytest.fixture()
async def async_client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
