"""Environment-derived configuration, read once at startup."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from skygate.models import Environment, OriginPolicy

DEFAULT_N8N_BASE_URL = "https://n8n.skypath.fun"
DEFAULT_WEBHOOK_ID = "8a8b74ff-eedf-4ad2-9783-a5123ac073ed"
DEFAULT_HEALTH_PATHS = ("/health", "/api/vpn/health")
DEFAULT_MAX_REQUEST_BYTES = 10 * 1024 * 1024
DEFAULT_UPSTREAM_TIMEOUT_SECONDS = 30.0

_PRODUCTION_NAMES = {"prod", "production"}


def _first(env: Mapping[str, str], *names: str) -> str | None:
    """Return the first non-blank value among ``names``."""
    for name in names:
        value = env.get(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _split_csv(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def parse_environment(raw: str | None) -> Environment:
    """Map NODE_ENV-style values onto the two supported environments.

    Anything that is not recognizably production is development.
    """
    value = (raw or "").strip().lower()
    return "production" if value in _PRODUCTION_NAMES else "development"


@dataclass(frozen=True)
class N8nConfig:
    """Workflow webhook endpoints, one per operation."""

    base_url: str
    api_key: str | None
    webhooks: dict[str, str] = field(default_factory=dict)

    def webhook(self, operation: str) -> str:
        return self.webhooks.get(operation) or self.webhooks["add_client"]


@dataclass(frozen=True)
class PanelConfig:
    """3x-ui panel location and the operator identity used to log in."""

    host: str | None
    username: str | None = field(default=None, repr=False)
    password: str | None = field(default=None, repr=False)
    api_token: str | None = field(default=None, repr=False)

    @property
    def has_login(self) -> bool:
        return bool(self.host and self.username and self.password)


@dataclass(frozen=True)
class GatewayConfig:
    """Everything the gateway reads from the environment."""

    environment: Environment
    origin_policy: OriginPolicy
    n8n: N8nConfig
    panel: PanelConfig
    app_id: str = "vpn-service"
    routes_path: str | None = None
    health_paths: tuple[str, ...] = DEFAULT_HEALTH_PATHS
    upstream_timeout_seconds: float = DEFAULT_UPSTREAM_TIMEOUT_SECONDS
    max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES
    redis_url: str | None = None
    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> GatewayConfig:
        """Build the configuration from an environment mapping.

        ``env`` defaults to ``os.environ``; tests pass a plain dict.
        """
        source: Mapping[str, str] = os.environ if env is None else env
        environment = parse_environment(_first(source, "SKYGATE_ENV", "NODE_ENV"))
        origin_policy = OriginPolicy(
            environment=environment,
            allowed_origins=_split_csv(source.get("ALLOWED_ORIGINS")),
            frontend_url=_first(source, "FRONTEND_URL", "VITE_FRONTEND_URL"),
        )
        return cls(
            environment=environment,
            origin_policy=origin_policy,
            n8n=_load_n8n(source),
            panel=PanelConfig(
                host=(_first(source, "XUI_HOST") or "").rstrip("/") or None,
                username=_first(source, "XUI_USERNAME"),
                password=_first(source, "XUI_PASSWORD"),
                api_token=_first(source, "XUI_API_TOKEN"),
            ),
            app_id=_first(source, "APP_ID") or "vpn-service",
            routes_path=_first(source, "SKYGATE_ROUTES_PATH"),
            health_paths=_split_csv(source.get("SKYGATE_HEALTH_PATHS"))
            or DEFAULT_HEALTH_PATHS,
            upstream_timeout_seconds=_get_float(
                source,
                "SKYGATE_UPSTREAM_TIMEOUT_SECONDS",
                DEFAULT_UPSTREAM_TIMEOUT_SECONDS,
            ),
            max_request_bytes=_get_int(
                source, "SKYGATE_MAX_REQUEST_BYTES", DEFAULT_MAX_REQUEST_BYTES
            ),
            redis_url=_first(source, "SKYGATE_REDIS_URL"),
            log_level=_first(source, "SKYGATE_LOG_LEVEL") or "INFO",
            log_format=_first(source, "SKYGATE_LOG_FORMAT") or "json",
        )


def _load_n8n(env: Mapping[str, str]) -> N8nConfig:
    base_url = (_first(env, "N8N_BASE_URL") or DEFAULT_N8N_BASE_URL).rstrip("/")
    webhook_id = _first(env, "N8N_WEBHOOK_ID") or DEFAULT_WEBHOOK_ID
    test_webhook_id = _first(env, "N8N_WEBHOOK_TEST_ID") or webhook_id
    default_url = f"{base_url}/webhook/{webhook_id}"
    overrides = {
        "add_client": "N8N_WEBHOOK_ADD_CLIENT",
        "delete_client": "N8N_WEBHOOK_DELETE_CLIENT",
        "client_stats": "N8N_WEBHOOK_GET_STATS",
        "inbounds": "N8N_WEBHOOK_GET_INBOUNDS",
        "inbound": "N8N_WEBHOOK_GET_INBOUND",
        "sync_user": "N8N_WEBHOOK_SYNC_USER",
        "payment": "N8N_WEBHOOK_PAYMENT",
    }
    webhooks = {
        operation: _first(env, variable) or default_url
        for operation, variable in overrides.items()
    }
    webhooks["health"] = (
        _first(env, "N8N_WEBHOOK_HEALTH") or f"{base_url}/webhook/{test_webhook_id}"
    )
    return N8nConfig(
        base_url=base_url,
        api_key=_first(env, "N8N_API_KEY"),
        webhooks=webhooks,
    )
