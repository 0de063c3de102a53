"""FastAPI entrypoint for SkyGate.

This module composes the gateway: credential resolution at startup, the
origin and transport policy as middleware, and the route table dispatched
to the Forwarder.

Key endpoints:
    - GET /health: Liveness (answered over plaintext too)
    - GET /api/vpn/health: Probes the workflow engine's health webhook
    - GET /api/payment/status/{order_id}: Payment record from the settings store
    - GET /metrics: Prometheus metrics endpoint
    - everything else: matched against the route table and forwarded

Middleware order (outermost first): security headers, HTTPS redirect,
correlation ID, request size limit, origin policy.
"""

from __future__ import annotations

import json
import os
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse

from skygate import __version__
from skygate.cache import TTLCache, create_cache
from skygate.config import GatewayConfig
from skygate.credentials import CredentialResolver
from skygate.errors import (
    GatewayError,
    MalformedRequest,
    PolicyDenied,
    UpstreamRejected,
)
from skygate.forwarder import Forwarder
from skygate.logging import (
    bind_request_context,
    clear_request_context,
    configure_logging,
    get_logger,
)
from skygate.metrics import get_metrics
from skygate.models import ForwardedRequest
from skygate.policy import (
    cors_headers,
    decide,
    https_redirect_url,
    is_secure_request,
    is_tls_exempt,
    log_denial,
    preflight_headers,
    requires_tls_redirect,
    security_headers,
    warn_if_closed,
)
from skygate.routes import RouteTable, load_route_table, validate_segment
from skygate.settings_store import FirestoreSettingsStore, SettingsStore
from skygate.upstream_auth import SecretInjector

logger = get_logger(__name__)

FORWARDED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
METRICS_PATH = "/metrics"


def error_body(exc: GatewayError) -> Any:
    """Return the client-visible body for a gateway error."""
    if isinstance(exc, UpstreamRejected) and exc.body is not None:
        return exc.body
    return {"success": False, "error": exc.public_message}


async def read_limited_body(request: Request, limit: int) -> bytes:
    """Read the request body, stopping as soon as it grows past ``limit``.

    Raises:
        MalformedRequest: The body is larger than ``limit`` (413).
    """
    chunks: list[bytes] = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            logger.warning("request_too_large", size=size, limit=limit, streamed=True)
            raise MalformedRequest("Request body too large", status_code=413)
        chunks.append(chunk)
    return b"".join(chunks)


def create_app(
    *,
    config: GatewayConfig | None = None,
    env: Mapping[str, str] | None = None,
    upstream_client: httpx.AsyncClient | None = None,
    settings_store: SettingsStore | None = None,
    cache: TTLCache | None = None,
    route_table: RouteTable | None = None,
    credential_resolver: CredentialResolver | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Every collaborator can be injected; anything not supplied is built from
    ``env`` (default ``os.environ``).
    """
    source_env: Mapping[str, str] = os.environ if env is None else env
    config = config or GatewayConfig.from_env(source_env)
    configure_logging(config.log_level, config.log_format)

    credential = (credential_resolver or CredentialResolver()).resolve(source_env)
    routes = route_table or load_route_table(config)
    owns_client = upstream_client is None
    client = upstream_client or httpx.AsyncClient(
        timeout=config.upstream_timeout_seconds,
        follow_redirects=False,
    )
    owns_cache = cache is None
    cache = cache or create_cache(config.redis_url)
    settings_store = settings_store or FirestoreSettingsStore(credential, config.app_id)
    injector = SecretInjector(n8n=config.n8n, panel=config.panel, cache=cache, client=client)
    forwarder = Forwarder(
        client=client,
        injector=injector,
        settings_store=settings_store,
        cache=cache,
        timeout_seconds=config.upstream_timeout_seconds,
    )

    warn_if_closed(config.origin_policy)
    logger.info(
        "gateway_configured",
        environment=config.environment,
        identity_mode=credential.kind,
        routes=len(routes),
        trusted_origins=len(config.origin_policy.trusted_origins),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        if owns_client:
            await client.aclose()
        if owns_cache:
            await cache.close()

    app = FastAPI(
        title="SkyGate",
        version=__version__,
        description="Secure forwarding gateway for the VPN subscription service",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.credential = credential
    app.state.routes = routes
    app.state.cache = cache
    app.state.settings_store = settings_store
    app.state.forwarder = forwarder

    def allows_no_origin(path: str) -> bool:
        if path == METRICS_PATH or is_tls_exempt(path, config.health_paths):
            return True
        try:
            matched = routes.match_path(path)
        except MalformedRequest:
            return False
        return matched is not None and matched.rule.allow_no_origin

    @app.middleware("http")
    async def origin_policy_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Apply the origin policy and attach CORS headers."""
        origin = request.headers.get("origin")
        path = request.url.path
        decision = decide(
            origin,
            config.environment,
            config.origin_policy,
            allow_no_origin=allows_no_origin(path),
        )
        if not decision.allowed:
            get_metrics().policy_denials_total.inc(decision.reason)
            log_denial(origin, decision, path)
            return JSONResponse(error_body(PolicyDenied()), status_code=403)

        if request.method == "OPTIONS" and "access-control-request-method" in request.headers:
            headers = (
                preflight_headers(origin, request.headers.get("access-control-request-headers"))
                if origin
                else {}
            )
            return Response(status_code=204, headers=headers)

        response = await call_next(request)
        for key, value in cors_headers(origin).items():
            response.headers[key] = value
        return response

    @app.middleware("http")
    async def request_size_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Reject requests that exceed the maximum allowed size."""
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                size = int(content_length)
            except ValueError:
                return JSONResponse(error_body(MalformedRequest()), status_code=400)
            if size > config.max_request_bytes:
                logger.warning("request_too_large", size=size, limit=config.max_request_bytes)
                return JSONResponse(
                    {"success": False, "error": "Request body too large"},
                    status_code=413,
                )
        return await call_next(request)

    @app.middleware("http")
    async def correlation_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Bind a correlation ID to the request's log context and echo it."""
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        bind_request_context(correlation_id, method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def tls_redirect_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Upgrade plaintext requests in production before anything else runs."""
        if (
            requires_tls_redirect(config.environment)
            and not is_tls_exempt(request.url.path, config.health_paths)
            and not is_secure_request(request.url.scheme, request.headers)
        ):
            get_metrics().tls_redirects_total.inc()
            logger.info("tls_redirect", path=request.url.path)
            return RedirectResponse(https_redirect_url(str(request.url)), status_code=308)
        return await call_next(request)

    @app.middleware("http")
    async def security_headers_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Add hardening headers to every response, redirects and denials included."""
        response = await call_next(request)
        secure = is_secure_request(request.url.scheme, request.headers)
        for key, value in security_headers(config.environment, secure).items():
            response.headers[key] = value
        return response

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        """Map gateway errors to minimal client responses."""
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "request_failed",
            error=type(exc).__name__,
            status_code=exc.status_code,
            detail=exc.detail,
        )
        return JSONResponse(error_body(exc), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Return validation errors with actionable guidance."""
        detail = json.loads(json.dumps(exc.errors(), default=str))
        return JSONResponse(
            {
                "success": False,
                "error": "Invalid request",
                "hint": "Review the path parameters and query string.",
                "detail": detail,
            },
            status_code=422,
        )

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness plus a summary of how the gateway is configured."""
        cache_ok = await cache.health()
        get_metrics().health_status.set(1.0 if cache_ok else 0.0, "cache")
        return JSONResponse(
            {
                "status": "ok" if cache_ok else "degraded",
                "version": app.version,
                "environment": config.environment,
                "credential": credential.kind,
                "settings_store": settings_store.available,
                "cache": cache_ok,
            }
        )

    @app.get("/api/vpn/health")
    async def workflow_health() -> JSONResponse:
        """Probe the workflow engine's health webhook; 503 when it is down."""
        secret = "api_key" if config.n8n.api_key else None
        healthy, data = await forwarder.check_health(config.n8n.webhook("health"), secret)
        get_metrics().health_status.set(1.0 if healthy else 0.0, "n8n")
        workflow: dict[str, Any] = {"available": healthy}
        if healthy and isinstance(data, dict):
            workflow.update({key: value for key, value in data.items() if key != "available"})
        return JSONResponse(
            {
                "status": "ok" if healthy else "error",
                "service": "skygate",
                "timestamp": datetime.now(UTC).isoformat(),
                "n8n": workflow,
            },
            status_code=200 if healthy else 503,
        )

    @app.get("/api/payment/status/{order_id}")
    async def payment_status(order_id: str) -> JSONResponse:
        """Return the stored payment record for an order."""
        validate_segment(order_id)
        payment = await settings_store.get_payment(order_id)
        if payment is None:
            logger.info("payment_not_found", order_id=order_id)
            return JSONResponse(
                {"success": False, "error": "Payment not found", "orderId": order_id},
                status_code=404,
            )
        return JSONResponse(
            {
                "success": True,
                "orderId": order_id,
                "status": payment.get("status"),
                "payment": payment,
            }
        )

    @app.get(METRICS_PATH)
    async def metrics_endpoint() -> PlainTextResponse:
        """Expose Prometheus metrics."""
        return PlainTextResponse(
            get_metrics().collect_all(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    @app.api_route("/{full_path:path}", methods=FORWARDED_METHODS, include_in_schema=False)
    async def forward(request: Request, full_path: str) -> Response:
        """Dispatch any other request through the route table."""
        matched = routes.match(request.method, request.url.path)
        body = await read_limited_body(request, config.max_request_bytes)
        forwarded = ForwardedRequest(
            method=request.method,
            path=request.url.path,
            headers={key.lower(): value for key, value in request.headers.items()},
            query=list(request.query_params.multi_items()),
            body=body,
            path_params=matched.path_params,
            sub_path=matched.sub_path,
        )
        result = await forwarder.forward(forwarded, matched.rule, credential)
        return Response(
            content=result.content,
            status_code=result.status_code,
            headers=result.headers,
            media_type=result.media_type,
        )

    return app


app = create_app()
