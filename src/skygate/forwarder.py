"""Request forwarding: one inbound call becomes at most one upstream call.

The Forwarder is the central coordinator for a matched request:
1. Composing the upstream URL from configuration and the validated sub-path
2. Validating and enriching structured bodies (required fields, defaults,
   payment settings from the settings store)
3. Attaching the rule's server-held secret
4. Calling the upstream with a bounded timeout
5. Relaying the response with upstream topology and credentials removed

There are no retries at this layer.
"""

from __future__ import annotations

import asyncio
import json
import math
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit

import httpx

from skygate.cache import TTLCache
from skygate.errors import (
    GatewayError,
    MalformedRequest,
    UpstreamRejected,
    UpstreamTimeout,
    UpstreamUnreachable,
)
from skygate.logging import get_logger
from skygate.metrics import MetricsRegistry, get_metrics
from skygate.models import (
    ActiveCredential,
    ForwardedRequest,
    ForwardedResponse,
    RouteRule,
    SecretKind,
)
from skygate.redaction import (
    client_headers_for_upstream,
    redact_headers,
    relayable_upstream_headers,
    sanitize_payload,
)
from skygate.routes import validate_segment
from skygate.settings_store import SettingsStore
from skygate.upstream_auth import SecretInjector

logger = get_logger(__name__)

PAYMENT_SETTINGS_FIELD = "paymentSettings"
PAYMENT_SETTINGS_KEYS = ("yoomoneyWallet", "yoomoneySecretKey")
PAYMENT_LINK_FIELDS = ("paymentUrl", "orderId", "amount", "status", "userId")
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def build_target_url(rule: RouteRule, sub_path: str | None) -> str:
    """Compose the upstream URL from configuration plus the validated sub-path."""
    url = rule.upstream.url
    if not rule.forwards_subpath:
        return url
    if not sub_path:
        raise MalformedRequest("Malformed path", detail="missing sub-path")
    segments = [validate_segment(segment) for segment in sub_path.split("/")]
    return f"{url}/{'/'.join(segments)}"


def is_structured(rule: RouteRule) -> bool:
    """Return True if the rule needs the body decoded into fields."""
    return bool(
        rule.required_fields
        or rule.any_of_fields
        or rule.positive_fields
        or rule.inject_fields
        or rule.override_fields
        or rule.reads_dynamic_settings
    )


def _missing(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _positive_number(name: str, value: Any) -> int | float:
    if isinstance(value, bool):
        raise MalformedRequest(f"{name} must be greater than zero")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise MalformedRequest(f"{name} must be greater than zero") from exc
    if not math.isfinite(number) or not number > 0:
        raise MalformedRequest(f"{name} must be greater than zero")
    return int(number) if number.is_integer() else number


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def payment_link_response(body: Any, fallback: dict[str, Any]) -> dict[str, Any]:
    """Extract the payment link from the shapes the payment workflow returns.

    The workflow answers with a list, an object wrapping ``data``, or the
    record itself.

    Raises:
        UpstreamRejected: Neither ``paymentUrl`` nor ``orderId`` is present.
    """
    record: Any = {}
    if isinstance(body, list):
        candidates = [item for item in body if isinstance(item, dict)]
        record = next(
            (item for item in candidates if item.get("paymentUrl") or item.get("orderId")),
            candidates[0] if candidates else {},
        )
    elif isinstance(body, dict) and isinstance(body.get("data"), dict):
        record = body["data"]
    elif isinstance(body, dict):
        record = body

    if not record.get("paymentUrl") and not record.get("orderId"):
        raise UpstreamRejected(
            502,
            {"success": False, "error": "Incomplete response from payment workflow"},
            detail="payment workflow returned neither paymentUrl nor orderId",
        )
    shaped: dict[str, Any] = {"success": True}
    for key in PAYMENT_LINK_FIELDS:
        value = record.get(key)
        shaped[key] = fallback.get(key) if value is None else value
    return shaped


class Forwarder:
    """Forward matched requests to their configured upstream."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        injector: SecretInjector,
        settings_store: SettingsStore,
        cache: TTLCache,
        timeout_seconds: float = 30.0,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.client = client
        self.injector = injector
        self.settings_store = settings_store
        self.cache = cache
        self.timeout_seconds = timeout_seconds
        self._metrics = metrics

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics or get_metrics()

    async def forward(
        self,
        request: ForwardedRequest,
        rule: RouteRule,
        credential: ActiveCredential,
    ) -> ForwardedResponse:
        """Forward ``request`` per ``rule`` and return the client response.

        Raises:
            GatewayError: Validation or upstream failure, unless the rule
                acknowledges failures (then a 200 with ``success: false``).
        """
        try:
            response, outcome = await self._forward(request, rule, credential)
        except GatewayError as exc:
            outcome = _outcome_for(exc)
            self.metrics.forwarded_requests_total.inc(rule.name, outcome)
            if rule.acknowledge_failures:
                logger.warning(
                    "upstream_failure_acknowledged",
                    route=rule.name,
                    outcome=outcome,
                    detail=exc.detail,
                )
                return ForwardedResponse.json(
                    200, {"success": False, "error": exc.public_message}
                )
            raise
        self.metrics.forwarded_requests_total.inc(rule.name, outcome)
        return response

    async def _forward(
        self,
        request: ForwardedRequest,
        rule: RouteRule,
        credential: ActiveCredential,
    ) -> tuple[ForwardedResponse, str]:
        url = build_target_url(rule, request.sub_path)
        method = rule.effective_method(request.method)
        payload = await self._build_payload(request, rule, credential) if is_structured(rule) else None

        headers = client_headers_for_upstream(request.headers)
        headers["accept"] = "application/json"

        send: dict[str, Any] = {}
        if payload is not None and method == "GET":
            params = [
                (key, _query_value(value)) for key, value in payload.items() if value is not None
            ]
        else:
            params = list(request.query)
            if payload is not None:
                headers.pop("content-type", None)
                send["json"] = payload
            elif method not in {"GET", "HEAD"} and request.body:
                send["content"] = request.body

        cache_key = self._cache_key(rule, method, request.method, url, params)
        if cache_key is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                self.metrics.cache_lookups_total.inc("response", "hit")
                logger.debug("response_cache_hit", route=rule.name)
                return _decode_cached(cached), "cached"
            self.metrics.cache_lookups_total.inc("response", "miss")

        headers.update(await self.injector.headers_for(rule))
        upstream = await self._call(rule, method, url, params, headers, send)

        if rule.secret == "panel_session" and upstream.status_code == 401:
            await self.injector.invalidate_panel_session()

        hosts = [urlsplit(url).hostname or "", urlsplit(rule.upstream.base_url).hostname or ""]
        if upstream.status_code >= 400:
            raise UpstreamRejected(
                upstream.status_code,
                _sanitized_error_body(upstream, hosts),
                detail=f"upstream answered {upstream.status_code}",
            )

        if rule.response_shape == "payment_link":
            try:
                body = upstream.json()
            except ValueError:
                body = None
            shaped = payment_link_response(body, payload or {})
            logger.info(
                "payment_link_generated",
                route=rule.name,
                order_id=shaped.get("orderId"),
                has_payment_url=bool(shaped.get("paymentUrl")),
            )
            return ForwardedResponse.json(upstream.status_code, shaped), "ok"

        relayed = relayable_upstream_headers(upstream.headers.multi_items(), hosts)
        media_type = None
        for key in list(relayed):
            if key.lower() == "content-type":
                media_type = relayed.pop(key)
        response = ForwardedResponse(
            status_code=upstream.status_code,
            content=upstream.content,
            headers=relayed,
            media_type=media_type,
        )
        if cache_key is not None and upstream.status_code == 200 and "json" in (media_type or ""):
            await self.cache.set(cache_key, _encode_cached(response), rule.cache_ttl_seconds)
        return response, "ok"

    async def _call(
        self,
        rule: RouteRule,
        method: str,
        url: str,
        params: list[tuple[str, str]],
        headers: dict[str, str],
        send: dict[str, Any],
    ) -> httpx.Response:
        timeout = rule.timeout_seconds or self.timeout_seconds
        logger.info(
            "upstream_request",
            route=rule.name,
            method=method,
            headers=redact_headers(headers),
        )
        try:
            with self.metrics.upstream_duration_seconds.time(rule.name):
                upstream = await asyncio.wait_for(
                    self.client.request(
                        method,
                        url,
                        params=params or None,
                        headers=headers,
                        timeout=timeout,
                        **send,
                    ),
                    timeout=timeout,
                )
        except (httpx.TimeoutException, TimeoutError) as exc:
            logger.error("upstream_timeout", route=rule.name, timeout_seconds=timeout)
            raise UpstreamTimeout(detail=f"{rule.name} exceeded {timeout}s") from exc
        except httpx.HTTPError as exc:
            logger.error("upstream_unreachable", route=rule.name, error=type(exc).__name__)
            raise UpstreamUnreachable(detail=f"{rule.name}: {type(exc).__name__}") from exc
        logger.info("upstream_response", route=rule.name, status_code=upstream.status_code)
        return upstream

    async def check_health(self, url: str, secret: SecretKind | None = None) -> tuple[bool, Any]:
        """GET ``url`` as a health check; return (healthy, sanitized JSON body)."""
        headers = {"Accept": "application/json"}
        try:
            if secret is not None:
                headers.update(await self.injector.headers_for_kind(secret))
            upstream = await asyncio.wait_for(
                self.client.get(url, headers=headers, timeout=self.timeout_seconds),
                timeout=self.timeout_seconds,
            )
        except (httpx.HTTPError, TimeoutError, GatewayError) as exc:
            logger.warning("health_check_failed", error=type(exc).__name__)
            return False, None
        host = urlsplit(url).hostname or ""
        try:
            body = sanitize_payload(upstream.json(), [host])
        except ValueError:
            body = None
        healthy = upstream.status_code < 400
        if not healthy:
            logger.warning("health_check_failed", status_code=upstream.status_code)
        return healthy, body

    async def _build_payload(
        self,
        request: ForwardedRequest,
        rule: RouteRule,
        credential: ActiveCredential,
    ) -> dict[str, Any]:
        fields = self._inbound_fields(request)

        for name in rule.required_fields:
            if _missing(fields.get(name)):
                raise MalformedRequest(f"Missing required field: {name}")
        if rule.any_of_fields and all(_missing(fields.get(name)) for name in rule.any_of_fields):
            raise MalformedRequest(
                f"One of these fields is required: {', '.join(rule.any_of_fields)}"
            )
        for name in rule.positive_fields:
            if name in fields:
                fields[name] = _positive_number(name, fields[name])

        params = {
            key: value for key, value in request.path_params.items() if value != request.sub_path
        }
        payload: dict[str, Any] = {**rule.inject_fields, **fields, **params}
        payload.update(rule.override_fields)

        if rule.reads_dynamic_settings:
            payload[PAYMENT_SETTINGS_FIELD] = await self._payment_settings(
                fields.get(PAYMENT_SETTINGS_FIELD), credential, rule
            )
        return payload

    def _inbound_fields(self, request: ForwardedRequest) -> dict[str, Any]:
        if request.method.upper() in {"GET", "HEAD"}:
            return dict(request.query)
        if request.content_type == FORM_CONTENT_TYPE:
            return dict(parse_qsl(request.body.decode("utf-8", "replace"), keep_blank_values=True))
        if not request.is_json:
            raise MalformedRequest("Unsupported content type", status_code=415)
        try:
            decoded = request.json_body()
        except ValueError as exc:
            raise MalformedRequest("Invalid JSON body") from exc
        if not isinstance(decoded, dict):
            raise MalformedRequest("JSON body must be an object")
        return decoded

    async def _payment_settings(
        self,
        inline: Any,
        credential: ActiveCredential,
        rule: RouteRule,
    ) -> dict[str, Any]:
        settings = dict(inline) if isinstance(inline, dict) else {}
        if all(settings.get(key) for key in PAYMENT_SETTINGS_KEYS):
            return settings
        if not credential.available:
            logger.info("payment_settings_inline_only", route=rule.name, reason="no credential")
            return settings
        stored = await self.settings_store.load_payment_settings()
        for key, value in stored.items():
            if value and not settings.get(key):
                settings[key] = value
        return settings

    def _cache_key(
        self,
        rule: RouteRule,
        method: str,
        inbound_method: str,
        url: str,
        params: list[tuple[str, str]],
    ) -> str | None:
        if rule.cache_ttl_seconds <= 0 or method != "GET" or inbound_method.upper() != "GET":
            return None
        query = urlencode(sorted(params))
        return f"response:{rule.name}:{url}?{query}"


def _outcome_for(exc: GatewayError) -> str:
    if isinstance(exc, UpstreamTimeout):
        return "timeout"
    if isinstance(exc, UpstreamUnreachable):
        return "unreachable"
    if isinstance(exc, UpstreamRejected):
        return "rejected"
    if isinstance(exc, MalformedRequest):
        return "invalid"
    return "error"


def _sanitized_error_body(upstream: httpx.Response, hosts: list[str]) -> Any:
    try:
        body = upstream.json()
    except ValueError:
        return None
    return sanitize_payload(body, hosts)


def _encode_cached(response: ForwardedResponse) -> str:
    return json.dumps(
        {
            "status_code": response.status_code,
            "content": response.content.decode("utf-8", "replace"),
            "headers": response.headers,
            "media_type": response.media_type,
        }
    )


def _decode_cached(raw: str) -> ForwardedResponse:
    data = json.loads(raw)
    return ForwardedResponse(
        status_code=data["status_code"],
        content=data["content"].encode("utf-8"),
        headers=dict(data.get("headers") or {}),
        media_type=data.get("media_type"),
    )
