"""Static route table: inbound method/path to upstream target.

The table is built once at startup, either from the built-in defaults
(derived from ``GatewayConfig``) or from a YAML file named by
``SKYGATE_ROUTES_PATH``. Upstream URLs come from configuration only; a
caller can influence nothing but the validated sub-path and the query.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from skygate.config import GatewayConfig
from skygate.errors import MalformedRequest, RouteNotFound
from skygate.logging import get_logger
from skygate.models import PATH_PARAM_RE, RouteRule, UpstreamTarget

logger = get_logger(__name__)

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9._~-]+$")


class RouteTableError(ValueError):
    """The route file is unreadable or contains an invalid rule."""


@dataclass(frozen=True)
class RouteMatch:
    """A matched rule plus the values captured from the inbound path."""

    rule: RouteRule
    path_params: dict[str, str] = field(default_factory=dict)
    sub_path: str | None = None


def validate_segment(segment: str) -> str:
    """Reject path segments that could escape the configured upstream path."""
    if not segment:
        raise MalformedRequest("Malformed path", detail="empty path segment")
    if segment in {".", ".."}:
        raise MalformedRequest("Malformed path", detail="dot segment in path")
    if not _SEGMENT_RE.match(segment):
        raise MalformedRequest("Malformed path", detail=f"disallowed characters in {segment!r}")
    return segment


def _split(path: str) -> list[str]:
    segments = path.lstrip("/").split("/")
    if len(segments) > 1 and segments[-1] == "":
        segments.pop()
    return segments


def _match_rule(rule: RouteRule, segments: list[str]) -> RouteMatch | None:
    pattern = rule.segments
    params: dict[str, str] = {}
    for index, expected in enumerate(pattern):
        param = PATH_PARAM_RE.match(expected)
        if param and param.group(2):
            remainder = segments[index:]
            if not remainder or remainder == [""]:
                raise MalformedRequest("Malformed path", detail="missing sub-path")
            sub_path = "/".join(validate_segment(item) for item in remainder)
            params[param.group(1)] = sub_path
            return RouteMatch(rule=rule, path_params=params, sub_path=sub_path)
        if index >= len(segments):
            return None
        actual = segments[index]
        if param:
            params[param.group(1)] = validate_segment(actual)
        elif actual != expected:
            return None
    if len(segments) != len(pattern):
        if not (pattern == [] and segments == [""]):
            return None
    return RouteMatch(rule=rule, path_params=params)


class RouteTable:
    """Ordered, immutable collection of route rules. First match wins."""

    def __init__(self, rules: Iterable[RouteRule]) -> None:
        self._rules = tuple(rules)
        names = [rule.name for rule in self._rules]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise RouteTableError(f"duplicate route names: {', '.join(duplicates)}")

    def __iter__(self) -> Iterator[RouteRule]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def get(self, name: str) -> RouteRule | None:
        for rule in self._rules:
            if rule.name == name:
                return rule
        return None

    def _literal_prefix_matches(self, rule: RouteRule, segments: list[str]) -> bool:
        for index, expected in enumerate(rule.segments):
            if PATH_PARAM_RE.match(expected):
                return True
            if index >= len(segments) or segments[index] != expected:
                return False
        return True

    def match_path(self, path: str) -> RouteMatch | None:
        """Return the first rule matching ``path`` regardless of method."""
        segments = _split(path)
        for rule in self._rules:
            if not self._literal_prefix_matches(rule, segments):
                continue
            matched = _match_rule(rule, segments)
            if matched is not None:
                return matched
        return None

    def match(self, method: str, path: str) -> RouteMatch:
        """Resolve an inbound request to a rule.

        Raises:
            RouteNotFound: No rule matches the method and path.
            MalformedRequest: A rule matches but the captured sub-path or a
                parameter contains a disallowed segment.
        """
        method = method.upper()
        segments = _split(path)
        for rule in self._rules:
            if method not in rule.methods:
                continue
            if not self._literal_prefix_matches(rule, segments):
                continue
            matched = _match_rule(rule, segments)
            if matched is not None:
                return matched
        raise RouteNotFound(detail=f"{method} {path}")

    def describe(self) -> list[dict[str, Any]]:
        """Return a log-safe listing (upstream hosts included, never secrets)."""
        return [
            {
                "name": rule.name,
                "methods": list(rule.methods),
                "path": rule.path,
                "upstream": rule.upstream.url,
                "secret": rule.secret if rule.requires_injected_secret else None,
                "allow_no_origin": rule.allow_no_origin,
            }
            for rule in self._rules
        ]


def build_default_routes(config: GatewayConfig) -> RouteTable:
    """Build the built-in route table from environment configuration."""
    n8n = config.n8n
    inject_api_key = n8n.api_key is not None
    webhook_secret: dict[str, Any] = (
        {"requires_injected_secret": True, "secret": "api_key"} if inject_api_key else {}
    )

    def webhook(operation: str) -> UpstreamTarget:
        return UpstreamTarget(base_url=n8n.webhook(operation))

    rules = [
        RouteRule(
            name="webhook",
            methods=("POST",),
            path="/webhook/{sub_path:path}",
            upstream=UpstreamTarget(base_url=n8n.base_url, path="/webhook"),
            **webhook_secret,
        ),
        RouteRule(
            name="vpn_add_client",
            path="/api/vpn/add-client",
            upstream=webhook("add_client"),
            required_fields=("clientId",),
            **webhook_secret,
        ),
        RouteRule(
            name="vpn_delete_client",
            path="/api/vpn/delete-client",
            upstream=webhook("delete_client"),
            required_fields=("clientId",),
            **webhook_secret,
        ),
        RouteRule(
            name="vpn_client_stats",
            path="/api/vpn/client-stats",
            upstream=webhook("client_stats"),
            **webhook_secret,
        ),
        RouteRule(
            name="vpn_inbounds",
            methods=("GET",),
            path="/api/vpn/inbounds",
            upstream=webhook("inbounds"),
            inject_fields={"operation": "get_inbounds", "category": "get_server_data"},
            upstream_method="GET",
            **webhook_secret,
        ),
        RouteRule(
            name="vpn_inbound",
            methods=("GET",),
            path="/api/vpn/inbounds/{inboundId}",
            upstream=webhook("inbound"),
            inject_fields={"operation": "get_inbound", "category": "get_server_data"},
            upstream_method="GET",
            **webhook_secret,
        ),
        RouteRule(
            name="vpn_sync_user",
            path="/api/vpn/sync-user",
            upstream=webhook("sync_user"),
            any_of_fields=("userId", "email", "uuid"),
            **webhook_secret,
        ),
        RouteRule(
            name="payment_generate_link",
            path="/api/payment/generate-link",
            upstream=webhook("payment"),
            reads_dynamic_settings=True,
            required_fields=("userId", "amount"),
            positive_fields=("amount",),
            inject_fields={"tariffId": None},
            override_fields={"mode": "generateLink"},
            response_shape="payment_link",
            **webhook_secret,
        ),
        RouteRule(
            name="payment_notification",
            path="/api/payment/webhook",
            upstream=webhook("payment"),
            allow_no_origin=True,
            reads_dynamic_settings=True,
            override_fields={"mode": "processNotification"},
            acknowledge_failures=True,
            **webhook_secret,
        ),
    ]

    panel = config.panel
    if panel.host:
        if panel.has_login:
            panel_secret: dict[str, Any] = {
                "requires_injected_secret": True,
                "secret": "panel_session",
            }
        elif panel.api_token:
            panel_secret = {"requires_injected_secret": True, "secret": "bearer"}
        else:
            panel_secret = {}
        rules.append(
            RouteRule(
                name="panel",
                methods=("GET", "POST", "PUT", "PATCH", "DELETE"),
                path="/api/xui/{sub_path:path}",
                upstream=UpstreamTarget(base_url=panel.host),
                cache_ttl_seconds=30,
                **panel_secret,
            )
        )
    else:
        logger.info("panel_route_disabled", reason="XUI_HOST not set")

    return RouteTable(rules)


def load_routes_yaml(path: str | Path) -> RouteTable:
    """Load a route table from YAML.

    The file holds either a list of rules or a mapping with a ``routes``
    list. Each rule uses the ``RouteRule`` field names; ``upstream`` is a
    mapping with ``base_url`` and optional ``path``.
    """
    route_path = Path(path)
    try:
        raw = yaml.safe_load(route_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise RouteTableError(f"cannot read route file {route_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise RouteTableError(f"invalid YAML in {route_path}: {exc}") from exc

    entries = raw.get("routes") if isinstance(raw, dict) else raw
    if not isinstance(entries, list) or not entries:
        raise RouteTableError(f"{route_path} must define a non-empty list of routes")

    rules: list[RouteRule] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise RouteTableError(f"route #{index} must be a mapping")
        try:
            rules.append(RouteRule.model_validate(entry))
        except ValidationError as exc:
            name = entry.get("name", f"#{index}")
            raise RouteTableError(f"invalid route {name}: {exc}") from exc
    logger.info("routes_loaded", path=str(route_path), count=len(rules))
    return RouteTable(rules)


def load_route_table(config: GatewayConfig) -> RouteTable:
    """Return the YAML table when configured, otherwise the built-in one."""
    if config.routes_path:
        return load_routes_yaml(config.routes_path)
    return build_default_routes(config)
