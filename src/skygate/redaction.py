"""Header and payload sanitization.

Two audiences: the log (headers are kept but their secret values are
masked) and the client (upstream topology and credentials are removed
from anything relayed back).
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

REDACTED = "[REDACTED]"
MASKED_HOST = "[upstream]"

SENSITIVE_HEADERS = frozenset(
    {
        "authorization",
        "proxy-authorization",
        "cookie",
        "set-cookie",
        "x-api-key",
        "x-n8n-api-key",
        "x-n8n-webhook-url",
    }
)

# Never forwarded from the client: credentials are the gateway's to attach,
# and X-N8N-Webhook-Url would let a caller choose the upstream host.
CLIENT_HEADERS_DROPPED = SENSITIVE_HEADERS | frozenset(
    {
        "host",
        "origin",
        "referer",
        "content-length",
        "connection",
        "keep-alive",
        "transfer-encoding",
        "upgrade",
        "te",
        "trailer",
        "x-forwarded-for",
        "x-forwarded-host",
        "x-forwarded-proto",
        "x-forwarded-ssl",
        "x-real-ip",
    }
)

_UPSTREAM_HEADERS_DROPPED = frozenset(
    {
        "connection",
        "keep-alive",
        "transfer-encoding",
        "content-encoding",
        "content-length",
        "upgrade",
        "te",
        "trailer",
        "proxy-authenticate",
        "set-cookie",
        "server",
        "via",
        "x-powered-by",
        "x-real-ip",
        "access-control-allow-origin",
        "access-control-allow-credentials",
        "access-control-allow-methods",
        "access-control-allow-headers",
        "access-control-expose-headers",
        "access-control-max-age",
    }
)
_UPSTREAM_HEADER_PREFIXES = ("x-forwarded-", "x-upstream-", "x-backend-", "x-n8n-")

_SENSITIVE_KEY_PARTS = (
    "password",
    "passwd",
    "secret",
    "token",
    "apikey",
    "privatekey",
    "cookie",
    "authorization",
    "credential",
    "sessionid",
)
_URL_RE = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Return a copy safe to log: secret header values are masked."""
    return {
        key: REDACTED if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def client_headers_for_upstream(headers: Mapping[str, str]) -> dict[str, str]:
    """Keep only the client headers that may travel upstream."""
    return {
        key: value
        for key, value in headers.items()
        if key.lower() not in CLIENT_HEADERS_DROPPED
    }


def relayable_upstream_headers(
    headers: Iterable[tuple[str, str]],
    upstream_hosts: Iterable[str] = (),
) -> dict[str, str]:
    """Drop upstream headers that leak topology or credentials."""
    hosts = [host.lower() for host in upstream_hosts if host]
    relayed: dict[str, str] = {}
    for key, value in headers:
        lower = key.lower()
        if lower in _UPSTREAM_HEADERS_DROPPED:
            continue
        if lower.startswith(_UPSTREAM_HEADER_PREFIXES):
            continue
        if lower in {"location", "content-location"} and (
            "://" in value or any(host in value.lower() for host in hosts)
        ):
            continue
        relayed[key] = value
    return relayed


def is_sensitive_key(key: str) -> bool:
    normalized = re.sub(r"[^a-z0-9]", "", key.lower())
    return any(part in normalized for part in _SENSITIVE_KEY_PARTS)


def scrub_text(value: str, hosts: Iterable[str] = ()) -> str:
    """Mask URLs and upstream hostnames inside free text."""
    scrubbed = _URL_RE.sub(MASKED_HOST, value)
    for host in hosts:
        if host:
            scrubbed = re.sub(re.escape(host), MASKED_HOST, scrubbed, flags=re.IGNORECASE)
    return scrubbed


def sanitize_payload(value: Any, hosts: Iterable[str] = ()) -> Any:
    """Recursively remove credential-like keys and mask upstream locations."""
    host_list = [host for host in hosts if host]
    if isinstance(value, str):
        return scrub_text(value, host_list)
    if isinstance(value, list):
        return [sanitize_payload(item, host_list) for item in value]
    if isinstance(value, dict):
        return {
            str(key): sanitize_payload(item, host_list)
            for key, item in value.items()
            if not is_sensitive_key(str(key))
        }
    return value
