"""Cross-origin and transport-security policy.

Development is permissive so local tooling works; production is fail
closed: only configured origins are trusted and plaintext requests are
redirected to HTTPS before anything else happens (health checks excepted).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from urllib.parse import urlsplit, urlunsplit

from skygate.logging import get_logger
from skygate.models import Decision, Environment, OriginPolicy

logger = get_logger(__name__)

ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")
ALLOWED_HEADERS = (
    "Content-Type",
    "Authorization",
    "X-Requested-With",
    "X-Correlation-ID",
    "X-Session-Id",
)
EXPOSED_HEADERS = ("X-Correlation-ID", "X-Total-Count", "X-Page-Count")
PREFLIGHT_MAX_AGE_SECONDS = 86400
HSTS_MAX_AGE_SECONDS = 31536000
HSTS_HEADER_VALUE = f"max-age={HSTS_MAX_AGE_SECONDS}; includeSubDomains; preload"


def requires_tls_redirect(environment: Environment) -> bool:
    """Return True if plaintext requests must be upgraded."""
    return environment == "production"


def decide(
    origin: str | None,
    environment: Environment,
    policy: OriginPolicy,
    *,
    allow_no_origin: bool = False,
) -> Decision:
    """Decide whether a request from ``origin`` may proceed."""
    if environment == "development":
        return Decision.allow("development")

    if not origin:
        if allow_no_origin:
            return Decision.allow("no_origin_permitted")
        return Decision.deny("no_origin")

    trusted = policy.trusted_origins
    if not trusted:
        return Decision.deny("no_trusted_origins")
    if origin.rstrip("/") in trusted:
        return Decision.allow("allow_listed")
    return Decision.deny("origin_not_allowed")


def log_denial(origin: str | None, decision: Decision, path: str) -> None:
    logger.warning(
        "origin_denied",
        origin=origin or "<none>",
        reason=decision.reason,
        path=path,
    )


def warn_if_closed(policy: OriginPolicy) -> None:
    """Log once at startup when production trusts no origin at all."""
    if policy.environment == "production" and not policy.trusted_origins:
        logger.warning(
            "no_trusted_origins",
            detail="ALLOWED_ORIGINS and FRONTEND_URL are empty; every browser origin is denied",
        )


def is_secure_request(scheme: str, headers: Mapping[str, str]) -> bool:
    """Return True for TLS connections, including TLS terminated by a proxy."""
    if scheme.lower() == "https":
        return True
    forwarded_proto = headers.get("x-forwarded-proto", "")
    if forwarded_proto.split(",", 1)[0].strip().lower() == "https":
        return True
    return headers.get("x-forwarded-ssl", "").strip().lower() == "on"


def is_tls_exempt(path: str, exempt_paths: Iterable[str]) -> bool:
    normalized = path.rstrip("/") or "/"
    return any(normalized == (item.rstrip("/") or "/") for item in exempt_paths)


def https_redirect_url(url: str) -> str:
    """Return the HTTPS equivalent of ``url`` (same host, path and query)."""
    parts = urlsplit(url)
    netloc = parts.netloc
    if netloc.endswith(":80"):
        netloc = netloc[: -len(":80")]
    return urlunsplit(("https", netloc, parts.path or "/", parts.query, ""))


def cors_headers(origin: str | None) -> dict[str, str]:
    """Headers for a response to an allowed cross-origin request."""
    if not origin:
        return {}
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Expose-Headers": ", ".join(EXPOSED_HEADERS),
        "Vary": "Origin",
    }


def preflight_headers(origin: str, requested_headers: str | None) -> dict[str, str]:
    """Headers for an allowed CORS preflight."""
    allow_headers = ", ".join(ALLOWED_HEADERS)
    if requested_headers:
        allowed = {item.lower() for item in ALLOWED_HEADERS}
        accepted = [
            item.strip()
            for item in requested_headers.split(",")
            if item.strip().lower() in allowed
        ]
        if accepted:
            allow_headers = ", ".join(accepted)
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": ", ".join(ALLOWED_METHODS),
        "Access-Control-Allow-Headers": allow_headers,
        "Access-Control-Max-Age": str(PREFLIGHT_MAX_AGE_SECONDS),
        "Vary": "Origin",
    }


def security_headers(environment: Environment, secure: bool) -> dict[str, str]:
    """Hardening headers added to every gateway response.

    HSTS is only sent in production over a secure connection.
    """
    headers = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
    }
    if secure and requires_tls_redirect(environment):
        headers["Strict-Transport-Security"] = HSTS_HEADER_VALUE
    return headers
