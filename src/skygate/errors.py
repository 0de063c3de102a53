"""Error taxonomy for the gateway.

Every error carries the HTTP status the client should see and a public
message that is safe to return. Internal detail (upstream URLs, exception
text) goes to the log only, via ``detail``.

Absorbed locally (degrade a feature, never fail a request):
    - ConfigurationIncomplete
    - CredentialResolutionFailure

Surfaced to the caller with a minimal message:
    - MalformedRequest (400)
    - PolicyDenied (403)
    - RouteNotFound (404)
    - UpstreamRejected (upstream status)
    - UpstreamUnreachable (502)
    - SettingsStoreUnavailable (503)
    - UpstreamTimeout (504)
"""

from __future__ import annotations

__all__ = [
    "ConfigurationIncomplete",
    "CredentialResolutionFailure",
    "GatewayError",
    "MalformedRequest",
    "PolicyDenied",
    "RouteNotFound",
    "SettingsStoreUnavailable",
    "UpstreamRejected",
    "UpstreamTimeout",
    "UpstreamUnreachable",
]


class GatewayError(Exception):
    """Base class for errors that map to a client-visible response."""

    status_code: int = 500
    public_message: str = "Internal gateway error"

    def __init__(
        self,
        public_message: str | None = None,
        *,
        status_code: int | None = None,
        detail: str | None = None,
    ) -> None:
        if public_message is not None:
            self.public_message = public_message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail
        super().__init__(self.public_message)


class ConfigurationIncomplete(GatewayError):
    """A required environment value is missing; the feature is disabled."""

    status_code = 503
    public_message = "Service not configured"


class CredentialResolutionFailure(GatewayError):
    """Operator credentials could not be resolved; the gateway degrades."""

    status_code = 503
    public_message = "Elevated access unavailable"


class MalformedRequest(GatewayError):
    """The gateway itself rejects the request before any upstream call."""

    status_code = 400
    public_message = "Malformed request"


class PolicyDenied(GatewayError):
    """The origin policy rejected the request."""

    status_code = 403
    public_message = "Forbidden: origin not allowed"


class RouteNotFound(GatewayError):
    """No route rule matches the request."""

    status_code = 404
    public_message = "Endpoint not found"


class SettingsStoreUnavailable(GatewayError):
    """The configuration store cannot be reached or is not configured."""

    status_code = 503
    public_message = "Settings store unavailable"


class UpstreamUnreachable(GatewayError):
    """The upstream connection failed."""

    status_code = 502
    public_message = "Upstream service unavailable"


class UpstreamTimeout(GatewayError):
    """The upstream did not answer within the configured bound."""

    status_code = 504
    public_message = "Upstream service timed out"


class UpstreamRejected(GatewayError):
    """The upstream answered with an error status.

    ``body`` holds the already-sanitized upstream payload.
    """

    public_message = "Upstream service rejected the request"

    def __init__(
        self,
        status_code: int,
        body: object = None,
        *,
        detail: str | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail)
        self.body = body
