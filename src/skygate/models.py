"""Value objects for SkyGate.

This module defines the data structures shared by the gateway components:
- Credential sources and the resolved ActiveCredential
- The origin policy and its per-request Decision
- Route rules and upstream targets
- Forwarded request/response envelopes

Configuration-shaped types (OriginPolicy, RouteRule) are frozen pydantic
models so they can be loaded from YAML and validated once at startup.
Per-call envelopes are plain dataclasses.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Environment = Literal["development", "production"]
SecretKind = Literal["api_key", "bearer", "panel_session"]
ResponseShape = Literal["passthrough", "payment_link"]

PATH_PARAM_RE = re.compile(r"^\{([A-Za-z_][A-Za-z0-9_]*)(:path)?\}$")
_METHODS = {"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"}


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} in JSON body")


def _finite_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        raise ValueError(f"number out of range in JSON body: {text}")
    return value


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServiceAccountJson:
    """Credential built from a full service-account JSON document."""

    info: Mapping[str, Any] = field(repr=False)
    kind: str = field(default="service_account_json", init=False)

    @property
    def client_email(self) -> str | None:
        value = self.info.get("client_email")
        return value if isinstance(value, str) else None


@dataclass(frozen=True)
class SplitKeyPair:
    """Credential assembled from a separate client email and private key."""

    client_email: str
    private_key: str = field(repr=False)
    kind: str = field(default="split_key_pair", init=False)


@dataclass(frozen=True)
class AmbientDefault:
    """Identity discovered implicitly from the hosting environment."""

    kind: str = field(default="ambient_default", init=False)


@dataclass(frozen=True)
class Unavailable:
    """No operator identity; privileged lookups degrade."""

    reason: str = "no credentials configured"
    kind: str = field(default="unavailable", init=False)


CredentialSource = ServiceAccountJson | SplitKeyPair | AmbientDefault | Unavailable


@dataclass(frozen=True)
class ActiveCredential:
    """The credential chosen at startup plus the target project."""

    source: CredentialSource
    project_id: str | None = None

    @property
    def available(self) -> bool:
        return not isinstance(self.source, Unavailable)

    @property
    def kind(self) -> str:
        return self.source.kind

    def describe(self) -> dict[str, Any]:
        """Return a log-safe summary (never includes key material)."""
        summary: dict[str, Any] = {"mode": self.kind, "project_id": self.project_id}
        if isinstance(self.source, SplitKeyPair):
            summary["client_email"] = self.source.client_email
        elif isinstance(self.source, ServiceAccountJson):
            summary["client_email"] = self.source.client_email
        elif isinstance(self.source, Unavailable):
            summary["reason"] = self.source.reason
        return summary


# ---------------------------------------------------------------------------
# Origin policy
# ---------------------------------------------------------------------------


class OriginPolicy(BaseModel):
    """Cross-origin configuration, fixed at startup.

    In production an empty ``allowed_origins`` with no ``frontend_url``
    trusts no origin at all.
    """

    model_config = ConfigDict(frozen=True)

    environment: Environment = "development"
    allowed_origins: frozenset[str] = Field(default_factory=frozenset)
    frontend_url: str | None = None

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def normalize_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple, set, frozenset)):
            return frozenset(
                str(item).strip().rstrip("/") for item in value if str(item).strip()
            )
        return value

    @field_validator("frontend_url")
    @classmethod
    def normalize_frontend_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip().rstrip("/")
        return cleaned or None

    @property
    def trusted_origins(self) -> frozenset[str]:
        if self.frontend_url:
            return self.allowed_origins | {self.frontend_url}
        return self.allowed_origins


@dataclass(frozen=True)
class Decision:
    """Outcome of an origin policy check."""

    allowed: bool
    reason: str

    @classmethod
    def allow(cls, reason: str) -> Decision:
        return cls(allowed=True, reason=reason)

    @classmethod
    def deny(cls, reason: str) -> Decision:
        return cls(allowed=False, reason=reason)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


class UpstreamTarget(BaseModel):
    """Configured upstream location: base URL plus a fixed path."""

    model_config = ConfigDict(frozen=True)

    base_url: str
    path: str = ""

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, value: str) -> str:
        cleaned = value.strip().rstrip("/")
        if not cleaned.startswith(("http://", "https://")):
            raise ValueError("base_url must be an absolute http(s) URL")
        return cleaned

    @field_validator("path")
    @classmethod
    def validate_path(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            return ""
        if "://" in cleaned or ".." in cleaned.split("/"):
            raise ValueError("upstream path must be a plain absolute path")
        return "/" + cleaned.strip("/")

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.path}"


class RouteRule(BaseModel):
    """Static mapping from an inbound method/path to an upstream target.

    Attributes:
        name: Stable identifier used in logs and metrics.
        methods: Inbound HTTP methods the rule accepts.
        path: Inbound pattern. ``{name}`` matches one segment; a final
            ``{name:path}`` captures the sub-path forwarded upstream.
        upstream: Where matching requests are sent.
        requires_injected_secret: Attach the server-held ``secret``.
        allow_no_origin: Accept requests without an Origin header in
            production (server-to-server callers such as payment providers).
        reads_dynamic_settings: Fill payment settings from the settings
            store when the caller's inline settings are incomplete.
        required_fields: Body fields that must be present and non-empty.
        any_of_fields: At least one of these body fields must be present.
        positive_fields: Numeric body fields that must be greater than zero.
        inject_fields: Defaults merged under the caller's JSON body.
        override_fields: Fields forced over the caller's body (workflow mode).
        upstream_method: Method used upstream (body becomes query for GET).
        response_shape: How a successful upstream body is relayed.
        acknowledge_failures: Always answer 200 so the caller does not retry.
        cache_ttl_seconds: Cache successful GET responses for this long.
        timeout_seconds: Per-rule override of the upstream timeout.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    methods: tuple[str, ...] = ("POST",)
    path: str
    upstream: UpstreamTarget
    requires_injected_secret: bool = False
    secret: SecretKind | None = None
    allow_no_origin: bool = False
    reads_dynamic_settings: bool = False
    required_fields: tuple[str, ...] = ()
    any_of_fields: tuple[str, ...] = ()
    positive_fields: tuple[str, ...] = ()
    inject_fields: dict[str, Any] = Field(default_factory=dict)
    override_fields: dict[str, Any] = Field(default_factory=dict)
    upstream_method: str | None = None
    response_shape: ResponseShape = "passthrough"
    acknowledge_failures: bool = False
    cache_ttl_seconds: int = Field(default=0, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)

    @field_validator("methods", mode="before")
    @classmethod
    def normalize_methods(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        if isinstance(value, (list, tuple, set, frozenset)):
            methods = tuple(str(item).strip().upper() for item in value)
            unknown = [item for item in methods if item not in _METHODS]
            if unknown:
                raise ValueError(f"unsupported methods: {', '.join(unknown)}")
            return methods
        return value

    @field_validator("upstream_method")
    @classmethod
    def normalize_upstream_method(cls, value: str | None) -> str | None:
        if value is None:
            return None
        method = value.strip().upper()
        if method not in _METHODS:
            raise ValueError(f"unsupported upstream_method: {value}")
        return method

    @field_validator("path")
    @classmethod
    def validate_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("path must start with '/'")
        segments = [segment for segment in value.strip("/").split("/") if segment]
        for index, segment in enumerate(segments):
            match = PATH_PARAM_RE.match(segment)
            if "{" in segment and match is None:
                raise ValueError(f"invalid path parameter: {segment}")
            if match and match.group(2) and index != len(segments) - 1:
                raise ValueError("a ':path' parameter must be the last segment")
        return "/" + "/".join(segments)

    @model_validator(mode="after")
    def validate_secret(self) -> RouteRule:
        if self.requires_injected_secret and self.secret is None:
            raise ValueError(f"route {self.name} requires a secret kind")
        return self

    @property
    def segments(self) -> list[str]:
        return [segment for segment in self.path.strip("/").split("/") if segment]

    @property
    def forwards_subpath(self) -> bool:
        segments = self.segments
        if not segments:
            return False
        match = PATH_PARAM_RE.match(segments[-1])
        return bool(match and match.group(2))

    def effective_method(self, inbound_method: str) -> str:
        return self.upstream_method or inbound_method.upper()


# ---------------------------------------------------------------------------
# Forwarded envelopes
# ---------------------------------------------------------------------------


@dataclass
class ForwardedRequest:
    """Inbound call as seen by the forwarder (lives for one request)."""

    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    query: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    path_params: dict[str, str] = field(default_factory=dict)
    sub_path: str | None = None

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "").split(";", 1)[0].strip().lower()

    @property
    def origin(self) -> str | None:
        return self.headers.get("origin")

    def json_body(self) -> Any:
        """Return the decoded JSON body, ``{}`` when empty.

        Raises ValueError if a JSON body cannot be decoded or contains
        ``NaN`` or ``Infinity``, which cannot be re-encoded upstream.
        """
        if not self.body.strip():
            return {}
        return json.loads(
            self.body, parse_constant=_reject_constant, parse_float=_finite_float
        )

    @property
    def is_json(self) -> bool:
        return self.content_type in {"", "application/json"} or self.content_type.endswith(
            "+json"
        )


@dataclass
class ForwardedResponse:
    """What the gateway returns to the client for one call."""

    status_code: int
    content: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    media_type: str | None = "application/json"

    @classmethod
    def json(
        cls,
        status_code: int,
        payload: Any,
        headers: dict[str, str] | None = None,
    ) -> ForwardedResponse:
        return cls(
            status_code=status_code,
            content=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            headers=dict(headers or {}),
            media_type="application/json",
        )

    def json_body(self) -> Any:
        return json.loads(self.content) if self.content else None
