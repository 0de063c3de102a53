"""Operator credential resolution for the configuration store.

Resolution runs once at startup and follows a strict precedence chain:

1. ``FIREBASE_SERVICE_ACCOUNT_KEY`` holding a JSON object.
2. ``FIREBASE_CLIENT_EMAIL`` + ``FIREBASE_PRIVATE_KEY`` (with a project id).
3. A project id alone: the hosting environment's ambient identity.
4. Nothing usable: ``Unavailable``. This is not an error; features that
   need elevated access fall back to caller-supplied configuration.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from threading import Lock
from typing import Any

from skygate.errors import CredentialResolutionFailure
from skygate.logging import get_logger
from skygate.models import (
    ActiveCredential,
    AmbientDefault,
    ServiceAccountJson,
    SplitKeyPair,
    Unavailable,
)

logger = get_logger(__name__)

SERVICE_ACCOUNT_VAR = "FIREBASE_SERVICE_ACCOUNT_KEY"
CLIENT_EMAIL_VAR = "FIREBASE_CLIENT_EMAIL"
PRIVATE_KEY_VAR = "FIREBASE_PRIVATE_KEY"
PROJECT_ID_VARS = ("FIREBASE_PROJECT_ID", "VITE_FIREBASE_PROJECT_ID")


def normalize_private_key(value: str) -> str:
    """Turn escaped ``\\n`` sequences into real line breaks.

    Keys pasted into ``.env`` files or CI secrets usually arrive on one line.
    """
    return value.replace("\\n", "\n")


def _value(env: Mapping[str, str], name: str) -> str | None:
    raw = env.get(name)
    if raw is None:
        return None
    cleaned = raw.strip()
    return cleaned or None


def _project_id(env: Mapping[str, str]) -> str | None:
    for name in PROJECT_ID_VARS:
        value = _value(env, name)
        if value:
            return value
    return None


def _parse_service_account(raw: str) -> dict[str, Any]:
    """Decode the service-account blob.

    Raises:
        CredentialResolutionFailure: The blob is not a JSON object.
    """
    try:
        info = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CredentialResolutionFailure(
            detail=f"{exc.msg} at position {exc.pos}"
        ) from exc
    if not isinstance(info, dict):
        raise CredentialResolutionFailure(detail="expected a JSON object")
    private_key = info.get("private_key")
    if isinstance(private_key, str):
        info["private_key"] = normalize_private_key(private_key)
    return info


def resolve_credential(env: Mapping[str, str]) -> ActiveCredential:
    """Pick the operator credential according to the precedence chain."""
    project_id = _project_id(env)

    raw_service_account = _value(env, SERVICE_ACCOUNT_VAR)
    if raw_service_account:
        try:
            info: dict[str, Any] | None = _parse_service_account(raw_service_account)
        except CredentialResolutionFailure as exc:
            logger.warning("service_account_json_invalid", error=exc.detail)
            info = None
        if info is not None:
            embedded = info.get("project_id")
            resolved_project = project_id or (embedded if isinstance(embedded, str) else None)
            credential = ActiveCredential(
                source=ServiceAccountJson(info=info),
                project_id=resolved_project,
            )
            logger.info("credential_resolved", **credential.describe())
            return credential

    client_email = _value(env, CLIENT_EMAIL_VAR)
    private_key = _value(env, PRIVATE_KEY_VAR)
    if client_email and private_key:
        if project_id:
            credential = ActiveCredential(
                source=SplitKeyPair(
                    client_email=client_email,
                    private_key=normalize_private_key(private_key),
                ),
                project_id=project_id,
            )
            logger.info("credential_resolved", **credential.describe())
            return credential
        logger.warning(
            "split_key_credential_skipped",
            reason="project id missing",
            client_email=client_email,
        )

    if project_id:
        credential = ActiveCredential(source=AmbientDefault(), project_id=project_id)
        logger.info("credential_resolved", **credential.describe())
        return credential

    credential = ActiveCredential(source=Unavailable(reason="no project id configured"))
    logger.warning(
        "credential_unavailable",
        detail="settings will come only from caller-supplied configuration",
    )
    return credential


class CredentialResolver:
    """Resolve the operator credential exactly once per process."""

    def __init__(self) -> None:
        self._active: ActiveCredential | None = None
        self._lock = Lock()

    @property
    def active(self) -> ActiveCredential | None:
        return self._active

    def resolve(self, env: Mapping[str, str]) -> ActiveCredential:
        """Return the resolved credential, resolving on first use only."""
        if self._active is not None:
            return self._active
        with self._lock:
            if self._active is None:
                self._active = resolve_credential(env)
            else:
                logger.debug("credential_reused", mode=self._active.kind)
        return self._active
