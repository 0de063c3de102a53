"""Document-store lookups that need the operator credential.

Payment settings live at ``artifacts/{app_id}/public/settings`` and payment
records in ``artifacts/{app_id}/public/data/payments``. The store is
reached through firebase-admin; its client is blocking, so every call runs
in a worker thread.

With an ``Unavailable`` credential the store reports itself unavailable:
settings lookups return an empty mapping and payment lookups raise
``SettingsStoreUnavailable``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import date, datetime
from threading import Lock
from typing import Any, Protocol

import firebase_admin
from firebase_admin import credentials as firebase_credentials
from firebase_admin import firestore

from skygate.errors import SettingsStoreUnavailable
from skygate.logging import get_logger
from skygate.models import (
    ActiveCredential,
    AmbientDefault,
    ServiceAccountJson,
    SplitKeyPair,
)

logger = get_logger(__name__)

FIREBASE_APP_NAME = "skygate"
PAYMENT_FIELDS = (
    "orderId",
    "userId",
    "amount",
    "tariffId",
    "status",
    "createdAt",
    "completedAt",
    "operationId",
)


class SettingsStore(Protocol):
    @property
    def available(self) -> bool: ...

    async def load_payment_settings(self) -> dict[str, Any]: ...

    async def get_payment(self, order_id: str) -> dict[str, Any] | None: ...


def _to_firebase_credential(credential: ActiveCredential) -> Any:
    source = credential.source
    if isinstance(source, ServiceAccountJson):
        return firebase_credentials.Certificate(dict(source.info))
    if isinstance(source, SplitKeyPair):
        return firebase_credentials.Certificate(
            {
                "type": "service_account",
                "project_id": credential.project_id,
                "client_email": source.client_email,
                "private_key": source.private_key,
                "token_uri": "https://oauth2.googleapis.com/token",
            }
        )
    if isinstance(source, AmbientDefault):
        return firebase_credentials.ApplicationDefault()
    raise SettingsStoreUnavailable(detail="no operator credential")


def firestore_client(credential: ActiveCredential) -> Any:
    """Return a Firestore client, reusing an already-initialized app."""
    try:
        app = firebase_admin.get_app(FIREBASE_APP_NAME)
        logger.debug("firebase_app_reused", name=FIREBASE_APP_NAME)
    except ValueError:
        options = {"projectId": credential.project_id} if credential.project_id else None
        app = firebase_admin.initialize_app(
            _to_firebase_credential(credential),
            options=options,
            name=FIREBASE_APP_NAME,
        )
        logger.info("firebase_app_initialized", **credential.describe())
    return firestore.client(app)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def _first_present(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


class FirestoreSettingsStore:
    """Settings and payment lookups backed by Firestore."""

    def __init__(
        self,
        credential: ActiveCredential,
        app_id: str,
        *,
        client_factory: Callable[[ActiveCredential], Any] = firestore_client,
    ) -> None:
        self.credential = credential
        self.app_id = app_id
        self._client_factory = client_factory
        self._client: Any | None = None
        self._lock = Lock()

    @property
    def available(self) -> bool:
        return self.credential.available

    def _db(self) -> Any:
        if not self.available:
            raise SettingsStoreUnavailable(detail="operator credential unavailable")
        if self._client is not None:
            return self._client
        with self._lock:
            if self._client is None:
                try:
                    self._client = self._client_factory(self.credential)
                except SettingsStoreUnavailable:
                    raise
                except Exception as exc:
                    logger.error(
                        "settings_store_init_failed",
                        error=type(exc).__name__,
                        mode=self.credential.kind,
                    )
                    raise SettingsStoreUnavailable(detail=str(exc)) from exc
        return self._client

    def _read_settings(self) -> dict[str, Any]:
        snapshot = self._db().document(f"artifacts/{self.app_id}/public/settings").get()
        if not snapshot.exists:
            logger.warning("payment_settings_missing", app_id=self.app_id)
            return {}
        data = snapshot.to_dict() or {}
        return {
            "yoomoneyWallet": _first_present(data, "yoomoneyWallet", "yooMoneyWallet"),
            "yoomoneySecretKey": _first_present(data, "yoomoneySecretKey", "yooMoneySecretKey"),
        }

    async def load_payment_settings(self) -> dict[str, Any]:
        """Return payment settings, or ``{}`` when the store cannot provide them."""
        if not self.available:
            logger.info("payment_settings_degraded", reason="credential unavailable")
            return {}
        try:
            settings = await asyncio.to_thread(self._read_settings)
        except Exception as exc:
            logger.warning(
                "payment_settings_degraded",
                reason="store error",
                error=type(exc).__name__,
            )
            return {}
        logger.info(
            "payment_settings_loaded",
            has_wallet=bool(settings.get("yoomoneyWallet")),
            has_secret_key=bool(settings.get("yoomoneySecretKey")),
        )
        return settings

    def _read_payment(self, order_id: str) -> dict[str, Any] | None:
        collection = self._db().collection(f"artifacts/{self.app_id}/public/data/payments")
        documents = list(collection.where("orderId", "==", order_id).limit(1).stream())
        if not documents:
            return None
        document = documents[0]
        data = document.to_dict() or {}
        payment = {"id": document.id}
        payment.update({key: data.get(key) for key in PAYMENT_FIELDS})
        return _jsonable(payment)

    async def get_payment(self, order_id: str) -> dict[str, Any] | None:
        """Return the payment record for ``order_id`` or None if absent.

        Raises:
            SettingsStoreUnavailable: No credential, or the store failed.
        """
        try:
            return await asyncio.to_thread(self._read_payment, order_id)
        except SettingsStoreUnavailable:
            raise
        except Exception as exc:
            logger.error("payment_lookup_failed", order_id=order_id, error=type(exc).__name__)
            raise SettingsStoreUnavailable(detail=str(exc)) from exc
