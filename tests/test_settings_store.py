"""Firestore-backed settings store tests (fake client, no network)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest

from skygate import settings_store as settings_module
from skygate.errors import SettingsStoreUnavailable
from skygate.models import ActiveCredential, AmbientDefault, SplitKeyPair, Unavailable
from skygate.settings_store import FirestoreSettingsStore, firestore_client

AMBIENT = ActiveCredential(source=AmbientDefault(), project_id="skypath-test")


class FakeSnapshot:
    def __init__(self, doc_id: str, data: dict[str, Any] | None) -> None:
        self.id = doc_id
        self._data = data

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> dict[str, Any] | None:
        return self._data


class FakeDocument:
    def __init__(self, data: dict[str, Any] | None) -> None:
        self._data = data

    def get(self) -> FakeSnapshot:
        return FakeSnapshot("settings", self._data)


class FakeQuery:
    def __init__(self, docs: list[FakeSnapshot]) -> None:
        self._docs = docs
        self.filters: list[tuple[str, str, Any]] = []
        self._limit: int | None = None

    def where(self, field: str, op: str, value: Any) -> FakeQuery:
        self.filters.append((field, op, value))
        return self

    def limit(self, count: int) -> FakeQuery:
        self._limit = count
        return self

    def stream(self) -> list[FakeSnapshot]:
        matched = [
            doc
            for doc in self._docs
            if all((doc.to_dict() or {}).get(field) == value for field, _, value in self.filters)
        ]
        return matched[: self._limit] if self._limit is not None else matched


class FakeFirestore:
    def __init__(
        self,
        settings: dict[str, Any] | None = None,
        payments: list[FakeSnapshot] | None = None,
        fail: bool = False,
    ) -> None:
        self.settings = settings
        self.payments = payments or []
        self.fail = fail
        self.paths: list[str] = []

    def document(self, path: str) -> FakeDocument:
        self.paths.append(path)
        if self.fail:
            raise RuntimeError("deadline exceeded")
        return FakeDocument(self.settings)

    def collection(self, path: str) -> FakeQuery:
        self.paths.append(path)
        if self.fail:
            raise RuntimeError("deadline exceeded")
        return FakeQuery(self.payments)


def _store(db: FakeFirestore, credential: ActiveCredential = AMBIENT) -> FirestoreSettingsStore:
    return FirestoreSettingsStore(credential, "vpn-service", client_factory=lambda _: db)


async def test_loads_payment_settings_with_legacy_key_names() -> None:
    db = FakeFirestore(settings={"yooMoneyWallet": "4100", "yoomoneySecretKey": "s3cret"})
    settings = await _store(db).load_payment_settings()
    assert settings == {"yoomoneyWallet": "4100", "yoomoneySecretKey": "s3cret"}
    assert db.paths == ["artifacts/vpn-service/public/settings"]


async def test_missing_settings_document_is_empty(caplog) -> None:
    settings = await _store(FakeFirestore(settings=None)).load_payment_settings()
    assert settings == {}
    assert "payment_settings_missing" in caplog.text


async def test_store_errors_degrade_settings_to_empty(caplog) -> None:
    settings = await _store(FakeFirestore(fail=True)).load_payment_settings()
    assert settings == {}
    assert "payment_settings_degraded" in caplog.text


async def test_unavailable_credential_never_builds_a_client() -> None:
    calls: list[ActiveCredential] = []

    def factory(credential: ActiveCredential) -> FakeFirestore:
        calls.append(credential)
        return FakeFirestore()

    store = FirestoreSettingsStore(
        ActiveCredential(source=Unavailable()), "vpn-service", client_factory=factory
    )
    assert not store.available
    assert await store.load_payment_settings() == {}
    with pytest.raises(SettingsStoreUnavailable):
        await store.get_payment("order-1")
    assert calls == []


async def test_get_payment_returns_selected_fields() -> None:
    created = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
    db = FakeFirestore(
        payments=[
            FakeSnapshot("p-1", {"orderId": "order-1", "status": "pending", "amount": 100}),
            FakeSnapshot(
                "p-2",
                {
                    "orderId": "order-2",
                    "userId": "u-9",
                    "status": "completed",
                    "amount": 250,
                    "createdAt": created,
                    "label": "internal-only",
                },
            ),
        ]
    )
    payment = await _store(db).get_payment("order-2")
    assert payment is not None
    assert payment["id"] == "p-2"
    assert payment["status"] == "completed"
    assert payment["createdAt"] == created.isoformat()
    assert payment["completedAt"] is None
    assert "label" not in payment
    assert db.paths == ["artifacts/vpn-service/public/data/payments"]


async def test_get_payment_absent_is_none() -> None:
    assert await _store(FakeFirestore()).get_payment("order-404") is None


async def test_get_payment_store_failure_raises() -> None:
    with pytest.raises(SettingsStoreUnavailable):
        await _store(FakeFirestore(fail=True)).get_payment("order-1")


async def test_client_factory_failure_is_store_unavailable(caplog) -> None:
    def broken(credential: ActiveCredential) -> Any:
        raise RuntimeError("bad key")

    store = FirestoreSettingsStore(AMBIENT, "vpn-service", client_factory=broken)
    with pytest.raises(SettingsStoreUnavailable):
        await store.get_payment("order-1")
    assert "settings_store_init_failed" in caplog.text


async def test_client_is_created_once() -> None:
    calls = 0
    db = FakeFirestore(settings={"yoomoneyWallet": "4100"})

    def factory(credential: ActiveCredential) -> FakeFirestore:
        nonlocal calls
        calls += 1
        return db

    store = FirestoreSettingsStore(AMBIENT, "vpn-service", client_factory=factory)
    await store.load_payment_settings()
    await store.load_payment_settings()
    assert calls == 1


def test_firestore_client_initializes_named_app(monkeypatch: pytest.MonkeyPatch) -> None:
    initialized: list[dict[str, Any]] = []

    def get_app(name: str) -> Any:
        raise ValueError(name)

    def initialize_app(credential: Any, options: Any = None, name: str = "") -> str:
        initialized.append({"credential": credential, "options": options, "name": name})
        return "app-handle"

    monkeypatch.setattr(settings_module.firebase_admin, "get_app", get_app)
    monkeypatch.setattr(settings_module.firebase_admin, "initialize_app", initialize_app)
    monkeypatch.setattr(
        settings_module.firebase_credentials, "Certificate", lambda info: ("cert", info)
    )
    monkeypatch.setattr(settings_module.firestore, "client", lambda app: ("client", app))

    credential = ActiveCredential(
        source=SplitKeyPair(client_email="gw@skypath-test.iam.gserviceaccount.com", private_key="k"),
        project_id="skypath-test",
    )
    assert firestore_client(credential) == ("client", "app-handle")
    assert initialized[0]["name"] == "skygate"
    assert initialized[0]["options"] == {"projectId": "skypath-test"}
    kind, info = initialized[0]["credential"]
    assert kind == "cert"
    assert info["client_email"] == "gw@skypath-test.iam.gserviceaccount.com"
    assert info["project_id"] == "skypath-test"


def test_firestore_client_reuses_existing_app(monkeypatch: pytest.MonkeyPatch) -> None:
    def initialize_app(*args: Any, **kwargs: Any) -> Any:
        raise AssertionError("must not initialize twice")

    monkeypatch.setattr(settings_module.firebase_admin, "get_app", lambda name: "existing")
    monkeypatch.setattr(settings_module.firebase_admin, "initialize_app", initialize_app)
    monkeypatch.setattr(settings_module.firestore, "client", lambda app: ("client", app))
    assert firestore_client(AMBIENT) == ("client", "existing")
