"""Header and payload sanitization tests."""

from __future__ import annotations

from skygate.redaction import (
    MASKED_HOST,
    REDACTED,
    client_headers_for_upstream,
    is_sensitive_key,
    redact_headers,
    relayable_upstream_headers,
    sanitize_payload,
    scrub_text,
)


def test_redact_headers_masks_secrets_case_insensitively() -> None:
    redacted = redact_headers(
        {"Authorization": "Bearer x", "X-N8N-API-KEY": "k", "Cookie": "3x-ui=s", "Accept": "*/*"}
    )
    assert redacted == {
        "Authorization": REDACTED,
        "X-N8N-API-KEY": REDACTED,
        "Cookie": REDACTED,
        "Accept": "*/*",
    }


def test_client_headers_drop_credentials_and_hop_by_hop() -> None:
    kept = client_headers_for_upstream(
        {
            "content-type": "application/json",
            "x-session-id": "abc",
            "authorization": "Bearer user",
            "x-n8n-webhook-url": "https://evil.example",
            "host": "gateway.skypath.test",
            "origin": "https://app.skypath.test",
            "connection": "keep-alive",
            "x-forwarded-for": "10.0.0.1",
        }
    )
    assert kept == {"content-type": "application/json", "x-session-id": "abc"}


def test_relayable_headers_hide_topology() -> None:
    relayed = relayable_upstream_headers(
        [
            ("content-type", "application/json"),
            ("server", "nginx/1.25"),
            ("x-n8n-version", "1.40"),
            ("x-backend-host", "10.0.0.2"),
            ("location", "/next"),
            ("content-location", "/internal/path-on-n8n.internal.test"),
            ("access-control-allow-origin", "*"),
            ("x-page-count", "4"),
        ],
        ["n8n.internal.test"],
    )
    assert relayed == {
        "content-type": "application/json",
        "location": "/next",
        "x-page-count": "4",
    }


def test_sensitive_keys() -> None:
    for key in ("password", "apiKey", "api_key", "X-Auth-Token", "privateKey", "sessionId"):
        assert is_sensitive_key(key), key
    for key in ("orderId", "amount", "status", "event"):
        assert not is_sensitive_key(key), key


def test_scrub_text_masks_urls_and_hosts() -> None:
    text = "failed calling https://n8n.internal.test/webhook/x (n8n.internal.test:443)"
    assert scrub_text(text, ["n8n.internal.test"]) == f"failed calling {MASKED_HOST} ({MASKED_HOST}:443)"


def test_sanitize_payload_recurses() -> None:
    payload = {
        "success": False,
        "errors": [{"message": "see https://panel.internal.test/logs", "token": "t"}],
        "meta": {"password": "p", "count": 2},
    }
    assert sanitize_payload(payload) == {
        "success": False,
        "errors": [{"message": f"see {MASKED_HOST}"}],
        "meta": {"count": 2},
    }
