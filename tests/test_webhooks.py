# tests/test_webhooks.py
"""Tests for the Meta webhook endpoints and operational routes"""
from __future__ import annotations

import hashlib
import hmac as hmac_mod
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from listing_bot.core.domain import EventKind
from listing_bot.infra.rate_limiter import InMemoryRateLimiter
from listing_bot.transport.http_app import app
from listing_bot.transport.security import verify_meta_signature

SECRET = "test-secret"


def sign(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac_mod.new(secret.encode(), body, hashlib.sha256).hexdigest()


def text_payload(body: str = "Camry 2015", msg_id: str = "wamid.1") -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messages": [
                                {"from": "2348012345678", "id": msg_id, "type": "text", "text": {"body": body}}
                            ]
                        },
                    }
                ],
            }
        ],
    }


@pytest.fixture
def client():
    """App without lifespan: state is filled with mocks."""
    app.state.intake = MagicMock()
    app.state.intake.process_event = AsyncMock(return_value={"status": "ok", "route": "buffer"})
    app.state.chat_rate_limiter = InMemoryRateLimiter(max_requests=100, window_seconds=60)
    app.state.scanner = MagicMock()
    app.state.scanner.run_once = AsyncMock(return_value={"expired": 1, "processed": 1, "failed": 0})
    app.state.scanner.cleanup = AsyncMock(return_value={"purged_sessions": 2})
    return TestClient(app, raise_server_exceptions=False)


class TestMetaSignatureVerification:
    def test_valid_signature(self):
        body = b'{"test": "data"}'
        assert verify_meta_signature(sign(body), body, SECRET) is True

    def test_invalid_signature(self):
        assert verify_meta_signature("sha256=" + "0" * 64, b"body", SECRET) is False

    def test_missing_header(self):
        assert verify_meta_signature("", b"body", SECRET) is False

    def test_wrong_format(self):
        assert verify_meta_signature("md5=abc123", b"body", SECRET) is False


class TestMetaWebhookVerify:
    @patch("listing_bot.transport.meta_webhook.settings")
    def test_successful_verification(self, mock_settings, client):
        mock_settings.meta_webhook_verify_token = "my-verify-token"

        resp = client.get(
            "/webhooks/meta",
            params={"hub.mode": "subscribe", "hub.verify_token": "my-verify-token", "hub.challenge": "12345"},
        )

        assert resp.status_code == 200
        assert resp.text == "12345"

    @patch("listing_bot.transport.meta_webhook.settings")
    def test_wrong_token(self, mock_settings, client):
        mock_settings.meta_webhook_verify_token = "my-verify-token"

        resp = client.get(
            "/webhooks/meta",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "12345"},
        )

        assert resp.status_code == 403

    @patch("listing_bot.transport.meta_webhook.settings")
    def test_unset_token_never_verifies(self, mock_settings, client):
        mock_settings.meta_webhook_verify_token = None

        resp = client.get("/webhooks/meta", params={"hub.mode": "subscribe", "hub.challenge": "1"})

        assert resp.status_code == 403


class TestMetaWebhookHandler:
    @patch("listing_bot.transport.meta_webhook.settings")
    def test_signed_message_is_processed(self, mock_settings, client):
        mock_settings.meta_app_secret = SECRET
        body = json.dumps(text_payload()).encode()

        resp = client.post(
            "/webhooks/meta",
            content=body,
            headers={"X-Hub-Signature-256": sign(body), "Content-Type": "application/json"},
        )

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "processed": 1}
        event = app.state.intake.process_event.await_args.args[0]
        assert event.kind is EventKind.TEXT
        assert event.payload == "Camry 2015"

    @patch("listing_bot.transport.meta_webhook.settings")
    def test_bad_signature_is_rejected(self, mock_settings, client):
        mock_settings.meta_app_secret = SECRET
        body = json.dumps(text_payload()).encode()

        resp = client.post("/webhooks/meta", content=body, headers={"X-Hub-Signature-256": sign(body, "other")})

        assert resp.status_code == 403
        app.state.intake.process_event.assert_not_awaited()

    @patch("listing_bot.transport.meta_webhook.settings")
    def test_invalid_json_is_acknowledged(self, mock_settings, client):
        mock_settings.meta_app_secret = None

        resp = client.post("/webhooks/meta", content=b"not json")

        assert resp.status_code == 200
        app.state.intake.process_event.assert_not_awaited()

    @patch("listing_bot.transport.meta_webhook.settings")
    def test_processing_error_still_returns_200(self, mock_settings, client):
        mock_settings.meta_app_secret = None
        app.state.intake.process_event = AsyncMock(side_effect=RuntimeError("boom"))

        resp = client.post("/webhooks/meta", json=text_payload())

        assert resp.status_code == 200
        assert resp.json()["processed"] == 0

    @patch("listing_bot.transport.meta_webhook.settings")
    def test_rate_limited_sender_is_skipped(self, mock_settings, client):
        mock_settings.meta_app_secret = None
        app.state.chat_rate_limiter = InMemoryRateLimiter(max_requests=1, window_seconds=60)

        client.post("/webhooks/meta", json=text_payload(msg_id="wamid.1"))
        resp = client.post("/webhooks/meta", json=text_payload(msg_id="wamid.2"))

        assert resp.json()["processed"] == 0
        assert app.state.intake.process_event.await_count == 1


class TestOperationalEndpoints:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}

    @patch("listing_bot.transport.http_app.settings")
    def test_cron_requires_secret(self, mock_settings, client):
        mock_settings.cron_secret = "cron-secret"

        assert client.post("/cron/process").status_code == 401
        assert client.post("/cron/process", headers={"Authorization": "Bearer wrong"}).status_code == 401

        resp = client.post("/cron/process", headers={"Authorization": "Bearer cron-secret"})

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "expired": 1, "processed": 1, "failed": 0, "purged_sessions": 2}

    @patch("listing_bot.transport.http_app.settings")
    def test_metrics_token(self, mock_settings, client):
        mock_settings.is_production = False
        mock_settings.metrics_token = "metrics-token"

        assert client.get("/metrics").status_code == 401
        resp = client.get("/metrics", headers={"Authorization": "Bearer metrics-token"})
        assert resp.status_code == 200
        assert "counters" in resp.json()

    def test_unknown_route_is_404(self, client):
        assert client.get("/nope").status_code == 404

    def test_security_headers(self, client):
        resp = client.get("/health")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert "X-Request-ID" in resp.headers

    def test_well_formed_request_id_is_echoed(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "trace-42"})
        assert resp.headers["X-Request-ID"] == "trace-42"

    def test_malformed_request_id_is_replaced(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "bad id\twith spaces"})
        assert resp.headers["X-Request-ID"] != "bad id\twith spaces"
        assert len(resp.headers["X-Request-ID"]) == 32
