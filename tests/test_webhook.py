"""
Tests for the provider webhook (handshake and event delivery).

Tests cover:
- Subscription handshake (ok, forbidden, unconfigured, health check)
- Signature policy on delivery (401)
- Ingestion, threading and realtime broadcast
- Best-effort journal
- Runtime path changes and method handling
"""

import pytest

from inbox_gateway import journal
from inbox_gateway.models import Conversation, Message, WebhookEvent
from inbox_gateway.storage import SessionLocal


WEBHOOK = "/webhook/meta"


def count_rows(model) -> int:
    with SessionLocal() as db:
        return db.query(model).count()


def post_payload(client, helpers, payload, headers=None, path=WEBHOOK):
    return client.post(
        path,
        content=helpers.encode(payload),
        headers={"Content-Type": "application/json", **(headers or {})},
    )


class TestHandshake:
    """Test GET on the provider webhook path."""

    def test_valid_token_echoes_challenge(self, client, settings, monkeypatch):
        monkeypatch.setattr(settings, "META_VERIFY_TOKEN", "abc")

        response = client.get(WEBHOOK, params={
            "hub.mode": "subscribe",
            "hub.challenge": "999",
            "hub.verify_token": "abc",
        })

        assert response.status_code == 200
        assert response.text == "999"
        assert count_rows(WebhookEvent) == 1

    def test_wrong_token_forbidden(self, client, settings, monkeypatch):
        """Wrong token: 403, journaled, no inbox side effects."""
        monkeypatch.setattr(settings, "META_VERIFY_TOKEN", "abc")

        response = client.get(WEBHOOK, params={
            "hub.mode": "subscribe",
            "hub.challenge": "999",
            "hub.verify_token": "wrong",
        })

        assert response.status_code == 403
        assert response.text == "Forbidden"
        assert count_rows(WebhookEvent) == 1
        assert count_rows(Conversation) == 0
        assert count_rows(Message) == 0

    def test_unconfigured_token_is_server_error(self, client):
        response = client.get(WEBHOOK, params={
            "hub.mode": "subscribe",
            "hub.challenge": "1",
            "hub.verify_token": "anything",
        })

        assert response.status_code == 500
        assert "Verify token is not configured" in response.text

    def test_plain_get_is_health_check(self, client):
        response = client.get(WEBHOOK)

        assert response.status_code == 200
        assert "online" in response.text
        assert count_rows(WebhookEvent) == 0

    def test_saved_instance_token_wins_over_env(self, client, settings, monkeypatch, admin_headers):
        monkeypatch.setattr(settings, "META_VERIFY_TOKEN", "env-token")
        client.put("/api/admin/whatsapp/default-instance", headers=admin_headers, json={
            "phoneNumberId": "1000",
            "accessToken": "token",
            "webhookVerifyToken": "stored-token",
        })

        params = {"hub.mode": "subscribe", "hub.challenge": "7"}
        assert client.get(WEBHOOK, params={**params, "hub.verify_token": "env-token"}).status_code == 403
        assert client.get(WEBHOOK, params={**params, "hub.verify_token": "stored-token"}).text == "7"


class TestEventDelivery:
    """Test POST on the provider webhook path."""

    def test_text_message_ingested(self, client, helpers, fake_connection):
        """A single text message creates a conversation, a message, a broadcast and a journal row."""
        payload = {"entry": [{"changes": [{"value": {"messages": [
            {"from": "15551234567", "type": "text", "text": {"body": "hi"}},
        ]}}]}]}

        response = post_payload(client, helpers, payload)

        assert response.status_code == 200
        assert response.text == "ok"

        with SessionLocal() as db:
            conversation = db.query(Conversation).one()
            message = db.query(Message).one()
            assert conversation.phone == "15551234567"
            assert conversation.last_activity_at is not None
            assert message.conversation_id == conversation.id
            assert message.direction == "inbound"
            assert message.body == "hi"
            assert message.status == "received"

        assert count_rows(WebhookEvent) == 1
        assert len(fake_connection.sent) == 1
        envelope = fake_connection.sent[0]
        assert envelope["event"] == "message_incoming"
        assert envelope["data"]["body"] == "hi"
        assert envelope["data"]["conversationId"] == conversation.id

    def test_same_sender_threads_into_one_conversation(self, client, helpers):
        payload = helpers.payload(
            helpers.text("15550001", "first", "w1"),
            helpers.text("15550001", "second", "w2"),
            helpers.text("15550002", "other", "w3"),
        )

        response = post_payload(client, helpers, payload)

        assert response.status_code == 200
        assert count_rows(Conversation) == 2
        assert count_rows(Message) == 3
        # One journal row per ingested message
        assert count_rows(WebhookEvent) == 3

    def test_media_message_stored_with_metadata(self, client, helpers):
        payload = helpers.payload({
            "from": "15550001",
            "type": "document",
            "document": {"id": "media-1", "filename": "invoice.pdf", "caption": "Invoice"},
        })

        post_payload(client, helpers, payload)

        with SessionLocal() as db:
            message = db.query(Message).one()
            assert message.body == "Invoice"
            assert message.media == {
                "url": "media-1",
                "filename": "invoice.pdf",
                "type": "application/pdf",
                "status": "received",
            }
            assert message.raw["document"]["id"] == "media-1"

    def test_no_events_acknowledged(self, client, helpers):
        response = post_payload(client, helpers, {"entry": [{"changes": [{"value": {"statuses": []}}]}]})

        assert response.status_code == 200
        assert response.text == "ok - no events"
        assert count_rows(Message) == 0
        assert count_rows(WebhookEvent) == 1

    def test_invalid_json_treated_as_no_events(self, client):
        response = client.post(WEBHOOK, content=b"not json")

        assert response.status_code == 200
        assert response.text == "ok - no events"


class TestEventSignature:
    """Test the app-secret signature policy on delivery."""

    def test_valid_signature_accepted(self, client, helpers, settings, monkeypatch):
        monkeypatch.setattr(settings, "META_APP_SECRET", "s3cret")
        raw = helpers.encode(helpers.payload(helpers.text("1555", "hi")))

        response = client.post(WEBHOOK, content=raw, headers={
            "X-Hub-Signature-256": helpers.sign(raw, "s3cret"),
        })

        assert response.status_code == 200
        assert count_rows(Message) == 1

    def test_missing_signature_rejected(self, client, helpers, settings, monkeypatch):
        monkeypatch.setattr(settings, "META_APP_SECRET", "s3cret")
        raw = helpers.encode(helpers.payload(helpers.text("1555", "hi")))

        response = client.post(WEBHOOK, content=raw)

        assert response.status_code == 401
        assert response.text == "Invalid signature"
        assert count_rows(Message) == 0
        assert count_rows(WebhookEvent) == 1

    def test_tampered_body_rejected(self, client, helpers, settings, monkeypatch):
        monkeypatch.setattr(settings, "META_APP_SECRET", "s3cret")
        raw = helpers.encode(helpers.payload(helpers.text("1555", "hi")))
        signature = helpers.sign(raw, "s3cret")

        response = client.post(WEBHOOK, content=raw.replace(b"hi", b"ho"), headers={
            "X-Hub-Signature-256": signature,
        })

        assert response.status_code == 401
        assert count_rows(Message) == 0

    def test_no_secret_ignores_header(self, client, helpers):
        raw = helpers.encode(helpers.payload(helpers.text("1555", "hi")))

        response = client.post(WEBHOOK, content=raw, headers={"X-Hub-Signature-256": "sha256=bogus"})

        assert response.status_code == 200
        assert count_rows(Message) == 1


class TestJournalBestEffort:
    """A failing journal never changes what the provider receives."""

    def test_delivery_succeeds_when_journal_fails(self, client, helpers, monkeypatch):
        def broken(**kwargs):
            raise RuntimeError("journal store down")

        monkeypatch.setattr(journal, "WebhookEvent", broken)

        response = post_payload(client, helpers, helpers.payload(helpers.text("1555", "hi")))

        assert response.status_code == 200
        assert response.text == "ok"
        assert count_rows(Message) == 1
        assert count_rows(WebhookEvent) == 0

    def test_record_returns_none_on_failure(self, client, monkeypatch):
        def broken(**kwargs):
            raise RuntimeError("journal store down")

        monkeypatch.setattr(journal, "WebhookEvent", broken)

        assert journal.record_webhook_event(body={"a": 1}) is None


class TestRuntimePath:
    """Test webhook path changes and method handling."""

    def test_unsupported_method(self, client):
        response = client.put(WEBHOOK)

        assert response.status_code == 405
        assert response.json() == {"error": "Method Not Allowed"}

    def test_path_change_applies_to_next_request(self, client, helpers, admin_headers):
        response = client.put("/api/admin/webhook-config", headers=admin_headers, json={"path": "//inbound/"})
        assert response.status_code == 200
        assert response.json()["config"]["path"] == "/webhook/inbound"

        payload = helpers.payload(helpers.text("1555", "hi"))
        assert post_payload(client, helpers, payload, path="/webhook/inbound").text == "ok"
        assert count_rows(Message) == 1

        # The old path no longer reaches the provider handler
        old = post_payload(client, helpers, payload, path=WEBHOOK)
        assert old.text != "ok"
        assert count_rows(Message) == 1

    @pytest.mark.parametrize("variant", ["/webhook/meta/", "/webhook//meta"])
    def test_slash_variants_match(self, client, helpers, variant):
        response = post_payload(client, helpers, helpers.payload(helpers.text("1555", "hi")), path=variant)

        assert response.status_code == 200
        assert response.text == "ok"


class TestProcessingFailure:
    """Test the internal-error branch of event delivery."""

    def test_ingest_failure_returns_json_500_and_journals(self, client, helpers, monkeypatch):
        from inbox_gateway import webhook

        def broken_ingest(db, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(webhook, "ingest_inbound", broken_ingest)

        response = post_payload(client, helpers, helpers.payload(helpers.text("1555", "hi")))

        assert response.status_code == 500
        assert response.json() == {"error": "Webhook processing failed"}
        assert count_rows(Message) == 0

        with SessionLocal() as db:
            event = db.query(WebhookEvent).one()
            assert event.response["status"] == 500
            assert "disk full" in event.response["error"]
            assert event.body["entry"][0]["changes"][0]["value"]["messages"][0]["from"] == "1555"
