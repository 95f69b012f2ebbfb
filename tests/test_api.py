"""
Tests for the session, sync, media, health and metrics routes.

Tests cover:
- Sync triggers: 202, 404 unknown session, 409 not connected / already syncing
- Sync status including the IDLE default
- Message listing with filters and pagination
- Contact listing
- Signed media access
- Health probes and metrics exposition
"""

import base64

from prometheus_client import REGISTRY

from chatsync.models import Message, SyncLock, SyncState
from chatsync.storage import SessionLocal
from tests.helpers import envelope, make_chat, make_message, wait_for

DIRECT = "5511999999999@s.whatsapp.net"
OTHER = "5511777777777@s.whatsapp.net"


def sync_states():
    with SessionLocal() as db:
        return [(s.status, s.error_message) for s in db.query(SyncState).all()]


def ingest(client, *messages):
    for message in messages:
        client.post("/webhook", json=envelope("messages.upsert", message))


class TestHealth:
    def test_live(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "reason": None}

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"


class TestSyncRoutes:
    """Sync triggers are rejected synchronously or accepted with 202."""

    def test_initial_sync_accepted(self, client, channel_session, fake_gateway):
        fake_gateway.chat_pages = [[make_chat(DIRECT, "Maria")]]
        fake_gateway.messages = {DIRECT: [make_message("h1", DIRECT), make_message("h2", DIRECT, timestamp=1736935300)]}

        response = client.post(f"/sessions/{channel_session.id}/sync/initial")

        assert response.status_code == 202
        assert response.json() == {
            "success": True,
            "message": "initial sync started",
            "session_id": channel_session.id,
            "sync_type": "initial",
        }
        assert wait_for(lambda: sync_states() == [("COMPLETED", None)])

        status = client.get(f"/sessions/{channel_session.id}/sync/status").json()
        assert status["status"] == "COMPLETED"
        assert status["sync_type"] == "initial"
        assert status["messages_synced"] == 2
        assert status["chats_synced"] == 1
        assert status["last_message_timestamp"] == 1736935300
        assert status["progress"] is None

    def test_gap_fill_accepted(self, client, channel_session):
        response = client.post(f"/sessions/{channel_session.id}/sync/gap-fill")
        assert response.status_code == 202
        assert response.json()["sync_type"] == "gap_fill"
        assert wait_for(lambda: sync_states() == [("COMPLETED", None)])

    def test_unknown_session(self, client):
        assert client.post("/sessions/missing/sync/initial").status_code == 404
        assert client.get("/sessions/missing/sync/status").status_code == 404

    def test_not_connected(self, client, db, channel_session):
        channel_session.status = "DISCONNECTED"
        db.commit()

        response = client.post(f"/sessions/{channel_session.id}/sync/initial")

        assert response.status_code == 409
        status = client.get(f"/sessions/{channel_session.id}/sync/status").json()
        assert status["status"] == "FAILED"
        assert "CONNECTED" in status["error_message"]

    def test_already_syncing(self, client, db, channel_session, fake_gateway):
        db.add(SyncLock(session_id=channel_session.id, sync_type="initial"))
        db.commit()

        response = client.post(f"/sessions/{channel_session.id}/sync/gap-fill")

        assert response.status_code == 409
        assert "already running" in response.json()["detail"]
        assert fake_gateway.requests == []

    def test_status_idle_before_first_sync(self, client, channel_session):
        response = client.get(f"/sessions/{channel_session.id}/sync/status")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "IDLE"
        assert body["messages_synced"] == 0
        assert body["session_id"] == channel_session.id

    def test_cancel_without_running_sync(self, client, channel_session):
        assert client.post(f"/sessions/{channel_session.id}/sync/cancel").status_code == 404


class TestMessagesRoute:
    """Canonical message listing for chat UIs."""

    def test_ordering_and_pagination(self, client, channel_session):
        ingest(client, *[make_message(f"m{i}", DIRECT, text=f"msg {i}", timestamp=1000 - i) for i in range(5)])

        response = client.get(f"/sessions/{channel_session.id}/messages", params={"limit": 2, "offset": 1})

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 5
        assert body["limit"] == 2
        assert body["offset"] == 1
        assert [m["external_message_id"] for m in body["data"]] == ["m3", "m2"]

    def test_filters(self, client, channel_session):
        ingest(
            client,
            make_message("m1", DIRECT, text="Order shipped", timestamp=100),
            make_message("m2", DIRECT, text="Invoice attached", timestamp=200),
            make_message("m3", OTHER, text="order question", timestamp=300),
        )
        url = f"/sessions/{channel_session.id}/messages"

        searched = client.get(url, params={"q": "ORDER"}).json()
        assert [m["external_message_id"] for m in searched["data"]] == ["m1", "m3"]

        since = client.get(url, params={"since": 200}).json()
        assert [m["external_message_id"] for m in since["data"]] == ["m2", "m3"]

        contact_id = searched["data"][1]["contact_id"]
        by_contact = client.get(url, params={"contact_id": contact_id}).json()
        assert [m["external_message_id"] for m in by_contact["data"]] == ["m3"]

    def test_limit_bounds(self, client, channel_session):
        url = f"/sessions/{channel_session.id}/messages"
        assert client.get(url, params={"limit": 0}).status_code == 422
        assert client.get(url, params={"limit": 101}).status_code == 422

    def test_unknown_session(self, client):
        assert client.get("/sessions/missing/messages").status_code == 404


class TestContactsRoute:
    def test_named_first(self, client, channel_session):
        client.post("/webhook", json=envelope("contacts.upsert", [{"id": OTHER}, {"id": DIRECT, "pushName": "Maria"}]))

        contacts = client.get(f"/sessions/{channel_session.id}/contacts").json()

        assert [(c["address"], c["name"]) for c in contacts] == [(DIRECT, "Maria"), (OTHER, None)]
        assert contacts[0]["phone_number"] == "5511999999999"


class TestMediaRoute:
    """Stored attachments are only reachable through a valid signed URL."""

    def _stored_media_url(self, client):
        raw = make_message("m1", DIRECT, message={"imageMessage": {"mimetype": "image/png"}})
        raw["base64"] = base64.b64encode(b"png-bytes").decode()
        ingest(client, raw)

        def media_url():
            with SessionLocal() as db:
                row = db.query(Message).first()
                return row.media_url if row else None

        assert wait_for(lambda: media_url() is not None)
        return media_url()

    def test_signed_url_serves_file(self, client, channel_session):
        url = self._stored_media_url(client)

        response = client.get(url)

        assert response.status_code == 200
        assert response.content == b"png-bytes"

    def test_tampered_signature_forbidden(self, client, channel_session):
        url = self._stored_media_url(client)
        response = client.get(url[:-4] + "0000")
        assert response.status_code == 403

    def test_missing_file(self, client, channel_session):
        blob_store = client.app.state.blob_store
        url = blob_store.signed_url("messages/2025/01/none/missing.png", 60)
        assert client.get(url).status_code == 404


class TestMetrics:
    def test_exposition(self, client, channel_session):
        labels = {"source": "webhook", "result": "inserted"}
        before = REGISTRY.get_sample_value("messages_written_total", labels) or 0.0
        ingest(client, make_message("m1", DIRECT))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        text = response.text
        assert "webhook_events_total" in text
        assert "messages_written_total" in text
        assert REGISTRY.get_sample_value("messages_written_total", labels) == before + 1
        assert "http_requests_total" in text

