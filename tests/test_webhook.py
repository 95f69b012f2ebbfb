"""
Tests for the POST /webhook endpoint.

Tests cover:
- Idempotent message ingestion under replay
- Event name normalization and dispatch
- Always-200 responses for unknown events, channels and bad bodies
- Optional HMAC signatures
- Ack, connection, credential, contact and chat events
- Display names immune to group and outbound messages
"""

import base64
import json

import pytest

from chatsync.config import settings
from chatsync.models import ChannelSession, Contact, Message, SyncState
from chatsync.storage import SessionLocal
from chatsync.utils import compute_hmac_signature
from chatsync.webhook import map_connection_state, normalize_event_type
from tests.helpers import envelope, make_chat, make_message, wait_for

DIRECT = "5511999999999@s.whatsapp.net"
GROUP = "120363025246125486@g.us"


def rows(model, **filters):
    with SessionLocal() as db:
        found = db.query(model).filter_by(**filters).all()
        for row in found:
            db.expunge(row)
        return found


def get_session(session_id) -> ChannelSession:
    with SessionLocal() as db:
        session = db.get(ChannelSession, session_id)
        db.expunge(session)
        return session


class TestEventNormalization:
    @pytest.mark.parametrize("raw,expected", [
        ("messages.upsert", "MESSAGES_UPSERT"),
        ("MESSAGES_UPSERT", "MESSAGES_UPSERT"),
        ("messages-upsert", "MESSAGES_UPSERT"),
        ("  connection.update ", "CONNECTION_UPDATE"),
        ("qrcode..updated", "QRCODE_UPDATED"),
        (None, ""),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_event_type(raw) == expected

    @pytest.mark.parametrize("state,expected", [
        ("open", "CONNECTED"),
        ("connecting", "CONNECTING"),
        ("close", "DISCONNECTED"),
        ("refused", "FAILED"),
        (None, "FAILED"),
    ])
    def test_connection_states(self, state, expected):
        assert map_connection_state(state) == expected


class TestMessageIngestion:
    """Message events are stored exactly once."""

    def test_replay_stores_one_row(self, client, channel_session):
        body = envelope("messages.upsert", make_message("m1", DIRECT, text="hi", push_name="Maria"))

        for _ in range(5):
            response = client.post("/webhook", json=body)
            assert response.status_code == 200
            assert response.json() == {"success": True, "event": "MESSAGES_UPSERT", "error": None}

        stored = rows(Message, session_id=channel_session.id)
        assert len(stored) == 1
        assert stored[0].body == "hi"
        assert stored[0].direction == "inbound"

    @pytest.mark.parametrize("event", ["messages.upsert", "MESSAGES_UPSERT", "messages-upsert", "send.message"])
    def test_event_spellings(self, client, channel_session, event):
        response = client.post("/webhook", json=envelope(event, make_message("m1", DIRECT)))
        assert response.json()["success"] is True
        assert len(rows(Message)) == 1

    def test_native_field_names_accepted(self, client, channel_session):
        body = {"event_type": "messages.upsert", "channel_id": "sales-line", "payload": make_message("m1", DIRECT)}
        assert client.post("/webhook", json=body).json()["success"] is True
        assert len(rows(Message)) == 1

    def test_batch_isolates_bad_items(self, client, channel_session):
        broken = make_message("m2", DIRECT)
        del broken["key"]["id"]
        payload = {"messages": [make_message("m1", DIRECT), broken, make_message("m3", DIRECT)]}

        response = client.post("/webhook", json=envelope("messages.set", payload))

        assert response.json()["success"] is True
        assert sorted(m.external_message_id for m in rows(Message)) == ["m1", "m3"]

    def test_ingest_advances_watermark(self, client, channel_session):
        client.post("/webhook", json=envelope("messages.upsert", make_message("m1", DIRECT, timestamp=1_800_000_000)))
        client.post("/webhook", json=envelope("messages.upsert", make_message("m0", DIRECT, timestamp=1_700_000_000)))

        assert get_session(channel_session.id).last_message_timestamp == 1_800_000_000

    def test_inline_media_is_stored(self, client, channel_session):
        raw = make_message("m1", DIRECT, message={"imageMessage": {"mimetype": "image/png", "caption": "pic"}})
        raw["base64"] = base64.b64encode(b"png-bytes").decode()

        client.post("/webhook", json=envelope("messages.upsert", raw))

        assert wait_for(lambda: rows(Message)[0].media_url is not None)
        message = rows(Message)[0]
        assert message.has_media is True
        assert message.media_url.startswith("/media/messages/")


class TestAlways200:
    """The gateway never sees a processing failure as a delivery failure."""

    def test_unknown_event_ignored(self, client, channel_session):
        response = client.post("/webhook", json=envelope("presence.update", {"id": DIRECT}))
        assert response.status_code == 200
        assert response.json()["event"] == "PRESENCE_UPDATE"

    def test_unknown_channel(self, client, channel_session):
        response = client.post("/webhook", json=envelope("messages.upsert", make_message("m1", DIRECT), "nope"))
        assert response.status_code == 200
        assert response.json()["success"] is False
        assert rows(Message) == []

    def test_invalid_json(self, client, channel_session):
        response = client.post("/webhook", content=b"{not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 200
        assert response.json() == {"success": False, "event": "", "error": "Invalid JSON body"}

    def test_handler_exception(self, client, channel_session, monkeypatch):
        async def explode(db, session, payload):
            raise RuntimeError("handler crashed")

        processor = client.app.state.webhook_processor
        monkeypatch.setitem(processor.handlers, "MESSAGES_UPDATE", explode)

        response = client.post("/webhook", json=envelope("messages.update", {}))

        assert response.status_code == 200
        assert response.json() == {"success": False, "event": "MESSAGES_UPDATE", "error": "handler crashed"}


class TestSignature:
    """Signatures are enforced only when a secret is configured."""

    def test_missing_signature_rejected(self, client, channel_session, monkeypatch):
        monkeypatch.setattr(settings, "WEBHOOK_SECRET", "s3cret")
        response = client.post("/webhook", json=envelope("messages.upsert", make_message("m1", DIRECT)))
        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}

    def test_wrong_signature_rejected(self, client, channel_session, monkeypatch):
        monkeypatch.setattr(settings, "WEBHOOK_SECRET", "s3cret")
        body = json.dumps(envelope("messages.upsert", make_message("m1", DIRECT)))
        response = client.post("/webhook", content=body, headers={"X-Signature": "0" * 64})
        assert response.status_code == 401
        assert rows(Message) == []

    def test_valid_signature_accepted(self, client, channel_session, monkeypatch):
        monkeypatch.setattr(settings, "WEBHOOK_SECRET", "s3cret")
        body = json.dumps(envelope("messages.upsert", make_message("m1", DIRECT)))
        response = client.post(
            "/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Signature": compute_hmac_signature(body.encode(), "s3cret")},
        )
        assert response.status_code == 200
        assert len(rows(Message)) == 1


class TestAckUpdates:
    """Acks only move forward."""

    def test_ack_never_regresses(self, client, channel_session):
        client.post("/webhook", json=envelope("messages.upsert", make_message("m1", DIRECT, from_me=True, status=1)))

        client.post("/webhook", json=envelope("messages.update", {"key": {"id": "m1"}, "update": {"status": "READ"}}))
        assert rows(Message)[0].ack == "READ"

        client.post("/webhook", json=envelope("messages.update", [{"keyId": "m1", "status": "DELIVERY_ACK"}]))
        assert rows(Message)[0].ack == "READ"

        client.post("/webhook", json=envelope("messages.update", {"messageId": "m1", "status": 4}))
        assert rows(Message)[0].ack == "PLAYED"

    def test_malformed_item_skips_only_itself(self, client, channel_session):
        client.post("/webhook", json=envelope("messages.upsert", make_message("m1", DIRECT, from_me=True, status=1)))
        payload = [
            {"keyId": "m1", "update": "garbage"},
            {"key": "garbage", "messageId": "m1", "status": "SERVER_ACK"},
            {"keyId": "m1", "update": {"status": "READ"}},
        ]

        response = client.post("/webhook", json=envelope("messages.update", payload))

        assert response.json()["success"] is True
        assert rows(Message)[0].ack == "READ"

    def test_ack_for_unknown_message(self, client, channel_session):
        response = client.post("/webhook", json=envelope("messages.update", {"keyId": "ghost", "status": 3}))
        assert response.json()["success"] is True


class TestSessionEvents:
    def test_connect_clears_qr_and_triggers_gap_fill(self, client, db, channel_session, fake_gateway):
        channel_session.status = "CONNECTING"
        channel_session.qr_code = "old-qr"
        db.commit()
        fake_gateway.chat_pages = [[make_chat(DIRECT)]]
        fake_gateway.messages = {DIRECT: [make_message("h1", DIRECT, timestamp=1700000000)]}

        response = client.post("/webhook", json=envelope("connection.update", {"state": "open", "statusReason": 200}))
        assert response.json()["success"] is True

        session = get_session(channel_session.id)
        assert session.status == "CONNECTED"
        assert session.qr_code is None
        assert session.last_connected_at is not None
        assert session.connection_metadata == {"state": "open", "statusReason": 200}

        assert wait_for(lambda: [s.status for s in rows(SyncState)] == ["COMPLETED"])
        state = rows(SyncState)[0]
        assert state.sync_type == "gap_fill"
        assert [m.external_message_id for m in rows(Message)] == ["h1"]

    def test_disconnect(self, client, channel_session):
        client.post("/webhook", json=envelope("connection.update", {"state": "close"}))
        assert get_session(channel_session.id).status == "DISCONNECTED"
        assert rows(SyncState) == []

    def test_qr_and_pairing_code(self, client, channel_session):
        payload = {"qrcode": {"base64": "data:image/png;base64,AAAA", "pairingCode": "WZYEH1YY"}}
        client.post("/webhook", json=envelope("qrcode.updated", payload))

        session = get_session(channel_session.id)
        assert session.qr_code == "data:image/png;base64,AAAA"
        assert session.pairing_code == "WZYEH1YY"

    def test_contacts_upsert(self, client, channel_session):
        payload = [
            {"id": DIRECT, "pushName": "Maria"},
            {"id": "status@broadcast", "pushName": "Status"},
        ]
        client.post("/webhook", json=envelope("contacts.upsert", payload))

        contacts = rows(Contact)
        assert [(c.address, c.name) for c in contacts] == [(DIRECT, "Maria")]

    def test_chats_upsert_stores_metadata(self, client, channel_session):
        client.post("/webhook", json=envelope("chats.upsert", [make_chat(GROUP, "Team", unreadCount=4, archived=True)]))

        contact = rows(Contact)[0]
        assert contact.name == "Team"
        assert contact.is_group is True
        assert contact.chat_metadata["unreadCount"] == 4
        assert contact.chat_metadata["archived"] is True


class TestNameOverwriteImmunity:
    """Group and outbound messages never rename a contact."""

    def test_group_message_keeps_group_name(self, client, channel_session):
        client.post("/webhook", json=envelope("chats.upsert", [make_chat(GROUP, "Team")]))
        client.post("/webhook", json=envelope("messages.upsert", make_message(
            "g1", GROUP, participant="5511888888888@s.whatsapp.net", push_name="Bob"
        )))

        assert [c.name for c in rows(Contact, address=GROUP)] == ["Team"]
        assert rows(Message)[0].sender_name == "Bob"

    def test_outbound_message_keeps_contact_name(self, client, channel_session):
        client.post("/webhook", json=envelope("messages.upsert", make_message("m1", DIRECT, push_name="Maria")))
        client.post("/webhook", json=envelope("messages.upsert", make_message(
            "m2", DIRECT, from_me=True, push_name="Our Sales Line"
        )))

        assert [c.name for c in rows(Contact, address=DIRECT)] == ["Maria"]
