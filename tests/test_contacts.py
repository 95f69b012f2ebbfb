"""
Tests for contact resolution and the display name rules.

Tests cover:
- Create-or-get by address
- Names from chat metadata and from inbound direct messages
- Group and outbound messages never touching the stored name
- Blank names and names equal to the phone number
"""

from chatsync.canonical import canonicalize
from chatsync.contacts import ContactResolver, NameProvenance, chat_display_name, extract_chat_metadata
from chatsync.models import Contact
from tests.helpers import make_message

DIRECT = "5511999999999@s.whatsapp.net"
GROUP = "120363025246125486@g.us"


class TestResolve:
    """Create-or-get semantics."""

    def test_creates_contact_once(self, db, channel_session):
        resolver = ContactResolver()
        first = resolver.resolve_from_metadata(db, channel_session.id, DIRECT, "Maria")
        second = resolver.resolve_from_metadata(db, channel_session.id, DIRECT, None)

        assert first == second
        contact = db.get(Contact, first)
        assert contact.phone_number == "5511999999999"
        assert contact.name == "Maria"
        assert contact.is_group is False

    def test_group_contact_flagged(self, db, channel_session):
        contact_id = ContactResolver().resolve_from_metadata(db, channel_session.id, GROUP, "Team")
        contact = db.get(Contact, contact_id)
        assert contact.is_group is True
        assert contact.name == "Team"

    def test_metadata_name_updates_existing(self, db, channel_session):
        resolver = ContactResolver()
        contact_id = resolver.resolve_from_metadata(db, channel_session.id, DIRECT, "Maria")
        resolver.resolve_from_metadata(db, channel_session.id, DIRECT, "Maria Silva")
        db.expire_all()
        assert db.get(Contact, contact_id).name == "Maria Silva"

    def test_blank_and_numeric_names_ignored(self, db, channel_session):
        resolver = ContactResolver()
        contact_id = resolver.resolve_from_metadata(db, channel_session.id, DIRECT, "Maria")
        resolver.resolve_from_metadata(db, channel_session.id, DIRECT, "   ")
        resolver.resolve_from_metadata(db, channel_session.id, DIRECT, "5511999999999")
        db.expire_all()
        assert db.get(Contact, contact_id).name == "Maria"

    def test_unknown_provenance_never_writes(self, db, channel_session):
        contact_id = ContactResolver().resolve(
            db, channel_session.id, DIRECT, "Someone", is_group=False, provenance=NameProvenance.none()
        )
        assert db.get(Contact, contact_id).name is None


class TestMessageProvenance:
    """Only inbound direct messages from the contact itself may name it."""

    def test_inbound_direct_message_names_contact(self, db, channel_session):
        message = canonicalize(make_message("m1", DIRECT, push_name="Maria"))
        contact_id = ContactResolver().resolve_for_message(db, channel_session.id, message)
        assert db.get(Contact, contact_id).name == "Maria"

    def test_outbound_message_never_names_contact(self, db, channel_session):
        resolver = ContactResolver()
        contact_id = resolver.resolve_from_metadata(db, channel_session.id, DIRECT, "Maria")

        message = canonicalize(make_message("m1", DIRECT, from_me=True, push_name="Our Sales Line"))
        resolver.resolve_for_message(db, channel_session.id, message)

        db.expire_all()
        assert db.get(Contact, contact_id).name == "Maria"

    def test_group_message_never_renames_group(self, db, channel_session):
        resolver = ContactResolver()
        group_id = resolver.resolve_from_metadata(db, channel_session.id, GROUP, "Team")

        message = canonicalize(make_message(
            "m1", GROUP, participant="5511888888888@s.whatsapp.net", push_name="Bob"
        ))
        resolver.resolve_for_message(db, channel_session.id, message)

        db.expire_all()
        assert db.get(Contact, group_id).name == "Team"

    def test_group_message_never_names_new_group(self, db, channel_session):
        message = canonicalize(make_message(
            "m1", GROUP, participant="5511888888888@s.whatsapp.net", push_name="Bob"
        ))
        contact_id = ContactResolver().resolve_for_message(db, channel_session.id, message)
        assert db.get(Contact, contact_id).name is None

    def test_message_for_other_address_rejected(self):
        message = canonicalize(make_message("m1", DIRECT, push_name="Maria"))
        allowed = ContactResolver().name_update_allowed(
            "5511777777777@s.whatsapp.net", False, NameProvenance.from_message(message)
        )
        assert allowed is False


class TestChatMetadata:
    def test_display_name_fallbacks(self):
        assert chat_display_name({"subject": "Team"}) == "Team"
        assert chat_display_name({"name": " ", "pushName": "Ana"}) == "Ana"
        assert chat_display_name({"remoteJid": DIRECT}) is None

    def test_group_name_ignores_push_name(self):
        assert chat_display_name({"remoteJid": GROUP, "pushName": "Bob"}) is None
        assert chat_display_name({"remoteJid": GROUP, "pushName": "Bob", "subject": "Team"}) == "Team"
        assert chat_display_name({"id": GROUP, "notify": "Bob", "name": "Sales"}) == "Sales"
        assert chat_display_name({"remoteJid": DIRECT, "pushName": "Ana"}) == "Ana"

    def test_update_chat_metadata(self, db, channel_session):
        resolver = ContactResolver()
        contact_id = resolver.resolve_from_metadata(db, channel_session.id, DIRECT, "Maria")
        resolver.update_chat_metadata(db, contact_id, {"unreadCount": 3, "pinned": True, "conversationTimestamp": 10})

        db.expire_all()
        assert db.get(Contact, contact_id).chat_metadata == {
            "unreadCount": 3,
            "conversationTimestamp": 10,
            "archived": False,
            "pinned": True,
        }

    def test_extract_defaults(self):
        assert extract_chat_metadata({}) == {
            "unreadCount": 0,
            "conversationTimestamp": None,
            "archived": False,
            "pinned": False,
        }
