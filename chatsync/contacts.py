"""
Contact resolution.

Maps a chat address to a stable contact row and guards the contact's
display name. A name is written only when its provenance describes the
contact's own identity:

1. chat or contact metadata from the gateway, or
2. an inbound message in a direct chat whose remote address is the contact.

Outbound messages carry our own line's name and group messages carry the
last speaker's name; neither may ever touch the stored name.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatsync.canonical import CanonicalMessage
from chatsync.models import Contact
from chatsync.utils import is_group_jid, local_part

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NameProvenance:
    """Where a candidate display name came from."""

    kind: str
    message: Optional[CanonicalMessage] = None

    @classmethod
    def chat_metadata(cls) -> "NameProvenance":
        return cls(kind="chat_metadata")

    @classmethod
    def from_message(cls, message: CanonicalMessage) -> "NameProvenance":
        return cls(kind="message", message=message)

    @classmethod
    def none(cls) -> "NameProvenance":
        return cls(kind="none")


class ContactResolver:
    """Create-or-get contacts while enforcing the display name rules."""

    def name_update_allowed(self, address: str, is_group: bool, provenance: NameProvenance) -> bool:
        if provenance.kind == "chat_metadata":
            return True
        if provenance.kind != "message" or provenance.message is None:
            return False

        message = provenance.message
        return (
            message.is_inbound
            and not message.is_group_chat
            and not is_group
            and message.chat_id == address
        )

    def resolve(
        self,
        db: Session,
        session_id: str,
        address: str,
        candidate_name: Optional[str],
        is_group: bool,
        provenance: NameProvenance,
    ) -> int:
        """
        Return the contact id for ``address``, creating the row if absent.

        The stored name changes only when ``provenance`` permits it; see the
        module docstring.
        """
        phone_number = local_part(address)
        name = self._clean_name(candidate_name, phone_number)
        if name and not self.name_update_allowed(address, is_group, provenance):
            logger.debug(f"Ignoring name from {provenance.kind} provenance for {address}")
            name = None

        contact = self._find(db, session_id, address)
        if contact is None:
            contact = Contact(
                session_id=session_id,
                address=address,
                phone_number=phone_number,
                name=name,
                is_group=is_group,
            )
            db.add(contact)
            try:
                db.commit()
                logger.info(f"Contact created: session={session_id}, address={address}")
                return contact.id
            except IntegrityError:
                # Concurrent insert for the same address won the race
                db.rollback()
                contact = self._find(db, session_id, address)
                if contact is None:
                    raise

        if name and contact.name != name:
            logger.info(f"Contact name updated: id={contact.id}, source={provenance.kind}")
            contact.name = name
            db.commit()

        return contact.id

    def resolve_for_message(self, db: Session, session_id: str, message: CanonicalMessage) -> int:
        """Resolve the chat a message belongs to, with message provenance."""
        return self.resolve(
            db,
            session_id,
            message.chat_id,
            message.sender_name,
            is_group=message.is_group_chat,
            provenance=NameProvenance.from_message(message),
        )

    def resolve_from_metadata(self, db: Session, session_id: str, address: str, name: Optional[str]) -> int:
        """Resolve a chat or contact described by gateway metadata."""
        return self.resolve(
            db,
            session_id,
            address,
            name,
            is_group=is_group_jid(address),
            provenance=NameProvenance.chat_metadata(),
        )

    def update_chat_metadata(self, db: Session, contact_id: int, chat: dict) -> None:
        contact = db.get(Contact, contact_id)
        if contact is None:
            return
        contact.chat_metadata = extract_chat_metadata(chat)
        db.commit()

    @staticmethod
    def _find(db: Session, session_id: str, address: str) -> Optional[Contact]:
        return (
            db.query(Contact)
            .filter(Contact.session_id == session_id, Contact.address == address)
            .first()
        )

    @staticmethod
    def _clean_name(name: Optional[str], phone_number: str) -> Optional[str]:
        if not name or not isinstance(name, str):
            return None
        name = name.strip()
        if not name or name == phone_number:
            return None
        return name


GROUP_NAME_FIELDS = ("name", "subject")
CONTACT_NAME_FIELDS = ("name", "subject", "pushName", "notify", "verifiedName")


def chat_display_name(chat: dict) -> Optional[str]:
    """
    Best identity name carried by a chat or contact metadata record.

    Group records only name the group by ``name`` or ``subject``; their
    ``pushName`` can be the last participant who spoke.
    """
    fields = GROUP_NAME_FIELDS if is_group_jid(chat_address(chat)) else CONTACT_NAME_FIELDS
    for field in fields:
        value = chat.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def chat_address(chat: dict) -> str:
    return chat.get("remoteJid") or chat.get("id") or ""


def extract_chat_metadata(chat: dict) -> dict:
    return {
        "unreadCount": chat.get("unreadCount") or 0,
        "conversationTimestamp": chat.get("conversationTimestamp"),
        "archived": bool(chat.get("archived")),
        "pinned": bool(chat.get("pinned")),
    }
