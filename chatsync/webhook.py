"""
Webhook event normalization and dispatch.

The gateway posts every event to one endpoint. Event names arrive in
several spellings (``messages.upsert``, ``MESSAGES_UPSERT``,
``messages-upsert``); they are normalized to upper snake case and routed
through a lookup table to one handler each.

Processing never raises to the HTTP layer. Every outcome, including
internal failures, is reported as a ``WebhookResult``.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from chatsync.canonical import AckStatus, CanonicalizationError, canonicalize, map_ack_status
from chatsync.contacts import ContactResolver, chat_address, chat_display_name
from chatsync.metrics import record_webhook_outcome
from chatsync.models import ChannelSession, Message
from chatsync.storage import get_channel_session_by_name
from chatsync.sync import SyncError, SyncOrchestrator
from chatsync.sync_state import SyncType
from chatsync.utils import is_syncable_chat
from chatsync.writer import MessageWriter

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[^A-Za-z0-9]+")

CONNECTION_STATES = {
    "open": "CONNECTED",
    "connecting": "CONNECTING",
    "close": "DISCONNECTED",
}


def normalize_event_type(raw: Any) -> str:
    """``messages.upsert`` -> ``MESSAGES_UPSERT``."""
    if not isinstance(raw, str):
        return ""
    return _SEPARATORS.sub("_", raw).strip("_").upper()


def map_connection_state(state: Any) -> str:
    if isinstance(state, str):
        return CONNECTION_STATES.get(state.lower(), "FAILED")
    return "FAILED"


@dataclass(frozen=True)
class WebhookResult:
    success: bool
    event: str
    result: str
    error: Optional[str] = None


def _as_list(payload: Any, key: str) -> list:
    """Accept a single record, a list, or ``{key: [...]}``."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        nested = payload.get(key)
        if isinstance(nested, list):
            return nested
        return [payload]
    return []


class WebhookProcessor:
    """
    Route normalized webhook events to their handlers.

    Args:
        session_factory: Creates DB sessions
        resolver: Contact resolver
        writer: Idempotent message writer
        orchestrator: Sync orchestrator, used to gap-fill after reconnects
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        resolver: ContactResolver,
        writer: MessageWriter,
        orchestrator: Optional[SyncOrchestrator] = None,
    ):
        self.session_factory = session_factory
        self.resolver = resolver
        self.writer = writer
        self.orchestrator = orchestrator
        self.handlers = {
            "MESSAGES_UPSERT": self.handle_message_upsert,
            "MESSAGES_SET": self.handle_message_upsert,
            "SEND_MESSAGE": self.handle_message_upsert,
            "MESSAGES_UPDATE": self.handle_ack_update,
            "CONNECTION_UPDATE": self.handle_connection_update,
            "QRCODE_UPDATED": self.handle_credential_update,
            "QRCODE_UPDATE": self.handle_credential_update,
            "PAIRING_CODE_UPDATED": self.handle_credential_update,
            "CONTACTS_UPSERT": self.handle_contact_upsert,
            "CONTACTS_SET": self.handle_contact_upsert,
            "CONTACTS_UPDATE": self.handle_contact_upsert,
            "CHATS_UPSERT": self.handle_chat_upsert,
            "CHATS_SET": self.handle_chat_upsert,
            "CHATS_UPDATE": self.handle_chat_upsert,
        }

    async def process(self, event_type: Any, channel_id: Any, payload: Any) -> WebhookResult:
        event = normalize_event_type(event_type)
        outcome = await self._dispatch(event, channel_id, payload)
        record_webhook_outcome(event, outcome.result)
        return outcome

    async def _dispatch(self, event: str, channel_id: Any, payload: Any) -> WebhookResult:
        handler = self.handlers.get(event)
        if handler is None:
            logger.info(f"Ignoring unrecognized webhook event: {event!r}")
            return WebhookResult(success=True, event=event, result="ignored")

        try:
            with self.session_factory() as db:
                session = get_channel_session_by_name(db, channel_id) if isinstance(channel_id, str) else None
                if session is None:
                    logger.warning(f"Webhook for unknown channel dropped: channel={channel_id!r}, event={event}")
                    return WebhookResult(
                        success=False,
                        event=event,
                        result="unknown_channel",
                        error=f"Unknown channel: {channel_id}",
                    )
                await handler(db, session, payload)
        except Exception as e:
            logger.exception(f"Webhook processing failed: event={event}, channel={channel_id}")
            return WebhookResult(success=False, event=event, result="failed", error=str(e) or e.__class__.__name__)

        return WebhookResult(success=True, event=event, result="processed")

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def handle_message_upsert(self, db: Session, session: ChannelSession, payload: Any) -> None:
        items = _as_list(payload, "messages")
        inserted = 0
        for raw in items:
            try:
                message = canonicalize(raw)
                contact_id = self.resolver.resolve_for_message(db, session.id, message)
                outcome = self.writer.write(
                    db, session.id, contact_id, message, session_name=session.session_name, source="webhook"
                )
            except CanonicalizationError as e:
                logger.warning(f"Webhook message skipped: {e}")
                continue
            except Exception:
                db.rollback()
                logger.exception("Webhook message failed, continuing with the rest")
                continue
            if outcome.inserted:
                inserted += 1
        logger.info(f"Message upsert: {inserted} of {len(items)} messages inserted")

    async def handle_ack_update(self, db: Session, session: ChannelSession, payload: Any) -> None:
        for item in _as_list(payload, "updates"):
            if not isinstance(item, dict):
                continue
            key = item.get("key")
            update = item.get("update")
            if not isinstance(key, dict):
                key = {}
            if not isinstance(update, dict):
                update = {}
            message_id = key.get("id") or item.get("keyId") or item.get("messageId")
            status = update.get("status", item.get("status"))
            if not message_id or status is None:
                continue

            ack = map_ack_status(status)
            row = (
                db.query(Message)
                .filter(Message.session_id == session.id, Message.external_message_id == message_id)
                .first()
            )
            if row is None:
                logger.debug(f"Ack update for unknown message: {message_id}")
                continue
            if ack.rank > AckStatus(row.ack).rank:
                logger.info(f"Ack advanced: {message_id} {row.ack} -> {ack.value}")
                row.ack = ack.value
                db.commit()
            else:
                logger.debug(f"Stale ack ignored: {message_id} {row.ack} >= {ack.value}")

    async def handle_connection_update(self, db: Session, session: ChannelSession, payload: Any) -> None:
        payload = payload if isinstance(payload, dict) else {}
        state = payload.get("state")
        new_status = map_connection_state(state)
        previous = session.status

        session.status = new_status
        session.connection_metadata = {
            "state": state,
            "statusReason": payload.get("statusReason"),
        }
        if new_status == "CONNECTED":
            session.last_connected_at = datetime.now(timezone.utc)
            session.qr_code = None
            session.pairing_code = None
        db.commit()
        logger.info(f"Connection status: {session.session_name} {previous} -> {new_status}")

        if new_status == "CONNECTED" and previous != "CONNECTED":
            self._trigger_gap_fill(session.id)

    def _trigger_gap_fill(self, session_id: str) -> None:
        if self.orchestrator is None:
            return

        try:
            self.orchestrator.start(session_id, SyncType.GAP_FILL.value)
        except SyncError as e:
            logger.info(f"Gap-fill after reconnect not started: {e}")

    async def handle_credential_update(self, db: Session, session: ChannelSession, payload: Any) -> None:
        payload = payload if isinstance(payload, dict) else {}
        qrcode = payload.get("qrcode") if isinstance(payload.get("qrcode"), dict) else payload
        qr = qrcode.get("base64") or qrcode.get("code")
        pairing_code = qrcode.get("pairingCode") or payload.get("pairingCode")

        if qr:
            session.qr_code = qr
        if pairing_code:
            session.pairing_code = pairing_code
        db.commit()
        logger.info(f"Pairing credentials updated: {session.session_name}")

    async def handle_contact_upsert(self, db: Session, session: ChannelSession, payload: Any) -> None:
        for item in _as_list(payload, "contacts"):
            if not isinstance(item, dict):
                continue
            address = chat_address(item)
            if not is_syncable_chat(address):
                continue
            self.resolver.resolve_from_metadata(db, session.id, address, chat_display_name(item))

    async def handle_chat_upsert(self, db: Session, session: ChannelSession, payload: Any) -> None:
        for item in _as_list(payload, "chats"):
            if not isinstance(item, dict):
                continue
            address = chat_address(item)
            if not is_syncable_chat(address):
                continue
            contact_id = self.resolver.resolve_from_metadata(db, session.id, address, chat_display_name(item))
            self.resolver.update_chat_metadata(db, contact_id, item)
