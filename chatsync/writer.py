"""
Idempotent message persistence.

The unique constraint on (session_id, external_message_id) is the only
dedup mechanism: every write is a plain INSERT and a constraint violation
means the message is already stored. Webhook deliveries and backfill runs
can race on the same message and both stay correct.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatsync.canonical import CanonicalMessage
from chatsync.metrics import record_message_write
from chatsync.models import ChannelSession, Message

if TYPE_CHECKING:
    from chatsync.media import MediaPipeline

logger = logging.getLogger(__name__)


class WriteResult(str, Enum):
    INSERTED = "inserted"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class WriteOutcome:
    result: WriteResult
    message_id: Optional[int] = None

    @property
    def inserted(self) -> bool:
        return self.result == WriteResult.INSERTED


class MessageWriter:
    """Persist canonical messages exactly once per dedup key."""

    def __init__(self, media: Optional["MediaPipeline"] = None):
        self.media = media

    def write(
        self,
        db: Session,
        session_id: str,
        contact_id: int,
        message: CanonicalMessage,
        *,
        session_name: Optional[str] = None,
        source: str = "webhook",
        schedule_media: bool = True,
        track_watermark: bool = True,
    ) -> WriteOutcome:
        """
        Insert ``message`` unless its dedup key already exists.

        On insert, the session watermark moves forward to the message
        timestamp unless ``track_watermark`` is off, and a message with media
        is handed to the media pipeline without being awaited unless
        ``schedule_media`` is off. Backfill runs turn both off: they advance
        the watermark on completion and fetch media under their rate limit.

        Returns:
            WriteOutcome with INSERTED and the new row id, or SKIPPED
        """
        row = Message(
            session_id=session_id,
            contact_id=contact_id,
            external_message_id=message.external_message_id,
            chat_id=message.chat_id,
            direction=message.direction.value,
            message_type=message.message_type.value,
            body=message.body,
            sender_address=message.sender_address,
            sender_name=message.sender_name,
            has_media=message.has_media,
            ack=message.ack.value,
            timestamp=message.timestamp,
            raw_payload=message.raw,
            created_at=datetime.now(timezone.utc),
        )

        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            # Dedup key already present - expected under replay and races
            db.rollback()
            logger.info(f"Duplicate message skipped: {message.external_message_id}")
            record_message_write(source, WriteResult.SKIPPED.value)
            return WriteOutcome(WriteResult.SKIPPED)

        logger.info(
            f"Message stored: id={message.external_message_id}, "
            f"type={message.message_type.value}, direction={message.direction.value}"
        )
        record_message_write(source, WriteResult.INSERTED.value)
        message_pk = row.id

        if track_watermark and message.timestamp:
            advance_watermark(db, session_id, message.timestamp)

        if schedule_media and message.has_media and self.media is not None:
            self.media.schedule(message_pk, message, session_name=session_name)

        return WriteOutcome(WriteResult.INSERTED, message_pk)


def advance_watermark(db: Session, session_id: str, timestamp: int) -> bool:
    """
    Move the session watermark forward to ``timestamp``; never backwards.

    Returns:
        True when the watermark changed
    """
    result = db.execute(
        update(ChannelSession)
        .where(
            ChannelSession.id == session_id,
            or_(
                ChannelSession.last_message_timestamp.is_(None),
                ChannelSession.last_message_timestamp < timestamp,
            ),
        )
        .values(last_message_timestamp=timestamp)
    )
    db.commit()
    return result.rowcount > 0
