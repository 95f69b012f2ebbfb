"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py. For the canonical
in-memory message shape, see canonical.py.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from chatsync.storage import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChannelSession(Base):
    """
    One connected channel identity (e.g. one phone number).

    Rows are created by the CRUD layer; this service updates connection
    state, pairing credentials and the watermark.
    """
    __tablename__ = "sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    session_name = Column(String, nullable=False, unique=True, index=True)
    phone_number = Column(String, nullable=True)
    status = Column(String, nullable=False, default="DISCONNECTED")
    # Unix seconds of the newest message ingested by a sync run
    last_message_timestamp = Column(Integer, nullable=True)
    last_connected_at = Column(DateTime(timezone=True), nullable=True)
    qr_code = Column(Text, nullable=True)
    pairing_code = Column(String, nullable=True)
    connection_metadata = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Contact(Base):
    """
    A subscriber or group chat scoped to a session.

    Table: contacts
    Unique: (session_id, address)
    """
    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("session_id", "address", name="uq_contacts_session_address"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    address = Column(String, nullable=False)
    phone_number = Column(String, nullable=False)
    name = Column(String, nullable=True)
    is_group = Column(Boolean, nullable=False, default=False)
    chat_metadata = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Message(Base):
    """
    Canonical message record.

    Table: messages
    Unique: (session_id, external_message_id) - the dedup key every write
    path relies on for idempotency.
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("session_id", "external_message_id", name="uq_messages_session_external_id"),
        Index("ix_messages_session_timestamp", "session_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    contact_id = Column(Integer, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True)
    external_message_id = Column(String, nullable=False)
    chat_id = Column(String, nullable=False)
    direction = Column(String, nullable=False)
    message_type = Column(String, nullable=False, default="text")
    body = Column(Text, nullable=False, default="")
    sender_address = Column(String, nullable=True)
    sender_name = Column(String, nullable=True)
    has_media = Column(Boolean, nullable=False, default=False)
    media_url = Column(Text, nullable=True)
    media_mimetype = Column(String, nullable=True)
    media_size = Column(Integer, nullable=True)
    media_filename = Column(String, nullable=True)
    ack = Column(String, nullable=False, default="PENDING")
    timestamp = Column(Integer, nullable=False)  # Unix seconds from the provider
    raw_payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class MediaAsset(Base):
    """Durable copy of a message attachment. Absent until the media pipeline succeeds."""
    __tablename__ = "message_media"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, unique=True)
    media_type = Column(String, nullable=False)
    storage_path = Column(String, nullable=False)
    url = Column(Text, nullable=False)
    mimetype = Column(String, nullable=False)
    size_bytes = Column(Integer, nullable=False)
    filename = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class SyncState(Base):
    """
    Status and counters of orchestrator runs, one row per session.

    Counters are additive across runs; status, timestamps and error_message
    are last-write-wins.
    """
    __tablename__ = "sync_state"

    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), primary_key=True)
    status = Column(String, nullable=False, default="IDLE")
    sync_type = Column(String, nullable=True)
    messages_synced = Column(Integer, nullable=False, default=0)
    chats_synced = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class SyncLock(Base):
    """Held while a sync runs for a session; the primary key makes acquisition atomic."""
    __tablename__ = "sync_locks"

    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), primary_key=True)
    sync_type = Column(String, nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
