"""
Pydantic schemas for request/response validation.

This module contains:
- The webhook envelope and its response
- Sync trigger and status responses
- Read models for messages and contacts
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class WebhookEnvelope(BaseModel):
    """
    Envelope posted by the gateway for every event.

    The gateway's own key names (``event``, ``instance``, ``data``) are
    accepted as aliases. Unknown keys are ignored.
    """
    event_type: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("event_type", "event"),
        description="Event name in any casing, e.g. messages.upsert",
    )
    channel_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("channel_id", "instance", "instanceName"),
        description="Gateway instance name of the channel session",
    )
    payload: Any = Field(
        None,
        validation_alias=AliasChoices("payload", "data"),
        description="Event-specific payload",
    )

    model_config = {
        "extra": "ignore",
        "json_schema_extra": {
            "examples": [
                {
                    "event": "messages.upsert",
                    "instance": "sales-line",
                    "data": {
                        "key": {"id": "3EB0C767D26A", "remoteJid": "5511999999999@s.whatsapp.net", "fromMe": False},
                        "message": {"conversation": "Hello"},
                        "messageTimestamp": 1736935200,
                        "pushName": "Maria",
                    },
                }
            ]
        },
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Always returned with HTTP 200, whatever the processing outcome."""
    success: bool = Field(..., description="Whether the event was processed")
    event: str = Field("", description="Normalized event tag")
    error: Optional[str] = Field(None, description="Processing error, if any")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class SyncTriggerResponse(BaseModel):
    """Returned with 202 once a sync has been accepted and started."""
    success: bool = True
    message: str
    session_id: str
    sync_type: str


class SyncProgressResponse(BaseModel):
    chats_total: int
    chats_done: int
    messages_done: int
    current_chat: str


class SyncStateResponse(BaseModel):
    """
    Sync state of one session.

    ``progress`` is only present while a run is in flight in this process.
    """
    session_id: str
    status: str = Field("IDLE", description="IDLE, SYNCING, COMPLETED or FAILED")
    sync_type: Optional[str] = None
    messages_synced: int = 0
    chats_synced: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    last_message_timestamp: Optional[int] = Field(None, description="Session watermark (unix seconds)")
    progress: Optional[SyncProgressResponse] = None

    model_config = {"from_attributes": True}


class CancelResponse(BaseModel):
    success: bool
    message: str


class MessageResponse(BaseModel):
    """A canonical message as read by chat UIs."""
    id: int
    external_message_id: str
    contact_id: int
    chat_id: str
    direction: str
    message_type: str
    body: str
    sender_address: Optional[str] = None
    sender_name: Optional[str] = None
    has_media: bool = False
    media_url: Optional[str] = None
    media_mimetype: Optional[str] = None
    media_filename: Optional[str] = None
    ack: str
    timestamp: int

    model_config = {"from_attributes": True}


class MessagesListResponse(BaseModel):
    """
    Response model for GET /sessions/{id}/messages with pagination.

    Contains:
    - data: list of messages matching filters
    - total: total count of messages matching filters (ignoring pagination)
    - limit: number of messages per page
    - offset: starting position
    """
    data: list[MessageResponse] = Field(default_factory=list, description="List of messages")
    total: int = Field(..., ge=0, description="Total messages matching filters (ignoring limit/offset)")
    limit: int = Field(..., ge=1, le=100, description="Maximum messages per page")
    offset: int = Field(..., ge=0, description="Number of messages skipped")


class ContactResponse(BaseModel):
    id: int
    address: str
    phone_number: str
    name: Optional[str] = None
    is_group: bool = False
    chat_metadata: Optional[dict] = None

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
