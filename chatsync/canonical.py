"""
Message canonicalization.

The gateway delivers messages as a ``key`` / ``message`` envelope where
``message`` carries exactly one of several content shapes
(``conversation``, ``imageMessage``, ``documentMessage``...). This module
decodes that envelope once, at the boundary, into ``CanonicalMessage`` whose
``content`` is an explicit tagged union. Nothing downstream inspects the raw
provider shape again.
"""

import json
import logging
from enum import Enum
from typing import Annotated, Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from chatsync.utils import is_group_jid, local_part

logger = logging.getLogger(__name__)


class CanonicalizationError(ValueError):
    """Raised for a provider message that cannot be identified at all."""


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"
    LOCATION = "location"
    CONTACT_CARD = "contact"
    UNKNOWN = "unknown"


class AckStatus(str, Enum):
    PENDING = "PENDING"
    SERVER = "SERVER"
    DEVICE = "DEVICE"
    READ = "READ"
    PLAYED = "PLAYED"

    @property
    def rank(self) -> int:
        return ACK_ORDER.index(self)


ACK_ORDER = [AckStatus.PENDING, AckStatus.SERVER, AckStatus.DEVICE, AckStatus.READ, AckStatus.PLAYED]


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


# =============================================================================
# Content Variants
# =============================================================================

class MediaDescriptor(BaseModel):
    """Where the attachment bytes can be obtained from."""

    url: Optional[str] = None
    inline_base64: Optional[str] = None
    mimetype: str = "application/octet-stream"
    file_name: Optional[str] = None
    file_length: Optional[int] = None


class _Content(BaseModel):
    model_config = ConfigDict(frozen=True)

    @property
    def body(self) -> str:
        return ""

    @property
    def media(self) -> Optional[MediaDescriptor]:
        return None


class TextContent(_Content):
    kind: Literal["text"] = "text"
    text: str = ""

    @property
    def body(self) -> str:
        return self.text


class ImageContent(_Content):
    kind: Literal["image"] = "image"
    caption: str = ""
    descriptor: MediaDescriptor

    @property
    def body(self) -> str:
        return self.caption

    @property
    def media(self) -> MediaDescriptor:
        return self.descriptor


class VideoContent(_Content):
    kind: Literal["video"] = "video"
    caption: str = ""
    descriptor: MediaDescriptor

    @property
    def body(self) -> str:
        return self.caption

    @property
    def media(self) -> MediaDescriptor:
        return self.descriptor


class AudioContent(_Content):
    kind: Literal["audio"] = "audio"
    seconds: Optional[int] = None
    voice_note: bool = False
    descriptor: MediaDescriptor

    @property
    def media(self) -> MediaDescriptor:
        return self.descriptor


class DocumentContent(_Content):
    kind: Literal["document"] = "document"
    file_name: str = ""
    caption: str = ""
    descriptor: MediaDescriptor

    @property
    def body(self) -> str:
        return self.file_name

    @property
    def media(self) -> MediaDescriptor:
        return self.descriptor


class StickerContent(_Content):
    kind: Literal["sticker"] = "sticker"
    descriptor: MediaDescriptor

    @property
    def media(self) -> MediaDescriptor:
        return self.descriptor


class LocationContent(_Content):
    kind: Literal["location"] = "location"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    name: Optional[str] = None
    address: Optional[str] = None

    @property
    def body(self) -> str:
        return json.dumps({"latitude": self.latitude, "longitude": self.longitude})


class ContactCardContent(_Content):
    kind: Literal["contact"] = "contact"
    display_name: str = ""
    vcard: Optional[str] = None

    @property
    def body(self) -> str:
        return self.display_name


class UnknownContent(_Content):
    kind: Literal["unknown"] = "unknown"


MessageContent = Annotated[
    Union[
        TextContent,
        ImageContent,
        VideoContent,
        AudioContent,
        DocumentContent,
        StickerContent,
        LocationContent,
        ContactCardContent,
        UnknownContent,
    ],
    Field(discriminator="kind"),
]


class CanonicalMessage(BaseModel):
    """Provider-agnostic message shape produced by ``canonicalize``."""

    external_message_id: str = Field(min_length=1)
    chat_id: str = Field(min_length=1)
    direction: Direction
    content: MessageContent
    timestamp: int = 0
    ack: AckStatus = AckStatus.PENDING
    sender_address: Optional[str] = None
    sender_name: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def message_type(self) -> MessageType:
        return MessageType(self.content.kind)

    @property
    def body(self) -> str:
        return self.content.body

    @property
    def has_media(self) -> bool:
        return self.content.media is not None

    @property
    def is_group_chat(self) -> bool:
        return is_group_jid(self.chat_id)

    @property
    def is_inbound(self) -> bool:
        return self.direction == Direction.INBOUND


# =============================================================================
# Ack Status Mapping
# =============================================================================

_ACK_BY_CODE = {
    0: AckStatus.PENDING,
    1: AckStatus.SERVER,
    2: AckStatus.DEVICE,
    3: AckStatus.READ,
    4: AckStatus.PLAYED,
}

_ACK_BY_NAME = {
    "PENDING": AckStatus.PENDING,
    "ERROR": AckStatus.PENDING,
    "SERVER_ACK": AckStatus.SERVER,
    "SERVER": AckStatus.SERVER,
    "DELIVERY_ACK": AckStatus.DEVICE,
    "DEVICE": AckStatus.DEVICE,
    "READ": AckStatus.READ,
    "PLAYED": AckStatus.PLAYED,
}


def map_ack_status(status: Any) -> AckStatus:
    """
    Map a provider ack code to ``AckStatus``.

    Integer codes 0-4 (also as strings) and the provider's named states are
    understood. Anything else is PENDING, never a delivered state.
    """
    if isinstance(status, bool):
        return AckStatus.PENDING
    if isinstance(status, int):
        return _ACK_BY_CODE.get(status, AckStatus.PENDING)
    if isinstance(status, str):
        value = status.strip().upper()
        if value.isdigit():
            return _ACK_BY_CODE.get(int(value), AckStatus.PENDING)
        return _ACK_BY_NAME.get(value, AckStatus.PENDING)
    return AckStatus.PENDING


# =============================================================================
# Content Decoding
# =============================================================================

def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _descriptor(node: dict, inline_base64: Optional[str]) -> MediaDescriptor:
    return MediaDescriptor(
        url=node.get("url") or None,
        inline_base64=inline_base64,
        mimetype=node.get("mimetype") or "application/octet-stream",
        file_name=node.get("fileName") or None,
        file_length=_as_int(node.get("fileLength")),
    )


def _decode_conversation(value: Any, inline: Optional[str]) -> TextContent:
    return TextContent(text=value if isinstance(value, str) else "")


def _decode_extended_text(node: dict, inline: Optional[str]) -> TextContent:
    return TextContent(text=node.get("text") or "")


def _decode_image(node: dict, inline: Optional[str]) -> ImageContent:
    return ImageContent(caption=node.get("caption") or "", descriptor=_descriptor(node, inline))


def _decode_video(node: dict, inline: Optional[str]) -> VideoContent:
    return VideoContent(caption=node.get("caption") or "", descriptor=_descriptor(node, inline))


def _decode_audio(node: dict, inline: Optional[str]) -> AudioContent:
    return AudioContent(
        seconds=_as_int(node.get("seconds")),
        voice_note=bool(node.get("ptt")),
        descriptor=_descriptor(node, inline),
    )


def _decode_document(node: dict, inline: Optional[str]) -> DocumentContent:
    return DocumentContent(
        file_name=node.get("fileName") or node.get("title") or "",
        caption=node.get("caption") or "",
        descriptor=_descriptor(node, inline),
    )


def _decode_document_with_caption(node: dict, inline: Optional[str]) -> DocumentContent:
    inner = (node.get("message") or {}).get("documentMessage") or {}
    return _decode_document(inner, inline)


def _decode_sticker(node: dict, inline: Optional[str]) -> StickerContent:
    return StickerContent(descriptor=_descriptor(node, inline))


def _decode_location(node: dict, inline: Optional[str]) -> LocationContent:
    return LocationContent(
        latitude=node.get("degreesLatitude"),
        longitude=node.get("degreesLongitude"),
        name=node.get("name"),
        address=node.get("address"),
    )


def _decode_contact_card(node: dict, inline: Optional[str]) -> ContactCardContent:
    return ContactCardContent(display_name=node.get("displayName") or "", vcard=node.get("vcard"))


# Ordered; the first shape key present wins
CONTENT_DECODERS: list[tuple[str, Callable[[Any, Optional[str]], _Content]]] = [
    ("conversation", _decode_conversation),
    ("extendedTextMessage", _decode_extended_text),
    ("imageMessage", _decode_image),
    ("videoMessage", _decode_video),
    ("audioMessage", _decode_audio),
    ("documentMessage", _decode_document),
    ("documentWithCaptionMessage", _decode_document_with_caption),
    ("stickerMessage", _decode_sticker),
    ("locationMessage", _decode_location),
    ("liveLocationMessage", _decode_location),
    ("contactMessage", _decode_contact_card),
]

_WRAPPERS = ("ephemeralMessage", "viewOnceMessage", "viewOnceMessageV2", "viewOnceMessageV2Extension")


def _unwrap(content: dict) -> dict:
    for _ in range(3):
        for wrapper in _WRAPPERS:
            inner = content.get(wrapper)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                content = inner["message"]
                break
        else:
            return content
    return content


def decode_content(content: Optional[dict], inline_base64: Optional[str] = None) -> _Content:
    """Decode the ``message`` node of a provider envelope into a content variant."""
    if not isinstance(content, dict):
        return UnknownContent()

    content = _unwrap(content)
    inline_base64 = inline_base64 or content.get("base64")

    for key, decoder in CONTENT_DECODERS:
        node = content.get(key)
        if not node or (key != "conversation" and not isinstance(node, dict)):
            continue
        return decoder(node, inline_base64)

    return UnknownContent()


def parse_timestamp(value: Any) -> int:
    """Accept unix seconds as int, numeric string or protobuf long ``{low, high}``."""
    if isinstance(value, dict):
        low = _as_int(value.get("low")) or 0
        high = _as_int(value.get("high")) or 0
        return (high << 32) + (low & 0xFFFFFFFF)
    parsed = _as_int(value)
    if parsed is None:
        try:
            parsed = int(float(value))
        except (TypeError, ValueError):
            return 0
    return parsed


def canonicalize(raw: dict, *, default_ack: Optional[AckStatus] = None) -> CanonicalMessage:
    """
    Decode one provider message envelope.

    Args:
        raw: Envelope with ``key``, ``message``, ``messageTimestamp``,
            ``pushName`` and ``status``
        default_ack: Ack to use when ``status`` is absent altogether

    Raises:
        CanonicalizationError: The envelope has no message id or chat id
    """
    if not isinstance(raw, dict):
        raise CanonicalizationError(f"Message envelope must be an object, got {type(raw).__name__}")

    key = raw.get("key")
    if not isinstance(key, dict):
        raise CanonicalizationError("Message envelope key must be an object")
    message_id = key.get("id")
    chat_id = key.get("remoteJid")
    if not message_id or not chat_id:
        raise CanonicalizationError("Message envelope is missing key.id or key.remoteJid")

    from_me = bool(key.get("fromMe"))
    direction = Direction.OUTBOUND if from_me else Direction.INBOUND

    if "status" in raw:
        ack = map_ack_status(raw.get("status"))
    else:
        ack = default_ack or AckStatus.PENDING

    if is_group_jid(chat_id):
        sender_address = key.get("participant") or None
    else:
        sender_address = None if from_me else chat_id

    sender_name = raw.get("pushName") or None
    if sender_name and sender_address and sender_name == local_part(sender_address):
        sender_name = None

    content = decode_content(raw.get("message"), raw.get("base64"))
    if isinstance(content, UnknownContent):
        logger.debug(f"Unrecognized content shape for message {message_id}")

    return CanonicalMessage(
        external_message_id=message_id,
        chat_id=chat_id,
        direction=direction,
        content=content,
        timestamp=parse_timestamp(raw.get("messageTimestamp")),
        ack=ack,
        sender_address=sender_address,
        sender_name=sender_name,
        raw=raw,
    )
