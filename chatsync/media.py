"""
Media pipeline: fetch attachment bytes and relay them to blob storage.

Runs after the owning message is committed and never fails it. Every error
here is logged at the pipeline boundary and the message keeps has_media
without a reference. Failed downloads are not retried.
"""

import asyncio
import base64
import binascii
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Callable, Optional, Protocol
from urllib.parse import quote

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatsync.canonical import CanonicalMessage
from chatsync.metrics import record_media_outcome
from chatsync.models import MediaAsset, Message
from chatsync.utils import compute_hmac_signature, verify_hmac_signature

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = ".bin"

MIME_EXTENSIONS = {
    # Images
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/bmp": ".bmp",
    "image/svg+xml": ".svg",
    # Video
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "video/x-msvideo": ".avi",
    "video/x-matroska": ".mkv",
    "video/webm": ".webm",
    "video/3gpp": ".3gp",
    # Audio
    "audio/mpeg": ".mp3",
    "audio/ogg": ".ogg",
    "audio/wav": ".wav",
    "audio/mp4": ".m4a",
    "audio/aac": ".aac",
    "audio/webm": ".weba",
    "audio/opus": ".opus",
    "audio/amr": ".amr",
    # Documents
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "application/vnd.ms-powerpoint": ".ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": ".pptx",
    "application/rtf": ".rtf",
    "text/plain": ".txt",
    "text/csv": ".csv",
    "text/html": ".html",
    "application/json": ".json",
    "application/xml": ".xml",
    # Archives
    "application/zip": ".zip",
    "application/x-rar-compressed": ".rar",
    "application/x-7z-compressed": ".7z",
    "application/x-tar": ".tar",
    "application/gzip": ".gz",
}


class BlobStorageError(Exception):
    """Raised for blob paths that are empty or escape the storage root."""


def extension_for_mimetype(mimetype: Optional[str]) -> str:
    """File extension for a MIME type; parameters such as ``; codecs=opus`` are ignored."""
    if not mimetype:
        return DEFAULT_EXTENSION
    base = mimetype.split(";", 1)[0].strip().lower()
    return MIME_EXTENSIONS.get(base, DEFAULT_EXTENSION)


def safe_filename(name: str) -> str:
    """Strip directory components and characters unsafe in a storage key."""
    name = name.replace("\\", "/").rsplit("/", 1)[-1].strip()
    cleaned = "".join(ch if ch.isalnum() or ch in "._- " else "_" for ch in name).strip(" .")
    return cleaned or "file"


def media_filename(message: CanonicalMessage, mimetype: Optional[str]) -> str:
    descriptor = message.content.media
    if descriptor is not None and descriptor.file_name:
        return safe_filename(descriptor.file_name)
    timestamp_ms = (message.timestamp or int(time.time())) * 1000
    return f"{message.message_type.value}_{timestamp_ms}{extension_for_mimetype(mimetype)}"


def storage_path_for(message: CanonicalMessage, filename: str) -> str:
    """``messages/{YYYY}/{MM}/{message id}/{filename}``, dated by the message timestamp."""
    moment = datetime.fromtimestamp(message.timestamp or time.time(), tz=timezone.utc)
    return f"messages/{moment:%Y}/{moment:%m}/{safe_filename(message.external_message_id)}/{filename}"


# =============================================================================
# Blob Storage
# =============================================================================

class BlobStore(Protocol):
    """Durable blob storage consumed by the media pipeline."""

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        """Store ``data`` under ``path`` and return a URL for it."""
        ...

    def signed_url(self, path: str, expires_in: int) -> str:
        """Time-limited URL for ``path``."""
        ...


class LocalBlobStore:
    """
    Filesystem-backed blob store.

    Signed URLs have the form ``{base_url}/{path}?expires=..&signature=..``
    where the signature is an HMAC-SHA256 over ``path:expires``.

    Args:
        base_dir: Root directory for stored blobs
        base_url: URL prefix the blobs are served under
        signing_secret: Secret for signed URLs
        default_expires_in: Lifetime of URLs returned by ``put``
    """

    def __init__(self, base_dir: Path, base_url: str, signing_secret: str, default_expires_in: int = 3600):
        self.base_dir = Path(base_dir).resolve()
        self.base_url = base_url.rstrip("/")
        self.signing_secret = signing_secret
        self.default_expires_in = default_expires_in

    def resolve_path(self, path: str) -> Path:
        relative = PurePosixPath(path)
        if not path or relative.is_absolute() or ".." in relative.parts:
            raise BlobStorageError(f"Invalid blob path: {path!r}")
        full = (self.base_dir / relative).resolve()
        if not full.is_relative_to(self.base_dir):
            raise BlobStorageError(f"Blob path escapes storage root: {path!r}")
        return full

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        full = self.resolve_path(path)
        await asyncio.to_thread(self._write, full, data)
        logger.info(f"Blob stored: {path} ({len(data)} bytes, {content_type})")
        return self.signed_url(path, self.default_expires_in)

    @staticmethod
    def _write(full: Path, data: bytes) -> None:
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_bytes(data)

    def _signature(self, path: str, expires: int) -> str:
        return compute_hmac_signature(f"{path}:{expires}".encode("utf-8"), self.signing_secret)

    def signed_url(self, path: str, expires_in: int) -> str:
        expires = int(time.time()) + expires_in
        signature = self._signature(path, expires)
        return f"{self.base_url}/{quote(path)}?expires={expires}&signature={signature}"

    def verify(self, path: str, expires: int, signature: str) -> bool:
        if expires < int(time.time()):
            return False
        return verify_hmac_signature(f"{path}:{expires}".encode("utf-8"), signature, self.signing_secret)


# =============================================================================
# Pipeline
# =============================================================================

@dataclass(frozen=True)
class MediaInfo:
    storage_path: str
    url: str
    filename: str
    mimetype: str
    size_bytes: int
    media_type: str


class MediaPipeline:
    """
    Resolve attachment bytes, store them and attach the reference to the message.

    Args:
        blob_store: Where attachments are persisted
        session_factory: Creates DB sessions independent of the writer's
        gateway: Used to download and decrypt attachments by message key
        http: Plain client for fetching attachment URLs directly
    """

    def __init__(
        self,
        blob_store: BlobStore,
        session_factory: Callable[[], Session],
        gateway=None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.blob_store = blob_store
        self.session_factory = session_factory
        self.gateway = gateway
        self.http = http
        self._pending: set[asyncio.Task] = set()

    def schedule(self, message_pk: int, message: CanonicalMessage, session_name: Optional[str] = None):
        """Start ``process`` in the background; the caller never waits for it."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(f"No running event loop, media not scheduled for message {message.external_message_id}")
            record_media_outcome("failed")
            return None

        task = loop.create_task(self.process(message_pk, message, session_name=session_name))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled media task to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def process(
        self,
        message_pk: int,
        message: CanonicalMessage,
        session_name: Optional[str] = None,
    ) -> Optional[MediaInfo]:
        """
        Store one message's attachment.

        Returns:
            MediaInfo on success, None when there is nothing to fetch or
            anything failed. Never raises.
        """
        descriptor = message.content.media
        if descriptor is None:
            return None

        try:
            resolved = await self._resolve_bytes(message, session_name)
            if resolved is None:
                logger.info(f"No media source for message {message.external_message_id}")
                record_media_outcome("no_source")
                return None

            data, mimetype = resolved
            mimetype = mimetype or descriptor.mimetype
            filename = media_filename(message, mimetype)
            path = storage_path_for(message, filename)
            url = await self.blob_store.put(path, data, mimetype)

            info = MediaInfo(
                storage_path=path,
                url=url,
                filename=filename,
                mimetype=mimetype,
                size_bytes=len(data),
                media_type=message.message_type.value,
            )
            self._attach(message_pk, info)
        except Exception:
            logger.exception(f"Media processing failed for message {message.external_message_id}")
            record_media_outcome("failed")
            return None

        logger.info(f"Media stored for message {message.external_message_id}: {path}")
        record_media_outcome("stored")
        return info

    async def _resolve_bytes(
        self,
        message: CanonicalMessage,
        session_name: Optional[str],
    ) -> Optional[tuple[bytes, Optional[str]]]:
        descriptor = message.content.media

        inline = descriptor.inline_base64
        if not inline and descriptor.url and descriptor.url.startswith("data:"):
            inline = descriptor.url
        if inline:
            return _decode_inline(inline), _data_url_mimetype(inline)

        if self.gateway is not None and session_name and message.raw.get("key"):
            return await self.gateway.fetch_media(session_name, message.raw["key"])

        if self.http is not None and descriptor.url and descriptor.url.startswith(("http://", "https://")):
            response = await self.http.get(descriptor.url)
            response.raise_for_status()
            return response.content, response.headers.get("content-type")

        return None

    def _attach(self, message_pk: int, info: MediaInfo) -> None:
        with self.session_factory() as db:
            row = db.get(Message, message_pk)
            if row is None:
                logger.warning(f"Message {message_pk} vanished before media could be attached")
                return
            row.media_url = info.url
            row.media_mimetype = info.mimetype
            row.media_size = info.size_bytes
            row.media_filename = info.filename
            db.commit()

            db.add(MediaAsset(
                message_id=message_pk,
                media_type=info.media_type,
                storage_path=info.storage_path,
                url=info.url,
                mimetype=info.mimetype,
                size_bytes=info.size_bytes,
                filename=info.filename,
            ))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info(f"Media asset already recorded for message {message_pk}")


def _decode_inline(value: str) -> bytes:
    if value.startswith("data:"):
        value = value.split(",", 1)[1] if "," in value else ""
    try:
        return base64.b64decode(value, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Inline media is not valid base64") from e


def _data_url_mimetype(value: str) -> Optional[str]:
    if value.startswith("data:") and ";" in value:
        return value[5:].split(";", 1)[0] or None
    return None
