"""
HTTP client for the external messaging gateway (Evolution API style).

The ``httpx.AsyncClient`` is built explicitly by ``build_http_client`` and
injected into ``GatewayClient``; there is no module-level client.

Provider quirks handled here:

- ``list_messages`` is asked to filter by chat, but some provider versions
  ignore the filter and return messages from every chat. The result is
  always re-filtered locally by each message's own ``key.remoteJid``.
- Responses come wrapped in different envelopes depending on the provider
  version; ``_extract_items`` unwraps all of them.
"""

import base64
import logging
from typing import Any, Iterable, Optional

import httpx

from chatsync.canonical import parse_timestamp
from chatsync.config import Settings

logger = logging.getLogger(__name__)

MAX_MESSAGES_PER_CHAT = 1000


class GatewayError(Exception):
    """Base error for gateway calls."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class GatewayTimeoutError(GatewayError):
    """The gateway did not answer within the client timeout."""


class GatewayRequestError(GatewayError):
    """Transport failure, non-2xx response or unparseable body."""


# =============================================================================
# HTTP Client Construction
# =============================================================================

async def _log_request(request: httpx.Request) -> None:
    logger.debug(f"Gateway request: {request.method} {request.url.path}")


async def _log_response(response: httpx.Response) -> None:
    request = response.request
    if response.status_code >= 400:
        await response.aread()
        logger.error(
            f"Gateway error response: {request.method} {request.url.path} "
            f"status={response.status_code} body={response.text[:500]}"
        )
    else:
        logger.debug(f"Gateway response: {request.method} {request.url.path} status={response.status_code}")


def build_http_client(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Construct the gateway HTTP client with auth header, timeout and logging hooks."""
    return httpx.AsyncClient(
        base_url=settings.GATEWAY_BASE_URL,
        headers={
            "apikey": settings.GATEWAY_API_KEY,
            "Content-Type": "application/json",
        },
        timeout=settings.GATEWAY_TIMEOUT,
        transport=transport,
        event_hooks={"request": [_log_request], "response": [_log_response]},
    )


def _extract_items(data: Any, keys: Iterable[str]) -> list:
    """Unwrap a list from the envelopes different provider versions use."""
    if isinstance(data, list):
        return data
    if not isinstance(data, dict):
        return []
    for key in keys:
        value = data.get(key)
        if isinstance(value, list):
            return value
        if isinstance(value, dict):
            nested = _extract_items(value, ("records", "items", "data"))
            if nested:
                return nested
    return []


def message_chat_id(message: Any) -> Optional[str]:
    if not isinstance(message, dict):
        return None
    key = message.get("key")
    return key.get("remoteJid") if isinstance(key, dict) else None


class GatewayClient:
    """Thin wrapper over the gateway's REST API."""

    def __init__(self, http: httpx.AsyncClient, max_messages_per_chat: int = MAX_MESSAGES_PER_CHAT):
        self._http = http
        self.max_messages_per_chat = max_messages_per_chat

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._http.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise GatewayTimeoutError(f"Gateway timeout on {method} {path}") from e
        except httpx.HTTPStatusError as e:
            raise GatewayRequestError(
                f"Gateway returned {e.response.status_code} on {method} {path}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise GatewayRequestError(f"Gateway request failed on {method} {path}: {e}") from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise GatewayRequestError(f"Gateway returned invalid JSON on {method} {path}") from e

    # -------------------------------------------------------------------------
    # Instance management
    # -------------------------------------------------------------------------

    async def create_instance(self, instance: str) -> dict:
        return await self._request("POST", "/instance/create", json={
            "instanceName": instance,
            "qrcode": True,
            "integration": "WHATSAPP-BAILEYS",
        })

    async def delete_instance(self, instance: str) -> Any:
        return await self._request("DELETE", f"/instance/delete/{instance}")

    async def logout_instance(self, instance: str) -> Any:
        return await self._request("DELETE", f"/instance/logout/{instance}")

    async def restart_instance(self, instance: str) -> Any:
        return await self._request("PUT", f"/instance/restart/{instance}")

    async def connection_state(self, instance: str) -> Optional[str]:
        """Provider connection state: ``open``, ``connecting`` or ``close``."""
        data = await self._request("GET", f"/instance/connectionState/{instance}") or {}
        state = (data.get("instance") or {}).get("state") or data.get("state")
        return state

    async def fetch_qr_code(self, instance: str) -> dict:
        return await self._request("GET", f"/instance/connect/{instance}") or {}

    async def request_pairing_code(self, instance: str, phone_number: str) -> dict:
        return await self._request("POST", "/instance/pairingCode", json={
            "instanceName": instance,
            "phoneNumber": phone_number,
        }) or {}

    async def set_webhook(self, instance: str, url: str, events: list[str]) -> Any:
        return await self._request("POST", f"/webhook/set/{instance}", json={
            "url": url,
            "enabled": True,
            "webhookByEvents": False,
            "events": events,
        })

    # -------------------------------------------------------------------------
    # Chats and messages
    # -------------------------------------------------------------------------

    async def list_chats(self, instance: str, page: int = 1, page_size: int = 100) -> list[dict]:
        """Fetch one page of chats."""
        data = await self._request("POST", f"/chat/findChats/{instance}", json={
            "where": {},
            "page": page,
            "limit": page_size,
        })
        chats = [chat for chat in _extract_items(data, ("chats", "records", "data")) if isinstance(chat, dict)]
        logger.debug(f"Fetched chat page {page}: {len(chats)} chats")
        return chats

    async def list_messages(
        self,
        instance: str,
        chat_id: str,
        limit: int = MAX_MESSAGES_PER_CHAT,
        after: Optional[int] = None,
    ) -> list[dict]:
        """
        Fetch up to ``limit`` most recent messages of one chat.

        The provider-side chat filter is treated as a hint only: the result
        is re-filtered by each message's embedded chat id, optionally
        restricted to timestamps strictly after ``after``, sorted newest
        first and truncated to ``limit``.
        """
        limit = max(1, min(limit, self.max_messages_per_chat))
        data = await self._request("POST", f"/chat/findMessages/{instance}", json={
            "where": {"key": {"remoteJid": chat_id}},
            "limit": limit,
        })
        received = _extract_items(data, ("messages", "records", "data"))

        messages = [m for m in received if message_chat_id(m) == chat_id]
        foreign = len(received) - len(messages)
        if foreign:
            logger.warning(
                f"Gateway ignored chat filter for {chat_id}: dropped {foreign} of "
                f"{len(received)} messages from other chats"
            )

        if after is not None:
            messages = [m for m in messages if parse_timestamp(m.get("messageTimestamp")) > after]

        messages.sort(key=lambda m: parse_timestamp(m.get("messageTimestamp")), reverse=True)
        return messages[:limit]

    async def send_text(self, instance: str, number: str, text: str) -> dict:
        return await self._request("POST", f"/message/sendText/{instance}", json={
            "number": number,
            "text": text,
            "delay": 1200,
        }) or {}

    async def send_media(
        self,
        instance: str,
        number: str,
        media_url: str,
        mediatype: str,
        caption: str = "",
        file_name: Optional[str] = None,
    ) -> dict:
        payload = {
            "number": number,
            "mediatype": mediatype,
            "media": media_url,
            "caption": caption,
            "delay": 1200,
        }
        if file_name:
            payload["fileName"] = file_name
        return await self._request("POST", f"/message/sendMedia/{instance}", json=payload) or {}

    async def mark_as_read(self, instance: str, chat_id: str, message_id: str) -> Any:
        return await self._request("POST", f"/chat/markMessageAsRead/{instance}", json={
            "readMessages": [{"remoteJid": chat_id, "fromMe": False, "id": message_id}],
        })

    async def fetch_media(self, instance: str, message_key: dict) -> tuple[bytes, Optional[str]]:
        """Have the gateway download and decrypt an attachment; returns (bytes, mimetype)."""
        data = await self._request("POST", f"/chat/getBase64FromMediaMessage/{instance}", json={
            "message": {"key": message_key},
            "convertToMp4": False,
        }) or {}
        encoded = data.get("base64")
        if not encoded:
            raise GatewayRequestError(f"Gateway returned no media for message {message_key.get('id')}")
        return base64.b64decode(encoded), data.get("mimetype")
