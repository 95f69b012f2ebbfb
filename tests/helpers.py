"""Builders for provider payloads and a fake gateway for httpx.MockTransport."""

import base64
import json
import time
from typing import Callable, Optional

import httpx

_MISSING = object()


def make_message(
    message_id: str,
    remote_jid: str,
    text: str = "hello",
    timestamp: int = 1736935200,
    from_me: bool = False,
    push_name: Optional[str] = None,
    participant: Optional[str] = None,
    status=_MISSING,
    message: Optional[dict] = None,
) -> dict:
    """One provider message envelope."""
    key = {"id": message_id, "remoteJid": remote_jid, "fromMe": from_me}
    if participant:
        key["participant"] = participant
    raw = {
        "key": key,
        "message": message if message is not None else {"conversation": text},
        "messageTimestamp": timestamp,
    }
    if push_name is not None:
        raw["pushName"] = push_name
    if status is not _MISSING:
        raw["status"] = status
    return raw


def make_chat(jid: str, name: Optional[str] = None, **extra) -> dict:
    chat = {"remoteJid": jid, "unreadCount": 0}
    if name is not None:
        chat["name"] = name
    chat.update(extra)
    return chat


def envelope(event: str, data, instance: str = "sales-line") -> dict:
    return {"event": event, "instance": instance, "data": data}


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeGateway:
    """
    In-memory gateway answering the endpoints the sync engine calls.

    ``chat_pages`` is either a list of pages (page 1 first) or a callable
    ``page -> list``. ``ignore_chat_filter`` makes message listing return
    every chat's messages, like provider versions that drop the filter.
    """

    def __init__(self):
        self.chat_pages: list | Callable[[int], list] = []
        self.messages: dict[str, list[dict]] = {}
        self.media: dict[str, tuple[bytes, str]] = {}
        self.ignore_chat_filter = False
        self.failing_chat_pages: set[int] = set()
        self.timeout_chats: set[str] = set()
        self.requests: list[httpx.Request] = []

    def chat_page_requests(self) -> list[int]:
        return [
            json.loads(request.content)["page"]
            for request in self.requests
            if request.url.path.startswith("/chat/findChats/")
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        body = json.loads(request.content) if request.content else {}

        if path.startswith("/chat/findChats/"):
            page = body.get("page", 1)
            if page in self.failing_chat_pages:
                return httpx.Response(500, json={"error": "chat listing failed"})
            if callable(self.chat_pages):
                return httpx.Response(200, json=self.chat_pages(page))
            items = self.chat_pages[page - 1] if page <= len(self.chat_pages) else []
            return httpx.Response(200, json=items)

        if path.startswith("/chat/findMessages/"):
            jid = body["where"]["key"]["remoteJid"]
            if jid in self.timeout_chats:
                raise httpx.ReadTimeout("timed out", request=request)
            if self.ignore_chat_filter:
                records = [m for messages in self.messages.values() for m in messages]
            else:
                records = list(self.messages.get(jid, []))
            return httpx.Response(200, json={"messages": {"total": len(records), "records": records}})

        if path.startswith("/chat/getBase64FromMediaMessage/"):
            message_id = body["message"]["key"]["id"]
            if message_id not in self.media:
                return httpx.Response(404, json={"error": "media not found"})
            data, mimetype = self.media[message_id]
            return httpx.Response(200, json={
                "base64": base64.b64encode(data).decode("ascii"),
                "mimetype": mimetype,
            })

        if path.startswith("/instance/connectionState/"):
            return httpx.Response(200, json={"instance": {"state": "open"}})

        return httpx.Response(404, json={"error": f"unexpected call {request.method} {path}"})


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll ``predicate`` until it holds; used for work running on the app's event loop."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
