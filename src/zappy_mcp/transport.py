"""Chat transport boundary and the whatsapp-web.js bridge client.

The session manager only talks to the :class:`Transport` protocol. The concrete
:class:`BridgeTransport` drives a local Node.js bridge that owns the
whatsapp-web.js client and its persisted credentials:

    zappy-mcp <-> BridgeTransport (httpx) <-> bridge (Node.js) <-> WhatsApp Web

Lifecycle events arrive over a Server-Sent-Events stream (``GET /events``);
everything else is plain JSON over HTTP.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Iterator
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol
from urllib.parse import quote

import httpx

from .errors import BridgeUnavailableError, TransportError

logger = logging.getLogger(__name__)

EVENT_QR = "qr"
EVENT_AUTHENTICATED = "authenticated"
EVENT_AUTH_FAILURE = "auth_failure"
EVENT_READY = "ready"
EVENT_DISCONNECTED = "disconnected"

LIFECYCLE_EVENTS: frozenset[str] = frozenset(
    {EVENT_QR, EVENT_AUTHENTICATED, EVENT_AUTH_FAILURE, EVENT_READY, EVENT_DISCONNECTED}
)

EventHandler = Callable[..., Optional[Awaitable[None]]]


@dataclass(slots=True, frozen=True)
class Chat:
    id: str
    name: str
    is_group: bool = False
    unread_count: int = 0

    @classmethod
    def from_bridge(cls, data: dict[str, Any]) -> "Chat":
        chat_id = str(data.get("id", ""))
        return cls(
            id=chat_id,
            name=data.get("name") or chat_id.split("@", 1)[0],
            is_group=bool(data.get("isGroup", False)),
            unread_count=int(data.get("unreadCount") or 0),
        )


@dataclass(slots=True, frozen=True)
class ChatMessage:
    id: str
    chat_id: str
    from_id: str
    from_me: bool
    body: str
    timestamp: int
    type: str = "chat"
    has_media: bool = False

    @classmethod
    def from_bridge(cls, data: dict[str, Any], chat_id: str = "") -> "ChatMessage":
        return cls(
            id=str(data.get("id", "")),
            chat_id=str(data.get("chatId") or chat_id),
            from_id=str(data.get("from", "")),
            from_me=bool(data.get("fromMe", False)),
            body=data.get("body") or "",
            timestamp=int(data.get("timestamp") or 0),
            type=data.get("type") or "chat",
            has_media=bool(data.get("hasMedia", False)),
        )


@dataclass(slots=True, frozen=True)
class SentMessage:
    id: str
    timestamp: int


class Transport(Protocol):
    """What the session manager needs from a chat connection.

    ``on`` registers lifecycle callbacks for the events in ``LIFECYCLE_EVENTS``:
    ``qr(token)``, ``authenticated()``, ``auth_failure(message)``, ``ready()``
    and ``disconnected(reason)``. Handlers may be plain or async callables.
    """

    def on(self, event: str, handler: EventHandler) -> None: ...

    async def initialize(self) -> None: ...

    async def destroy(self) -> None: ...

    async def get_chats(self) -> list[Chat]: ...

    async def get_chat(self, chat_id: str) -> Chat: ...

    async def fetch_messages(self, chat_id: str, limit: int) -> list[ChatMessage]: ...

    async def send_message(self, chat_id: str, body: str) -> SentMessage: ...

    async def delete_message(self, chat_id: str, message_id: str, for_everyone: bool) -> None: ...


class EventEmitter:
    """Minimal callback registry shared by transports."""

    def __init__(self) -> None:
        self._handlers: defaultdict[str, list[EventHandler]] = defaultdict(list)

    def on(self, event: str, handler: EventHandler) -> None:
        if event not in LIFECYCLE_EVENTS:
            raise ValueError(f"Unknown transport event: {event!r}")
        self._handlers[event].append(handler)

    async def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result


@contextmanager
def _malformed_payload(what: str) -> Iterator[None]:
    try:
        yield
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise TransportError(f"bridge returned a malformed {what} payload: {exc}") from exc


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str, str]]:
    """Yield ``(event, data)`` pairs from a text/event-stream body."""
    event = "message"
    data: list[str] = []
    async for line in lines:
        if not line:
            if data:
                yield event, "\n".join(data)
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
    if data:
        yield event, "\n".join(data)


class BridgeTransport(EventEmitter):
    """HTTP client for the whatsapp-web.js bridge.

    Example:
        transport = BridgeTransport("http://127.0.0.1:8790", auth_path="~/.config/zappy-mcp/auth")
        transport.on("qr", lambda token: print(token))
        await transport.initialize()
    """

    def __init__(
        self,
        base_url: str,
        *,
        auth_path: str,
        headless: bool = True,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.auth_path = auth_path
        self.headless = headless
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._events_task: Optional[asyncio.Task[None]] = None
        self._closed = False

    async def initialize(self) -> None:
        await self._request(
            "POST",
            "/session/start",
            json={"authPath": self.auth_path, "headless": self.headless},
        )
        self._events_task = asyncio.create_task(self._consume_events(), name="zappy-bridge-events")

    async def destroy(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._events_task is not None:
            self._events_task.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await self._events_task
            self._events_task = None
        with suppress(httpx.HTTPError):
            await self._client.post("/session/stop")
        if self._owns_client:
            await self._client.aclose()

    async def _consume_events(self) -> None:
        reason = "bridge event stream closed"
        try:
            async with self._client.stream("GET", "/events", timeout=None) as response:
                response.raise_for_status()
                async for event, raw in iter_sse(response.aiter_lines()):
                    await self._dispatch(event, raw)
        except httpx.HTTPError as exc:
            reason = f"bridge event stream failed: {exc}"
            logger.warning("bridge.events_failed", extra={"error": str(exc)})
        if not self._closed:
            await self.emit(EVENT_DISCONNECTED, reason)

    async def _dispatch(self, event: str, raw: str) -> None:
        if event not in LIFECYCLE_EVENTS:
            logger.debug("bridge.event_ignored", extra={"event": event})
            return
        try:
            data = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            data = {"value": raw}
        if not isinstance(data, dict):
            data = {"value": data}
        if event == EVENT_QR:
            await self.emit(event, str(data.get("qr") or data.get("value") or ""))
        elif event == EVENT_AUTH_FAILURE:
            await self.emit(event, str(data.get("message") or data.get("value") or "authentication failed"))
        elif event == EVENT_DISCONNECTED:
            await self.emit(event, str(data.get("reason") or data.get("value") or "unknown"))
        else:
            await self.emit(event)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise BridgeUnavailableError(
                f"Cannot reach WhatsApp bridge at {self.base_url}: {exc}. Make sure the bridge is running."
            ) from exc
        if response.is_error:
            detail = response.text
            with suppress(ValueError):
                payload = response.json()
                if isinstance(payload, dict) and payload.get("error"):
                    detail = str(payload["error"])
            raise TransportError(detail or f"bridge returned HTTP {response.status_code}")
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(f"bridge returned a non-JSON body for {method} {path}") from exc

    @staticmethod
    def _chat_path(chat_id: str) -> str:
        return f"/chats/{quote(chat_id, safe='')}"

    async def get_chats(self) -> list[Chat]:
        data = await self._request("GET", "/chats")
        with _malformed_payload("chats"):
            return [Chat.from_bridge(item) for item in (data or {}).get("chats", [])]

    async def get_chat(self, chat_id: str) -> Chat:
        data = await self._request("GET", self._chat_path(chat_id))
        with _malformed_payload("chat"):
            return Chat.from_bridge(data or {"id": chat_id})

    async def fetch_messages(self, chat_id: str, limit: int) -> list[ChatMessage]:
        data = await self._request("GET", f"{self._chat_path(chat_id)}/messages", params={"limit": limit})
        with _malformed_payload("messages"):
            return [ChatMessage.from_bridge(item, chat_id) for item in (data or {}).get("messages", [])]

    async def send_message(self, chat_id: str, body: str) -> SentMessage:
        data = await self._request("POST", f"{self._chat_path(chat_id)}/messages", json={"body": body}) or {}
        with _malformed_payload("sent message"):
            return SentMessage(id=str(data.get("id", "")), timestamp=int(data.get("timestamp") or 0))

    async def delete_message(self, chat_id: str, message_id: str, for_everyone: bool) -> None:
        await self._request(
            "DELETE",
            f"{self._chat_path(chat_id)}/messages/{quote(message_id, safe='')}",
            params={"forEveryone": "true" if for_everyone else "false"},
        )
