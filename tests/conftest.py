from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import pytest

from zappy_mcp.config import clear_settings_cache
from zappy_mcp.logging_setup import reset_logging_state
from zappy_mcp.transport import EVENT_AUTHENTICATED, EVENT_READY, Chat, ChatMessage, EventEmitter, SentMessage

SETTLE_DELAY = 0.01


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Point every setting at the temp dir and reset caches."""
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("ZAPPY_CONFIG", "")
    monkeypatch.setenv("SESSION_AUTH_PATH", str(tmp_path / "auth"))
    monkeypatch.setenv("SESSION_SETTLE_DELAY_SECONDS", str(SETTLE_DELAY))
    monkeypatch.setenv("SESSION_WAIT_CEILING_SECONDS", "1")
    monkeypatch.setenv("PAIRING_OPEN_BROWSER", "false")
    monkeypatch.setenv("HTTP_HOST", "127.0.0.1")
    monkeypatch.setenv("HTTP_PORT", "8765")
    monkeypatch.setenv("HTTP_PATH", "/mcp/")
    monkeypatch.setenv("LOG_RICH_ENABLED", "false")
    clear_settings_cache()
    reset_logging_state()
    try:
        yield
    finally:
        clear_settings_cache()
        reset_logging_state()


@pytest.fixture
def write_allowlist(tmp_path):
    """Write an allow-list document and return its path."""

    def _write(allowed: list[dict[str, Any]], **extra: Any) -> str:
        path: Path = tmp_path / "config.json"
        path.write_text(json.dumps({"allowed": allowed, **extra}), encoding="utf-8")
        return str(path)

    return _write


class FakeTransport(EventEmitter):
    """Scripted in-memory transport.

    ``script`` lists the lifecycle events ``initialize`` emits, e.g.
    ``[("qr", "token"), ("authenticated",), ("ready",)]``. With
    ``hold=True`` initialize emits nothing and the test drives events by hand.
    """

    def __init__(
        self,
        script: Optional[list[tuple[Any, ...]]] = None,
        *,
        hold: bool = False,
        fail_initialize: Optional[Exception] = None,
    ):
        super().__init__()
        self.script = script if script is not None else [(EVENT_AUTHENTICATED,), (EVENT_READY,)]
        self.hold = hold
        self.fail_initialize = fail_initialize
        self.initialize_calls = 0
        self.destroyed = False
        self.chats: list[Chat] = []
        self.messages: dict[str, list[ChatMessage]] = {}
        self.sent: list[tuple[str, str]] = []
        self.deleted: list[tuple[str, str, bool]] = []
        self.fetch_calls: list[tuple[str, int]] = []
        self.raise_on: dict[str, Exception] = {}

    async def initialize(self) -> None:
        self.initialize_calls += 1
        if self.fail_initialize is not None:
            raise self.fail_initialize
        if self.hold:
            return
        for event, *args in self.script:
            await asyncio.sleep(0)
            await self.emit(event, *args)

    async def destroy(self) -> None:
        self.destroyed = True

    def _maybe_raise(self, operation: str) -> None:
        exc = self.raise_on.get(operation)
        if exc is not None:
            raise exc

    async def get_chats(self) -> list[Chat]:
        self._maybe_raise("get_chats")
        return list(self.chats)

    async def get_chat(self, chat_id: str) -> Chat:
        self._maybe_raise("get_chat")
        for chat in self.chats:
            if chat.id == chat_id:
                return chat
        return Chat(id=chat_id, name=chat_id.split("@", 1)[0])

    async def fetch_messages(self, chat_id: str, limit: int) -> list[ChatMessage]:
        self._maybe_raise("fetch_messages")
        self.fetch_calls.append((chat_id, limit))
        return list(self.messages.get(chat_id, []))[-limit:]

    async def send_message(self, chat_id: str, body: str) -> SentMessage:
        self._maybe_raise("send_message")
        self.sent.append((chat_id, body))
        return SentMessage(id=f"true_{chat_id}_{len(self.sent)}", timestamp=1700000000 + len(self.sent))

    async def delete_message(self, chat_id: str, message_id: str, for_everyone: bool) -> None:
        self._maybe_raise("delete_message")
        self.deleted.append((chat_id, message_id, for_everyone))


class FakePairing:
    """Records what the session asks the pairing channel to do."""

    def __init__(self, *, fail: Optional[Exception] = None):
        self.fail = fail
        self.presented: list[str] = []
        self.dismissed = 0
        self.scheduled: list[float] = []
        self._active = False
        self.url = "http://localhost:3000"

    @property
    def is_active(self) -> bool:
        return self._active

    async def present(self, token: str) -> None:
        if self.fail is not None:
            raise self.fail
        self.presented.append(token)
        self._active = True

    async def dismiss(self) -> None:
        self.dismissed += 1
        self._active = False

    def schedule_dismiss(self, delay: float) -> None:
        self.scheduled.append(delay)


class TransportFactoryRecorder:
    """Transport factory handing out a fresh FakeTransport per attempt."""

    def __init__(self, **kwargs: Any):
        self.kwargs = kwargs
        self.created: list[FakeTransport] = []

    def __call__(self) -> FakeTransport:
        transport = FakeTransport(**self.kwargs)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


def message(msg_id: str, chat_id: str, *, from_me: bool, body: str = "hi") -> ChatMessage:
    return ChatMessage(
        id=msg_id,
        chat_id=chat_id,
        from_id="me@c.us" if from_me else chat_id,
        from_me=from_me,
        body=body,
        timestamp=1700000000,
    )

