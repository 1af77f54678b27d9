"""Permission-gated operations exposed to the agent.

Every operation follows the same template: wait for the session, normalize the
target chat id, check the allow-list, call the transport, and project the
result into a small stable shape. Failures never raise out of this module;
they come back as an error :class:`OperationResult`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .errors import ErrorKind, SessionNotReadyError, TransportError
from .permissions import AllowlistConfig, Capability, PermissionRegistry, normalize_recipient
from .session import SessionManager, SessionPhase
from .transport import ChatMessage

logger = logging.getLogger(__name__)

DEFAULT_CHAT_LIMIT = 50
DEFAULT_MESSAGE_LIMIT = 20
MAX_LIMIT = 500
# How far back delete_message looks for the target message
DELETE_LOOKUP_WINDOW = 50

_STATUS_HINT = "Check status with get_status tool."
_SETUP_GUIDANCE = "No recipients configured. Use list_chats to find chat IDs, then add them to your config file"
_LIST_CHATS_WARNING = (
    "No recipients configured yet. Copy chat IDs from above and add to config.json to enable send/read."
)


@dataclass(slots=True)
class OperationResult:
    """Uniform envelope: a payload plus an explicit error flag."""

    payload: dict[str, Any] = field(default_factory=dict)
    is_error: bool = False

    @classmethod
    def ok(cls, payload: dict[str, Any]) -> "OperationResult":
        return cls(payload=payload)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str, **hints: Any) -> "OperationResult":
        payload: dict[str, Any] = {"error": message, "type": kind.value}
        payload.update({key: value for key, value in hints.items() if value is not None})
        return cls(payload=payload, is_error=True)


def _clamp_limit(value: Optional[int], default: int) -> int:
    if value is None:
        return default
    return max(1, min(int(value), MAX_LIMIT))


def _message_to_dict(message: ChatMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "from": message.from_id,
        "fromMe": message.from_me,
        "body": message.body,
        "timestamp": message.timestamp,
        "type": message.type,
        "hasMedia": message.has_media,
    }


class OperationGateway:
    def __init__(self, session: SessionManager, allowlist: AllowlistConfig, *, auth_path: Optional[str] = None):
        self.session = session
        self.allowlist = allowlist
        self.auth_path = auth_path

    @property
    def registry(self) -> PermissionRegistry:
        return self.allowlist.registry

    async def _require_session(self) -> Optional[OperationResult]:
        if await self.session.ensure_ready():
            return None
        phase = self.session.phase
        if phase in (SessionPhase.INITIALIZING, SessionPhase.AWAITING_PAIRING, SessionPhase.SYNCING):
            message = f"WhatsApp client is still initializing ({phase.value}). {_STATUS_HINT}"
        else:
            message = f"WhatsApp client failed to initialize. {_STATUS_HINT}"
        return OperationResult.fail(
            ErrorKind.NOT_READY,
            message,
            phase=phase.value,
            detail=self.session.last_error,
        )

    def _transport_failure(self, operation: str, exc: Exception, hint: Optional[str] = None) -> OperationResult:
        expected = isinstance(exc, (TransportError, SessionNotReadyError))
        logger.warning(
            "gateway.transport_error",
            extra={"operation": operation, "error": str(exc)},
            exc_info=None if expected else exc,
        )
        if isinstance(exc, SessionNotReadyError):
            return OperationResult.fail(ErrorKind.NOT_READY, str(exc), hint=_STATUS_HINT)
        return OperationResult.fail(
            ErrorKind.TRANSPORT_ERROR,
            str(exc) or type(exc).__name__,
            hint=hint or "The WhatsApp transport rejected the request; check get_status and try again.",
        )

    # ------------------------------------------------------------------
    # Introspection (no session required)
    # ------------------------------------------------------------------

    async def get_status(self) -> OperationResult:
        payload = self.session.status()
        payload.update(
            {
                "configPath": self.allowlist.display_path,
                "allowedRecipients": len(self.registry),
                "authPath": self.auth_path,
            }
        )
        pairing = self.session.pairing
        if pairing is not None and pairing.is_active:
            payload["pairingUrl"] = pairing.url
        if self.allowlist.load_error:
            payload["configError"] = self.allowlist.load_error
        return OperationResult.ok(payload)

    async def list_allowed(self) -> OperationResult:
        allowed = self.registry.list_all()
        payload: dict[str, Any] = {
            "total": len(allowed),
            "recipients": allowed,
            "configPath": self.allowlist.display_path,
        }
        if not allowed:
            payload["setup"] = _SETUP_GUIDANCE
        if self.allowlist.load_error:
            payload["configError"] = self.allowlist.load_error
        return OperationResult.ok(payload)

    # ------------------------------------------------------------------
    # Session-backed operations
    # ------------------------------------------------------------------

    async def list_chats(self, limit: Optional[int] = None, groups_only: bool = False) -> OperationResult:
        not_ready = await self._require_session()
        if not_ready is not None:
            return not_ready
        limit = _clamp_limit(limit, DEFAULT_CHAT_LIMIT)
        try:
            chats = await self.session.transport.get_chats()
        except Exception as exc:
            return self._transport_failure("list_chats", exc)
        if groups_only:
            chats = [chat for chat in chats if chat.is_group]
        chat_list = [
            {
                "id": chat.id,
                "name": chat.name,
                "isGroup": chat.is_group,
                **self.registry.capabilities_for(chat.id),
                "unreadCount": chat.unread_count,
            }
            for chat in chats[:limit]
        ]
        payload: dict[str, Any] = {"total": len(chats), "returned": len(chat_list), "chats": chat_list}
        if len(self.registry) == 0 and not self.allowlist.suppress_warnings:
            payload["warning"] = _LIST_CHATS_WARNING
        return OperationResult.ok(payload)

    async def send_message(self, to: str, message: str) -> OperationResult:
        if not to or not to.strip():
            return OperationResult.fail(ErrorKind.INVALID_ARGUMENT, "Recipient 'to' must not be empty")
        if not message:
            return OperationResult.fail(ErrorKind.INVALID_ARGUMENT, "Message text must not be empty")
        not_ready = await self._require_session()
        if not_ready is not None:
            return not_ready
        chat_id = normalize_recipient(to.strip())
        if not self.registry.capability(chat_id, Capability.SEND):
            logger.info("gateway.denied", extra={"capability": "send", "chat_id": chat_id})
            return OperationResult.fail(
                ErrorKind.PERMISSION_DENIED,
                "Not allowed to send to this recipient",
                capability=Capability.SEND.value,
                recipient=chat_id,
                hint="Add this recipient to config.json with canSend: true",
                allowedRecipients=self.registry.list_all(),
            )
        try:
            sent = await self.session.transport.send_message(chat_id, message)
        except Exception as exc:
            return self._transport_failure(
                "send_message",
                exc,
                hint="Make sure the phone number includes country code and is registered on WhatsApp",
            )
        return OperationResult.ok({"success": True, "messageId": sent.id, "to": chat_id, "timestamp": sent.timestamp})

    async def get_messages(self, chat_id: str, limit: Optional[int] = None) -> OperationResult:
        if not chat_id or not chat_id.strip():
            return OperationResult.fail(ErrorKind.INVALID_ARGUMENT, "chatId must not be empty")
        not_ready = await self._require_session()
        if not_ready is not None:
            return not_ready
        formatted_id = normalize_recipient(chat_id.strip())
        if not self.registry.capability(formatted_id, Capability.READ):
            logger.info("gateway.denied", extra={"capability": "read", "chat_id": formatted_id})
            return OperationResult.fail(
                ErrorKind.PERMISSION_DENIED,
                "Not allowed to read messages from this chat",
                capability=Capability.READ.value,
                chatId=formatted_id,
                hint="Add this chat to config.json with canRead: true",
            )
        limit = _clamp_limit(limit, DEFAULT_MESSAGE_LIMIT)
        try:
            transport = self.session.transport
            chat = await transport.get_chat(formatted_id)
            messages = await transport.fetch_messages(formatted_id, limit)
        except Exception as exc:
            return self._transport_failure("get_messages", exc)
        return OperationResult.ok(
            {
                "chatId": formatted_id,
                "chatName": chat.name,
                "messages": [_message_to_dict(msg) for msg in messages],
            }
        )

    async def delete_message(self, chat_id: str, message_id: str, for_everyone: bool = True) -> OperationResult:
        if not chat_id or not chat_id.strip():
            return OperationResult.fail(ErrorKind.INVALID_ARGUMENT, "chatId must not be empty")
        if not message_id or not message_id.strip():
            return OperationResult.fail(ErrorKind.INVALID_ARGUMENT, "messageId must not be empty")
        not_ready = await self._require_session()
        if not_ready is not None:
            return not_ready
        formatted_id = normalize_recipient(chat_id.strip())
        if not self.registry.capability(formatted_id, Capability.DELETE):
            logger.info("gateway.denied", extra={"capability": "delete", "chat_id": formatted_id})
            return OperationResult.fail(
                ErrorKind.PERMISSION_DENIED,
                "Not allowed to delete messages in this chat",
                capability=Capability.DELETE.value,
                chatId=formatted_id,
                hint="Add this chat to config with canDelete: true",
            )
        try:
            transport = self.session.transport
            recent = await transport.fetch_messages(formatted_id, DELETE_LOOKUP_WINDOW)
            target = next((msg for msg in recent if msg.id == message_id), None)
            if target is None:
                return OperationResult.fail(
                    ErrorKind.NOT_FOUND,
                    "Message not found",
                    messageId=message_id,
                    hint="Use get_messages to find valid message IDs",
                )
            if not target.from_me:
                logger.info("gateway.ownership_violation", extra={"chat_id": formatted_id, "message_id": message_id})
                return OperationResult.fail(
                    ErrorKind.OWNERSHIP_VIOLATION,
                    "Can only delete messages sent by you",
                    messageId=message_id,
                )
            await transport.delete_message(formatted_id, message_id, for_everyone)
        except Exception as exc:
            return self._transport_failure("delete_message", exc)
        return OperationResult.ok({"success": True, "messageId": message_id, "deletedForEveryone": for_everyone})
