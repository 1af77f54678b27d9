"""Application factory for the Zappy MCP server."""

from __future__ import annotations

import json
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import wraps
from pathlib import Path
from typing import Any, AsyncContextManager, Callable, Optional

import structlog
from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from .config import Settings, get_settings
from .errors import ErrorKind
from .gateway import DEFAULT_CHAT_LIMIT, DEFAULT_MESSAGE_LIMIT, OperationGateway, OperationResult
from .pairing import PairingChannel
from .permissions import load_allowlist
from .session import SessionManager, TransportFactory
from .transport import BridgeTransport, Transport

logger = logging.getLogger(__name__)

TOOL_METRICS: defaultdict[str, dict[str, int]] = defaultdict(lambda: {"calls": 0, "errors": 0})

# Error kinds that describe the caller's request or the session state rather
# than a fault in this process.
_RECOVERABLE_KINDS: frozenset[str] = frozenset(
    {
        ErrorKind.NOT_READY.value,
        ErrorKind.PERMISSION_DENIED.value,
        ErrorKind.NOT_FOUND.value,
        ErrorKind.OWNERSHIP_VIOLATION.value,
        ErrorKind.TRANSPORT_ERROR.value,
        ErrorKind.INVALID_ARGUMENT.value,
    }
)


class ToolExecutionError(ToolError):
    """Error envelope raised to FastMCP so the client receives ``isError: true``.

    The exception message is the JSON envelope itself.
    """

    def __init__(self, payload: dict[str, Any]):
        super().__init__(json.dumps(payload, indent=2, default=str))
        self.payload = payload
        self.error_type = str(payload.get("type", ErrorKind.UNHANDLED_EXCEPTION.value))
        self.recoverable = self.error_type in _RECOVERABLE_KINDS


def _unwrap(result: OperationResult) -> dict[str, Any]:
    if result.is_error:
        raise ToolExecutionError(result.payload)
    return result.payload


def _record_tool_error(tool_name: str, exc: Exception) -> None:
    logger.warning(
        "tool_error",
        extra={
            "tool": tool_name,
            "error": type(exc).__name__,
            "error_message": str(exc)[:500],
        },
    )


def _instrument_tool(tool_name: str) -> Callable[[Any], Any]:
    def decorator(func: Any) -> Any:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            metrics = TOOL_METRICS[tool_name]
            metrics["calls"] += 1
            start_time = time.perf_counter()
            log = structlog.get_logger("tool")
            try:
                return await func(*args, **kwargs)
            except ToolExecutionError as exc:
                metrics["errors"] += 1
                log.info("tool.rejected", tool=tool_name, error_type=exc.error_type)
                raise
            except Exception as exc:
                # Anything reaching here escaped the gateway's own handling
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                raise ToolExecutionError(
                    {
                        "error": f"Unexpected error ({type(exc).__name__}): {exc}",
                        "type": ErrorKind.UNHANDLED_EXCEPTION.value,
                        "tool": tool_name,
                    }
                ) from exc
            finally:
                log.debug("tool.completed", tool=tool_name, duration_ms=round((time.perf_counter() - start_time) * 1000, 2))

        return wrapper

    return decorator


def _tool_metrics_snapshot() -> list[dict[str, Any]]:
    return [
        {"name": name, "calls": data["calls"], "errors": data["errors"]}
        for name, data in sorted(TOOL_METRICS.items())
    ]


def default_transport_factory(settings: Settings) -> TransportFactory:
    """Build a fresh bridge-backed transport per connection attempt."""

    def factory() -> Transport:
        auth_path = Path(settings.session.auth_path).expanduser()
        auth_path.mkdir(parents=True, exist_ok=True)
        logger.info("Auth data: %s", auth_path)
        return BridgeTransport(
            settings.bridge.url,
            auth_path=str(auth_path),
            headless=settings.bridge.headless,
            timeout=settings.bridge.timeout_seconds,
        )

    return factory


def create_gateway(
    settings: Optional[Settings] = None,
    *,
    config_path: Optional[str] = None,
    transport_factory: Optional[TransportFactory] = None,
    browser_opener: Optional[Callable[[str], Any]] = None,
) -> OperationGateway:
    """Wire allow-list, session manager and pairing channel together."""
    settings = settings or get_settings()
    allowlist = load_allowlist(config_path or settings.allowlist_path)
    session = SessionManager(
        transport_factory or default_transport_factory(settings),
        settle_delay=settings.session.settle_delay_seconds,
        wait_ceiling=settings.session.wait_ceiling_seconds,
        pairing_dismiss_delay=settings.pairing.dismiss_delay_seconds,
    )
    session.pairing = PairingChannel(
        lambda: session.is_ready,
        host=settings.pairing.host,
        base_port=settings.pairing.base_port,
        max_port_attempts=settings.pairing.max_port_attempts,
        poll_interval_ms=settings.pairing.poll_interval_ms,
        close_delay_ms=settings.pairing.close_delay_ms,
        open_browser=settings.pairing.open_browser,
        browser_opener=browser_opener,
    )
    return OperationGateway(session, allowlist, auth_path=str(Path(settings.session.auth_path).expanduser()))


def _lifespan_factory(gateway: OperationGateway) -> Callable[[FastMCP], AsyncContextManager[None]]:
    @asynccontextmanager
    async def lifespan(app: FastMCP) -> AsyncIterator[None]:
        try:
            yield
        finally:
            await gateway.session.shutdown()

    return lifespan


def build_mcp_server(
    *,
    config_path: Optional[str] = None,
    gateway: Optional[OperationGateway] = None,
) -> FastMCP:
    """Create and configure the FastMCP server instance."""
    gateway = gateway or create_gateway(config_path=config_path)

    instructions = (
        "Zappy MCP exposes one WhatsApp account. Sending, reading and deleting are limited to the "
        "recipients in the operator's allow-list; call list_allowed to see them and list_chats to "
        "discover chat IDs. The WhatsApp client starts on first use and may need a QR scan by the "
        "operator; call get_status if a tool reports the client is not ready."
    )

    mcp = FastMCP(name="zappy-mcp", instructions=instructions, lifespan=_lifespan_factory(gateway))

    @mcp.tool(
        name="get_status",
        description="Check WhatsApp client connection status. Client initializes lazily on first use.",
    )
    @_instrument_tool("get_status")
    async def get_status() -> dict[str, Any]:
        """Report session phase, pairing state and allow-list size without starting the client."""
        return _unwrap(await gateway.get_status())

    @mcp.tool(
        name="list_allowed",
        description="List all allowed recipients with their permissions (canSend, canRead, canDelete).",
    )
    @_instrument_tool("list_allowed")
    async def list_allowed() -> dict[str, Any]:
        return _unwrap(await gateway.list_allowed())

    @mcp.tool(
        name="list_chats",
        description=(
            "List all WhatsApp chats with their IDs and permissions. "
            "Use this to find chat IDs for config.json setup."
        ),
    )
    @_instrument_tool("list_chats")
    async def list_chats(limit: int = DEFAULT_CHAT_LIMIT, groups_only: bool = False) -> dict[str, Any]:
        """
        Discover chats, annotated with the capabilities the allow-list grants each one.

        Parameters
        ----------
        limit : int
            Maximum number of chats to return (default: 50).
        groups_only : bool
            Only show group chats (default: false).
        """
        return _unwrap(await gateway.list_chats(limit=limit, groups_only=groups_only))

    @mcp.tool(
        name="send_message",
        description=(
            "Send a WhatsApp message to an ALLOWED phone number or group. "
            "Will fail if recipient is not in the allowed list."
        ),
    )
    @_instrument_tool("send_message")
    async def send_message(to: str, message: str) -> dict[str, Any]:
        """
        Parameters
        ----------
        to : str
            Phone number (with country code) or group ID - must be in allowed list.
        message : str
            Message text to send.

        Never retried automatically: a retry after a partial failure could deliver twice.
        """
        return _unwrap(await gateway.send_message(to, message))

    @mcp.tool(
        name="get_messages",
        description="Get recent messages from a chat. Only works for chats with canRead permission.",
    )
    @_instrument_tool("get_messages")
    async def get_messages(chat_id: str, limit: int = DEFAULT_MESSAGE_LIMIT) -> dict[str, Any]:
        """
        Parameters
        ----------
        chat_id : str
            Chat ID (from list_chats) or phone number.
        limit : int
            Number of messages to fetch (default: 20).
        """
        return _unwrap(await gateway.get_messages(chat_id, limit=limit))

    @mcp.tool(
        name="delete_message",
        description="Delete a message. Requires canDelete permission. Can only delete messages sent by you.",
    )
    @_instrument_tool("delete_message")
    async def delete_message(chat_id: str, message_id: str, for_everyone: bool = True) -> dict[str, Any]:
        """
        Parameters
        ----------
        chat_id : str
            Chat ID where the message is.
        message_id : str
            Message ID to delete (from get_messages).
        for_everyone : bool
            Delete for everyone, not just me (default: true).
        """
        return _unwrap(await gateway.delete_message(chat_id, message_id, for_everyone=for_everyone))

    @mcp.resource("resource://tooling/metrics", mime_type="application/json")
    def tooling_metrics_resource() -> str:
        """Per-tool call and error counters since process start."""
        return json.dumps({"tools": _tool_metrics_snapshot()}, indent=2)

    return mcp
