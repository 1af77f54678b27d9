from __future__ import annotations

import json

import pytest
from conftest import TransportFactoryRecorder
from fastmcp import Client
from fastmcp.exceptions import ToolError
from httpx import ASGITransport, AsyncClient

from zappy_mcp.app import TOOL_METRICS, build_mcp_server, create_gateway
from zappy_mcp.config import get_settings
from zappy_mcp.http import build_http_app

ALICE = "15551234567@c.us"


@pytest.fixture
def factory():
    return TransportFactoryRecorder()


@pytest.fixture
def gateway(isolated_env, factory, write_allowlist):
    path = write_allowlist([{"id": ALICE, "name": "Alice", "canRead": False}])
    return create_gateway(get_settings(), config_path=path, transport_factory=factory)


@pytest.mark.asyncio
async def test_tools_are_registered(gateway):
    server = build_mcp_server(gateway=gateway)
    async with Client(server) as client:
        tools = {tool.name for tool in await client.list_tools()}
    assert tools == {"get_status", "list_allowed", "list_chats", "send_message", "get_messages", "delete_message"}


@pytest.mark.asyncio
async def test_status_and_allow_list_tools(gateway, factory):
    server = build_mcp_server(gateway=gateway)
    async with Client(server) as client:
        status = await client.call_tool("get_status", {})
        assert status.data["phase"] == "unstarted"
        assert status.data["allowedRecipients"] == 1

        allowed = await client.call_tool("list_allowed", {})
        assert allowed.data["total"] == 1
        assert allowed.data["recipients"][0]["name"] == "Alice"
    assert factory.created == []


@pytest.mark.asyncio
async def test_send_message_tool_round_trip(gateway, factory):
    server = build_mcp_server(gateway=gateway)
    async with Client(server) as client:
        sent = await client.call_tool("send_message", {"to": "+1 555 123 4567", "message": "hello"})
        assert sent.data["success"] is True
        assert sent.data["to"] == ALICE
    assert factory.last.sent == [(ALICE, "hello")]


@pytest.mark.asyncio
async def test_denied_tool_call_returns_error_envelope(gateway, factory):
    server = build_mcp_server(gateway=gateway)
    async with Client(server) as client:
        with pytest.raises(ToolError) as excinfo:
            await client.call_tool("get_messages", {"chat_id": ALICE})
    envelope = json.loads(str(excinfo.value))
    assert envelope["type"] == "PERMISSION_DENIED"
    assert envelope["capability"] == "read"
    assert factory.last.fetch_calls == []


@pytest.mark.asyncio
async def test_metrics_resource_counts_calls_and_errors(gateway):
    TOOL_METRICS.clear()
    server = build_mcp_server(gateway=gateway)
    async with Client(server) as client:
        await client.call_tool("list_allowed", {})
        with pytest.raises(ToolError):
            await client.call_tool("send_message", {"to": "999", "message": "hello"})
        blocks = await client.read_resource("resource://tooling/metrics")
    payload = json.loads(blocks[0].text)
    metrics = {entry["name"]: entry for entry in payload["tools"]}
    assert metrics["list_allowed"] == {"name": "list_allowed", "calls": 1, "errors": 0}
    assert metrics["send_message"] == {"name": "send_message", "calls": 1, "errors": 1}


@pytest.mark.asyncio
async def test_unexpected_exception_is_wrapped(gateway, monkeypatch):
    async def broken() -> None:
        raise RuntimeError("boom")

    monkeypatch.setattr(gateway, "list_allowed", broken)
    server = build_mcp_server(gateway=gateway)
    async with Client(server) as client:
        with pytest.raises(ToolError) as excinfo:
            await client.call_tool("list_allowed", {})
    envelope = json.loads(str(excinfo.value))
    assert envelope["type"] == "UNHANDLED_EXCEPTION"
    assert envelope["tool"] == "list_allowed"


@pytest.mark.asyncio
async def test_transport_value_error_surfaces_as_transport_error(gateway, factory):
    server = build_mcp_server(gateway=gateway)
    async with Client(server) as client:
        assert await gateway.session.ensure_ready()
        factory.last.raise_on["send_message"] = ValueError("bad timestamp")
        with pytest.raises(ToolError) as excinfo:
            await client.call_tool("send_message", {"to": ALICE, "message": "hello"})
    envelope = json.loads(str(excinfo.value))
    assert envelope["type"] == "TRANSPORT_ERROR"
    assert envelope["error"] == "bad timestamp"


@pytest.mark.asyncio
async def test_http_app_liveness(gateway):
    app = build_http_app(get_settings(), gateway=gateway)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/health/liveness")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
