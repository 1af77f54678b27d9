"""HTTP transport helpers wrapping FastMCP with FastAPI."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Optional, Protocol, cast

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastmcp import FastMCP

from .app import build_mcp_server
from .config import Settings
from .gateway import OperationGateway
from .logging_setup import configure_logging

__all__ = ["build_http_app"]


class _FastAPILifespan(Protocol):
    def lifespan(self, app: Any) -> Any: ...


def build_http_app(
    settings: Settings,
    server: Optional[FastMCP] = None,
    *,
    gateway: Optional[OperationGateway] = None,
) -> FastAPI:
    """Serve the MCP endpoint at ``settings.http.path`` plus a liveness check."""
    configure_logging(settings)
    if server is None:
        server = build_mcp_server(gateway=gateway)

    mount_path = "/" + settings.http.path.strip("/")
    mcp_http_app = server.http_app(path="/", stateless_http=True, json_response=True)

    @asynccontextmanager
    async def lifespan_context(app: FastAPI) -> AsyncIterator[None]:
        # FastMCP's session manager only runs inside its own lifespan
        async with cast(_FastAPILifespan, mcp_http_app).lifespan(mcp_http_app):
            yield

    fastapi_app = FastAPI(lifespan=lifespan_context, docs_url=None, redoc_url=None)

    @fastapi_app.get("/health/liveness")
    async def health_liveness() -> JSONResponse:
        # Liveness only: never starts the WhatsApp client
        return JSONResponse({"status": "ok"})

    fastapi_app.mount(mount_path, mcp_http_app)
    return fastapi_app
