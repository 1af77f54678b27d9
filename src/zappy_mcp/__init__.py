"""Top-level package for the Zappy MCP server."""

from __future__ import annotations

from typing import Any

__version__ = "1.0.0"


def build_mcp_server(**kwargs: Any) -> Any:
    """Lazily import and build the FastMCP server to avoid heavy module import costs."""
    from .app import build_mcp_server as _build_mcp_server
    return _build_mcp_server(**kwargs)

__all__ = ["__version__", "build_mcp_server"]
