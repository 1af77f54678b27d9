"""Logging configuration and the operator-facing startup banner.

stdout belongs to the stdio MCP protocol, so every handler and console here
writes to stderr.
"""

from __future__ import annotations

import logging
import sys
from typing import IO, Any, Optional

import structlog
from rich import box
from rich.console import Console
from rich.table import Table

from .config import Settings

console = Console(stderr=True, soft_wrap=True)

_LOGGING_CONFIGURED = False
_ROOT_HANDLER: Optional[logging.Handler] = None


class _ExtraFieldsFormatter(logging.Formatter):
    """Append ``extra=`` fields to the rendered line as ``key=value`` pairs."""

    _RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        rendered = super().format(record)
        extras = {k: v for k, v in vars(record).items() if k not in self._RESERVED and not k.startswith("_")}
        if not extras:
            return rendered
        return rendered + " " + " ".join(f"{key}={value!r}" for key, value in sorted(extras.items()))


def configure_logging(settings: Settings, *, stream: Optional[IO[str]] = None) -> None:
    """Initialize structlog and stdlib logging formatting (idempotent)."""
    global _LOGGING_CONFIGURED, _ROOT_HANDLER
    if _LOGGING_CONFIGURED:
        return
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "level"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(_ExtraFieldsFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root = logging.getLogger()
    if _ROOT_HANDLER is not None:
        root.removeHandler(_ROOT_HANDLER)
    root.addHandler(handler)
    _ROOT_HANDLER = handler
    root.setLevel(level)

    # Routine per-request noise from the MCP and HTTP stacks
    logging.getLogger("mcp.server.lowlevel.server").setLevel(logging.WARNING)
    logging.getLogger("mcp.server.streamable_http").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    # FastMCP logs every ToolError with logger.exception(); denied sends and
    # not-ready sessions are normal outcomes, so drop the traceback.
    logging.getLogger("fastmcp.tools.tool_manager").addFilter(ExpectedErrorFilter())

    _LOGGING_CONFIGURED = True


class ExpectedErrorFilter(logging.Filter):
    """Strip tracebacks from records whose exception is a recoverable tool error."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not record.exc_info or record.exc_info[1] is None:
            return True
        exc = record.exc_info[1]
        cause = getattr(exc, "__cause__", None)
        if getattr(exc, "recoverable", False) or getattr(cause, "recoverable", False):
            record.exc_info = None
            record.exc_text = None
            if record.levelno >= logging.ERROR:
                record.levelno = logging.INFO
                record.levelname = "INFO"
        return True


def reset_logging_state() -> None:
    """Allow configure_logging to run again (tests)."""
    global _LOGGING_CONFIGURED, _ROOT_HANDLER
    _LOGGING_CONFIGURED = False
    if _ROOT_HANDLER is not None:
        logging.getLogger().removeHandler(_ROOT_HANDLER)
        _ROOT_HANDLER = None
    structlog.reset_defaults()


def display_startup_banner(settings: Settings, *, transport: str, config_path: Optional[str], allowed: int) -> None:
    """Print a short configuration summary for the operator."""
    if not settings.log_rich_enabled:
        return
    table = Table(
        box=box.ROUNDED,
        border_style="green",
        title="[bold]Zappy MCP[/bold]",
        show_header=False,
        padding=(0, 1),
    )
    table.add_column("Setting", style="bold cyan")
    table.add_column("Value", overflow="fold")
    table.add_row("Transport", transport)
    if transport == "http":
        table.add_row("Endpoint", f"http://{settings.http.host}:{settings.http.port}{settings.http.path}")
    table.add_row("Allow-list", config_path or "[yellow]none (send/read blocked)[/yellow]")
    table.add_row("Recipients", str(allowed))
    table.add_row("Bridge", settings.bridge.url)
    table.add_row("Auth data", settings.session.auth_path)
    table.add_row("Session", "[dim]starts lazily on first tool call[/dim]")
    console.print(table)
