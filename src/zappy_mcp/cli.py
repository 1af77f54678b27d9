"""Command-line interface: run the server or inspect an allow-list."""

from __future__ import annotations

import inspect
from typing import Annotated, Any, Optional

import typer
import uvicorn
from rich.table import Table

from .config import get_settings
from .logging_setup import configure_logging, console, display_startup_banner
from .permissions import load_allowlist

app = typer.Typer(help="Permission-gated WhatsApp MCP server.", invoke_without_command=True)

ConfigOption = Annotated[
    Optional[str],
    typer.Option("--config", "-c", help="Path to the allow-list JSON file. Defaults to the ZAPPY_CONFIG setting."),
]


@app.callback(invoke_without_command=True)
def _app_callback(ctx: typer.Context) -> None:
    """Default to ``serve-stdio`` when no subcommand is given."""
    if ctx.invoked_subcommand is None:
        serve_stdio(config=None)


@app.command("serve-stdio")
def serve_stdio(config: ConfigOption = None) -> None:
    """Run the MCP server over stdio (how agent hosts spawn it).

    stdout carries the MCP protocol, so logs and the banner go to stderr.
    """
    from .app import create_gateway, build_mcp_server

    settings = get_settings()
    configure_logging(settings)
    gateway = create_gateway(settings, config_path=config)
    display_startup_banner(
        settings,
        transport="stdio",
        config_path=gateway.allowlist.path,
        allowed=len(gateway.registry),
    )
    server = build_mcp_server(gateway=gateway)
    server.run(transport="stdio")


@app.command("serve-http")
def serve_http(
    config: ConfigOption = None,
    host: Optional[str] = typer.Option(None, help="Host interface for HTTP transport. Defaults to HTTP_HOST setting."),
    port: Optional[int] = typer.Option(None, help="Port for HTTP transport. Defaults to HTTP_PORT setting."),
    path: Optional[str] = typer.Option(None, help="HTTP path where the MCP endpoint is exposed."),
) -> None:
    """Run the MCP server over the Streamable HTTP transport."""
    from dataclasses import replace

    from .app import create_gateway
    from .http import build_http_app

    settings = get_settings()
    http_settings = replace(
        settings.http,
        host=host or settings.http.host,
        port=port or settings.http.port,
        path=path or settings.http.path,
    )
    settings = replace(settings, http=http_settings)
    configure_logging(settings)
    gateway = create_gateway(settings, config_path=config)
    display_startup_banner(
        settings,
        transport="http",
        config_path=gateway.allowlist.path,
        allowed=len(gateway.registry),
    )
    fastapi_app = build_http_app(settings, gateway=gateway)
    # HTTP-only MCP transport; stay compatible with uvicorn builds without the 'ws' parameter
    kwargs: dict[str, Any] = {"host": http_settings.host, "port": http_settings.port, "log_level": "info"}
    if "ws" in inspect.signature(uvicorn.run).parameters:
        kwargs["ws"] = "none"
    uvicorn.run(fastapi_app, **kwargs)


@app.command("check-config")
def check_config(
    path: Annotated[str, typer.Argument(help="Allow-list JSON file to validate.")],
) -> None:
    """Load an allow-list file and show what each recipient may do."""
    allowlist = load_allowlist(path)
    if allowlist.load_error:
        console.print(f"[red]Failed to load {path}:[/] {allowlist.load_error}")
        raise typer.Exit(code=1)

    recipients = allowlist.registry.list_all()
    if not recipients:
        console.print("[yellow]No recipients configured.[/] Use the list_chats tool to find chat IDs.")
        return

    table = Table(title=f"Allowed recipients ({len(recipients)})")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    for column in ("Send", "Read", "Delete"):
        table.add_column(column, justify="center")
    for entry in recipients:
        table.add_row(
            entry["id"],
            entry["name"],
            *("[green]yes[/]" if entry[key] else "[dim]no[/]" for key in ("canSend", "canRead", "canDelete")),
        )
    console.print(table)
    if allowlist.suppress_warnings:
        console.print("[dim]suppressWarnings is enabled.[/]")
