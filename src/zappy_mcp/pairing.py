"""Ephemeral local web page that shows the WhatsApp pairing QR code.

The tool-calling agent cannot scan a QR code, so when the transport asks for
pairing a tiny FastAPI app is served on the first free local port and opened
in the operator's browser. The page polls ``/status`` and closes itself once
the session is connected; the server is torn down shortly afterwards.
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import logging
import socket
import webbrowser
from string import Template
from typing import Any, Callable, Iterator, Optional

import qrcode
import uvicorn
from fastapi import FastAPI
from fastapi.responses import HTMLResponse, JSONResponse, Response
from qrcode.image.svg import SvgPathImage

from .errors import PairingUnavailableError

logger = logging.getLogger(__name__)

_STARTUP_TIMEOUT_SECONDS = 10.0
_SHUTDOWN_TIMEOUT_SECONDS = 5.0
_PORT_LIMIT = 65536

_PAGE_TEMPLATE = Template(
    """<!DOCTYPE html>
<html>
<head>
    <title>WhatsApp QR Code</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        * { box-sizing: border-box; margin: 0; padding: 0; }
        body {
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            background: linear-gradient(135deg, #075e54 0%, #128c7e 100%);
            min-height: 100vh;
            display: flex;
            align-items: center;
            justify-content: center;
            padding: 20px;
        }
        .card {
            background: white;
            border-radius: 16px;
            padding: 40px;
            text-align: center;
            box-shadow: 0 20px 60px rgba(0,0,0,0.3);
            max-width: 400px;
        }
        h1 { color: #075e54; font-size: 24px; margin-bottom: 8px; }
        .subtitle { color: #667781; font-size: 14px; margin-bottom: 24px; }
        .qr { background: #f0f2f5; border-radius: 12px; padding: 20px; margin-bottom: 24px; }
        .qr img { display: block; margin: 0 auto; }
        .steps { text-align: left; background: #f0f2f5; border-radius: 8px; padding: 16px; }
        .steps h2 { font-size: 14px; color: #075e54; margin-bottom: 12px; }
        .steps ol { color: #3b4a54; font-size: 13px; padding-left: 20px; }
        .steps li { margin-bottom: 8px; }
        .status { margin-top: 20px; padding: 12px; border-radius: 8px; font-size: 13px; }
        .status.waiting { background: #fff3cd; color: #856404; }
        .status.connected { background: #d4edda; color: #155724; }
    </style>
</head>
<body>
    <div class="card">
        <h1>Zappy MCP</h1>
        <p class="subtitle">Scan to connect WhatsApp</p>
        <div class="qr">
            <img id="qr" src="/qr.svg?v=$version" alt="QR Code" width="260" height="260">
        </div>
        <div class="steps">
            <h2>How to connect:</h2>
            <ol>
                <li>Open WhatsApp on your phone</li>
                <li>Tap <strong>Menu</strong> or <strong>Settings</strong></li>
                <li>Tap <strong>Linked Devices</strong></li>
                <li>Tap <strong>Link a Device</strong></li>
                <li>Point your phone at this QR code</li>
            </ol>
        </div>
        <div id="status" class="status waiting">Waiting for connection...</div>
    </div>
    <script>
        let version = $version;
        setInterval(async () => {
            try {
                const res = await fetch('/status');
                const data = await res.json();
                if (data.version !== version) {
                    version = data.version;
                    document.getElementById('qr').src = '/qr.svg?v=' + version;
                }
                if (data.connected) {
                    const el = document.getElementById('status');
                    el.className = 'status connected';
                    el.textContent = 'Connected! This window will close automatically...';
                    setTimeout(() => window.close(), $close_delay_ms);
                }
            } catch (e) {}
        }, $poll_interval_ms);
    </script>
</body>
</html>
"""
)


def render_qr_svg(token: str) -> str:
    """Render a pairing token as a standalone SVG document."""
    image = qrcode.make(token, image_factory=SvgPathImage, box_size=10, border=2)
    buffer = io.BytesIO()
    image.save(buffer)
    return buffer.getvalue().decode("utf-8")


def bind_first_free_port(host: str, base_port: int, attempts: int) -> socket.socket:
    """Bind a TCP socket on the first free port in ``[base_port, base_port + attempts)``."""
    end = min(base_port + attempts, _PORT_LIMIT)
    for port in range(base_port, end):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((host, port))
        except OSError:
            sock.close()
            continue
        return sock
    raise PairingUnavailableError(host, base_port, max(end - base_port, 0))


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves the host process's signal handling alone."""

    def install_signal_handlers(self) -> None:
        return

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class PairingChannel:
    """Singleton side channel presenting the current pairing token.

    At most one endpoint is bound at a time. A second token during the same
    attempt reuses the live page: the token is swapped and ``version`` bumped so
    the page reloads the QR image.
    """

    def __init__(
        self,
        status_provider: Callable[[], bool],
        *,
        host: str = "127.0.0.1",
        base_port: int = 3000,
        max_port_attempts: int = 100,
        poll_interval_ms: int = 1000,
        close_delay_ms: int = 1500,
        open_browser: bool = True,
        browser_opener: Optional[Callable[[str], Any]] = None,
    ):
        self._status_provider = status_provider
        self.host = host
        self.base_port = base_port
        self.max_port_attempts = max_port_attempts
        self.poll_interval_ms = poll_interval_ms
        self.close_delay_ms = close_delay_ms
        self.open_browser = open_browser
        self._browser_opener = browser_opener or webbrowser.open
        self._lock = asyncio.Lock()
        self._token: Optional[str] = None
        self._version = 0
        self._socket: Optional[socket.socket] = None
        self._server: Optional[_EmbeddedServer] = None
        self._serve_task: Optional[asyncio.Task[None]] = None
        self._dismiss_task: Optional[asyncio.Task[None]] = None
        self._port: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> Optional[int]:
        return self._port

    @property
    def url(self) -> Optional[str]:
        if self._port is None:
            return None
        host = "localhost" if self.host in {"127.0.0.1", "0.0.0.0"} else self.host
        return f"http://{host}:{self._port}"

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def version(self) -> int:
        return self._version

    def build_app(self) -> FastAPI:
        app = FastAPI(title="Zappy MCP pairing", docs_url=None, redoc_url=None, openapi_url=None)

        @app.get("/", response_class=HTMLResponse)
        async def page() -> HTMLResponse:
            html = _PAGE_TEMPLATE.substitute(
                version=self._version,
                poll_interval_ms=self.poll_interval_ms,
                close_delay_ms=self.close_delay_ms,
            )
            return HTMLResponse(html, headers={"Cache-Control": "no-store"})

        @app.get("/qr.svg")
        async def qr_image() -> Response:
            if not self._token:
                return Response(status_code=404)
            return Response(
                render_qr_svg(self._token),
                media_type="image/svg+xml",
                headers={"Cache-Control": "no-store"},
            )

        @app.get("/status")
        async def status() -> JSONResponse:
            return JSONResponse({"connected": bool(self._status_provider()), "version": self._version})

        return app

    async def present(self, token: str) -> None:
        """Show ``token``; start the page if no channel is active."""
        async with self._lock:
            self._cancel_scheduled_dismiss()
            self._token = token
            self._version += 1
            if self.is_active:
                logger.info("pairing.token_refreshed", extra={"url": self.url, "version": self._version})
                return
            await self._start()
        logger.warning("Scan the WhatsApp QR code at %s", self.url)
        if self.open_browser and self.url:
            await self._open_browser(self.url)

    async def _start(self) -> None:
        sock = bind_first_free_port(self.host, self.base_port, self.max_port_attempts)
        port = sock.getsockname()[1]
        # log_config=None: uvicorn must not install stdout handlers next to the stdio protocol
        config = uvicorn.Config(
            self.build_app(), log_config=None, log_level="warning", access_log=False, lifespan="off"
        )
        server = _EmbeddedServer(config)
        task = asyncio.create_task(server.serve(sockets=[sock]), name="zappy-pairing-page")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + _STARTUP_TIMEOUT_SECONDS
        while not server.started:
            if task.done() or loop.time() > deadline:
                server.should_exit = True
                with contextlib.suppress(Exception, asyncio.CancelledError, SystemExit):
                    await task
                sock.close()
                raise PairingUnavailableError(self.host, port, 1)
            await asyncio.sleep(0.01)
        self._socket = sock
        self._server = server
        self._serve_task = task
        self._port = port
        logger.info("pairing.started", extra={"url": self.url})

    async def _open_browser(self, url: str) -> None:
        try:
            await asyncio.to_thread(self._browser_opener, url)
        except Exception as exc:
            logger.warning("pairing.browser_open_failed", extra={"url": url, "error": str(exc)})

    async def dismiss(self) -> None:
        """Close the page server; safe to call repeatedly."""
        async with self._lock:
            await self._stop()

    async def _stop(self) -> None:
        server, task, sock = self._server, self._serve_task, self._socket
        self._server = None
        self._serve_task = None
        self._socket = None
        self._port = None
        self._token = None
        if server is None:
            return
        server.should_exit = True
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout=_SHUTDOWN_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                task.cancel()
                with contextlib.suppress(Exception, asyncio.CancelledError):
                    await task
        if sock is not None:
            sock.close()
        logger.info("Pairing page closed")

    def schedule_dismiss(self, delay: float) -> None:
        """Dismiss after ``delay`` seconds unless a new token arrives first."""
        self._cancel_scheduled_dismiss()
        self._dismiss_task = asyncio.create_task(self._dismiss_later(delay), name="zappy-pairing-dismiss")

    async def _dismiss_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._dismiss_task = None
        await self.dismiss()

    def _cancel_scheduled_dismiss(self) -> None:
        task = self._dismiss_task
        self._dismiss_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
