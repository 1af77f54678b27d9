"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")

DEFAULT_DATA_DIR: Final[str] = "~/.config/zappy-mcp"


def _build_decouple_config() -> DecoupleConfig:
    # Missing .env (CI, tests, spawned by an agent host) falls back to os.environ only.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class SessionSettings:
    """Timing contracts and credential location for the WhatsApp session."""

    # Wait after the transport's "ready" signal before trusting chat state
    settle_delay_seconds: float
    # Upper bound a follower waits on an in-flight attempt
    wait_ceiling_seconds: float
    auth_path: str


@dataclass(slots=True, frozen=True)
class PairingSettings:
    """Ephemeral QR pairing page settings."""

    host: str
    base_port: int
    max_port_attempts: int
    poll_interval_ms: int
    close_delay_ms: int
    dismiss_delay_seconds: float
    open_browser: bool


@dataclass(slots=True, frozen=True)
class BridgeSettings:
    """Connection to the local whatsapp-web.js bridge process."""

    url: str
    timeout_seconds: float
    headless: bool


@dataclass(slots=True, frozen=True)
class HttpSettings:
    """Streamable HTTP transport settings for the MCP server."""

    host: str
    port: int
    path: str


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    # Allow-list document; --config on the command line takes precedence
    allowlist_path: str | None
    session: SessionSettings
    pairing: PairingSettings
    bridge: BridgeSettings
    http: HttpSettings
    # Logging
    log_level: str
    log_json_enabled: bool
    log_rich_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    session_settings = SessionSettings(
        settle_delay_seconds=_float(_decouple_config("SESSION_SETTLE_DELAY_SECONDS", default="5"), default=5.0),
        wait_ceiling_seconds=_float(_decouple_config("SESSION_WAIT_CEILING_SECONDS", default="60"), default=60.0),
        auth_path=_decouple_config("SESSION_AUTH_PATH", default=f"{DEFAULT_DATA_DIR}/auth"),
    )

    pairing_settings = PairingSettings(
        host=_decouple_config("PAIRING_HOST", default="127.0.0.1"),
        base_port=_int(_decouple_config("PAIRING_BASE_PORT", default="3000"), default=3000),
        max_port_attempts=max(1, _int(_decouple_config("PAIRING_MAX_PORT_ATTEMPTS", default="100"), default=100)),
        poll_interval_ms=_int(_decouple_config("PAIRING_POLL_INTERVAL_MS", default="1000"), default=1000),
        close_delay_ms=_int(_decouple_config("PAIRING_CLOSE_DELAY_MS", default="1500"), default=1500),
        dismiss_delay_seconds=_float(_decouple_config("PAIRING_DISMISS_DELAY_SECONDS", default="3"), default=3.0),
        open_browser=_bool(_decouple_config("PAIRING_OPEN_BROWSER", default="true"), default=True),
    )

    bridge_settings = BridgeSettings(
        url=_decouple_config("BRIDGE_URL", default="http://127.0.0.1:8790").rstrip("/"),
        timeout_seconds=_float(_decouple_config("BRIDGE_TIMEOUT_SECONDS", default="30"), default=30.0),
        headless=_bool(_decouple_config("BRIDGE_HEADLESS", default="true"), default=True),
    )

    http_settings = HttpSettings(
        host=_decouple_config("HTTP_HOST", default="127.0.0.1"),
        port=_int(_decouple_config("HTTP_PORT", default="8766"), default=8766),
        path=_decouple_config("HTTP_PATH", default="/mcp/"),
    )

    return Settings(
        environment=environment,
        allowlist_path=_decouple_config("ZAPPY_CONFIG", default="").strip() or None,
        session=session_settings,
        pairing=pairing_settings,
        bridge=bridge_settings,
        http=http_settings,
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
