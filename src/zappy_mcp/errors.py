"""Exception hierarchy and error categories shared across the bridge."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_READY = "NOT_READY"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    NOT_FOUND = "NOT_FOUND"
    OWNERSHIP_VIOLATION = "OWNERSHIP_VIOLATION"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    UNHANDLED_EXCEPTION = "UNHANDLED_EXCEPTION"


class ZappyError(Exception):
    """Base class for errors raised by this package."""


class SessionNotReadyError(ZappyError):
    """The WhatsApp session is absent, still initializing, or failed."""

    def __init__(self, phase: str, message: str | None = None):
        super().__init__(message or f"WhatsApp session is not ready (phase={phase}).")
        self.phase = phase


class PairingUnavailableError(ZappyError):
    """No local port could be bound for the pairing page."""

    def __init__(self, host: str, first_port: int, attempts: int):
        super().__init__(
            f"Could not bind a pairing page on {host} (tried ports {first_port}-{first_port + attempts - 1})."
        )
        self.host = host
        self.first_port = first_port
        self.attempts = attempts


class TransportError(ZappyError):
    """The underlying chat transport rejected or failed an operation."""


class BridgeUnavailableError(TransportError):
    """The whatsapp-web.js bridge process could not be reached."""
