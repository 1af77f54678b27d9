"""Lazy, single-flight lifecycle of the WhatsApp session.

Nothing connects at process start. The first tool call that needs WhatsApp
becomes the *owner* of a connection attempt; every call arriving while that
attempt is in flight becomes a *follower* and waits on the attempt's one-shot
completion event instead of starting a second browser session.

Phases::

    UNSTARTED -> INITIALIZING -> [AWAITING_PAIRING] -> SYNCING -> READY
                      |                  |                |
                      +------------------+----------------+--> FAILED
    READY --disconnected--> UNSTARTED

Transport callbacks are bound to the attempt number that created them; events
from a superseded handle are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from .errors import PairingUnavailableError, SessionNotReadyError
from .pairing import PairingChannel
from .transport import (
    EVENT_AUTH_FAILURE,
    EVENT_AUTHENTICATED,
    EVENT_DISCONNECTED,
    EVENT_QR,
    EVENT_READY,
    Transport,
)

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_DELAY_SECONDS = 5.0
DEFAULT_WAIT_CEILING_SECONDS = 60.0
DEFAULT_PAIRING_DISMISS_DELAY_SECONDS = 3.0


class SessionPhase(str, Enum):
    UNSTARTED = "unstarted"
    INITIALIZING = "initializing"
    AWAITING_PAIRING = "awaiting_pairing"
    SYNCING = "syncing"
    READY = "ready"
    FAILED = "failed"


IN_FLIGHT_PHASES: frozenset[SessionPhase] = frozenset(
    {SessionPhase.INITIALIZING, SessionPhase.AWAITING_PAIRING, SessionPhase.SYNCING}
)


@dataclass
class SessionState:
    """The one mutable record describing the live session."""

    phase: SessionPhase = SessionPhase.UNSTARTED
    pending_pairing_token: Optional[str] = None
    attempt: int = 0
    last_error: Optional[str] = None
    last_disconnect_reason: Optional[str] = None
    handle: Optional[Transport] = field(default=None, repr=False)
    # Set exactly once when the current attempt reaches READY, FAILED or is torn down
    done: Optional[asyncio.Event] = field(default=None, repr=False)


TransportFactory = Callable[[], Transport]


class SessionManager:
    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        pairing: Optional[PairingChannel] = None,
        settle_delay: float = DEFAULT_SETTLE_DELAY_SECONDS,
        wait_ceiling: float = DEFAULT_WAIT_CEILING_SECONDS,
        pairing_dismiss_delay: float = DEFAULT_PAIRING_DISMISS_DELAY_SECONDS,
    ):
        self._transport_factory = transport_factory
        self.pairing = pairing
        self.settle_delay = settle_delay
        self.wait_ceiling = wait_ceiling
        self.pairing_dismiss_delay = pairing_dismiss_delay
        self._state = SessionState()
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def phase(self) -> SessionPhase:
        return self._state.phase

    @property
    def is_ready(self) -> bool:
        return self._state.phase is SessionPhase.READY

    @property
    def is_initializing(self) -> bool:
        return self._state.phase in IN_FLIGHT_PHASES

    @property
    def attempt(self) -> int:
        return self._state.attempt

    @property
    def pending_pairing_token(self) -> Optional[str]:
        return self._state.pending_pairing_token

    @property
    def last_error(self) -> Optional[str]:
        return self._state.last_error

    @property
    def transport(self) -> Transport:
        """The live transport; only available once READY."""
        if self._state.phase is not SessionPhase.READY or self._state.handle is None:
            raise SessionNotReadyError(self._state.phase.value)
        return self._state.handle

    def status(self) -> dict[str, Any]:
        state = self._state
        return {
            "connected": state.phase is SessionPhase.READY,
            "initializing": state.phase in IN_FLIGHT_PHASES,
            "phase": state.phase.value,
            "clientCreated": state.handle is not None,
            "pendingQR": state.pending_pairing_token is not None,
            "attempt": state.attempt,
            "lastError": state.last_error,
            "lastDisconnectReason": state.last_disconnect_reason,
            "message": self.describe(),
        }

    def describe(self) -> str:
        state = self._state
        if state.phase is SessionPhase.READY:
            return "WhatsApp client is connected and ready"
        if state.phase is SessionPhase.AWAITING_PAIRING:
            return "Waiting for QR code scan - browser should have opened"
        if state.phase is SessionPhase.SYNCING:
            return "WhatsApp client authenticated, waiting for chats to sync..."
        if state.phase is SessionPhase.INITIALIZING:
            return "WhatsApp client is initializing..."
        if state.phase is SessionPhase.FAILED:
            return f"WhatsApp client failed to initialize: {state.last_error or 'unknown error'}"
        if state.attempt == 0:
            return "WhatsApp client not started yet (will init on first tool use)"
        return "WhatsApp client is not connected"

    # ------------------------------------------------------------------
    # Single-flight coordinator
    # ------------------------------------------------------------------

    async def ensure_ready(self) -> bool:
        """Return True once the session is usable, starting it if needed."""
        state = self._state
        if state.phase is SessionPhase.READY:
            return True
        if state.phase in IN_FLIGHT_PHASES and state.done is not None:
            return await self._follow(state.done, state.attempt)
        done = self._begin_attempt()
        await done.wait()
        return self._state.phase is SessionPhase.READY

    async def _follow(self, done: asyncio.Event, attempt: int) -> bool:
        try:
            await asyncio.wait_for(done.wait(), timeout=self.wait_ceiling)
        except asyncio.TimeoutError:
            logger.warning(
                "session.wait_ceiling_elapsed",
                extra={"attempt": attempt, "phase": self._state.phase.value, "ceiling_s": self.wait_ceiling},
            )
            return False
        return self._state.phase is SessionPhase.READY

    def _begin_attempt(self) -> asyncio.Event:
        # Runs without awaiting: the in-flight guard is in place before any
        # other caller can be scheduled.
        state = self._state
        stale = state.handle
        state.attempt += 1
        state.phase = SessionPhase.INITIALIZING
        state.pending_pairing_token = None
        state.last_error = None
        state.handle = None
        done = asyncio.Event()
        state.done = done
        attempt = state.attempt
        if stale is not None:
            self._spawn(self._destroy_handle(stale))

        logger.info("Initializing WhatsApp client (lazy), attempt %d", attempt)
        try:
            handle = self._transport_factory()
        except Exception as exc:
            logger.exception("session.transport_factory_failed")
            self._fail(attempt, f"Failed to create WhatsApp client: {exc}")
            return done
        state.handle = handle
        self._bind(attempt, handle)
        self._spawn(self._initialize(attempt, handle))
        return done

    def _bind(self, attempt: int, handle: Transport) -> None:
        handle.on(EVENT_QR, lambda token: self._on_qr(attempt, token))
        handle.on(EVENT_AUTHENTICATED, lambda *_: self._on_authenticated(attempt))
        handle.on(EVENT_AUTH_FAILURE, lambda message="": self._on_auth_failure(attempt, message))
        handle.on(EVENT_READY, lambda *_: self._on_ready(attempt))
        handle.on(EVENT_DISCONNECTED, lambda reason="": self._on_disconnected(attempt, reason))

    async def _initialize(self, attempt: int, handle: Transport) -> None:
        try:
            await handle.initialize()
        except Exception as exc:
            logger.error("Failed to initialize WhatsApp client: %s", exc)
            if self._is_current(attempt) and self._state.phase in IN_FLIGHT_PHASES:
                self._fail(attempt, f"Failed to initialize: {exc}")

    # ------------------------------------------------------------------
    # Transition triggers
    # ------------------------------------------------------------------

    def _is_current(self, attempt: int) -> bool:
        return attempt == self._state.attempt and self._state.handle is not None

    async def _on_qr(self, attempt: int, token: str) -> None:
        state = self._state
        if not self._is_current(attempt) or state.phase not in (
            SessionPhase.INITIALIZING,
            SessionPhase.AWAITING_PAIRING,
        ):
            return
        state.pending_pairing_token = token
        state.phase = SessionPhase.AWAITING_PAIRING
        logger.info("QR code received, opening pairing page")
        if self.pairing is None:
            return
        try:
            await self.pairing.present(token)
        except PairingUnavailableError as exc:
            logger.error("session.pairing_unavailable", extra={"attempt": attempt, "error": str(exc)})
            if self._is_current(attempt):
                self._fail(attempt, str(exc))

    async def _on_authenticated(self, attempt: int) -> None:
        state = self._state
        if not self._is_current(attempt) or state.phase not in (
            SessionPhase.INITIALIZING,
            SessionPhase.AWAITING_PAIRING,
        ):
            return
        state.pending_pairing_token = None
        state.phase = SessionPhase.SYNCING
        logger.info("Authenticated successfully")

    async def _on_ready(self, attempt: int) -> None:
        state = self._state
        if not self._is_current(attempt) or state.phase not in IN_FLIGHT_PHASES:
            return
        state.pending_pairing_token = None
        state.phase = SessionPhase.SYNCING
        logger.info("Client connected, waiting %.1fs for sync...", self.settle_delay)
        self._spawn(self._settle(attempt))

    async def _settle(self, attempt: int) -> None:
        await asyncio.sleep(self.settle_delay)
        state = self._state
        if not self._is_current(attempt) or state.phase is not SessionPhase.SYNCING:
            return
        state.phase = SessionPhase.READY
        logger.info("Client is ready")
        # The page must see connected=true before it goes away
        if self.pairing is not None and self.pairing.is_active:
            self.pairing.schedule_dismiss(self.pairing_dismiss_delay)
        if state.done is not None:
            state.done.set()

    async def _on_auth_failure(self, attempt: int, message: str) -> None:
        if not self._is_current(attempt):
            return
        logger.error("Authentication failed: %s", message)
        self._fail(attempt, f"Authentication failed: {message}")

    async def _on_disconnected(self, attempt: int, reason: str) -> None:
        state = self._state
        if not self._is_current(attempt):
            return
        logger.warning("Client disconnected: %s", reason)
        handle = state.handle
        state.handle = None
        state.phase = SessionPhase.UNSTARTED
        state.pending_pairing_token = None
        state.last_disconnect_reason = reason or "unknown"
        if state.done is not None:
            state.done.set()
        if handle is not None:
            self._spawn(self._destroy_handle(handle))
        self._dismiss_pairing()

    def _fail(self, attempt: int, error: str) -> None:
        state = self._state
        if attempt != state.attempt:
            return
        handle = state.handle
        state.handle = None
        state.phase = SessionPhase.FAILED
        state.pending_pairing_token = None
        state.last_error = error
        if state.done is not None:
            state.done.set()
        if handle is not None:
            self._spawn(self._destroy_handle(handle))
        self._dismiss_pairing()

    # ------------------------------------------------------------------
    # Teardown helpers
    # ------------------------------------------------------------------

    def _dismiss_pairing(self) -> None:
        if self.pairing is not None and self.pairing.is_active:
            self._spawn(self.pairing.dismiss())

    async def _destroy_handle(self, handle: Transport) -> None:
        try:
            await handle.destroy()
        except Exception as exc:
            logger.warning("session.destroy_failed", extra={"error": str(exc)})

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def shutdown(self) -> None:
        """Tear the session and pairing page down; safe to call repeatedly."""
        state = self._state
        handle = state.handle
        state.handle = None
        state.phase = SessionPhase.UNSTARTED
        state.pending_pairing_token = None
        if state.done is not None:
            state.done.set()
        if handle is not None:
            await self._destroy_handle(handle)
        if self.pairing is not None:
            await self.pairing.dismiss()
        pending = [task for task in self._background if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
