from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Coroutine

from .errors import PairingPending, TransportDisconnect
from .identity import account_identifier
from .models import (
    BridgeStatus,
    ConnectionClosed,
    ConnectionOpened,
    ConnectionState,
    DisconnectReason,
    MessagesReceived,
    PairingChallenge,
    Session,
    TransportEvent,
)
from .protocols import EventSink, TransportFactory
from .router import MessageRouter

logger = logging.getLogger("wa_bridge.supervisor")

_ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.UNINITIALIZED: frozenset({ConnectionState.INITIALIZING}),
    ConnectionState.INITIALIZING: frozenset(
        {ConnectionState.AWAITING_PAIRING, ConnectionState.CONNECTED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.AWAITING_PAIRING: frozenset(
        {ConnectionState.AWAITING_PAIRING, ConnectionState.CONNECTED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.DISCONNECTED}),
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.INITIALIZING, ConnectionState.LOGGED_OUT}),
    ConnectionState.LOGGED_OUT: frozenset(),
}

# States in which a session already exists; initialize() is a no-op there.
_ACTIVE_STATES = frozenset(
    {ConnectionState.INITIALIZING, ConnectionState.AWAITING_PAIRING, ConnectionState.CONNECTED}
)

NOTIFY_DELIVERY = "notify"


class SessionSupervisor:
    """Own the messaging session and drive its connection state machine.

    The supervisor is the only writer of :class:`Session`. Transport events
    arrive through a sink bound to the generation of the transport handle
    that produced them, so events from a superseded handle are ignored.
    Message events are handed to the router as background tasks; the
    supervisor never waits on them.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        router: MessageRouter,
        auth_dir: Path,
        reconnect_delay: float = 3.0,
    ):
        self.transport_factory = transport_factory
        self.router = router
        self.auth_dir = Path(auth_dir)
        self.reconnect_delay = reconnect_delay
        self.session = Session()
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Caller-facing surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self.session.state

    def is_initializing(self) -> bool:
        return self.session.state is ConnectionState.INITIALIZING

    def get_status(self) -> BridgeStatus:
        connected = self.session.state is ConnectionState.CONNECTED
        return BridgeStatus(
            connected=connected,
            phone_number=self.session.bound_identifier if connected else None,
            qr_code=None if connected else self.session.pairing_payload,
        )

    def pairing_code(self) -> str:
        """Return the cached pairing payload or raise :class:`PairingPending`."""
        if self.session.state is ConnectionState.CONNECTED:
            raise PairingPending("session is already paired and connected")
        if not self.session.pairing_payload:
            raise PairingPending()
        return self.session.pairing_payload

    async def initialize(self) -> None:
        state = self.session.state
        if state in _ACTIVE_STATES:
            logger.debug("initialize() ignored: session already %s", state.value)
            return
        if state is ConnectionState.LOGGED_OUT:
            logger.warning("initialize() ignored: session logged out; call disconnect() first")
            return

        self._cancel_reconnect()
        self._transition(ConnectionState.INITIALIZING)
        self.session.generation += 1
        generation = self.session.generation

        logger.info("Initializing session (generation=%d, auth_dir=%s)", generation, self.auth_dir)
        try:
            self.auth_dir.mkdir(parents=True, exist_ok=True)
            handle = await self.transport_factory(self.auth_dir, self._sink_for(generation))
        except Exception as exc:
            if generation != self.session.generation:
                return
            logger.exception("Failed to open transport session")
            self._on_disconnect(TransportDisconnect(None, retryable=True, detail=str(exc)))
            return

        if generation != self.session.generation:
            # disconnect() ran while the transport was opening.
            logger.info("Discarding transport opened for superseded generation %d", generation)
            await self._logout(handle)
            return
        if self.session.state not in _ACTIVE_STATES:
            # Closed before the factory returned; a reconnect is already scheduled.
            await self._close_handle(handle)
            return
        self.session.handle = handle

    async def disconnect(self) -> None:
        """Log out, forget the session and stop reconnecting.

        In-flight message handling is not interrupted.
        """
        self._cancel_reconnect()
        handle = self.session.handle
        was_logged_out = self.session.state is ConnectionState.LOGGED_OUT
        self.session.generation += 1
        self.session.reset()
        if handle is not None and not was_logged_out:
            await self._logout(handle)
        logger.info("Session disconnected")

    async def close(self) -> None:
        """Drop the live connection without logging out (credentials are kept)."""
        self._cancel_reconnect()
        handle = self.session.handle
        self.session.generation += 1
        self.session.reset()
        if handle is not None:
            await self._close_handle(handle)

    async def drain(self) -> None:
        """Wait for all in-flight message tasks to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------

    def _sink_for(self, generation: int) -> EventSink:
        async def sink(event: TransportEvent) -> None:
            if generation != self.session.generation:
                logger.debug("Ignoring %s from superseded generation %d", type(event).__name__, generation)
                return
            self.handle_event(event)

        return sink

    def handle_event(self, event: TransportEvent) -> None:
        if isinstance(event, PairingChallenge):
            self._on_pairing_challenge(event)
        elif isinstance(event, ConnectionOpened):
            self._on_open(event)
        elif isinstance(event, ConnectionClosed):
            retryable = event.reason_code != DisconnectReason.LOGGED_OUT
            self._on_disconnect(TransportDisconnect(event.reason_code, retryable, event.detail))
        elif isinstance(event, MessagesReceived):
            self._on_messages(event)
        else:
            logger.warning("Unknown transport event: %r", event)

    def _on_pairing_challenge(self, event: PairingChallenge) -> None:
        if not self._transition(ConnectionState.AWAITING_PAIRING):
            return
        logger.info("Pairing challenge received")
        self.session.pairing_payload = event.payload

    def _on_open(self, event: ConnectionOpened) -> None:
        if not self._transition(ConnectionState.CONNECTED):
            return
        self.session.pairing_payload = None
        if event.user_id:
            self.session.bound_identifier = account_identifier(event.user_id)
        logger.info("Connected as %s", self.session.bound_identifier or "(unknown)")

    def _on_disconnect(self, error: TransportDisconnect) -> None:
        if not self._transition(ConnectionState.DISCONNECTED):
            return
        logger.info("Connection closed, reconnect: %s (%s)", error.retryable, error)
        self.session.handle = None
        self.session.pairing_payload = None
        self.session.bound_identifier = None
        if not error.retryable:
            self._transition(ConnectionState.LOGGED_OUT)
            logger.warning("Session logged out; re-pairing requires disconnect() and initialize()")
            return
        self._schedule_reconnect()

    def _on_messages(self, event: MessagesReceived) -> None:
        if event.delivery_mode != NOTIFY_DELIVERY:
            logger.debug("Ignoring %d message(s) with delivery mode %r", len(event.messages), event.delivery_mode)
            return
        handle = self.session.handle
        if handle is None:
            logger.warning("Dropping %d message(s): no live transport session", len(event.messages))
            return
        self._spawn(self.router.handle_batch(event.messages, handle))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(self, new_state: ConnectionState) -> bool:
        current = self.session.state
        if new_state not in _ALLOWED_TRANSITIONS[current]:
            logger.warning("Ignoring transition %s -> %s", current.value, new_state.value)
            return False
        if new_state is not current:
            logger.debug("Session state %s -> %s", current.value, new_state.value)
        self.session.state = new_state
        return True

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self.reconnect_delay, self._reconnect)
        logger.info("Reconnecting in %.1fs", self.reconnect_delay)

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self.session.state is ConnectionState.DISCONNECTED:
            self._spawn(self.initialize())

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _logout(self, handle: Any) -> None:
        try:
            await handle.logout()
        except Exception:
            logger.warning("Transport logout failed", exc_info=True)

    async def _close_handle(self, handle: Any) -> None:
        try:
            await handle.close()
        except Exception:
            logger.warning("Error closing transport session", exc_info=True)
