"""Protocol interfaces for the bridge's collaborators.

The transport library, the user directory and the tool-configuration
generator live outside this package; these protocols pin down the surface
the supervisor and router rely on, and make the fakes in the tests
checkable with ``isinstance``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Awaitable, Callable, Protocol, runtime_checkable

from .models import AuthorizationResult, DispatchResult, TransportEvent

EventSink = Callable[[TransportEvent], Awaitable[None]]


@runtime_checkable
class TransportSession(Protocol):
    """One live connection opened by the transport library."""

    async def send_text(self, address: str, text: str) -> None:
        """Send a plain text message to a conversation address."""
        ...

    async def set_presence(self, address: str, state: str) -> None:
        """Set "composing" or "paused" presence on a conversation."""
        ...

    async def subscribe_presence(self, address: str) -> None:
        """Subscribe to presence updates for a conversation."""
        ...

    async def logout(self) -> None:
        """Log the linked device out and invalidate stored credentials."""
        ...

    async def close(self) -> None:
        """Drop the connection, keeping stored credentials."""
        ...


@runtime_checkable
class TransportFactory(Protocol):
    """Open a session using the credential store in ``auth_dir``.

    The returned session pushes pairing, connection and message events into
    ``sink`` for as long as it lives.
    """

    def __call__(self, auth_dir: Path, sink: EventSink) -> Awaitable[TransportSession]:
        ...


@runtime_checkable
class UserLookup(Protocol):
    async def lookup(self, external_id: str) -> AuthorizationResult | None:
        """Return the authorization for an identifier, or None if unregistered."""
        ...


@runtime_checkable
class ToolConfigGenerator(Protocol):
    def __call__(self) -> str:
        """Return a path to a tool configuration file, or "" for none."""
        ...


@runtime_checkable
class DispatcherProtocol(Protocol):
    async def dispatch(
        self, question: str, user_id: str, external_id: str, tool_config_path: str = ""
    ) -> DispatchResult:
        ...

    async def cancel_active(self, external_id: str | None = None) -> int:
        ...
