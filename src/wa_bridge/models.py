from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

from .errors import (
    BridgeError,
    DispatchProcessFailure,
    DispatchSpawnError,
    DispatchTimeout,
)


class ConnectionState(str, Enum):
    """States of the messaging session lifecycle."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    AWAITING_PAIRING = "awaiting_pairing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    LOGGED_OUT = "logged_out"


class AddressKind(str, Enum):
    """Kinds of conversation address the network uses."""

    DIRECT = "direct"
    GROUP = "group"
    LINKED_DEVICE = "linked_device"


class DisconnectReason(IntEnum):
    """Status codes carried by connection-close events."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


class Presence(str, Enum):
    COMPOSING = "composing"
    PAUSED = "paused"


@dataclass(slots=True)
class Session:
    """Process-wide session state, written only by the supervisor."""

    state: ConnectionState = ConnectionState.UNINITIALIZED
    pairing_payload: str | None = None
    bound_identifier: str | None = None
    handle: Any = None
    generation: int = 0

    def reset(self) -> None:
        self.state = ConnectionState.UNINITIALIZED
        self.pairing_payload = None
        self.bound_identifier = None
        self.handle = None


@dataclass(slots=True)
class BridgeStatus:
    connected: bool
    phone_number: str | None = None
    qr_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"connected": self.connected}
        if self.phone_number:
            payload["phoneNumber"] = self.phone_number
        if self.qr_code:
            payload["qrCode"] = self.qr_code
        return payload


# ---------------------------------------------------------------------------
# Transport events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RawMessage:
    """One message as delivered by the transport library."""

    remote_address: str
    from_me: bool = False
    conversation: str | None = None
    extended_text: str | None = None
    has_payload: bool = True


@dataclass(frozen=True, slots=True)
class PairingChallenge:
    payload: str


@dataclass(frozen=True, slots=True)
class ConnectionOpened:
    user_id: str | None = None


@dataclass(frozen=True, slots=True)
class ConnectionClosed:
    reason_code: int | None = None
    detail: str = ""


@dataclass(frozen=True, slots=True)
class MessagesReceived:
    messages: tuple[RawMessage, ...] = ()
    delivery_mode: str = "notify"


TransportEvent = PairingChallenge | ConnectionOpened | ConnectionClosed | MessagesReceived


# ---------------------------------------------------------------------------
# Message routing
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class InboundMessage:
    conversation_address: str
    address_kind: AddressKind | None
    raw_text: str
    originated_by_self: bool


@dataclass(frozen=True, slots=True)
class ResolvedIdentity:
    external_id: str
    address_kind: AddressKind


@dataclass(frozen=True, slots=True)
class AuthorizationResult:
    user_id: str
    project_id: str = ""


@dataclass(frozen=True, slots=True)
class DispatchRequest:
    question: str
    user_id: str
    external_id: str
    system_prompt: str
    tool_config_path: str = ""
    timeout_seconds: float = 120.0
    extra_env: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Dispatch results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Success:
    text: str
    ok = True

    def as_error(self) -> BridgeError | None:
        return None


@dataclass(frozen=True, slots=True)
class TimedOut:
    timeout_seconds: float
    ok = False

    def as_error(self) -> BridgeError:
        return DispatchTimeout(self.timeout_seconds)


@dataclass(frozen=True, slots=True)
class ProcessFailure:
    exit_code: int
    stderr: str
    ok = False

    def as_error(self) -> BridgeError:
        return DispatchProcessFailure(self.exit_code, self.stderr)


@dataclass(frozen=True, slots=True)
class SpawnError:
    reason: str
    ok = False

    def as_error(self) -> BridgeError:
        return DispatchSpawnError(self.reason)


DispatchResult = Success | TimedOut | ProcessFailure | SpawnError
