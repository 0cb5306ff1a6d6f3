"""Shared test fixtures for wa-bridge tests."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from wa_bridge.models import AuthorizationResult, DispatchResult, Success  # noqa: E402


class FakeTransportSession:
    """Records every call the bridge makes on a live session."""

    def __init__(self, sink=None, fail_presence: bool = False, fail_send: bool = False) -> None:
        self.sink = sink
        self.fail_presence = fail_presence
        self.fail_send = fail_send
        self.calls: list[tuple] = []
        self.sent: list[tuple[str, str]] = []
        self.logged_out = False
        self.closed = False

    async def send_text(self, address: str, text: str) -> None:
        self.calls.append(("send", address, text))
        if self.fail_send:
            raise ConnectionError("socket closed")
        self.sent.append((address, text))

    async def set_presence(self, address: str, state: str) -> None:
        self.calls.append(("presence", address, state))
        if self.fail_presence:
            raise ConnectionError("presence rejected")

    async def subscribe_presence(self, address: str) -> None:
        self.calls.append(("subscribe", address))
        if self.fail_presence:
            raise ConnectionError("presence rejected")

    async def logout(self) -> None:
        self.calls.append(("logout",))
        self.logged_out = True

    async def close(self) -> None:
        self.calls.append(("close",))
        self.closed = True

    async def emit(self, event) -> None:
        assert self.sink is not None
        await self.sink(event)


class FakeTransportFactory:
    """Transport factory that hands out FakeTransportSession objects."""

    def __init__(self, fail_times: int = 0) -> None:
        self.sessions: list[FakeTransportSession] = []
        self.auth_dirs: list[Path] = []
        self.fail_times = fail_times

    async def __call__(self, auth_dir: Path, sink) -> FakeTransportSession:
        self.auth_dirs.append(auth_dir)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionRefusedError("transport unavailable")
        session = FakeTransportSession(sink)
        self.sessions.append(session)
        return session

    @property
    def latest(self) -> FakeTransportSession:
        return self.sessions[-1]


@dataclass
class FakeDispatcher:
    """Fake dispatcher returning a canned result and recording requests."""

    result: DispatchResult = field(default_factory=lambda: Success("assistant-response"))
    calls: list[dict] = field(default_factory=list)

    async def dispatch(
        self, question: str, user_id: str, external_id: str, tool_config_path: str = ""
    ) -> DispatchResult:
        self.calls.append(
            {
                "question": question,
                "user_id": user_id,
                "external_id": external_id,
                "tool_config_path": tool_config_path,
            }
        )
        return self.result

    async def cancel_active(self, external_id: str | None = None) -> int:
        return 0


class FakeUserLookup:
    def __init__(self, users: dict[str, AuthorizationResult] | None = None) -> None:
        self.users = users or {}
        self.lookups: list[str] = []

    async def lookup(self, external_id: str) -> AuthorizationResult | None:
        self.lookups.append(external_id)
        return self.users.get(external_id)


@pytest.fixture
def fake_dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def fake_session() -> FakeTransportSession:
    return FakeTransportSession()


@pytest.fixture
def fake_factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def fake_users() -> FakeUserLookup:
    return FakeUserLookup({"15551234567": AuthorizationResult(user_id="user-42", project_id="proj-1")})
