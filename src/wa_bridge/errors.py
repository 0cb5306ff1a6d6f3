"""Error taxonomy for the bridge.

None of these escape the session: the supervisor and router catch them,
log the detail, and either recover or answer the user with a fixed message.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge errors."""


class TransportDisconnect(BridgeError):
    def __init__(self, reason_code: int | None, retryable: bool, detail: str = "") -> None:
        self.reason_code = reason_code
        self.retryable = retryable
        self.detail = detail
        super().__init__(
            f"transport disconnected (code={reason_code}, retryable={retryable})"
            + (f": {detail}" if detail else "")
        )


class PairingPending(BridgeError):
    def __init__(self, message: str = "no pairing challenge available yet") -> None:
        super().__init__(message)


class IdentityUnresolved(BridgeError):
    def __init__(self, address: str, reason: str) -> None:
        self.address = address
        self.reason = reason
        super().__init__(f"cannot resolve {address!r}: {reason}")


class Unauthorized(BridgeError):
    def __init__(self, external_id: str) -> None:
        self.external_id = external_id
        super().__init__(f"no registered user for {external_id!r}")


class DispatchTimeout(BridgeError):
    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"claude did not finish within {timeout_seconds:.1f}s")


class DispatchProcessFailure(BridgeError):
    def __init__(self, exit_code: int, stderr: str) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"claude failed (exit code {exit_code}): {stderr}")


class DispatchSpawnError(BridgeError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"could not start claude: {reason}")


class SendFailure(BridgeError):
    def __init__(self, address: str, cause: BaseException | None = None) -> None:
        self.address = address
        super().__init__(f"failed to send to {address}: {cause}" if cause else f"failed to send to {address}")
