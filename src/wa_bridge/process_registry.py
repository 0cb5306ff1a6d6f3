from __future__ import annotations

import asyncio
import logging
import os
import signal

logger = logging.getLogger("wa_bridge.process_registry")


class ManagedProcessRegistry:
    """Track in-flight dispatch subprocesses and support emergency cancellation."""

    def __init__(self, label: str) -> None:
        self.label = label
        self._entries: dict[int, tuple[str, asyncio.subprocess.Process]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def register(self, owner: str, proc: asyncio.subprocess.Process) -> None:
        self._entries[int(proc.pid)] = (owner, proc)

    def unregister(self, proc: asyncio.subprocess.Process) -> None:
        self._entries.pop(int(proc.pid), None)

    async def cancel(self, owner: str | None = None) -> int:
        targets = [
            proc
            for entry_owner, proc in list(self._entries.values())
            if owner is None or entry_owner == owner
        ]
        killed = 0
        for proc in targets:
            if await self.terminate(proc):
                killed += 1
        return killed

    async def terminate(self, proc: asyncio.subprocess.Process, grace_seconds: float = 0.35) -> bool:
        """Terminate a process group, escalating to SIGKILL.

        The group is signalled even when the leader has already exited, since
        a background child can outlive it while holding the output pipes.
        SIGKILL always follows the grace period so members that ignore
        SIGTERM die too. The leader is reaped before returning. Returns True
        when any member of the group received a signal.
        """
        signalled = self._signal_group(proc, signal.SIGTERM)
        if proc.returncode is None:
            try:
                await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
            except asyncio.TimeoutError:
                pass

        if self._signal_group(proc, signal.SIGKILL):
            signalled = True
        if proc.returncode is None:
            await proc.wait()
        return signalled

    def _signal_group(self, proc: asyncio.subprocess.Process, sig: signal.Signals) -> bool:
        pid = int(proc.pid)
        try:
            # start_new_session=True makes pid the process-group id.
            os.killpg(pid, sig)
            return True
        except ProcessLookupError:
            return False
        except OSError:
            if proc.returncode is not None:
                return False
            try:
                proc.send_signal(sig)
                return True
            except ProcessLookupError:
                return False
            except OSError:
                logger.warning("Failed %s for %s pid=%s", sig.name, self.label, pid, exc_info=True)
                return False
