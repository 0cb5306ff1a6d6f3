from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import AsyncIterator

from .models import (
    DispatchRequest,
    DispatchResult,
    ProcessFailure,
    SpawnError,
    Success,
    TimedOut,
)
from .process_registry import ManagedProcessRegistry

logger = logging.getLogger("wa_bridge.dispatcher")

DEFAULT_HOME = "/home/claude"


class ClaudeDispatcher:
    """Run one bounded, non-interactive ``claude --print`` per message.

    Each call spawns a fresh process in its own process group, captures
    stdout/stderr in memory and kills the whole group when the timeout
    budget runs out. Calls share nothing but the process registry, so any
    number of dispatches may run at once unless ``max_concurrent`` is set.
    """

    def __init__(
        self,
        claude_command: str = "claude",
        model: str = "sonnet",
        max_turns: int = 5,
        timeout: float = 120.0,
        system_prompt: str = "User ID: {user_id}\nPhone: {external_id}",
        home: str = "",
        max_concurrent: int = 0,
    ):
        """Initialize the dispatcher.

        Args:
            claude_command: Path to the claude binary (default: "claude")
            model: Value passed to --model (default: "sonnet")
            max_turns: Value passed to --max-turns (default: 5)
            timeout: Wall-clock budget in seconds for each process (default: 120s)
            system_prompt: Template rendered with {user_id} and {external_id}
            home: HOME for the child process (default: inherited, else /home/claude)
            max_concurrent: Admission limit for simultaneous processes, 0 = unbounded
        """
        self.claude_command = claude_command
        self.model = model.strip()
        self.max_turns = max_turns
        self.timeout = timeout
        self.system_prompt = system_prompt
        self.home = home.strip()
        self.max_concurrent = max(0, int(max_concurrent))
        self._semaphore = asyncio.Semaphore(self.max_concurrent) if self.max_concurrent else None
        self._processes = ManagedProcessRegistry("claude")
        self._closed = False

    @property
    def active_count(self) -> int:
        return len(self._processes)

    def render_system_prompt(self, user_id: str, external_id: str) -> str:
        return self.system_prompt.replace("{user_id}", user_id).replace("{external_id}", external_id)

    def build_request(
        self, question: str, user_id: str, external_id: str, tool_config_path: str = ""
    ) -> DispatchRequest:
        return DispatchRequest(
            question=question,
            user_id=user_id,
            external_id=external_id,
            system_prompt=self.render_system_prompt(user_id, external_id),
            tool_config_path=(tool_config_path or "").strip(),
            timeout_seconds=self.timeout,
            extra_env={"HOME": self.home or os.environ.get("HOME") or DEFAULT_HOME, "USER_ID": user_id},
        )

    def build_cmd(self, request: DispatchRequest) -> list[str]:
        """Assemble the claude CLI argument list."""
        cmd = [
            self.claude_command,
            "--print",
            "--model",
            self.model,
            "--dangerously-skip-permissions",
            "--system-prompt",
            request.system_prompt,
            "--max-turns",
            str(self.max_turns),
        ]
        if request.tool_config_path:
            cmd.extend(["--mcp-config", request.tool_config_path])
        # "--" keeps a question starting with "-" from being read as a flag.
        cmd.extend(["--", request.question])
        return cmd

    async def dispatch(
        self, question: str, user_id: str, external_id: str, tool_config_path: str = ""
    ) -> DispatchResult:
        request = self.build_request(question, user_id, external_id, tool_config_path)
        async with self._admission():
            if self._closed:
                logger.warning("Dispatcher closed; dropping request from external_id=%s", external_id)
                return SpawnError("dispatcher shutting down")
            return await self.run(request)

    async def run(self, request: DispatchRequest) -> DispatchResult:
        cmd = self.build_cmd(request)
        logger.info(
            "Executing Claude CLI: external_id=%s user_id=%s timeout=%.1fs mcp_config=%s question_chars=%d",
            request.external_id,
            request.user_id,
            request.timeout_seconds,
            request.tool_config_path or "none",
            len(request.question),
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **request.extra_env},
                start_new_session=True,
            )
        except FileNotFoundError:
            logger.error("Claude binary not found: %s", self.claude_command)
            return SpawnError(f"claude binary not found at {self.claude_command!r}")
        except OSError as exc:
            logger.error("Failed to start Claude CLI %s: %s", self.claude_command, exc)
            return SpawnError(f"{type(exc).__name__}: {exc}")

        self._processes.register(request.external_id, proc)
        try:
            if self._closed:
                # close() ran while the process was starting.
                await self._kill(proc)
                return SpawnError("dispatcher shutting down")
            try:
                stdout_b, stderr_b = await asyncio.wait_for(
                    proc.communicate(), timeout=request.timeout_seconds
                )
            except asyncio.TimeoutError:
                await self._kill(proc)
                logger.error(
                    "Claude exec timed out after %.1fs for external_id=%s",
                    request.timeout_seconds,
                    request.external_id,
                )
                return TimedOut(request.timeout_seconds)
            except asyncio.CancelledError:
                await self._kill(proc)
                raise
        finally:
            self._processes.unregister(proc)

        stdout = stdout_b.decode("utf-8", errors="replace")
        stderr = stderr_b.decode("utf-8", errors="replace").strip()
        returncode = int(proc.returncode or 0)
        response = stdout.strip()

        if returncode != 0 or not response:
            detail = stderr or f"claude exited with code {returncode}"
            logger.error("Claude exec failed: returncode=%d stderr=%s", returncode, detail)
            return ProcessFailure(returncode, detail)

        logger.info(
            "Claude exec completed: external_id=%s response_chars=%d",
            request.external_id,
            len(response),
        )
        return Success(response)

    async def cancel_active(self, external_id: str | None = None) -> int:
        """Kill in-flight claude processes for one identifier or all of them."""
        return await self._processes.cancel(external_id)

    async def close(self) -> int:
        """Refuse new dispatches and kill every in-flight process."""
        self._closed = True
        return await self._processes.cancel()

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        try:
            await self._processes.terminate(proc)
        except Exception:
            logger.exception("Failed to terminate claude process group pid=%s", proc.pid)

    @contextlib.asynccontextmanager
    async def _admission(self) -> AsyncIterator[None]:
        if self._semaphore is None:
            yield
            return
        async with self._semaphore:
            yield
