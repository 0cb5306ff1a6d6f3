from __future__ import annotations

import asyncio
import importlib
import logging
import signal

from .config import BridgeSettings
from .directory import StaticUserDirectory
from .dispatcher import ClaudeDispatcher
from .protocols import TransportFactory
from .router import MessageRouter
from .supervisor import SessionSupervisor
from .tool_config import McpConfigGenerator

logger = logging.getLogger("wa_bridge.daemon")


def load_transport_factory(target: str) -> TransportFactory:
    """Import a transport factory from a ``package.module:callable`` path."""
    module_name, sep, attr = target.strip().partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(
            f"Invalid transport factory {target!r}. Set wa_bridge_transport_factory=package.module:callable"
        )
    module = importlib.import_module(module_name)
    factory = module
    for part in attr.split("."):
        factory = getattr(factory, part)
    if not callable(factory):
        raise TypeError(f"Transport factory {target!r} is not callable")
    return factory


class BridgeDaemon:
    def __init__(self, settings: BridgeSettings, transport_factory: TransportFactory | None = None):
        self.settings = settings
        if transport_factory is None:
            transport_factory = load_transport_factory(settings.transport_factory)

        self.directory = StaticUserDirectory.from_settings(settings)
        if not len(self.directory):
            logger.warning("No users configured; every sender will get registration instructions.")
        self.tool_config = McpConfigGenerator.from_settings(settings)
        self.dispatcher = ClaudeDispatcher(
            claude_command=settings.claude_command,
            model=settings.claude_model,
            max_turns=settings.claude_max_turns,
            timeout=settings.dispatch_timeout_seconds,
            system_prompt=settings.system_prompt,
            home=settings.claude_home,
            max_concurrent=settings.max_concurrent_dispatches,
        )
        self.router = MessageRouter(
            dispatcher=self.dispatcher,
            user_lookup=self.directory,
            tool_config=self.tool_config,
            registration_message=settings.registration_message,
            failure_message=settings.failure_message,
        )
        self.supervisor = SessionSupervisor(
            transport_factory=transport_factory,
            router=self.router,
            auth_dir=settings.auth_dir,
            reconnect_delay=settings.reconnect_delay_seconds,
        )
        self._shutdown = asyncio.Event()

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()

    async def run_forever(self) -> None:
        await self.supervisor.initialize()
        await self._shutdown.wait()

    async def shutdown(self) -> None:
        logger.info("Shutting down...")
        try:
            killed = await self.dispatcher.close()
            if killed:
                logger.info("Terminated %d in-flight claude process(es)", killed)
        except Exception as exc:
            logger.warning("Error cancelling claude processes: %s", exc)
        try:
            await self.supervisor.close()
        except Exception as exc:
            logger.warning("Error closing session: %s", exc)
        await self.supervisor.drain()
        logger.info("Shutdown complete")


async def run(settings: BridgeSettings | None = None) -> None:
    settings = settings or BridgeSettings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    daemon = BridgeDaemon(settings)

    loop = asyncio.get_running_loop()

    def handle_signal(sig: signal.Signals) -> None:
        logger.info("Received signal %s", sig.name)
        daemon.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    logger.info(
        "WhatsApp bridge running. users=%d model=%s timeout=%ds auth_dir=%s",
        len(daemon.directory),
        settings.claude_model,
        int(settings.dispatch_timeout_seconds),
        settings.auth_dir,
    )
    try:
        await daemon.run_forever()
    finally:
        await daemon.shutdown()
