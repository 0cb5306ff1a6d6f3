from __future__ import annotations

import logging
from typing import Sequence

from .errors import IdentityUnresolved, SendFailure, Unauthorized
from .identity import classify_address, resolve_address
from .models import AddressKind, InboundMessage, Presence, RawMessage
from .protocols import DispatcherProtocol, ToolConfigGenerator, TransportSession, UserLookup

logger = logging.getLogger("wa_bridge.router")

DEFAULT_REGISTRATION_MESSAGE = "Your ID is not registered.\n\nYour WhatsApp ID: {external_id}"
DEFAULT_FAILURE_MESSAGE = "Sorry, I encountered an error. Please try again."


def to_inbound(raw: RawMessage) -> InboundMessage:
    text = raw.conversation or raw.extended_text or ""
    return InboundMessage(
        conversation_address=raw.remote_address,
        address_kind=classify_address(raw.remote_address or ""),
        raw_text=text,
        originated_by_self=raw.from_me,
    )


class MessageRouter:
    """Turn one inbound chat message into at most one reply."""

    def __init__(
        self,
        dispatcher: DispatcherProtocol,
        user_lookup: UserLookup,
        tool_config: ToolConfigGenerator | None = None,
        registration_message: str = DEFAULT_REGISTRATION_MESSAGE,
        failure_message: str = DEFAULT_FAILURE_MESSAGE,
    ):
        self.dispatcher = dispatcher
        self.user_lookup = user_lookup
        self.tool_config = tool_config
        self.registration_message = registration_message
        self.failure_message = failure_message

    async def handle_batch(self, messages: Sequence[RawMessage], session: TransportSession) -> None:
        for raw in messages:
            try:
                await self.handle_message(raw, session)
            except Exception:
                logger.exception("Error handling message from %s", raw.remote_address)

    async def handle_message(self, raw: RawMessage, session: TransportSession) -> str | None:
        """Process one message; return the reply text that was sent, if any."""
        message = to_inbound(raw)
        if message.originated_by_self or not raw.has_payload:
            return None
        address = message.conversation_address
        if not address or message.address_kind is AddressKind.GROUP:
            return None

        try:
            identity = resolve_address(address)
        except IdentityUnresolved as exc:
            logger.warning("Dropping message: %s", exc)
            return None

        if not message.raw_text:
            return None

        external_id = identity.external_id
        logger.info("Message from %s: chars=%d text=%r", external_id, len(message.raw_text), message.raw_text[:120])

        try:
            auth = await self.user_lookup.lookup(external_id)
            if auth is None:
                raise Unauthorized(external_id)
        except Unauthorized as exc:
            logger.info("%s; sending registration instructions", exc)
            reply = self.registration_message.replace("{external_id}", external_id)
            return await self._reply(session, address, reply)
        except Exception:
            logger.exception("User lookup failed for %s", external_id)
            return await self._reply(session, address, self.failure_message)

        await self._subscribe(session, address)
        await self._presence(session, address, Presence.COMPOSING)
        try:
            tool_config_path = self.tool_config() if self.tool_config is not None else ""
            result = await self.dispatcher.dispatch(
                message.raw_text, auth.user_id, external_id, tool_config_path
            )
        except Exception:
            logger.exception("Dispatch for %s raised", external_id)
            result = None
        await self._presence(session, address, Presence.PAUSED)

        if result is not None and result.ok:
            reply = result.text
            logger.info("Reply to %s: %s", external_id, reply[:100])
        else:
            if result is not None:
                logger.error("Dispatch for %s failed: %s", external_id, result.as_error())
            reply = self.failure_message
        return await self._reply(session, address, reply)

    async def _subscribe(self, session: TransportSession, address: str) -> None:
        try:
            await session.subscribe_presence(address)
        except Exception:
            logger.debug("Presence subscribe failed for %s", address, exc_info=True)

    async def _presence(self, session: TransportSession, address: str, state: Presence) -> None:
        try:
            await session.set_presence(address, state.value)
        except Exception:
            logger.debug("Presence update %s failed for %s", state.value, address, exc_info=True)

    async def _reply(self, session: TransportSession, address: str, text: str) -> str | None:
        try:
            await session.send_text(address, text)
        except Exception as exc:
            logger.error("%s", SendFailure(address, exc))
            return None
        return text
