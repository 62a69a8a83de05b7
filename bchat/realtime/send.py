from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from typing import Any
from typing import Protocol

from bchat.chats.api.serializers import parse_envelope
from bchat.chats.envelope import DeliveryMode
from bchat.realtime.authorization import Action
from bchat.realtime.authorization import allow_all
from bchat.realtime.authorization import ensure_allowed
from bchat.realtime.registry import OutboundEvent

if TYPE_CHECKING:  # import for type checking only
    from bchat.chats.envelope import MessageEnvelope
    from bchat.chats.store import MessageStore
    from bchat.realtime.authorization import Policy
    from bchat.realtime.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class ChatPublisher(Protocol):
    async def chat_message(self, envelope: MessageEnvelope) -> None: ...


class SendPath:
    """validate -> authorize -> persist -> publish.

    Nothing reaches the relay unless persistence succeeded. Unicast sends to
    an identity with no live connection anywhere are persisted and then just
    not delivered; the sender gets no error.
    """

    def __init__(
        self,
        messages: MessageStore,
        registry: ConnectionRegistry,
        publisher: ChatPublisher,
        *,
        authorize: Policy = allow_all,
        echo_unicast: bool = False,
    ):
        self.messages = messages
        self.registry = registry
        self.publisher = publisher
        self.authorize = authorize
        self.echo_unicast = echo_unicast

    async def send(self, sid: str, identity: str, raw: Any) -> MessageEnvelope:
        envelope = parse_envelope(raw, identity=identity)
        await ensure_allowed(self.authorize, identity, envelope.room, Action.POST)
        await self.messages.save(envelope)
        await self.publisher.chat_message(envelope)

        if (
            self.echo_unicast
            and envelope.mode is DeliveryMode.UNICAST
            and envelope.to_user != identity
        ):
            await self.registry.send(sid, OutboundEvent.MESSAGE, envelope.to_wire())
        logger.debug("%s sent a %s message", identity, envelope.mode.value)
        return envelope
