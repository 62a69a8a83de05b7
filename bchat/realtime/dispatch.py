"""Decide where a relayed chat envelope goes on this node.

Every node runs this for every envelope on the chat channel, including the
node that published it. Only local connections are considered; a unicast
target living elsewhere is simply not found here and is handled by the node
that does hold it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from bchat.chats.envelope import DeliveryMode
from bchat.realtime.registry import OutboundEvent

if TYPE_CHECKING:  # import for type checking only
    from bchat.chats.envelope import MessageEnvelope
    from bchat.realtime.registry import ConnectionRegistry


class Route(str, Enum):
    BROADCAST = "broadcast"
    DIRECT = "direct"
    ROOM = "room"


@dataclass(frozen=True)
class DeliveryAction:
    route: Route
    target: str = ""


def classify_and_route(
    envelope: MessageEnvelope,
    registry: ConnectionRegistry,
) -> tuple[DeliveryAction, ...]:
    """Pure routing decision. Reads the registry, never mutates it."""

    if envelope.mode is DeliveryMode.BROADCAST:
        return (DeliveryAction(Route.BROADCAST),)
    if envelope.mode is DeliveryMode.UNICAST:
        if registry.lookup(envelope.to_user) is None:
            return ()
        return (DeliveryAction(Route.DIRECT, envelope.to_user),)
    return (DeliveryAction(Route.ROOM, envelope.room),)


async def dispatch(envelope: MessageEnvelope, registry: ConnectionRegistry) -> int:
    """Deliver ``envelope`` to local connections. Returns the delivery count."""

    payload = envelope.to_wire()
    delivered = 0
    for action in classify_and_route(envelope, registry):
        if action.route is Route.BROADCAST:
            delivered += await registry.broadcast_local(OutboundEvent.MESSAGE, payload)
        elif action.route is Route.DIRECT:
            delivered += await registry.deliver_to(
                action.target,
                OutboundEvent.MESSAGE,
                payload,
            )
        else:
            delivered += await registry.deliver_to_room(
                action.target,
                OutboundEvent.MESSAGE,
                payload,
            )
    return delivered
