"""Per-node map of identity -> live connection.

The registry only ever holds connections that live on *this* node. It is
mutated from the node's event loop (handshake, join, disconnect) and read by
relay-triggered dispatch, so it needs no lock.

One identity maps to at most one connection: registering again (a second tab,
a reconnect) replaces the previous entry rather than adding to it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING
from typing import Any

if TYPE_CHECKING:  # import for type checking only
    from collections.abc import Awaitable
    from collections.abc import Callable
    from collections.abc import Iterator

    Emit = Callable[..., Awaitable[Any]]

logger = logging.getLogger(__name__)


class OutboundEvent(str, Enum):
    MESSAGE = "message"
    ROOM_LIST = "room"
    ROSTER = "roomusers"
    LOG = "log"
    ERROR = "error"


@dataclass
class Connection:
    sid: str
    identity: str
    room: str | None = None


class ConnectionRegistry:
    def __init__(self, emit: Emit):
        # ``emit(event, data, to=sid)``, same signature as AsyncServer.emit.
        self._emit = emit
        self._by_identity: dict[str, Connection] = {}
        self._by_sid: dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._by_identity)

    def __iter__(self) -> Iterator[Connection]:
        return iter(list(self._by_identity.values()))

    def __contains__(self, identity: object) -> bool:
        return identity in self._by_identity

    def register(self, identity: str, sid: str, room: str | None = None) -> Connection:
        """Map ``identity`` to ``sid``, replacing any previous entry.

        Re-registering the same sid keeps its room unless a new one is given;
        a different sid starts fresh and the old one stops receiving.
        """

        previous = self._by_identity.get(identity)
        if previous is not None and previous.sid != sid:
            self._by_sid.pop(previous.sid, None)
            logger.info("Replacing connection %s for %s with %s", previous.sid, identity, sid)
            previous = None

        stale = self._by_sid.get(sid)
        if stale is not None and stale.identity != identity:
            self._by_identity.pop(stale.identity, None)

        connection = previous or Connection(sid=sid, identity=identity)
        if room is not None:
            connection.room = room
        self._by_identity[identity] = connection
        self._by_sid[sid] = connection
        return connection

    def unregister(self, identity: str) -> None:
        connection = self._by_identity.pop(identity, None)
        if connection is not None:
            self._by_sid.pop(connection.sid, None)

    def release(self, sid: str) -> Connection | None:
        """Drop whatever is registered under ``sid`` (used on disconnect).

        A connection that was already replaced by a newer one for the same
        identity is gone from the registry, so the newer one is left alone.
        """

        connection = self._by_sid.pop(sid, None)
        if connection is not None and self._by_identity.get(connection.identity) is connection:
            del self._by_identity[connection.identity]
        return connection

    def lookup(self, identity: str) -> Connection | None:
        return self._by_identity.get(identity)

    def find(self, sid: str) -> Connection | None:
        return self._by_sid.get(sid)

    def members(self, room: str) -> list[Connection]:
        return [c for c in self._by_identity.values() if c.room == room]

    async def send(self, sid: str, event: OutboundEvent, payload: Any) -> bool:
        try:
            await self._emit(event.value, payload, to=sid)
        except Exception:  # noqa: BLE001 - one bad socket must not stop fanout
            logger.warning(
                "Delivery of %s to %s failed; skipping",
                event.value,
                sid,
                exc_info=True,
            )
            return False
        return True

    async def broadcast_local(self, event: OutboundEvent, payload: Any) -> int:
        delivered = 0
        for connection in self:
            delivered += await self.send(connection.sid, event, payload)
        return delivered

    async def deliver_to(self, identity: str, event: OutboundEvent, payload: Any) -> bool:
        connection = self.lookup(identity)
        if connection is None:
            return False
        return await self.send(connection.sid, event, payload)

    async def deliver_to_room(self, room: str, event: OutboundEvent, payload: Any) -> int:
        delivered = 0
        for connection in self.members(room):
            delivered += await self.send(connection.sid, event, payload)
        return delivered
