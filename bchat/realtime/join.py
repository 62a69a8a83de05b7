"""Join/create-room protocol.

Requested -> RoomChecked -> (Created | Found) -> RosterUpdated -> Announced -> Joined

The steps are not one transaction against the presence store. A failure in
the middle leaves whatever already happened (a created room without its first
roster entry, a roster entry nobody was told about); the next join or the
next roster signal for that room repairs what clients see.

Two nodes racing to create the same room are settled by the ``SET NX`` in
``mark_room_exists``: only the winner appends the name to the global list and
fires the room-list signal, the loser continues as if it had found the room.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import TYPE_CHECKING
from typing import Any
from typing import Protocol

from bchat.realtime.authorization import Action
from bchat.realtime.authorization import allow_all
from bchat.realtime.authorization import ensure_allowed
from bchat.realtime.exceptions import ChatAuthorizationError
from bchat.realtime.exceptions import ChatValidationError
from bchat.realtime.exceptions import StoreError
from bchat.realtime.payloads import JoinSerializer
from bchat.realtime.payloads import claim_identity
from bchat.realtime.payloads import decode_payload
from bchat.realtime.payloads import validate_or_raise

if TYPE_CHECKING:  # import for type checking only
    from bchat.presence.store import PresenceStore
    from bchat.realtime.authorization import Policy
    from bchat.realtime.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class JoinState(str, Enum):
    REQUESTED = "requested"
    REJECTED = "rejected"
    ROOM_CHECKED = "room_checked"
    CREATED = "created"
    FOUND = "found"
    ROSTER_UPDATED = "roster_updated"
    ANNOUNCED = "announced"
    JOINED = "joined"


class Announcer(Protocol):
    async def room_list_changed(self) -> None: ...

    async def roster_changed(self, room: str) -> None: ...


@dataclass
class JoinOutcome:
    identity: str
    room: str = ""
    created: bool = False
    states: list[JoinState] = field(default_factory=lambda: [JoinState.REQUESTED])

    @property
    def state(self) -> JoinState:
        return self.states[-1]

    def advance(self, state: JoinState) -> None:
        self.states.append(state)


class JoinProtocol:
    def __init__(
        self,
        store: PresenceStore,
        registry: ConnectionRegistry,
        announcer: Announcer,
        *,
        authorize: Policy = allow_all,
        room_pattern: str | None = None,
    ):
        self.store = store
        self.registry = registry
        self.announcer = announcer
        self.authorize = authorize
        self.room_pattern = room_pattern

    async def join(self, sid: str, identity: str, raw: Any) -> JoinOutcome:
        outcome = JoinOutcome(identity=identity)
        try:
            room = await self._admit(identity, raw)
        except (ChatValidationError, ChatAuthorizationError):
            outcome.advance(JoinState.REJECTED)
            raise
        outcome.room = room

        try:
            exists = await self.store.room_exists(room)
            outcome.advance(JoinState.ROOM_CHECKED)
            if not exists and await self.store.mark_room_exists(room):
                await self.store.append_room_to_global_list(room)
                await self.announcer.room_list_changed()
                outcome.created = True
                outcome.advance(JoinState.CREATED)
            else:
                outcome.advance(JoinState.FOUND)

            await self.store.append_roster_member(room, identity)
            outcome.advance(JoinState.ROSTER_UPDATED)
            # Registered before the signal so this node's own roster push
            # reaches the joiner. One room per connection: this replaces the last.
            self.registry.register(identity, sid, room=room)
            await self.announcer.roster_changed(room)
            outcome.advance(JoinState.ANNOUNCED)
        except StoreError:
            logger.warning(
                "Join of %s to %s aborted after %s",
                identity,
                room,
                outcome.state.value,
            )
            raise

        outcome.advance(JoinState.JOINED)
        logger.info("%s joined room %s", identity, room)
        return outcome

    async def _admit(self, identity: str, raw: Any) -> str:
        payload = claim_identity(decode_payload(raw), identity)
        serializer = JoinSerializer(data=payload, context={"room_pattern": self.room_pattern})
        data = validate_or_raise(serializer)
        await ensure_allowed(self.authorize, identity, data["room"], Action.JOIN)
        return data["room"]
