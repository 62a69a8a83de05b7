"""One chat node: registry, presence store, relay and the client protocols.

Inbound client events are queued per connection and handled one at a time by
that connection's worker task, so a ``join`` followed by a ``message`` from
the same client is processed in that order. Relay messages are handled as
independent tasks and only read the registry.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING
from typing import Any

from django.conf import settings

from bchat.chats.api.serializers import parse_envelope
from bchat.chats.store import get_message_store
from bchat.presence.store import PresenceStore
from bchat.presence.store import unique_members
from bchat.realtime.authorization import allow_all
from bchat.realtime.authorization import get_authorization_policy
from bchat.realtime.dispatch import dispatch
from bchat.realtime.exceptions import ChatAuthorizationError
from bchat.realtime.exceptions import ChatValidationError
from bchat.realtime.exceptions import StoreError
from bchat.realtime.join import JoinProtocol
from bchat.realtime.registry import ConnectionRegistry
from bchat.realtime.registry import OutboundEvent
from bchat.realtime.relay import CrossNodeRelay
from bchat.realtime.relay import RedisRelayTransport
from bchat.realtime.relay import RelayChannels
from bchat.realtime.send import SendPath

if TYPE_CHECKING:  # import for type checking only
    from collections.abc import Awaitable
    from collections.abc import Callable
    from collections.abc import Coroutine

    from bchat.chats.envelope import MessageEnvelope
    from bchat.chats.store import MessageStore
    from bchat.realtime.authorization import Policy
    from bchat.realtime.registry import Emit

logger = logging.getLogger(__name__)


class InboundEvent(str, Enum):
    JOIN = "join"
    MESSAGE = "message"
    DISCONNECT = "disconnect"


@dataclass(frozen=True)
class Inbound:
    kind: InboundEvent
    payload: Any = None


class ConnectionWorker:
    def __init__(
        self,
        sid: str,
        identity: str,
        handle: Callable[[str, str, Inbound], Awaitable[None]],
    ):
        self.sid = sid
        self.identity = identity
        self.queue: asyncio.Queue[Inbound] = asyncio.Queue()
        self._handle = handle
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"bchat-conn-{self.sid}")

    def submit(self, event: Inbound) -> None:
        self.queue.put_nowait(event)

    async def _run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self._handle(self.sid, self.identity, event)
            except Exception:
                logger.exception("Unhandled error for %s on %s", self.sid, event.kind.value)
            finally:
                self.queue.task_done()
            if event.kind is InboundEvent.DISCONNECT:
                return

    async def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task


class ChatNode:
    def __init__(  # noqa: PLR0913
        self,
        *,
        name: str,
        store: PresenceStore,
        relay: CrossNodeRelay,
        messages: MessageStore,
        emit: Emit,
        authorize: Policy = allow_all,
        room_pattern: str | None = None,
        echo_unicast: bool = False,
    ):
        self.name = name
        self.store = store
        self.relay = relay
        self.registry = ConnectionRegistry(emit)
        self.joins = JoinProtocol(
            store,
            self.registry,
            self,
            authorize=authorize,
            room_pattern=room_pattern,
        )
        self.sender = SendPath(
            messages,
            self.registry,
            self,
            authorize=authorize,
            echo_unicast=echo_unicast,
        )
        self._workers: dict[str, ConnectionWorker] = {}
        self._tasks: set[asyncio.Task] = set()
        self._listener: asyncio.Task | None = None

        relay.on_chat(self._relay_chat)
        relay.on_room_list(self._relay_room_list)
        relay.on_roster(self._relay_roster)

    @classmethod
    def from_settings(cls, emit: Emit) -> ChatNode:
        name = settings.BCHAT_NODE_NAME
        return cls(
            name=name,
            store=PresenceStore.from_url(
                settings.REDIS_URL,
                prefix=settings.BCHAT_KEY_PREFIX,
            ),
            relay=CrossNodeRelay(
                RedisRelayTransport.from_url(settings.REDIS_URL),
                RelayChannels.from_settings(settings.BCHAT_CHANNELS),
                node_name=name,
                reconnect_delay=settings.BCHAT_RELAY_RECONNECT_DELAY,
            ),
            messages=get_message_store(),
            emit=emit,
            authorize=get_authorization_policy(),
            room_pattern=settings.BCHAT_ROOM_NAME_PATTERN,
            echo_unicast=settings.BCHAT_ECHO_UNICAST,
        )

    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to the relay. Failing here must keep the server from serving."""

        await self.relay.start()
        self._listener = asyncio.create_task(self.relay.run(), name="bchat-relay")
        logger.info("Chat node %s started", self.name)

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener
            self._listener = None
        for worker in list(self._workers.values()):
            await worker.cancel()
        self._workers.clear()
        # Local fallback deliveries still read the store.
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.relay.stop()
        await self.store.close()
        logger.info("Chat node %s stopped", self.name)

    async def settle(self) -> None:
        """Wait until queued client events and spawned deliveries are done."""

        for worker in list(self._workers.values()):
            await worker.queue.join()
        await self.relay.drain()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # Client side
    # ------------------------------------------------------------------

    async def connect(self, sid: str, identity: str) -> None:
        self.registry.register(identity, sid)
        worker = ConnectionWorker(sid, identity, self.handle)
        self._workers[sid] = worker
        worker.start()
        logger.info("New connection %s for %s", sid, identity)

        await self.registry.send(sid, OutboundEvent.LOG, f"App is connected to {self.name}")
        try:
            rooms = await self.store.list_rooms()
        except StoreError as exc:
            logger.warning("Error fetching rooms for %s: %s", sid, exc)
            return
        await self.registry.send(sid, OutboundEvent.ROOM_LIST, rooms)

    def submit(self, sid: str, kind: InboundEvent, payload: Any = None) -> bool:
        worker = self._workers.get(sid)
        if worker is None:
            logger.debug("Dropping %s from unknown connection %s", kind.value, sid)
            return False
        worker.submit(Inbound(kind, payload))
        return True

    async def handle(self, sid: str, identity: str, event: Inbound) -> None:
        if event.kind is InboundEvent.JOIN:
            await self._on_join(sid, identity, event.payload)
        elif event.kind is InboundEvent.MESSAGE:
            await self._on_message(sid, identity, event.payload)
        else:
            self._on_disconnect(sid)

    async def _on_join(self, sid: str, identity: str, payload: Any) -> None:
        try:
            await self.joins.join(sid, identity, payload)
        except (ChatValidationError, ChatAuthorizationError) as exc:
            logger.info("Rejected join from %s: %s", identity, exc.message)
            await self.registry.send(sid, OutboundEvent.ERROR, exc.message)
            return
        except StoreError:
            await self.registry.send(sid, OutboundEvent.ERROR, "Failed to join room")
            return
        await self.registry.send(sid, OutboundEvent.LOG, f"App is connected at {self.name}")

    async def _on_message(self, sid: str, identity: str, payload: Any) -> None:
        try:
            await self.sender.send(sid, identity, payload)
        except (ChatValidationError, ChatAuthorizationError) as exc:
            logger.info("Rejected message from %s: %s", identity, exc.message)
            await self.registry.send(sid, OutboundEvent.ERROR, exc.message)
        except StoreError:
            await self.registry.send(sid, OutboundEvent.ERROR, "Failed to send message")

    def _on_disconnect(self, sid: str) -> None:
        self.registry.release(sid)
        self._workers.pop(sid, None)
        logger.info("Socket disconnected: %s", sid)

    # Outgoing relay traffic (falls back to local delivery when degraded)
    # ------------------------------------------------------------------

    async def chat_message(self, envelope: MessageEnvelope) -> None:
        if not await self.relay.publish_chat(envelope) or not self.relay.connected:
            self._spawn(self.deliver_chat(envelope))

    async def room_list_changed(self) -> None:
        if not await self.relay.publish_room_list() or not self.relay.connected:
            self._spawn(self.push_room_list())

    async def roster_changed(self, room: str) -> None:
        if not await self.relay.publish_roster(room) or not self.relay.connected:
            self._spawn(self.push_roster(room))

    # Incoming relay traffic
    # ------------------------------------------------------------------

    async def _relay_chat(self, raw: str) -> None:
        try:
            envelope = parse_envelope(raw)
        except ChatValidationError as exc:
            logger.warning("%s: dropping malformed relay message: %s", self.name, exc)
            return
        await self.deliver_chat(envelope)

    async def _relay_room_list(self, _signal: str) -> None:
        await self.push_room_list()

    async def _relay_roster(self, room: str) -> None:
        await self.push_roster(room)

    async def deliver_chat(self, envelope: MessageEnvelope) -> int:
        return await dispatch(envelope, self.registry)

    async def push_room_list(self) -> None:
        try:
            rooms = await self.store.list_rooms()
        except StoreError as exc:
            logger.warning("%s: error emitting room data: %s", self.name, exc)
            return
        await self.registry.broadcast_local(OutboundEvent.ROOM_LIST, rooms)

    async def push_roster(self, room: str) -> None:
        try:
            members = await self.store.list_roster_members(room)
        except StoreError as exc:
            logger.warning("%s: error emitting roomusers for %s: %s", self.name, room, exc)
            return
        await self.registry.deliver_to_room(room, OutboundEvent.ROSTER, unique_members(members))
