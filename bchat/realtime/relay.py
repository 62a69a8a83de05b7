"""Cross-node relay over Redis pub/sub.

Three channels, each subscribed by every node (the publisher included):

- chats: a serialized envelope, run through dispatch on every node;
- rooms: a bare "refresh" signal after a new room is created;
- users: a room name after someone joins it.

Receivers of the last two re-read the presence store instead of trusting a
delta, so duplicated or reordered signals are harmless.

If the transport drops, the node keeps serving local clients and retries the
subscription in the background; publish failures are reported to the caller
so it can fall back to local delivery.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING
from typing import Any
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from bchat.realtime.exceptions import TransportError

if TYPE_CHECKING:  # import for type checking only
    from collections.abc import AsyncIterator
    from collections.abc import Awaitable
    from collections.abc import Callable
    from collections.abc import Sequence

    from bchat.chats.envelope import MessageEnvelope

    Handler = Callable[[str], Awaitable[None]]

logger = logging.getLogger(__name__)

ROOM_LIST_SIGNAL = "1"


@dataclass(frozen=True)
class RelayChannels:
    chats: str = "bchat-chats"
    rooms: str = "bchat-rooms"
    users: str = "bchat-users"

    @classmethod
    def from_settings(cls, value: dict[str, str] | None) -> RelayChannels:
        return cls(**(value or {}))

    def all(self) -> tuple[str, str, str]:
        return (self.chats, self.rooms, self.users)


class RelayTransport(Protocol):
    async def publish(self, channel: str, message: str) -> None: ...

    async def subscribe(self, channels: Sequence[str]) -> None: ...

    def listen(self) -> AsyncIterator[tuple[str, str]]: ...

    async def close(self) -> None: ...


def _as_text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return value.decode(errors="replace")
    return str(value)


class RedisRelayTransport:
    def __init__(self, client: aioredis.Redis):
        self._redis = client
        self._pubsub: aioredis.client.PubSub | None = None

    @classmethod
    def from_url(cls, url: str) -> RedisRelayTransport:
        return cls(aioredis.Redis.from_url(url, decode_responses=True))

    async def publish(self, channel: str, message: str) -> None:
        try:
            await self._redis.publish(channel, message)
        except (RedisError, OSError) as exc:
            msg = f"publish to {channel} failed: {exc}"
            raise TransportError(msg) from exc

    async def subscribe(self, channels: Sequence[str]) -> None:
        await self._drop_pubsub()
        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(*channels)
        except (RedisError, OSError) as exc:
            await pubsub.aclose()
            msg = f"subscribe to {', '.join(channels)} failed: {exc}"
            raise TransportError(msg) from exc
        self._pubsub = pubsub

    async def listen(self) -> AsyncIterator[tuple[str, str]]:
        if self._pubsub is None:
            msg = "not subscribed"
            raise TransportError(msg)
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                yield _as_text(message["channel"]), _as_text(message["data"])
        except (RedisError, OSError) as exc:
            msg = f"subscription lost: {exc}"
            raise TransportError(msg) from exc

    async def close(self) -> None:
        await self._drop_pubsub()
        await self._redis.aclose()

    async def _drop_pubsub(self) -> None:
        if self._pubsub is not None:
            pubsub, self._pubsub = self._pubsub, None
            try:
                await pubsub.aclose()
            except (RedisError, OSError):
                logger.debug("Ignoring error while closing stale subscription")


class CrossNodeRelay:
    def __init__(
        self,
        transport: RelayTransport,
        channels: RelayChannels | None = None,
        *,
        node_name: str = "APP",
        reconnect_delay: float = 1.0,
    ):
        self._transport = transport
        self.channels = channels or RelayChannels()
        self.node_name = node_name
        self.reconnect_delay = reconnect_delay
        self.connected = False
        self._handlers: dict[str, Handler] = {}
        self._tasks: set[asyncio.Task] = set()
        self._publish_warning_logged = False

    def on_chat(self, handler: Handler) -> None:
        self._handlers[self.channels.chats] = handler

    def on_room_list(self, handler: Handler) -> None:
        self._handlers[self.channels.rooms] = handler

    def on_roster(self, handler: Handler) -> None:
        self._handlers[self.channels.users] = handler

    async def start(self) -> None:
        """Subscribe to all channels. Raises TransportError if Redis is unreachable."""

        await self._transport.subscribe(self.channels.all())
        self.connected = True
        logger.info("%s subscribed to %s", self.node_name, ", ".join(self.channels.all()))

    async def run(self) -> None:
        """Consume the subscription until cancelled, resubscribing after failures."""

        while True:
            try:
                async for channel, data in self._transport.listen():
                    task = asyncio.create_task(self.handle(channel, data))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except TransportError as exc:
                logger.warning(
                    "%s lost the relay (%s); delivering to local clients only",
                    self.node_name,
                    exc,
                )
            else:
                logger.warning("%s relay subscription ended", self.node_name)
            self.connected = False
            await self._resubscribe()

    async def _resubscribe(self) -> None:
        while True:
            await asyncio.sleep(self.reconnect_delay)
            try:
                await self._transport.subscribe(self.channels.all())
            except TransportError as exc:
                logger.debug("%s relay resubscribe failed: %s", self.node_name, exc)
                continue
            self.connected = True
            logger.info("%s resubscribed to the relay", self.node_name)
            return

    async def handle(self, channel: str, data: str) -> None:
        handler = self._handlers.get(channel)
        if handler is None:
            logger.debug("No handler for relay channel %s", channel)
            return
        try:
            await handler(data)
        except Exception:
            logger.exception("%s: relay handler for %s failed", self.node_name, channel)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def publish_chat(self, envelope: MessageEnvelope) -> bool:
        return await self._publish(self.channels.chats, envelope.dumps())

    async def publish_room_list(self) -> bool:
        return await self._publish(self.channels.rooms, ROOM_LIST_SIGNAL)

    async def publish_roster(self, room: str) -> bool:
        return await self._publish(self.channels.users, room)

    async def _publish(self, channel: str, message: str) -> bool:
        try:
            await self._transport.publish(channel, message)
        except TransportError:
            if not self._publish_warning_logged:
                logger.warning(
                    "%s could not publish on %s; operating in local-only mode",
                    self.node_name,
                    channel,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._publish_warning_logged = True
            return False
        self._publish_warning_logged = False
        return True

    async def stop(self) -> None:
        await self.drain()
        self.connected = False
        await self._transport.close()
