from __future__ import annotations

import asyncio
from typing import Any

import fakeredis
import pytest
import pytest_asyncio

from bchat.presence.store import PresenceStore
from bchat.realtime.exceptions import StoreError
from bchat.realtime.exceptions import TransportError
from bchat.realtime.node import ChatNode
from bchat.realtime.relay import CrossNodeRelay


class RecordingEmitter:
    """Stands in for ``AsyncServer.emit``; remembers what each sid received."""

    def __init__(self):
        self.sent: list[tuple[str, Any, str]] = []
        self.broken: set[str] = set()

    async def __call__(self, event: str, data: Any = None, to: str | None = None, **kwargs):
        if to in self.broken:
            msg = f"socket {to} is closed"
            raise ConnectionError(msg)
        self.sent.append((event, data, to))

    def received(self, sid: str, event: str | None = None) -> list[Any]:
        return [d for (e, d, to) in self.sent if to == sid and (event is None or e == event)]

    def clear(self) -> None:
        self.sent.clear()


class RecordingMessageStore:
    def __init__(self):
        self.saved = []
        self.fail = False

    async def save(self, envelope) -> None:
        if self.fail:
            msg = "database is down"
            raise StoreError(msg)
        self.saved.append(envelope)


class LocalBus:
    """In-process pub/sub shared by several nodes' relay transports."""

    def __init__(self):
        self.subscribers: list[BusTransport] = []
        self.published: list[tuple[str, str]] = []
        self.down = False

    def transport(self) -> BusTransport:
        return BusTransport(self)

    def deliver(self, channel: str, message: str) -> None:
        for transport in self.subscribers:
            if channel in transport.channels:
                transport.queue.put_nowait((channel, message))

    def on(self, channel: str) -> list[str]:
        return [m for (c, m) in self.published if c == channel]


class BusTransport:
    def __init__(self, bus: LocalBus):
        self.bus = bus
        self.channels: tuple[str, ...] = ()
        self.queue: asyncio.Queue[tuple[str, str]] = asyncio.Queue()

    async def publish(self, channel: str, message: str) -> None:
        if self.bus.down:
            msg = "bus down"
            raise TransportError(msg)
        self.bus.published.append((channel, message))
        self.bus.deliver(channel, message)

    async def subscribe(self, channels) -> None:
        if self.bus.down:
            msg = "bus down"
            raise TransportError(msg)
        self.channels = tuple(channels)
        if self not in self.bus.subscribers:
            self.bus.subscribers.append(self)

    async def listen(self):
        while True:
            item = await self.queue.get()
            try:
                yield item
            finally:
                self.queue.task_done()

    async def close(self) -> None:
        if self in self.bus.subscribers:
            self.bus.subscribers.remove(self)


class Cluster:
    """Several chat nodes sharing one fake Redis server and one bus."""

    def __init__(self, server: fakeredis.FakeServer):
        self.server = server
        self.bus = LocalBus()
        self.messages = RecordingMessageStore()
        self.nodes: list[ChatNode] = []
        self.emitters: dict[str, RecordingEmitter] = {}

    def redis(self) -> fakeredis.FakeAsyncRedis:
        return fakeredis.FakeAsyncRedis(server=self.server, decode_responses=True)

    async def add_node(self, name: str, **kwargs) -> ChatNode:
        emitter = RecordingEmitter()
        node = ChatNode(
            name=name,
            store=PresenceStore(self.redis()),
            relay=CrossNodeRelay(
                self.bus.transport(),
                node_name=name,
                reconnect_delay=0.01,
            ),
            messages=self.messages,
            emit=emitter,
            **kwargs,
        )
        await node.start()
        self.nodes.append(node)
        self.emitters[name] = emitter
        return node

    async def settle(self, rounds: int = 5) -> None:
        for _ in range(rounds):
            for transport in list(self.bus.subscribers):
                await transport.queue.join()
            for node in self.nodes:
                await node.settle()
            await asyncio.sleep(0)

    async def close(self) -> None:
        for node in self.nodes:
            await node.stop()


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture
def message_store() -> RecordingMessageStore:
    return RecordingMessageStore()


@pytest.fixture
def bus() -> LocalBus:
    return LocalBus()


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest_asyncio.fixture
async def presence(redis_server) -> PresenceStore:
    store = PresenceStore(
        fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True),
    )
    yield store
    await store.close()


@pytest_asyncio.fixture
async def cluster(redis_server) -> Cluster:
    cluster = Cluster(redis_server)
    yield cluster
    await cluster.close()
