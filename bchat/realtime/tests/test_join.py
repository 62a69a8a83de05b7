import asyncio

import fakeredis
import pytest

from bchat.presence.store import PresenceStore
from bchat.realtime.authorization import Action
from bchat.realtime.exceptions import ChatAuthorizationError
from bchat.realtime.exceptions import ChatValidationError
from bchat.realtime.exceptions import StoreError
from bchat.realtime.join import JoinProtocol
from bchat.realtime.join import JoinState
from bchat.realtime.registry import ConnectionRegistry

pytestmark = pytest.mark.asyncio


class RecordingAnnouncer:
    def __init__(self):
        self.signals = []

    async def room_list_changed(self):
        self.signals.append(("rooms", None))

    async def roster_changed(self, room):
        self.signals.append(("roster", room))


@pytest.fixture
def announcer():
    return RecordingAnnouncer()


@pytest.fixture
def registry(emitter):
    return ConnectionRegistry(emitter)


@pytest.fixture
def protocol(presence, registry, announcer):
    return JoinProtocol(presence, registry, announcer)


async def test_first_join_creates_room(protocol, presence, registry, announcer):
    outcome = await protocol.join("sid-a", "alice", {"room": "general", "user": "alice"})

    assert outcome.created is True
    assert outcome.states == [
        JoinState.REQUESTED,
        JoinState.ROOM_CHECKED,
        JoinState.CREATED,
        JoinState.ROSTER_UPDATED,
        JoinState.ANNOUNCED,
        JoinState.JOINED,
    ]
    assert await presence.list_rooms() == ["general"]
    assert await presence.list_roster_members("general") == ["alice"]
    assert registry.lookup("alice").room == "general"
    assert announcer.signals == [("rooms", None), ("roster", "general")]


async def test_second_join_finds_room(protocol, presence, announcer):
    await protocol.join("sid-a", "alice", {"room": "general"})
    announcer.signals.clear()

    outcome = await protocol.join("sid-b", "bob", {"room": "general"})

    assert outcome.created is False
    assert JoinState.FOUND in outcome.states
    assert await presence.list_rooms() == ["general"]
    assert await presence.list_roster_members("general") == ["alice", "bob"]
    assert announcer.signals == [("roster", "general")]


async def test_json_string_payload(protocol, registry):
    await protocol.join("sid-a", "alice", '{"room": "general", "user": "alice"}')
    assert registry.lookup("alice").room == "general"


@pytest.mark.parametrize("room", ["bad room", "", "a/b", "x" * 65])
async def test_invalid_room_rejected_before_store(protocol, presence, announcer, room):
    with pytest.raises(ChatValidationError):
        await protocol.join("sid-a", "alice", {"room": room})
    assert await presence.list_rooms() == []
    assert announcer.signals == []


async def test_impersonated_join_rejected(protocol, registry):
    with pytest.raises(ChatAuthorizationError):
        await protocol.join("sid-a", "alice", {"room": "general", "user": "bob"})
    assert "alice" not in registry


async def test_policy_denial(presence, registry, announcer):
    calls = []

    async def members_only(identity, room, action):
        calls.append((identity, room, action))
        return room != "private"

    protocol = JoinProtocol(presence, registry, announcer, authorize=members_only)
    with pytest.raises(ChatAuthorizationError, match="alice may not join in private"):
        await protocol.join("sid-a", "alice", {"room": "private"})

    assert calls == [("alice", "private", Action.JOIN)]
    assert await presence.room_exists("private") is False


async def test_store_failure_midway_leaves_partial_state(
    protocol,
    presence,
    registry,
    monkeypatch,
):
    async def broken(room, identity):
        msg = "append_roster_member failed"
        raise StoreError(msg)

    monkeypatch.setattr(presence, "append_roster_member", broken)

    with pytest.raises(StoreError):
        await protocol.join("sid-a", "alice", {"room": "general"})

    # The room was created; the joiner is neither on the roster nor registered.
    assert await presence.list_rooms() == ["general"]
    assert await presence.list_roster_members("general") == []
    assert "alice" not in registry


async def test_racing_creators_append_room_once(redis_server, emitter):
    announcers = [RecordingAnnouncer(), RecordingAnnouncer()]
    stores = [
        PresenceStore(fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True))
        for _ in announcers
    ]
    protocols = [
        JoinProtocol(store, ConnectionRegistry(emitter), announcer)
        for store, announcer in zip(stores, announcers, strict=True)
    ]

    outcomes = await asyncio.gather(
        protocols[0].join("sid-a", "alice", {"room": "general"}),
        protocols[1].join("sid-b", "bob", {"room": "general"}),
    )

    assert sorted(o.created for o in outcomes) == [False, True]
    assert await stores[0].list_rooms() == ["general"]
    assert sorted(await stores[0].list_roster_members("general")) == ["alice", "bob"]
    room_signals = [s for a in announcers for s in a.signals if s[0] == "rooms"]
    assert len(room_signals) == 1
    for store in stores:
        await store.close()


@pytest.mark.parametrize("room", ["roomBCHAT", "general_meta"])
async def test_room_names_clashing_with_store_keys_rejected(protocol, presence, room):
    await protocol.join("sid-a", "alice", {"room": "general"})

    with pytest.raises(ChatValidationError, match="reserved"):
        await protocol.join("sid-b", "bob", {"room": room})

    assert await presence.list_rooms() == ["general"]
    assert await presence.list_roster_members("general") == ["alice"]


async def test_roster_key_name_cannot_shadow_a_later_room(protocol, presence, registry):
    with pytest.raises(ChatValidationError):
        await protocol.join("sid-a", "alice", {"room": "x_meta"})
    assert await presence.room_exists("x_meta") is False

    await protocol.join("sid-a", "alice", {"room": "x"})
    await protocol.join("sid-b", "bob", {"room": "x"})

    assert await presence.list_rooms() == ["x"]
    assert await presence.list_roster_members("x") == ["alice", "bob"]
    assert registry.lookup("bob").room == "x"
