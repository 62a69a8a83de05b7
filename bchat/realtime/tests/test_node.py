import asyncio
import json
import logging

import pytest

from bchat.realtime.exceptions import StoreError
from bchat.realtime.exceptions import TransportError
from bchat.realtime.node import InboundEvent

pytestmark = pytest.mark.asyncio


async def connect(cluster, node, sid, identity):
    await node.connect(sid, identity)
    await cluster.settle()


async def join(cluster, node, sid, room):
    node.submit(sid, InboundEvent.JOIN, json.dumps({"room": room}))
    await cluster.settle()


async def say(cluster, node, sid, payload):
    node.submit(sid, InboundEvent.MESSAGE, payload)
    await cluster.settle()


async def test_connect_greets_with_node_name_and_rooms(cluster):
    node = await cluster.add_node("A")
    await connect(cluster, node, "a1", "alice")

    emitter = cluster.emitters["A"]
    assert emitter.received("a1", "log") == ["App is connected to A"]
    assert emitter.received("a1", "room") == [[]]


async def test_two_nodes_share_rooms_rosters_and_messages(cluster):
    node_a = await cluster.add_node("A")
    node_b = await cluster.add_node("B")
    a, b = cluster.emitters["A"], cluster.emitters["B"]

    await connect(cluster, node_a, "a1", "alice")
    await join(cluster, node_a, "a1", "general")
    assert a.received("a1", "room")[-1] == ["general"]
    assert a.received("a1", "roomusers")[-1] == ["alice"]
    assert "App is connected at A" in a.received("a1", "log")

    await connect(cluster, node_b, "b1", "bob")
    assert b.received("b1", "room") == [["general"]]

    await join(cluster, node_b, "b1", "general")
    assert a.received("a1", "roomusers")[-1] == ["alice", "bob"]
    assert b.received("b1", "roomusers")[-1] == ["alice", "bob"]
    assert await node_a.store.list_rooms() == ["general"]

    await say(cluster, node_a, "a1", {"room": "general", "data": "hi"})
    for emitter, sid in ((a, "a1"), (b, "b1")):
        [message] = emitter.received(sid, "message")
        assert message["user"] == "alice"
        assert message["data"] == "hi"
        assert message["room"] == "general"
    assert len(cluster.messages.saved) == 1


async def test_rejoin_does_not_duplicate_roster(cluster):
    node = await cluster.add_node("A")
    await connect(cluster, node, "a1", "alice")
    await join(cluster, node, "a1", "general")
    await join(cluster, node, "a1", "general")

    assert await node.store.list_roster_members("general") == ["alice", "alice"]
    assert cluster.emitters["A"].received("a1", "roomusers")[-1] == ["alice"]


async def test_group_message_stays_in_room(cluster):
    node_a = await cluster.add_node("A")
    node_b = await cluster.add_node("B")
    await connect(cluster, node_a, "a1", "alice")
    await connect(cluster, node_b, "d1", "dave")
    await join(cluster, node_a, "a1", "general")
    await join(cluster, node_b, "d1", "random")

    await say(cluster, node_a, "a1", {"room": "general", "data": "hi"})

    assert cluster.emitters["B"].received("d1", "message") == []


async def test_broadcast_reaches_every_node(cluster):
    node_a = await cluster.add_node("A")
    node_b = await cluster.add_node("B")
    await connect(cluster, node_a, "a1", "alice")
    await connect(cluster, node_b, "b1", "bob")

    await say(cluster, node_a, "a1", {"data": "announcement", "broadcast": 1})

    assert cluster.emitters["A"].received("a1", "message")[0]["broadcast"] == 1
    assert cluster.emitters["B"].received("b1", "message")[0]["data"] == "announcement"


async def test_unicast_crosses_nodes_to_target_only(cluster):
    node_a = await cluster.add_node("A")
    node_b = await cluster.add_node("B")
    await connect(cluster, node_a, "a1", "alice")
    await connect(cluster, node_b, "b1", "bob")
    await connect(cluster, node_b, "c1", "carol")

    await say(cluster, node_a, "a1", {"data": "psst", "unicast": True, "toUser": "bob"})

    assert cluster.emitters["B"].received("b1", "message")[0]["data"] == "psst"
    assert cluster.emitters["B"].received("c1", "message") == []
    assert cluster.emitters["A"].received("a1", "message") == []


async def test_unicast_to_offline_identity_is_silently_dropped(cluster):
    node_a = await cluster.add_node("A")
    node_b = await cluster.add_node("B")
    await connect(cluster, node_a, "a1", "alice")
    await connect(cluster, node_b, "b1", "bob")

    await say(cluster, node_a, "a1", {"data": "psst", "unicast": True, "toUser": "carol"})

    assert len(cluster.messages.saved) == 1
    assert len(cluster.bus.on("bchat-chats")) == 1
    for name, sid in (("A", "a1"), ("B", "b1")):
        assert cluster.emitters[name].received(sid, "message") == []
        assert cluster.emitters[name].received(sid, "error") == []


async def test_invalid_join_reports_error(cluster):
    node = await cluster.add_node("A")
    await connect(cluster, node, "a1", "alice")
    await join(cluster, node, "a1", "no spaces allowed")

    [error] = cluster.emitters["A"].received("a1", "error")
    assert "letters, numbers, underscores, and hyphens" in error
    assert await node.store.list_rooms() == []


async def test_impersonation_reports_error(cluster):
    node = await cluster.add_node("A")
    await connect(cluster, node, "a1", "alice")
    await say(cluster, node, "a1", {"user": "bob", "room": "general", "data": "hi"})

    assert cluster.emitters["A"].received("a1", "error") == [
        "User does not match the authenticated identity",
    ]
    assert cluster.messages.saved == []


async def test_persistence_failure_reports_error_and_skips_relay(cluster):
    node = await cluster.add_node("A")
    await connect(cluster, node, "a1", "alice")
    cluster.messages.fail = True

    await say(cluster, node, "a1", {"room": "general", "data": "hi"})

    assert cluster.emitters["A"].received("a1", "error") == ["Failed to send message"]
    assert cluster.bus.on("bchat-chats") == []


async def test_join_store_failure_reports_error(cluster, monkeypatch):
    node = await cluster.add_node("A")
    await connect(cluster, node, "a1", "alice")

    async def broken(name):
        msg = "room_exists failed"
        raise StoreError(msg)

    monkeypatch.setattr(node.store, "room_exists", broken)
    await join(cluster, node, "a1", "general")

    assert cluster.emitters["A"].received("a1", "error") == ["Failed to join room"]


async def test_events_from_one_connection_keep_order(cluster):
    node = await cluster.add_node("A")
    await node.connect("a1", "alice")
    node.submit("a1", InboundEvent.JOIN, {"room": "general"})
    node.submit("a1", InboundEvent.MESSAGE, {"room": "general", "data": "first"})
    node.submit("a1", InboundEvent.MESSAGE, {"room": "general", "data": "second"})
    await cluster.settle()

    messages = cluster.emitters["A"].received("a1", "message")
    assert [m["data"] for m in messages] == ["first", "second"]


async def test_disconnect_releases_connection(cluster):
    node = await cluster.add_node("A")
    await connect(cluster, node, "a1", "alice")
    node.submit("a1", InboundEvent.DISCONNECT)
    await cluster.settle()

    assert "alice" not in node.registry
    assert node.submit("a1", InboundEvent.MESSAGE, {"data": "late"}) is False


async def test_reconnect_replaces_previous_connection(cluster):
    node = await cluster.add_node("A")
    await connect(cluster, node, "a1", "alice")
    await connect(cluster, node, "a2", "alice")
    node.submit("a1", InboundEvent.DISCONNECT)
    await cluster.settle()

    assert node.registry.lookup("alice").sid == "a2"


async def test_startup_fails_fast_without_relay(cluster):
    cluster.bus.down = True
    with pytest.raises(TransportError):
        await cluster.add_node("A")


async def test_degraded_relay_still_serves_local_clients(cluster, caplog):
    node_a = await cluster.add_node("A")
    node_b = await cluster.add_node("B")
    cluster.bus.down = True

    with caplog.at_level(logging.WARNING, logger="bchat.realtime.relay"):
        await connect(cluster, node_a, "a1", "alice")
        await connect(cluster, node_a, "a2", "bob")
        await connect(cluster, node_b, "b1", "carol")
        await join(cluster, node_a, "a1", "general")
        await join(cluster, node_a, "a2", "general")
        await join(cluster, node_b, "b1", "general")
        await say(cluster, node_a, "a1", {"room": "general", "data": "local only"})

    a, b = cluster.emitters["A"], cluster.emitters["B"]
    assert a.received("a1", "roomusers")[-1] == ["alice", "bob"]
    assert a.received("a2", "room")[-1] == ["general"]
    assert [m["data"] for m in a.received("a2", "message")] == ["local only"]
    assert b.received("b1", "message") == []

    local_only = [r for r in caplog.records if "local-only mode" in r.getMessage()]
    assert len(local_only) == 2


async def test_reserved_room_names_report_validation_error(cluster):
    node = await cluster.add_node("A")
    await connect(cluster, node, "a1", "alice")
    await connect(cluster, node, "b1", "bob")
    await join(cluster, node, "a1", "general")

    await join(cluster, node, "b1", "general_meta")
    await join(cluster, node, "a1", "roomBCHAT")

    emitter = cluster.emitters["A"]
    [bob_error] = emitter.received("b1", "error")
    [alice_error] = emitter.received("a1", "error")
    assert "reserved" in bob_error
    assert "reserved" in alice_error
    assert await node.store.list_roster_members("general") == ["alice"]


async def test_stop_finishes_local_fallback_deliveries(cluster):
    node = await cluster.add_node("A")
    await connect(cluster, node, "a1", "alice")
    await join(cluster, node, "a1", "general")
    cluster.bus.down = True
    cluster.emitters["A"].clear()

    store_read = node.store.list_roster_members

    async def slow_read(room):
        await asyncio.sleep(0.05)
        return await store_read(room)

    node.store.list_roster_members = slow_read
    await node.roster_changed("general")
    await node.stop()
    cluster.nodes.remove(node)

    assert cluster.emitters["A"].received("a1", "roomusers") == [["alice"]]
