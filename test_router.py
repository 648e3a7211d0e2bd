"""
Chat router: fan-out targets for direct, group and room messages.
"""
from datetime import datetime, timezone

import aiosqlite
import pytest

from chatrelay.db import crud
from chatrelay.db.database import init_schema
from chatrelay.db.models import DirectChannel, GroupChannel, Message, Room
from chatrelay.relay.state import RelayState


async def _make_relay(**kwargs) -> RelayState:
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await init_schema(db)
    return RelayState(db, **kwargs)


async def _online(relay: RelayState, user):
    conn = relay.connect()
    relay.presence.announce(conn, user)
    conn.drain()
    return conn


def _msg(kind, sender, **kw) -> Message:
    return Message(id=f"{kind}-{sender}", kind=kind, sender_id=sender, body="hi",
                   created_at=datetime.now(timezone.utc), **kw)


@pytest.mark.asyncio
async def test_direct_route_reaches_every_receiver_device_only():
    relay = await _make_relay()
    alice, _ = await crud.user_create(relay.db, "Alice", "acme")
    bob, _ = await crud.user_create(relay.db, "Bob", "acme")
    a1 = await _online(relay, alice)
    a2 = await _online(relay, alice)
    b1 = await _online(relay, bob)
    b2 = await _online(relay, bob)

    targets = await relay.router.route(_msg("direct", alice.id, receiver_id=bob.id), origin=a1)
    assert targets == {b1, b2}
    assert a2 not in targets
    await relay.db.close()


@pytest.mark.asyncio
async def test_direct_route_with_sender_echo_skips_origin():
    relay = await _make_relay(echo_to_sender_devices=True)
    alice, _ = await crud.user_create(relay.db, "Alice", "acme")
    bob, _ = await crud.user_create(relay.db, "Bob", "acme")
    a1 = await _online(relay, alice)
    a2 = await _online(relay, alice)
    b1 = await _online(relay, bob)

    targets = await relay.router.route(_msg("direct", alice.id, receiver_id=bob.id), origin=a1)
    assert targets == {a2, b1}
    await relay.db.close()


@pytest.mark.asyncio
async def test_direct_route_to_offline_receiver_is_empty():
    relay = await _make_relay()
    alice, _ = await crud.user_create(relay.db, "Alice", "acme")
    a1 = await _online(relay, alice)
    assert await relay.router.route(_msg("direct", alice.id, receiver_id="bob"), origin=a1) == set()
    await relay.db.close()


@pytest.mark.asyncio
async def test_group_route_excludes_only_the_originating_connection():
    relay = await _make_relay()
    alice, _ = await crud.user_create(relay.db, "Alice", "acme")
    bob, _ = await crud.user_create(relay.db, "Bob", "acme")
    carol, _ = await crud.user_create(relay.db, "Carol", "acme")
    outsider, _ = await crud.user_create(relay.db, "Eve", "acme")
    g = await crud.group_create(relay.db, "Team", alice.id, [bob.id, carol.id])

    a1 = await _online(relay, alice)
    a2 = await _online(relay, alice)
    b1 = await _online(relay, bob)
    await _online(relay, outsider)
    # Carol is offline and simply gets nothing.

    targets = await relay.router.route(_msg("group", alice.id, group_id=g.id), origin=a1)
    assert targets == {a2, b1}
    await relay.db.close()


@pytest.mark.asyncio
async def test_room_route_includes_sender_and_only_joined_connections():
    relay = await _make_relay()
    alice, _ = await crud.user_create(relay.db, "Alice", "acme")
    bob, _ = await crud.user_create(relay.db, "Bob", "acme")
    a1 = await _online(relay, alice)
    b1 = await _online(relay, bob)
    b2 = await _online(relay, bob)
    room = Room("general")

    assert relay.router.join(a1, room) is True
    assert relay.router.join(a1, room) is False
    relay.router.join(b1, room)

    targets = await relay.router.route(_msg("room", alice.id, room="general"), origin=a1)
    assert targets == {a1, b1}
    assert b2 not in targets
    await relay.db.close()


@pytest.mark.asyncio
async def test_disconnected_room_member_is_not_routed_to():
    relay = await _make_relay()
    alice, _ = await crud.user_create(relay.db, "Alice", "acme")
    bob, _ = await crud.user_create(relay.db, "Bob", "acme")
    a1 = await _online(relay, alice)
    b1 = await _online(relay, bob)
    room = Room("general")
    relay.router.join(a1, room)
    relay.router.join(b1, room)

    relay.disconnect(a1)
    assert a1.channels == {}
    assert relay.router.connections_in(room) == [b1]
    assert b1.drain() == [
        {"type": "left", "channelRef": {"room": "general"}, "userId": alice.id},
        {"type": "offline", "userId": alice.id},
    ]

    targets = await relay.router.route(_msg("room", bob.id, room="general"), origin=b1)
    assert targets == {b1}
    # A second disconnect is harmless.
    relay.disconnect(a1)
    await relay.db.close()


@pytest.mark.asyncio
async def test_leave_and_audience():
    relay = await _make_relay()
    alice, _ = await crud.user_create(relay.db, "Alice", "acme")
    bob, _ = await crud.user_create(relay.db, "Bob", "acme")
    a1 = await _online(relay, alice)
    a2 = await _online(relay, alice)
    b1 = await _online(relay, bob)

    direct = DirectChannel.between(alice.id, bob.id)
    assert await relay.router.audience(direct, alice.id) == {b1}

    g = await crud.group_create(relay.db, "Team", alice.id, [bob.id])
    assert await relay.router.audience(GroupChannel(g.id), alice.id) == {b1}

    room = Room("general")
    for conn in (a1, a2, b1):
        relay.router.join(conn, room)
    assert await relay.router.audience(room, alice.id) == {b1}

    assert relay.router.leave(b1, room) is True
    assert relay.router.leave(b1, room) is False
    assert not relay.router.is_joined(b1, room)
    assert await relay.router.audience(room, alice.id) == set()
    await relay.db.close()
