"""
Presence tracker: online/offline transitions across multiple connections.
"""
import pytest

from chatrelay.db.models import UserIdentity
from chatrelay.relay.connection import Connection, ConnectionRegistry
from chatrelay.relay.errors import UnauthorizedChannelAccess
from chatrelay.relay.presence import PresenceTracker

ALICE = UserIdentity("alice", "Alice", "acme")
BOB = UserIdentity("bob", "Bob", "acme")
CAROL = UserIdentity("carol", "Carol", "globex")


def _setup(scope="global"):
    registry = ConnectionRegistry()
    return registry, PresenceTracker(registry, scope=scope)


def _connect(registry):
    conn = Connection()
    registry.add(conn)
    return conn


def test_online_iff_connection_set_non_empty():
    registry, presence = _setup()
    assert not presence.is_online("alice")

    c1 = _connect(registry)
    assert presence.announce(c1, ALICE) is True
    assert presence.is_online("alice")

    assert presence.remove(c1) is True
    assert not presence.is_online("alice")
    assert presence.online_users() == []


def test_offline_fires_only_when_last_connection_goes():
    registry, presence = _setup()
    watcher = _connect(registry)
    presence.announce(watcher, BOB)
    watcher.drain()
    c1, c2 = _connect(registry), _connect(registry)

    assert presence.announce(c1, ALICE) is True
    assert presence.announce(c2, ALICE) is False
    assert watcher.drain() == [{"type": "online", "userId": "alice"}]
    assert set(presence.connections_of("alice")) == {c1, c2}

    assert presence.remove(c1) is False
    assert watcher.drain() == []
    assert presence.is_online("alice")

    assert presence.remove(c2) is True
    assert watcher.drain() == [{"type": "offline", "userId": "alice"}]


def test_online_broadcast_is_global_and_skips_the_announcer():
    registry, presence = _setup()
    other_org = _connect(registry)
    presence.announce(other_org, CAROL)
    unannounced = _connect(registry)
    c1 = _connect(registry)
    other_org.drain()

    presence.announce(c1, ALICE)
    assert other_org.drain() == [{"type": "online", "userId": "alice"}]
    assert unannounced.drain() == [{"type": "online", "userId": "alice"}]
    assert [f["type"] for f in c1.drain()] == ["presence"]


def test_organization_scope_limits_broadcast():
    registry, presence = _setup(scope="organization")
    same_org = _connect(registry)
    other_org = _connect(registry)
    presence.announce(same_org, BOB)
    presence.announce(other_org, CAROL)
    same_org.drain()
    other_org.drain()

    presence.announce(_connect(registry), ALICE)
    assert same_org.drain() == [{"type": "online", "userId": "alice"}]
    assert other_org.drain() == []


def test_announce_is_idempotent_for_same_user():
    registry, presence = _setup()
    c1 = _connect(registry)
    presence.announce(c1, ALICE)
    assert presence.announce(c1, ALICE) is False
    assert presence.connections_of("alice") == [c1]


def test_announce_as_someone_else_is_rejected():
    registry, presence = _setup()
    c1 = _connect(registry)
    presence.announce(c1, ALICE)
    with pytest.raises(UnauthorizedChannelAccess):
        presence.announce(c1, BOB)
    assert not presence.is_online("bob")


def test_remove_unannounced_connection_is_noop():
    registry, presence = _setup()
    assert presence.remove(_connect(registry)) is False


def test_announcing_connection_gets_online_snapshot():
    registry, presence = _setup()
    presence.announce(_connect(registry), BOB)
    presence.announce(_connect(registry), CAROL)

    c1 = _connect(registry)
    presence.announce(c1, ALICE)
    assert c1.drain() == [{"type": "presence", "userIds": ["bob", "carol", "alice"]}]

    # A second device of an online user gets its own snapshot.
    c2 = _connect(registry)
    presence.announce(c2, ALICE)
    assert c2.drain() == [{"type": "presence", "userIds": ["bob", "carol", "alice"]}]

    # Re-announcing the same user is a no-op.
    presence.announce(c1, ALICE)
    assert c1.drain() == []


def test_organization_scope_limits_snapshot():
    registry, presence = _setup(scope="organization")
    presence.announce(_connect(registry), BOB)
    presence.announce(_connect(registry), CAROL)

    c1 = _connect(registry)
    presence.announce(c1, ALICE)
    assert c1.drain() == [{"type": "presence", "userIds": ["bob", "alice"]}]
