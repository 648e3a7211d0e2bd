from datetime import datetime, timedelta, timezone

from chatrelay.db.models import Room
from chatrelay.relay.typing_state import TypingState

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
ROOM = Room("general")


def test_start_returns_expiry_and_stop_clears():
    typing = TypingState(timeout_seconds=3)
    assert typing.update(ROOM, "alice", True, now=T0) == T0 + timedelta(seconds=3)
    assert typing.active(ROOM, now=T0) == {"alice"}

    assert typing.update(ROOM, "alice", False, now=T0) is None
    assert typing.active(ROOM, now=T0) == set()


def test_entries_expire_without_a_stop_signal():
    typing = TypingState(timeout_seconds=3)
    typing.update(ROOM, "alice", True, now=T0)
    typing.update(ROOM, "bob", True, now=T0 + timedelta(seconds=2))

    assert typing.active(ROOM, now=T0 + timedelta(seconds=4)) == {"bob"}
    assert typing.active(ROOM, now=T0 + timedelta(seconds=6)) == set()


def test_refresh_extends_expiry():
    typing = TypingState(timeout_seconds=3)
    typing.update(ROOM, "alice", True, now=T0)
    typing.update(ROOM, "alice", True, now=T0 + timedelta(seconds=2))
    assert typing.active(ROOM, now=T0 + timedelta(seconds=4)) == {"alice"}


def test_clear():
    typing = TypingState()
    typing.update(ROOM, "alice", True)
    assert typing.clear(ROOM, "alice") is True
    assert typing.clear(ROOM, "alice") is False
    assert typing.active(ROOM) == set()
