"""
Wire protocol: inbound validation and outbound encoding.
"""
import json
from datetime import datetime, timezone

import pytest

from chatrelay.db.models import DirectChannel, GroupChannel, Message, Room
from chatrelay.relay.errors import (
    AuthenticationMissing, MalformedEvent, StoreUnavailable, UnauthorizedChannelAccess,
)
from chatrelay.relay.protocol import (
    AnnounceEvent,
    DirectRef,
    GroupCreatedNotice,
    GroupRef,
    MarkReadEvent,
    MessageNotice,
    MessagePayload,
    PresenceNotice,
    RoomRef,
    SendEvent,
    SendFailedNotice,
    TypingNotice,
    encode,
    parse_channel_ref,
    parse_client_event,
    ref_for,
)


class TestParseClientEvent:
    def test_send_from_json_text(self):
        raw = json.dumps({"type": "send", "channelRef": {"direct": "bob"}, "body": "hi",
                          "clientMessageId": "c1"})
        event = parse_client_event(raw)
        assert isinstance(event, SendEvent)
        assert event.channel_ref == DirectRef(direct="bob")
        assert event.client_message_id == "c1"
        assert event.message_type == "text"
        assert event.mentions == []

    def test_send_from_bytes_with_mentions(self):
        raw = json.dumps({"type": "send", "channelRef": {"group": "g1"}, "body": "@bob",
                          "mentions": ["bob"]}).encode()
        event = parse_client_event(raw)
        assert event.mentions == ["bob"]

    def test_announce_from_dict(self):
        event = parse_client_event({"type": "announce", "userId": "alice"})
        assert event == AnnounceEvent(type="announce", user_id="alice")

    def test_mark_read_by_channel(self):
        event = parse_client_event({"type": "markRead", "channelRef": {"group": "g1"}})
        assert isinstance(event, MarkReadEvent)
        assert event.channel_ref == GroupRef(group="g1")
        assert event.message_id is None

    @pytest.mark.parametrize("raw", [
        "not json",
        {"type": "bogus"},
        {"userId": "alice"},
        {"type": "announce"},
        {"type": "send", "channelRef": {"direct": "bob"}},
        {"type": "join", "channelRef": {"direct": "bob", "room": "general"}},
        {"type": "join", "channelRef": {"planet": "mars"}},
        {"type": "typing", "channelRef": {"room": "general"}},
        {"type": "markRead"},
        {"type": "markRead", "messageId": "m1", "channelRef": {"room": "general"}},
    ])
    def test_invalid_frames_raise_malformed_event(self, raw):
        with pytest.raises(MalformedEvent):
            parse_client_event(raw)


class TestChannelRefs:
    def test_resolve_direct_is_unordered(self):
        assert DirectRef(direct="bob").resolve("alice") == DirectRef(direct="alice").resolve("bob")
        assert DirectRef(direct="bob").resolve("alice") == DirectChannel.between("alice", "bob")

    def test_resolve_group_and_room(self):
        assert GroupRef(group="g1").resolve("alice") == GroupChannel("g1")
        assert RoomRef(room="general").resolve("alice") == Room("general")

    def test_ref_for_direct_names_the_peer(self):
        channel = DirectChannel.between("alice", "bob")
        assert ref_for(channel, "alice") == DirectRef(direct="bob")
        assert ref_for(channel, "bob") == DirectRef(direct="alice")

    def test_parse_channel_ref_rejects_empty(self):
        with pytest.raises(MalformedEvent):
            parse_channel_ref({"room": ""})
        with pytest.raises(MalformedEvent):
            parse_channel_ref(None)


class TestEncode:
    def test_message_notice_uses_camel_case(self):
        m = Message(id="m1", kind="direct", sender_id="alice", receiver_id="bob", body="hi",
                    created_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc), client_message_id="c1")
        frame = encode(MessageNotice(message=MessagePayload.from_message(m)))
        assert frame["type"] == "message"
        assert frame["message"]["senderId"] == "alice"
        assert frame["message"]["receiverId"] == "bob"
        assert frame["message"]["clientMessageId"] == "c1"
        assert frame["message"]["createdAt"].startswith("2024-05-01T12:00:00")
        assert frame["message"]["isDelivered"] is False

    def test_typing_notice_carries_channel_ref(self):
        frame = encode(TypingNotice(channel_ref=RoomRef(room="general"), user_id="alice", is_typing=True))
        assert frame == {"type": "typing", "channelRef": {"room": "general"}, "userId": "alice",
                         "isTyping": True, "expiresAt": None}

    def test_group_created_and_presence_notices(self):
        assert encode(GroupCreatedNotice(group_id="g1", name="Team", created_by="alice")) == {
            "type": "groupCreated", "groupId": "g1", "name": "Team", "createdBy": "alice",
        }
        assert encode(PresenceNotice(user_ids=["alice", "bob"])) == {
            "type": "presence", "userIds": ["alice", "bob"],
        }

    def test_send_failed_reason(self):
        frame = encode(SendFailedNotice(client_message_id="c1", reason=StoreUnavailable("x").reason))
        assert frame == {"type": "sendFailed", "clientMessageId": "c1", "reason": "store_unavailable"}


def test_error_reasons_are_snake_case():
    assert AuthenticationMissing().reason == "authentication_missing"
    assert UnauthorizedChannelAccess().reason == "unauthorized_channel_access"
    assert MalformedEvent().reason == "malformed_event"
