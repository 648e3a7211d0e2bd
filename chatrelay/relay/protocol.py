"""
Relay wire protocol.

Every frame is a JSON object with a `type` discriminator and camelCase
fields. Inbound frames are validated into one of the `*Event` models;
outbound frames are built from the `*Notice` models.

A channel reference is exactly one of
    {"direct": "<peer user id>"}  {"group": "<group id>"}  {"room": "<name>"}
seen from the point of view of the connection that sends or receives it.
"""
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import (
    BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator,
)
from pydantic.alias_generators import to_camel

from chatrelay.db.models import Channel, DirectChannel, GroupChannel, Message, Room
from chatrelay.relay.errors import MalformedEvent


# ─────────────────────────────────────────────
# Channel references
# ─────────────────────────────────────────────

class DirectRef(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    direct: str = Field(min_length=1)

    def resolve(self, user_id: str) -> DirectChannel:
        return DirectChannel.between(user_id, self.direct)


class GroupRef(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    group: str = Field(min_length=1)

    def resolve(self, user_id: str) -> GroupChannel:
        return GroupChannel(self.group)


class RoomRef(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    room: str = Field(min_length=1)

    def resolve(self, user_id: str) -> Room:
        return Room(self.room)


ChannelRef = Union[DirectRef, GroupRef, RoomRef]

_channel_ref_adapter: TypeAdapter[ChannelRef] = TypeAdapter(ChannelRef)


def parse_channel_ref(raw) -> ChannelRef:
    try:
        return _channel_ref_adapter.validate_python(raw)
    except ValidationError as exc:
        raise MalformedEvent(f"Invalid channel reference: {raw!r}") from exc


def ref_for(channel: Channel, viewer_id: str) -> ChannelRef:
    """Express a channel as the reference the given user would use for it."""
    if isinstance(channel, DirectChannel):
        return DirectRef(direct=channel.peer_of(viewer_id))
    if isinstance(channel, GroupChannel):
        return GroupRef(group=channel.group_id)
    return RoomRef(room=channel.name)


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ─────────────────────────────────────────────
# Client → server
# ─────────────────────────────────────────────

class AnnounceEvent(_Wire):
    type: Literal["announce"]
    user_id: str = Field(min_length=1)


class JoinEvent(_Wire):
    type: Literal["join"]
    channel_ref: ChannelRef


class LeaveEvent(_Wire):
    type: Literal["leave"]
    channel_ref: ChannelRef


class SendEvent(_Wire):
    type: Literal["send"]
    channel_ref: ChannelRef
    body: str
    client_message_id: Optional[str] = None
    message_type: str = "text"
    # User ids to alert with a `mention` notice.
    mentions: list[str] = Field(default_factory=list)


class TypingEvent(_Wire):
    type: Literal["typing"]
    channel_ref: ChannelRef
    is_typing: bool


class MarkDeliveredEvent(_Wire):
    type: Literal["markDelivered"]
    message_id: str = Field(min_length=1)


class MarkReadEvent(_Wire):
    type: Literal["markRead"]
    message_id: Optional[str] = None
    channel_ref: Optional[ChannelRef] = None

    @model_validator(mode="after")
    def _one_target(self):
        if (self.message_id is None) == (self.channel_ref is None):
            raise ValueError("markRead needs exactly one of messageId or channelRef")
        return self


ClientEvent = Annotated[
    Union[
        AnnounceEvent, JoinEvent, LeaveEvent, SendEvent,
        TypingEvent, MarkDeliveredEvent, MarkReadEvent,
    ],
    Field(discriminator="type"),
]

_client_event_adapter: TypeAdapter[ClientEvent] = TypeAdapter(ClientEvent)


def parse_client_event(raw: str | bytes | dict) -> ClientEvent:
    """Validate one inbound frame. Raises MalformedEvent on any schema error."""
    try:
        if isinstance(raw, (str, bytes)):
            return _client_event_adapter.validate_json(raw)
        return _client_event_adapter.validate_python(raw)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "<root>" for err in exc.errors())
        raise MalformedEvent(f"Invalid event ({fields})") from exc


# ─────────────────────────────────────────────
# Server → client
# ─────────────────────────────────────────────

class MessagePayload(_Wire):
    id: str
    kind: str
    sender_id: str
    sender_name: Optional[str] = None
    receiver_id: Optional[str] = None
    group_id: Optional[str] = None
    room: Optional[str] = None
    body: str
    message_type: str = "text"
    client_message_id: Optional[str] = None
    created_at: datetime
    is_delivered: bool = False
    is_read: bool = False
    read_at: Optional[datetime] = None
    seq: Optional[int] = None

    @classmethod
    def from_message(cls, m: Message) -> "MessagePayload":
        return cls(
            id=m.id, kind=m.kind, sender_id=m.sender_id, sender_name=m.sender_name,
            receiver_id=m.receiver_id, group_id=m.group_id, room=m.room, body=m.body,
            message_type=m.message_type, client_message_id=m.client_message_id,
            created_at=m.created_at, is_delivered=m.is_delivered, is_read=m.is_read,
            read_at=m.read_at, seq=m.seq,
        )


class OnlineNotice(_Wire):
    type: Literal["online"] = "online"
    user_id: str


class OfflineNotice(_Wire):
    type: Literal["offline"] = "offline"
    user_id: str


class MessageNotice(_Wire):
    type: Literal["message"] = "message"
    message: MessagePayload


class SentNotice(_Wire):
    type: Literal["sent"] = "sent"
    client_message_id: Optional[str] = None
    message_id: str
    created_at: datetime


class DeliveredNotice(_Wire):
    type: Literal["delivered"] = "delivered"
    message_id: str


class ReadNotice(_Wire):
    type: Literal["read"] = "read"
    message_id: str
    read_at: Optional[datetime] = None


class TypingNotice(_Wire):
    type: Literal["typing"] = "typing"
    channel_ref: ChannelRef
    user_id: str
    is_typing: bool
    expires_at: Optional[datetime] = None


class JoinedNotice(_Wire):
    type: Literal["joined"] = "joined"
    channel_ref: ChannelRef
    user_id: str


class LeftNotice(_Wire):
    type: Literal["left"] = "left"
    channel_ref: ChannelRef
    user_id: str


class SendFailedNotice(_Wire):
    type: Literal["sendFailed"] = "sendFailed"
    client_message_id: Optional[str] = None
    reason: str


class PresenceNotice(_Wire):
    """Snapshot of who is online, sent to a connection right after it announces."""
    type: Literal["presence"] = "presence"
    user_ids: list[str]


class MentionNotice(_Wire):
    type: Literal["mention"] = "mention"
    channel_ref: ChannelRef
    mentioned_by: str
    message: MessagePayload


class GroupCreatedNotice(_Wire):
    type: Literal["groupCreated"] = "groupCreated"
    group_id: str
    name: str
    created_by: str


ServerNotice = Union[
    OnlineNotice, OfflineNotice, MessageNotice, SentNotice, DeliveredNotice,
    ReadNotice, TypingNotice, JoinedNotice, LeftNotice, SendFailedNotice,
    PresenceNotice, MentionNotice, GroupCreatedNotice,
]


def encode(notice: ServerNotice) -> dict:
    return notice.model_dump(mode="json", by_alias=True)
