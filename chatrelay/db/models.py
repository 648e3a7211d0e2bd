"""
Data models (dataclasses) for ChatRelay.
These are plain Python objects used across the DB, relay, MCP, and API layers.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class UserIdentity:
    id: str
    display_name: str
    organization_id: str


@dataclass
class Group:
    id: str
    name: str
    organization_id: str
    created_by: str
    created_at: datetime


@dataclass(frozen=True)
class DirectChannel:
    """Unordered pair of users. Always built through `DirectChannel.between`."""
    user_a: str
    user_b: str

    @classmethod
    def between(cls, first: str, second: str) -> "DirectChannel":
        a, b = sorted((first, second))
        return cls(a, b)

    @property
    def key(self) -> str:
        return f"direct:{self.user_a}:{self.user_b}"

    def peer_of(self, user_id: str) -> str:
        return self.user_b if user_id == self.user_a else self.user_a


@dataclass(frozen=True)
class GroupChannel:
    group_id: str

    @property
    def key(self) -> str:
        return f"group:{self.group_id}"


@dataclass(frozen=True)
class Room:
    name: str

    @property
    def key(self) -> str:
        return f"room:{self.name}"


Channel = DirectChannel | GroupChannel | Room


@dataclass
class Message:
    id: str
    kind: str                    # direct | group | room
    sender_id: str
    body: str
    created_at: datetime
    receiver_id: Optional[str] = None   # direct only
    group_id: Optional[str] = None      # group only
    room: Optional[str] = None          # room only
    message_type: str = "text"
    client_message_id: Optional[str] = None
    seq: Optional[int] = None    # assigned by the store
    is_delivered: bool = False
    is_read: bool = False
    read_at: Optional[datetime] = None
    sender_name: Optional[str] = None

    @property
    def channel(self) -> Channel:
        if self.kind == "direct":
            return DirectChannel.between(self.sender_id, self.receiver_id)
        if self.kind == "group":
            return GroupChannel(self.group_id)
        return Room(self.room)
