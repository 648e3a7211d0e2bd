"""
Chat routing: which live connections receive a message.

    direct  → every live connection of the receiver
    group   → every live connection of every roster member, minus the
              connection the send came from
    room    → every connection joined to the room, sender included

The router keeps the per-channel join sets. It performs no ACL checks;
callers authorize a join before calling `join`.
"""
import logging
from typing import Optional

from chatrelay.db.models import Channel, DirectChannel, GroupChannel, Message, Room
from chatrelay.relay.connection import Connection
from chatrelay.relay.directory import UserDirectory
from chatrelay.relay.presence import PresenceTracker

logger = logging.getLogger(__name__)


class ChatRouter:
    def __init__(
        self,
        presence: PresenceTracker,
        directory: UserDirectory,
        echo_to_sender_devices: bool = False,
    ):
        self._presence = presence
        self._directory = directory
        self._echo = echo_to_sender_devices
        self._channels: dict[str, dict[str, Connection]] = {}

    # ── membership ───────────────────────────

    def join(self, conn: Connection, channel: Channel) -> bool:
        """Returns True if the connection was not already joined."""
        members = self._channels.setdefault(channel.key, {})
        if conn.id in members:
            return False
        members[conn.id] = conn
        conn.channels[channel.key] = channel
        logger.debug(f"{conn!r} joined {channel.key} ({len(members)} live)")
        return True

    def leave(self, conn: Connection, channel: Channel) -> bool:
        conn.channels.pop(channel.key, None)
        members = self._channels.get(channel.key)
        if not members or members.pop(conn.id, None) is None:
            return False
        if not members:
            del self._channels[channel.key]
        logger.debug(f"{conn!r} left {channel.key}")
        return True

    def leave_all(self, conn: Connection) -> list[Channel]:
        left = []
        for channel in list(conn.channels.values()):
            if self.leave(conn, channel):
                left.append(channel)
        return left

    def is_joined(self, conn: Connection, channel: Channel) -> bool:
        return channel.key in conn.channels

    def connections_in(self, channel: Channel) -> list[Connection]:
        return list(self._channels.get(channel.key, {}).values())

    # ── fan-out ──────────────────────────────

    async def route(self, message: Message, origin: Optional[Connection] = None) -> set[Connection]:
        channel = message.channel
        if isinstance(channel, Room):
            targets = set(self.connections_in(channel))
        elif isinstance(channel, GroupChannel):
            targets = set()
            for member in await self._directory.list_group_members(channel.group_id):
                targets.update(self._presence.connections_of(member.id))
            targets.discard(origin)
        else:
            targets = await self.audience(channel, message.sender_id)
            if self._echo:
                targets.update(self._presence.connections_of(message.sender_id))
            targets.discard(origin)
        logger.debug(f"route {message.id} on {channel.key}: {len(targets)} target(s)")
        return targets

    async def audience(self, channel: Channel, sender_id: str) -> set[Connection]:
        """Live connections of everyone on the channel except the sender."""
        if isinstance(channel, DirectChannel):
            return set(self._presence.connections_of(channel.peer_of(sender_id)))
        if isinstance(channel, GroupChannel):
            targets = set()
            for member in await self._directory.list_group_members(channel.group_id):
                if member.id != sender_id:
                    targets.update(self._presence.connections_of(member.id))
            return targets
        return {c for c in self.connections_in(channel) if c.user_id != sender_id}
