"""
Delivered / read tracking.

A message is delivered once it reaches a live connection of somebody other
than its sender, and read once a recipient acknowledges it. Flag changes are
written to the store and announced to every live connection of the sender.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable

from chatrelay.db.models import Channel, GroupChannel, Message, UserIdentity
from chatrelay.relay.connection import Connection
from chatrelay.relay.directory import MessageStore, UserDirectory
from chatrelay.relay.errors import MalformedEvent, StoreUnavailable, UnauthorizedChannelAccess
from chatrelay.relay.presence import PresenceTracker
from chatrelay.relay.protocol import DeliveredNotice, ReadNotice

logger = logging.getLogger(__name__)


class DeliveryTracker:
    def __init__(self, presence: PresenceTracker, store: MessageStore, directory: UserDirectory):
        self._presence = presence
        self._store = store
        self._directory = directory

    async def on_sent(self, message: Message, targets: Iterable[Connection]) -> bool:
        """Mark a freshly routed message delivered if anyone but the sender got it."""
        if not any(c.user_id != message.sender_id for c in targets):
            logger.debug(f"Message {message.id} had no live recipient, left undelivered")
            return False
        try:
            await self._store.update_delivery_flags(message.id, delivered=True, read=False)
        except StoreUnavailable as exc:
            # The relay did deliver it; only the flag is lost.
            logger.warning(f"Could not persist delivered flag for {message.id}: {exc}")
        message.is_delivered = True
        self._notify_sender(message.sender_id, DeliveredNotice(message_id=message.id))
        return True

    async def on_delivered(self, message_id: str, receiver: UserIdentity) -> bool:
        """Receiver-side delivery acknowledgement. Emits only on the first transition."""
        message = await self._load(message_id)
        await self._check_recipient(message, receiver)
        if message.is_delivered:
            return False
        await self._store.update_delivery_flags(message_id, delivered=True, read=False)
        self._notify_sender(message.sender_id, DeliveredNotice(message_id=message_id))
        return True

    async def on_read(self, message_id: str, reader: UserIdentity) -> bool:
        """Read acknowledgement for a single message. Emits only on the first transition."""
        message = await self._load(message_id)
        await self._check_recipient(message, reader)
        if message.is_read:
            return False
        read_at = datetime.now(timezone.utc)
        await self._store.update_delivery_flags(message_id, delivered=True, read=True, read_at=read_at)
        self._notify_sender(message.sender_id, ReadNotice(message_id=message_id, read_at=read_at))
        return True

    async def mark_channel_read(self, channel: Channel, reader: UserIdentity) -> list[str]:
        """Mark everything addressed to `reader` in the channel as delivered and read."""
        read_at = datetime.now(timezone.utc)
        changed = await self._store.mark_channel_read(channel, reader.id, read_at=read_at)
        for message_id, sender_id in changed:
            self._notify_sender(sender_id, ReadNotice(message_id=message_id, read_at=read_at))
        logger.info(f"{reader.id} read {len(changed)} message(s) in {channel.key}")
        return [message_id for message_id, _ in changed]

    async def _load(self, message_id: str) -> Message:
        message = await self._store.get_message(message_id)
        if message is None:
            raise MalformedEvent(f"Unknown message '{message_id}'")
        return message

    async def _check_recipient(self, message: Message, user: UserIdentity) -> None:
        if message.sender_id == user.id:
            raise UnauthorizedChannelAccess(f"{user.id} cannot acknowledge their own message {message.id}")
        if message.kind == "direct" and message.receiver_id != user.id:
            raise UnauthorizedChannelAccess(f"{user.id} is not the receiver of {message.id}")
        if isinstance(message.channel, GroupChannel):
            if not await self._directory.is_group_member(message.group_id, user.id):
                raise UnauthorizedChannelAccess(f"{user.id} is not a member of group {message.group_id}")

    def _notify_sender(self, sender_id: str, notice) -> None:
        for conn in self._presence.connections_of(sender_id):
            conn.send(notice)
