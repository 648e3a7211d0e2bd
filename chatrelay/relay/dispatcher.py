"""
Inbound event dispatcher.

Each frame from a connection is validated into a ClientEvent and handled to
completion before the next frame of that connection is read. Any RelayError
drops the event: it is logged, the originating connection of a failed `send`
may get a `sendFailed` notice, and the connection stays open.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from chatrelay.config import SEND_FAILED_EVENTS_ENABLED
from chatrelay.db.models import Channel, DirectChannel, GroupChannel, Message, Room, UserIdentity
from chatrelay.relay.connection import Connection
from chatrelay.relay.errors import (
    AuthenticationMissing,
    MalformedEvent,
    RelayError,
    StoreUnavailable,
    UnauthorizedChannelAccess,
)
from chatrelay.relay.protocol import (
    AnnounceEvent,
    ChannelRef,
    ClientEvent,
    JoinedNotice,
    JoinEvent,
    LeaveEvent,
    LeftNotice,
    MarkDeliveredEvent,
    MarkReadEvent,
    MentionNotice,
    MessageNotice,
    MessagePayload,
    SendEvent,
    SendFailedNotice,
    SentNotice,
    TypingEvent,
    TypingNotice,
    parse_client_event,
    ref_for,
)
from chatrelay.relay.state import RelayState

logger = logging.getLogger(__name__)


class EventDispatcher:
    def __init__(self, state: RelayState, send_failed_events: bool = SEND_FAILED_EVENTS_ENABLED):
        self._state = state
        self._send_failed_events = send_failed_events

    async def handle(self, conn: Connection, raw) -> None:
        """Process one inbound frame. Never raises RelayError."""
        event: Optional[ClientEvent] = None
        try:
            event = parse_client_event(raw)
            await self.dispatch(conn, event)
        except RelayError as exc:
            kind = getattr(event, "type", "frame")
            logger.warning(f"Dropped {kind} from {conn!r}: {type(exc).__name__}: {exc}")
            if isinstance(event, SendEvent):
                self._send_failed(conn, event.client_message_id, exc)

    async def dispatch(self, conn: Connection, event: ClientEvent) -> None:
        match event:
            case AnnounceEvent():
                await self._announce(conn, event)
            case JoinEvent():
                await self._join(conn, event)
            case LeaveEvent():
                self._leave(conn, event)
            case SendEvent():
                await self._send(conn, event)
            case TypingEvent():
                await self._typing(conn, event)
            case MarkDeliveredEvent():
                await self._state.receipts.on_delivered(event.message_id, self._require_user(conn))
            case MarkReadEvent():
                await self._mark_read(conn, event)
            case _:
                raise MalformedEvent(f"Unhandled event {event!r}")

    # ── identity and channels ───────────────

    async def _announce(self, conn: Connection, event: AnnounceEvent) -> None:
        if conn.authenticated is not None:
            if event.user_id != conn.authenticated.id:
                raise UnauthorizedChannelAccess(
                    f"Token belongs to {conn.authenticated.id}, not {event.user_id}"
                )
            user = conn.authenticated
        else:
            user = await self._state.directory.get_user(event.user_id)
            if user is None:
                raise AuthenticationMissing(f"Unknown user '{event.user_id}'")
        self._state.presence.announce(conn, user)

    async def _join(self, conn: Connection, event: JoinEvent) -> None:
        user = self._require_user(conn)
        channel = event.channel_ref.resolve(user.id)
        await self._authorize(user, channel)
        if not self._state.router.join(conn, channel):
            return
        if isinstance(channel, Room):
            notice = JoinedNotice(channel_ref=event.channel_ref, user_id=user.id)
            for other in self._state.router.connections_in(channel):
                if other is not conn:
                    other.send(notice)

    def _leave(self, conn: Connection, event: LeaveEvent) -> None:
        user = self._require_user(conn)
        channel = event.channel_ref.resolve(user.id)
        if not self._state.router.leave(conn, channel):
            return
        self._state.typing.clear(channel, user.id)
        if isinstance(channel, Room):
            notice = LeftNotice(channel_ref=event.channel_ref, user_id=user.id)
            for other in self._state.router.connections_in(channel):
                other.send(notice)

    async def _authorize(self, user: UserIdentity, channel: Channel) -> None:
        if isinstance(channel, DirectChannel):
            peer_id = channel.peer_of(user.id)
            if peer_id == user.id:
                raise UnauthorizedChannelAccess(f"{user.id} cannot open a direct chat with themselves")
            contacts = await self._state.directory.list_contacts(user.id)
            if not any(c.id == peer_id for c in contacts):
                raise UnauthorizedChannelAccess(f"{peer_id} is not a contact of {user.id}")
        elif isinstance(channel, GroupChannel):
            if not await self._state.directory.is_group_member(channel.group_id, user.id):
                raise UnauthorizedChannelAccess(f"{user.id} is not a member of group {channel.group_id}")

    def _require_user(self, conn: Connection) -> UserIdentity:
        if conn.user is None:
            raise AuthenticationMissing(f"{conn!r} has not announced an identity")
        return conn.user

    def _joined_channel(self, conn: Connection, ref: ChannelRef) -> Channel:
        user = self._require_user(conn)
        channel = ref.resolve(user.id)
        if not self._state.router.is_joined(conn, channel):
            raise UnauthorizedChannelAccess(f"{conn!r} has not joined {channel.key}")
        return channel

    # ── messages ─────────────────────────────

    async def _send(self, conn: Connection, event: SendEvent) -> None:
        user = self._require_user(conn)
        channel = self._joined_channel(conn, event.channel_ref)
        body = event.body.strip()
        if not body:
            raise MalformedEvent("Message body is empty")

        message = Message(
            id=str(uuid.uuid4()),
            kind=_kind_of(channel),
            sender_id=user.id,
            body=body,
            created_at=datetime.now(timezone.utc),
            receiver_id=channel.peer_of(user.id) if isinstance(channel, DirectChannel) else None,
            group_id=channel.group_id if isinstance(channel, GroupChannel) else None,
            room=channel.name if isinstance(channel, Room) else None,
            message_type=event.message_type,
            client_message_id=event.client_message_id,
            sender_name=user.display_name,
        )

        store_error = None
        try:
            stored_id = await self._state.store.insert_message(message)
        except StoreUnavailable as exc:
            # Relayed anyway; it will be missing from history.
            store_error = exc
        else:
            if stored_id != message.id:
                existing = await self._state.store.get_message(stored_id)
                created_at = existing.created_at if existing else message.created_at
                conn.send(SentNotice(
                    client_message_id=event.client_message_id,
                    message_id=stored_id,
                    created_at=created_at,
                ))
                return

        # Resolve targets before acknowledging: a roster failure yields sendFailed alone.
        targets = await self._state.router.route(message, origin=conn)
        conn.send(SentNotice(
            client_message_id=event.client_message_id,
            message_id=message.id,
            created_at=message.created_at,
        ))
        self._state.typing.clear(channel, user.id)

        payload = MessagePayload.from_message(message)
        notice = MessageNotice(message=payload)
        for target in targets:
            target.send(notice)
        await self._state.receipts.on_sent(message, targets)
        await self._notify_mentions(channel, user, payload, event.mentions)

        if store_error is not None:
            logger.warning(f"Message {message.id} relayed to {len(targets)} connection(s) but not persisted")
            self._send_failed(conn, event.client_message_id, store_error)

    async def _notify_mentions(
        self,
        channel: Channel,
        sender: UserIdentity,
        payload: MessagePayload,
        mentions: list[str],
    ) -> None:
        """Alert every live connection of each mentioned user who can read the channel."""
        for user_id in dict.fromkeys(mentions):
            if user_id == sender.id or not await self._can_see(user_id, channel):
                continue
            notice = MentionNotice(
                channel_ref=ref_for(channel, user_id),
                mentioned_by=sender.id,
                message=payload,
            )
            for target in self._state.presence.connections_of(user_id):
                target.send(notice)

    async def _can_see(self, user_id: str, channel: Channel) -> bool:
        if isinstance(channel, DirectChannel):
            return user_id in (channel.user_a, channel.user_b)
        if isinstance(channel, GroupChannel):
            return await self._state.directory.is_group_member(channel.group_id, user_id)
        return True

    async def _typing(self, conn: Connection, event: TypingEvent) -> None:
        user = self._require_user(conn)
        channel = self._joined_channel(conn, event.channel_ref)
        expires_at = self._state.typing.update(channel, user.id, event.is_typing)
        for target in await self._state.router.audience(channel, user.id):
            target.send(TypingNotice(
                channel_ref=ref_for(channel, target.user_id),
                user_id=user.id,
                is_typing=event.is_typing,
                expires_at=expires_at,
            ))

    async def _mark_read(self, conn: Connection, event: MarkReadEvent) -> None:
        user = self._require_user(conn)
        if event.message_id is not None:
            await self._state.receipts.on_read(event.message_id, user)
            return
        channel = self._joined_channel(conn, event.channel_ref)
        await self._state.receipts.mark_channel_read(channel, user)

    def _send_failed(self, conn: Connection, client_message_id: Optional[str], exc: RelayError) -> None:
        if self._send_failed_events:
            conn.send(SendFailedNotice(client_message_id=client_message_id, reason=exc.reason))


def _kind_of(channel: Channel) -> str:
    if isinstance(channel, DirectChannel):
        return "direct"
    if isinstance(channel, GroupChannel):
        return "group"
    return "room"
