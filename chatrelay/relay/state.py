"""
Process-wide relay state.

One RelayState is built per server at startup and handed to every
transport handler; nothing in the relay lives in module globals.
"""
import logging
from typing import Optional

import aiosqlite

from chatrelay.config import (
    ECHO_TO_SENDER_DEVICES,
    PRESENCE_SCOPE,
    RATE_LIMIT_HANDSHAKES_PER_MINUTE,
    TYPING_TIMEOUT_SECONDS,
)
from chatrelay.db.models import Room
from chatrelay.relay.connection import Connection, ConnectionRegistry
from chatrelay.relay.directory import MessageStore, UserDirectory
from chatrelay.relay.presence import PresenceTracker
from chatrelay.relay.protocol import LeftNotice, RoomRef
from chatrelay.relay.ratelimit import HandshakeRateLimiter
from chatrelay.relay.receipts import DeliveryTracker
from chatrelay.relay.router import ChatRouter
from chatrelay.relay.typing_state import TypingState

logger = logging.getLogger(__name__)


class RelayState:
    def __init__(
        self,
        db: aiosqlite.Connection,
        presence_scope: str = PRESENCE_SCOPE,
        echo_to_sender_devices: bool = ECHO_TO_SENDER_DEVICES,
        typing_timeout: float = TYPING_TIMEOUT_SECONDS,
        handshake_limit: int = RATE_LIMIT_HANDSHAKES_PER_MINUTE,
    ):
        self.db = db
        self.registry = ConnectionRegistry()
        self.directory = UserDirectory(db)
        self.store = MessageStore(db)
        self.presence = PresenceTracker(self.registry, scope=presence_scope)
        self.router = ChatRouter(self.presence, self.directory, echo_to_sender_devices)
        self.receipts = DeliveryTracker(self.presence, self.store, self.directory)
        self.typing = TypingState(typing_timeout)
        self.handshakes = HandshakeRateLimiter(handshake_limit)

    def connect(self, client_host: Optional[str] = None) -> Connection:
        conn = Connection(client_host=client_host)
        self.registry.add(conn)
        return conn

    def disconnect(self, conn: Connection) -> None:
        """Tear down every trace of a connection. Safe to call twice."""
        if conn not in self.registry:
            return
        user_id = conn.user_id
        for channel in self.router.leave_all(conn):
            if user_id is None:
                continue
            self.typing.clear(channel, user_id)
            if isinstance(channel, Room):
                notice = LeftNotice(channel_ref=RoomRef(room=channel.name), user_id=user_id)
                for other in self.router.connections_in(channel):
                    other.send(notice)
        self.registry.discard(conn)
        self.presence.remove(conn)
        conn.close()
        logger.info(f"Connection closed: {conn.id} user={user_id}")
