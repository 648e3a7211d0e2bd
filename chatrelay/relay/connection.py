"""
Live connections and the registry that owns them.

A Connection is one transport session (one browser tab or device). Outbound
notices are queued on its outbox; the transport drains the queue and writes
each frame to the socket. Queuing never blocks, so fan-out happens
synchronously between I/O suspension points.
"""
import asyncio
import logging
import uuid
from typing import Callable, Iterator, Optional

from chatrelay.db.models import Channel, UserIdentity
from chatrelay.relay.protocol import ServerNotice, encode

logger = logging.getLogger(__name__)


class Connection:
    def __init__(self, connection_id: Optional[str] = None, client_host: Optional[str] = None):
        self.id = connection_id or uuid.uuid4().hex
        self.client_host = client_host
        # Identity resolved from the handshake token, if any.
        self.authenticated: Optional[UserIdentity] = None
        # Identity bound by `announce`.
        self.user: Optional[UserIdentity] = None
        # Joined channels keyed by channel key.
        self.channels: dict[str, Channel] = {}
        self.outbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user else None

    def send(self, notice: ServerNotice) -> bool:
        """Queue a notice for the client. Returns False once the connection is closed."""
        if self.closed:
            return False
        self.outbox.put_nowait(encode(notice))
        return True

    def drain(self) -> list[dict]:
        """Pop every queued frame without waiting."""
        frames = []
        while not self.outbox.empty():
            frame = self.outbox.get_nowait()
            if frame is not None:
                frames.append(frame)
        return frames

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            # Wake the writer so it can exit.
            self.outbox.put_nowait(None)

    def __repr__(self) -> str:
        return f"<Connection {self.id[:8]} user={self.user_id}>"


class ConnectionRegistry:
    """Every live connection of this process, announced or not."""

    def __init__(self):
        self._connections: dict[str, Connection] = {}

    def add(self, conn: Connection) -> None:
        self._connections[conn.id] = conn
        logger.debug(f"Connection registered: {conn.id} (total={len(self._connections)})")

    def discard(self, conn: Connection) -> None:
        self._connections.pop(conn.id, None)
        logger.debug(f"Connection removed: {conn.id} (total={len(self._connections)})")

    def broadcast(
        self,
        notice: ServerNotice,
        exclude: Optional[Connection] = None,
        predicate: Optional[Callable[[Connection], bool]] = None,
    ) -> int:
        sent = 0
        for conn in list(self._connections.values()):
            if conn is exclude:
                continue
            if predicate is not None and not predicate(conn):
                continue
            if conn.send(notice):
                sent += 1
        return sent

    def __iter__(self) -> Iterator[Connection]:
        return iter(list(self._connections.values()))

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, conn: Connection) -> bool:
        return conn.id in self._connections
