"""
Presence tracking: which users have at least one live connection.

A user is online iff their connection set is non-empty. Several connections
per user are allowed; `offline` fires only when the last one goes away.
State is process-local and lost on restart.
"""
import logging
from typing import Optional

from chatrelay.db.models import UserIdentity
from chatrelay.relay.connection import Connection, ConnectionRegistry
from chatrelay.relay.errors import UnauthorizedChannelAccess
from chatrelay.relay.protocol import OfflineNotice, OnlineNotice, PresenceNotice

logger = logging.getLogger(__name__)


class PresenceTracker:
    def __init__(self, registry: ConnectionRegistry, scope: str = "global"):
        self._registry = registry
        self._scope = scope
        self._sessions: dict[str, dict[str, Connection]] = {}

    def announce(self, conn: Connection, user: UserIdentity) -> bool:
        """Bind `conn` to `user`. Returns True if the user just came online."""
        if conn.user is not None:
            if conn.user.id == user.id:
                return False
            raise UnauthorizedChannelAccess(
                f"Connection {conn.id} is already announced as {conn.user.id}"
            )

        conn.user = user
        sessions = self._sessions.setdefault(user.id, {})
        came_online = not sessions
        sessions[conn.id] = conn
        conn.send(PresenceNotice(user_ids=self.online_users(visible_to=user)))
        if came_online:
            self._broadcast(OnlineNotice(user_id=user.id), user, exclude=conn)
            logger.info(f"User online: {user.id} '{user.display_name}' via {conn.id}")
        else:
            logger.debug(f"User {user.id} added connection {conn.id} ({len(sessions)} live)")
        return came_online

    def remove(self, conn: Connection) -> bool:
        """Forget `conn`. Returns True if its user just went offline."""
        user = conn.user
        if user is None:
            return False
        sessions = self._sessions.get(user.id)
        if not sessions or sessions.pop(conn.id, None) is None:
            return False
        if sessions:
            logger.debug(f"User {user.id} dropped connection {conn.id} ({len(sessions)} live)")
            return False
        del self._sessions[user.id]
        self._broadcast(OfflineNotice(user_id=user.id), user, exclude=conn)
        logger.info(f"User offline: {user.id} '{user.display_name}'")
        return True

    def is_online(self, user_id: str) -> bool:
        return bool(self._sessions.get(user_id))

    def connections_of(self, user_id: str) -> list[Connection]:
        return list(self._sessions.get(user_id, {}).values())

    def online_users(self, visible_to: Optional[UserIdentity] = None) -> list[str]:
        """Ids of online users, limited to `visible_to`'s organization under organization scope."""
        if visible_to is None or self._scope != "organization":
            return list(self._sessions)
        return [
            uid for uid, sessions in self._sessions.items()
            if next(iter(sessions.values())).user.organization_id == visible_to.organization_id
        ]

    def _broadcast(self, notice, user: UserIdentity, exclude: Connection) -> None:
        if self._scope == "organization":
            org = user.organization_id
            self._registry.broadcast(
                notice,
                exclude=exclude,
                predicate=lambda c: c.user is not None and c.user.organization_id == org,
            )
        else:
            self._registry.broadcast(notice, exclude=exclude)
