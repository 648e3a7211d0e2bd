"""
Per-channel "is typing" entries.

Entries expire after a fixed timeout. Nothing runs on a timer: expired
entries are skipped when read and pruned on the next write, and receivers
honor the advertised `expiresAt` themselves.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from chatrelay.db.models import Channel


class TypingState:
    def __init__(self, timeout_seconds: float = 3.0):
        self.timeout = timedelta(seconds=timeout_seconds)
        self._entries: dict[str, dict[str, datetime]] = {}

    def update(
        self,
        channel: Channel,
        user_id: str,
        is_typing: bool,
        now: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Record a typing signal. Returns the expiry of a start signal, None for a stop."""
        now = now or datetime.now(timezone.utc)
        entries = self._entries.setdefault(channel.key, {})
        for uid, expires in list(entries.items()):
            if expires <= now:
                del entries[uid]
        if not is_typing:
            entries.pop(user_id, None)
            if not entries:
                del self._entries[channel.key]
            return None
        expires_at = now + self.timeout
        entries[user_id] = expires_at
        return expires_at

    def active(self, channel: Channel, now: Optional[datetime] = None) -> set[str]:
        now = now or datetime.now(timezone.utc)
        return {uid for uid, expires in self._entries.get(channel.key, {}).items() if expires > now}

    def clear(self, channel: Channel, user_id: str) -> bool:
        entries = self._entries.get(channel.key)
        if not entries or entries.pop(user_id, None) is None:
            return False
        if not entries:
            del self._entries[channel.key]
        return True
