"""
Sliding-window limiter for WebSocket handshakes, keyed by client host.
"""
import logging
import math
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)


class RateLimitExceeded(Exception):
    """Raised when a client exceeds the configured handshake rate limit."""

    def __init__(self, limit: int, window: int, retry_after: int, scope: str) -> None:
        self.limit = limit
        self.window = window
        self.retry_after = retry_after
        self.scope = scope
        super().__init__(f"Rate limit exceeded: {limit} handshakes/{window}s")


class HandshakeRateLimiter:
    def __init__(self, limit: int, window: int = 60, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}

    @property
    def enabled(self) -> bool:
        return self.limit > 0

    def check(self, key: str) -> None:
        """Record one handshake for `key`, or raise RateLimitExceeded."""
        if not self.enabled:
            return
        now = self._clock()
        self._prune(now)
        hits = self._hits.setdefault(key, deque())
        if len(hits) >= self.limit:
            retry_after = max(1, math.ceil(hits[0] + self.window - now))
            logger.warning(f"Handshake rate limit hit for {key}: {len(hits)}/{self.window}s")
            raise RateLimitExceeded(
                limit=self.limit,
                window=self.window,
                retry_after=retry_after,
                scope="client_host",
            )
        hits.append(now)

    def _prune(self, now: float) -> None:
        """Drop expired hits, and every host left with none."""
        for key in list(self._hits):
            hits = self._hits[key]
            while hits and hits[0] <= now - self.window:
                hits.popleft()
            if not hits:
                del self._hits[key]

    @property
    def tracked_hosts(self) -> int:
        return len(self._hits)
