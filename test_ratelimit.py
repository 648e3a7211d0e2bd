"""
Unit tests for the WebSocket handshake rate limiter.
"""
import pytest

from chatrelay.relay.ratelimit import HandshakeRateLimiter, RateLimitExceeded


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestRateLimitExceeded:
    def test_attributes(self):
        exc = RateLimitExceeded(limit=30, window=60, retry_after=12, scope="client_host")
        assert exc.limit == 30
        assert exc.window == 60
        assert exc.retry_after == 12
        assert exc.scope == "client_host"

    def test_str_contains_limit_and_window(self):
        exc = RateLimitExceeded(limit=5, window=60, retry_after=60, scope="client_host")
        assert "5" in str(exc)
        assert "60" in str(exc)


class TestHandshakeRateLimiter:
    def test_blocks_after_limit_within_window(self):
        clock = _Clock()
        limiter = HandshakeRateLimiter(limit=2, window=60, clock=clock)
        limiter.check("10.0.0.1")
        clock.now += 10
        limiter.check("10.0.0.1")
        clock.now += 5
        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.check("10.0.0.1")
        # Oldest hit leaves the window 45s from now.
        assert exc_info.value.retry_after == 45

    def test_window_slides(self):
        clock = _Clock()
        limiter = HandshakeRateLimiter(limit=1, window=60, clock=clock)
        limiter.check("h")
        clock.now += 60
        limiter.check("h")

    def test_keys_are_independent(self):
        limiter = HandshakeRateLimiter(limit=1, clock=_Clock())
        limiter.check("a")
        limiter.check("b")
        with pytest.raises(RateLimitExceeded):
            limiter.check("a")

    def test_zero_limit_disables(self):
        limiter = HandshakeRateLimiter(limit=0, clock=_Clock())
        assert not limiter.enabled
        for _ in range(100):
            limiter.check("h")

    def test_idle_hosts_are_forgotten(self):
        clock = _Clock()
        limiter = HandshakeRateLimiter(limit=5, window=60, clock=clock)
        for i in range(50):
            limiter.check(f"10.0.0.{i}")
        assert limiter.tracked_hosts == 50

        clock.now += 61
        limiter.check("10.0.1.1")
        assert limiter.tracked_hosts == 1
