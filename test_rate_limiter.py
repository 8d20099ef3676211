"""
Unit tests for the fixed-window rate limiter.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest
from loguru import logger

from leaddesk.security.rate_limiter import (
    RATE_LIMIT_CONFIGS,
    RateLimitConfig,
    RateLimiter,
    rate_limit_key,
)


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


FIVE_PER_SECOND = RateLimitConfig("test", window_seconds=1.0, max_requests=5)


class TestFixedWindow:
    """Test window counting and reset."""

    def test_sixth_call_is_limited(self, limiter):
        """Test that calls 1-5 pass and call 6 is rejected."""
        results = [limiter.is_rate_limited("10.0.0.1", FIVE_PER_SECOND) for _ in range(6)]

        assert results == [False] * 5 + [True]

    def test_window_reset(self, limiter, clock):
        """Test that the next call after reset_time starts a new window at count 1."""
        for _ in range(6):
            limiter.is_rate_limited("10.0.0.1", FIVE_PER_SECOND)

        clock.advance(1.5)

        assert limiter.is_rate_limited("10.0.0.1", FIVE_PER_SECOND) is False
        assert limiter.get_entry("10.0.0.1").count == 1

    def test_rejected_calls_still_count(self, limiter):
        """Test that requests over the limit keep incrementing."""
        for _ in range(8):
            limiter.is_rate_limited("10.0.0.1", FIVE_PER_SECOND)

        assert limiter.get_entry("10.0.0.1").count == 8

    def test_warning_reports_own_count(self, limiter):
        """Test that concurrent rejections each log the count they produced."""
        messages = []
        handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="WARNING")
        try:
            with ThreadPoolExecutor(max_workers=8) as pool:
                list(pool.map(lambda _: limiter.is_rate_limited("10.0.0.1", FIVE_PER_SECOND), range(20)))
        finally:
            logger.remove(handler_id)

        counts = sorted(int(m.rsplit("(", 1)[1].split("/")[0]) for m in messages)
        assert counts == list(range(6, 21))

    def test_keys_are_independent(self, limiter):
        """Test that one key's count does not affect another."""
        for _ in range(6):
            limiter.is_rate_limited("10.0.0.1", FIVE_PER_SECOND)

        assert limiter.is_rate_limited("10.0.0.2", FIVE_PER_SECOND) is False

    def test_expired_entries_swept_lazily(self, limiter, clock):
        """Test that touching any key drops every expired entry."""
        for ip in ("a", "b", "c"):
            limiter.is_rate_limited(ip, FIVE_PER_SECOND)
        assert len(limiter) == 3

        clock.advance(2)
        limiter.is_rate_limited("d", FIVE_PER_SECOND)

        assert len(limiter) == 1


class TestRateLimitInfo:
    """Test window snapshots and headers."""

    def test_info_for_active_key(self, limiter, clock):
        """Test remaining count and retry hint."""
        config = RateLimitConfig("test", window_seconds=60, max_requests=5)
        for _ in range(3):
            limiter.is_rate_limited("k", config)

        clock.advance(10)
        info = limiter.get_rate_limit_info("k", config)

        assert info.limit == 5
        assert info.remaining == 2
        assert info.retry_after == 50
        assert info.headers()["X-Rate-Limit-Remaining"] == "2"
        assert info.headers()["X-Rate-Limit-Reset"] == str(int(clock() + 50))

    def test_info_for_unknown_key(self, limiter):
        """Test that an unknown key reports a full window."""
        info = limiter.get_rate_limit_info("nobody", FIVE_PER_SECOND)

        assert info.remaining == 5
        assert info.retry_after == 1

    def test_remaining_never_negative(self, limiter):
        """Test that remaining stays at zero past the limit."""
        for _ in range(9):
            limiter.is_rate_limited("k", FIVE_PER_SECOND)

        assert limiter.get_rate_limit_info("k", FIVE_PER_SECOND).remaining == 0


class TestConfigs:
    """Test the built-in limits and key format."""

    def test_builtin_limits(self):
        """Test the configured windows and maxima."""
        assert (RATE_LIMIT_CONFIGS["auth"].max_requests, RATE_LIMIT_CONFIGS["auth"].window_seconds) == (5, 900)
        assert (RATE_LIMIT_CONFIGS["registration"].max_requests,
                RATE_LIMIT_CONFIGS["registration"].window_seconds) == (3, 3600)
        assert (RATE_LIMIT_CONFIGS["api"].max_requests, RATE_LIMIT_CONFIGS["api"].window_seconds) == (100, 60)
        assert RATE_LIMIT_CONFIGS["password_reset"].max_requests == 3

    def test_key_with_identifier(self):
        """Test config:IP and config:IP:identifier keys."""
        auth = RATE_LIMIT_CONFIGS["auth"]
        assert rate_limit_key(auth, "1.2.3.4") == "auth:1.2.3.4"
        assert rate_limit_key(auth, "1.2.3.4", "a@example.com") == "auth:1.2.3.4:a@example.com"

    def test_configs_count_separately(self, limiter, clock):
        """Test that one IP has an independent window per config."""
        api, auth = RATE_LIMIT_CONFIGS["api"], RATE_LIMIT_CONFIGS["auth"]
        limiter.is_rate_limited(rate_limit_key(auth, "1.2.3.4"), auth)
        clock.advance(120)

        results = [limiter.is_rate_limited(rate_limit_key(api, "1.2.3.4"), api) for _ in range(100)]

        assert not any(results)
        assert limiter.get_entry(rate_limit_key(auth, "1.2.3.4")).count == 1

    def test_reset(self, limiter):
        """Test forgetting a key."""
        for _ in range(6):
            limiter.is_rate_limited("k", FIVE_PER_SECOND)
        limiter.reset("k")

        assert limiter.is_rate_limited("k", FIVE_PER_SECOND) is False
