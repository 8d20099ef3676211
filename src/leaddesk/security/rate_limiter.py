"""
Fixed-window rate limiting.

Each key owns one (count, reset_time) pair. Expired pairs are dropped
lazily whenever the limiter is consulted.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from loguru import logger


@dataclass(frozen=True)
class RateLimitConfig:
    """
    Limit for one class of requests.

    Attributes:
        name: Config identifier (used in logs)
        window_seconds: Window length
        max_requests: Requests admitted per window
        message: Rejection message returned to the caller
    """
    name: str
    window_seconds: float
    max_requests: int
    message: str = "Too many requests, please try again later"


@dataclass
class RateLimitEntry:
    count: int
    reset_time: float


@dataclass(frozen=True)
class RateLimitInfo:
    """
    Snapshot of a key's window.

    Attributes:
        limit: Requests admitted per window
        remaining: Requests left in the current window
        reset_time: Epoch seconds at which the window resets
        retry_after: Whole seconds until reset (at least 1)
    """
    limit: int
    remaining: int
    reset_time: float
    retry_after: int

    def headers(self) -> Dict[str, str]:
        return {
            "X-Rate-Limit-Limit": str(self.limit),
            "X-Rate-Limit-Remaining": str(self.remaining),
            "X-Rate-Limit-Reset": str(int(math.ceil(self.reset_time))),
        }


RATE_LIMIT_CONFIGS: Dict[str, RateLimitConfig] = {
    "auth": RateLimitConfig(
        "auth", 15 * 60, 5, "Too many authentication attempts, please try again later"
    ),
    "registration": RateLimitConfig(
        "registration", 60 * 60, 3, "Too many registration attempts, please try again later"
    ),
    "api": RateLimitConfig("api", 60, 100, "Too many requests, please slow down"),
    "password_reset": RateLimitConfig(
        "password_reset", 60 * 60, 3, "Too many password reset attempts, please try again later"
    ),
    "general": RateLimitConfig(
        "general", 15 * 60, 50, "Too many requests, please try again later"
    ),
}


def rate_limit_key(config: RateLimitConfig, ip: str, identifier: Optional[str] = None) -> str:
    """
    Key for an IP under one config, optionally narrowed by a secondary identifier.

    Each config counts in its own namespace.
    """
    key = f"{config.name}:{ip}"
    return f"{key}:{identifier}" if identifier else key


class RateLimiter:
    """
    In-memory fixed-window limiter for a single process.

    Args:
        clock: Returns the current epoch time in seconds
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def _sweep(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.reset_time <= now]
        for key in expired:
            del self._entries[key]

    def is_rate_limited(self, key: str, config: RateLimitConfig) -> bool:
        """
        Count one request against a key.

        Args:
            key: Rate-limit key (see rate_limit_key)
            config: Window and limit to apply

        Returns:
            True if this request pushed the count past the limit
        """
        with self._lock:
            now = self.clock()
            self._sweep(now)

            entry = self._entries.get(key)
            if entry is None:
                self._entries[key] = RateLimitEntry(count=1, reset_time=now + config.window_seconds)
                return False

            entry.count += 1
            count = entry.count
            limited = count > config.max_requests

        if limited:
            logger.warning(f"Rate limit '{config.name}' exceeded for {key} ({count}/{config.max_requests})")
        return limited

    def get_entry(self, key: str) -> Optional[RateLimitEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.reset_time <= self.clock():
                return None
            return RateLimitEntry(entry.count, entry.reset_time)

    def get_rate_limit_info(self, key: str, config: RateLimitConfig) -> RateLimitInfo:
        """
        Current window state for a key, without counting a request.

        Args:
            key: Rate-limit key
            config: Config the key is counted under

        Returns:
            RateLimitInfo (a fresh window if the key is unknown or expired)
        """
        now = self.clock()
        entry = self.get_entry(key)
        if entry is None:
            reset_time = now + config.window_seconds
            remaining = config.max_requests
        else:
            reset_time = entry.reset_time
            remaining = max(0, config.max_requests - entry.count)

        return RateLimitInfo(
            limit=config.max_requests,
            remaining=remaining,
            reset_time=reset_time,
            retry_after=max(1, int(math.ceil(reset_time - now))),
        )

    def reset(self, key: Optional[str] = None) -> None:
        """Forget one key, or every key."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
