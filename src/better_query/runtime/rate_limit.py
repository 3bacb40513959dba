"""
Rate limiting for generated operations.

A moving-window limit keyed by an arbitrary string, typically
``{ip}-{operation}-{resource}``. Counting is delegated to the ``limits``
package (the engine behind slowapi); the limiter is a plain service object so a
test or a tenant can own an isolated instance, and a shared backend can be
selected with a storage URI (``memory://``, ``redis://...``).

Usage::

    limiter = RateLimiter()
    if not limiter.is_allowed("1.2.3.4-create-product", window_ms=60_000, max_requests=100):
        raise RateLimitExceeded()
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from limits import RateLimitItem, RateLimitItemPerSecond
from limits.storage import Storage, storage_from_string
from limits.strategies import MovingWindowRateLimiter

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_URI = "memory://"


@dataclass
class RateLimitConfig:
    """Requests allowed per window.

    Attributes:
        window_ms: Window length in milliseconds (rounded up to whole seconds)
        max: Maximum requests per key inside one window
    """

    window_ms: int = 60_000
    max: int = 100


def limit_item(window_ms: int, max_requests: int) -> RateLimitItem:
    """Translate a window/max pair into a ``limits`` item."""
    seconds = max(1, math.ceil(window_ms / 1000))
    return RateLimitItemPerSecond(max_requests, seconds)


class RateLimiter:
    """
    Moving-window rate limiter.

    Args:
        storage_uri: ``limits`` storage URI; in-process memory by default
        storage: Ready storage instance, takes precedence over ``storage_uri``
    """

    def __init__(self, storage_uri: str = DEFAULT_STORAGE_URI, storage: Storage | None = None) -> None:
        self.storage = storage if storage is not None else storage_from_string(storage_uri)
        self._strategy = MovingWindowRateLimiter(self.storage)
        self._items: dict[tuple[int, int], RateLimitItem] = {}

    def _item(self, window_ms: int, max_requests: int) -> RateLimitItem:
        item = self._items.get((window_ms, max_requests))
        if item is None:
            item = self._items[(window_ms, max_requests)] = limit_item(window_ms, max_requests)
        return item

    def is_allowed(self, key: str, window_ms: int, max_requests: int) -> bool:
        """
        Record a request for ``key`` and report whether it is allowed.

        Args:
            key: Limiter key
            window_ms: Trailing window length in milliseconds
            max_requests: Requests allowed inside the window

        Returns:
            False once ``max_requests`` requests already fall inside the window
        """
        allowed = self._strategy.hit(self._item(window_ms, max_requests), key)
        if not allowed:
            logger.debug(f"Rate limit hit for {key} ({max_requests}/{window_ms}ms)")
        return allowed

    def check(self, key: str, config: RateLimitConfig) -> bool:
        return self.is_allowed(key, config.window_ms, config.max)

    def remaining(self, key: str, config: RateLimitConfig) -> int:
        """Requests ``key`` may still make in the current window."""
        return self._strategy.get_window_stats(self._item(config.window_ms, config.max), key).remaining

    def reset(self, key: str | None = None) -> None:
        """Forget one key, or everything."""
        if key is None:
            self.storage.reset()
            return
        for item in self._items.values():
            self._strategy.clear(item, key)


def rate_limit_key(ip: str, operation: str, resource: str) -> str:
    return f"{ip}-{operation}-{resource}"
