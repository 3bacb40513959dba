"""In-process read-through cache for read and list results.

Cache key structure::

    {resource}:{operation}:{id}:{query fingerprint}

Any write to a resource drops every entry under ``{resource}:``. Expired
entries are dropped when read, and by a sweep that ``set`` runs at most once
per ``sweep_interval`` seconds, so keys that are never read again do not pile
up.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

_DEFAULT_TTL = 300  # 5 minutes
_SWEEP_INTERVAL = 60


class QueryCache:
    """TTL cache shared by every request of one BetterQuery instance.

    Args:
        ttl: Seconds an entry stays valid
        clock: Time source (seconds), injectable for tests
        sweep_interval: Minimum seconds between expiry sweeps
    """

    def __init__(
        self,
        ttl: float = _DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = _SWEEP_INTERVAL,
    ) -> None:
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._last_sweep = clock()

    @staticmethod
    def key(
        resource: str,
        operation: str,
        record_id: str | None = None,
        query: Mapping[str, Any] | None = None,
    ) -> str:
        fingerprint = json.dumps(dict(query or {}), sort_keys=True, default=str)
        return f"{resource}:{operation}:{record_id or ''}:{fingerprint}"

    def get(self, key: str) -> Any:
        """Return the cached value, or ``None`` on miss or expiry."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        now = self._clock()
        if now - self._last_sweep >= self.sweep_interval:
            self.purge_expired()
        self._entries[key] = (now + (ttl if ttl is not None else self.ttl), value)

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        self._last_sweep = now
        doomed = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for k in doomed:
            del self._entries[k]
        if doomed:
            logger.debug(f"Purged {len(doomed)} expired cache entries")
        return len(doomed)

    def invalidate(self, resource: str) -> int:
        """Drop every entry belonging to ``resource``."""
        prefix = f"{resource}:"
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for k in doomed:
            del self._entries[k]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries for {resource}")
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
