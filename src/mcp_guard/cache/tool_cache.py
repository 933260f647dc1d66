"""In-memory TTL cache for tool results.

Entries live for the lifetime of the process. Freshness is evaluated on
read against the current TTL, so an expired entry is never returned even
if :meth:`ToolResultCache.purge_expired` has not swept it yet.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any

from mcp_guard.cache.base import CacheEntry, CacheStats
from mcp_guard.cache.key import make_cache_key
from mcp_guard.errors import ConfigurationError
from mcp_guard.mcp.models import ToolCallResult

logger = logging.getLogger(__name__)

DEFAULT_TTL_MS = 5 * 60 * 1000


class ToolResultCache:
    """TTL cache keyed by ``(server_id, tool_name, parameters)``.

    Example:
        >>> cache = ToolResultCache(ttl_ms=60_000)
        >>> cache.set("weather", "getWeather", {"location": "Paris"}, result)
        >>> cache.get("weather", "getWeather", {"location": "Paris"}).cached
        True

    Args:
        ttl_ms: Time-to-live in milliseconds.
        clock: Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        ttl_ms: float = DEFAULT_TTL_MS,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl_ms = _validate_ttl(ttl_ms)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    # ---------- lookups ----------

    def get(
        self,
        server_id: str,
        tool_name: str,
        parameters: Mapping[str, Any] | None = None,
    ) -> ToolCallResult | None:
        """Return the cached result annotated with its age, or None on a miss."""
        key = make_cache_key(server_id, tool_name, parameters)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                logger.debug(f"Cache miss: {server_id}/{tool_name}")
                return None

            now = self._clock()
            if entry.is_expired(now, self._ttl_ms):
                del self._entries[key]
                self._misses += 1
                logger.debug(f"Cache entry expired: {server_id}/{tool_name}")
                return None

            self._hits += 1
            age = entry.age_ms(now)
            logger.debug(f"Cache hit: {server_id}/{tool_name} (age={age:.0f}ms)")
            return dataclasses.replace(entry.result, cached=True, cache_age_ms=age)

    async def aget(
        self,
        server_id: str,
        tool_name: str,
        parameters: Mapping[str, Any] | None = None,
    ) -> ToolCallResult | None:
        """Async version of get()."""
        return self.get(server_id, tool_name, parameters)

    def set(
        self,
        server_id: str,
        tool_name: str,
        parameters: Mapping[str, Any] | None,
        result: ToolCallResult,
    ) -> None:
        key = make_cache_key(server_id, tool_name, parameters)
        with self._lock:
            self._entries[key] = CacheEntry(
                key=key,
                result=dataclasses.replace(result, cached=False, cache_age_ms=None),
                timestamp=self._clock(),
                server_id=server_id,
                tool_name=tool_name,
                parameters=dict(parameters or {}),
            )

    async def aset(
        self,
        server_id: str,
        tool_name: str,
        parameters: Mapping[str, Any] | None,
        result: ToolCallResult,
    ) -> None:
        """Async version of set()."""
        self.set(server_id, tool_name, parameters, result)

    # ---------- invalidation ----------

    def clear(self) -> int:
        """Remove all entries and reset the hit/miss counters."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            return count

    def _remove_where(self, predicate: Callable[[CacheEntry], bool]) -> int:
        with self._lock:
            doomed = [k for k, e in self._entries.items() if predicate(e)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def clear_server(self, server_id: str) -> int:
        return self._remove_where(lambda e: e.server_id == server_id)

    def clear_tool(self, server_id: str, tool_name: str) -> int:
        return self._remove_where(lambda e: e.server_id == server_id and e.tool_name == tool_name)

    def purge_expired(self) -> int:
        """Drop expired entries without touching the counters."""
        now = self._clock()
        removed = self._remove_where(lambda e: e.is_expired(now, self._ttl_ms))
        if removed:
            logger.debug(f"Purged {removed} expired cache entries")
        return removed

    # ---------- stats & config ----------

    def get_stats(self) -> CacheStats:
        with self._lock:
            now = self._clock()
            live = [e for e in self._entries.values() if not e.is_expired(now, self._ttl_ms)]
            oldest = max((e.age_ms(now) for e in live), default=None)
            return CacheStats(hits=self._hits, misses=self._misses, size=len(live), oldest_entry_age=oldest)

    def get_hit_rate(self) -> float:
        """Hits as a percentage of all lookups; 0 when nothing was looked up."""
        total = self._hits + self._misses
        return (self._hits / total) * 100 if total else 0.0

    def set_ttl(self, ttl_ms: float) -> None:
        self._ttl_ms = _validate_ttl(ttl_ms)

    def get_ttl(self) -> float:
        return self._ttl_ms

    @property
    def ttl_ms(self) -> float:
        return self._ttl_ms

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for e in self._entries.values() if not e.is_expired(now, self._ttl_ms))

    def __contains__(self, key: object) -> bool:
        """True if ``key`` (a key from :func:`make_cache_key`) is stored and fresh."""
        with self._lock:
            entry = self._entries.get(key) if isinstance(key, str) else None
            return entry is not None and not entry.is_expired(self._clock(), self._ttl_ms)

    def __repr__(self) -> str:
        return f"ToolResultCache(ttl_ms={self._ttl_ms}, entries={len(self._entries)})"


def _validate_ttl(ttl_ms: float) -> float:
    if ttl_ms < 0:
        raise ConfigurationError(f"ttl_ms must be >= 0, got {ttl_ms}", details={"ttl_ms": ttl_ms})
    return float(ttl_ms)
