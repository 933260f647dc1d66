"""Data structures shared by the tool result caches."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from mcp_guard.mcp.models import ToolCallResult


@dataclass
class CacheEntry:
    """A cached tool result with metadata.

    Attributes:
        key: Hash of ``(server_id, tool_name, parameters)``.
        result: The stored result.
        timestamp: Epoch seconds when the entry was stored.
        server_id: Server that produced the result.
        tool_name: Tool that produced the result.
        parameters: Parameters of the call, as given.
    """

    key: str
    result: ToolCallResult
    timestamp: float
    server_id: str
    tool_name: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def age_ms(self, now: float) -> float:
        return max(0.0, (now - self.timestamp) * 1000.0)

    def is_expired(self, now: float, ttl_ms: float) -> bool:
        return self.age_ms(now) > ttl_ms

    def to_dict(self) -> dict[str, Any]:
        """Convert entry to dictionary for serialization."""
        return {
            "key": self.key,
            "timestamp": self.timestamp,
            "server_id": self.server_id,
            "tool_name": self.tool_name,
            "parameters": self.parameters,
            "content_type": self.result.content_type,
            "is_error": self.result.is_error,
        }


@dataclass
class CacheStats:
    """Statistics about cache usage.

    Attributes:
        hits: Number of cache hits.
        misses: Number of cache misses.
        size: Number of live entries.
        oldest_entry_age: Age in ms of the oldest live entry, if any.
    """

    hits: int = 0
    misses: int = 0
    size: int = 0
    oldest_entry_age: float | None = None

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total) * 100 if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "size": self.size,
            "oldest_entry_age": self.oldest_entry_age,
            "hit_rate": self.hit_rate,
        }
