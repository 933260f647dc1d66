"""Tool result caching.

Two caches answer the same question, "has this exact call already been
made?": :class:`ToolResultCache` in memory with a TTL, and
:class:`DocumentToolCache` by scanning results previously written into a
markdown document.
"""

from mcp_guard.cache.base import CacheEntry, CacheStats
from mcp_guard.cache.document import (
    DocumentToolCache,
    DocumentToolRecord,
    LineRange,
    TextDocument,
    format_tool_block,
    upsert_tool_block,
)
from mcp_guard.cache.key import canonicalize, hash_parameters, make_cache_key
from mcp_guard.cache.tool_cache import DEFAULT_TTL_MS, ToolResultCache

__all__ = [
    "DEFAULT_TTL_MS",
    "CacheEntry",
    "CacheStats",
    "DocumentToolCache",
    "DocumentToolRecord",
    "LineRange",
    "TextDocument",
    "ToolResultCache",
    "canonicalize",
    "format_tool_block",
    "hash_parameters",
    "make_cache_key",
    "upsert_tool_block",
]
