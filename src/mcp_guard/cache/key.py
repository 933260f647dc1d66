"""Cache key derivation for tool calls.

Parameters are canonicalized (mapping keys sorted recursively) before
hashing, so ``{"a": 1, "b": 2}`` and ``{"b": 2, "a": 1}`` produce the same
key. The same routine backs both the in-memory cache and the document
cache, which is what lets a result written into a document be recognised
as equivalent to a live call.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any

__all__ = ["canonicalize", "canonical_json", "hash_parameters", "make_cache_key"]


def canonicalize(value: Any) -> Any:
    """Return ``value`` with every mapping's keys sorted.

    Sequences keep their order; other values are returned unchanged.

    Example:
        >>> canonicalize({"b": [{"d": 1, "c": 2}], "a": 0})
        {'a': 0, 'b': [{'c': 2, 'd': 1}]}
    """
    if isinstance(value, Mapping):
        return {str(k): canonicalize(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    return value


def canonical_json(value: Any) -> str:
    """Compact JSON of the canonical form; unknown types fall back to ``str()``."""
    return json.dumps(canonicalize(value), separators=(",", ":"), ensure_ascii=False, default=str)


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def make_cache_key(server_id: str, tool_name: str, parameters: Mapping[str, Any] | None) -> str:
    """SHA-256 hex key identifying one ``(server, tool, parameters)`` call."""
    payload = {
        "serverId": server_id,
        "toolName": tool_name,
        "parameters": canonicalize(dict(parameters or {})),
    }
    return _sha256(json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str))


def hash_parameters(parameters: Mapping[str, Any] | None) -> str:
    """SHA-256 hex digest of the canonical parameters alone."""
    return _sha256(canonical_json(dict(parameters or {})))
