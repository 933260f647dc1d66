"""Single entry point for executing tools with caching and dedupe.

Lookup order for a call ``(server, tool, parameters)``:

1. results already written into the given document,
2. the in-memory :class:`ToolResultCache`,
3. a call with the same key that is already in flight,
4. a live call through the :class:`ServerSupervisor`.

Live results that are not tool errors are stored in the memory cache and,
on request, written into the document.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from mcp_guard.cache.document import (
    DocumentLike,
    DocumentToolCache,
    DocumentToolRecord,
    TextDocument,
    format_tool_block,
    upsert_tool_block,
)
from mcp_guard.cache.key import make_cache_key
from mcp_guard.cache.tool_cache import ToolResultCache
from mcp_guard.mcp.models import ToolCallResult
from mcp_guard.mcp.supervisor import ServerSupervisor

logger = logging.getLogger(__name__)

InvocationSource = Literal["document", "memory", "live"]


@dataclass
class ToolInvocation:
    """Outcome of :meth:`ToolInvoker.invoke`.

    Attributes:
        result: The tool result.
        source: Where the result came from.
        record: The matching document block, if any (after a write, the
            block that was written).
    """

    result: ToolCallResult
    source: InvocationSource
    record: DocumentToolRecord | None = None


class ToolInvoker:
    def __init__(
        self,
        supervisor: ServerSupervisor,
        cache: ToolResultCache | None = None,
        document_cache: DocumentToolCache | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.cache = cache if cache is not None else ToolResultCache()
        self.document_cache = document_cache or DocumentToolCache()
        self._pending: dict[str, asyncio.Future[ToolCallResult]] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def invoke(
        self,
        server_id: str,
        tool_name: str,
        parameters: Mapping[str, Any] | None = None,
        *,
        document: DocumentLike | None = None,
        use_cache: bool = True,
        write_to_document: bool = False,
        cancel_event: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> ToolInvocation:
        """Return a result for the call, executing the tool only when needed.

        With ``use_cache=False`` both caches are bypassed for reading, but
        concurrent identical calls are still collapsed into one execution.
        The ``cancel_event`` and ``timeout`` of the caller that started an
        execution apply to everyone waiting on it.
        """
        params = dict(parameters or {})

        existing: DocumentToolRecord | None = None
        if document is not None:
            existing = self.document_cache.find_existing_result(document, server_id, tool_name, params)
            if existing is not None and use_cache:
                logger.debug(f"Document cache hit: {server_id}/{tool_name}")
                return ToolInvocation(existing.to_result(), "document", existing)

        if use_cache:
            cached = self.cache.get(server_id, tool_name, params)
            if cached is not None:
                record = existing
                if write_to_document and existing is None:
                    record = self._write(document, server_id, tool_name, params, cached, existing)
                return ToolInvocation(cached, "memory", record)

        result = await self._execute_once(server_id, tool_name, params, timeout, cancel_event)

        record = existing
        if write_to_document and not result.is_error:
            record = self._write(document, server_id, tool_name, params, result, existing)
        return ToolInvocation(result, "live", record)

    async def _execute_once(
        self,
        server_id: str,
        tool_name: str,
        params: dict[str, Any],
        timeout: float | None,
        cancel_event: asyncio.Event | None,
    ) -> ToolCallResult:
        key = make_cache_key(server_id, tool_name, params)
        future = self._pending.get(key)
        if future is None:
            future = asyncio.ensure_future(self._execute(server_id, tool_name, params, timeout, cancel_event))
            self._pending[key] = future
            future.add_done_callback(lambda f, k=key: self._settle(k, f))
        else:
            logger.debug(f"Joining in-flight call: {server_id}/{tool_name}")
        return await asyncio.shield(future)

    def _settle(self, key: str, future: asyncio.Future[ToolCallResult]) -> None:
        if self._pending.get(key) is future:
            del self._pending[key]
        # Mark the outcome as retrieved even if every waiter went away.
        if not future.cancelled():
            future.exception()

    async def _execute(
        self,
        server_id: str,
        tool_name: str,
        params: dict[str, Any],
        timeout: float | None,
        cancel_event: asyncio.Event | None,
    ) -> ToolCallResult:
        result = await self.supervisor.call_tool(
            server_id, tool_name, params, timeout=timeout, cancel_event=cancel_event
        )
        if not result.is_error:
            self.cache.set(server_id, tool_name, params, result)
        return result

    def _write(
        self,
        document: DocumentLike | None,
        server_id: str,
        tool_name: str,
        params: dict[str, Any],
        result: ToolCallResult,
        existing: DocumentToolRecord | None,
    ) -> DocumentToolRecord | None:
        if not isinstance(document, TextDocument):
            logger.debug("Document is read-only; skipping write")
            return existing

        try:
            block = format_tool_block(
                server_id,
                self._server_name(server_id),
                tool_name,
                params,
                result.text(),
                duration_ms=result.duration_ms,
                executed_at=datetime.now(timezone.utc),
            )
        except ValueError as e:
            logger.debug(f"Cannot write {server_id}/{tool_name} to document: {e}")
            return existing

        # The document may have changed while the call was in flight.
        current = self.document_cache.find_existing_result(document, server_id, tool_name, params)
        upsert_tool_block(document, block, current)
        return self.document_cache.find_existing_result(document, server_id, tool_name, params)

    def _server_name(self, server_id: str) -> str:
        for record in self.supervisor.list_servers():
            if record.id == server_id:
                return record.name
        return server_id
