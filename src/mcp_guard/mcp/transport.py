"""Transports used by the supervisor to reach tool servers.

The supervisor only depends on the :class:`ServerTransport` protocol. The
default implementation, :class:`MCPSessionTransport`, keeps one ``mcp``
``ClientSession`` open per server over stdio, streamable HTTP or SSE.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from contextlib import AsyncExitStack
from typing import Any, Protocol, runtime_checkable

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from mcp_guard.errors import MCPConnectionError, MCPError, MCPTimeoutError, MCPToolError
from mcp_guard.logging import get_logger
from mcp_guard.mcp.models import McpServerConfig, ToolCallResult, ToolDefinition
from mcp_guard.retry.backoff import error_code

__all__ = [
    "DEFAULT_CONNECT_TIMEOUT",
    "MCPSessionTransport",
    "ServerTransport",
    "TransportFactory",
]

logger = get_logger("mcp.transport")

DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_DISCONNECT_TIMEOUT = 5.0


@runtime_checkable
class ServerTransport(Protocol):
    """Connection to a single tool server."""

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def list_tools(self) -> list[ToolDefinition]: ...

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any],
        timeout: float | None = None,
    ) -> ToolCallResult: ...

    async def ping(self) -> bool:
        """Best-effort liveness probe; never raises."""
        ...


TransportFactory = Callable[[McpServerConfig], ServerTransport]


class MCPSessionTransport:
    """``ServerTransport`` backed by an ``mcp.ClientSession``.

    The session's context managers are entered and exited by one background
    task, because anyio cancel scopes must be closed by the task that opened
    them; ``connect`` and ``disconnect`` only signal that task.
    """

    def __init__(self, config: McpServerConfig, *, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT):
        self.config = config
        self._connect_timeout = connect_timeout
        self._session: ClientSession | None = None
        self._runner: asyncio.Task[None] | None = None
        self._closing: asyncio.Event | None = None
        self.server_info: dict[str, Any] = {}

    @property
    def is_connected(self) -> bool:
        return self._session is not None

    # ---------- session lifecycle ----------

    async def _open(self, stack: AsyncExitStack) -> ClientSession:
        cfg = self.config
        t = cfg.transport

        if t == "stdio":
            params = StdioServerParameters(command=cfg.command, args=cfg.args or [], env=cfg.env or None)
            read, write = await stack.enter_async_context(stdio_client(params))
        elif t == "streamable_http":
            read, write, _closer = await stack.enter_async_context(
                streamablehttp_client(cfg.url, headers=cfg.headers)
            )
        elif t == "sse":
            read, write = await stack.enter_async_context(sse_client(cfg.url, headers=cfg.headers or None))
        else:
            raise ValueError(f"Unknown transport: {t}")

        session = await stack.enter_async_context(ClientSession(read, write))
        init_result = await session.initialize()
        info = getattr(init_result, "serverInfo", None)
        if info is not None and hasattr(info, "model_dump"):
            self.server_info = info.model_dump()
        return session

    async def _run(self, ready: asyncio.Future[None], closing: asyncio.Event) -> None:
        try:
            async with AsyncExitStack() as stack:
                self._session = await self._open(stack)
                ready.set_result(None)
                await closing.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                logger.warning("Session ended with error", server_id=self.config.id, error=str(exc))
        finally:
            self._session = None
            if not ready.done():
                ready.set_exception(MCPConnectionError("Session closed before it was ready", self.config.id))

    async def connect(self) -> None:
        if self.is_connected:
            return

        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        closing = self._closing = asyncio.Event()
        self._runner = asyncio.create_task(self._run(ready, closing), name=f"mcp-session:{self.config.id}")

        try:
            await asyncio.wait_for(asyncio.shield(ready), timeout=self._connect_timeout)
        except asyncio.TimeoutError as exc:
            await self._stop_runner()
            raise MCPTimeoutError(
                f"Connecting to {self.config.identity()} timed out",
                operation="connect",
                timeout=self._connect_timeout,
            ) from exc
        except asyncio.CancelledError:
            await self._stop_runner()
            raise
        except MCPError:
            await self._stop_runner()
            raise
        except Exception as exc:
            await self._stop_runner()
            raise MCPConnectionError(
                f"Failed to connect to {self.config.identity()}: {exc}",
                self.config.id,
                code=error_code(exc),
            ) from exc

        logger.debug("Session opened", server_id=self.config.id, transport=self.config.transport)

    async def _stop_runner(self) -> None:
        runner, self._runner = self._runner, None
        if self._closing is not None:
            self._closing.set()
        if runner is None:
            return
        if self._session is None:
            # Still inside _open; the closing event is not being awaited yet.
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)
            return
        try:
            await asyncio.wait_for(runner, timeout=DEFAULT_DISCONNECT_TIMEOUT)
        except asyncio.TimeoutError:
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)

    async def disconnect(self) -> None:
        await self._stop_runner()
        self._session = None

    # ---------- operations ----------

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise MCPConnectionError(f"Session for {self.config.id} not connected", self.config.id)
        return self._session

    async def list_tools(self) -> list[ToolDefinition]:
        session = self._require_session()
        result = await session.list_tools()
        return [
            ToolDefinition(
                name=tool.name,
                description=tool.description,
                input_schema=dict(tool.inputSchema or {}),
            )
            for tool in result.tools
        ]

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any],
        timeout: float | None = None,
    ) -> ToolCallResult:
        session = self._require_session()
        started = time.perf_counter()
        try:
            res = await asyncio.wait_for(session.call_tool(name, arguments=arguments), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise MCPTimeoutError(
                f"Tool '{name}' on '{self.config.id}' timed out",
                operation=f"call_tool:{name}",
                timeout=timeout,
            ) from exc
        except MCPError:
            raise
        except Exception as exc:
            raise MCPToolError(
                f"Tool '{name}' failed on '{self.config.id}': {exc}",
                tool_name=name,
                server_name=self.config.id,
                code=error_code(exc),
            ) from exc

        duration_ms = (time.perf_counter() - started) * 1000
        return _to_result(res, duration_ms)

    async def ping(self) -> bool:
        if self._session is None:
            return False
        try:
            await asyncio.wait_for(self._session.send_ping(), timeout=self._connect_timeout)
        except Exception as exc:
            logger.debug("Ping failed", server_id=self.config.id, error=str(exc))
            return False
        return True


def _to_result(res: Any, duration_ms: float) -> ToolCallResult:
    is_error = bool(getattr(res, "isError", False))
    structured = getattr(res, "structuredContent", None)
    if structured:
        return ToolCallResult(content=structured, content_type="json", duration_ms=duration_ms, is_error=is_error)

    texts: list[str] = []
    images: list[str] = []
    for item in getattr(res, "content", None) or []:
        if hasattr(item, "text"):
            texts.append(item.text)
        elif getattr(item, "type", None) == "image":
            images.append(f"data:{item.mimeType};base64,{item.data}")

    if images and not texts:
        return ToolCallResult(content=images[0], content_type="image", duration_ms=duration_ms, is_error=is_error)
    return ToolCallResult(content="\n".join(texts), content_type="text", duration_ms=duration_ms, is_error=is_error)
