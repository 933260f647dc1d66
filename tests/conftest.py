"""
Root conftest.py for mcp-guard tests.

This file provides:
1. Common pytest markers for test categorization
2. A scriptable fake transport so supervisor tests never spawn servers
3. A fast retry policy and a controllable clock
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from mcp_guard.mcp.models import McpServerConfig, ToolCallResult, ToolDefinition
from mcp_guard.retry import RetryPolicy

# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        norm = str(item.fspath).replace("\\", "/")

        if "/retry/" in norm:
            item.add_marker(pytest.mark.retry)
        if "/mcp/" in norm or "invoker" in norm:
            item.add_marker(pytest.mark.mcp)
        if "/cache/" in norm:
            item.add_marker(pytest.mark.cache)
        if "/cli/" in norm:
            item.add_marker(pytest.mark.cli)


def pytest_configure(config):
    """Register custom markers."""
    for name, desc in [
        ("retry", "Backoff and retry tests"),
        ("mcp", "Server supervision and tool invocation tests"),
        ("cache", "Tool result cache tests"),
        ("cli", "Command line tests"),
        ("slow", "Slow-running tests"),
    ]:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def _reset_mcp_guard_logger():
    """Drop handlers installed by configure_logging between tests."""
    yield
    logger = logging.getLogger("mcp_guard")
    for handler in list(logger.handlers):
        if getattr(handler, "_mcp_guard_handler", False):
            logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


# =============================================================================
# TRANSPORT FIXTURES
# =============================================================================


class FakeTransport:
    """In-memory ServerTransport with scriptable failures.

    ``connect_errors`` is consumed one item per connect attempt (``None``
    means succeed); once empty, ``fail_with`` is raised on every attempt if
    set.
    """

    def __init__(
        self,
        config: McpServerConfig | None = None,
        *,
        connect_errors: list[BaseException | None] | None = None,
        fail_with: BaseException | None = None,
    ) -> None:
        self.config = config
        self.connect_errors = list(connect_errors or [])
        self.fail_with = fail_with
        self.connect_delay = 0.0
        self.connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.ping_ok = True
        self.tools = [ToolDefinition(name="echo", description="Echo arguments")]
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.call_delay = 0.0
        self.call_error: BaseException | None = None
        self.is_error = False

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_errors:
            error = self.connect_errors.pop(0)
            if error is not None:
                raise error
        elif self.fail_with is not None:
            raise self.fail_with
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    async def list_tools(self) -> list[ToolDefinition]:
        return list(self.tools)

    async def call_tool(self, name: str, arguments: dict[str, Any], timeout: float | None = None) -> ToolCallResult:
        self.calls.append((name, dict(arguments)))
        if self.call_delay:
            await asyncio.sleep(self.call_delay)
        if self.call_error is not None:
            raise self.call_error
        return ToolCallResult(
            content={"tool": name, "arguments": dict(arguments)},
            content_type="json",
            duration_ms=12.0,
            is_error=self.is_error,
        )

    async def ping(self) -> bool:
        return self.ping_ok and self.connected


@pytest.fixture
def fake_transports() -> dict[str, FakeTransport]:
    """Transports by server id; pre-populate to script a server's behaviour."""
    return {}


@pytest.fixture
def transport_factory(fake_transports):
    def factory(config: McpServerConfig) -> FakeTransport:
        transport = fake_transports.get(config.id)
        if transport is None:
            transport = FakeTransport(config)
            fake_transports[config.id] = transport
        transport.config = config
        return transport

    return factory


@pytest.fixture
def script_transport(fake_transports):
    """Register a FakeTransport for a server id before the supervisor builds one."""

    def script(server_id: str, **kwargs: Any) -> FakeTransport:
        transport = FakeTransport(**kwargs)
        fake_transports[server_id] = transport
        return transport

    return script


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Three attempts with millisecond delays and no jitter."""
    return RetryPolicy(max_attempts=3, initial_delay=1, max_delay=5, backoff_multiplier=2, jitter=False)


@pytest.fixture
def stdio_config() -> dict[str, Any]:
    return {"id": "weather", "name": "Weather Server", "transport": "stdio", "command": "weather-mcp"}


# =============================================================================
# CLOCK FIXTURES
# =============================================================================


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms / 1000.0


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
