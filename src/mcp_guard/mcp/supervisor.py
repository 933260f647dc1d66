"""Connection supervisor for tool servers.

Keeps one :class:`ServerRecord` per configured server and drives it through
``disconnected -> connecting -> connected`` with retries from
:mod:`mcp_guard.retry`. Whole start calls that fail count towards the
server's ``failure_count``; reaching ``failure_threshold`` auto-disables the
server until :meth:`ServerSupervisor.reenable_server` is called.

Example:
    >>> supervisor = ServerSupervisor(failure_threshold=3)
    >>> supervisor.on("server-auto-disabled", lambda e: print(e["server_id"]))
    >>> await supervisor.initialize([{"id": "weather", "command": "weather-mcp"}])
    >>> result = await supervisor.call_tool("weather", "getWeather", {"location": "Paris"})
"""

from __future__ import annotations

import asyncio
import difflib
import time
from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from mcp_guard.errors import (
    ConfigurationError,
    MCPConnectionError,
    MCPError,
    MCPGuardError,
    MCPTimeoutError,
    MCPToolError,
    OperationCancelledError,
    ServerNotAvailableError,
)
from mcp_guard.logging import get_logger
from mcp_guard.mcp.events import (
    SERVER_AUTO_DISABLED,
    SERVER_FAILED,
    SERVER_RETRY,
    SERVER_STARTED,
    SERVER_STOPPED,
    EventEmitter,
    EventHandler,
)
from mcp_guard.mcp.models import (
    ConnectionState,
    McpServerConfig,
    ServerHealthStatus,
    ServerRecord,
    ToolCallResult,
    ToolDefinition,
)
from mcp_guard.mcp.transport import MCPSessionTransport, ServerTransport, TransportFactory
from mcp_guard.retry import (
    DEFAULT_RETRY_POLICY,
    RetryPolicy,
    RetryState,
    create_initial_retry_state,
    run_cancellable,
    with_retry,
)
from mcp_guard.retry.backoff import error_code

if TYPE_CHECKING:
    from mcp_guard.settings import GuardSettings

logger = get_logger("mcp.supervisor")


# =============================================================================
# Constants
# =============================================================================

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_HEALTH_CHECK_INTERVAL = 30.0  # seconds


class ServerSupervisor:
    """Supervises connections to a set of tool servers.

    Args:
        failure_threshold: Failed whole start calls before a server is
            auto-disabled.
        retry_policy: Backoff policy for start and reconnect attempts.
        transport_factory: Builds a :class:`ServerTransport` for a config.
            Defaults to :class:`MCPSessionTransport`.
        health_check_interval: Seconds between background health checks.
        auto_reconnect: Schedule a reconnect when a health check fails.
        tool_timeout: Default timeout in seconds for tool calls.
        clock: Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        retry_policy: RetryPolicy | None = None,
        transport_factory: TransportFactory | None = None,
        health_check_interval: float = DEFAULT_HEALTH_CHECK_INTERVAL,
        auto_reconnect: bool = True,
        tool_timeout: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._failure_threshold = _validate_threshold(failure_threshold)
        self._retry_policy = retry_policy or DEFAULT_RETRY_POLICY
        self._transport_factory: TransportFactory = transport_factory or MCPSessionTransport
        self._health_check_interval = health_check_interval
        self._auto_reconnect = auto_reconnect
        self._tool_timeout = tool_timeout
        self._clock = clock

        self._records: dict[str, ServerRecord] = {}
        self._transports: dict[str, ServerTransport] = {}
        self._connecting: dict[str, asyncio.Task[None]] = {}
        self._reconnect_tasks: dict[str, asyncio.Task[None]] = {}
        self._events = EventEmitter()
        self._closed = False

        self._health_monitor_task: asyncio.Task[None] | None = None
        self._health_monitor_running = False

    @classmethod
    def from_settings(
        cls,
        settings: GuardSettings,
        *,
        transport_factory: TransportFactory | None = None,
    ) -> ServerSupervisor:
        return cls(
            failure_threshold=settings.failure_threshold,
            retry_policy=settings.retry_policy(),
            transport_factory=transport_factory,
            health_check_interval=settings.health_check_interval,
            auto_reconnect=settings.auto_reconnect,
            tool_timeout=settings.tool_timeout,
        )

    @property
    def failure_threshold(self) -> int:
        return self._failure_threshold

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    @property
    def is_closed(self) -> bool:
        return self._closed

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def on(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to a lifecycle event; returns an unsubscribe function."""
        return self._events.on(event, handler)

    def off(self, event: str, handler: EventHandler) -> bool:
        return self._events.off(event, handler)

    def _emit(self, event: str, **payload: Any) -> None:
        self._events.emit(event, payload)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    async def initialize(
        self,
        configs: Iterable[McpServerConfig | Mapping[str, Any]],
        *,
        failure_threshold: int | None = None,
        retry_policy: RetryPolicy | None = None,
        connect: bool = True,
    ) -> None:
        """Register servers and start every enabled one concurrently.

        Start failures are reported through events and logs only; inspect
        :meth:`list_servers` or :meth:`get_health_status` afterwards.

        Raises:
            ConfigurationError: A config is invalid or an id is duplicated.
        """
        self._ensure_open()
        if failure_threshold is not None:
            self._failure_threshold = _validate_threshold(failure_threshold)
        if retry_policy is not None:
            self._retry_policy = retry_policy

        new_records: list[ServerRecord] = []
        for raw in configs:
            config = _coerce_config(raw)
            if config.id in self._records or any(r.id == config.id for r in new_records):
                raise ConfigurationError(
                    f"Duplicate server id '{config.id}'",
                    details={"server_id": config.id},
                )
            new_records.append(ServerRecord.from_config(config))

        for record in new_records:
            self._records[record.id] = record

        logger.info(f"Registered {len(new_records)} server(s)", server_ids=[r.id for r in new_records])

        if not connect:
            return

        targets = [r.id for r in new_records if r.enabled and not r.auto_disabled]
        results = await asyncio.gather(*(self.start_server(sid) for sid in targets), return_exceptions=True)
        for sid, outcome in zip(targets, results):
            if isinstance(outcome, BaseException):
                logger.debug(f"Initial start of '{sid}' did not succeed: {outcome}")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start_server(self, server_id: str, *, cancel_event: asyncio.Event | None = None) -> None:
        """Connect a server, retrying transient failures.

        Concurrent calls for the same server share one attempt.

        Raises:
            ServerNotAvailableError: Unknown, disabled or auto-disabled server.
            OperationCancelledError: ``cancel_event`` was set, or the server
                was stopped while starting.
            Exception: The last connection error once retries are exhausted.
        """
        self._ensure_open()
        record = self._get_record(server_id)
        if record.auto_disabled:
            raise ServerNotAvailableError(server_id, "auto-disabled")
        if not record.enabled:
            raise ServerNotAvailableError(server_id, "disabled")

        transport = self._transports.get(server_id)
        if record.connection_state == ConnectionState.CONNECTED and transport is not None and transport.is_connected:
            return

        task = self._connecting.get(server_id)
        if task is None or task.done():
            await self._cancel_task(self._reconnect_tasks.pop(server_id, None))
            task = asyncio.ensure_future(self._connect(record, reconnect=False, cancel_event=cancel_event))
            self._track(self._connecting, server_id, task)
            waiter: asyncio.Future[None] = task
        else:
            waiter = asyncio.shield(task)

        try:
            await waiter
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            raise OperationCancelledError(f"start of server '{server_id}'") from None

    async def stop_server(self, server_id: str) -> None:
        self._ensure_open()
        record = self._get_record(server_id)
        await self._stop(record)

    async def _stop(self, record: ServerRecord) -> None:
        was_stopped = record.connection_state == ConnectionState.STOPPED
        record.connection_state = ConnectionState.STOPPED

        await self._cancel_task(self._reconnect_tasks.pop(record.id, None))
        await self._cancel_task(self._connecting.pop(record.id, None))

        transport = self._transports.get(record.id)
        if transport is not None:
            await self._safe_disconnect(record.id, transport)

        record.connection_state = ConnectionState.STOPPED
        record.retry_state = create_initial_retry_state()
        record.health_retry_state = create_initial_retry_state()

        if not was_stopped:
            logger.info(f"Stopped server '{record.id}'")
            self._emit(SERVER_STOPPED, server_id=record.id)

    async def reenable_server(self, server_id: str, *, start: bool = True) -> None:
        """Clear failure tracking for a server and optionally start it again."""
        self._ensure_open()
        record = self._get_record(server_id)

        record.failure_count = 0
        record.auto_disabled = False
        record.enabled = True
        record.retry_state = create_initial_retry_state()
        record.health_retry_state = create_initial_retry_state()
        record.last_error = None
        if record.connection_state in (ConnectionState.FAILED, ConnectionState.ERROR, ConnectionState.STOPPED):
            record.connection_state = ConnectionState.DISCONNECTED

        logger.info(f"Re-enabled server '{server_id}'")
        if start:
            await self.start_server(server_id)

    async def shutdown(self) -> None:
        """Stop health checks and every server. Further operations raise."""
        if self._closed:
            return
        self._closed = True

        await self.stop_health_monitor()
        for record in list(self._records.values()):
            await self._stop(record)
        logger.info("Supervisor shut down")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def list_servers(self) -> list[ServerRecord]:
        return list(self._records.values())

    def get_health_status(self, server_id: str) -> ServerHealthStatus | None:
        record = self._records.get(server_id)
        if record is None:
            return None
        return ServerHealthStatus.from_record(record)

    def pending_reconnect(self, server_id: str) -> asyncio.Task[None] | None:
        """The reconnect task scheduled for ``server_id``, if still running."""
        task = self._reconnect_tasks.get(server_id)
        if task is None or task.done():
            return None
        return task

    # -------------------------------------------------------------------------
    # Tool operations
    # -------------------------------------------------------------------------

    async def list_tools(self, server_id: str) -> list[ToolDefinition]:
        transport = self._require_available(server_id)
        try:
            return await transport.list_tools()
        except MCPGuardError:
            raise
        except Exception as exc:
            raise MCPToolError(
                f"Listing tools on '{server_id}' failed: {exc}",
                server_name=server_id,
                code=error_code(exc),
            ) from exc

    async def call_tool(
        self,
        server_id: str,
        tool_name: str,
        arguments: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ToolCallResult:
        """Execute a tool on a connected server.

        Never reconnects: a server that is not connected fails fast.

        Raises:
            ServerNotAvailableError: The server cannot take calls right now.
            MCPTimeoutError: The call exceeded ``timeout``.
            MCPToolError: The transport or tool failed.
            OperationCancelledError: ``cancel_event`` was set.
        """
        transport = self._require_available(server_id)
        timeout = self._tool_timeout if timeout is None else timeout

        try:
            return await run_cancellable(
                transport.call_tool(tool_name, dict(arguments or {}), timeout=timeout),
                cancel_event,
                operation=f"tool call '{tool_name}'",
            )
        except MCPGuardError:
            raise
        except TimeoutError as exc:
            raise MCPTimeoutError(
                f"Tool '{tool_name}' on '{server_id}' timed out",
                operation=f"call_tool:{tool_name}",
                timeout=timeout,
            ) from exc
        except Exception as exc:
            raise MCPToolError(
                f"Tool '{tool_name}' failed on '{server_id}': {exc}",
                tool_name=tool_name,
                server_name=server_id,
                code=error_code(exc),
            ) from exc

    # -------------------------------------------------------------------------
    # Health monitoring
    # -------------------------------------------------------------------------

    async def check_health(self, server_id: str) -> ServerHealthStatus:
        """Probe one server and schedule a reconnect when it is unhealthy."""
        self._ensure_open()
        record = self._get_record(server_id)
        record.last_checked_at = self._clock()
        usable = record.enabled and not record.auto_disabled

        if record.connection_state == ConnectionState.CONNECTED:
            transport = self._transports.get(server_id)
            healthy = transport is not None and transport.is_connected and await self._probe(server_id, transport)
            if not healthy:
                error = MCPConnectionError(f"Health check failed for '{server_id}'", server_id)
                record.connection_state = ConnectionState.ERROR
                record.last_error = error
                logger.error(f"Server '{server_id}' failed health check")
                self._emit(SERVER_FAILED, server_id=server_id, error=error)
                self._schedule_reconnect(record)
        elif record.connection_state == ConnectionState.FAILED and usable:
            record.connection_state = ConnectionState.ERROR
            self._schedule_reconnect(record)
        elif record.connection_state == ConnectionState.ERROR and usable:
            self._schedule_reconnect(record)

        return ServerHealthStatus.from_record(record)

    async def check_all_health(self) -> dict[str, ServerHealthStatus]:
        ids = list(self._records)
        statuses = await asyncio.gather(*(self.check_health(sid) for sid in ids))
        return dict(zip(ids, statuses))

    def start_health_monitor(self) -> None:
        """Start periodic health checks in a background task."""
        self._ensure_open()
        if self._health_monitor_running:
            return

        self._health_monitor_running = True
        self._health_monitor_task = asyncio.create_task(self._health_monitor_loop())
        logger.info(f"Started health monitor (interval={self._health_check_interval}s)")

    async def stop_health_monitor(self) -> None:
        if not self._health_monitor_running:
            return

        self._health_monitor_running = False
        if self._health_monitor_task is not None:
            self._health_monitor_task.cancel()
            try:
                await self._health_monitor_task
            except asyncio.CancelledError:
                pass
            self._health_monitor_task = None
        logger.info("Stopped health monitor")

    async def _health_monitor_loop(self) -> None:
        while self._health_monitor_running:
            try:
                await asyncio.sleep(self._health_check_interval)
                if self._health_monitor_running:
                    await self.check_all_health()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Health monitor error: {e}")

    @property
    def is_health_monitor_running(self) -> bool:
        return self._health_monitor_running

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise MCPError("Supervisor has been shut down", code="SHUTDOWN")

    def _get_record(self, server_id: str) -> ServerRecord:
        record = self._records.get(server_id)
        if record is None:
            error = ServerNotAvailableError(server_id, "unknown server")
            matches = difflib.get_close_matches(server_id, list(self._records), n=1)
            if matches:
                error.hint = f"Did you mean '{matches[0]}'?"
            raise error
        return record

    def _require_available(self, server_id: str) -> ServerTransport:
        self._ensure_open()
        record = self._get_record(server_id)
        if record.auto_disabled:
            raise ServerNotAvailableError(server_id, f"auto-disabled after {record.failure_count} failures")
        if not record.enabled:
            raise ServerNotAvailableError(server_id, "disabled")
        if record.connection_state == ConnectionState.STOPPED:
            raise ServerNotAvailableError(server_id, "stopped")

        transport = self._transports.get(server_id)
        if record.connection_state != ConnectionState.CONNECTED or transport is None or not transport.is_connected:
            raise ServerNotAvailableError(server_id, f"not connected (state: {record.connection_state.value})")
        return transport

    def _transport_for(self, record: ServerRecord) -> ServerTransport:
        transport = self._transports.get(record.id)
        if transport is None:
            transport = self._transport_factory(record.config)
            self._transports[record.id] = transport
        return transport

    async def _connect(
        self,
        record: ServerRecord,
        *,
        reconnect: bool,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        state_attr = "health_retry_state" if reconnect else "retry_state"
        setattr(record, state_attr, create_initial_retry_state())
        record.connection_state = ConnectionState.CONNECTING
        transport = self._transport_for(record)

        def on_retry(attempt: int, error: BaseException, delay_ms: float) -> None:
            previous: RetryState = getattr(record, state_attr)
            setattr(
                record,
                state_attr,
                RetryState(
                    is_retrying=True,
                    current_attempt=attempt,
                    next_retry_at=self._clock() + delay_ms / 1000.0,
                    backoff_intervals=[*previous.backoff_intervals, delay_ms],
                    last_error=error,
                ),
            )
            record.connection_state = ConnectionState.RETRYING
            record.last_error = error
            logger.warning(
                f"Connection to '{record.id}' failed (attempt {attempt}/{self._retry_policy.max_attempts}), "
                f"retrying in {delay_ms:.0f}ms: {error}"
            )
            self._emit(SERVER_RETRY, server_id=record.id, attempt=attempt, next_retry_in_ms=delay_ms, error=error)

        try:
            await with_retry(transport.connect, self._retry_policy, on_retry, cancel_event=cancel_event)
        except (OperationCancelledError, asyncio.CancelledError):
            if record.connection_state != ConnectionState.STOPPED:
                record.connection_state = ConnectionState.DISCONNECTED
            setattr(record, state_attr, create_initial_retry_state())
            logger.info(f"Connection attempt for '{record.id}' was cancelled")
            raise
        except Exception as exc:
            previous = getattr(record, state_attr)
            setattr(
                record,
                state_attr,
                RetryState(
                    is_retrying=False,
                    current_attempt=previous.current_attempt + 1,
                    next_retry_at=None,
                    backoff_intervals=list(previous.backoff_intervals),
                    last_error=exc,
                ),
            )
            record.connection_state = ConnectionState.FAILED
            record.last_error = exc
            record.failure_count += 1
            logger.error(
                f"Server '{record.id}' failed to {'reconnect' if reconnect else 'start'}: {exc}",
                failure_count=record.failure_count,
            )
            self._emit(SERVER_FAILED, server_id=record.id, error=exc)
            self._check_auto_disable(record)
            raise

        if record.connection_state == ConnectionState.STOPPED:
            await self._safe_disconnect(record.id, transport)
            return

        record.connection_state = ConnectionState.CONNECTED
        record.failure_count = 0
        record.last_error = None
        record.last_connected_at = self._clock()
        setattr(record, state_attr, create_initial_retry_state())
        logger.info(f"Server '{record.id}' connected")
        self._emit(SERVER_STARTED, server_id=record.id)

    def _check_auto_disable(self, record: ServerRecord) -> None:
        if record.failure_count >= self._failure_threshold and record.enabled and not record.auto_disabled:
            record.auto_disabled = True
            record.enabled = False
            logger.warning(
                f"Server '{record.id}' auto-disabled after {record.failure_count} consecutive failures",
                failure_count=record.failure_count,
            )
            self._emit(SERVER_AUTO_DISABLED, server_id=record.id, failure_count=record.failure_count)

    def _schedule_reconnect(self, record: ServerRecord) -> None:
        if not self._auto_reconnect or self.pending_reconnect(record.id) is not None:
            return
        task = asyncio.create_task(self._reconnect(record), name=f"mcp-guard-reconnect:{record.id}")
        self._track(self._reconnect_tasks, record.id, task)

    async def _reconnect(self, record: ServerRecord) -> None:
        transport = self._transports.get(record.id)
        if transport is not None:
            await self._safe_disconnect(record.id, transport)
        try:
            await self._connect(record, reconnect=True)
        except Exception:
            # Already logged and emitted by _connect.
            return

    async def _probe(self, server_id: str, transport: ServerTransport) -> bool:
        try:
            return bool(await transport.ping())
        except Exception as exc:
            logger.debug(f"Ping to '{server_id}' raised: {exc}")
            return False

    async def _safe_disconnect(self, server_id: str, transport: ServerTransport) -> None:
        try:
            await transport.disconnect()
        except Exception as exc:
            logger.warning(f"Error disconnecting '{server_id}': {exc}")

    @staticmethod
    def _track(tasks: dict[str, asyncio.Task[None]], server_id: str, task: asyncio.Task[None]) -> None:
        tasks[server_id] = task

        def _forget(done: asyncio.Task[None]) -> None:
            if tasks.get(server_id) is done:
                del tasks[server_id]

        task.add_done_callback(_forget)

    @staticmethod
    async def _cancel_task(task: asyncio.Task[None] | None) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


def _validate_threshold(value: int) -> int:
    if value < 1:
        raise ConfigurationError(
            f"failure_threshold must be >= 1, got {value}",
            details={"failure_threshold": value},
        )
    return value


def _coerce_config(raw: McpServerConfig | Mapping[str, Any]) -> McpServerConfig:
    if isinstance(raw, McpServerConfig):
        return raw
    try:
        return McpServerConfig.model_validate(dict(raw))
    except ValidationError as exc:
        raise ConfigurationError(
            f"Invalid server config: {exc.errors(include_url=False)[0]['msg']}",
            details={"config": dict(raw)},
        ) from exc
