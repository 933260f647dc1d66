from __future__ import annotations

import inspect
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from mcp_guard.logging import get_logger

__all__ = [
    "SERVER_AUTO_DISABLED",
    "SERVER_EVENTS",
    "SERVER_FAILED",
    "SERVER_RETRY",
    "SERVER_STARTED",
    "SERVER_STOPPED",
    "EventEmitter",
    "EventHandler",
]

logger = get_logger("mcp.events")

SERVER_STARTED = "server-started"
SERVER_STOPPED = "server-stopped"
SERVER_FAILED = "server-failed"
SERVER_AUTO_DISABLED = "server-auto-disabled"
SERVER_RETRY = "server-retry"

SERVER_EVENTS = frozenset({SERVER_STARTED, SERVER_STOPPED, SERVER_FAILED, SERVER_AUTO_DISABLED, SERVER_RETRY})

EventHandler = Callable[[dict[str, Any]], Any]


class EventEmitter:
    """Synchronous fan-out of supervisor lifecycle events.

    Handlers receive a payload dict and run in registration order. A handler
    that raises is logged and skipped so one listener cannot break delivery
    to the others or the supervisor itself. Coroutine handlers are rejected
    at registration.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def on(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` and return a function that unregisters it."""
        if event not in SERVER_EVENTS:
            raise ValueError(f"Unknown event '{event}'. Known events: {sorted(SERVER_EVENTS)}")
        if inspect.iscoroutinefunction(handler):
            raise TypeError("Event handlers must be synchronous callables")
        self._handlers[event].append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: EventHandler) -> bool:
        handlers = self._handlers.get(event)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(payload)
            except Exception as exc:
                logger.exception(
                    f"Event handler for '{event}' raised",
                    event_name=event,
                    error=str(exc),
                )

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))
