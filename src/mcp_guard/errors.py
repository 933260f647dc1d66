"""Error hierarchy for mcp-guard.

All errors raised by the package derive from :class:`MCPGuardError`, which
carries a human message, a ``details`` dict for structured context and an
optional ``hint`` shown to the user.

Hierarchy::

    MCPGuardError
    ├── ConfigurationError
    ├── OperationCancelledError
    └── MCPError
        ├── MCPServerError
        │   ├── MCPConnectionError
        │   └── ServerNotAvailableError
        ├── MCPToolError
        └── MCPTimeoutError (also a TimeoutError)
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Literal

__all__ = [
    "MCPGuardError",
    "ConfigurationError",
    "OperationCancelledError",
    "MCPError",
    "MCPServerError",
    "MCPConnectionError",
    "ServerNotAvailableError",
    "MCPToolError",
    "MCPTimeoutError",
    "log_exception",
]


class MCPGuardError(Exception):
    """Base exception for all mcp-guard errors.

    Args:
        message: Human readable description.
        details: Structured context (server id, tool name, ...).
        hint: Optional suggestion appended to ``str(error)``.
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        hint: str | None = None,
    ) -> None:
        self.message = message
        self.details: dict[str, Any] = dict(details or {})
        self.hint = hint
        super().__init__(message)

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message}\n  Hint: {self.hint}"
        return self.message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class ConfigurationError(MCPGuardError):
    """Invalid retry policy, settings or server configuration."""


class OperationCancelledError(MCPGuardError):
    """An operation was cancelled through its cancellation event."""

    def __init__(self, operation: str = "operation", *, details: dict[str, Any] | None = None):
        super().__init__(f"{operation} was cancelled", details={"operation": operation, **(details or {})})
        self.operation = operation


# =============================================================================
# Server errors
# =============================================================================


class MCPError(MCPGuardError):
    """Base exception for tool-server errors.

    ``code`` mirrors the errno-style codes used by the transient error
    classifier (e.g. ``"ECONNREFUSED"``).
    """

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, details=details, hint=hint)
        self.code = code
        if code is not None:
            self.details.setdefault("code", code)


class MCPServerError(MCPError):
    """Error related to tool-server operations (connection, lifecycle)."""

    def __init__(
        self,
        message: str,
        server_name: str | None = None,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details, hint=hint)
        self.server_name = server_name
        if server_name is not None:
            self.details.setdefault("server_name", server_name)


class MCPConnectionError(MCPServerError):
    """Error establishing or maintaining a connection to a tool server."""


class ServerNotAvailableError(MCPServerError):
    """The server is unknown, disabled, stopped or has no live connection."""

    def __init__(self, server_name: str, reason: str) -> None:
        super().__init__(
            f"Server '{server_name}' is not available: {reason}",
            server_name,
            code="SERVER_NOT_AVAILABLE",
            details={"reason": reason},
        )
        self.reason = reason


class MCPToolError(MCPError):
    """Error raised by a tool listing or tool call."""

    def __init__(
        self,
        message: str,
        tool_name: str | None = None,
        server_name: str | None = None,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.tool_name = tool_name
        self.server_name = server_name
        if tool_name is not None:
            self.details.setdefault("tool_name", tool_name)
        if server_name is not None:
            self.details.setdefault("server_name", server_name)


class MCPTimeoutError(MCPError, TimeoutError):
    """Timeout during a tool-server operation."""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        timeout: float | None = None,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code="ETIMEDOUT", details=details)
        self.operation = operation
        self.timeout = timeout
        if operation is not None:
            self.details.setdefault("operation", operation)
        if timeout is not None:
            self.details.setdefault("timeout", timeout)


# =============================================================================
# Helpers
# =============================================================================


def log_exception(
    logger: logging.Logger,
    message: str,
    exc: BaseException,
    *,
    level: Literal["debug", "info", "warning", "error"] = "warning",
    include_traceback: bool = True,
) -> None:
    """Log an exception with its type name and, optionally, its traceback."""
    text = f"{message}: {type(exc).__name__}: {exc}"
    if include_traceback:
        tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        text = f"{text}\n{tb}"
    getattr(logger, level)(text)
