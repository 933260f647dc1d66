"""Tests for the mcp-guard error hierarchy."""

from __future__ import annotations

import logging

import pytest

from mcp_guard.errors import (
    ConfigurationError,
    MCPConnectionError,
    MCPError,
    MCPGuardError,
    MCPServerError,
    MCPTimeoutError,
    MCPToolError,
    OperationCancelledError,
    ServerNotAvailableError,
    log_exception,
)

# =============================================================================
# Base error
# =============================================================================


class TestMCPGuardError:
    def test_message_and_details(self):
        err = MCPGuardError("Something broke", details={"server_id": "weather"})
        assert str(err) == "Something broke"
        assert err.details == {"server_id": "weather"}
        assert err.hint is None

    def test_hint_appended(self):
        err = MCPGuardError("Bad config", hint="Check servers.yaml")
        assert str(err) == "Bad config\n  Hint: Check servers.yaml"

    def test_repr(self):
        assert repr(ConfigurationError("bad")) == "ConfigurationError('bad')"

    def test_details_copied(self):
        details = {"a": 1}
        err = MCPGuardError("x", details=details)
        err.details["b"] = 2
        assert details == {"a": 1}


class TestHierarchy:
    @pytest.mark.parametrize(
        "error",
        [
            ConfigurationError("x"),
            OperationCancelledError("connect"),
            MCPConnectionError("x", "weather"),
            ServerNotAvailableError("weather", "disabled"),
            MCPToolError("x", "getWeather"),
            MCPTimeoutError("x"),
        ],
    )
    def test_all_derive_from_base(self, error):
        assert isinstance(error, MCPGuardError)

    def test_server_errors(self):
        assert issubclass(MCPConnectionError, MCPServerError)
        assert issubclass(ServerNotAvailableError, MCPServerError)
        assert issubclass(MCPServerError, MCPError)

    def test_timeout_is_builtin_timeout(self):
        err = MCPTimeoutError("slow", operation="connect", timeout=2.5)
        assert isinstance(err, TimeoutError)
        assert err.code == "ETIMEDOUT"
        assert err.details == {"code": "ETIMEDOUT", "operation": "connect", "timeout": 2.5}


# =============================================================================
# Specific errors
# =============================================================================


class TestSpecificErrors:
    def test_cancelled(self):
        err = OperationCancelledError("start of server 'weather'")
        assert str(err) == "start of server 'weather' was cancelled"
        assert err.operation == "start of server 'weather'"

    def test_server_not_available(self):
        err = ServerNotAvailableError("weather", "auto-disabled after 3 failures")
        assert str(err) == "Server 'weather' is not available: auto-disabled after 3 failures"
        assert err.reason == "auto-disabled after 3 failures"
        assert err.server_name == "weather"
        assert err.code == "SERVER_NOT_AVAILABLE"

    def test_connection_error_code(self):
        err = MCPConnectionError("refused", "weather", code="ECONNREFUSED")
        assert err.code == "ECONNREFUSED"
        assert err.details == {"code": "ECONNREFUSED", "server_name": "weather"}

    def test_tool_error_details(self):
        err = MCPToolError("failed", tool_name="getWeather", server_name="weather")
        assert err.details == {"tool_name": "getWeather", "server_name": "weather"}


# =============================================================================
# log_exception
# =============================================================================


class TestLogException:
    def test_logs_type_and_traceback(self, caplog):
        logger = logging.getLogger("mcp_guard.test")
        try:
            raise ValueError("bad value")
        except ValueError as exc:
            with caplog.at_level(logging.WARNING, logger="mcp_guard.test"):
                log_exception(logger, "Operation failed", exc)

        assert "Operation failed: ValueError: bad value" in caplog.text
        assert "Traceback" in caplog.text

    def test_level_and_no_traceback(self, caplog):
        logger = logging.getLogger("mcp_guard.test")
        with caplog.at_level(logging.DEBUG, logger="mcp_guard.test"):
            log_exception(logger, "Ignored", RuntimeError("x"), level="debug", include_traceback=False)

        (record,) = caplog.records
        assert record.levelno == logging.DEBUG
        assert record.getMessage() == "Ignored: RuntimeError: x"
