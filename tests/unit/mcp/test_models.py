"""Tests for server config and state models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from mcp_guard.mcp.models import (
    ConnectionState,
    McpServerConfig,
    ServerHealthStatus,
    ServerRecord,
    ToolCallResult,
)
from mcp_guard.retry import RetryState


class TestMcpServerConfig:
    def test_name_defaults_to_id(self):
        config = McpServerConfig(id="weather", command="weather-mcp")
        assert config.name == "weather"
        assert config.transport == "stdio"

    def test_stdio_requires_command(self):
        with pytest.raises(ValidationError, match="stdio requires 'command'"):
            McpServerConfig(id="weather")

    @pytest.mark.parametrize("transport", ["streamable_http", "sse"])
    def test_http_requires_url(self, transport):
        with pytest.raises(ValidationError, match="requires 'url'"):
            McpServerConfig(id="remote", transport=transport)

    def test_blank_id_rejected(self):
        with pytest.raises(ValidationError):
            McpServerConfig(id="  ", command="x")

    def test_auto_disabled_forces_disabled(self):
        config = McpServerConfig(id="weather", command="weather-mcp", auto_disabled=True)
        assert config.enabled is False

    def test_identity(self):
        stdio = McpServerConfig(id="a", command="npx", args=["-y", "weather"])
        http = McpServerConfig(id="b", transport="streamable_http", url="http://localhost:8000/mcp")

        assert stdio.identity() == "stdio: npx -y weather"
        assert http.identity() == "streamable_http: http://localhost:8000/mcp"


class TestServerRecord:
    def test_from_config(self):
        config = McpServerConfig(id="weather", name="Weather", command="weather-mcp", failure_count=2)
        record = ServerRecord.from_config(config)

        assert record.name == "Weather"
        assert record.failure_count == 2
        assert record.connection_state == ConnectionState.DISCONNECTED
        assert not record.is_available

    def test_is_available(self):
        record = ServerRecord.from_config(McpServerConfig(id="weather", command="weather-mcp"))
        record.connection_state = ConnectionState.CONNECTED
        assert record.is_available

        record.auto_disabled = True
        assert not record.is_available

    def test_to_dict(self):
        record = ServerRecord.from_config(McpServerConfig(id="weather", command="weather-mcp"))
        record.last_error = ValueError("bad")

        data = record.to_dict()

        assert data["connection_state"] == "disconnected"
        assert data["transport"] == "stdio"
        assert data["last_error"] == "bad"


class TestServerHealthStatus:
    def test_snapshot_is_independent_of_record(self):
        record = ServerRecord.from_config(McpServerConfig(id="weather", command="weather-mcp"))
        record.retry_state = RetryState(is_retrying=True, current_attempt=1, backoff_intervals=[1000.0])

        status = ServerHealthStatus.from_record(record)
        record.retry_state.backoff_intervals.append(2000.0)
        record.connection_state = ConnectionState.CONNECTED

        assert status.retry_state.backoff_intervals == [1000.0]
        assert status.connection_state == ConnectionState.DISCONNECTED
        assert not status.is_healthy

    def test_to_dict(self):
        record = ServerRecord.from_config(McpServerConfig(id="weather", command="weather-mcp"))
        record.connection_state = ConnectionState.CONNECTED

        data = ServerHealthStatus.from_record(record).to_dict()

        assert data["server_id"] == "weather"
        assert data["connection_state"] == "connected"
        assert data["retry_state"]["current_attempt"] == 0


class TestToolCallResult:
    def test_text_passthrough(self):
        assert ToolCallResult(content="Sunny").text() == "Sunny"

    def test_json_rendered_indented(self):
        result = ToolCallResult(content={"temperature": 18}, content_type="json")
        assert result.text() == '{\n  "temperature": 18\n}'
