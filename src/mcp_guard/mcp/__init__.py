from mcp_guard.mcp.events import (
    SERVER_AUTO_DISABLED,
    SERVER_FAILED,
    SERVER_RETRY,
    SERVER_STARTED,
    SERVER_STOPPED,
    EventEmitter,
)
from mcp_guard.mcp.models import (
    ConnectionState,
    McpServerConfig,
    ServerHealthStatus,
    ServerRecord,
    ToolCallResult,
    ToolDefinition,
)
from mcp_guard.mcp.supervisor import ServerSupervisor
from mcp_guard.mcp.transport import MCPSessionTransport, ServerTransport, TransportFactory

__all__ = [
    "SERVER_AUTO_DISABLED",
    "SERVER_FAILED",
    "SERVER_RETRY",
    "SERVER_STARTED",
    "SERVER_STOPPED",
    "ConnectionState",
    "EventEmitter",
    "MCPSessionTransport",
    "McpServerConfig",
    "ServerHealthStatus",
    "ServerRecord",
    "ServerSupervisor",
    "ServerTransport",
    "ToolCallResult",
    "ToolDefinition",
    "TransportFactory",
]
