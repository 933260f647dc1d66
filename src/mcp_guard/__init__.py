import os

from dotenv import find_dotenv, load_dotenv

if not os.environ.get("MCP_GUARD_ENV_LOADED"):
    load_dotenv(find_dotenv(usecwd=True))
    os.environ["MCP_GUARD_ENV_LOADED"] = "1"

from mcp_guard.cache import (
    DocumentToolCache,
    DocumentToolRecord,
    LineRange,
    TextDocument,
    ToolResultCache,
    format_tool_block,
    hash_parameters,
    make_cache_key,
    upsert_tool_block,
)
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
)
from mcp_guard.invoker import ToolInvocation, ToolInvoker
from mcp_guard.logging import configure_logging, get_logger
from mcp_guard.mcp import (
    ConnectionState,
    MCPSessionTransport,
    McpServerConfig,
    ServerHealthStatus,
    ServerRecord,
    ServerSupervisor,
    ServerTransport,
    ToolCallResult,
    ToolDefinition,
)
from mcp_guard.retry import (
    DEFAULT_RETRY_POLICY,
    RetryPolicy,
    RetryState,
    calculate_retry_delay,
    is_transient_error,
    with_retry,
)
from mcp_guard.settings import GuardSettings, load_server_configs

__version__ = "0.1.0"

__all__ = [
    # Retry
    "DEFAULT_RETRY_POLICY",
    "RetryPolicy",
    "RetryState",
    "calculate_retry_delay",
    "is_transient_error",
    "with_retry",
    # Servers
    "ConnectionState",
    "MCPSessionTransport",
    "McpServerConfig",
    "ServerHealthStatus",
    "ServerRecord",
    "ServerSupervisor",
    "ServerTransport",
    "ToolCallResult",
    "ToolDefinition",
    # Caches
    "DocumentToolCache",
    "DocumentToolRecord",
    "LineRange",
    "TextDocument",
    "ToolResultCache",
    "format_tool_block",
    "hash_parameters",
    "make_cache_key",
    "upsert_tool_block",
    # Invoker
    "ToolInvocation",
    "ToolInvoker",
    # Config
    "GuardSettings",
    "load_server_configs",
    # Errors
    "ConfigurationError",
    "MCPConnectionError",
    "MCPError",
    "MCPGuardError",
    "MCPServerError",
    "MCPTimeoutError",
    "MCPToolError",
    "OperationCancelledError",
    "ServerNotAvailableError",
    # Logging
    "configure_logging",
    "get_logger",
]
