from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from mcp_guard.retry.policy import RetryState


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RETRYING = "retrying"
    FAILED = "failed"
    STOPPED = "stopped"
    ERROR = "error"


ContentType = Literal["text", "json", "markdown", "image"]


class McpServerConfig(BaseModel):
    id: str
    name: Optional[str] = None
    transport: Literal["stdio", "streamable_http", "sse"] = "stdio"

    # http-like
    url: Optional[str] = None
    headers: Optional[Dict[str, str]] = None

    # stdio
    command: Optional[str] = None
    args: Optional[List[str]] = None
    env: Optional[Dict[str, str]] = None

    # persisted server state
    enabled: bool = True
    auto_disabled: bool = False
    failure_count: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _validate(self):
        if not self.id.strip():
            raise ValueError("server 'id' must not be empty")
        if self.transport in ("streamable_http", "sse") and not self.url:
            raise ValueError(f"{self.transport} requires 'url'")
        if self.transport == "stdio" and not self.command:
            raise ValueError("stdio requires 'command'")
        if self.name is None:
            self.name = self.id
        if self.auto_disabled:
            self.enabled = False
        return self

    def identity(self) -> str:
        """Human-friendly identity for error messages."""
        if self.transport == "stdio":
            return f"stdio: {self.command or '<missing command>'} {' '.join(self.args or [])}".rstrip()
        return f"{self.transport}: {self.url or '<missing url>'}"


class ToolDefinition(BaseModel):
    name: str
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class ToolCallResult:
    """Outcome of one tool invocation.

    Attributes:
        content: Text, structured JSON or image reference returned by the tool.
        content_type: How ``content`` should be rendered.
        duration_ms: Wall time of the call.
        is_error: The server reported a tool-level error.
        cached: Served from a cache instead of the server.
        cache_age_ms: Age of the cached value when it was served.
    """

    content: Any
    content_type: ContentType = "text"
    duration_ms: float = 0.0
    is_error: bool = False
    cached: bool = False
    cache_age_ms: float | None = None

    def text(self) -> str:
        """Render content as text for embedding in a document."""
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content, indent=2, ensure_ascii=False, default=str)


@dataclass
class ServerRecord:
    """Supervisor-owned state for one configured server.

    ``enabled`` is the user's intent, ``auto_disabled`` the system override;
    ``failure_count`` counts whole failed start calls and is separate from
    the per-attempt counter in ``retry_state``.
    """

    id: str
    name: str
    config: McpServerConfig
    enabled: bool = True
    auto_disabled: bool = False
    failure_count: int = 0
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    retry_state: RetryState = field(default_factory=RetryState)
    health_retry_state: RetryState = field(default_factory=RetryState)
    last_connected_at: float | None = None
    last_checked_at: float | None = None
    last_error: BaseException | None = None

    @classmethod
    def from_config(cls, config: McpServerConfig) -> ServerRecord:
        return cls(
            id=config.id,
            name=config.name or config.id,
            config=config,
            enabled=config.enabled and not config.auto_disabled,
            auto_disabled=config.auto_disabled,
            failure_count=config.failure_count,
        )

    @property
    def is_available(self) -> bool:
        return self.enabled and not self.auto_disabled and self.connection_state == ConnectionState.CONNECTED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "transport": self.config.transport,
            "enabled": self.enabled,
            "auto_disabled": self.auto_disabled,
            "failure_count": self.failure_count,
            "connection_state": self.connection_state.value,
            "last_connected_at": self.last_connected_at,
            "last_error": str(self.last_error) if self.last_error else None,
        }


@dataclass
class ServerHealthStatus:
    """Point-in-time snapshot of a server's health."""

    server_id: str
    connection_state: ConnectionState
    retry_state: RetryState
    health_retry_state: RetryState
    failure_count: int
    enabled: bool
    auto_disabled: bool
    last_connected_at: float | None = None
    last_checked_at: float | None = None
    last_error: str | None = None
    captured_at: float = field(default_factory=time.time)

    @property
    def is_healthy(self) -> bool:
        return self.connection_state == ConnectionState.CONNECTED and not self.auto_disabled

    @classmethod
    def from_record(cls, record: ServerRecord) -> ServerHealthStatus:
        return cls(
            server_id=record.id,
            connection_state=record.connection_state,
            retry_state=record.retry_state.copy(),
            health_retry_state=record.health_retry_state.copy(),
            failure_count=record.failure_count,
            enabled=record.enabled,
            auto_disabled=record.auto_disabled,
            last_connected_at=record.last_connected_at,
            last_checked_at=record.last_checked_at,
            last_error=str(record.last_error) if record.last_error else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "server_id": self.server_id,
            "connection_state": self.connection_state.value,
            "retry_state": self.retry_state.to_dict(),
            "health_retry_state": self.health_retry_state.to_dict(),
            "failure_count": self.failure_count,
            "enabled": self.enabled,
            "auto_disabled": self.auto_disabled,
            "last_connected_at": self.last_connected_at,
            "last_checked_at": self.last_checked_at,
            "last_error": self.last_error,
        }
