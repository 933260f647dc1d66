"""Runtime configuration.

Settings come from keyword arguments or from ``MCP_GUARD_*`` environment
variables (a ``.env`` file is loaded on package import)::

    MCP_GUARD_FAILURE_THRESHOLD=5
    MCP_GUARD_RETRY_INITIAL_DELAY_MS=500
    MCP_GUARD_TOOL_TIMEOUT=none

Server definitions live in a separate JSON or YAML file read by
:func:`load_server_configs`.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from mcp_guard.errors import ConfigurationError
from mcp_guard.mcp.models import McpServerConfig
from mcp_guard.retry.policy import DEFAULT_TRANSIENT_ERROR_CODES, RetryPolicy

ENV_PREFIX = "MCP_GUARD_"
_NONE_VALUES = {"", "none", "null"}


class GuardSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    failure_threshold: int = Field(default=3, ge=1)
    health_check_interval: float = Field(default=30.0, gt=0)
    auto_reconnect: bool = True
    cache_ttl_ms: float = Field(default=300_000, ge=0)
    tool_timeout: Optional[float] = Field(default=60.0, gt=0)

    retry_max_attempts: int = Field(default=5, ge=1)
    retry_initial_delay_ms: float = Field(default=1000.0, ge=0)
    retry_max_delay_ms: float = Field(default=30_000.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, gt=1)
    retry_jitter: bool = True

    @field_validator("tool_timeout", mode="before")
    @classmethod
    def _none_timeout(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in _NONE_VALUES:
            return None
        return value

    @model_validator(mode="after")
    def _validate_delays(self):
        if self.retry_max_delay_ms < self.retry_initial_delay_ms:
            raise ValueError("retry_max_delay_ms must be >= retry_initial_delay_ms")
        return self

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            initial_delay=self.retry_initial_delay_ms,
            max_delay=self.retry_max_delay_ms,
            backoff_multiplier=self.retry_backoff_multiplier,
            jitter=self.retry_jitter,
            transient_error_codes=DEFAULT_TRANSIENT_ERROR_CODES,
        )

    @classmethod
    def from_env(
        cls,
        prefix: str = ENV_PREFIX,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> GuardSettings:
        """Build settings from ``<prefix><FIELD_NAME>`` variables.

        Keyword ``overrides`` take precedence over the environment.

        Raises:
            ConfigurationError: A value does not validate.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = env.get(f"{prefix}{name.upper()}")
            if raw is not None:
                values[name] = raw
        values.update(overrides)

        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            first = exc.errors(include_url=False)[0]
            field = ".".join(str(p) for p in first["loc"]) or "settings"
            raise ConfigurationError(
                f"Invalid setting '{field}': {first['msg']}",
                details={"prefix": prefix, "errors": exc.errors(include_url=False)},
                hint=f"Check the {prefix}{field.upper()} environment variable" if field != "settings" else None,
            ) from exc


# =============================================================================
# Server config files
# =============================================================================


def _read_structured(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Cannot read server config file {path}: {exc}") from exc

    try:
        if path.suffix.lower() == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Cannot parse server config file {path}: {exc}") from exc


def _as_entries(items: list[Any]) -> list[dict[str, Any]]:
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ConfigurationError(f"Server #{index} must be a mapping, got {type(item).__name__}")
    return [dict(item) for item in items]


def _server_entries(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, list):
        return _as_entries(data)
    if isinstance(data, dict):
        if isinstance(data.get("servers"), list):
            return _as_entries(data["servers"])
        if isinstance(data.get("mcpServers"), dict):
            entries = []
            for server_id, body in data["mcpServers"].items():
                entry = dict(body or {})
                entry.setdefault("id", server_id)
                if "transport" not in entry and "url" in entry:
                    entry["transport"] = "streamable_http"
                entries.append(entry)
            return entries
    raise ConfigurationError(
        "Server config must be a list, a {'servers': [...]} mapping or a {'mcpServers': {...}} mapping",
    )


def load_server_configs(path: str | os.PathLike[str]) -> list[McpServerConfig]:
    """Read server definitions from a JSON or YAML file.

    Raises:
        ConfigurationError: The file is unreadable, malformed, or a server
            definition does not validate.
    """
    path = Path(path)
    configs: list[McpServerConfig] = []
    seen: set[str] = set()

    for index, entry in enumerate(_server_entries(_read_structured(path))):
        try:
            config = McpServerConfig.model_validate(entry)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid server #{index} in {path}: {exc.errors(include_url=False)[0]['msg']}",
                details={"index": index, "entry": entry},
            ) from exc
        if config.id in seen:
            raise ConfigurationError(f"Duplicate server id '{config.id}' in {path}")
        seen.add(config.id)
        configs.append(config)

    return configs
