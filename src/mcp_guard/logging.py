"""Logging setup for mcp-guard.

Built on the standard library :mod:`logging`. Library modules obtain a
logger through :func:`get_logger`, which returns a :class:`StructuredLogger`
accepting keyword fields::

    logger = get_logger("supervisor")
    logger.warning("Retrying server", server_id="weather", attempt=2)

Fields are attached to the ``LogRecord`` and rendered by the formatters
installed with :func:`configure_logging`. Nothing is printed until an
application (or the CLI) calls :func:`configure_logging`.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any, Literal

__all__ = [
    "HumanFormatter",
    "JSONFormatter",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
]

ROOT_LOGGER_NAME = "mcp_guard"

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
    | {"message", "asctime", "taskName"}
)


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, suitable for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        data.update(_extra_fields(record))

        if record.levelno >= logging.ERROR:
            data["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)


class HumanFormatter(logging.Formatter):
    """Compact single-line format for terminals."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{ts} {record.levelname:<8} {record.name}: {record.getMessage()}"
        fields = _extra_fields(record)
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredLogger:
    """Thin wrapper over :class:`logging.Logger` taking keyword fields."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._logger = logging.getLogger(name)

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def child(self, suffix: str) -> StructuredLogger:
        return StructuredLogger(f"{self.name}.{suffix}")

    def isEnabledFor(self, level: int) -> bool:  # noqa: N802 - mirrors logging API
        return self._logger.isEnabledFor(level)

    def _log(self, level: int, msg: str, exc_info: Any = None, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {(f"field_{k}" if k in _RESERVED_ATTRS else k): v for k, v in fields.items()}
        self._logger.log(level, msg, exc_info=exc_info, extra=extra, stacklevel=3)

    def debug(self, msg: str, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, **fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._log(logging.INFO, msg, **fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._log(logging.WARNING, msg, **fields)

    def error(self, msg: str, **fields: Any) -> None:
        self._log(logging.ERROR, msg, **fields)

    def exception(self, msg: str, **fields: Any) -> None:
        self._log(logging.ERROR, msg, exc_info=True, **fields)


def get_logger(name: str) -> StructuredLogger:
    """Return a structured logger namespaced under ``mcp_guard``."""
    if name != ROOT_LOGGER_NAME and not name.startswith(f"{ROOT_LOGGER_NAME}."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return StructuredLogger(name)


def configure_logging(
    level: str | int = "INFO",
    format: Literal["human", "json"] = "human",
    stream: IO[str] | None = None,
) -> logging.Logger:
    """Install a single handler on the ``mcp_guard`` logger.

    Calling it again replaces the previous handler, so it is safe to call
    from tests and CLI entry points.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level if isinstance(level, int) else level.upper())

    for handler in list(logger.handlers):
        if getattr(handler, "_mcp_guard_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter() if format == "json" else HumanFormatter())
    handler._mcp_guard_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger
