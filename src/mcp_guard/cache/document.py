"""Tool results embedded in markdown documents.

A tool call that has been written into a document looks like::

    > [!tool]- Tool Call (Weather Server: getWeather)
    > Server ID: weather-server
    > ```Weather Server
    > tool: getWeather
    > location: Paris
    > ```
    > Duration: 150ms
    > Executed: 2025-10-09T12:34:56.000Z
    > Results:
    > ```
    > {"forecast": "Sunny"}
    > ```

:class:`DocumentToolCache` scans a document for such blocks and answers
the same lookup as the in-memory cache, so results survive restarts.
Blocks that cannot be parsed are skipped; parsing never raises.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, Union

import yaml

from mcp_guard.cache.key import canonical_json, hash_parameters
from mcp_guard.mcp.models import ToolCallResult

logger = logging.getLogger(__name__)

__all__ = [
    "DocumentToolCache",
    "DocumentToolRecord",
    "LineRange",
    "TextDocument",
    "format_tool_block",
    "upsert_tool_block",
]

HEADER_RE = re.compile(r"^\[!tool\][-+]?\s*Tool Call\b(?P<rest>.*)$")
PAREN_RE = re.compile(r"\(([^()]*)\)")
LEGACY_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*ms\s*$")
DURATION_RE = re.compile(r"^Duration:\s*(\d+(?:\.\d+)?)\s*ms\s*$", re.IGNORECASE)
RESULTS_RE = re.compile(r"^results:\s*$", re.IGNORECASE)
FENCE_RE = re.compile(r"^(?P<ticks>`{3,})(?P<info>[^`]*)$")
PREFIX_RE = re.compile(r"^>\s?")


class HasText(Protocol):
    def get_text(self) -> str: ...


DocumentLike = Union[str, HasText]


@dataclass(frozen=True)
class LineRange:
    """0-based, inclusive range of document lines."""

    start_line: int
    end_line: int


@dataclass
class DocumentToolRecord:
    """A tool call recovered from a document block."""

    server_id: str
    server_name: str
    tool_name: str
    parameters: dict[str, Any]
    parameter_hash: str
    duration_ms: float | None
    executed_at: datetime | None
    result_markdown: str
    source_range: LineRange
    result_range: LineRange

    def to_result(self, now: datetime | None = None) -> ToolCallResult:
        """Rebuild a cached :class:`ToolCallResult` from the stored text."""
        content: Any = self.result_markdown
        content_type = "markdown"
        try:
            content = json.loads(self.result_markdown)
            content_type = "json"
        except ValueError:
            content = self.result_markdown

        age_ms = None
        if self.executed_at is not None:
            now = now or datetime.now(timezone.utc)
            age_ms = max(0.0, (now - self.executed_at).total_seconds() * 1000.0)

        return ToolCallResult(
            content=content,
            content_type=content_type,
            duration_ms=self.duration_ms or 0.0,
            cached=True,
            cache_age_ms=age_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "server_id": self.server_id,
            "server_name": self.server_name,
            "tool_name": self.tool_name,
            "parameters": self.parameters,
            "parameter_hash": self.parameter_hash,
            "duration_ms": self.duration_ms,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "source_range": [self.source_range.start_line, self.source_range.end_line],
            "result_range": [self.result_range.start_line, self.result_range.end_line],
        }


class InvalidBlock(ValueError):
    """Raised internally when a block must be dropped."""


# =============================================================================
# Parsing
# =============================================================================


def _strip_prefix(line: str) -> str:
    return PREFIX_RE.sub("", line, count=1)


def _parse_header(content: str) -> tuple[str | None, str | None, float | None] | None:
    match = HEADER_RE.match(content.strip())
    if match is None:
        return None

    label_server = label_tool = None
    duration = None
    for group in PAREN_RE.findall(match.group("rest")):
        legacy = LEGACY_DURATION_RE.match(group)
        if legacy:
            duration = float(legacy.group(1))
        elif ":" in group and label_tool is None:
            server, _, tool = group.rpartition(":")
            label_server = server.strip() or None
            label_tool = tool.strip() or None
    return label_server, label_tool, duration


def _parse_executed(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_invocation(text: str) -> dict[str, Any]:
    try:
        data = yaml.safe_load(text) if text.strip() else {}
    except yaml.YAMLError as exc:
        raise InvalidBlock(f"invocation is not valid YAML: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise InvalidBlock("invocation is not a mapping")
    return {str(k): v for k, v in data.items()}


@dataclass
class _Fence:
    ticks: str
    info: str
    start: int
    lines: list[str] = field(default_factory=list)
    end: int = -1


def _parse_block(lines: list[str], start: int, end: int) -> DocumentToolRecord:
    header = _parse_header(_strip_prefix(lines[start]))
    if header is None:
        raise InvalidBlock("missing tool header")
    label_server, label_tool, duration = header

    server_id = server_name_line = tool_line = None
    executed_at: datetime | None = None
    explicit_duration: float | None = None
    invocation: _Fence | None = None
    result: _Fence | None = None
    results_marker: int | None = None
    open_fence: _Fence | None = None

    for index in range(start + 1, end + 1):
        content = _strip_prefix(lines[index])
        stripped = content.strip()

        if open_fence is not None:
            if set(stripped) == {"`"} and len(stripped) >= len(open_fence.ticks):
                open_fence.end = index
                open_fence = None
            else:
                open_fence.lines.append(content)
            continue

        fence = FENCE_RE.match(stripped)
        if fence:
            new = _Fence(ticks=fence.group("ticks"), info=fence.group("info").strip(), start=index)
            if results_marker is None:
                if invocation is not None:
                    raise InvalidBlock("more than one invocation fence")
                invocation = new
            else:
                if result is not None:
                    raise InvalidBlock("more than one result fence")
                if invocation is None:
                    raise InvalidBlock("result fence without invocation")
                result = new
            open_fence = new
            continue

        if stripped.startswith("Server ID:"):
            server_id = stripped[len("Server ID:"):].strip() or None
        elif stripped.startswith("Server Name:"):
            server_name_line = stripped[len("Server Name:"):].strip() or None
        elif stripped.startswith("Tool:"):
            tool_line = stripped[len("Tool:"):].strip() or None
        elif stripped.lower().startswith("duration:"):
            match = DURATION_RE.match(stripped)
            if match:
                explicit_duration = float(match.group(1))
        elif stripped.startswith("Executed:"):
            executed_at = _parse_executed(stripped[len("Executed:"):])
        elif RESULTS_RE.match(stripped):
            if results_marker is not None:
                raise InvalidBlock("more than one Results: marker")
            results_marker = index

    if open_fence is not None:
        raise InvalidBlock("unclosed fence")
    if invocation is None:
        raise InvalidBlock("missing invocation fence")
    if results_marker is None or result is None:
        raise InvalidBlock("missing result")

    parameters = _parse_invocation("\n".join(invocation.lines))
    tool_value = parameters.pop("tool", None)
    tool_name = (str(tool_value).strip() if tool_value is not None else None) or tool_line or label_tool

    if not server_id:
        raise InvalidBlock("missing Server ID")
    if not tool_name:
        raise InvalidBlock("missing tool name")

    server_name = label_server or server_name_line or invocation.info or server_id

    return DocumentToolRecord(
        server_id=server_id,
        server_name=server_name,
        tool_name=tool_name,
        parameters=parameters,
        parameter_hash=hash_parameters(parameters),
        duration_ms=explicit_duration if explicit_duration is not None else duration,
        executed_at=executed_at,
        result_markdown="\n".join(result.lines),
        source_range=LineRange(start, end),
        result_range=LineRange(results_marker, result.end),
    )


def _is_header(line: str) -> bool:
    return line.startswith(">") and HEADER_RE.match(_strip_prefix(line).strip()) is not None


def parse_document(text: str) -> list[DocumentToolRecord]:
    """Return every valid tool block in ``text`` in document order."""
    lines = [line.rstrip("\r") for line in text.split("\n")]
    records: list[DocumentToolRecord] = []

    index = 0
    while index < len(lines):
        if not _is_header(lines[index]):
            index += 1
            continue

        end = index
        while end + 1 < len(lines) and lines[end + 1].startswith(">") and not _is_header(lines[end + 1]):
            end += 1

        try:
            records.append(_parse_block(lines, index, end))
        except InvalidBlock as exc:
            logger.debug(f"Skipping tool block at line {index}: {exc}")
        index = end + 1

    return records


def _text_of(document: DocumentLike) -> str:
    if isinstance(document, str):
        return document
    get_text = getattr(document, "get_text", None)
    if get_text is None:
        raise TypeError(f"Expected str or object with get_text(), got {type(document).__name__}")
    return get_text()


class DocumentToolCache:
    """Lookup of tool results persisted in a document.

    Stateless: every query re-scans the document text.
    """

    def find_existing_result(
        self,
        document: DocumentLike,
        server_id: str,
        tool_name: str,
        parameters: dict[str, Any] | None,
    ) -> DocumentToolRecord | None:
        parameter_hash = self.hash_parameters(parameters)
        for record in self.get_all_results(document):
            if (
                record.server_id == server_id
                and record.tool_name == tool_name
                and record.parameter_hash == parameter_hash
            ):
                return record
        return None

    def get_all_results(self, document: DocumentLike) -> list[DocumentToolRecord]:
        return parse_document(_text_of(document))

    @staticmethod
    def hash_parameters(parameters: dict[str, Any] | None) -> str:
        return hash_parameters(parameters)


# =============================================================================
# Writing
# =============================================================================


def _fence_for(text: str) -> str:
    longest = max((len(run) for run in re.findall(r"`+", text)), default=0)
    return "`" * max(3, longest + 1)


def _quote(line: str) -> str:
    return f"> {line}" if line else ">"


def _format_executed(executed_at: datetime) -> str:
    if executed_at.tzinfo is None:
        executed_at = executed_at.replace(tzinfo=timezone.utc)
    text = executed_at.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def format_tool_block(
    server_id: str,
    server_name: str,
    tool_name: str,
    parameters: dict[str, Any] | None,
    result_text: str,
    *,
    duration_ms: float | None = None,
    executed_at: datetime | None = None,
) -> str:
    """Render a tool call and its result as a document block.

    ``executed_at`` defaults to the current UTC time. Parameters are written
    in canonical form so the block parses back to the same hash.
    """
    params = json.loads(canonical_json(dict(parameters or {})))
    if "tool" in params:
        raise ValueError("Parameter name 'tool' is reserved by the block format")

    invocation = yaml.safe_dump(
        {"tool": tool_name, **params},
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    ).rstrip("\n")

    executed_at = executed_at or datetime.now(timezone.utc)
    result_fence = _fence_for(result_text)

    lines = [
        f"[!tool]- Tool Call ({server_name}: {tool_name})",
        f"Server ID: {server_id}",
        f"```{server_name}",
        *invocation.split("\n"),
        "```",
    ]
    if duration_ms is not None:
        lines.append(f"Duration: {round(duration_ms)}ms")
    lines.append(f"Executed: {_format_executed(executed_at)}")
    lines.append("Results:")
    lines.append(result_fence)
    lines.extend(result_text.split("\n"))
    lines.append(result_fence)

    return "\n".join(_quote(line) for line in lines)


class TextDocument:
    """Minimal in-memory document with line-based editing."""

    def __init__(self, text: str = "") -> None:
        self._text = text

    def get_text(self) -> str:
        return self._text

    def replace_lines(self, start_line: int, end_line: int, text: str) -> None:
        """Replace lines ``start_line..end_line`` (inclusive) with ``text``."""
        lines = self._text.split("\n")
        if not 0 <= start_line <= end_line < len(lines):
            raise IndexError(f"Line range {start_line}-{end_line} outside document of {len(lines)} lines")
        lines[start_line : end_line + 1] = text.split("\n")
        self._text = "\n".join(lines)

    def append(self, text: str) -> LineRange:
        """Append ``text`` as a separate paragraph and return its line range."""
        if not self._text:
            self._text = text
            return LineRange(0, len(text.split("\n")) - 1)

        # Blocks must be separated by a blank line or they would merge.
        if self._text.endswith("\n\n"):
            separator = ""
        elif self._text.endswith("\n"):
            separator = "\n"
        else:
            separator = "\n\n"
        start = len((self._text + separator).split("\n")) - 1
        self._text = f"{self._text}{separator}{text}"
        return LineRange(start, start + len(text.split("\n")) - 1)

    def __len__(self) -> int:
        return len(self._text.split("\n"))

    def __repr__(self) -> str:
        return f"TextDocument(lines={len(self)})"


def upsert_tool_block(
    document: TextDocument,
    block_text: str,
    record: DocumentToolRecord | None = None,
) -> LineRange:
    """Write ``block_text`` over ``record``'s block, or append it."""
    if record is None:
        return document.append(block_text)

    start = record.source_range.start_line
    document.replace_lines(start, record.source_range.end_line, block_text)
    return LineRange(start, start + len(block_text.split("\n")) - 1)
