"""
Command line tools for inspecting cached tool results.

Usage:
    mcp-guard results notes.md            # Tool results embedded in a document
    mcp-guard results notes.md --json
    mcp-guard hash location=Paris units=metric
    mcp-guard hash --json-params '{"location": "Paris"}' -s weather -t getWeather
    mcp-guard servers servers.yaml        # Validate a server config file
"""

from __future__ import annotations

import json
from pathlib import Path

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from mcp_guard.cache.document import DocumentToolCache
from mcp_guard.cache.key import hash_parameters, make_cache_key
from mcp_guard.errors import ConfigurationError
from mcp_guard.logging import configure_logging
from mcp_guard.settings import load_server_configs

app = typer.Typer(help="Resilience and caching tools for MCP tool servers", no_args_is_help=True)
console = Console()


def _print_error(message: str, hint: str | None = None) -> None:
    console.print(f"[red]Error: {escape(message)}[/red]")
    if hint:
        console.print(f"[dim]{escape(hint)}[/dim]")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level for mcp_guard loggers"),
    log_format: str = typer.Option("human", "--log-format", help="Log format: human or json"),
):
    """Inspect tool results and server configuration."""
    if log_format not in ("human", "json"):
        _print_error(f"Invalid log format: {log_format}", hint="Valid options: human, json")
        raise typer.Exit(1)
    configure_logging(level=log_level, format=log_format)


@app.command("results")
def results_cmd(
    file: Path = typer.Argument(..., help="Markdown document to scan"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """List tool results embedded in a markdown document."""
    try:
        text = file.read_text(encoding="utf-8")
    except OSError as e:
        _print_error(f"Cannot read {file}: {e}")
        raise typer.Exit(1)

    records = DocumentToolCache().get_all_results(text)

    if output_json:
        typer.echo(json.dumps([r.to_dict() for r in records], indent=2, default=str))
        return

    if not records:
        console.print("[dim]No tool results found[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Server", style="cyan")
    table.add_column("Tool")
    table.add_column("Parameters")
    table.add_column("Duration", justify="right")
    table.add_column("Executed")
    table.add_column("Lines", justify="right")

    for r in records:
        table.add_row(
            r.server_name if r.server_name == r.server_id else f"{r.server_name} ({r.server_id})",
            r.tool_name,
            json.dumps(r.parameters, default=str),
            f"{r.duration_ms:.0f}ms" if r.duration_ms is not None else "-",
            r.executed_at.isoformat() if r.executed_at else "-",
            f"{r.source_range.start_line + 1}-{r.source_range.end_line + 1}",
        )
    console.print(table)


@app.command("hash")
def hash_cmd(
    pairs: list[str] = typer.Argument(None, help="Parameters as KEY=VALUE (values parsed as YAML scalars)"),
    json_params: str | None = typer.Option(None, "--json-params", help="Parameters as a JSON object"),
    server: str | None = typer.Option(None, "--server", "-s", help="Server id, to also print the cache key"),
    tool: str | None = typer.Option(None, "--tool", "-t", help="Tool name, to also print the cache key"),
):
    """Print the parameter hash used to match cached results."""
    params: dict = {}
    if json_params:
        try:
            loaded = json.loads(json_params)
        except json.JSONDecodeError as e:
            _print_error(f"Invalid JSON: {e}")
            raise typer.Exit(1)
        if not isinstance(loaded, dict):
            _print_error("--json-params must be a JSON object")
            raise typer.Exit(1)
        params.update(loaded)

    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            _print_error(f"Invalid parameter '{pair}'", hint="Use KEY=VALUE")
            raise typer.Exit(1)
        try:
            params[key] = yaml.safe_load(value) if value else ""
        except yaml.YAMLError as e:
            _print_error(f"Invalid value for '{key}': {e}", hint="Quote values that are not plain YAML scalars")
            raise typer.Exit(1)

    typer.echo(hash_parameters(params))
    if server and tool:
        typer.echo(make_cache_key(server, tool, params))


@app.command("servers")
def servers_cmd(
    file: Path = typer.Argument(..., help="JSON or YAML server config file"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Validate a server config file and list its servers."""
    try:
        configs = load_server_configs(file)
    except ConfigurationError as e:
        _print_error(e.message, hint=e.hint)
        raise typer.Exit(1)

    if output_json:
        typer.echo(json.dumps([c.model_dump(exclude_none=True) for c in configs], indent=2))
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Transport")
    table.add_column("Target")
    table.add_column("Enabled", justify="center")

    for c in configs:
        enabled = "[green]✓[/green]" if c.enabled else ("[red]auto-disabled[/red]" if c.auto_disabled else "[dim]✗[/dim]")
        table.add_row(c.id, c.name or c.id, c.transport, c.identity(), enabled)
    console.print(table)


if __name__ == "__main__":
    app()
