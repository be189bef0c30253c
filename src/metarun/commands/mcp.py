# ABOUTME: `run mcp` commands: serve the discovery server and sync MCP client configuration
# ABOUTME: Collects the mcp sections of descriptors into .mcp.json (and .cursor/mcp.json when present)

"""MCP commands."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import structlog
import typer

from metarun.context import get_context
from metarun.errors import RunError
from metarun.meta import read_meta, walk_all_subdirectories

if TYPE_CHECKING:
    from metarun.context import RunContext

logger = structlog.get_logger(__name__)

CLAUDE_CONFIG = ".mcp.json"
CURSOR_CONFIG = Path(".cursor") / "mcp.json"


def collect_servers(root: Path) -> dict[str, dict[str, Any]]:
    """
    Server name -> configuration from every descriptor, root first.

    When two descriptors declare the same server, the first one found wins.
    """
    servers: dict[str, dict[str, Any]] = {}
    for directory in [str(root), *walk_all_subdirectories(root)]:
        raw = read_meta(directory)
        if not raw or not isinstance(raw.get("mcp"), dict):
            continue
        for name, config in raw["mcp"].items():
            servers.setdefault(name, config)
    return servers


def _update_config(path: Path, servers: dict[str, dict[str, Any]], reset: bool) -> None:
    document: dict[str, Any] = {"mcpServers": {}}
    if not reset and path.is_file():
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("existing MCP config is not valid JSON, replacing it", path=str(path))
            document = {"mcpServers": {}}
        document.setdefault("mcpServers", {})
    document["mcpServers"].update(servers)
    path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")


def sync(run: RunContext, server: str | None = None, all_servers: bool = False) -> list[Path]:
    """
    Write MCP server entries into the client configuration files.

    With all_servers the files are rebuilt from scratch; otherwise one
    server is added or replaced.

    Returns:
        The configuration files written.
    """
    root = run.src
    available = collect_servers(root)
    if all_servers:
        selected = available
    elif server:
        if server not in available:
            names = ", ".join(sorted(available)) or "none"
            raise RunError(f"MCP server {server} not found in any meta.json (available: {names})")
        selected = {server: available[server]}
    else:
        raise typer.BadParameter("give a server name or --all")

    written = [root / CLAUDE_CONFIG]
    if (root / CURSOR_CONFIG).parent.is_dir():
        written.append(root / CURSOR_CONFIG)
    for path in written:
        _update_config(path, selected, reset=all_servers)
    return written


app = typer.Typer(no_args_is_help=True, help="Model Context Protocol")


@app.command("serve")
def serve_command() -> None:
    """Run the read-only discovery server on stdio."""
    from metarun.server import main

    main()


@app.command("sync")
def sync_command(
    ctx: typer.Context,
    server: Annotated[str | None, typer.Argument(help="server name from a meta.json mcp section")] = None,
    all_servers: Annotated[bool, typer.Option("--all", help="Rebuild from every meta.json")] = False,
) -> None:
    """Write MCP servers declared in meta.json into client configs."""
    for path in sync(get_context(ctx), server, all_servers):
        typer.echo(f"{path} updated")
