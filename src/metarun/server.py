# ABOUTME: FastMCP server exposing meta.json discovery to MCP clients
# ABOUTME: Read-only tools over the source tree: find units, read descriptors, list directories, plan batches

"""metarun MCP server - read-only discovery over the source tree."""

from __future__ import annotations

import json
import os
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from metarun.batch import BatchUnit, group_by_priority
from metarun.config import RunSettings, load_settings
from metarun.errors import DescriptorError
from metarun.meta import (
    UNSET,
    find_directories_matching,
    list_subdirectories,
    load_descriptor,
    read_meta,
    resolve_property,
)
from metarun.utils.logging import AuditLogger, configure_logging, set_correlation_id

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: RunSettings | None = None
_audit_logger: AuditLogger | None = None


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Load settings once for the lifetime of the server."""
    global _settings, _audit_logger

    _settings = load_settings()
    configure_logging(level=_settings.log_level, json_output=True)
    _audit_logger = AuditLogger(_settings.safety.audit_log)
    logger.info("metarun MCP server started", src=str(_settings.src))

    yield {"settings": _settings}

    logger.info("metarun MCP server stopped")


mcp = FastMCP("metarun", lifespan=lifespan)


def get_settings() -> RunSettings:
    """Get server settings."""
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_audit_logger() -> AuditLogger:
    """Get audit logger for recording lookups."""
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


def _inside_src(path: str) -> str:
    """Resolve a path relative to SRC, refusing anything outside it."""
    src = os.path.abspath(get_settings().src)
    full = os.path.abspath(os.path.join(src, path))
    if os.path.commonpath([src, full]) != src:
        raise ValueError(f"{path} is outside the source root")
    return full


def _parse_value(text: str | None) -> Any:
    if text is None:
        return UNSET
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _request_id(ctx: MCPContext) -> str:
    return ctx.request_id if hasattr(ctx, "request_id") else ""


# =============================================================================
# TOOLS
# =============================================================================


class FindUnitsParams(BaseModel):
    """Parameters for find_units tool."""

    property: str = Field(description="Dotted descriptor property, e.g. 'terraform' or 'cluster.tls'")
    value: str | None = Field(
        default=None,
        description="Expected value, parsed as JSON when possible; omit for a truthiness check",
    )


@mcp.tool()
async def find_units(params: FindUnitsParams, ctx: MCPContext) -> str:
    """
    Find directories whose meta.json matches a property.

    Without a value, a unit matches when the property is present and truthy.
    Falsy values never match.
    """
    set_correlation_id(_request_id(ctx))
    root = str(get_settings().src)
    matches = find_directories_matching(params.property, _parse_value(params.value), root)
    get_audit_logger().log("find_units", params.property, "success", {"matches": len(matches)})

    if not matches:
        return f"No units under {root} match {params.property}."

    lines = [f"Found {len(matches)} unit(s):", ""]
    for match in matches:
        name = match.descriptor.get("name", "?")
        unit_type = match.descriptor.get("type", "?")
        lines.append(f"- {os.path.relpath(match.directory, root)} name={name} type={unit_type}")
    return "\n".join(lines)


class GetDescriptorParams(BaseModel):
    """Parameters for get_descriptor tool."""

    path: str = Field(default=".", description="Unit directory, relative to the source root")


@mcp.tool()
async def get_descriptor(params: GetDescriptorParams, ctx: MCPContext) -> str:
    """
    Get the validated descriptor of a unit, defaults filled in.

    Returns the JSON document, or a message when the directory has no
    meta.json or the descriptor is invalid.
    """
    set_correlation_id(_request_id(ctx))
    try:
        directory = _inside_src(params.path)
        descriptor = load_descriptor(directory)
    except (ValueError, DescriptorError) as e:
        get_audit_logger().log_error("get_descriptor", params.path, str(e))
        return str(e)

    if descriptor is None:
        return f"No meta.json in {params.path}."
    get_audit_logger().log("get_descriptor", params.path, "success")
    return descriptor.model_dump_json(indent=2, exclude_none=True, by_alias=True)


class ListDirectoriesParams(BaseModel):
    """Parameters for list_directories tool."""

    path: str = Field(default=".", description="Directory relative to the source root")


@mcp.tool()
async def list_directories(params: ListDirectoriesParams, ctx: MCPContext) -> str:
    """List child directories, marking the ones that are units (have a meta.json)."""
    set_correlation_id(_request_id(ctx))
    try:
        directory = _inside_src(params.path)
    except ValueError as e:
        return str(e)

    names = list_subdirectories(directory)
    if not names:
        return f"No subdirectories in {params.path}."
    lines = []
    for name in names:
        raw = read_meta(os.path.join(directory, name))
        marker = f" [{raw.get('type', 'unit')}]" if raw is not None else ""
        lines.append(f"- {name}{marker}")
    return "\n".join(lines)


class PlanBatchParams(BaseModel):
    """Parameters for plan_batch tool."""

    property: str = Field(
        default="terraform",
        description="Property selecting the units; priorities come from <section>.priority",
    )


def _priority(raw: dict[str, Any], prop: str) -> int | None:
    section = prop.split(".")[0]
    value = resolve_property(raw, f"{section}.priority")
    if value is None and isinstance(raw.get(section), dict):
        # terraform keeps priority per component
        for component in raw[section].values():
            if isinstance(component, dict) and component.get("priority") is not None:
                return component["priority"]
    return value if isinstance(value, int) else None


@mcp.tool()
async def plan_batch(params: PlanBatchParams, ctx: MCPContext) -> str:
    """
    Show the order a batch over matching units would run in.

    Units run group by group, lowest priority first; units without a
    priority run last.
    """
    set_correlation_id(_request_id(ctx))
    root = str(get_settings().src)
    units = [
        BatchUnit(
            name=str(match.descriptor.get("name") or os.path.basename(match.directory)),
            directory=match.directory,
            priority=_priority(match.descriptor, params.property),
        )
        for match in find_directories_matching(params.property, root_path=root)
    ]
    if not units:
        return f"No units under {root} match {params.property}."

    lines = []
    for priority, group in group_by_priority(units):
        label = "no priority" if priority is None else f"priority {priority}"
        lines.append(f"{label}:")
        lines.extend(f"  - {unit.name} ({os.path.relpath(unit.directory, root)})" for unit in group)
    return "\n".join(lines)


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("meta://root")
async def get_root_resource() -> str:
    """Source root and its project descriptor."""
    settings = get_settings()
    raw = read_meta(settings.src)
    lines = [f"Source root: {settings.src}", f"Environment: {settings.environment}"]
    if raw is None:
        lines.append("No project meta.json at the root.")
    else:
        lines.append(f"Project: {raw.get('name', '?')} (type={raw.get('type', '?')})")
    return "\n".join(lines)


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the metarun MCP server on stdio."""
    configure_logging(level="INFO", json_output=True)
    logger.info("metarun MCP server starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)


if __name__ == "__main__":
    main()
