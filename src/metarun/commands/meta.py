# ABOUTME: meta.json lifecycle commands: create, change, regenerate ids, show and find
# ABOUTME: Edits go through the raw file so placeholders and unknown keys are written back untouched

"""Descriptor management commands."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import structlog
import typer
from rich.table import Table

from metarun.commands.utils import nanoid
from metarun.context import get_context
from metarun.descriptor import Scope, UnitType, parse_descriptor
from metarun.errors import DescriptorError
from metarun.meta import UNSET, find_directories_matching, meta_exists, read_meta, walk_all_subdirectories, write_meta

if TYPE_CHECKING:
    from metarun.context import RunContext
    from metarun.meta import MetaMatch

logger = structlog.get_logger(__name__)

EDITABLE = ("id", "name", "type", "scope")


def create(run: RunContext, name: str, unit_type: UnitType, is_global: bool = False, force: bool = False) -> Path:
    """Write a new meta.json in the unit directory."""
    if meta_exists(run.cwd) and not force:
        raise DescriptorError(str(run.cwd), "meta.json already exists (use --force to overwrite)")
    data: dict[str, Any] = {"id": nanoid(), "name": name, "type": unit_type.value}
    if is_global:
        data["scope"] = Scope.GLOBAL.value
    return write_meta(run.cwd, data)


def _raw(directory: Path) -> dict[str, Any]:
    raw = read_meta(directory, substitute=False)
    if raw is None:
        raise DescriptorError(str(directory), "no meta.json found")
    return raw


def change(run: RunContext, prop: str, value: str | None = None) -> dict[str, Any]:
    """
    Change one top-level property of the unit's meta.json.

    `id` is regenerated; `type` and `scope` are validated against their
    closed sets; a legacy `global` flag is replaced by `scope`.
    """
    raw = _raw(run.cwd)
    if prop == "id":
        raw["id"] = nanoid()
    elif prop == "name":
        if not value:
            raise typer.BadParameter("name requires a value")
        raw["name"] = value
    elif prop == "type":
        raw["type"] = UnitType(value).value
    elif prop == "scope":
        raw.pop("global", None)
        raw["scope"] = Scope(value).value
    else:
        raise typer.BadParameter(f"property must be one of: {', '.join(EDITABLE)}")
    parse_descriptor(raw, str(run.cwd))
    write_meta(run.cwd, raw)
    return raw


def regenerate_ids(run: RunContext, root: Path | None = None) -> list[str]:
    """
    Give every descriptor under root (root included) a fresh id.

    The `<root>/dev` subtree is left alone. Returns the rewritten directories.
    """
    root = Path(os.path.abspath(root or run.src))
    run.guard.check_destructive("meta_ids", str(root))
    skipped = root / "dev"
    rewritten = []
    for directory in [*walk_all_subdirectories(root), str(root)]:
        path = Path(directory)
        if path == skipped or skipped in path.parents:
            continue
        raw = read_meta(path, substitute=False)
        if raw is None:
            continue
        raw["id"] = nanoid()
        write_meta(path, raw)
        rewritten.append(directory)
    logger.info("ids regenerated", root=str(root), count=len(rewritten))
    return rewritten


def parse_value(text: str | None) -> Any:
    """Command-line value to JSON: `true`, `2` and `"x"` are typed, anything else is a string."""
    if text is None:
        return UNSET
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def find(run: RunContext, prop: str, value: str | None = None, root: Path | None = None) -> list[MetaMatch]:
    return find_directories_matching(prop, parse_value(value), root or run.src)


# =============================================================================
# CLI
# =============================================================================

app = typer.Typer(no_args_is_help=True, help="meta.json descriptors")


@app.command("create")
def create_command(
    ctx: typer.Context,
    name: Annotated[str, typer.Option("--name", prompt="What is the name of this object?")],
    unit_type: Annotated[UnitType, typer.Option("--type", prompt="What is the type of this object?")],
    is_global: Annotated[
        bool, typer.Option("--global/--environment", prompt="Is this object shared by every environment?")
    ] = False,
    force: Annotated[bool, typer.Option("--force")] = False,
) -> None:
    """Create meta.json in the current unit directory."""
    path = create(get_context(ctx), name, unit_type, is_global, force)
    typer.echo(f"{path} created")


@app.command("change")
def change_command(
    ctx: typer.Context,
    prop: Annotated[str, typer.Argument(help="id, name, type or scope")],
    value: Annotated[str | None, typer.Argument(help="new value (not used for id)")] = None,
) -> None:
    """Change one property of meta.json."""
    if prop in ("name", "type", "scope") and value is None:
        value = typer.prompt(f"New {prop}")
    try:
        raw = change(get_context(ctx), prop, value)
    except ValueError as err:
        raise typer.BadParameter(str(err)) from err
    typer.echo(json.dumps(raw, indent=2))


@app.command("ids")
def ids_command(
    ctx: typer.Context,
    root: Annotated[Path | None, typer.Option("--root", help="Directory to rewrite (default: $SRC)")] = None,
) -> None:
    """Regenerate every id under a tree."""
    rewritten = regenerate_ids(get_context(ctx), root)
    typer.echo(f"{len(rewritten)} ids regenerated")


@app.command("show")
def show_command(
    ctx: typer.Context,
    directory: Annotated[Path | None, typer.Argument(help="unit directory (default: current)")] = None,
) -> None:
    """Print the validated descriptor with defaults filled in."""
    run = get_context(ctx)
    descriptor = run.descriptor(directory)
    run.console.print_json(descriptor.model_dump_json(exclude_none=True, by_alias=True))


@app.command("find")
def find_command(
    ctx: typer.Context,
    prop: Annotated[str, typer.Argument(help="dotted property, e.g. cluster.tls")],
    value: Annotated[str | None, typer.Argument(help="expected value, parsed as JSON when possible")] = None,
    root: Annotated[Path | None, typer.Option("--root")] = None,
) -> None:
    """List directories whose meta.json matches a property."""
    run = get_context(ctx)
    matches = find(run, prop, value, root)
    table = Table("directory", "name", "type")
    for match in matches:
        table.add_row(match.directory, str(match.descriptor.get("name", "")), str(match.descriptor.get("type", "")))
    run.console.print(table)
