# ABOUTME: Hasura maintenance commands run in the unit's hasura state directory
# ABOUTME: Console, migrations, metadata apply and a passthrough for any other hasura subcommand

"""Hasura CLI wrappers. Every command runs in `<unit>/<hasura.state>`."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

import typer

from metarun.context import get_context
from metarun.descriptor import HasuraConfig
from metarun.errors import ConfigurationError, DescriptorError

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from metarun.context import RunContext

DATABASE = "default"


def state_directory(run: RunContext) -> Path:
    descriptor = run.descriptor()
    config = descriptor.hasura or HasuraConfig()
    state = run.cwd / config.state
    if not state.is_dir():
        raise DescriptorError(str(run.cwd), f"hasura state directory '{config.state}' does not exist")
    return state


def console(run: RunContext) -> None:
    run.runner.run(["hasura", "console", "--no-browser", "--skip-update-check"], state_directory(run))


def migrate_squash(run: RunContext, version: str) -> None:
    run.runner.run(
        ["hasura", "migrate", "squash", "--from", version, "--database-name", DATABASE],
        state_directory(run),
    )


def migrate_create(run: RunContext, name: str) -> None:
    run.runner.run(
        ["hasura", "migrate", "create", name, "--from-server", "--database-name", DATABASE],
        state_directory(run),
    )


def migrate_apply(run: RunContext, version: str) -> None:
    """Mark a migration as applied without executing it."""
    run.runner.run(
        ["hasura", "migrate", "apply", "--version", version, "--skip-execution", "--database-name", DATABASE],
        state_directory(run),
    )


def metadata_apply(run: RunContext, endpoint: str | None = None) -> None:
    endpoint = endpoint or run.environ.get("HASURA_GRAPHQL_ENDPOINT")
    if not endpoint:
        raise ConfigurationError("HASURA_GRAPHQL_ENDPOINT is not set")
    run.runner.run(["hasura", "metadata", "apply", "--endpoint", endpoint], state_directory(run))


def passthrough(
    run: RunContext,
    args: Sequence[str],
    database_name: str | None = None,
    all_migrations: bool = False,
) -> None:
    argv = ["hasura", *args]
    if database_name:
        argv += ["--database-name", database_name]
    if all_migrations:
        argv.append("--all")
    run.runner.run(argv, state_directory(run))


# =============================================================================
# CLI
# =============================================================================

app = typer.Typer(no_args_is_help=True, help="Hasura maintenance")
migrate_app = typer.Typer(no_args_is_help=True, help="Hasura migrations")
metadata_app = typer.Typer(no_args_is_help=True, help="Hasura metadata")
app.add_typer(migrate_app, name="migrate")
app.add_typer(metadata_app, name="metadata")


@app.command("console")
def console_command(ctx: typer.Context) -> None:
    """Open the hasura console without a browser."""
    console(get_context(ctx))


@app.command("cmd", context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def cmd_command(
    ctx: typer.Context,
    database_name: Annotated[str | None, typer.Option("--database-name")] = None,
    all_migrations: Annotated[bool, typer.Option("--all")] = False,
) -> None:
    """Run any hasura subcommand in the state directory."""
    passthrough(get_context(ctx), ctx.args, database_name, all_migrations)


@migrate_app.command("squash")
def squash_command(ctx: typer.Context, version: str) -> None:
    """Squash migrations starting at a version."""
    migrate_squash(get_context(ctx), version)


@migrate_app.command("create")
def create_command(ctx: typer.Context, name: str) -> None:
    """Create a migration from the server schema."""
    migrate_create(get_context(ctx), name)


@migrate_app.command("apply")
def apply_command(ctx: typer.Context, version: str) -> None:
    """Mark a migration version as applied."""
    migrate_apply(get_context(ctx), version)


@metadata_app.command("apply")
def metadata_apply_command(
    ctx: typer.Context,
    endpoint: Annotated[str | None, typer.Option("--endpoint", help="Defaults to $HASURA_GRAPHQL_ENDPOINT")] = None,
) -> None:
    """Apply local metadata to an endpoint."""
    metadata_apply(get_context(ctx), endpoint)
