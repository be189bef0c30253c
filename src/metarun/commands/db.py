# ABOUTME: Database maintenance: Postgres dumps stored in the project bucket
# ABOUTME: Each upload keeps the previous dump under backup/ with a millisecond timestamp

"""
`run db` commands.

A backup dumps $PGDATABASE with pg_dump (connection settings come from the
usual PG* variables) and uploads it to `bucket-<GCP_PROJECT_NAME>`:

    db/<env>/<database>/db.sql                  latest dump
    db/<env>/<database>/backup/db.<ms>.sql      previous dumps

With --local the dump is written to `<unit>/db.sql` and nothing is uploaded.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Annotated

import structlog
import typer

from metarun.commands import hasura
from metarun.context import get_context
from metarun.errors import ConfigurationError
from metarun.utils.shell import require_exe
from metarun.utils.storage import StorageClient, resolve_access_token

if TYPE_CHECKING:
    from metarun.config import RunSettings
    from metarun.context import RunContext

logger = structlog.get_logger(__name__)

DUMP_NAME = "db.sql"


def database_name(run: RunContext) -> str:
    database = run.environ.get("PGDATABASE")
    if not database:
        raise ConfigurationError("PGDATABASE is not set")
    return database


def backup_bucket(settings: RunSettings) -> str:
    if not settings.gcp_project_name:
        raise ConfigurationError("GCP_PROJECT_NAME is not set")
    return f"bucket-{settings.gcp_project_name}"


def dump_prefix(environment: str, database: str) -> str:
    return f"db/{environment}/{database}"


def pg_dump(run: RunContext, database: str) -> str:
    """Dump a database and return the SQL text."""
    if not run.runner.dry_run:
        require_exe("pg_dump")
    return run.runner.run(["pg_dump", database], run.cwd, capture=True).stdout


def backup(run: RunContext, local: bool = False) -> str:
    """
    Dump $PGDATABASE and store it.

    Returns:
        The local file path with local=True, otherwise the object name of
        the latest dump.

    Raises:
        ConfigurationError: PGDATABASE or GCP_PROJECT_NAME is missing.
        ExecutableNotFoundError: pg_dump is not installed.
    """
    database = database_name(run)
    if local:
        path = run.cwd / DUMP_NAME
        dump = pg_dump(run, database)
        if not run.runner.dry_run:
            path.write_text(dump, encoding="utf-8")
        logger.info("database dumped", database=database, path=str(path))
        return str(path)

    bucket = backup_bucket(run.settings)
    prefix = dump_prefix(run.env, database)
    latest = f"{prefix}/{DUMP_NAME}"
    dump = pg_dump(run, database)
    if run.runner.dry_run:
        logger.info("dry run, dump not uploaded", bucket=bucket, name=latest)
        return latest

    token = resolve_access_token(run.settings, run.runner, run.cwd)
    archived = f"{prefix}/backup/db.{int(time.time() * 1000)}.sql"

    async def _upload() -> None:
        async with StorageClient(bucket, token) as storage:
            if await storage.object_exists(latest):
                await storage.copy_object(latest, archived)
            await storage.upload_object(latest, dump.encode("utf-8"), "application/sql")

    asyncio.run(_upload())
    logger.info("database backed up", bucket=bucket, name=latest)
    return latest


def list_backups(run: RunContext) -> list[str]:
    """Object names stored for $PGDATABASE in the current environment."""
    bucket = backup_bucket(run.settings)
    prefix = dump_prefix(run.env, database_name(run))
    token = resolve_access_token(run.settings, run.runner, run.cwd)

    async def _list() -> list[str]:
        async with StorageClient(bucket, token) as storage:
            return await storage.list_objects(f"{prefix}/")

    return asyncio.run(_list())


# =============================================================================
# CLI
# =============================================================================

app = typer.Typer(no_args_is_help=True, help="Database maintenance")
postgres_app = typer.Typer(no_args_is_help=True, help="Postgres dumps")
hasura_app = typer.Typer(no_args_is_help=True, help="Hasura shortcuts")
app.add_typer(postgres_app, name="postgres")
app.add_typer(hasura_app, name="hasura")


@postgres_app.command("backup")
def backup_command(
    ctx: typer.Context,
    local: Annotated[bool, typer.Option("--local", help="Write <unit>/db.sql instead of uploading")] = False,
) -> None:
    """Dump $PGDATABASE and upload it to the project bucket."""
    backup(get_context(ctx), local)


@postgres_app.command("list")
def list_command(ctx: typer.Context) -> None:
    """List the stored dumps of $PGDATABASE."""
    run = get_context(ctx)
    for name in list_backups(run):
        run.console.print(name)


@hasura_app.command("console")
def console_command(ctx: typer.Context) -> None:
    """Alias of `run hasura console`."""
    hasura.console(get_context(ctx))
