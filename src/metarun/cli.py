# ABOUTME: typer application behind the `run` console script
# ABOUTME: Root callback prepares environment, settings and RunContext; main() turns RunError into exit code 1

"""
`run` command line.

=============================================================================
INVOCATION FLOW
=============================================================================

1. The root callback resolves the unit directory (--path or the cwd, with a
   trailing /scripts stripped) and, outside GitHub Actions, loads:
     - the unit's .env.<cible> (plus .env.base when declared)
     - every `.env` of ancestors declaring `secrets`, up to the project
2. Settings are read from the environment; --env and --src override them.
   Without an explicit environment, the git branch decides (main -> prod).
3. A RunContext is stored on the typer context for the subcommand.
4. main() catches RunError and prints it; the exit code is 1.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Annotated

import structlog
import typer
from rich.console import Console
from rich.markup import escape

from metarun import __version__
from metarun.commands import (
    action,
    cluster,
    custom,
    db,
    docker,
    hasura,
    machine,
    mcp,
    meta,
    npm,
    routine,
    skaffold,
    terraform,
    tunnel,
    utils,
    vault,
    vercel,
)
from metarun.config import RunSettings, load_settings
from metarun.context import RunContext
from metarun.environment import env_from_git_branch, set_secrets_on_local
from metarun.errors import CommandError, RunError
from metarun.meta import load_secrets_up_chain, resolve_project_root
from metarun.utils.logging import configure_logging, get_correlation_id
from metarun.utils.shell import ShellRunner

logger = structlog.get_logger(__name__)
error_console = Console(stderr=True)

app = typer.Typer(
    name="run",
    add_completion=False,
    no_args_is_help=True,
    help="Developer and operations workflows driven by meta.json",
)

app.add_typer(docker.app, name="docker")
app.add_typer(terraform.app, name="terraform")
app.add_typer(cluster.app, name="cluster")
app.add_typer(hasura.app, name="hasura")
app.add_typer(vault.app, name="vault")
app.add_typer(action.app, name="action")
app.add_typer(meta.app, name="meta")
app.add_typer(utils.app, name="utils")
utils.app.add_typer(meta.app, name="meta", help="Alias of the meta group.")
app.add_typer(tunnel.app, name="tunnel")
app.add_typer(skaffold.app, name="skaffold")
app.add_typer(vercel.app, name="vercel")
app.add_typer(mcp.app, name="mcp")
app.add_typer(machine.app, name="machine")
app.add_typer(db.app, name="db")
app.command("custom")(custom.custom_command)
app.command("script", help="Alias of custom.")(custom.custom_command)
app.command("npm")(npm.npm_command)
app.command("routine")(routine.routine_command)


def _environment_explicit(environ: Mapping[str, str]) -> bool:
    return any(environ.get(name) for name in ("ENV", "ENVIRONMENT"))


def prepare_settings(
    unit_dir: str,
    cible: str,
    environment: str | None,
    src: Path | None,
) -> RunSettings:
    """
    Load env files for the unit, then settings.

    Env files are skipped inside GitHub Actions, where the workflow provides
    the environment.
    """
    if not os.environ.get("GITHUB_ACTIONS"):
        set_secrets_on_local(unit_dir, cible, os.environ, project_root=src)
        load_secrets_up_chain(unit_dir, os.environ)

    settings = load_settings(environment=environment, src=src)
    if environment is None and not _environment_explicit(os.environ):
        branch_env = env_from_git_branch(ShellRunner(), settings.src)
        if branch_env:
            settings = settings.with_overrides(environment=branch_env)
    return settings


def version_callback(value: bool) -> None:
    if value:
        typer.echo(f"run {__version__}")
        raise typer.Exit()


@app.callback()
def root(
    ctx: typer.Context,
    cible: Annotated[str, typer.Option("--cible", "-c", help="Load .env.<cible> from the unit directory")] = "local",
    environment: Annotated[str | None, typer.Option("--env", "-e", help="Target environment")] = None,
    path: Annotated[Path | None, typer.Option("--path", "-p", help="Unit directory (default: cwd)")] = None,
    src: Annotated[Path | None, typer.Option("--src", help="Discovery root (default: $SRC)")] = None,
    log_level: Annotated[str | None, typer.Option("--log-level", help="DEBUG, INFO, WARNING, ...")] = None,
    json_logs: Annotated[bool, typer.Option("--json-logs", help="JSON log lines on stderr")] = False,
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Log commands instead of running them")] = False,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmations outside protected environments")] = False,
    version: Annotated[
        bool, typer.Option("--version", callback=version_callback, is_eager=True, help="Show version")
    ] = False,
) -> None:
    """Developer and operations workflows driven by meta.json."""
    unit_dir = resolve_project_root(path.resolve() if path else Path.cwd())
    settings = prepare_settings(unit_dir, cible, environment, src)

    safety_update = {}
    if dry_run:
        safety_update["dry_run"] = True
    if yes:
        safety_update["assume_yes"] = True
    if safety_update:
        settings = settings.model_copy(update={"safety": settings.safety.model_copy(update=safety_update)})

    configure_logging(level=log_level or settings.log_level, json_output=json_logs or settings.json_logs)
    logger.debug(
        "invocation",
        unit=unit_dir,
        environment=settings.environment,
        cible=cible,
        correlation_id=get_correlation_id(),
    )
    ctx.obj = RunContext.create(settings, cwd=unit_dir, target=cible)


def report_error(err: RunError) -> None:
    error_console.print(f"[bold red]error[/bold red] {escape(f'[{err.code}]')} {escape(str(err))}")
    if isinstance(err, CommandError) and err.stdout.strip():
        error_console.print(err.stdout.strip(), markup=False, highlight=False)


def main() -> None:
    """Console script entry point."""
    try:
        app()
    except RunError as err:
        report_error(err)
        sys.exit(1)
