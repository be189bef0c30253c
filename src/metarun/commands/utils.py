# ABOUTME: Small helpers: nanoid ids, quick git commit/amend, development bootstrap
# ABOUTME: nanoid ids are what meta.json uses to namespace remote state and secrets

"""Miscellaneous helpers."""

from __future__ import annotations

import secrets
import shlex
import string
from typing import TYPE_CHECKING, Annotated

import structlog
import typer

from metarun.context import get_context
from metarun.errors import ConfigurationError, RunError
from metarun.meta import find_directories_matching

if TYPE_CHECKING:
    from metarun.context import RunContext

logger = structlog.get_logger(__name__)

URL_ALPHABET = string.ascii_letters + string.digits + "_-"
ID_LENGTH = 12


def nanoid(size: int = ID_LENGTH) -> str:
    """Random URL-safe id, same alphabet as the nanoid library."""
    return "".join(secrets.choice(URL_ALPHABET) for _ in range(size))


def _require_work_tree(run: RunContext) -> None:
    if not run.runner.succeeds(["git", "rev-parse", "--is-inside-work-tree"], run.cwd):
        raise RunError(f"{run.cwd} is not inside a git work tree")


def quick_commit(run: RunContext, message: str = "quick commit", branch: str = "main") -> None:
    _require_work_tree(run)
    run.runner.run(["git", "add", "."], run.cwd)
    run.runner.run(["git", "commit", "-m", message], run.cwd)
    run.runner.run(["git", "push", "origin", branch, "-f"], run.cwd)


def quick_amend(run: RunContext, branch: str = "main") -> None:
    _require_work_tree(run)
    run.runner.run(["git", "add", "."], run.cwd)
    run.runner.run(["git", "commit", "--amend", "--no-edit"], run.cwd)
    run.runner.run(["git", "push", "origin", branch, "-f"], run.cwd)


# =============================================================================
# DEVELOPMENT BOOTSTRAP
# =============================================================================


def dev_install(run: RunContext) -> list[str]:
    """
    Run the `development.init` commands of every unit under the source root.

    Each entry is a command line, split shell-style and run in its unit
    directory. Units are visited in walk order, their commands in list order.

    Returns:
        The command lines that were run.
    """
    ran: list[str] = []
    for match in find_directories_matching("development.init", root_path=run.src):
        commands = match.descriptor["development"]["init"]
        if isinstance(commands, str):
            commands = [commands]
        for command in commands:
            run.runner.run(shlex.split(command), match.directory)
            ran.append(command)
    logger.info("development dependencies installed", commands=len(ran))
    return ran


def install_dependencies(run: RunContext) -> None:
    """Log the vault CLI in with VAULT_TOKEN (or the root token)."""
    token = run.environ.get("VAULT_TOKEN") or run.settings.vault_root_token.get_secret_value()
    if not token:
        raise ConfigurationError("VAULT_TOKEN is not set")
    run.runner.run(["vault", "login", "-"], run.cwd, input=token, capture=True)


# =============================================================================
# CLI
# =============================================================================

app = typer.Typer(no_args_is_help=True, help="Collection of utils")
git_app = typer.Typer(no_args_is_help=True, help="Git shortcuts")
app.add_typer(git_app, name="git")
dev_app = typer.Typer(no_args_is_help=True, help="Development environment")
app.add_typer(dev_app, name="dev")
dependencies_app = typer.Typer(no_args_is_help=True, help="Tooling dependencies")
app.add_typer(dependencies_app, name="dependencies")

Branch = Annotated[str, typer.Option("--branch", help="Branch force-pushed to origin")]


@app.command("nanoid")
def nanoid_command(size: Annotated[int, typer.Option("--size", min=1)] = ID_LENGTH) -> None:
    """Print a new id."""
    typer.echo(nanoid(size))


@git_app.command("commit")
def commit_command(
    ctx: typer.Context,
    message: Annotated[str, typer.Option("--message", "-m")] = "quick commit",
    branch: Branch = "main",
) -> None:
    """Add everything, commit and force-push."""
    quick_commit(get_context(ctx), message, branch)


@git_app.command("amend")
def amend_command(ctx: typer.Context, branch: Branch = "main") -> None:
    """Add everything into the last commit and force-push."""
    quick_amend(get_context(ctx), branch)


@dev_app.command("install")
def dev_install_command(ctx: typer.Context) -> None:
    """Run development.init of every unit."""
    dev_install(get_context(ctx))


@dependencies_app.command("install")
def dependencies_install_command(ctx: typer.Context) -> None:
    """Log in to vault."""
    install_dependencies(get_context(ctx))
