# ABOUTME: Vercel deployment listing and logs
# ABOUTME: Token comes from --token or VERCEL_TOKEN and is masked in logs

"""Vercel CLI wrappers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

import typer

from metarun.context import get_context
from metarun.errors import ConfigurationError

if TYPE_CHECKING:
    from metarun.context import RunContext


def _token(run: RunContext, token: str | None) -> str:
    value = token or run.settings.vercel_token.get_secret_value()
    if not value:
        raise ConfigurationError("VERCEL_TOKEN is not set (or pass --token)")
    return value


def list_deployments(run: RunContext, token: str | None = None) -> None:
    value = _token(run, token)
    run.runner.run(["vercel", "list", "--token", value], run.cwd, redact=[value])


def deployment_logs(run: RunContext, deployment_id: str, token: str | None = None, follow: bool = True) -> None:
    value = _token(run, token)
    argv = ["vercel", "logs", deployment_id, "--token", value, "--debug"]
    if follow:
        argv.append("-f")
    run.runner.run(argv, run.cwd, redact=[value])


app = typer.Typer(no_args_is_help=True, help="Vercel deployments")

Token = Annotated[str | None, typer.Option("--token", help="Defaults to $VERCEL_TOKEN")]


@app.command("list")
def list_command(ctx: typer.Context, token: Token = None) -> None:
    """List deployments."""
    list_deployments(get_context(ctx), token)


@app.command("logs")
def logs_command(
    ctx: typer.Context,
    deployment_id: str,
    token: Token = None,
    follow: Annotated[bool, typer.Option("--follow/--no-follow")] = True,
) -> None:
    """Stream the logs of a deployment."""
    deployment_logs(get_context(ctx), deployment_id, token, follow)
