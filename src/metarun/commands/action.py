# ABOUTME: GitHub Actions commands: workflows locally with act, remotely with gh, and step helpers
# ABOUTME: Builds the act argument vector, the event payload file and GITHUB_ENV/GITHUB_OUTPUT entries

"""
GitHub Actions wrappers.

LOCAL RUNS
----------
`run action local <job>` runs a job with act. Every run gets the same base
arguments (platform image, default branch, source directory, and the vault
and GitHub credentials as secrets) plus an event payload file:

    {"inputs": {"LIVE": "false", "LOCAL": "true", ...--input values}}

With --custom, workflows are copied to a temporary directory and the
`container:` key of every job is dropped, so jobs run directly on the act
platform image.

STEP HELPERS
------------
`run action secrets` and `run action env` are meant to run inside a workflow
step: they mask values and append them to $GITHUB_ENV (and $GITHUB_OUTPUT)
so the following steps see them.
"""

from __future__ import annotations

import json
import shutil
import tempfile
import time
from io import StringIO
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import structlog
import typer
import yaml
from dotenv import dotenv_values

from metarun.commands import vault
from metarun.context import get_context
from metarun.errors import ConfigurationError, RunError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from metarun.context import RunContext

logger = structlog.get_logger(__name__)

ACT_PLATFORM = "ubuntu-latest=catthehacker/ubuntu:act-latest"
WATCH_DELAY = 5.0


# =============================================================================
# ACT
# =============================================================================


def workspace_directory(run: RunContext) -> str:
    """Source directory as seen by the docker daemon act talks to."""
    if run.environ.get("CODESPACES") == "true" or not run.settings.localhost_src:
        return str(run.src)
    return run.settings.localhost_src


def default_act_args(run: RunContext) -> tuple[list[str], list[str]]:
    """
    Base act arguments and the secret values they contain.

    Returns:
        (argv, secrets) where secrets must be masked in logs.
    """
    settings = run.settings
    credentials = {
        "VAULT_ROOT_TOKEN": settings.vault_root_token.get_secret_value(),
        "VAULT_ADDR": settings.vault_addr or "",
        "GCP_PROJECT_NAME": settings.gcp_project_name or "",
        "github_token": settings.github_token.get_secret_value(),
    }
    argv = [
        "--platform",
        ACT_PLATFORM,
        "--defaultbranch",
        "main",
        "--directory",
        workspace_directory(run),
        "--bind",
        "--use-gitignore",
    ]
    for key, value in credentials.items():
        argv += ["--secret", f"{key}={value}"]
    secrets = [credentials["VAULT_ROOT_TOKEN"], credentials["github_token"]]
    return argv, [s for s in secrets if s]


def event_payload(
    inputs: Mapping[str, str],
    live: bool = False,
    push_event: Path | None = None,
) -> dict:
    """Event file contents: workflow inputs, merged over a mocked push event."""
    payload: dict = {}
    if push_event is not None and push_event.is_file():
        payload.update(json.loads(push_event.read_text(encoding="utf-8")))
    payload["inputs"] = {"LIVE": "true" if live else "false", "LOCAL": "true", **inputs}
    return payload


def strip_job_containers(workflows_dir: Path) -> None:
    """Remove `container:` from every job of every workflow file, in place."""
    for path in sorted(workflows_dir.iterdir()):
        if path.suffix not in (".yml", ".yaml"):
            continue
        document = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        for job in (document.get("jobs") or {}).values():
            if isinstance(job, dict):
                job.pop("container", None)
        path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")


def parse_inputs(values: Sequence[str]) -> dict[str, str]:
    """KEY=VALUE strings to a mapping."""
    inputs = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"input must be KEY=VALUE, got {item!r}")
        inputs[key] = value
    return inputs


def run_local(
    run: RunContext,
    target: str,
    inputs: Mapping[str, str] | None = None,
    live: bool = False,
    reuse: bool = True,
    secure: bool = True,
    event: str | None = None,
    custom: bool = False,
    extra_args: Sequence[str] = (),
) -> None:
    """
    Run a job (or, with an event, a whole workflow) through act.

    Args:
        target: Job name, or workflow file stem when event is given
        inputs: workflow_dispatch inputs
        live: Value of the LIVE input
        reuse: Keep act containers between runs
        secure: Mask secrets in act output
        event: Event to trigger instead of selecting a job
        custom: Drop job containers before running
        extra_args: Additional act arguments
    """
    workspace = Path(workspace_directory(run))
    argv, secrets = default_act_args(run)
    argv += list(extra_args)

    push_event = workspace / ".github" / "mocking" / "push.json" if event == "push" else None
    with tempfile.TemporaryDirectory(prefix="act-") as scratch:
        event_file = Path(scratch) / "inputs.json"
        event_file.write_text(json.dumps(event_payload(inputs or {}, live, push_event)), encoding="utf-8")
        argv += ["--eventpath", str(event_file)]
        if reuse:
            argv.append("--reuse")
        if not secure:
            argv.append("--insecure-secrets")

        workflows = workspace / ".github" / "workflows"
        if custom:
            copied = Path(scratch) / ".github"
            shutil.copytree(run.cwd / ".github", copied)
            workflows = copied / "workflows"
            strip_job_containers(workflows)

        if event is None:
            command = ["act", *argv, "--workflows", str(workflows), "--job", target]
        else:
            command = ["act", event, *argv, "--workflows", str(workflows / f"{target}.yaml")]
        run.runner.run(command, run.cwd, redact=secrets)


# =============================================================================
# GH
# =============================================================================


def latest_run_id(run: RunContext) -> str:
    result = run.runner.run(
        ["gh", "run", "list", "--limit", "1", "--json", "databaseId"],
        run.cwd,
        capture=True,
    )
    runs = result.json() if result.stdout else []
    if not runs:
        raise RunError("no workflow run found to watch")
    return str(runs[0]["databaseId"])


def run_remote(
    run: RunContext,
    workflow: str,
    inputs: Sequence[str] = (),
    branch: str = "main",
    watch: bool = False,
) -> None:
    """Dispatch a workflow with gh, optionally following the run."""
    argv = ["gh", "workflow", "run", workflow, "--ref", branch]
    for item in inputs:
        argv += ["-f", item]
    run.runner.run(argv, run.cwd)
    if watch and not run.runner.dry_run:
        # the run is not listed immediately after dispatch
        time.sleep(WATCH_DELAY)
        run.runner.run(["gh", "run", "watch", latest_run_id(run)], run.cwd)


# =============================================================================
# STEP HELPERS
# =============================================================================


def _github_file(run: RunContext, variable: str) -> Path | None:
    value = run.environ.get(variable)
    return Path(value) if value else None


def export_to_steps(run: RunContext, values: Mapping[str, str], mask: bool = True) -> None:
    """
    Make values visible to the following workflow steps.

    Each value is masked in the job log, appended to $GITHUB_ENV and, when
    available, to $GITHUB_OUTPUT.

    Raises:
        ConfigurationError: Outside of a workflow (no $GITHUB_ENV).
    """
    env_file = _github_file(run, "GITHUB_ENV")
    if env_file is None:
        raise ConfigurationError("GITHUB_ENV is not set; run this inside a workflow step")
    output_file = _github_file(run, "GITHUB_OUTPUT")
    lines = [f"{key}={value}" for key, value in values.items()]
    if mask:
        for value in values.values():
            if value:
                typer.echo(f"::add-mask::{value}")
    with env_file.open("a", encoding="utf-8") as f:
        f.writelines(line + "\n" for line in lines)
    if output_file is not None:
        with output_file.open("a", encoding="utf-8") as f:
            f.writelines(line + "\n" for line in lines)


def secrets_to_steps(run: RunContext, target: str | None = None) -> list[str]:
    """Fetch the unit's secrets from vault, write .env, and export them to later steps."""
    path = f"{vault.secret_namespace(run.descriptor(), run.env, target)}/{vault.SECRETS_KEY}"
    creds = vault.kv_get(run, path)
    if run.runner.dry_run:
        return []
    (run.cwd / ".env").write_text(creds, encoding="utf-8")
    values = {k: v for k, v in dotenv_values(stream=StringIO(creds)).items() if v is not None}
    export_to_steps(run, values)
    return sorted(values)


def environment_to_steps(run: RunContext) -> str:
    export_to_steps(run, {"ENV": run.env}, mask=False)
    return run.env


# =============================================================================
# CLI
# =============================================================================

app = typer.Typer(no_args_is_help=True, help="GitHub Actions workflows")

Inputs = Annotated[list[str] | None, typer.Option("--input", "-i", help="KEY=VALUE workflow input")]


@app.command("local")
def local_command(
    ctx: typer.Context,
    target: Annotated[str, typer.Argument(help="job name (or workflow with --event)")],
    live: Annotated[bool, typer.Option("--live")] = False,
    push: Annotated[bool, typer.Option("--push", help="Simulate a push event")] = False,
    reuse: Annotated[bool, typer.Option("--reuse/--no-reuse")] = True,
    secure: Annotated[bool, typer.Option("--secure/--no-secure", help="Mask secrets in output")] = True,
    custom: Annotated[bool, typer.Option("--custom", help="Drop job containers")] = False,
    event: Annotated[str | None, typer.Option("--event", help="Event to trigger")] = None,
    input_values: Inputs = None,
) -> None:
    """Run a job locally with act."""
    run_local(
        get_context(ctx),
        target,
        parse_inputs(input_values or []),
        live=live,
        reuse=reuse,
        secure=secure,
        event="push" if push and event is None else event,
        custom=custom,
    )


@app.command("remote")
def remote_command(
    ctx: typer.Context,
    workflow: str,
    watch: Annotated[bool, typer.Option("--watch")] = False,
    branch: Annotated[str, typer.Option("--branch")] = "main",
    input_values: Inputs = None,
) -> None:
    """Dispatch a workflow on GitHub."""
    parse_inputs(input_values or [])
    run_remote(get_context(ctx), workflow, input_values or [], branch, watch)


@app.command("secrets")
def secrets_command(
    ctx: typer.Context,
    target: Annotated[str | None, typer.Option("--target")] = None,
) -> None:
    """Export the unit's vault secrets to the next workflow steps."""
    for name in secrets_to_steps(get_context(ctx), target):
        typer.echo(f"{name} exported")


@app.command("env")
def env_command(ctx: typer.Context) -> None:
    """Export ENV to the next workflow steps."""
    typer.echo(f"ENV={environment_to_steps(get_context(ctx))}")
