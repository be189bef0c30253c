# ABOUTME: Vault KV synchronisation of unit .env files and TLS certificates
# ABOUTME: Secret paths are namespaced kv/<id>/<target|global|env>/<secrets|certificats>

"""
Vault commands.

A unit's secrets live in a single KV entry whose CREDS field holds the raw
dotenv text:

    kv/<id>/<namespace>/secrets       .env contents
    kv/<id>/<namespace>/certificats   kubernetes TLS secret as JSON

The namespace is the explicit --target when given, "global" for global
units, and the current environment otherwise.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import structlog
import typer

from metarun.context import get_context
from metarun.errors import ConfigurationError, RunError
from metarun.meta import find_directories_matching

if TYPE_CHECKING:
    from metarun.context import RunContext
    from metarun.descriptor import Descriptor

logger = structlog.get_logger(__name__)

SECRETS_KEY = "secrets"
CERTIFICATES_KEY = "certificats"


def secret_namespace(descriptor: Descriptor, environment: str, target: str | None = None) -> str:
    unit_id = descriptor.require("id")
    if target:
        return f"{unit_id}/{target}"
    if descriptor.is_global:
        return f"{unit_id}/global"
    return f"{unit_id}/{environment}"


def kv_put(run: RunContext, path: str, creds: str) -> None:
    run.runner.run(["vault", "kv", "put", f"kv/{path}", f"CREDS={creds}"], run.cwd, redact=[creds])


def kv_get(run: RunContext, path: str) -> str:
    """
    Return the CREDS field of a KV entry.

    Works with both KV engines: v2 nests the fields under data.data.
    """
    result = run.runner.run(["vault", "kv", "get", "-format=json", f"kv/{path}"], run.cwd, capture=True)
    if run.runner.dry_run:
        return ""
    payload: dict[str, Any] = result.json() or {}
    data = payload.get("data") or {}
    if isinstance(data.get("data"), dict):
        data = data["data"]
    if "CREDS" not in data:
        raise RunError(f"kv/{path} has no CREDS field")
    return data["CREDS"]


def import_env(run: RunContext, target: str | None = None, envfile: Path | None = None) -> str:
    """
    Push a local env file to vault.

    Defaults to `.env.<target>` with target "local".

    Returns:
        The vault path written.
    """
    target = target or "local"
    source = envfile or run.cwd / f".env.{target}"
    if not source.is_file():
        raise ConfigurationError(f"file {source} not found")
    path = f"{secret_namespace(run.descriptor(), run.env, target)}/{SECRETS_KEY}"
    kv_put(run, path, source.read_text(encoding="utf-8"))
    return path


def export_env(run: RunContext, target: str | None = None, envfile: Path | None = None) -> Path:
    """
    Write a vault secret to the unit's .env (or envfile).

    An existing .env is copied to .env.backup first.
    """
    destination = envfile or run.cwd / ".env"
    run.guard.check_destructive("vault_export", str(destination))
    path = f"{secret_namespace(run.descriptor(), run.env, target)}/{SECRETS_KEY}"
    creds = kv_get(run, path)
    if run.runner.dry_run:
        return destination
    if destination.exists():
        shutil.copyfile(destination, destination.with_name(".env.backup"))
    destination.write_text(creds, encoding="utf-8")
    logger.info("env file exported", path=str(destination), source=path)
    return destination


def export_all(run: RunContext, target: str | None = None) -> list[Path]:
    """
    Export every unit declaring `secrets` under the source root, root included.

    Units whose vault.ignoreEnv lists the current environment are skipped.
    """
    directories = [match.directory for match in find_directories_matching("secrets", root_path=run.src)]
    root_descriptor = run.descriptor(run.src) if (run.src / "meta.json").is_file() else None
    if root_descriptor is not None and root_descriptor.secrets is not None:
        directories.append(str(run.src))
    written = []
    for directory in directories:
        unit_run = run.at(directory)
        settings = unit_run.descriptor().vault
        if settings is not None and run.env in settings.ignore_env:
            logger.info("vault export skipped for this environment", directory=directory, environment=run.env)
            continue
        written.append(export_env(unit_run, target))
    return written


def certificates_to_vault(run: RunContext, certificate_json: str) -> str:
    path = f"{secret_namespace(run.descriptor(), run.env)}/{CERTIFICATES_KEY}"
    kv_put(run, path, certificate_json)
    return path


def certificates_from_vault(run: RunContext) -> str:
    return kv_get(run, f"{secret_namespace(run.descriptor(), run.env)}/{CERTIFICATES_KEY}")


# =============================================================================
# CLI
# =============================================================================

app = typer.Typer(no_args_is_help=True, help="Unit secrets in vault")

Target = Annotated[str | None, typer.Option("--target", help="Namespace instead of the environment")]
EnvFile = Annotated[Path | None, typer.Option("--envfile", help="Env file to read or write")]


@app.command("import")
def import_command(ctx: typer.Context, target: Target = None, envfile: EnvFile = None) -> None:
    """Upload .env.<target> to vault."""
    path = import_env(get_context(ctx), target, envfile)
    typer.echo(f"kv/{path} updated")


@app.command("export")
def export_command(
    ctx: typer.Context,
    target: Target = None,
    envfile: EnvFile = None,
    all_units: Annotated[bool, typer.Option("--all", help="Every unit declaring secrets")] = False,
) -> None:
    """Download vault secrets into .env."""
    run = get_context(ctx)
    written = export_all(run, target) if all_units else [export_env(run, target, envfile)]
    for path in written:
        typer.echo(f"{path} written")
