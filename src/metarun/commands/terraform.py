# ABOUTME: Terraform commands driven by the terraform section of meta.json
# ABOUTME: Backend prefixes per unit/scope/component, image digests as TF_VAR_s, and priority-ordered apply-all

"""
Terraform wrappers.

=============================================================================
REMOTE STATE LAYOUT
=============================================================================

All units share one GCS bucket (TERRAFORM_BUCKET_NAME). Each component of
each unit gets its own prefix:

    <id>/<environment>/terraform/<component>     environment-scoped
    <id>/global/terraform/<component>            component marked global

`terraform init` is always run with both as -backend-config, so switching
environment never requires editing backend blocks. Init runs with
--lock=false; a leftover lock from an interrupted run is removed with
`run terraform unlock`.

=============================================================================
IMAGE DIGESTS
=============================================================================

A component listing `containers` deploys images built by `run docker
register`. Before apply, the digest of each container's image is exported
as TF_VAR_IMAGE_DIGEST_<CONTAINER> so terraform pins the exact image.
"""

from __future__ import annotations

import asyncio
import json
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import structlog
import typer

from metarun.batch import BatchPolicy, BatchResult, BatchUnit, run_batch
from metarun.commands import docker
from metarun.context import get_context
from metarun.descriptor import parse_descriptor
from metarun.environment import TF_VAR_PREFIX, read_env_file, unit_env_values, with_tf_vars
from metarun.errors import ConfigurationError, DescriptorError
from metarun.meta import find_directories_matching
from metarun.utils.storage import StorageClient, resolve_access_token

if TYPE_CHECKING:
    from collections.abc import Sequence

    from metarun.context import RunContext
    from metarun.descriptor import Descriptor, TerraformComponent

logger = structlog.get_logger(__name__)

LOCK_FILENAME = "default.tflock"


# =============================================================================
# RESOLUTION
# =============================================================================


def select_component(descriptor: Descriptor, name: str | None) -> tuple[str, TerraformComponent]:
    """
    Pick a terraform component.

    Without a name, a descriptor with a single component uses it; otherwise
    "default" is required.
    """
    components = descriptor.require("terraform")
    if name is None and len(components) == 1:
        name = next(iter(components))
    return name or "default", descriptor.component("terraform", name)


def state_prefix(unit_id: str, environment: str, component: str, is_global: bool) -> str:
    scope = "global" if is_global else environment
    return f"{unit_id}/{scope}/terraform/{component}"


def backend_args(run: RunContext, descriptor: Descriptor, component: str, spec: TerraformComponent) -> list[str]:
    """-backend-config arguments for `terraform init`."""
    bucket = run.settings.terraform_bucket_name
    if not bucket:
        raise ConfigurationError("TERRAFORM_BUCKET_NAME is not set")
    unit_id = descriptor.require("id")
    prefix = state_prefix(unit_id, run.env, component, spec.global_)
    return [f"-backend-config=bucket={bucket}", f"-backend-config=prefix={prefix}"]


def image_digests(
    run: RunContext,
    containers: Sequence[str],
    arch: str = "amd64",
    modifiers: Sequence[str] = (),
) -> dict[str, str]:
    """
    TF_VAR_IMAGE_DIGEST_<NAME> for every container.

    A modifier "<container>:<tag>" selects the `<env>-<tag>` image of that
    container instead of the plain `<env>` one.
    """
    variables: dict[str, str] = {}
    for container in containers:
        modifier = None
        for entry in modifiers:
            if entry.startswith(f"{container}:"):
                modifier = entry.split(":", 1)[1]
                break
        value = docker.digest(run, arch, container, modifier)
        variables[f"{TF_VAR_PREFIX}IMAGE_DIGEST_{container.upper()}"] = value
    return variables


def _workdir(run: RunContext, spec: TerraformComponent) -> Path:
    workdir = run.cwd / spec.path
    if not workdir.is_dir():
        raise DescriptorError(str(run.cwd), f"terraform path '{spec.path}' is not a directory")
    return workdir


def _init(
    run: RunContext,
    workdir: Path,
    backend: list[str],
    clean: bool,
    env: dict[str, str] | None,
) -> None:
    if clean:
        remove_dot_terraform(run, workdir)
    run.runner.run(["terraform", "init", *backend, "--lock=false"], workdir, env=env)


def remove_dot_terraform(run: RunContext, workdir: Path) -> bool:
    target = workdir / ".terraform"
    if not target.exists():
        return False
    if run.runner.dry_run:
        logger.info("dry run, .terraform kept", path=str(target))
        return False
    shutil.rmtree(target)
    return True


# =============================================================================
# OPERATIONS
# =============================================================================


def apply(
    run: RunContext,
    component: str | None = None,
    arch: str = "amd64",
    modifiers: Sequence[str] = (),
    clean: bool = False,
    env: dict[str, str] | None = None,
) -> None:
    """init, plan and apply -auto-approve one component."""
    descriptor = run.descriptor()
    name, spec = select_component(descriptor, component)
    backend = backend_args(run, descriptor, name, spec)
    workdir = _workdir(run, spec)
    run.guard.check_write("terraform_apply", f"{descriptor.name or run.cwd}:{name}")

    variables = dict(env or {})
    variables.update(image_digests(run, spec.containers, arch, modifiers))

    _init(run, workdir, backend, clean, variables)
    run.runner.run(["terraform", "plan"], workdir, env=variables)
    run.runner.run(["terraform", "apply", "-auto-approve"], workdir, env=variables)


def destroy(
    run: RunContext,
    component: str | None = None,
    clean: bool = False,
    env: dict[str, str] | None = None,
) -> None:
    """plan -destroy then destroy -auto-approve, after confirmation."""
    descriptor = run.descriptor()
    name, spec = select_component(descriptor, component)
    backend = backend_args(run, descriptor, name, spec)
    workdir = _workdir(run, spec)
    run.guard.check_destructive(
        "terraform_destroy",
        f"{descriptor.name or run.cwd}:{name}",
        {"state": backend[1].split("=", 2)[-1]},
    )

    variables = dict(env or {})
    # Digests are irrelevant for destroy but the variables must be declared.
    for container in spec.containers:
        variables[f"{TF_VAR_PREFIX}IMAGE_DIGEST_{container.upper()}"] = ""

    _init(run, workdir, backend, clean, variables)
    run.runner.run(["terraform", "plan", "-destroy"], workdir, env=variables)
    run.runner.run(["terraform", "destroy", "-auto-approve"], workdir, env=variables)


def plan(run: RunContext, component: str | None = None, clean: bool = False) -> None:
    descriptor = run.descriptor()
    name, spec = select_component(descriptor, component)
    workdir = _workdir(run, spec)
    _init(run, workdir, backend_args(run, descriptor, name, spec), clean, None)
    run.runner.run(["terraform", "plan"], workdir)


def output(run: RunContext, component: str | None = None) -> dict:
    """Return `terraform output -json` as a dict."""
    descriptor = run.descriptor()
    name, spec = select_component(descriptor, component)
    workdir = _workdir(run, spec)
    _init(run, workdir, backend_args(run, descriptor, name, spec), False, None)
    result = run.runner.run(["terraform", "output", "-json"], workdir, capture=True)
    return json.loads(result.stdout or "{}")


def state(run: RunContext, action: str, args: Sequence[str], component: str | None = None) -> str:
    """
    terraform state pull|push|mv in a component directory.

    Returns:
        Captured stdout for pull, "" otherwise.
    """
    descriptor = run.descriptor()
    name, spec = select_component(descriptor, component)
    workdir = _workdir(run, spec)
    _init(run, workdir, backend_args(run, descriptor, name, spec), False, None)
    if action == "pull":
        return run.runner.run(["terraform", "state", "pull"], workdir, capture=True).stdout
    if action == "push":
        run.guard.check_destructive("state_push", f"{descriptor.name or run.cwd}:{name}")
    run.runner.run(["terraform", "state", action, *args], workdir)
    return ""


def import_resource(run: RunContext, address: str, resource_id: str, component: str | None = None) -> None:
    descriptor = run.descriptor()
    name, spec = select_component(descriptor, component)
    workdir = _workdir(run, spec)
    _init(run, workdir, backend_args(run, descriptor, name, spec), False, None)
    run.runner.run(["terraform", "import", address, resource_id], workdir)


def clean(run: RunContext) -> list[str]:
    """Remove the .terraform directory of every component of the unit."""
    descriptor = run.descriptor()
    removed = []
    for name, spec in descriptor.require("terraform").items():
        if remove_dot_terraform(run, run.cwd / spec.path):
            removed.append(name)
    return removed


def unlock(run: RunContext, component: str | None = None, environment: str | None = None) -> bool:
    """
    Delete the state lock of a component.

    Returns:
        True if a lock was removed, False if there was none.
    """
    descriptor = run.descriptor()
    name, spec = select_component(descriptor, component)
    prefix = state_prefix(descriptor.require("id"), environment or run.env, name, spec.global_)
    lock = f"{prefix}/{LOCK_FILENAME}"
    run.guard.check_destructive("terraform_unlock", lock)
    bucket = run.settings.terraform_bucket_name or ""
    token = resolve_access_token(run.settings, run.runner, run.cwd)

    async def _delete() -> bool:
        async with StorageClient(bucket, token) as storage:
            return await storage.delete_object(lock)

    return asyncio.run(_delete())


def render_variables_tf(names: Sequence[str]) -> str:
    """variables.tf declaring each variable plus a locals env_vars list (PORT excluded)."""
    lines = ["# variables.tf", ""]
    lines += [f'variable "{name}" {{}}' for name in names]
    lines += ["", "locals {", "  env_vars = ["]
    entries = [
        f'    {{\n      name  = "{name}"\n      value = var.{name}\n    }}' for name in names if name != "PORT"
    ]
    lines.append(",\n".join(entries))
    lines += ["  ]", "}", ""]
    return "\n".join(lines)


def generate_variables(run: RunContext, component: str | None = None, target: str | None = None) -> Path:
    """
    Write <component>/variables.tf from the unit's env files.

    Every variable of `.env.base` (when declared) and `.env.<target>` is
    declared, plus IMAGE_DIGEST_<CONTAINER> for each container and the
    PROJECT/APP/GCP_PROJECT_ID defaults.
    """
    descriptor = run.descriptor()
    _, spec = select_component(descriptor, component)
    target = target or run.target
    values = unit_env_values(run.cwd, target, run.src, run.environ)
    if values is None:
        values = with_tf_vars(read_env_file(run.cwd / f".env.{target}"))
    for container in spec.containers:
        values.setdefault(f"{TF_VAR_PREFIX}IMAGE_DIGEST_{container.upper()}", "")

    names = sorted({key[len(TF_VAR_PREFIX) :] for key in values if key.startswith(TF_VAR_PREFIX)})
    path = _workdir(run, spec) / "variables.tf"
    path.write_text(render_variables_tf(names), encoding="utf-8")
    logger.info("variables.tf written", path=str(path), variables=len(names))
    return path


# =============================================================================
# BATCH
# =============================================================================


def discover_units(root: str | Path) -> list[BatchUnit]:
    """One BatchUnit per terraform component under root, with its priority."""
    units = []
    for match in find_directories_matching("terraform", root_path=root):
        descriptor = parse_descriptor(match.descriptor, match.directory)
        for name, spec in (descriptor.terraform or {}).items():
            units.append(
                BatchUnit(
                    name=f"{descriptor.name or Path(match.directory).name}:{name}",
                    directory=match.directory,
                    priority=spec.priority,
                    payload=name,
                )
            )
    return units


def apply_all(
    run: RunContext,
    root: Path | None = None,
    policy: BatchPolicy | None = None,
    arch: str = "amd64",
    clean: bool = False,
) -> BatchResult:
    """Apply every terraform component under root, lowest priority first."""
    units = discover_units(root or run.src)

    def action(unit: BatchUnit) -> None:
        unit_run = run.at(unit.directory)
        env = unit_env_values(unit.directory, run.target, run.src, run.environ) or {}
        apply(unit_run, unit.payload, arch=arch, clean=clean, env=env)

    return run_batch(units, action, policy or run.settings.batch_policy)


# =============================================================================
# CLI
# =============================================================================

app = typer.Typer(no_args_is_help=True, help="Infrastructure with terraform")
state_app = typer.Typer(no_args_is_help=True, help="terraform state for a component")
app.add_typer(state_app, name="state")

Component = Annotated[str | None, typer.Argument(help="terraform component")]
ComponentOption = Annotated[str | None, typer.Option("--component", help="terraform component")]
Clean = Annotated[bool, typer.Option("--clean", help="Delete .terraform before init")]


@app.command("apply")
def apply_command(
    ctx: typer.Context,
    component: Component = None,
    arch: Annotated[str, typer.Option("--arch")] = "amd64",
    modifiers: Annotated[list[str] | None, typer.Option("--modifier", help="<container>:<tag>")] = None,
    clean: Clean = False,
) -> None:
    """Apply one component of the current unit."""
    apply(get_context(ctx), component, arch, modifiers or [], clean)


@app.command("destroy")
def destroy_command(ctx: typer.Context, component: Component = None, clean: Clean = False) -> None:
    """Destroy one component of the current unit."""
    destroy(get_context(ctx), component, clean)


@app.command("plan")
def plan_command(ctx: typer.Context, component: Component = None, clean: Clean = False) -> None:
    """Show the plan of one component."""
    plan(get_context(ctx), component, clean)


@app.command("apply-all")
def apply_all_command(
    ctx: typer.Context,
    root: Annotated[Path | None, typer.Option("--root", help="Directory to search (default: $SRC)")] = None,
    fail_fast: Annotated[bool, typer.Option("--fail-fast", help="Stop at the first failure")] = False,
    arch: Annotated[str, typer.Option("--arch")] = "amd64",
    clean: Clean = False,
) -> None:
    """Apply every terraform component under a root, by priority group."""
    run = get_context(ctx)
    result = apply_all(run, root, BatchPolicy.FAIL_FAST if fail_fast else None, arch, clean)
    run.console.print(result.summary())
    if not result.ok:
        raise typer.Exit(1)


@app.command("output")
def output_command(ctx: typer.Context, component: Component = None) -> None:
    """Print terraform outputs as JSON."""
    typer.echo(json.dumps(output(get_context(ctx), component), indent=2))


@app.command("import")
def import_command(
    ctx: typer.Context,
    address: str,
    resource_id: str,
    component: ComponentOption = None,
) -> None:
    """Import an existing resource into a component's state."""
    import_resource(get_context(ctx), address, resource_id, component)


@app.command("clean")
def clean_command(ctx: typer.Context) -> None:
    """Delete the .terraform directory of every component."""
    for name in clean(get_context(ctx)):
        typer.echo(f"State cleaned for {name}")


@app.command("unlock")
def unlock_command(
    ctx: typer.Context,
    component: Component = None,
    environment: Annotated[str | None, typer.Option("--environment")] = None,
) -> None:
    """Remove a leftover state lock from the bucket."""
    removed = unlock(get_context(ctx), component, environment)
    typer.echo("lock removed" if removed else "no lock found")


@app.command("env")
def env_command(
    ctx: typer.Context,
    component: Component = None,
    target: Annotated[str | None, typer.Option("--target", help=".env.<target> to read")] = None,
) -> None:
    """Generate variables.tf from the unit's env files."""
    path = generate_variables(get_context(ctx), component, target)
    typer.echo(f"{path} updated")


@state_app.command("pull")
def state_pull_command(ctx: typer.Context, component: ComponentOption = None) -> None:
    """Print the remote state."""
    typer.echo(state(get_context(ctx), "pull", [], component))


@state_app.command("push")
def state_push_command(ctx: typer.Context, path: Path, component: ComponentOption = None) -> None:
    """Replace the remote state with a local file."""
    state(get_context(ctx), "push", [str(path)], component)


@state_app.command("mv")
def state_mv_command(
    ctx: typer.Context,
    source: str,
    destination: str,
    component: ComponentOption = None,
) -> None:
    """Move an address inside the state."""
    state(get_context(ctx), "mv", [source, destination], component)
