# ABOUTME: GKE cluster commands: credentials, namespaces, secrets, TLS certificates and pod deployment
# ABOUTME: Kubernetes names are derived from the cluster section of meta.json

"""
Cluster commands.

Units of type `cluster` describe an application group on the shared GKE
cluster; units of type `cluster_app` (under `<cluster>/app/<name>`) are
the pods deployed into it. Both carry a `cluster` section:

    "cluster": {"app": "core", "namespace": "core", "tls": true, "priority": 1}

Names derived from it:

    secrets-<app>-<name>       generic secret built from the unit's .env
    certificat-<app>-<name>    TLS secret mirrored in vault
    gcr.io/<project>/<app>-<name>-<container>:<env>   pod images
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import structlog
import typer

from metarun.batch import BatchResult, BatchUnit, run_batch
from metarun.commands import action, custom, vault
from metarun.context import get_context
from metarun.descriptor import ClusterConfig, UnitType, parse_descriptor
from metarun.environment import env_from_git_branch, read_env_file
from metarun.errors import CommandError, ConfigurationError, DescriptorError, RunError
from metarun.meta import find_directories_matching, list_subdirectories, read_meta

if TYPE_CHECKING:
    from metarun.context import RunContext
    from metarun.descriptor import Descriptor

logger = structlog.get_logger(__name__)

VOLATILE_METADATA = ("creationTimestamp", "resourceVersion", "uid")


class ClusterNotFoundError(RunError):
    code = "CLUSTER_NOT_FOUND"


def cluster_section(descriptor: Descriptor) -> ClusterConfig:
    return descriptor.require("cluster")


def namespace_of(section: ClusterConfig) -> str:
    """cluster.namespace, falling back to cluster.app."""
    return section.namespace or section.app or "default"


def secret_name(descriptor: Descriptor) -> str:
    return f"secrets-{cluster_section(descriptor).app}-{descriptor.require('name')}"


def certificate_name(descriptor: Descriptor) -> str:
    return f"certificat-{cluster_section(descriptor).app}-{descriptor.require('name')}"


def strip_volatile_metadata(resource: dict[str, Any]) -> dict[str, Any]:
    """Drop server-managed metadata so an exported secret can be re-applied."""
    cleaned = dict(resource)
    metadata = dict(cleaned.get("metadata") or {})
    for key in VOLATILE_METADATA:
        metadata.pop(key, None)
    cleaned["metadata"] = metadata
    return cleaned


# =============================================================================
# CONNECTION AND NAMESPACES
# =============================================================================


def connect(run: RunContext) -> str:
    """
    Fetch credentials for <prefix>-<env> into the kubeconfig.

    Raises:
        ClusterNotFoundError: When gcloud reports a 404.
    """
    settings = run.settings
    if not settings.cluster_project:
        raise ConfigurationError("RUN_CLUSTER_PROJECT is not set")
    argv = [
        "gcloud",
        "container",
        "clusters",
        "get-credentials",
        settings.cluster_name,
        "--project",
        settings.cluster_project,
        "--zone",
        settings.cluster_zone,
    ]
    try:
        run.runner.run(argv, run.cwd, capture=True)
    except CommandError as err:
        if err.matches("404"):
            raise ClusterNotFoundError(f"cluster {settings.cluster_name} not found") from err
        raise
    return settings.cluster_name


def set_namespace(run: RunContext, namespace: str) -> None:
    """Create the namespace if needed (idempotent apply of a dry-run manifest)."""
    run.runner.pipe(
        ["kubectl", "create", "namespace", namespace, "--dry-run=client", "-o", "yaml"],
        ["kubectl", "apply", "-f", "-"],
        run.cwd,
    )


def use_namespace(run: RunContext, namespace: str) -> None:
    run.runner.run(["kubectl", "config", "set-context", "--current", f"--namespace={namespace}"], run.cwd)


def _delete_secret_if_present(run: RunContext, name: str) -> None:
    try:
        run.runner.run(["kubectl", "delete", "secret", name], run.cwd, capture=True)
    except CommandError as err:
        if not err.matches("not found"):
            raise


# =============================================================================
# SECRETS AND CERTIFICATES
# =============================================================================


def create_secrets(run: RunContext) -> str | None:
    """
    Replace secrets-<app>-<name> with the contents of the unit's .env.

    Returns:
        The secret name, or None when the unit has no .env file.
    """
    descriptor = run.descriptor()
    section = cluster_section(descriptor)
    name = secret_name(descriptor)
    env_file = run.cwd / ".env"
    run.guard.check_write("secrets_replace", name)
    use_namespace(run, namespace_of(section))
    _delete_secret_if_present(run, name)
    if not env_file.is_file():
        logger.info("no .env file, secret not created", secret=name)
        return None
    run.runner.run(["kubectl", "create", "secret", "generic", name, f"--from-env-file={env_file}"], run.cwd)
    return name


def export_certificate(run: RunContext) -> str | None:
    """Copy the TLS secret of a unit into vault. Returns the vault path."""
    descriptor = run.descriptor()
    section = cluster_section(descriptor)
    if not section.tls:
        return None
    result = run.runner.run(
        ["kubectl", "get", "secret", certificate_name(descriptor), "-n", namespace_of(section), "-o", "json"],
        run.cwd,
        capture=True,
    )
    return vault.certificates_to_vault(run, result.stdout)


def export_certificates_all(run: RunContext) -> list[str]:
    """Export the TLS secret of every unit with cluster.tls under the source root."""
    paths = []
    for match in find_directories_matching("cluster.tls", True, run.src):
        path = export_certificate(run.at(match.directory))
        if path:
            paths.append(path)
    return paths


def import_certificate(run: RunContext) -> str | None:
    """Recreate the TLS secret of a unit from its vault copy."""
    descriptor = run.descriptor()
    section = cluster_section(descriptor)
    if not section.tls:
        return None
    use_namespace(run, namespace_of(section))
    raw = vault.certificates_from_vault(run)
    if not raw:
        return None
    resource = strip_volatile_metadata(json.loads(raw))
    name = certificate_name(descriptor)
    _delete_secret_if_present(run, name)
    with tempfile.NamedTemporaryFile("w", suffix=".json", prefix="certificat-", delete=False) as f:
        json.dump(resource, f)
        manifest = f.name
    try:
        run.runner.run(["kubectl", "apply", "-f", manifest], run.cwd)
    finally:
        os.unlink(manifest)
    return name


# =============================================================================
# DEPLOYMENT
# =============================================================================


def workflow(run: RunContext, name: str, app_name: str, local: bool, **options: Any) -> None:
    """Run cluster-<name> remotely with gh, or locally with act."""
    if local:
        action.run_local(
            run,
            f"cluster-{name}",
            inputs={"APP_NAME": app_name},
            live=options.get("live", False),
            reuse=options.get("reuse", True),
            extra_args=["--env", f"ENV={run.env}"],
        )
        return
    action.run_remote(
        run,
        f"cluster-{name}.yaml",
        inputs=[f"APP_NAME={app_name}"],
        branch=options.get("branch") or "main",
        watch=options.get("watch", False),
    )


def remove(run: RunContext, app_name: str, local: bool = False, **options: Any) -> None:
    run.guard.check_destructive("cluster_remove", app_name)
    workflow(run, "remove", app_name, local, **options)


def apply_pod(run: RunContext) -> None:
    """kustomize build k8s/<env> | kubectl apply -f -"""
    descriptor = run.descriptor()
    section = cluster_section(descriptor)
    overlay = run.cwd / "k8s" / run.env
    if not overlay.is_dir():
        raise DescriptorError(str(run.cwd), f"no kustomize overlay at k8s/{run.env}")
    use_namespace(run, namespace_of(section))
    run.runner.pipe(
        ["kustomize", "build", "--load-restrictor", "LoadRestrictionsNone", str(overlay)],
        ["kubectl", "apply", "-f", "-"],
        run.cwd,
    )


def pod_images(run: RunContext) -> list[tuple[Path, str]]:
    """(container directory, image) for every directory under containers/."""
    descriptor = run.descriptor()
    section = cluster_section(descriptor)
    project = run.settings.cluster_project
    if not project:
        raise ConfigurationError("RUN_CLUSTER_PROJECT is not set")
    containers = run.cwd / "containers"
    images = []
    for name in list_subdirectories(containers):
        image = f"gcr.io/{project}/{section.app}-{descriptor.require('name')}-{name}:{run.env}"
        images.append((containers / name, image))
    return images


def build_pod(run: RunContext) -> list[str]:
    built = []
    for directory, image in pod_images(run):
        run.runner.run(
            ["docker", "build", "-t", image, "-f", str(directory / f"Dockerfile.{run.env}"), f"{directory}/"],
            run.cwd,
        )
        built.append(image)
    return built


def push_pod(run: RunContext) -> list[str]:
    pushed = []
    for _, image in pod_images(run):
        run.runner.run(["docker", "push", image], run.cwd)
        pushed.append(image)
    return pushed


def find_cluster_unit(run: RunContext, app_name: str) -> Path:
    """Directory under $SRC/app of the cluster unit named app_name."""
    apps = run.src / "app"
    for name in list_subdirectories(apps):
        raw = read_meta(apps / name) or {}
        if raw.get("type") == UnitType.CLUSTER.value and raw.get("name") == app_name:
            return apps / name
    raise RunError(f"cluster app {app_name} not found under {apps}")


def cluster_app_units(run: RunContext, cluster_dir: Path) -> list[BatchUnit]:
    """
    Pods under <cluster>/app as batch units ordered by cluster.priority.

    Pods whose cluster.ignoreEnv lists the current git branch are left out.
    """
    branch = env_from_git_branch(run.runner, run.src)
    units = []
    pods = cluster_dir / "app"
    for name in list_subdirectories(pods):
        raw = read_meta(pods / name)
        if raw is None:
            continue
        descriptor = parse_descriptor(raw, str(pods / name))
        section = descriptor.cluster or ClusterConfig()
        if branch and branch in section.ignore_env:
            logger.info("pod ignored on this branch", pod=name, branch=branch)
            continue
        units.append(BatchUnit(name=descriptor.name or name, directory=str(pods / name), priority=section.priority))
    return units


def deploy_apps(run: RunContext, app_name: str, tls: bool = True) -> BatchResult:
    """
    Run the `init` script of every pod of a cluster app, lowest priority first.

    Each pod's script receives {"tls": tls} in its context.
    """
    cluster_dir = find_cluster_unit(run, app_name)
    units = cluster_app_units(run, cluster_dir)

    def deploy(unit: BatchUnit) -> None:
        unit_run = run.at(unit.directory)
        env = read_env_file(Path(unit.directory) / ".env")
        custom.run_script(unit_run, "init", [], inputs={"tls": str(tls).lower()}, env=env)

    return run_batch(units, deploy, run.settings.batch_policy)


# =============================================================================
# CLI
# =============================================================================

app = typer.Typer(no_args_is_help=True, help="GKE cluster operations")
certs_app = typer.Typer(no_args_is_help=True, help="TLS certificates between the cluster and vault")
pod_app = typer.Typer(no_args_is_help=True, help="Pods of a cluster app")
apps_app = typer.Typer(no_args_is_help=True, help="Every pod of a cluster app")
app.add_typer(certs_app, name="certs")
app.add_typer(pod_app, name="pod")
app.add_typer(apps_app, name="apps")

AppName = Annotated[str, typer.Argument(help="cluster app name")]
Local = Annotated[bool, typer.Option("--local", help="Run the workflow with act")]
Watch = Annotated[bool, typer.Option("--watch", help="Follow the remote run")]
Live = Annotated[bool, typer.Option("--live", help="Live mode in act")]
Reuse = Annotated[bool, typer.Option("--reuse/--no-reuse", help="Reuse act containers")]


@app.command("connect")
def connect_command(ctx: typer.Context) -> None:
    """Fetch cluster credentials for the current environment."""
    typer.echo(f"connected to {connect(get_context(ctx))}")


@app.command("namespace")
def namespace_command(ctx: typer.Context, name: str) -> None:
    """Create a namespace if it does not exist."""
    set_namespace(get_context(ctx), name)


@app.command("secrets")
def secrets_command(ctx: typer.Context) -> None:
    """Recreate the unit's kubernetes secret from .env."""
    name = create_secrets(get_context(ctx))
    typer.echo(name or "no .env file, nothing created")


@app.command("deploy")
def deploy_command(
    ctx: typer.Context,
    app_name: AppName,
    local: Local = False,
    watch: Watch = False,
    live: Live = False,
    reuse: Reuse = True,
    branch: Annotated[str | None, typer.Option("--branch")] = None,
) -> None:
    """Deploy a cluster app through the cluster-deploy workflow."""
    workflow(get_context(ctx), "deploy", app_name, local, watch=watch, live=live, reuse=reuse, branch=branch)


@app.command("remove")
def remove_command(
    ctx: typer.Context,
    app_name: AppName,
    local: Local = False,
    watch: Watch = False,
    live: Live = False,
    reuse: Reuse = True,
) -> None:
    """Remove a cluster app through the cluster-remove workflow."""
    remove(get_context(ctx), app_name, local, watch=watch, live=live, reuse=reuse)


@certs_app.command("export")
def certs_export_command(
    ctx: typer.Context,
    all_units: Annotated[bool, typer.Option("--all", help="Every unit with cluster.tls")] = False,
) -> None:
    """Copy TLS secrets from the cluster to vault."""
    run = get_context(ctx)
    connect(run)
    paths = export_certificates_all(run) if all_units else [p for p in [export_certificate(run)] if p]
    for path in paths:
        typer.echo(f"kv/{path} updated")


@certs_app.command("import")
def certs_import_command(ctx: typer.Context) -> None:
    """Recreate the TLS secret from vault."""
    name = import_certificate(get_context(ctx))
    typer.echo(name or "tls disabled or no certificate in vault")


@pod_app.command("apply")
def pod_apply_command(ctx: typer.Context) -> None:
    """Apply the kustomize overlay of the current environment."""
    apply_pod(get_context(ctx))


@pod_app.command("build")
def pod_build_command(ctx: typer.Context) -> None:
    """Build every container image of the pod."""
    for image in build_pod(get_context(ctx)):
        typer.echo(image)


@pod_app.command("push")
def pod_push_command(ctx: typer.Context) -> None:
    """Push every container image of the pod."""
    for image in push_pod(get_context(ctx)):
        typer.echo(image)


@apps_app.command("deploy")
def apps_deploy_command(
    ctx: typer.Context,
    app_name: AppName,
    tls: Annotated[bool, typer.Option("--tls/--no-tls", help="Fetch certificates from vault")] = True,
) -> None:
    """Initialise every pod of a cluster app by priority group."""
    run = get_context(ctx)
    result = deploy_apps(run, app_name, tls)
    run.console.print(result.summary())
    if not result.ok:
        raise typer.Exit(1)
