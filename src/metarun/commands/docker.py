# ABOUTME: Docker commands: build, push, multi-arch register, digest lookup and compose
# ABOUTME: Image names, tags, Dockerfiles and contexts are computed from the docker section of meta.json

"""Docker and docker compose wrappers."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import structlog
import typer
import yaml

from metarun.context import get_context
from metarun.errors import DescriptorError, RunError

if TYPE_CHECKING:
    from metarun.context import RunContext

logger = structlog.get_logger(__name__)

ARCHITECTURES = ("amd64", "arm64")


@dataclass
class DockerTarget:
    """Resolved build inputs for one docker component."""

    dockerfile: Path
    context: Path
    image: str
    tags: list[str] = field(default_factory=list)

    @property
    def repository(self) -> str:
        return self.image.rsplit(":", 1)[0]


def resolve_target(
    run: RunContext,
    component: str | None = None,
    modifier: str | None = None,
    skip_tag_modifiers: bool = False,
) -> DockerTarget:
    """
    Compute Dockerfile, context, image and tags for a component.

    image is `<image>:<env>` (or `<image>:<env>-<modifier>`); every entry of
    `tag_modifiers` adds a `<image>-<tag>` tag. The Dockerfile is
    `Dockerfile.<env>` unless `env_based` is false.
    """
    descriptor = run.descriptor()
    spec = descriptor.component("docker", component)
    if not spec.image:
        raise DescriptorError(descriptor.directory, f"docker.{component or 'default'}.image is required")

    tag = f"{run.env}-{modifier}" if modifier else run.env
    image = f"{spec.image}:{tag}"
    tags = [image]
    if not skip_tag_modifiers:
        tags.extend(f"{image}-{extra}" for extra in spec.tag_modifiers if extra)

    root = run.cwd / spec.root
    dockerfile_name = f"Dockerfile.{run.env}" if spec.env_based else "Dockerfile"
    context = run.cwd / spec.context_dir if spec.context_dir else root
    return DockerTarget(dockerfile=root / dockerfile_name, context=context, image=image, tags=tags)


def build(
    run: RunContext,
    component: str | None = None,
    modifier: str | None = None,
    build_args: list[str] | None = None,
    cache: bool = True,
) -> DockerTarget:
    target = resolve_target(run, component, modifier)
    argv = ["docker", "build", f"--file={target.dockerfile}"]
    argv += [f"--tag={tag}" for tag in target.tags]
    argv += [f"--build-arg={arg}" for arg in build_args or []]
    if not cache:
        argv.append("--no-cache")
    argv.append(str(target.context))
    run.runner.run(argv, run.cwd)
    return target


def push(run: RunContext, component: str | None = None, modifier: str | None = None) -> None:
    target = resolve_target(run, component, modifier)
    for tag in target.tags:
        run.runner.run(["docker", "push", tag], run.cwd)


def manifest_exists(run: RunContext, image: str) -> bool:
    return run.runner.succeeds(["docker", "manifest", "inspect", image], run.cwd)


def manifest_entries(run: RunContext, tags: list[str], arch: str) -> list[str]:
    """
    Images to combine into each multi-arch manifest.

    When the other architecture was already pushed it is amended in,
    otherwise the manifest only lists the architecture just built.
    """
    other = "arm64" if arch == "amd64" else "amd64"
    entries: list[str] = []
    for tag in tags:
        entries.append(tag)
        if manifest_exists(run, f"{tag}-{other}"):
            entries.extend([f"{tag}-arm64", f"{tag}-amd64"])
        else:
            entries.append(f"{tag}-{arch}")
    return entries


def register(
    run: RunContext,
    arch: str,
    component: str | None = None,
    modifier: str | None = None,
    build_args: list[str] | None = None,
    cache: bool = False,
    cloud: bool = False,
    machine_type: str = "e2-highcpu-32",
    skip_tag_modifiers: bool = False,
) -> DockerTarget:
    """
    Build one architecture with buildx, push it, and update the manifest.

    Each tag is pushed as `<tag>-<arch>`, then `docker manifest create
    --amend` assembles `<tag>` from whichever architectures exist.
    """
    if arch not in ARCHITECTURES:
        raise typer.BadParameter(f"arch must be one of: {', '.join(ARCHITECTURES)}")
    target = resolve_target(run, component, modifier, skip_tag_modifiers)
    env = {"BUILDX_NO_DEFAULT_ATTESTATIONS": "1"}

    if cloud:
        dockerfile = os.path.relpath(target.dockerfile, run.cwd)
        context = os.path.relpath(target.context, run.cwd)
    else:
        dockerfile, context = str(target.dockerfile), str(target.context)

    buildx = ["docker", "buildx", "build", f"--platform=linux/{arch}", f"--file={dockerfile}", "--push"]
    if not cache and not cloud:
        buildx.append("--no-cache")
    buildx += [f"--build-arg={arg}" for arg in build_args or []]
    for tag in target.tags:
        buildx += [f"--tag={tag}", f"--tag={tag}-{arch}"]
    buildx.append(context)

    manifest_create = ["docker", "manifest", "create", "--amend", *manifest_entries(run, target.tags, arch)]
    manifest_push = ["docker", "manifest", "push", target.image]

    if cloud:
        _submit_cloud_build(run, [buildx, manifest_create, manifest_push], machine_type)
        return target

    if not run.runner.succeeds(["docker", "buildx", "inspect", "default"], run.cwd):
        raise RunError("docker buildx builder 'default' not found")
    run.runner.run(["docker", "buildx", "use", "default"], run.cwd)
    run.runner.run(buildx, run.cwd, env=env)
    run.runner.run(manifest_create, run.cwd)
    run.runner.run(manifest_push, run.cwd)
    return target


def _submit_cloud_build(run: RunContext, steps: list[list[str]], machine_type: str) -> None:
    config = {
        "options": {"env": ["BUILDX_NO_DEFAULT_ATTESTATIONS=1"]},
        "steps": [{"name": "gcr.io/cloud-builders/docker", "script": "docker buildx create --use"}]
        + [{"name": "gcr.io/cloud-builders/docker", "script": " ".join(step)} for step in steps],
    }
    with tempfile.NamedTemporaryFile("w", suffix=".yaml", prefix="cloud_build_", delete=False) as f:
        yaml.safe_dump(config, f, sort_keys=False)
        config_path = f.name
    try:
        run.runner.run(
            ["gcloud", "builds", "submit", f"--config={config_path}", f"--machine-type={machine_type}"],
            run.cwd,
        )
    finally:
        os.unlink(config_path)


def digest(
    run: RunContext,
    arch: str = "amd64",
    component: str | None = None,
    modifier: str | None = None,
) -> str:
    """
    Return `<repository>@<digest>` for the pushed image of one architecture.

    Raises:
        RunError: If the manifest has no entry for the architecture.
    """
    target = resolve_target(run, component, modifier)
    if run.runner.dry_run:
        return f"{target.repository}@sha256:dry-run"
    if arch not in ARCHITECTURES:
        return run.runner.output(
            ["docker", "inspect", "--format={{index .RepoDigests 0}}", target.image], run.cwd
        )
    result = run.runner.run(
        ["docker", "manifest", "inspect", f"{target.image}-{arch}", "--verbose"],
        run.cwd,
        capture=True,
    )
    manifests = result.json()
    if not isinstance(manifests, list):
        manifests = [manifests]
    for manifest in manifests:
        descriptor = manifest.get("Descriptor", {})
        if descriptor.get("platform", {}).get("architecture") == arch:
            return f"{target.repository}@{descriptor['digest']}"
    raise RunError(f"no {arch} digest in manifest of {target.image}-{arch}")


# =============================================================================
# COMPOSE
# =============================================================================


def compose_base(run: RunContext, component: str | None = None) -> list[str]:
    descriptor = run.descriptor()
    spec = descriptor.component("compose", component)
    argv = ["docker", "compose"]
    project = run.environ.get("PROJECT")
    if spec.use_project_env and project:
        argv += ["-p", project]
    argv += ["-f", str(run.cwd / spec.root / spec.filename)]
    return argv


def compose_up(
    run: RunContext,
    component: str | None = None,
    build: bool = False,
    detach: bool = False,
    force_recreate: bool = False,
    envfile: str | None = None,
    env: list[str] | None = None,
) -> None:
    """Bring a compose stack down, then up again with the requested flags."""
    base = compose_base(run, component)
    run.runner.run([*base, "down"], run.cwd)

    argv = list(base)
    temp_env: str | None = None
    if env:
        with tempfile.NamedTemporaryFile("w", suffix=".env", prefix="compose-env-", delete=False) as f:
            f.write("\n".join(env) + "\n")
            temp_env = f.name
        argv += ["--env-file", temp_env]
    elif envfile:
        argv += ["--env-file", envfile]

    argv.append("up")
    if force_recreate:
        argv.append("--force-recreate")
    if detach:
        argv.append("--detach")
    if build:
        argv.append("--build")
    try:
        run.runner.run(argv, run.cwd)
    finally:
        if temp_env:
            os.unlink(temp_env)


def compose_down(run: RunContext, component: str | None = None) -> None:
    run.runner.run([*compose_base(run, component), "down"], run.cwd)


def compose_build(run: RunContext, component: str | None = None, cache: bool = True) -> None:
    argv = [*compose_base(run, component), "build"]
    if not cache:
        argv.append("--no-cache")
    run.runner.run(argv, run.cwd)


def compose_logs(run: RunContext, component: str | None = None, follow: bool = False) -> None:
    argv = [*compose_base(run, component), "logs"]
    if follow:
        argv.append("--follow")
    run.runner.run(argv, run.cwd)


# =============================================================================
# CLI
# =============================================================================

app = typer.Typer(no_args_is_help=True, help="Docker images and compose stacks")
compose_app = typer.Typer(no_args_is_help=True, help="docker compose for meta.json components")
app.add_typer(compose_app, name="compose")

Component = Annotated[str | None, typer.Argument(help="docker component (default: 'default')")]
Modifier = Annotated[str | None, typer.Option("--modifier", help="Tag suffix: <env>-<modifier>")]
BuildArgs = Annotated[list[str] | None, typer.Option("--build-arg", help="KEY=VALUE build argument")]


@app.command("build")
def build_command(
    ctx: typer.Context,
    component: Component = None,
    modifier: Modifier = None,
    build_arg: BuildArgs = None,
    no_cache: Annotated[bool, typer.Option("--no-cache")] = False,
) -> None:
    """Build the image for the current unit."""
    target = build(get_context(ctx), component, modifier, build_arg, cache=not no_cache)
    typer.echo(target.image)


@app.command("push")
def push_command(ctx: typer.Context, component: Component = None, modifier: Modifier = None) -> None:
    """Push every tag of the image."""
    push(get_context(ctx), component, modifier)


@app.command("register")
def register_command(
    ctx: typer.Context,
    component: Component = None,
    arch: Annotated[str, typer.Option("--arch", help="amd64 or arm64")] = "amd64",
    modifier: Modifier = None,
    build_arg: BuildArgs = None,
    cache: Annotated[bool, typer.Option("--cache", help="Use the build cache")] = False,
    cloud: Annotated[bool, typer.Option("--cloud", help="Build on Cloud Build")] = False,
    machine_type: Annotated[str, typer.Option("--machine-type")] = "e2-highcpu-32",
    skip_tag_modifiers: Annotated[bool, typer.Option("--skip-tag-modifiers")] = False,
) -> None:
    """Build and push one architecture, then update the multi-arch manifest."""
    target = register(
        get_context(ctx),
        arch,
        component,
        modifier,
        build_arg,
        cache=cache,
        cloud=cloud,
        machine_type=machine_type,
        skip_tag_modifiers=skip_tag_modifiers,
    )
    typer.echo(target.image)


@app.command("digest")
def digest_command(
    ctx: typer.Context,
    component: Component = None,
    arch: Annotated[str, typer.Option("--arch")] = "amd64",
    modifier: Modifier = None,
) -> None:
    """Print <repository>@<digest> of the pushed image."""
    typer.echo(digest(get_context(ctx), arch, component, modifier))


@compose_app.command("up")
def compose_up_command(
    ctx: typer.Context,
    component: Component = None,
    build: Annotated[bool, typer.Option("--build")] = False,
    detach: Annotated[bool, typer.Option("--detach", "-d")] = False,
    force_recreate: Annotated[bool, typer.Option("--force-recreate")] = False,
    envfile: Annotated[str | None, typer.Option("--envfile")] = None,
    env: Annotated[list[str] | None, typer.Option("--env", help="KEY=VALUE")] = None,
) -> None:
    """Recreate a compose stack."""
    compose_up(get_context(ctx), component, build, detach, force_recreate, envfile, env)


@compose_app.command("down")
def compose_down_command(ctx: typer.Context, component: Component = None) -> None:
    """Stop a compose stack."""
    compose_down(get_context(ctx), component)


@compose_app.command("build")
def compose_build_command(
    ctx: typer.Context,
    component: Component = None,
    no_cache: Annotated[bool, typer.Option("--no-cache")] = False,
) -> None:
    """Build the images of a compose stack."""
    compose_build(get_context(ctx), component, cache=not no_cache)


@compose_app.command("logs")
def compose_logs_command(
    ctx: typer.Context,
    component: Component = None,
    follow: Annotated[bool, typer.Option("--follow", "-f")] = False,
) -> None:
    """Show logs of a compose stack."""
    compose_logs(get_context(ctx), component, follow)
