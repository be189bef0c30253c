# ABOUTME: Project scaffolding: a new directory with meta.json, env template and devcontainer
# ABOUTME: The devcontainer points LOCALHOST_SRC at the host path so docker bind mounts resolve

"""
`run machine init`.

Creates <cwd>/<name> with:

    meta.json                      {"id": <nanoid>, "name": <name>, "type": "app"}
    Readme.md                      one header line
    .env.template                  ENV and PROJECT placeholders
    .gitignore                     env files and tool state
    .devcontainer/devcontainer.json   (optional)

and optionally runs `git init` inside it.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import structlog
import typer

from metarun.commands.utils import nanoid
from metarun.context import get_context
from metarun.descriptor import UnitType
from metarun.errors import RunError
from metarun.meta import write_meta

if TYPE_CHECKING:
    from metarun.context import RunContext

logger = structlog.get_logger(__name__)

ENV_TEMPLATE = "ENV=\nPROJECT=\nAPP=\nGCP_PROJECT_ID=\n"

GITIGNORE = "\n".join(
    [
        ".env",
        ".env.*",
        "!.env.template",
        ".env.backup",
        "node_modules/",
        ".terraform/",
        "*.tfstate*",
        "__pycache__/",
        "",
    ]
)


def devcontainer_config(name: str, host_path: str) -> dict[str, Any]:
    return {
        "name": name,
        "build": {"dockerfile": "Dockerfile"},
        "runArgs": ["--init", "--privileged", "--network=host", f"--name={name}"],
        "remoteEnv": {"LOCALHOST_SRC": host_path, "SRC": "${containerWorkspaceFolder}"},
    }


def init(run: RunContext, name: str, devcontainer: bool = True, git: bool = True) -> Path:
    """
    Scaffold a new project directory under the current directory.

    Raises:
        RunError: If the directory exists and is not empty.

    Returns:
        The project directory.
    """
    project = run.cwd / name
    if project.exists() and any(project.iterdir()):
        raise RunError(f"{project} already exists and is not empty")
    project.mkdir(parents=True, exist_ok=True)

    write_meta(project, {"id": nanoid(), "name": name, "type": UnitType.APP.value})
    (project / "Readme.md").write_text(f"# {name}\n", encoding="utf-8")
    (project / ".env.template").write_text(ENV_TEMPLATE, encoding="utf-8")
    (project / ".gitignore").write_text(GITIGNORE, encoding="utf-8")

    if devcontainer:
        # LOCALHOST_SRC is the path docker sees on the host, not inside the container.
        host_root = run.settings.localhost_src or str(run.cwd)
        config = devcontainer_config(name, f"{host_root.rstrip('/')}/{name}")
        target = project / ".devcontainer" / "devcontainer.json"
        target.parent.mkdir(exist_ok=True)
        target.write_text(json.dumps(config, indent=2) + "\n", encoding="utf-8")

    if git:
        run.runner.run(["git", "init"], project, capture=True)

    logger.info("project created", project=str(project), devcontainer=devcontainer, git=git)
    return project


# =============================================================================
# CLI
# =============================================================================

app = typer.Typer(no_args_is_help=True, help="Local machine and project setup")


@app.command("init")
def init_command(
    ctx: typer.Context,
    name: Annotated[str, typer.Option("--name", prompt="What is the name of the project?")],
    devcontainer: Annotated[
        bool, typer.Option("--devcontainer/--no-devcontainer", prompt="Do you need a devcontainer?")
    ] = True,
    git: Annotated[bool, typer.Option("--git/--no-git", prompt="Do you want to initialize a Git repository?")] = True,
) -> None:
    """Create a new project directory."""
    project = init(get_context(ctx), name, devcontainer, git)
    typer.echo(f"{project} created")
