# ABOUTME: npm scripts for units that have no package.json
# ABOUTME: meta.json npm.scripts is written to a throwaway package.json and run with `npm run`

"""`run npm <script>`."""

from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import typer

from metarun.context import get_context
from metarun.errors import DescriptorError
from metarun.meta import read_meta

if TYPE_CHECKING:
    from metarun.context import RunContext


def descriptor_scripts(run: RunContext) -> dict[str, str]:
    raw: dict[str, Any] = read_meta(run.cwd, dict(run.environ)) or {}
    return dict((raw.get("npm") or {}).get("scripts") or {})


def run_script(run: RunContext, script: str) -> None:
    """
    Run an npm script of the unit.

    A unit with its own package.json runs `npm run` in place. Otherwise the
    script comes from meta.json npm.scripts and runs from a temporary
    directory holding a generated package.json.

    Raises:
        DescriptorError: If the script is declared nowhere.
    """
    if (run.cwd / "package.json").is_file():
        run.runner.run(["npm", "run", script], run.cwd)
        return

    scripts = descriptor_scripts(run)
    if script not in scripts:
        available = ", ".join(sorted(scripts)) or "none"
        raise DescriptorError(str(run.cwd), f"no npm script '{script}' (available: {available})")

    package = {"name": "tmp", "version": "1.0.0", "scripts": scripts}
    with tempfile.TemporaryDirectory(prefix="run-npm-") as workdir:
        (Path(workdir) / "package.json").write_text(json.dumps(package, indent=2), encoding="utf-8")
        run.runner.run(["npm", "run", script], workdir)


# Registered directly on the root app as `npm`.


def npm_command(
    ctx: typer.Context,
    script: Annotated[str, typer.Argument(help="script to run")],
) -> None:
    """Run an npm script from package.json or meta.json."""
    run_script(get_context(ctx), script)
