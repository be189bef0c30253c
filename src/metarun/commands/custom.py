# ABOUTME: Runs project-specific Python scripts stored next to a unit's meta.json
# ABOUTME: Scripts are loaded with importlib and receive the arguments plus a ScriptContext

"""
Custom scripts.

A unit can ship its own automation in `<unit>/<custom_script.root>/`
(default `scripts/`). Each `<name>.py` exposes:

    def main(args: list[str], context: ScriptContext) -> None:
        context.sh(["kubectl", "apply", "-f", "k8s/"])

`run custom` without a name lists the available scripts.

Scripts run in-process, so they share the invocation's settings, dry-run
mode and audit trail through `context.run`.
"""

from __future__ import annotations

import importlib.util
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import structlog
import typer

from metarun.commands.action import parse_inputs
from metarun.context import get_context
from metarun.errors import RunError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from metarun.context import RunContext
    from metarun.utils.shell import CommandResult

logger = structlog.get_logger(__name__)

ENTRY_POINT = "main"


class ScriptError(RunError):
    """A custom script is missing, malformed, or raised."""

    code = "SCRIPT_ERROR"


@dataclass
class ScriptContext:
    """What a custom script receives besides its arguments."""

    run: RunContext
    directory: Path
    inputs: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    dev: bool = False
    test: bool = False

    @property
    def environment(self) -> str:
        return self.run.env

    def sh(self, args: Sequence[str], **kwargs: Any) -> CommandResult:
        """Run a command in the unit directory with the script's env."""
        return self.run.runner.run(args, self.directory, env=self.env or None, **kwargs)


def scripts_root(run: RunContext) -> Path:
    descriptor = run.descriptor()
    root = descriptor.custom_script.root if descriptor.custom_script else "scripts"
    return run.cwd / root


def list_scripts(run: RunContext) -> list[str]:
    root = scripts_root(run)
    if not root.is_dir():
        return []
    return sorted(p.stem for p in root.glob("*.py") if not p.name.startswith("_"))


def load_script(path: Path) -> Any:
    """Import a script file as an anonymous module."""
    if not path.is_file():
        raise ScriptError(f"script {path} not found")
    spec = importlib.util.spec_from_file_location(f"metarun_script_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise ScriptError(f"cannot load {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    if not callable(getattr(module, ENTRY_POINT, None)):
        raise ScriptError(f"{path} does not define {ENTRY_POINT}(args, context)")
    return module


def run_script(
    run: RunContext,
    name: str,
    args: Sequence[str] = (),
    inputs: Mapping[str, str] | None = None,
    env: Mapping[str, str] | None = None,
    dev: bool = False,
    test: bool = False,
) -> Any:
    """
    Run <scripts root>/<name>.py.

    Returns:
        Whatever the script's main returns.

    Raises:
        ScriptError: If the script cannot be loaded or raises anything other
            than a RunError.
    """
    path = scripts_root(run) / f"{name}.py"
    module = load_script(path)
    context = ScriptContext(
        run=run,
        directory=run.cwd,
        inputs=dict(inputs or {}),
        env=dict(env or {}),
        dev=dev,
        test=test,
    )
    logger.debug("running custom script", script=str(path), args=list(args))
    try:
        return getattr(module, ENTRY_POINT)(list(args), context)
    except RunError:
        raise
    except Exception as err:
        run.audit.log_error("custom_script", str(path), str(err))
        raise ScriptError(f"script {name} failed: {err}") from err


# =============================================================================
# CLI
# =============================================================================

# Registered directly on the root app as `custom` and `script`.


def custom_command(
    ctx: typer.Context,
    script: Annotated[str | None, typer.Argument(help="script name, without .py")] = None,
    args: Annotated[list[str] | None, typer.Argument(help="arguments passed to the script")] = None,
    input_values: Annotated[list[str] | None, typer.Option("--input", "-i", help="KEY=VALUE")] = None,
    dev: Annotated[bool, typer.Option("--dev", help="Development mode")] = False,
    test: Annotated[bool, typer.Option("--test", help="Test mode")] = False,
) -> None:
    """Run a custom script, or list them."""
    run = get_context(ctx)
    if script is None:
        names = list_scripts(run)
        if not names:
            typer.echo("no custom script found")
            return
        typer.echo("Available scripts:")
        for name in names:
            typer.echo(f"- {name}")
        return
    run_script(run, script, args or [], parse_inputs(input_values or []), dev=dev, test=test)
