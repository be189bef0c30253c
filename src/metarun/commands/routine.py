# ABOUTME: meta.json routines expanded into a tree of parallel and sequential commands
# ABOUTME: Supports parallel/sequence/every keywords and the && and & operators, then runs the tree

"""
`run routine [NAME...]`.

A unit declares named command lines in meta.json:

    "routines": {
        "dev": "parallel api web",
        "api": "cd api && npm run dev",
        "web": "npm run web & npm run storybook",
        "all": "every dev !legacy"
    }

=============================================================================
EXPANSION
=============================================================================

A name that is not a routine is a literal command line. A routine is
expanded by the first rule that applies:

    parallel a b     a and b, resolved as routine names, run concurrently
    sequence a b     a then b
    every r1 r2 !x   every unit below the current one (and the current one)
                     that declares r1 or r2 runs `cd <unit> && <routine>`;
                     units named x are skipped; all of them concurrently
    a && b           a then b
    a & b            a and b concurrently
    anything else    a command line

The requested names themselves run concurrently.

=============================================================================
EXECUTION
=============================================================================

`cd <dir>` changes the working directory of the rest of its sequence only.
Other command lines are split shell-style and run through the runner. A
parallel node waits for every branch; the first failure is raised once all
of them have finished.
"""

from __future__ import annotations

import os
import shlex
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any

import structlog
import typer

from metarun.context import get_context
from metarun.errors import DescriptorError
from metarun.meta import read_meta, walk_all_subdirectories

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from metarun.context import RunContext

logger = structlog.get_logger(__name__)


class Mode(str, Enum):
    PARALLEL = "parallel"
    SEQUENCE = "sequence"


@dataclass
class RoutineNode:
    """A group of tasks run one after another or all at once."""

    mode: Mode
    tasks: list[Task] = field(default_factory=list)


Task = str | RoutineNode


def descriptor_routines(directory: str | os.PathLike[str], environ: Mapping[str, str] | None = None) -> dict[str, str]:
    raw: dict[str, Any] = read_meta(directory, dict(environ) if environ is not None else None) or {}
    return dict(raw.get("routines") or {})


def _words(command: str, keyword: str) -> list[str]:
    return [word for word in command[len(keyword):].split(" ") if word]


def resolve_routine(
    task: str,
    routines: Mapping[str, str],
    cwd: str | os.PathLike[str],
    environ: Mapping[str, str] | None = None,
) -> Task:
    """Expand one routine name, or return it unchanged when it is a command line."""
    command = routines.get(task)
    if not command:
        return task

    if command.startswith("parallel "):
        return RoutineNode(
            Mode.PARALLEL,
            [resolve_routine(name, routines, cwd, environ) for name in _words(command, "parallel ")],
        )

    if command.startswith("sequence "):
        return RoutineNode(
            Mode.SEQUENCE,
            [resolve_routine(name, routines, cwd, environ) for name in _words(command, "sequence ")],
        )

    if command.startswith("every "):
        return every_unit(_words(command, "every "), cwd, environ)

    parts = [part.strip() for part in command.split("&&")]
    if len(parts) > 1:
        return RoutineNode(Mode.SEQUENCE, [resolve_routine(part, routines, cwd, environ) for part in parts])

    parts = [part.strip() for part in command.split("&")]
    if len(parts) > 1:
        return RoutineNode(Mode.PARALLEL, [resolve_routine(part, routines, cwd, environ) for part in parts])

    return command


def every_unit(
    words: Sequence[str],
    cwd: str | os.PathLike[str],
    environ: Mapping[str, str] | None = None,
) -> RoutineNode:
    """Collect `cd <unit> && <routine>` for every unit declaring one of the named routines."""
    names = [word for word in words if not word.startswith("!")]
    excluded = {word[1:] for word in words if word.startswith("!")}
    root = os.path.abspath(os.fspath(cwd))

    node = RoutineNode(Mode.PARALLEL)
    for directory in [*walk_all_subdirectories(root), root]:
        raw = read_meta(directory, dict(environ) if environ is not None else None)
        if raw is None or raw.get("name") in excluded:
            continue
        routines = raw.get("routines") or {}
        for name in names:
            if routines.get(name):
                wrapped = {"default": f"cd {directory} && {routines[name]}"}
                node.tasks.append(resolve_routine("default", wrapped, directory, environ))
    return node


def build_tree(
    names: Sequence[str],
    routines: Mapping[str, str],
    cwd: str | os.PathLike[str],
    environ: Mapping[str, str] | None = None,
) -> RoutineNode:
    return RoutineNode(Mode.PARALLEL, [resolve_routine(name, routines, cwd, environ) for name in names])


def execute(run: RunContext, node: RoutineNode, cwd: str | os.PathLike[str] | None = None) -> None:
    """Run a routine tree; `cd` tasks move the rest of their sequence."""
    workdir = os.fspath(cwd if cwd is not None else run.cwd)

    if node.mode is Mode.SEQUENCE:
        for task in node.tasks:
            if isinstance(task, RoutineNode):
                execute(run, task, workdir)
            elif task.startswith("cd "):
                workdir = os.path.join(workdir, task[3:].strip())
            else:
                run.runner.run(shlex.split(task), workdir)
        return

    if not node.tasks:
        return

    def _branch(task: Task) -> None:
        if isinstance(task, RoutineNode):
            execute(run, task, workdir)
        elif not task.startswith("cd "):
            run.runner.run(shlex.split(task), workdir)

    with ThreadPoolExecutor(max_workers=len(node.tasks)) as pool:
        futures = [pool.submit(_branch, task) for task in node.tasks]
    for future in futures:
        future.result()


def run_routines(run: RunContext, names: Sequence[str]) -> RoutineNode:
    """
    Expand and run routines of the current unit.

    Raises:
        DescriptorError: If the unit declares no routines.
    """
    routines = descriptor_routines(run.cwd, run.environ)
    if not routines:
        raise DescriptorError(str(run.cwd), "no routines found")
    tree = build_tree(names, routines, run.cwd, run.environ)
    logger.info("running routines", routines=list(names))
    execute(run, tree)
    return tree


# Registered directly on the root app as `routine`.


def routine_command(
    ctx: typer.Context,
    names: Annotated[list[str] | None, typer.Argument(help="routines to run")] = None,
) -> None:
    """Run meta.json routines, in parallel unless they say otherwise."""
    run = get_context(ctx)
    if not names:
        routines = descriptor_routines(run.cwd, run.environ)
        if not routines:
            run.console.print("No routines found")
            return
        for name in routines:
            run.console.print(f"- {name}")
        choice = typer.prompt("Routine to run")
        if choice not in routines:
            raise DescriptorError(str(run.cwd), f"no routine '{choice}'")
        names = [choice]
    run_routines(run, names)
    run.console.print("All tasks executed successfully.")
