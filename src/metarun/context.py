# ABOUTME: Per-invocation context shared by every command
# ABOUTME: Bundles settings, the shell runner, the safety guard and the resolved unit directory

"""Invocation context handed to command implementations."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.console import Console

from metarun.errors import DescriptorError
from metarun.meta import load_descriptor, resolve_project_root
from metarun.utils.logging import AuditLogger
from metarun.utils.safety import SafetyGuard
from metarun.utils.shell import ShellRunner

if TYPE_CHECKING:
    from collections.abc import Callable, MutableMapping

    from metarun.config import RunSettings
    from metarun.descriptor import Descriptor


@dataclass
class RunContext:
    """
    Everything a command needs besides its own arguments.

    Attributes:
        settings: Validated settings (environment already overridden by --env)
        runner: Executes external commands in explicit directories
        guard: Asks for confirmation before destructive operations
        audit: Audit trail
        cwd: Unit directory the command acts on (scripts/ already stripped)
        target: Name of the .env.<target> file loaded for this invocation
        environ: Environment that dotenv files are loaded into
    """

    settings: RunSettings
    runner: ShellRunner
    guard: SafetyGuard
    audit: AuditLogger
    cwd: Path
    target: str = "local"
    environ: MutableMapping[str, str] = field(default_factory=lambda: os.environ)
    console: Console = field(default_factory=Console)

    @classmethod
    def create(
        cls,
        settings: RunSettings,
        cwd: str | os.PathLike[str] | None = None,
        prompt: Callable[[str], bool] | None = None,
        runner: ShellRunner | None = None,
        target: str = "local",
    ) -> RunContext:
        audit = AuditLogger(settings.safety.audit_log)
        runner = runner or ShellRunner(
            dry_run=settings.safety.dry_run,
            timeout=settings.command_timeout,
            audit=audit,
        )
        guard = SafetyGuard(settings.safety, settings.environment, audit, prompt)
        start = os.fspath(cwd) if cwd is not None else os.getcwd()
        return cls(
            settings=settings,
            runner=runner,
            guard=guard,
            audit=audit,
            cwd=Path(resolve_project_root(start)),
            target=target,
        )

    @property
    def env(self) -> str:
        return self.settings.environment

    @property
    def src(self) -> Path:
        return self.settings.src

    def descriptor(self, directory: str | os.PathLike[str] | None = None) -> Descriptor:
        """
        Load the descriptor a command requires.

        Raises:
            DescriptorError: If there is no meta.json in the directory.
        """
        target = Path(directory) if directory is not None else self.cwd
        descriptor = load_descriptor(target, dict(self.environ))
        if descriptor is None:
            raise DescriptorError(os.fspath(target), "no meta.json found")
        return descriptor

    def at(self, directory: str | os.PathLike[str]) -> RunContext:
        """Same context, acting on another unit directory."""
        return RunContext(
            settings=self.settings,
            runner=self.runner,
            guard=self.guard,
            audit=self.audit,
            cwd=Path(directory),
            target=self.target,
            environ=self.environ,
            console=self.console,
        )


def get_context(ctx: typer.Context) -> RunContext:
    """Fetch the RunContext stored by the root callback."""
    run = ctx.find_object(RunContext)
    if run is None:
        raise RuntimeError("run context not initialized")
    return run
