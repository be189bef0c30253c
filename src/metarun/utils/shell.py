# ABOUTME: External process runner used by every command
# ABOUTME: Runs binaries in an explicit working directory and raises CommandError with context on failure

"""
External process execution.

=============================================================================
WHY A RUNNER INSTEAD OF subprocess.run EVERYWHERE?
=============================================================================

Every feature command ends with "run this binary in that directory". The
runner centralizes four things so commands stay one-liners:

1. WORKING DIRECTORY: always an explicit `cwd` argument. The process-wide
   current directory is never changed, so batches can run units that live
   in different directories without stepping on each other.

2. FAILURE CONTEXT: a non-zero exit becomes CommandError carrying argv, cwd,
   exit code and captured stderr. Callers that expect a failure (a secret
   that does not exist yet, a manifest that was never pushed) branch on
   `err.matches("not found")`; everyone else lets it propagate.

3. DRY RUN AND AUDIT: with dry_run set nothing executes; every command is
   recorded in the audit trail either way.

4. MASKING: values passed in `redact` (tokens on the command line) are
   replaced before argv is logged.

Output is streamed to the terminal unless `capture=True`, in which case
stdout/stderr are returned on the CommandResult.
"""

from __future__ import annotations

import json
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from metarun.errors import CommandError, ExecutableNotFoundError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from metarun.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

MASK = "***MASKED***"


def require_exe(name: str) -> str:
    """Verify a CLI tool is available in PATH.

    Args:
        name: Name of the executable to check for.

    Returns:
        Absolute path of the executable.

    Raises:
        ExecutableNotFoundError: If the executable is not found in PATH.
    """
    path = shutil.which(name)
    if path is None:
        raise ExecutableNotFoundError(name)
    return path


def mask_argv(argv: Sequence[str], redact: Iterable[str] = ()) -> list[str]:
    """
    Mask secret values in argv.

    An argument equal to a secret is replaced whole; a KEY=VALUE argument
    has its value replaced when the value is a secret. Anything else is kept
    as is, even when a secret happens to be a substring of it.
    """
    secrets = {s for s in redact if s}
    masked = []
    for arg in argv:
        if arg in secrets:
            arg = MASK
        else:
            key, sep, value = arg.partition("=")
            if sep and value in secrets:
                arg = f"{key}={MASK}"
        masked.append(arg)
    return masked


@dataclass
class CommandResult:
    """Outcome of one external command."""

    args: list[str]
    cwd: str
    returncode: int
    stdout: str = ""
    stderr: str = ""

    def json(self) -> Any:
        """Parse captured stdout as JSON."""
        return json.loads(self.stdout)


class ShellRunner:
    """
    Runs external commands with an explicit working directory.

    Args:
        dry_run: Log commands instead of executing them
        timeout: Seconds before a command is killed (None waits forever)
        audit: Audit logger receiving one record per command
    """

    def __init__(
        self,
        dry_run: bool = False,
        timeout: float | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self.dry_run = dry_run
        self.timeout = timeout
        self._audit = audit

    def run(
        self,
        args: Sequence[str],
        cwd: str | os.PathLike[str],
        *,
        env: Mapping[str, str] | None = None,
        capture: bool = False,
        input: str | None = None,  # noqa: A002 - mirrors subprocess.run
        check: bool = True,
        redact: Iterable[str] = (),
    ) -> CommandResult:
        """
        Run a command to completion.

        Args:
            args: Argument vector; args[0] is looked up on PATH
            cwd: Directory to run in
            env: Variables layered over the current process environment
            capture: Capture stdout/stderr instead of streaming them
            input: Text fed to stdin
            check: Raise CommandError on non-zero exit
            redact: Secret values to mask in logs

        Returns:
            CommandResult with captured output when capture=True.

        Raises:
            ExecutableNotFoundError: args[0] is not installed
            CommandError: non-zero exit (when check=True) or timeout
        """
        argv = [str(a) for a in args]
        workdir = os.fspath(cwd)
        masked = mask_argv(argv, redact)
        log = logger.bind(argv=masked, cwd=workdir)

        if self.dry_run:
            log.info("dry run, command not executed")
            if self._audit:
                self._audit.log_command(masked, workdir, "dry_run")
            return CommandResult(argv, workdir, 0)

        full_env = None
        if env:
            full_env = {**os.environ, **env}

        log.debug("running command")
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                cwd=workdir,
                env=full_env,
                input=input,
                text=True,
                capture_output=capture,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as err:
            raise ExecutableNotFoundError(argv[0]) from err
        except subprocess.TimeoutExpired as err:
            if self._audit:
                self._audit.log_command(masked, workdir, "timeout")
            raise CommandError(
                masked, workdir, -1, stderr=f"timed out after {self.timeout}s"
            ) from err

        result = CommandResult(
            argv,
            workdir,
            completed.returncode,
            completed.stdout or "",
            completed.stderr or "",
        )
        outcome = "success" if result.returncode == 0 else "failed"
        if self._audit:
            self._audit.log_command(masked, workdir, outcome, result.returncode)

        if check and result.returncode != 0:
            log.debug("command failed", returncode=result.returncode)
            raise CommandError(
                masked, workdir, result.returncode, result.stderr, result.stdout
            )
        return result

    def output(
        self,
        args: Sequence[str],
        cwd: str | os.PathLike[str],
        *,
        env: Mapping[str, str] | None = None,
        redact: Iterable[str] = (),
    ) -> str:
        """Run a command and return its stripped stdout."""
        return self.run(args, cwd, env=env, capture=True, redact=redact).stdout.strip()

    def succeeds(
        self,
        args: Sequence[str],
        cwd: str | os.PathLike[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> bool:
        """Run a check command quietly and report whether it exited zero."""
        return self.run(args, cwd, env=env, capture=True, check=False).returncode == 0

    def pipe(
        self,
        first: Sequence[str],
        second: Sequence[str],
        cwd: str | os.PathLike[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Run `first | second`, both in cwd."""
        produced = self.run(first, cwd, env=env, capture=True)
        return self.run(second, cwd, env=env, input=produced.stdout)
