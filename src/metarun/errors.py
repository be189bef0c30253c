# ABOUTME: Exception hierarchy for the run command
# ABOUTME: Separates expected, branchable failures from ones that stop the command

"""
Errors raised by metarun.

=============================================================================
TAXONOMY
=============================================================================

Missing meta.json is NOT an error: discovery returns None and moves on.
Everything else that can go wrong is one of these:

    RunError                    <- base class, caught by the CLI top level
    ├── DescriptorError         <- meta.json is malformed or lacks a field
    ├── ConfigurationError      <- required setting (env var) is absent
    ├── ExecutableNotFoundError <- external binary is not on PATH
    ├── CommandError            <- external binary exited non-zero
    └── OperationBlocked        <- user declined a confirmation

CommandError carries the command, working directory, exit code and stderr so
the caller can either branch on a known signature (`matches("not found")`)
or surface it with full context.
"""

from __future__ import annotations

from typing import Any


class RunError(Exception):
    """
    Base error with a short code, a message, and optional details.

    The code is a stable machine-readable string ("descriptor", "command",
    ...) used in audit records and JSON log output.
    """

    code = "run"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(str(self))

    def __str__(self) -> str:
        return self.message


class DescriptorError(RunError):
    """meta.json is invalid, or a command needs a field it does not have."""

    code = "descriptor"

    def __init__(self, directory: str, message: str) -> None:
        self.directory = directory
        super().__init__(message, {"directory": directory})

    def __str__(self) -> str:
        return f"{self.directory}/meta.json: {self.message}"


class ConfigurationError(RunError):
    """A required setting is missing from the environment."""

    code = "configuration"


class ExecutableNotFoundError(RunError):
    """Raised when a required executable is missing from PATH."""

    code = "executable"

    def __init__(self, executable: str) -> None:
        self.executable = executable
        super().__init__(f"required executable '{executable}' not found on PATH")


class CommandError(RunError):
    """
    An external command exited with a non-zero status.

    Attributes:
        command: Argument vector that was executed
        cwd: Directory the command ran in
        returncode: Process exit status
        stderr: Captured standard error (empty when not captured)
    """

    code = "command"

    def __init__(
        self,
        command: list[str],
        cwd: str,
        returncode: int,
        stderr: str = "",
        stdout: str = "",
    ) -> None:
        self.command = command
        self.cwd = cwd
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        super().__init__(
            f"'{' '.join(command)}' failed with exit code {returncode}",
            {"cwd": cwd, "returncode": returncode},
        )

    def __str__(self) -> str:
        base = f"{self.message} (in {self.cwd})"
        if self.stderr.strip():
            base += f": {self.stderr.strip()}"
        return base

    def matches(self, *patterns: str) -> bool:
        """Check whether stderr or stdout contains any of the given signatures."""
        output = f"{self.stderr}\n{self.stdout}".lower()
        return any(pattern.lower() in output for pattern in patterns)


class OperationBlocked(RunError):
    """The operation was refused, either by the user or by safety settings."""

    code = "blocked"

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"{operation} blocked: {reason}", {"operation": operation})
