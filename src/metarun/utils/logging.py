# ABOUTME: Structured logging configuration for the run command
# ABOUTME: Provides per-invocation correlation IDs and a JSON-lines audit trail of executed commands

"""
Structured logging with correlation IDs and audit trails.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: every log call is an event name plus key/value
   fields, rendered for humans on a terminal or as JSON for CI log search.

2. CORRELATION IDs: one short ID per `run` invocation. A batch such as
   `run terraform apply-all` spawns dozens of external commands; the ID
   ties all their log lines (and audit records) back to one invocation.

3. AUDIT LOGGING: one JSON line per external command executed, per refused
   confirmation, and per failure. Useful when several people share a
   terraform backend and want to know who applied what.

=============================================================================
WHY STDERR?
=============================================================================

Several commands print machine-readable output on stdout (`run terraform
output`, `run meta show`, `run utils nanoid`). Logs go to stderr so
they never corrupt what a caller pipes into jq.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path

# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate new one.

    Returns:
        8-character correlation ID string.
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """Set correlation ID for the current context ("" regenerates on next access)."""
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """
    Structlog processor adding the correlation ID to every event.

    Args:
        logger: The structlog wrapped logger (unused but required by API)
        method_name: The logging method name (unused but required by API)
        event_dict: Dictionary containing log event data to enrich

    Returns:
        The event_dict with "correlation_id" field added.
    """
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "WARNING",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging.

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: fields bound with structlog.contextvars
    2. add_log_level: "level" field
    3. TimeStamper: ISO-format timestamp
    4. add_correlation_id: per-invocation ID
    5. Renderer: JSON or colored console text

    Args:
        level: Logging level name ("DEBUG" ... "CRITICAL"). Unknown names
               fall back to WARNING.
        json_output: If True, output JSON lines; otherwise colored text.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.WARNING)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGING
# =============================================================================


class AuditLogger:
    """
    Audit logger for external commands and refused operations.

    Every entry records:
    - timestamp: When it happened (UTC ISO 8601)
    - correlation_id: Invocation identifier
    - action: What was done ("command", "terraform_destroy", ...)
    - target: What it was done to (directory, unit name)
    - result: "success", "failed", "dry_run", "blocked" or "error"
    - details: Additional context (argv, exit code, reason)

    With a log_path entries are appended to that file as JSON lines;
    otherwise they go through structlog at debug level.

    Example:
        {"timestamp": "2025-03-02T10:30:00+00:00", "correlation_id": "a1b2c3d4",
         "action": "command", "target": "/src/api/infra", "result": "success",
         "details": {"argv": ["terraform", "plan"], "returncode": 0}}
    """

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Log an auditable action.

        Args:
            action: Action performed
            target: Resource or directory affected
            result: Outcome string
            details: Optional extra context, must be JSON serializable
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }

        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry) + "\n")
        else:
            self._logger.debug(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_command(
        self,
        argv: list[str],
        cwd: str,
        result: str,
        returncode: int | None = None,
    ) -> None:
        """
        Log one external command execution.

        Args:
            argv: Argument vector, already masked by the caller
            cwd: Working directory the command ran in
            result: "success", "failed" or "dry_run"
            returncode: Process exit status when the command ran
        """
        details: dict[str, Any] = {"argv": argv}
        if returncode is not None:
            details["returncode"] = returncode
        self.log("command", cwd, result, details)

    def log_blocked(self, action: str, target: str, reason: str) -> None:
        """Log an operation refused at a confirmation prompt or by settings."""
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(self, action: str, target: str, error: str) -> None:
        """Log a failed operation."""
        self.log(action, target, "error", {"error": error})
