# ABOUTME: Safety utilities for the run command
# ABOUTME: Confirmation prompts guarding destructive operations and protected environments

"""Confirmation guard for operations that change or destroy remote state."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
import typer

from metarun.errors import OperationBlocked

if TYPE_CHECKING:
    from collections.abc import Callable

    from metarun.config import SafetySettings
    from metarun.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

IMPACTS = {
    "terraform_destroy": "Destroys every resource managed by this terraform component",
    "cluster_remove": "Removes the application and its resources from the cluster",
    "vault_export": "Overwrites the local .env file (a .env.backup copy is kept)",
    "secrets_replace": "Deletes and recreates the kubernetes secret",
    "state_push": "Replaces the remote terraform state with a local file",
    "terraform_unlock": "Deletes the remote state lock; concurrent applies may corrupt state",
    "meta_ids": "Regenerates every id, which moves remote state and secret paths",
}


@dataclass
class ConfirmationRequired:
    """Prompt shown before a guarded operation runs."""

    operation: str
    target: str
    environment: str
    impact: str
    details: dict[str, Any] = field(default_factory=dict)

    def format_message(self) -> str:
        """Format the confirmation prompt."""
        lines = [
            f"CONFIRMATION REQUIRED: {self.operation}",
            "",
            f"Target: {self.target}",
            f"Environment: {self.environment}",
            f"Impact: {self.impact}",
        ]

        if self.details:
            lines.append("")
            lines.append("Details:")
            for key, value in self.details.items():
                lines.append(f"  {key}: {value}")

        lines.extend(["", "Proceed?"])
        return "\n".join(lines)


class SafetyGuard:
    """
    Decides whether an operation may run, asking the user when needed.

    Rules:
        - destructive operations always prompt, unless assume_yes is set and
          the environment is not protected
        - write operations prompt only in protected environments, and
          assume_yes never skips that prompt
    """

    def __init__(
        self,
        settings: SafetySettings,
        environment: str,
        audit: AuditLogger | None = None,
        prompt: Callable[[str], bool] | None = None,
    ) -> None:
        self.settings = settings
        self.environment = environment
        self._audit = audit
        self._prompt = prompt or (lambda text: typer.confirm(text, default=False))

    @property
    def protected(self) -> bool:
        return self.environment in self.settings.protected_environments

    def check_write(self, operation: str, target: str) -> None:
        """Confirm a state-changing operation in a protected environment.

        Raises:
            OperationBlocked: If the user declines.
        """
        if not self.protected:
            return
        self._ask(
            ConfirmationRequired(
                operation=operation,
                target=target,
                environment=self.environment,
                impact=f"Changes resources in protected environment '{self.environment}'",
            )
        )

    def check_destructive(
        self,
        operation: str,
        target: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Confirm a destructive operation.

        Args:
            operation: Key of the operation (see IMPACTS)
            target: Directory or resource affected
            details: Extra lines shown in the prompt

        Raises:
            OperationBlocked: If the user declines.
        """
        if self.settings.assume_yes and not self.protected:
            logger.info("confirmation skipped", operation=operation, target=target)
            return
        self._ask(
            ConfirmationRequired(
                operation=operation,
                target=target,
                environment=self.environment,
                impact=IMPACTS.get(operation, f"Performs {operation}"),
                details=details or {},
            )
        )

    def _ask(self, request: ConfirmationRequired) -> None:
        try:
            accepted = self._prompt(request.format_message())
        except typer.Abort:
            accepted = False
        if accepted:
            return
        reason = "declined at confirmation prompt"
        if self._audit:
            self._audit.log_blocked(request.operation, request.target, reason)
        raise OperationBlocked(request.operation, reason)
