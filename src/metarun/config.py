# ABOUTME: Configuration management for the run command
# ABOUTME: Reads environment variables, safety switches, and CLI overrides into typed settings

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

`run` is driven by two kinds of configuration:

1. DESCRIPTORS (meta.json): per-directory, describe WHAT a unit is
2. SETTINGS (this module): per-invocation, describe WHERE and HOW to act

Settings come from environment variables (usually exported by the
devcontainer or loaded from .env files), optionally from an env file named by
RUN_ENV_FILE, and finally from global CLI options (--env, --src) which
override both. The .env.<cible> file selected with --cible is loaded into
the environment before settings are read, so it can set ENVIRONMENT itself.

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Discovery and targeting:
    SRC                     -> Source root searched by discovery
    ENV / ENVIRONMENT       -> Target environment (dev, prod, ...)
    LOCALHOST_SRC           -> Host-side path of SRC (used by act --directory)

Remote systems:
    TERRAFORM_BUCKET_NAME   -> GCS bucket holding terraform state
    RUN_CLUSTER_PROJECT     -> GCP project of the GKE cluster
    GCP_PROJECT_NAME        -> Default GCP project
    GCP_ACCESS_TOKEN        -> OAuth token for the storage API (optional)
    VAULT_ADDR              -> Vault server address
    VAULT_ROOT_TOKEN        -> Vault token forwarded to act
    CLOUDFLARED_TUNNEL_NAME -> Tunnel name for `run tunnel run`
    CLOUDFLARED_TUNNEL_TOKEN-> Tunnel token
    VERCEL_TOKEN            -> Token for `run vercel`
    GITHUB_TOKEN            -> Token forwarded to act

Behaviour (RUN_ prefix):
    RUN_LOG_LEVEL           -> Logging level (default: WARNING)
    RUN_JSON_LOGS           -> Emit JSON log lines
    RUN_COMMAND_TIMEOUT     -> Seconds before an external command is killed
    RUN_BATCH_POLICY        -> collect (default) or fail_fast

Safety (RUN_SAFETY_ prefix):
    RUN_SAFETY_ASSUME_YES   -> Skip confirmation prompts
    RUN_SAFETY_PROTECTED_ENVIRONMENTS -> JSON list, default ["prod"]
    RUN_SAFETY_AUDIT_LOG    -> Path to JSON-lines audit log
    RUN_SAFETY_DRY_RUN      -> Print commands instead of running them
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from metarun.batch import BatchPolicy

# =============================================================================
# SAFETY SETTINGS
# =============================================================================


class SafetySettings(BaseSettings):
    """
    Switches controlling confirmations, dry runs and the audit trail.

    Destructive operations (terraform destroy, cluster remove, overwriting a
    local .env from vault) ask for confirmation. In a protected environment
    they ask even when assume_yes is set, so a stray `-y` in CI cannot
    destroy production.
    """

    model_config = SettingsConfigDict(env_prefix="RUN_SAFETY_")

    assume_yes: bool = Field(
        default=False,
        description="Answer yes to confirmation prompts",
    )

    protected_environments: list[str] = Field(
        default_factory=lambda: ["prod"],
        description="Environments where confirmation can never be skipped",
    )

    audit_log: Path | None = Field(
        default=None,
        description="Path to audit log file",
    )
    # When set, every external command and every refused confirmation is
    # appended as one JSON object per line.

    dry_run: bool = Field(
        default=False,
        description="Log external commands without executing them",
    )


# =============================================================================
# MAIN SETTINGS
# =============================================================================


class RunSettings(BaseSettings):
    """
    Per-invocation settings for the run command.

    USAGE:
    ------
        settings = load_settings(environment="prod")
        settings.environment        # "prod"
        settings.src                # discovery root
        settings.safety.assume_yes  # nested safety switch
    """

    model_config = SettingsConfigDict(
        env_prefix="RUN_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # TARGETING
    # -------------------------------------------------------------------------

    src: Path = Field(
        default_factory=Path.cwd,
        validation_alias=AliasChoices("src", "SRC"),
        description="Source root searched by discovery",
    )

    environment: str = Field(
        default="dev",
        validation_alias=AliasChoices("environment", "ENV", "ENVIRONMENT"),
        description="Target environment",
    )

    localhost_src: str | None = Field(
        default=None,
        validation_alias=AliasChoices("localhost_src", "LOCALHOST_SRC"),
    )

    # -------------------------------------------------------------------------
    # REMOTE SYSTEMS
    # -------------------------------------------------------------------------

    terraform_bucket_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("terraform_bucket_name", "TERRAFORM_BUCKET_NAME"),
    )

    cluster_project: str | None = Field(
        default=None,
        validation_alias=AliasChoices("cluster_project", "RUN_CLUSTER_PROJECT"),
    )
    cluster_zone: str = Field(default="us-central1-b")
    cluster_name_prefix: str = Field(default="core")
    # Clusters are named "<prefix>-<environment>", e.g. core-dev.

    gcp_project_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("gcp_project_name", "GCP_PROJECT_NAME"),
    )
    gcp_access_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias=AliasChoices("gcp_access_token", "GCP_ACCESS_TOKEN"),
    )
    # Empty means "ask gcloud": the storage client falls back to
    # `gcloud auth print-access-token`.

    vault_addr: str | None = Field(
        default=None,
        validation_alias=AliasChoices("vault_addr", "VAULT_ADDR"),
    )
    vault_root_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias=AliasChoices("vault_root_token", "VAULT_ROOT_TOKEN"),
    )

    cloudflared_tunnel_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("cloudflared_tunnel_name", "CLOUDFLARED_TUNNEL_NAME"),
    )
    cloudflared_tunnel_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias=AliasChoices("cloudflared_tunnel_token", "CLOUDFLARED_TUNNEL_TOKEN"),
    )

    vercel_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias=AliasChoices("vercel_token", "VERCEL_TOKEN"),
    )
    github_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias=AliasChoices("github_token", "GITHUB_TOKEN"),
    )

    # -------------------------------------------------------------------------
    # BEHAVIOUR
    # -------------------------------------------------------------------------

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="WARNING",
        description="Logging level",
    )
    # WARNING by default: the wrapped tools already print plenty. Use
    # RUN_LOG_LEVEL=DEBUG to see every command before it runs.

    json_logs: bool = Field(default=False, description="Emit JSON log lines")

    command_timeout: float | None = Field(
        default=None,
        description="Seconds before an external command is killed",
    )

    batch_policy: BatchPolicy = Field(
        default=BatchPolicy.COLLECT,
        description="What a batch does when one unit fails",
    )

    safety: SafetySettings = Field(default_factory=SafetySettings)

    # -------------------------------------------------------------------------
    # VALIDATORS
    # -------------------------------------------------------------------------

    @field_validator("environment")
    @classmethod
    def normalize_environment(cls, v: str) -> str:
        """Environments are lowercase identifiers; reject blanks early."""
        v = v.strip().lower()
        if not v:
            raise ValueError("environment must not be empty")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v: object) -> object:
        return v.upper() if isinstance(v, str) else v

    # -------------------------------------------------------------------------
    # COMPUTED PROPERTIES
    # -------------------------------------------------------------------------

    @property
    def cluster_name(self) -> str:
        return f"{self.cluster_name_prefix}-{self.environment}"

    @property
    def is_protected(self) -> bool:
        """True when the current environment requires confirmations."""
        return self.environment in self.safety.protected_environments

    def with_overrides(
        self,
        environment: str | None = None,
        src: Path | None = None,
    ) -> RunSettings:
        """Return a copy with CLI options applied on top of the environment."""
        update: dict[str, object] = {}
        if environment:
            update["environment"] = environment.strip().lower()
        if src is not None:
            update["src"] = src
        return self.model_copy(update=update) if update else self


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings(environment: str | None = None, src: Path | None = None) -> RunSettings:
    """
    Load settings from the environment and apply CLI overrides.

    If RUN_ENV_FILE is set, variables are also read from that file
    (environment variables still win).

    Args:
        environment: Environment forced on the command line
        src: Discovery root forced on the command line

    Returns:
        Fully validated RunSettings instance.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    settings = RunSettings(_env_file=os.environ.get("RUN_ENV_FILE"))
    return settings.with_overrides(environment=environment, src=src)
