# ABOUTME: Environment file handling for units
# ABOUTME: Merges .env.base with .env.<target>, exports TF_VAR_ copies, and maps git branches to environments

"""
Local environment preparation.

Units keep their configuration in dotenv files next to meta.json:

    .env.base      shared by every target (when `secrets.base` names it)
    .env.local     values for running on a laptop
    .env.dev       values for the dev environment
    ...

Terraform reads variables from TF_VAR_* environment variables, so every key
is exported twice: as itself and with the TF_VAR_ prefix. A few variables
terraform modules always expect (PROJECT, APP, GCP_PROJECT_ID, PORT) get
defaults from the descriptors when the files do not set them.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from dotenv import dotenv_values

from metarun.errors import CommandError
from metarun.meta import read_meta

if TYPE_CHECKING:
    from collections.abc import MutableMapping

    from metarun.utils.shell import ShellRunner

logger = structlog.get_logger(__name__)

TF_VAR_PREFIX = "TF_VAR_"


def read_env_file(path: str | os.PathLike[str]) -> dict[str, str]:
    """Parse a dotenv file, dropping keys without a value. Missing file -> {}."""
    if not Path(path).is_file():
        return {}
    return {k: v for k, v in dotenv_values(path).items() if v is not None}


def with_tf_vars(values: dict[str, str]) -> dict[str, str]:
    """Add a TF_VAR_<KEY> copy of every key that is not already prefixed."""
    merged = dict(values)
    for key, value in values.items():
        if not key.startswith(TF_VAR_PREFIX):
            merged.setdefault(f"{TF_VAR_PREFIX}{key}", value)
    return merged


def unit_env_values(
    directory: str | os.PathLike[str],
    target: str,
    project_root: str | os.PathLike[str] | None = None,
    environ: MutableMapping[str, str] | None = None,
) -> dict[str, str] | None:
    """
    Compute the variables a unit exports for `target`.

    Returns:
        Merged variables including TF_VAR_ copies and PROJECT/APP, or None
        when the target file (or the declared base file) does not exist.
    """
    env = os.environ if environ is None else environ
    unit_dir = Path(directory)
    raw = read_meta(unit_dir) or {}
    secrets = raw.get("secrets") or {}
    base_name = secrets.get("base") if isinstance(secrets, dict) else None

    target_file = unit_dir / f".env.{target}"
    if not target_file.is_file():
        logger.debug("no env file for target", directory=str(unit_dir), target=target)
        return None

    values: dict[str, str] = {}
    if isinstance(base_name, str):
        base_file = unit_dir / base_name
        if not base_file.is_file():
            logger.debug("declared base env file is missing", path=str(base_file))
            return None
        values.update(read_env_file(base_file))
    values.update(read_env_file(target_file))

    exported = with_tf_vars(values)

    if f"{TF_VAR_PREFIX}PROJECT" not in exported:
        root = project_root if project_root is not None else env.get("SRC")
        project_meta = read_meta(root) if root else None
        exported[f"{TF_VAR_PREFIX}PROJECT"] = str((project_meta or {}).get("name", ""))
    if f"{TF_VAR_PREFIX}APP" not in exported:
        exported[f"{TF_VAR_PREFIX}APP"] = str(raw.get("name", ""))
    exported.setdefault("PROJECT", exported[f"{TF_VAR_PREFIX}PROJECT"])
    exported.setdefault("APP", exported[f"{TF_VAR_PREFIX}APP"])
    if f"{TF_VAR_PREFIX}GCP_PROJECT_ID" not in exported:
        exported[f"{TF_VAR_PREFIX}GCP_PROJECT_ID"] = env.get("GCP_PROJECT_ID", "")
    if f"{TF_VAR_PREFIX}PORT" not in exported and raw.get("port"):
        exported["PORT"] = str(raw["port"])
        exported[f"{TF_VAR_PREFIX}PORT"] = str(raw["port"])
    return exported


def set_secrets_on_local(
    directory: str | os.PathLike[str],
    target: str,
    environ: MutableMapping[str, str] | None = None,
    project_root: str | os.PathLike[str] | None = None,
) -> dict[str, str]:
    """
    Export a unit's variables for `target` into `environ`, overriding.

    Returns:
        The variables that were exported ({} when there was nothing to load).
    """
    env = os.environ if environ is None else environ
    values = unit_env_values(directory, target, project_root, env)
    if not values:
        return {}
    env.update(values)
    logger.debug("exported unit environment", directory=str(directory), count=len(values))
    return values


def env_from_git_branch(runner: ShellRunner, cwd: str | os.PathLike[str]) -> str | None:
    """
    Map the current git branch to an environment name ("main" -> "prod").

    Returns:
        The environment, or None outside a git checkout.
    """
    if not (Path(cwd) / ".git").exists():
        return None
    try:
        branch = runner.output(["git", "branch", "--show-current"], cwd)
    except CommandError as err:
        logger.warning("cannot determine git branch", error=str(err))
        return None
    if branch == "main":
        return "prod"
    return branch or None
