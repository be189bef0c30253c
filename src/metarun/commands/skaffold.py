# ABOUTME: Skaffold development loop against the shared cluster
# ABOUTME: Runs one profile, or every profile belonging to a group declared in skaffold.group

"""
Skaffold wrappers.

Units opt into groups with `"skaffold": {"group": ["backend", "all"]}`;
`run skaffold dev --group backend` then runs skaffold with one profile per
member unit (profile name = unit name).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

import typer

from metarun.commands import cluster
from metarun.context import get_context
from metarun.errors import RunError
from metarun.meta import read_meta, walk_all_subdirectories

if TYPE_CHECKING:
    from collections.abc import Sequence

    from metarun.context import RunContext

ACTIONS = ("dev", "run")


def discover_groups(run: RunContext) -> dict[str, list[str]]:
    """Group name -> member unit names, from descriptors below the unit directory."""
    groups: dict[str, list[str]] = {}
    for directory in walk_all_subdirectories(run.cwd):
        raw = read_meta(directory)
        if not raw or not isinstance(raw.get("skaffold"), dict):
            continue
        for group in raw["skaffold"].get("group") or []:
            groups.setdefault(group, []).append(raw.get("name", ""))
    return groups


def skaffold_args(
    action: str,
    profiles: Sequence[str],
    status_check: bool = True,
    force: bool = False,
    cache_artifacts: bool = True,
) -> list[str]:
    if action not in ACTIONS:
        raise typer.BadParameter(f"action must be one of: {', '.join(ACTIONS)}")
    return [
        "skaffold",
        action,
        "--cleanup=false",
        f"--profile={','.join(profiles)}",
        f"--status-check={str(status_check).lower()}",
        f"--force={str(force).lower()}",
        f"--cache-artifacts={str(cache_artifacts).lower()}",
    ]


def run_skaffold(
    run: RunContext,
    action: str,
    profile: str | None = None,
    group: str | None = None,
    status_check: bool = True,
    force: bool = False,
    cache_artifacts: bool = True,
) -> list[str]:
    """
    Connect to the cluster and run skaffold with a profile or a group.

    Returns:
        The profiles passed to skaffold.
    """
    if group:
        groups = discover_groups(run)
        if group not in groups:
            available = ", ".join(sorted(groups)) or "none"
            raise RunError(f"skaffold group {group} not found (available: {available})")
        profiles = groups[group]
    elif profile:
        profiles = [profile]
    else:
        raise typer.BadParameter("give a profile or --group")

    cluster.connect(run)
    run.runner.run(
        skaffold_args(action, profiles, status_check, force, cache_artifacts),
        run.cwd,
        env={"FORCE_COLOR": "1"},
    )
    return profiles


app = typer.Typer(no_args_is_help=True, help="Local cluster development with skaffold")

Profile = Annotated[str | None, typer.Argument(help="skaffold profile")]
Group = Annotated[str | None, typer.Option("--group", help="Run every profile of a group")]
StatusCheck = Annotated[bool, typer.Option("--status-check/--no-status-check")]
Force = Annotated[bool, typer.Option("--force", help="Force redeploy")]
CacheArtifacts = Annotated[bool, typer.Option("--cache-artifacts/--no-cache-artifacts")]


@app.command("dev")
def dev_command(
    ctx: typer.Context,
    profile: Profile = None,
    group: Group = None,
    status_check: StatusCheck = True,
    force: Force = False,
    cache_artifacts: CacheArtifacts = True,
) -> None:
    """skaffold dev for a profile or group."""
    run_skaffold(get_context(ctx), "dev", profile, group, status_check, force, cache_artifacts)


@app.command("run")
def run_command(
    ctx: typer.Context,
    profile: Profile = None,
    group: Group = None,
    status_check: StatusCheck = True,
    force: Force = False,
    cache_artifacts: CacheArtifacts = True,
) -> None:
    """skaffold run for a profile or group."""
    run_skaffold(get_context(ctx), "run", profile, group, status_check, force, cache_artifacts)
