# ABOUTME: Priority-grouped sequential batch execution
# ABOUTME: Groups units by priority, runs groups as barriers, and reports succeeded/failed/skipped units

"""
Priority-grouped batches.

`run terraform apply-all` and `run cluster apps deploy` act on many units.
Units carry an optional numeric priority. Execution is:

    group by priority (ascending, units without priority last)
    for each group:
        run every member sequentially, in discovery order
        wait for the whole group before starting the next one

What happens on failure is the caller's choice:

    BatchPolicy.COLLECT    keep going, report every failure at the end
    BatchPolicy.FAIL_FAST  stop at the first failure; the rest is skipped

Either way the caller gets a BatchResult, never just console output.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from metarun.errors import RunError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

logger = structlog.get_logger(__name__)


class BatchPolicy(str, Enum):
    """What a batch does after a unit fails."""

    COLLECT = "collect"
    FAIL_FAST = "fail_fast"


@dataclass
class BatchUnit:
    """One unit of work: usually a directory with a descriptor."""

    name: str
    directory: str
    priority: int | None = None
    payload: Any = None


@dataclass
class UnitFailure:
    unit: BatchUnit
    error: RunError


@dataclass
class BatchResult:
    """Outcome of a batch, in execution order."""

    succeeded: list[BatchUnit] = field(default_factory=list)
    failed: list[UnitFailure] = field(default_factory=list)
    skipped: list[BatchUnit] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary(self) -> str:
        lines = [
            f"{len(self.succeeded)} succeeded, {len(self.failed)} failed, "
            f"{len(self.skipped)} skipped"
        ]
        lines.extend(f"  FAILED {f.unit.name} ({f.unit.directory}): {f.error}" for f in self.failed)
        lines.extend(f"  SKIPPED {u.name} ({u.directory})" for u in self.skipped)
        return "\n".join(lines)


def group_by_priority(units: Iterable[BatchUnit]) -> list[tuple[int | None, list[BatchUnit]]]:
    """
    Bucket units by priority.

    Buckets are ordered by ascending priority; the bucket of units without a
    priority comes last. Members keep their input order.

        >>> [(p, [u.name for u in g]) for p, g in group_by_priority(units)]
        [(1, ['a', 'b']), (2, ['c']), (None, ['d'])]
    """
    buckets: dict[int | None, list[BatchUnit]] = {}
    for unit in units:
        buckets.setdefault(unit.priority, []).append(unit)
    ordered = sorted((p for p in buckets if p is not None))
    groups = [(p, buckets[p]) for p in ordered]
    if None in buckets:
        groups.append((None, buckets[None]))
    return groups


def run_batch(
    units: Iterable[BatchUnit],
    action: Callable[[BatchUnit], None],
    policy: BatchPolicy = BatchPolicy.COLLECT,
) -> BatchResult:
    """
    Run `action` for every unit, one priority group at a time.

    Only RunError (a failed external command, a bad descriptor, a declined
    confirmation) counts as a unit failure. Anything else is a bug and
    propagates immediately.

    Args:
        units: Units to run
        action: Called once per unit; raising RunError marks it failed
        policy: COLLECT or FAIL_FAST

    Returns:
        BatchResult listing succeeded, failed and skipped units.
    """
    result = BatchResult()
    groups = group_by_priority(units)
    stopped = False

    for priority, members in groups:
        log = logger.bind(priority=priority, members=len(members))
        if stopped:
            result.skipped.extend(members)
            continue
        log.info("starting priority group")
        for unit in members:
            if stopped:
                result.skipped.append(unit)
                continue
            try:
                action(unit)
            except RunError as err:
                log.warning("unit failed", unit=unit.name, directory=unit.directory, error=str(err))
                result.failed.append(UnitFailure(unit, err))
                if policy is BatchPolicy.FAIL_FAST:
                    stopped = True
            else:
                log.debug("unit succeeded", unit=unit.name)
                result.succeeded.append(unit)

    logger.info(
        "batch complete",
        succeeded=len(result.succeeded),
        failed=len(result.failed),
        skipped=len(result.skipped),
    )
    return result
