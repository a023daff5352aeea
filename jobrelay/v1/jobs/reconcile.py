"""
Read-path reconciliation of a job record against its engine item.

Workers write record transitions asynchronously, so a record read straight
after the engine finished an item can still show the previous state. The
engine's view is folded into the record on every single-job read.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from jobrelay.v1.jobs.engine import EngineItem, ItemState
from jobrelay.v1.jobs.models import Job, JobStatus


@dataclass(frozen=True)
class Reconciliation:
    """Transition the record needs to match the engine."""

    status: JobStatus
    result: dict[str, Any] | None = None
    error: str | None = None
    attempts: int | None = None
    at: datetime | None = None


def map_engine_state(item: EngineItem) -> JobStatus | None:
    """Record status corresponding to an engine item's state.

    Items waiting for a retry map to PROCESSING; a retry wait is only visible
    through the attempts counter.
    """
    state = item.state
    if state == ItemState.COMPLETED.value:
        return JobStatus.COMPLETED
    if state == ItemState.FAILED.value:
        return JobStatus.FAILED
    if state == ItemState.ACTIVE.value:
        return JobStatus.PROCESSING
    if state in (ItemState.WAITING.value, ItemState.DELAYED.value):
        return JobStatus.PENDING if item.attempts_made == 0 else JobStatus.PROCESSING
    return None


def plan_reconciliation(job: Job, item: EngineItem | None) -> Reconciliation | None:
    """
    Work out how ``job`` must change to agree with ``item``.

    Returns None when nothing changes: no engine item, the record is already
    terminal, or the mapped status equals the record's status.
    """
    if item is None or job.is_terminal():
        return None

    target = map_engine_state(item)
    if target is None or target.value == job.status:
        return None

    attempts = min(job.max_attempts, max(job.attempts, item.attempts_made))

    if target == JobStatus.COMPLETED:
        return Reconciliation(
            status=target,
            result=job.result if job.result is not None else (item.return_value or {}),
            attempts=attempts,
            at=item.finished_at,
        )
    if target == JobStatus.FAILED:
        return Reconciliation(
            status=target,
            error=job.error or item.failed_reason or "Unknown error",
            attempts=attempts,
            at=item.finished_at,
        )
    if target == JobStatus.PROCESSING:
        return Reconciliation(status=target, attempts=attempts, at=item.processed_at)

    # PENDING from PROCESSING: the record ran ahead of an engine that has not
    # delivered the item yet
    return Reconciliation(status=target, attempts=attempts)
