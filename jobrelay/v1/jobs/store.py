"""
Durable job record store.

All status writes go through ``transition`` or ``record_failure``; both are
conditional UPDATEs that refuse to touch a record once it is terminal, so
concurrent writers (API processes, workers, read-path reconciliation) can
never move a completed, failed or cancelled job back.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, case, desc, func, select, true, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobrelay.v1.jobs.models import TERMINAL_STATUSES, Job, JobStatus, utcnow


@dataclass(frozen=True)
class FailureOutcome:
    """Result of recording one failed processing attempt."""

    applied: bool
    status: str | None
    attempts: int
    max_attempts: int

    @property
    def will_retry(self) -> bool:
        return self.applied and self.status == JobStatus.PROCESSING.value


class JobStore:
    """SQLAlchemy-backed store for job records."""

    async def add(self, session: AsyncSession, job: Job) -> Job:
        """Persist a new record. Raises ``IntegrityError`` on a duplicate key."""
        session.add(job)
        await session.commit()
        return job

    async def find_by_id(
        self, session: AsyncSession, job_id: UUID, owner_id: str | None = None
    ) -> Job | None:
        """Get job by ID with optional owner scoping."""
        query = select(Job).where(Job.id == job_id)
        if owner_id:
            query = query.where(Job.owner_id == owner_id)

        result = await session.execute(
            query.execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_idempotency_key(
        self, session: AsyncSession, idempotency_key: str
    ) -> Job | None:
        result = await session.execute(
            select(Job)
            .where(Job.idempotency_key == idempotency_key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_by_owner(
        self,
        session: AsyncSession,
        owner_id: str,
        status: JobStatus | None = None,
        job_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List an owner's jobs, newest first, with the unpaginated total."""
        base_query = select(Job).where(Job.owner_id == owner_id)

        if status:
            base_query = base_query.where(Job.status == JobStatus(status).value)
        if job_type:
            base_query = base_query.where(Job.type == job_type)

        count_query = select(func.count()).select_from(base_query.subquery())
        total = (await session.execute(count_query)).scalar() or 0

        jobs_query = (
            base_query.order_by(desc(Job.created_at), desc(Job.id))
            .offset(offset)
            .limit(limit)
        )
        jobs = (await session.execute(jobs_query)).scalars().all()

        return list(jobs), total

    async def transition(
        self,
        session: AsyncSession,
        job_id: UUID,
        status: JobStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        attempts: int | None = None,
        at: datetime | None = None,
    ) -> Job | None:
        """
        Move a non-terminal record to ``status``.

        ``startedAt``/``completedAt``/``failedAt`` are only written on the
        first entry into their state. ``at`` overrides the timestamp recorded
        for that entry.

        Returns:
            The updated record, or None when the record is missing or already
            terminal.
        """
        now = utcnow()
        entered_at = at or now
        values: dict[str, Any] = {"status": status.value, "updated_at": now}

        if status == JobStatus.PROCESSING:
            values["started_at"] = func.coalesce(Job.started_at, entered_at)
        elif status == JobStatus.COMPLETED:
            values["completed_at"] = func.coalesce(Job.completed_at, entered_at)
            values["result"] = result if result is not None else {}
        elif status == JobStatus.FAILED:
            values["failed_at"] = func.coalesce(Job.failed_at, entered_at)
            values["error"] = error or "Unknown error"

        if attempts is not None:
            values["attempts"] = attempts

        update_result = await session.execute(
            update(Job)
            .where(and_(Job.id == job_id, Job.status.notin_(TERMINAL_STATUSES)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if update_result.rowcount == 0:
            return None
        return await self.find_by_id(session, job_id)

    async def record_failure(
        self, session: AsyncSession, job_id: UUID, error: str
    ) -> FailureOutcome:
        """
        Count one failed attempt.

        A single UPDATE increments ``attempts`` and flips the record to
        FAILED exactly when the new count reaches ``max_attempts``; below the
        ceiling the record stays PROCESSING while a retry is pending.
        """
        now = utcnow()
        exhausted = Job.attempts + 1 >= Job.max_attempts

        update_result = await session.execute(
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.status.notin_(TERMINAL_STATUSES),
                    Job.attempts < Job.max_attempts,
                )
            )
            .values(
                attempts=Job.attempts + 1,
                status=case(
                    (exhausted, JobStatus.FAILED.value),
                    else_=JobStatus.PROCESSING.value,
                ),
                error=case((exhausted, error), else_=Job.error),
                failed_at=case(
                    (exhausted, func.coalesce(Job.failed_at, now)),
                    else_=Job.failed_at,
                ),
                started_at=func.coalesce(Job.started_at, now),
                updated_at=now,
            )
            .returning(Job.status, Job.attempts, Job.max_attempts)
            .execution_options(synchronize_session=False)
        )
        row = update_result.first()
        await session.commit()

        if row is not None:
            return FailureOutcome(
                applied=True, status=row[0], attempts=row[1], max_attempts=row[2]
            )

        job = await self.find_by_id(session, job_id)
        if job is None:
            return FailureOutcome(applied=False, status=None, attempts=0, max_attempts=0)
        return FailureOutcome(
            applied=False,
            status=job.status,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
        )

    async def stats(
        self, session: AsyncSession, owner_id: str | None = None
    ) -> dict[str, Any]:
        """Job counts, optionally scoped to an owner."""
        base_filter = Job.owner_id == owner_id if owner_id else true()

        status_result = await session.execute(
            select(Job.status, func.count(Job.id))
            .where(base_filter)
            .group_by(Job.status)
        )
        by_status = {status.value: 0 for status in JobStatus}
        by_status.update(dict(status_result.all()))

        type_result = await session.execute(
            select(Job.type, func.count(Job.id)).where(base_filter).group_by(Job.type)
        )
        by_type = dict(type_result.all())

        return {
            "total_jobs": sum(by_status.values()),
            "by_status": by_status,
            "by_type": by_type,
            "active": by_status[JobStatus.PENDING.value]
            + by_status[JobStatus.PROCESSING.value],
        }
