"""
Job orchestrator: creates, reads, lists and cancels jobs.
"""

import uuid
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from jobrelay.config.logging import get_logger
from jobrelay.config.settings import Settings
from jobrelay.v1.core.exceptions import InvalidJobTypeError, NotFoundError
from jobrelay.v1.jobs.dispatcher import QueueDispatcher
from jobrelay.v1.jobs.models import Job, JobStatus, JobType
from jobrelay.v1.jobs.reconcile import plan_reconciliation
from jobrelay.v1.jobs.schemas import (
    JobListFilters,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
)
from jobrelay.v1.jobs.store import FailureOutcome, JobStore

logger = get_logger(__name__)


class JobService:
    """Orchestrates job records and their execution engine items."""

    def __init__(self, settings: Settings, store: JobStore, dispatcher: QueueDispatcher):
        self.settings = settings
        self.store = store
        self.dispatcher = dispatcher

    async def create_job(
        self,
        session: AsyncSession,
        job_type: str,
        payload: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
        owner_id: str | None = None,
        max_attempts: int | None = None,
    ) -> JobResponse:
        """
        Create a job record and hand it to the dispatcher.

        Args:
            session: Database session
            job_type: One of the ``JobType`` values
            payload: Opaque payload passed through to the processor
            idempotency_key: Optional deduplication key
            owner_id: Requesting caller
            max_attempts: Retry ceiling, defaults to the queue policy

        Returns:
            Public view of the new record, or of the existing record when
            ``idempotency_key`` was already used
        """
        if job_type not in JobType.values():
            raise InvalidJobTypeError(job_type, JobType.values())

        if idempotency_key:
            existing = await self.store.find_by_idempotency_key(session, idempotency_key)
            if existing:
                logger.info(
                    "Job deduplicated",
                    job_id=str(existing.id),
                    job_type=existing.type,
                    idempotency_key=idempotency_key,
                )
                return JobResponse.model_validate(existing)

        job = Job(
            id=uuid.uuid4(),
            type=job_type,
            status=JobStatus.PENDING.value,
            payload=payload or {},
            idempotency_key=idempotency_key,
            owner_id=owner_id,
            attempts=0,
            max_attempts=max_attempts or self.settings.queue_default_attempts,
        )

        try:
            await self.store.add(session, job)
        except IntegrityError:
            await session.rollback()
            if not idempotency_key:
                raise
            # Race condition - a concurrent create with the same key won
            existing = await self.store.find_by_idempotency_key(session, idempotency_key)
            if existing is None:
                raise
            logger.info(
                "Job deduplicated after concurrent create",
                job_id=str(existing.id),
                job_type=existing.type,
                idempotency_key=idempotency_key,
            )
            return JobResponse.model_validate(existing)

        # An engine failure here propagates; the record stays PENDING
        await self.dispatcher.enqueue(
            job.type,
            {"job_id": str(job.id), "payload": job.payload},
            job.item_id,
            self.dispatcher.default_options(attempts=job.max_attempts),
        )

        logger.info(
            "Job created",
            job_id=str(job.id),
            job_type=job.type,
            item_id=job.item_id,
            owner_id=owner_id,
            max_attempts=job.max_attempts,
        )
        return JobResponse.model_validate(job)

    async def get_job_by_id(
        self, session: AsyncSession, job_id: UUID, owner_id: str | None = None
    ) -> JobResponse | None:
        """Get job by ID with optional owner scoping, reconciled against the engine."""
        job = await self.store.find_by_id(session, job_id, owner_id)
        if job is None:
            return None

        job = await self.reconcile(session, job)
        return JobResponse.model_validate(job)

    async def reconcile(self, session: AsyncSession, job: Job) -> Job:
        """Fold the engine item's state into a possibly stale record."""
        item = await self.dispatcher.lookup(job.type, job.item_id)
        plan = plan_reconciliation(job, item)
        if plan is None:
            return job

        previous_status = job.status

        updated = await self.update_status(
            session,
            job.id,
            plan.status,
            result=plan.result,
            error=plan.error,
            attempts=plan.attempts,
            at=plan.at,
        )
        if updated is None:
            # A concurrent writer made the record terminal first
            return await self.store.find_by_id(session, job.id) or job

        logger.info(
            "Job reconciled from engine state",
            job_id=str(job.id),
            job_type=job.type,
            item_id=job.item_id,
            from_status=previous_status,
            to_status=updated.status,
            engine_state=item.state if item else None,
        )
        return updated

    async def get_jobs_by_owner(
        self, session: AsyncSession, owner_id: str, filters: JobListFilters
    ) -> JobListResponse:
        """List an owner's jobs as stored, without engine reconciliation."""
        jobs, total = await self.store.list_by_owner(
            session,
            owner_id,
            status=filters.status,
            job_type=filters.type,
            limit=filters.limit,
            offset=filters.offset,
        )
        return JobListResponse(
            jobs=[JobResponse.model_validate(job) for job in jobs],
            total=total,
            limit=filters.limit,
            offset=filters.offset,
        )

    async def cancel_job(
        self, session: AsyncSession, job_id: UUID, owner_id: str | None = None
    ) -> bool:
        """
        Cancel a pending or processing job.

        Cancellation is not preemptive: a processor already running keeps
        running, but its outcome can no longer change the record.

        Returns:
            True when the record became CANCELLED, False when it was already
            terminal

        Raises:
            NotFoundError: No record matches
        """
        job = await self.store.find_by_id(session, job_id, owner_id)
        if job is None:
            raise NotFoundError("Job not found", {"job_id": str(job_id)})

        if job.is_terminal():
            logger.info(
                "Cancel rejected for terminal job", job_id=str(job_id), status=job.status
            )
            return False

        await self.dispatcher.remove(job.type, job.item_id)

        cancelled = await self.update_status(session, job.id, JobStatus.CANCELLED)
        if cancelled is None:
            logger.info("Job reached a terminal state before cancel", job_id=str(job_id))
            return False

        logger.info(
            "Job cancelled",
            job_id=str(job_id),
            job_type=job.type,
            item_id=job.item_id,
            owner_id=owner_id,
        )
        return True

    async def update_status(
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
        """Apply a guarded status transition. None when the record is terminal or gone."""
        return await self.store.transition(
            session, job_id, status, result=result, error=error, attempts=attempts, at=at
        )

    async def record_attempt_failure(
        self, session: AsyncSession, job_id: UUID, error: str
    ) -> FailureOutcome:
        """Count a failed attempt and decide retry versus terminal failure."""
        return await self.store.record_failure(session, job_id, error)

    async def get_job_stats(
        self, session: AsyncSession, owner_id: str | None = None
    ) -> JobStatsResponse:
        """Get job statistics, optionally scoped to an owner."""
        stats = await self.store.stats(session, owner_id)
        queues = await self.dispatcher.queue_counts(JobType.values())
        return JobStatsResponse(**stats, queues=queues)
