"""
Lifecycle signal handlers invoked by the worker pool for every item.
"""

from typing import Any, Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobrelay.config.logging import get_logger
from jobrelay.v1.jobs.models import JobStatus
from jobrelay.v1.jobs.service import JobService
from jobrelay.v1.jobs.store import FailureOutcome

logger = get_logger(__name__)


class LifecycleHandler(Protocol):
    """Signals the worker pool emits while processing one engine item."""

    async def on_started(self, job_id: str | None) -> bool:
        """Item claimed. Returns False when the job must not run."""
        ...

    async def on_completed(self, job_id: str | None, result: dict[str, Any]) -> None: ...

    async def on_failed(self, job_id: str | None, error: str) -> FailureOutcome:
        """Attempt failed after the engine accepted the failure from this claim."""
        ...

    async def on_stalled(self, job_type: str, item_id: str) -> None: ...


def _parse_job_id(job_id: str | None) -> UUID | None:
    if not job_id:
        return None
    try:
        return UUID(str(job_id))
    except ValueError:
        return None


class JobLifecycle:
    """Translates worker signals into job record transitions."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], service: JobService
    ):
        self.SessionLocal = session_factory
        self.service = service

    async def on_started(self, job_id: str | None) -> bool:
        record_id = _parse_job_id(job_id)
        if record_id is None:
            logger.warning("Claimed item carries no job record id", job_id=job_id)
            return False

        async with self.SessionLocal() as session:
            job = await self.service.update_status(
                session, record_id, JobStatus.PROCESSING
            )
            if job is not None:
                logger.info("Job started", job_id=job_id, attempts=job.attempts)
                return True

            existing = await self.service.store.find_by_id(session, record_id)

        if existing is None:
            logger.warning("Job record not found for claimed item", job_id=job_id)
        else:
            logger.info(
                "Skipping job already in terminal state",
                job_id=job_id,
                status=existing.status,
            )
        return False

    async def on_completed(self, job_id: str | None, result: dict[str, Any]) -> None:
        record_id = _parse_job_id(job_id)
        if record_id is None:
            return

        async with self.SessionLocal() as session:
            job = await self.service.update_status(
                session, record_id, JobStatus.COMPLETED, result=result
            )

        if job is None:
            logger.warning(
                "Completion not applied; job missing or already terminal",
                job_id=job_id,
            )
        else:
            logger.info("Job completed", job_id=job_id, attempts=job.attempts)

    async def on_failed(self, job_id: str | None, error: str) -> FailureOutcome:
        record_id = _parse_job_id(job_id)
        if record_id is None:
            return FailureOutcome(applied=False, status=None, attempts=0, max_attempts=0)

        async with self.SessionLocal() as session:
            outcome = await self.service.record_attempt_failure(
                session, record_id, error
            )

        if not outcome.applied:
            logger.warning(
                "Failure not applied; job missing, terminal or out of attempts",
                job_id=job_id,
                status=outcome.status,
            )
        elif outcome.will_retry:
            logger.info(
                "Job attempt failed, retry pending",
                job_id=job_id,
                attempts=outcome.attempts,
                max_attempts=outcome.max_attempts,
                error=error,
            )
        else:
            logger.error(
                "Job failed permanently",
                job_id=job_id,
                attempts=outcome.attempts,
                max_attempts=outcome.max_attempts,
                error=error,
            )
        return outcome

    async def on_stalled(self, job_type: str, item_id: str) -> None:
        # The engine re-delivers the item; its next outcome drives the record
        logger.warning("Job stalled", job_type=job_type, item_id=item_id)
