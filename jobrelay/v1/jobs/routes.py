"""
Job API endpoints.

Callers create, inspect, list and cancel their own jobs; callers with the
admin role may read and cancel any job.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from jobrelay.config.logging import get_logger
from jobrelay.infra.database import SessionDep
from jobrelay.v1.core.exceptions import NotFoundError, create_success_response
from jobrelay.v1.core.security import Principal, PrincipalDep
from jobrelay.v1.jobs.models import JobStatus
from jobrelay.v1.jobs.schemas import (
    JobCancelResponse,
    JobCreateRequest,
    JobListFilters,
)
from jobrelay.v1.jobs.runtime import JobServiceDep
from jobrelay.v1.jobs.service import JobService

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


@router.post("", response_model=dict, status_code=201)
async def create_job(
    job_request: JobCreateRequest,
    request: Request,
    principal: Principal = PrincipalDep,
    session: AsyncSession = SessionDep,
    job_service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Create a job; repeating an idempotency key returns the original job."""

    job = await job_service.create_job(
        session,
        job_request.type,
        job_request.payload,
        idempotency_key=job_request.idempotency_key,
        owner_id=principal.user_id,
        max_attempts=job_request.max_attempts,
    )

    return create_success_response(
        data=job.model_dump(mode="json"), request_id=_request_id(request)
    )


@router.get("", response_model=dict)
async def list_jobs(
    request: Request,
    status: JobStatus | None = Query(default=None, description="Filter by status"),
    type: str | None = Query(default=None, description="Filter by job type"),
    limit: int = Query(default=20, ge=1, le=100, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    principal: Principal = PrincipalDep,
    session: AsyncSession = SessionDep,
    job_service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """List the caller's jobs, newest first."""

    filters = JobListFilters(status=status, type=type, limit=limit, offset=offset)
    jobs = await job_service.get_jobs_by_owner(session, principal.user_id, filters)

    return create_success_response(
        data=jobs.model_dump(mode="json"), request_id=_request_id(request)
    )


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    request: Request,
    principal: Principal = PrincipalDep,
    session: AsyncSession = SessionDep,
    job_service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Job counts for the caller (all owners for admins) plus engine queue depth."""

    stats = await job_service.get_job_stats(session, principal.owner_scope())

    return create_success_response(
        data=stats.model_dump(mode="json"), request_id=_request_id(request)
    )


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    request: Request,
    principal: Principal = PrincipalDep,
    session: AsyncSession = SessionDep,
    job_service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""

    job = await job_service.get_job_by_id(session, job_id, principal.owner_scope())

    if not job:
        raise NotFoundError("Job not found", {"job_id": str(job_id)})

    return create_success_response(
        data=job.model_dump(mode="json"), request_id=_request_id(request)
    )


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(
    job_id: UUID,
    request: Request,
    principal: Principal = PrincipalDep,
    session: AsyncSession = SessionDep,
    job_service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Cancel a pending or processing job."""

    success = await job_service.cancel_job(session, job_id, principal.owner_scope())

    logger.info(
        "Job cancel requested via API",
        job_id=str(job_id),
        user_id=principal.user_id,
        success=success,
    )

    return create_success_response(
        data=JobCancelResponse(success=success).model_dump(),
        request_id=_request_id(request),
    )
