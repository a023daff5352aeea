"""
Job orchestration Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from jobrelay.v1.jobs.models import JobStatus


class JobCreateRequest(BaseModel):
    """Schema for creating a new job."""

    type: str = Field(..., description="Job type identifier")
    payload: dict[str, Any] = Field(
        default_factory=dict, description="Opaque job payload"
    )
    idempotency_key: str | None = Field(
        default=None,
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("idempotency_key", "idempotencyKey"),
        description="Deduplication key; repeated creates return the same job",
    )
    max_attempts: int | None = Field(
        default=None,
        ge=1,
        le=25,
        validation_alias=AliasChoices("max_attempts", "maxAttempts"),
        description="Retry ceiling, defaults to the queue policy",
    )


class JobResponse(BaseModel):
    """Public view of a job record."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    status: str
    payload: dict[str, Any]
    result: dict[str, Any] | None = None
    error: str | None = None
    attempts: int
    max_attempts: int

    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class JobListFilters(BaseModel):
    """Schema for job listing filters."""

    status: JobStatus | None = Field(default=None, description="Filter by job status")
    type: str | None = Field(default=None, description="Filter by job type")
    limit: int = Field(default=20, ge=1, le=100, description="Page size")
    offset: int = Field(default=0, ge=0, description="Results offset for pagination")


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobCancelResponse(BaseModel):
    success: bool


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    active: int  # pending + processing
    queues: dict[str, dict[str, int]] = Field(
        default_factory=dict, description="Engine item counts per job type"
    )
