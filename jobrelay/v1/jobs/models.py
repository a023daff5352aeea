"""
Job record and execution engine table models.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    CheckConstraint,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from jobrelay.infra.database import Base


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobStatus(str, Enum):
    """Job record status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value}
)


class JobType(str, Enum):
    """Closed set of job kinds. Each kind has its own queue and processor."""

    EMAIL_SEND = "email:send"
    FILE_PROCESS = "file:process"
    DATA_EXPORT = "data:export"
    NOTIFICATION_SEND = "notification:send"
    WORKSPACE_BACKUP = "workspace:backup"

    @classmethod
    def values(cls) -> list[str]:
        return [member.value for member in cls]


class Job(Base):
    """
    Durable, canonical description of one unit of work.

    The record is the long-lived view of a job; the execution engine holds a
    transient item for it while it is queued or running. Terminal statuses
    (completed, failed, cancelled) are never left once reached.
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(
        String(100), nullable=False, comment="Job type identifier"
    )
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="Job status: pending|processing|completed|failed|cancelled",
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Opaque job payload"
    )
    result: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Processor result, set on completion"
    )
    error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Failure reason, set on terminal failure"
    )
    idempotency_key: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
        comment="Caller supplied deduplication key",
    )
    owner_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="Requesting caller"
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Execution attempts made"
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3, comment="Retry ceiling"
    )

    started_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    failed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="jobs_status_check",
        ),
        CheckConstraint("max_attempts >= 1", name="jobs_max_attempts_check"),
        CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts", name="jobs_attempts_check"
        ),
        Index("ix_jobs_owner_status_type", "owner_id", "status", "type"),
        Index("ix_jobs_created_at", "created_at"),
    )

    @property
    def item_id(self) -> str:
        """Identifier of this job's item in the execution engine.

        Fixed at creation: the idempotency key when one was given, otherwise
        the record id.
        """
        return self.idempotency_key or str(self.id)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class QueueItem(Base):
    """
    Work item stored by the database-backed execution engine.

    Keyed by ``(queue, item_id)``; inserting an existing key is how the engine
    deduplicates repeated dispatches.
    """

    __tablename__ = "queue_items"

    queue: Mapped[str] = mapped_column(String(100), primary_key=True)
    item_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    run_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )

    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    backoff_base_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stalled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Claim coordination
    locked_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    heartbeat_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # Outcome
    return_value: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    failed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # Retention, seconds; null keeps forever
    keep_completed_age_s: Mapped[int | None] = mapped_column(Integer, nullable=True)
    keep_completed_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    keep_failed_age_s: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("ix_queue_items_claim", "queue", "state", "priority", "run_at"),
        Index("ix_queue_items_heartbeat", "queue", "state", "heartbeat_at"),
    )
