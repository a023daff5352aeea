"""create jobs and queue_items tables

Revision ID: 3c1f9a7d52e8
Revises:
Create Date: 2026-10-19 09:12:40.518220

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3c1f9a7d52e8"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Durable job records
    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("type", sa.String(100), nullable=False, comment="Job type identifier"),
        sa.Column(
            "status",
            sa.String(50),
            nullable=False,
            comment="Job status: pending|processing|completed|failed|cancelled",
        ),
        sa.Column("payload", sa.JSON, nullable=False, comment="Opaque job payload"),
        sa.Column(
            "result",
            sa.JSON,
            nullable=True,
            comment="Processor result, set on completion",
        ),
        sa.Column(
            "error",
            sa.Text,
            nullable=True,
            comment="Failure reason, set on terminal failure",
        ),
        sa.Column(
            "idempotency_key",
            sa.String(255),
            nullable=True,
            comment="Caller supplied deduplication key",
        ),
        sa.Column("owner_id", sa.String(255), nullable=True, comment="Requesting caller"),
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Execution attempts made",
        ),
        sa.Column(
            "max_attempts",
            sa.Integer,
            nullable=False,
            server_default="3",
            comment="Retry ceiling",
        ),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("failed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("idempotency_key", name="uq_jobs_idempotency_key"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint("max_attempts >= 1", name="jobs_max_attempts_check"),
        sa.CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts", name="jobs_attempts_check"
        ),
    )

    # Listing by owner with status/type filters
    op.create_index(
        "ix_jobs_owner_status_type", "jobs", ["owner_id", "status", "type"]
    )
    op.create_index("ix_jobs_created_at", "jobs", ["created_at"])

    # Execution engine items (database queue backend)
    op.create_table(
        "queue_items",
        sa.Column("queue", sa.String(100), primary_key=True),
        sa.Column("item_id", sa.String(255), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("data", sa.JSON, nullable=False),
        sa.Column("state", sa.String(20), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("run_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("attempts_made", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("backoff_base_ms", sa.Integer, nullable=False, server_default="0"),
        sa.Column("stalled_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("locked_by", sa.Text, nullable=True),
        sa.Column("locked_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("return_value", sa.JSON, nullable=True),
        sa.Column("failed_reason", sa.Text, nullable=True),
        sa.Column("processed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("finished_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("keep_completed_age_s", sa.Integer, nullable=True),
        sa.Column("keep_completed_count", sa.Integer, nullable=True),
        sa.Column("keep_failed_age_s", sa.Integer, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    # Claim query: due items per queue ordered by priority then run time
    op.create_index(
        "ix_queue_items_claim", "queue_items", ["queue", "state", "priority", "run_at"]
    )
    # Stalled item recovery
    op.create_index(
        "ix_queue_items_heartbeat", "queue_items", ["queue", "state", "heartbeat_at"]
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_queue_items_heartbeat", table_name="queue_items")
    op.drop_index("ix_queue_items_claim", table_name="queue_items")
    op.drop_table("queue_items")

    op.drop_index("ix_jobs_created_at", table_name="jobs")
    op.drop_index("ix_jobs_owner_status_type", table_name="jobs")
    op.drop_table("jobs")
