"""create processing_jobs table

Revision ID: 3b1f6c2d9a40
Revises:
Create Date: 2026-10-17 09:12:44.381902

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b1f6c2d9a40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "processing_jobs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("doc_id", sa.String(36), nullable=True, comment="Document correlation id"),
        sa.Column("user_id", sa.String(36), nullable=True, comment="Requesting user"),
        sa.Column("job_type", sa.Text, nullable=False),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="queued",
            comment="queued|processing|completed|failed|cancelled|retry",
        ),
        sa.Column(
            "priority",
            sa.Integer,
            nullable=False,
            server_default="5",
            comment="Priority 1-10, lower runs first",
        ),
        sa.Column("queue_name", sa.Text, nullable=False, server_default="default"),
        sa.Column("worker_id", sa.Text, nullable=True, comment="Current or most recent holder"),
        # Retry policy
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("next_retry_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("retry_delay_seconds", sa.Integer, nullable=False, server_default="60"),
        # Opaque inputs
        sa.Column("job_config", sa.JSON, nullable=False, server_default="{}"),
        sa.Column("input_params", sa.JSON, nullable=False, server_default="{}"),
        sa.Column("file_path", sa.Text, nullable=True),
        # Progress
        sa.Column("progress_current", sa.Integer, nullable=False, server_default="0"),
        sa.Column("progress_total", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "progress_percentage", sa.Numeric(5, 2), nullable=False, server_default="0"
        ),
        sa.Column("progress_message", sa.Text, nullable=True),
        sa.Column("progress_details", sa.JSON, nullable=True),
        # Timing
        sa.Column(
            "queued_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("failed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        # Performance metrics
        sa.Column("processing_duration_ms", sa.Integer, nullable=True),
        sa.Column("queue_wait_duration_ms", sa.Integer, nullable=True),
        sa.Column("memory_usage_bytes", sa.BigInteger, nullable=True),
        sa.Column("disk_usage_bytes", sa.BigInteger, nullable=True),
        # Results and errors
        sa.Column("result_data", sa.JSON, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("error_stack", sa.Text, nullable=True),
        sa.Column("error_code", sa.Text, nullable=True),
        sa.Column("metrics", sa.JSON, nullable=True),
        # Pipeline metadata, not interpreted by the workers
        sa.Column("depends_on", sa.JSON, nullable=True),
        sa.Column("triggers", sa.JSON, nullable=True),
        # Timestamps
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
        # Constraints
        sa.CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed', 'cancelled', 'retry')",
            name="processing_jobs_status_check",
        ),
        sa.CheckConstraint(
            "priority BETWEEN 1 AND 10", name="processing_jobs_priority_check"
        ),
        sa.CheckConstraint(
            "progress_percentage BETWEEN 0 AND 100",
            name="processing_jobs_progress_check",
        ),
    )

    # Create indexes for performance
    op.create_index(
        "ix_processing_jobs_claim",
        "processing_jobs",
        ["queue_name", "status", "priority", "queued_at"],
    )
    op.create_index(
        "ix_processing_jobs_retry", "processing_jobs", ["status", "next_retry_at"]
    )
    op.create_index("ix_processing_jobs_worker", "processing_jobs", ["worker_id", "status"])
    op.create_index("ix_processing_jobs_doc", "processing_jobs", ["doc_id"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("processing_jobs")
