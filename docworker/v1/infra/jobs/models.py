"""
Processing job model backing the document worker queue.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from docworker.infra.database import Base, UTCDateTime


class JobStatus(str, Enum):
    """Job status enumeration."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRY = "retry"


class JobType(str, Enum):
    """Job types produced by the ingestion service."""

    PARSE_PDF = "parse_pdf"
    PARSE_MARKDOWN = "parse_markdown"
    PARSE_TEXT = "parse_text"
    CHUNK_DOCUMENT = "chunk_document"
    EMBED_CHUNKS = "embed_chunks"
    CLEANUP_TEMP = "cleanup_temp"


TERMINAL_STATUSES = (
    JobStatus.COMPLETED.value,
    JobStatus.FAILED.value,
    JobStatus.CANCELLED.value,
)
CLAIMABLE_STATUSES = (JobStatus.QUEUED.value, JobStatus.RETRY.value)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ProcessingJob(Base):
    """
    One unit of asynchronous document work.

    Rows are shared between every worker process; the status column plus
    worker_id define ownership while a job is PROCESSING.
    """

    __tablename__ = "processing_jobs"

    # Identity and correlation
    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    doc_id: Mapped[str | None] = mapped_column(
        String(36), nullable=True, comment="Document correlation id"
    )
    user_id: Mapped[str | None] = mapped_column(
        String(36), nullable=True, comment="Requesting user"
    )
    job_type: Mapped[str] = mapped_column(Text, nullable=False)

    # Queue state
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=JobStatus.QUEUED.value
    )
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=5, comment="Priority 1-10, lower runs first"
    )
    queue_name: Mapped[str] = mapped_column(Text, nullable=False, default="default")
    worker_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Current or most recent holder"
    )

    # Retry policy
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    retry_delay_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=60)

    # Opaque inputs
    job_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    input_params: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    file_path: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Progress
    progress_current: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_percentage: Mapped[float] = mapped_column(
        Numeric(5, 2, asdecimal=False), nullable=False, default=0.0
    )
    progress_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    progress_details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # Timing
    queued_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow
    )
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Performance metrics
    processing_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    queue_wait_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    memory_usage_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    disk_usage_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Results and errors
    result_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_stack: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    metrics: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # Inert pipeline metadata
    depends_on: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    triggers: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed', 'cancelled', 'retry')",
            name="processing_jobs_status_check",
        ),
        CheckConstraint(
            "priority BETWEEN 1 AND 10", name="processing_jobs_priority_check"
        ),
        CheckConstraint(
            "progress_percentage BETWEEN 0 AND 100",
            name="processing_jobs_progress_check",
        ),
        Index("ix_processing_jobs_claim", "queue_name", "status", "priority", "queued_at"),
        Index("ix_processing_jobs_retry", "status", "next_retry_at"),
        Index("ix_processing_jobs_worker", "worker_id", "status"),
        Index("ix_processing_jobs_doc", "doc_id"),
    )

    def is_terminal(self) -> bool:
        """Check if job reached completed, failed or cancelled."""
        return self.status in TERMINAL_STATUSES

    def can_retry(self) -> bool:
        """Check if another attempt is allowed after the current one."""
        return self.attempts < self.max_attempts

    def __repr__(self) -> str:
        return (
            f"<ProcessingJob id={self.id} type={self.job_type} "
            f"status={self.status} attempts={self.attempts}/{self.max_attempts}>"
        )


def compute_progress_percentage(current: int, total: int) -> float:
    """Percentage rounded to two decimals and clamped to [0, 100]."""
    if total <= 0:
        return 0.0
    percentage = round(current / total * 100, 2)
    return max(0.0, min(100.0, percentage))
