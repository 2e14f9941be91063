"""
Processing job Pydantic schemas.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class JobCreate(BaseModel):
    """Schema for enqueueing a new processing job."""

    job_type: str = Field(..., description="Job type identifier")
    queue_name: str = Field(default="default", description="Queue the job belongs to")
    doc_id: str | None = Field(default=None, description="Document correlation id")
    user_id: str | None = Field(default=None, description="Requesting user")
    priority: int = Field(
        default=5, ge=1, le=10, description="Priority (1=highest, 10=lowest)"
    )
    max_attempts: int = Field(default=3, ge=1, le=20, description="Attempt ceiling")
    retry_delay_seconds: int = Field(default=60, ge=0)
    input_params: dict[str, Any] = Field(default_factory=dict)
    job_config: dict[str, Any] = Field(default_factory=dict)
    file_path: str | None = None
    depends_on: list[str] | None = None
    triggers: list[str] | None = None


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    doc_id: str | None
    user_id: str | None
    job_type: str
    status: str
    priority: int
    queue_name: str
    worker_id: str | None = None
    attempts: int
    max_attempts: int
    next_retry_at: datetime | None = None

    progress_current: int = 0
    progress_total: int = 0
    progress_percentage: float = 0.0
    progress_message: str | None = None

    queued_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    processing_duration_ms: int | None = None
    queue_wait_duration_ms: int | None = None

    result_data: dict[str, Any] | None = None
    error_message: str | None = None
    error_code: str | None = None


class JobError(BaseModel):
    """Failure description written to a job row."""

    message: str
    code: str | None = None
    stack: str | None = None


class JobMetrics(BaseModel):
    """Performance metrics written on completion."""

    processing_duration_ms: int | None = None
    memory_usage_bytes: int | None = None
    disk_usage_bytes: int | None = None
    extra: dict[str, Any] | None = None


class QueueStats(BaseModel):
    """Row counts for one queue."""

    queue_name: str
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    retry: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return (
            self.pending
            + self.processing
            + self.completed
            + self.failed
            + self.retry
            + self.cancelled
        )


class PurgeResult(BaseModel):
    """Rows removed by the retention sweep."""

    completed_deleted: int = 0
    failed_deleted: int = 0

    @property
    def total(self) -> int:
        return self.completed_deleted + self.failed_deleted
