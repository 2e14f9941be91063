"""
Job store: the only component that touches the processing_jobs table.

Every ownership-sensitive write is a single-row UPDATE conditioned on
``status == processing`` and the caller's worker id, so a worker that lost
its job to a stale reset can never overwrite the new holder's state.
"""

import logging
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from docworker.config.settings import Settings
from docworker.infra.database import Database
from docworker.v1.core.exceptions import StoreUnavailableError
from docworker.v1.infra.jobs.models import (
    CLAIMABLE_STATUSES,
    JobStatus,
    ProcessingJob,
    compute_progress_percentage,
)
from docworker.v1.infra.jobs.schemas import (
    JobCreate,
    JobError,
    JobMetrics,
    PurgeResult,
    QueueStats,
)

logger = logging.getLogger(__name__)


def _milliseconds(start: datetime | None, end: datetime | None) -> int | None:
    if start is None or end is None:
        return None
    return max(0, int((end - start).total_seconds() * 1000))


class JobStore:
    """Persistence operations for processing jobs."""

    def __init__(self, database: Database, settings: Settings):
        self.database = database
        self.settings = settings

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session whose connectivity failures surface as StoreUnavailableError."""
        try:
            async with self.database.session() as session:
                yield session
        except (OperationalError, InterfaceError, OSError) as e:
            raise StoreUnavailableError(
                "Job store operation failed", details={"error": str(e)}
            ) from e

    def _owned(self, job_id: str, worker_id: str):
        return and_(
            ProcessingJob.id == job_id,
            ProcessingJob.status == JobStatus.PROCESSING.value,
            ProcessingJob.worker_id == worker_id,
        )

    async def enqueue(self, job_create: JobCreate) -> str:
        """Insert a QUEUED job and return its id."""
        now = datetime.now(UTC)
        job = ProcessingJob(
            id=str(uuid.uuid4()),
            doc_id=job_create.doc_id,
            user_id=job_create.user_id,
            job_type=job_create.job_type,
            status=JobStatus.QUEUED.value,
            priority=job_create.priority,
            queue_name=job_create.queue_name,
            attempts=0,
            max_attempts=job_create.max_attempts,
            retry_delay_seconds=job_create.retry_delay_seconds,
            input_params=job_create.input_params,
            job_config=job_create.job_config,
            file_path=job_create.file_path,
            depends_on=job_create.depends_on,
            triggers=job_create.triggers,
            queued_at=now,
            created_at=now,
            updated_at=now,
        )

        async with self._session() as session:
            session.add(job)
            await session.commit()

        logger.info(
            "Job enqueued",
            extra={
                "job_id": job.id,
                "job_type": job.job_type,
                "queue_name": job.queue_name,
                "priority": job.priority,
            },
        )
        return job.id

    async def claim_batch(
        self, queue_name: str, capacity: int, worker_id: str
    ) -> list[ProcessingJob]:
        """
        Atomically claim up to ``capacity`` eligible jobs for ``worker_id``.

        Eligible rows are QUEUED, or RETRY whose next_retry_at has passed,
        ordered by priority then queue time. Rows locked by a concurrent
        claimer are skipped (PostgreSQL) and every flip is guarded on the
        claimable status, so a lost race only returns fewer rows.
        """
        if capacity <= 0:
            return []

        now = datetime.now(UTC)

        async with self._session() as session:
            candidates = await session.execute(
                select(ProcessingJob.id)
                .where(
                    and_(
                        ProcessingJob.queue_name == queue_name,
                        or_(
                            ProcessingJob.status == JobStatus.QUEUED.value,
                            and_(
                                ProcessingJob.status == JobStatus.RETRY.value,
                                ProcessingJob.next_retry_at <= now,
                            ),
                        ),
                    )
                )
                .order_by(ProcessingJob.priority, ProcessingJob.queued_at)
                .limit(capacity)
                .with_for_update(skip_locked=True)
            )
            candidate_ids = list(candidates.scalars().all())

            claimed_ids: list[str] = []
            for job_id in candidate_ids:
                result = await session.execute(
                    update(ProcessingJob)
                    .where(
                        and_(
                            ProcessingJob.id == job_id,
                            ProcessingJob.status.in_(CLAIMABLE_STATUSES),
                        )
                    )
                    .values(
                        status=JobStatus.PROCESSING.value,
                        worker_id=worker_id,
                        started_at=now,
                        attempts=ProcessingJob.attempts + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed_ids.append(job_id)

            await session.commit()

            if not claimed_ids:
                return []

            rows = await session.execute(
                select(ProcessingJob)
                .where(ProcessingJob.id.in_(claimed_ids))
                .order_by(ProcessingJob.priority, ProcessingJob.queued_at)
                .execution_options(populate_existing=True)
            )
            jobs = list(rows.scalars().all())
            await session.commit()

        if len(claimed_ids) < len(candidate_ids):
            logger.debug(
                "Lost claim race for some jobs",
                extra={
                    "worker_id": worker_id,
                    "candidates": len(candidate_ids),
                    "claimed": len(claimed_ids),
                },
            )

        logger.info(
            "Claimed jobs",
            extra={
                "worker_id": worker_id,
                "queue_name": queue_name,
                "job_count": len(jobs),
                "job_ids": claimed_ids,
            },
        )
        return jobs

    async def mark_completed(
        self,
        job_id: str,
        worker_id: str,
        result: dict[str, Any] | None = None,
        metrics: JobMetrics | None = None,
    ) -> bool:
        """Record success. Returns False if the caller no longer owns the job."""
        now = datetime.now(UTC)
        metrics = metrics or JobMetrics()

        async with self._session() as session:
            row = await session.execute(
                select(ProcessingJob.queued_at, ProcessingJob.started_at).where(
                    self._owned(job_id, worker_id)
                )
            )
            timing = row.one_or_none()
            if timing is None:
                await session.rollback()
                return False

            queued_at, started_at = timing
            values: dict[str, Any] = {
                "status": JobStatus.COMPLETED.value,
                "completed_at": now,
                "progress_percentage": 100.0,
                "result_data": result,
                "processing_duration_ms": (
                    metrics.processing_duration_ms
                    if metrics.processing_duration_ms is not None
                    else _milliseconds(started_at, now)
                ),
                "queue_wait_duration_ms": _milliseconds(queued_at, started_at),
                "memory_usage_bytes": metrics.memory_usage_bytes,
                "disk_usage_bytes": metrics.disk_usage_bytes,
                "metrics": metrics.extra,
                "next_retry_at": None,
                "updated_at": now,
            }
            updated = await session.execute(
                update(ProcessingJob)
                .where(self._owned(job_id, worker_id))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        success = updated.rowcount == 1
        if success:
            logger.info(
                "Job completed",
                extra={
                    "job_id": job_id,
                    "worker_id": worker_id,
                    "processing_duration_ms": values["processing_duration_ms"],
                },
            )
        return success

    async def mark_failed(self, job_id: str, worker_id: str, error: JobError) -> bool:
        """Move an owned job to terminal FAILED."""
        now = datetime.now(UTC)

        async with self._session() as session:
            updated = await session.execute(
                update(ProcessingJob)
                .where(self._owned(job_id, worker_id))
                .values(
                    status=JobStatus.FAILED.value,
                    failed_at=now,
                    next_retry_at=None,
                    error_message=error.message,
                    error_code=error.code,
                    error_stack=error.stack,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        success = updated.rowcount == 1
        if success:
            logger.warning(
                "Job failed permanently",
                extra={
                    "job_id": job_id,
                    "worker_id": worker_id,
                    "error_code": error.code,
                    "error": error.message,
                },
            )
        return success

    async def mark_retry(
        self, job_id: str, worker_id: str, error: JobError, next_retry_at: datetime
    ) -> bool:
        """Move an owned job to RETRY, eligible again at ``next_retry_at``."""
        now = datetime.now(UTC)

        async with self._session() as session:
            updated = await session.execute(
                update(ProcessingJob)
                .where(self._owned(job_id, worker_id))
                .values(
                    status=JobStatus.RETRY.value,
                    next_retry_at=next_retry_at,
                    error_message=error.message,
                    error_code=error.code,
                    error_stack=error.stack,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        success = updated.rowcount == 1
        if success:
            logger.info(
                "Job scheduled for retry",
                extra={
                    "job_id": job_id,
                    "worker_id": worker_id,
                    "next_retry_at": next_retry_at.isoformat(),
                    "error_code": error.code,
                },
            )
        return success

    async def update_progress(
        self,
        job_id: str,
        worker_id: str,
        current: int,
        total: int,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Write progress counters for an owned job."""
        now = datetime.now(UTC)

        async with self._session() as session:
            updated = await session.execute(
                update(ProcessingJob)
                .where(self._owned(job_id, worker_id))
                .values(
                    progress_current=current,
                    progress_total=total,
                    progress_percentage=compute_progress_percentage(current, total),
                    progress_message=message,
                    progress_details=details,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        return updated.rowcount == 1

    async def reset_stale(self, older_than: timedelta) -> int:
        """
        Recover PROCESSING jobs whose holder presumably died.

        Jobs with attempts left go back to QUEUED with their holder cleared.
        Jobs that already used their last attempt become FAILED, keeping the
        attempt ceiling intact. Returns the number of rows touched.
        """
        now = datetime.now(UTC)
        cutoff = now - older_than
        minutes = int(older_than.total_seconds() // 60)
        stale = and_(
            ProcessingJob.status == JobStatus.PROCESSING.value,
            ProcessingJob.started_at < cutoff,
        )

        async with self._session() as session:
            requeued = await session.execute(
                update(ProcessingJob)
                .where(and_(stale, ProcessingJob.attempts < ProcessingJob.max_attempts))
                .values(
                    status=JobStatus.QUEUED.value,
                    worker_id=None,
                    started_at=None,
                    error_message=f"Job reset after exceeding {minutes} minute timeout",
                    error_code="stale_timeout",
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            exhausted = await session.execute(
                update(ProcessingJob)
                .where(stale)
                .values(
                    status=JobStatus.FAILED.value,
                    failed_at=now,
                    error_message=(
                        f"Job exceeded {minutes} minute timeout with no attempts left"
                    ),
                    error_code="stale_timeout",
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        total = requeued.rowcount + exhausted.rowcount
        if total:
            logger.warning(
                "Reset stale jobs",
                extra={
                    "requeued": requeued.rowcount,
                    "failed": exhausted.rowcount,
                    "timeout_minutes": minutes,
                },
            )
        return total

    async def purge_old(
        self, completed_retention: timedelta, failed_retention: timedelta
    ) -> PurgeResult:
        """Delete COMPLETED and FAILED rows past their retention windows."""
        now = datetime.now(UTC)

        async with self._session() as session:
            completed = await session.execute(
                delete(ProcessingJob)
                .where(
                    and_(
                        ProcessingJob.status == JobStatus.COMPLETED.value,
                        ProcessingJob.completed_at < now - completed_retention,
                    )
                )
                .execution_options(synchronize_session=False)
            )
            failed = await session.execute(
                delete(ProcessingJob)
                .where(
                    and_(
                        ProcessingJob.status == JobStatus.FAILED.value,
                        ProcessingJob.failed_at < now - failed_retention,
                    )
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        purge = PurgeResult(
            completed_deleted=completed.rowcount, failed_deleted=failed.rowcount
        )
        if purge.total:
            logger.info(
                "Purged old jobs",
                extra={
                    "completed_deleted": purge.completed_deleted,
                    "failed_deleted": purge.failed_deleted,
                },
            )
        return purge

    async def cancel(self, job_id: str) -> bool:
        """Cancel a job that has not been claimed yet (QUEUED or RETRY)."""
        now = datetime.now(UTC)

        async with self._session() as session:
            updated = await session.execute(
                update(ProcessingJob)
                .where(
                    and_(
                        ProcessingJob.id == job_id,
                        ProcessingJob.status.in_(CLAIMABLE_STATUSES),
                    )
                )
                .values(
                    status=JobStatus.CANCELLED.value,
                    next_retry_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        success = updated.rowcount == 1
        if success:
            logger.info("Job cancelled", extra={"job_id": job_id})
        return success

    async def get(self, job_id: str) -> ProcessingJob | None:
        async with self._session() as session:
            result = await session.execute(
                select(ProcessingJob).where(ProcessingJob.id == job_id)
            )
            return result.scalar_one_or_none()

    async def list_by_document(self, doc_id: str) -> list[ProcessingJob]:
        """All jobs for one document in queue order."""
        async with self._session() as session:
            result = await session.execute(
                select(ProcessingJob)
                .where(ProcessingJob.doc_id == doc_id)
                .order_by(ProcessingJob.queued_at)
            )
            return list(result.scalars().all())

    async def queue_stats(self, queue_name: str | None = None) -> list[QueueStats]:
        """Row counts by status for every queue, or a single one."""
        query = select(
            ProcessingJob.queue_name, ProcessingJob.status, func.count(ProcessingJob.id)
        ).group_by(ProcessingJob.queue_name, ProcessingJob.status)
        if queue_name is not None:
            query = query.where(ProcessingJob.queue_name == queue_name)

        async with self._session() as session:
            result = await session.execute(query)
            rows = result.all()

        field_by_status = {
            JobStatus.QUEUED.value: "pending",
            JobStatus.PROCESSING.value: "processing",
            JobStatus.COMPLETED.value: "completed",
            JobStatus.FAILED.value: "failed",
            JobStatus.RETRY.value: "retry",
            JobStatus.CANCELLED.value: "cancelled",
        }
        stats: dict[str, QueueStats] = {}
        for name, status, count in rows:
            entry = stats.setdefault(name, QueueStats(queue_name=name))
            field = field_by_status.get(status)
            if field:
                setattr(entry, field, count)

        if queue_name is not None and queue_name not in stats:
            stats[queue_name] = QueueStats(queue_name=queue_name)

        return [stats[name] for name in sorted(stats)]
