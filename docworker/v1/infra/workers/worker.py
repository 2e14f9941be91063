"""
Polling worker bound to one queue.

A worker claims at most ``concurrency`` jobs at a time from the job store,
runs each through the handler registered for its job type, races it against
the configured timeout and writes the outcome back to the row it owns.
"""

import asyncio
import json
import os
import random
import socket
import time
import traceback
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel

from docworker.config.settings import Settings
from docworker.v1.core.exceptions import (
    ConfigurationError,
    JobFatalError,
    JobTimeoutError,
    StoreUnavailableError,
    WorkerStateError,
)
from docworker.v1.core.registries import JobHandler
from docworker.v1.infra.jobs.models import ProcessingJob, compute_progress_percentage
from docworker.v1.infra.jobs.schemas import JobError, JobMetrics
from docworker.v1.infra.jobs.store import JobStore
from docworker.v1.infra.workers.config import WorkerConfig
from docworker.v1.infra.workers.context import JobContext
from docworker.v1.infra.workers.events import EventEmitter, WorkerEvent
from docworker.v1.infra.workers.system_load import disk_usage_bytes, process_memory_bytes

logger = structlog.get_logger(__name__)

# Weight of the newest sample in the moving average of processing time
AVERAGE_SMOOTHING = 0.1


class WorkerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class WorkerStats(BaseModel):
    """Point-in-time statistics for one worker."""

    worker_name: str
    worker_id: str
    queue_name: str
    state: WorkerState
    processed_jobs: int = 0
    successful_jobs: int = 0
    failed_jobs: int = 0
    active_jobs: int = 0
    average_processing_time_ms: float = 0.0
    error_rate: float = 0.0
    started_at: datetime | None = None
    last_activity_at: datetime | None = None
    uptime_s: float = 0.0


def compute_backoff_ms(
    attempts: int,
    max_retries: int,
    max_backoff_ms: int = 300_000,
    jitter_ms: float | None = None,
) -> int:
    """Retry delay: max_retries*1s + 2**attempts*1s + jitter(0..1s), capped."""
    if jitter_ms is None:
        jitter_ms = random.random() * 1000
    delay = max_retries * 1000 + (2**attempts) * 1000 + jitter_ms
    return int(min(delay, max_backoff_ms))


def _ensure_serializable(result: dict[str, Any] | None) -> None:
    """Reject results the result_data column cannot store."""
    try:
        json.dumps(result)
    except (TypeError, ValueError) as e:
        raise JobFatalError(
            f"Handler result is not JSON serializable: {e}",
            error_code="result_not_serializable",
        ) from e


class Worker:
    """
    Queue consumer with strategy-injected job handlers.

    State machine: STOPPED -> RUNNING -> STOPPING -> STOPPED. A start with an
    out-of-bounds configuration moves the worker to ERROR, which is terminal.
    """

    def __init__(
        self,
        config: WorkerConfig,
        store: JobStore,
        handlers: dict[str, JobHandler],
        settings: Settings,
        events: EventEmitter | None = None,
    ):
        self.config = config
        self.store = store
        self.handlers = dict(handlers)
        self.settings = settings
        self.events = events or EventEmitter()
        self.worker_id = f"{config.name}:{socket.gethostname()}:{os.getpid()}"
        self.state = WorkerState.STOPPED

        self._active: dict[str, tuple[asyncio.Task, JobContext]] = {}
        self._detached: set[asyncio.Task] = set()
        self._poll_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

        self._processed = 0
        self._successful = 0
        self._failed = 0
        self._average_ms = 0.0
        self._started_at: datetime | None = None
        self._last_activity_at: datetime | None = None

        self.logger = logger.bind(worker=config.name, worker_id=self.worker_id)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def detached_count(self) -> int:
        return len(self._detached)

    async def start(self) -> None:
        """Validate configuration and begin polling."""
        if self.state == WorkerState.ERROR:
            raise WorkerStateError(
                f"Worker '{self.name}' is in ERROR state and must be rebuilt"
            )
        if self.state in (WorkerState.RUNNING, WorkerState.STOPPING):
            raise WorkerStateError(f"Worker '{self.name}' is already {self.state.value}")

        if not self.config.enabled:
            self.logger.info("Worker disabled, not starting")
            return

        errors = self.config.validate_bounds()
        if errors:
            self.state = WorkerState.ERROR
            self.logger.error("Invalid worker configuration", errors=errors)
            self.events.emit(
                WorkerEvent.ERROR,
                {"worker": self.name, "error": "invalid configuration", "errors": errors},
            )
            raise ConfigurationError(
                f"Invalid configuration for worker '{self.name}'", errors=errors
            )

        self.state = WorkerState.RUNNING
        self._started_at = datetime.now(UTC)
        self._stop_event = asyncio.Event()
        self._poll_task = asyncio.create_task(self._run_loop(), name=f"poll:{self.name}")

        self.logger.info(
            "Worker started",
            queue_name=self.config.queue_name,
            concurrency=self.config.concurrency,
            poll_interval_ms=self.config.poll_interval_ms,
        )
        self.events.emit(
            WorkerEvent.STARTED, {"worker": self.name, "worker_id": self.worker_id}
        )

    async def stop(self, grace_period_s: float | None = None) -> None:
        """
        Stop claiming, wait up to the grace period for in-flight jobs, then
        flag the rest cancelled and abandon them. Abandoned rows stay
        PROCESSING until the next stale reset.
        """
        if self.state != WorkerState.RUNNING:
            return

        if grace_period_s is None:
            grace_period_s = self.settings.shutdown_grace_period_s

        self.state = WorkerState.STOPPING
        self.logger.info("Stopping worker", active_jobs=self.active_count)

        if self._stop_event is not None:
            self._stop_event.set()
        if self._poll_task is not None:
            await self._poll_task
            self._poll_task = None

        in_flight = {job_id: entry for job_id, entry in self._active.items()}
        if in_flight:
            _, pending = await asyncio.wait(
                [task for task, _ in in_flight.values()], timeout=grace_period_s
            )
            if pending:
                for task, context in in_flight.values():
                    if task in pending:
                        context.abandon()
                self.logger.warning(
                    "Worker stopped with unfinished jobs",
                    abandoned_jobs=len(pending),
                    grace_period_s=grace_period_s,
                )

        self.state = WorkerState.STOPPED
        self.logger.info("Worker stopped")
        self.events.emit(
            WorkerEvent.STOPPED, {"worker": self.name, "worker_id": self.worker_id}
        )

    async def _run_loop(self) -> None:
        while self.state == WorkerState.RUNNING:
            await self.poll_once()
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.config.poll_interval_s
                )
            except TimeoutError:
                pass

    async def poll_once(self) -> int:
        """Claim up to the free capacity and spawn a task per job."""
        capacity = self.config.concurrency - self.active_count
        if capacity <= 0:
            return 0

        try:
            jobs = await self.store.claim_batch(
                self.config.queue_name, capacity, self.worker_id
            )
        except Exception as e:
            self.logger.exception("Error claiming jobs")
            self.events.emit(
                WorkerEvent.ERROR,
                {
                    "worker": self.name,
                    "error": str(e),
                    "store_unavailable": isinstance(e, StoreUnavailableError),
                },
            )
            return 0

        for job in jobs:
            self._spawn(job)
        return len(jobs)

    async def wait_idle(self) -> None:
        """Wait until every in-flight job task has finished."""
        while self._active:
            await asyncio.wait([task for task, _ in list(self._active.values())])

    def _spawn(self, job: ProcessingJob) -> None:
        context = JobContext(job, self.worker_id, self._progress_reporter(job))
        task = asyncio.create_task(
            self._process_job(job, context), name=f"job:{job.id}"
        )
        self._active[job.id] = (task, context)

    def _progress_reporter(self, job: ProcessingJob):
        async def report(
            current: int,
            total: int,
            message: str | None,
            details: dict[str, Any] | None,
        ) -> bool:
            try:
                recorded = await self.store.update_progress(
                    job.id, self.worker_id, current, total, message, details
                )
            except StoreUnavailableError:
                self.logger.warning("Progress update failed", job_id=job.id)
                return False

            if recorded:
                self.events.emit(
                    WorkerEvent.JOB_PROGRESS,
                    {
                        "worker": self.name,
                        "job_id": job.id,
                        "current": current,
                        "total": total,
                        "percentage": compute_progress_percentage(current, total),
                        "message": message,
                    },
                )
            return recorded

        return report

    async def _process_job(self, job: ProcessingJob, context: JobContext) -> None:
        job_logger = self.logger.bind(job_id=job.id, job_type=job.job_type)
        started = time.monotonic()
        job_logger.info("Processing job started", attempt=job.attempts)
        self.events.emit(
            WorkerEvent.JOB_STARTED,
            {
                "worker": self.name,
                "job_id": job.id,
                "job_type": job.job_type,
                "attempt": job.attempts,
            },
        )

        try:
            try:
                handler = self.handlers.get(job.job_type)
                if handler is None:
                    raise JobFatalError(
                        f"No handler registered for job type '{job.job_type}'",
                        error_code="handler_missing",
                    )
                result = await self._run_with_timeout(handler, context)
                _ensure_serializable(result)
            except JobFatalError as e:
                if not context.abandoned:
                    await self._record_failure(job, e, started, retryable=False)
            except Exception as e:
                if not context.abandoned:
                    await self._record_failure(job, e, started, retryable=True)
            else:
                if not context.abandoned:
                    await self._record_success(job, result, started)
        except Exception:
            # Store failures while writing the outcome; the stale sweep recovers the row
            job_logger.exception("Failed to record job outcome")
            self.events.emit(
                WorkerEvent.ERROR,
                {"worker": self.name, "job_id": job.id, "error": "outcome not recorded"},
            )
        finally:
            self._active.pop(job.id, None)
            self._last_activity_at = datetime.now(UTC)

    async def _run_with_timeout(
        self, handler: JobHandler, context: JobContext
    ) -> dict[str, Any] | None:
        task = asyncio.ensure_future(handler.handle(context))
        done, _ = await asyncio.wait({task}, timeout=self.config.timeout_s)
        if task in done:
            return task.result()

        # The handler keeps running detached until it notices the flag
        context.cancel("timeout")
        self._detached.add(task)
        task.add_done_callback(self._reap_detached)
        raise JobTimeoutError(self.config.timeout_ms)

    def _reap_detached(self, task: asyncio.Task) -> None:
        self._detached.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.debug(
                "Detached handler finished with error", error=str(task.exception())
            )

    async def _record_success(
        self, job: ProcessingJob, result: dict[str, Any] | None, started: float
    ) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        metrics = JobMetrics(
            processing_duration_ms=duration_ms,
            memory_usage_bytes=process_memory_bytes(),
            disk_usage_bytes=disk_usage_bytes(job.file_path),
        )
        recorded = await self.store.mark_completed(
            job.id, self.worker_id, result, metrics
        )
        self._record_stats(duration_ms, success=True)

        self.logger.info(
            "Processing job completed",
            job_id=job.id,
            duration_ms=duration_ms,
            recorded=recorded,
        )
        self.events.emit(
            WorkerEvent.JOB_COMPLETED,
            {
                "worker": self.name,
                "job_id": job.id,
                "job_type": job.job_type,
                "duration_ms": duration_ms,
                "result": result,
                "recorded": recorded,
            },
        )

    async def _record_failure(
        self, job: ProcessingJob, error: Exception, started: float, retryable: bool
    ) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        job_error = JobError(
            message=str(error) or error.__class__.__name__,
            code=getattr(error, "error_code", "handler_error"),
            stack="".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            ),
        )

        will_retry = retryable and job.can_retry()
        next_retry_at: datetime | None = None
        if will_retry:
            delay_ms = compute_backoff_ms(
                job.attempts, self.config.max_retries, self.settings.job_max_backoff_ms
            )
            next_retry_at = datetime.now(UTC) + timedelta(milliseconds=delay_ms)
            recorded = await self.store.mark_retry(
                job.id, self.worker_id, job_error, next_retry_at
            )
        else:
            recorded = await self.store.mark_failed(job.id, self.worker_id, job_error)

        self._record_stats(duration_ms, success=False)

        self.logger.warning(
            "Processing job failed",
            job_id=job.id,
            error=job_error.message,
            error_code=job_error.code,
            attempt=job.attempts,
            will_retry=will_retry,
            recorded=recorded,
        )
        self.events.emit(
            WorkerEvent.JOB_FAILED,
            {
                "worker": self.name,
                "job_id": job.id,
                "job_type": job.job_type,
                "error": job_error.message,
                "error_code": job_error.code,
                "attempt": job.attempts,
                "will_retry": will_retry,
                "next_retry_at": next_retry_at.isoformat() if next_retry_at else None,
                "recorded": recorded,
            },
        )

    def _record_stats(self, duration_ms: int, success: bool) -> None:
        self._processed += 1
        if success:
            self._successful += 1
        else:
            self._failed += 1

        if self._processed == 1:
            self._average_ms = float(duration_ms)
        else:
            self._average_ms = (
                self._average_ms * (1 - AVERAGE_SMOOTHING) + duration_ms * AVERAGE_SMOOTHING
            )

    @property
    def error_rate(self) -> float:
        if self._processed == 0:
            return 0.0
        return self._failed / self._processed

    def get_stats(self) -> WorkerStats:
        uptime = 0.0
        if self._started_at is not None and self.state == WorkerState.RUNNING:
            uptime = (datetime.now(UTC) - self._started_at).total_seconds()

        return WorkerStats(
            worker_name=self.name,
            worker_id=self.worker_id,
            queue_name=self.config.queue_name,
            state=self.state,
            processed_jobs=self._processed,
            successful_jobs=self._successful,
            failed_jobs=self._failed,
            active_jobs=self.active_count,
            average_processing_time_ms=round(self._average_ms, 2),
            error_rate=round(self.error_rate, 4),
            started_at=self._started_at,
            last_activity_at=self._last_activity_at,
            uptime_s=round(uptime, 3),
        )

    def is_healthy(self, error_rate_threshold: float | None = None) -> bool:
        if error_rate_threshold is None:
            error_rate_threshold = self.settings.worker_error_rate_threshold
        return self.state == WorkerState.RUNNING and self.error_rate < error_rate_threshold
