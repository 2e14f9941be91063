import asyncio
import time
from datetime import UTC, datetime, timedelta

import pytest

from docworker.v1.core.exceptions import (
    ConfigurationError,
    HandlerError,
    JobFatalError,
    StoreUnavailableError,
    WorkerStateError,
)
from docworker.v1.infra.jobs.models import JobStatus
from docworker.v1.infra.workers.config import WorkerConfig
from docworker.v1.infra.workers.events import WorkerEvent
from docworker.v1.infra.workers.worker import Worker, WorkerState, compute_backoff_ms

QUEUE = "test-queue"


def make_config(**overrides) -> WorkerConfig:
    fields = {
        "name": "test-worker",
        "queue_name": QUEUE,
        "job_types": ["parse_text"],
        "concurrency": 2,
        "poll_interval_ms": 1000,
        "max_retries": 3,
        "timeout_ms": 10_000,
    }
    fields.update(overrides)
    return WorkerConfig(**fields)


class RecordingHandler:
    def __init__(self, result=None, error: Exception | None = None):
        self.result = result if result is not None else {"ok": True}
        self.error = error
        self.calls = 0

    async def handle(self, context):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


class BlockingHandler:
    """Runs until released or cancelled."""

    def __init__(self):
        self.release = asyncio.Event()
        self.saw_cancel = False

    async def handle(self, context):
        while not self.release.is_set():
            if context.cancelled:
                self.saw_cancel = True
                context.raise_if_cancelled()
            await asyncio.sleep(0.01)
        return {"released": True}


class StubbornHandler:
    """Ignores cancellation until released."""

    def __init__(self):
        self.release = asyncio.Event()
        self.contexts = []

    async def handle(self, context):
        self.contexts.append(context)
        await self.release.wait()
        return {"released": True}


class ProgressHandler:
    async def handle(self, context):
        await context.report_progress(30, 120, "Reading")
        return None


def collect(events, worker: Worker):
    worker.events.subscribe(lambda event, payload: events.append((event, payload)))


def test_backoff_formula():
    assert compute_backoff_ms(1, 3, jitter_ms=0) == 5000
    assert compute_backoff_ms(2, 3, jitter_ms=500) == 7500
    assert compute_backoff_ms(3, 0, jitter_ms=0) == 8000
    assert compute_backoff_ms(20, 3, max_backoff_ms=300_000, jitter_ms=0) == 300_000

    delay = compute_backoff_ms(1, 3)
    assert 5000 <= delay <= 6000


def test_worker_id_identifies_process(store, test_settings):
    worker = Worker(make_config(), store, {}, test_settings)

    name, hostname, pid = worker.worker_id.split(":")
    assert name == "test-worker"
    assert hostname
    assert pid.isdigit()


@pytest.mark.asyncio
async def test_successful_job_is_completed(store, enqueue, test_settings):
    job_id = await enqueue()
    handler = RecordingHandler({"pages": 2})
    worker = Worker(make_config(), store, {"parse_text": handler}, test_settings)
    events = []
    collect(events, worker)

    assert await worker.poll_once() == 1
    await worker.wait_idle()

    job = await store.get(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.result_data == {"pages": 2}
    assert job.processing_duration_ms is not None
    assert handler.calls == 1

    names = [event for event, _ in events]
    assert names == [WorkerEvent.JOB_STARTED, WorkerEvent.JOB_COMPLETED]

    stats = worker.get_stats()
    assert stats.processed_jobs == 1
    assert stats.successful_jobs == 1
    assert stats.error_rate == 0.0


@pytest.mark.asyncio
async def test_handler_error_schedules_retry(store, enqueue, test_settings):
    job_id = await enqueue(max_attempts=3)
    handler = RecordingHandler(error=HandlerError("parser crashed"))
    worker = Worker(make_config(max_retries=3), store, {"parse_text": handler}, test_settings)

    before = datetime.now(UTC)
    await worker.poll_once()
    await worker.wait_idle()
    after = datetime.now(UTC)

    job = await store.get(job_id)
    assert job.status == JobStatus.RETRY
    assert job.attempts == 1
    assert job.error_message == "parser crashed"
    assert job.error_code == "handler_error"
    assert job.error_stack
    assert job.failed_at is None

    # backoff(1) with max_retries=3 is 5000ms plus up to 1000ms of jitter
    assert job.next_retry_at >= before + timedelta(milliseconds=5000)
    assert job.next_retry_at <= after + timedelta(milliseconds=6000)


@pytest.mark.asyncio
async def test_last_attempt_failure_is_terminal(store, enqueue, update_job, test_settings):
    job_id = await enqueue(max_attempts=2)
    handler = RecordingHandler(error=HandlerError("still broken"))
    worker = Worker(make_config(), store, {"parse_text": handler}, test_settings)

    await worker.poll_once()
    await worker.wait_idle()
    assert (await store.get(job_id)).status == JobStatus.RETRY

    await update_job(job_id, next_retry_at=datetime.now(UTC) - timedelta(seconds=1))
    await worker.poll_once()
    await worker.wait_idle()

    job = await store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == job.max_attempts == 2
    assert job.failed_at is not None

    assert await worker.poll_once() == 0
    assert handler.calls == 2


@pytest.mark.asyncio
async def test_fatal_error_skips_retries(store, enqueue, test_settings):
    job_id = await enqueue(max_attempts=5)
    handler = RecordingHandler(error=JobFatalError("corrupt file", error_code="corrupt"))
    worker = Worker(make_config(), store, {"parse_text": handler}, test_settings)

    await worker.poll_once()
    await worker.wait_idle()

    job = await store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert job.error_code == "corrupt"


@pytest.mark.asyncio
async def test_missing_handler_fails_job(store, enqueue, test_settings):
    job_id = await enqueue(job_type="parse_pdf")
    worker = Worker(make_config(), store, {}, test_settings)

    await worker.poll_once()
    await worker.wait_idle()

    job = await store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_code == "handler_missing"


@pytest.mark.asyncio
async def test_timeout_marks_job_for_retry(store, enqueue, test_settings):
    job_id = await enqueue(max_attempts=3)
    handler = BlockingHandler()
    # poll_once does not validate bounds, so a short timeout is usable here
    worker = Worker(make_config(timeout_ms=200), store, {"parse_text": handler}, test_settings)

    started = time.monotonic()
    await worker.poll_once()
    await worker.wait_idle()
    elapsed = time.monotonic() - started

    job = await store.get(job_id)
    assert job.status == JobStatus.RETRY
    assert job.error_code == "timeout"
    assert elapsed < 2.0

    # The detached handler notices the cancellation flag and exits
    for _ in range(100):
        if worker.detached_count == 0:
            break
        await asyncio.sleep(0.01)
    assert worker.detached_count == 0
    assert handler.saw_cancel


@pytest.mark.asyncio
async def test_timed_out_handler_cannot_overwrite_next_attempt_progress(
    store, enqueue, update_job, test_settings
):
    job_id = await enqueue(max_attempts=3)
    handler = StubbornHandler()
    worker = Worker(make_config(timeout_ms=200), store, {"parse_text": handler}, test_settings)

    await worker.poll_once()
    await worker.wait_idle()
    assert (await store.get(job_id)).status == JobStatus.RETRY

    # Same worker reclaims the job while the first handler is still running
    worker.config.timeout_ms = 10_000
    await update_job(job_id, next_retry_at=datetime.now(UTC) - timedelta(seconds=1))
    assert await worker.poll_once() == 1
    for _ in range(100):
        if len(handler.contexts) == 2:
            break
        await asyncio.sleep(0.01)
    first, second = handler.contexts

    assert await first.report_progress(99, 100, "stale attempt") is False
    assert await second.report_progress(10, 100, "second attempt") is True

    job = await store.get(job_id)
    assert job.attempts == 2
    assert job.progress_current == 10
    assert job.progress_message == "second attempt"

    handler.release.set()
    await worker.wait_idle()
    for _ in range(100):
        if worker.detached_count == 0:
            break
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_unserializable_result_fails_job(store, enqueue, test_settings):
    job_id = await enqueue(max_attempts=3)
    handler = RecordingHandler({"parsed_at": datetime.now(UTC)})
    worker = Worker(make_config(), store, {"parse_text": handler}, test_settings)

    await worker.poll_once()
    await worker.wait_idle()

    job = await store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_code == "result_not_serializable"
    assert job.result_data is None

    stats = worker.get_stats()
    assert stats.processed_jobs == 1
    assert stats.failed_jobs == 1


@pytest.mark.asyncio
async def test_poll_claims_only_free_capacity(store, enqueue, test_settings):
    for _ in range(5):
        await enqueue()
    handler = BlockingHandler()
    worker = Worker(make_config(concurrency=2), store, {"parse_text": handler}, test_settings)

    assert await worker.poll_once() == 2
    assert worker.active_count == 2
    assert await worker.poll_once() == 0

    [stats] = await store.queue_stats(QUEUE)
    assert stats.processing == 2
    assert stats.pending == 3

    handler.release.set()
    await worker.wait_idle()
    [stats] = await store.queue_stats(QUEUE)
    assert stats.completed == 2


@pytest.mark.asyncio
async def test_progress_is_persisted_and_emitted(store, enqueue, test_settings):
    job_id = await enqueue()
    worker = Worker(make_config(), store, {"parse_text": ProgressHandler()}, test_settings)
    events = []
    collect(events, worker)

    await worker.poll_once()
    await worker.wait_idle()

    [progress] = [payload for event, payload in events if event == WorkerEvent.JOB_PROGRESS]
    assert progress["job_id"] == job_id
    assert progress["percentage"] == 25.0

    job = await store.get(job_id)
    assert job.progress_current == 30
    assert job.progress_message == "Reading"


@pytest.mark.asyncio
async def test_claim_failure_is_reported_not_raised(store, test_settings):
    class BrokenStore:
        async def claim_batch(self, queue_name, capacity, worker_id):
            raise StoreUnavailableError("connection refused")

    worker = Worker(make_config(), BrokenStore(), {}, test_settings)
    errors = []
    worker.events.subscribe(lambda event, payload: errors.append(payload), WorkerEvent.ERROR)

    assert await worker.poll_once() == 0
    assert errors[0]["store_unavailable"] is True


@pytest.mark.asyncio
async def test_start_and_stop_lifecycle(store, enqueue, test_settings):
    job_id = await enqueue()
    worker = Worker(make_config(), store, {"parse_text": RecordingHandler()}, test_settings)
    events = []
    collect(events, worker)

    await worker.start()
    assert worker.state == WorkerState.RUNNING

    with pytest.raises(WorkerStateError):
        await worker.start()

    for _ in range(200):
        job = await store.get(job_id)
        if job.status == JobStatus.COMPLETED:
            break
        await asyncio.sleep(0.02)
    assert job.status == JobStatus.COMPLETED

    await worker.stop()
    assert worker.state == WorkerState.STOPPED

    names = [event for event, _ in events]
    assert names[0] == WorkerEvent.STARTED
    assert names[-1] == WorkerEvent.STOPPED

    # A stopped worker may be started again
    await worker.start()
    assert worker.state == WorkerState.RUNNING
    await worker.stop()


@pytest.mark.asyncio
async def test_stop_abandons_jobs_after_grace_period(store, enqueue, test_settings):
    job_id = await enqueue()
    handler = BlockingHandler()
    worker = Worker(make_config(), store, {"parse_text": handler}, test_settings)

    await worker.start()
    for _ in range(200):
        if worker.active_count:
            break
        await asyncio.sleep(0.01)
    assert worker.active_count == 1

    await worker.stop(grace_period_s=0.1)
    assert worker.state == WorkerState.STOPPED

    await worker.wait_idle()
    assert handler.saw_cancel

    # Abandoned rows stay PROCESSING for the stale sweep
    job = await store.get(job_id)
    assert job.status == JobStatus.PROCESSING
    assert job.worker_id == worker.worker_id


@pytest.mark.asyncio
async def test_invalid_config_moves_worker_to_error(store, test_settings):
    worker = Worker(make_config(concurrency=0), store, {}, test_settings)
    errors = []
    worker.events.subscribe(lambda event, payload: errors.append(payload), WorkerEvent.ERROR)

    with pytest.raises(ConfigurationError) as exc_info:
        await worker.start()

    assert worker.state == WorkerState.ERROR
    assert "Concurrency must be between 1 and 10" in exc_info.value.errors
    assert errors

    with pytest.raises(WorkerStateError):
        await worker.start()


@pytest.mark.asyncio
async def test_disabled_worker_does_not_start(store, test_settings):
    worker = Worker(make_config(enabled=False), store, {}, test_settings)

    await worker.start()

    assert worker.state == WorkerState.STOPPED
    assert worker.is_healthy() is False


@pytest.mark.asyncio
async def test_error_rate_drives_health(store, enqueue, test_settings):
    for _ in range(2):
        await enqueue(max_attempts=1)
    handler = RecordingHandler(error=HandlerError("nope"))
    worker = Worker(make_config(), store, {"parse_text": handler}, test_settings)

    await worker.poll_once()
    await worker.wait_idle()

    assert worker.error_rate == 1.0
    stats = worker.get_stats()
    assert stats.failed_jobs == 2
    assert stats.average_processing_time_ms >= 0

    worker.state = WorkerState.RUNNING
    assert worker.is_healthy(0.5) is False
    worker.state = WorkerState.STOPPED
