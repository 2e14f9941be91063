import asyncio

import pytest

from docworker.v1.core.exceptions import (
    DuplicateWorkerError,
    HandlerError,
    WorkerNotFoundError,
    WorkerStateError,
)
from docworker.v1.infra.workers.config import WorkerConfig
from docworker.v1.infra.workers.events import WorkerEvent
from docworker.v1.infra.workers.manager import WorkerManager
from docworker.v1.infra.workers.worker import Worker, WorkerState


class FailingHandler:
    async def handle(self, context):
        raise HandlerError("always fails")


def build_worker(store, settings, name: str, **overrides) -> Worker:
    fields = {
        "name": name,
        "queue_name": f"{name}-queue",
        "job_types": ["parse_text"],
        "concurrency": 1,
        "poll_interval_ms": 1000,
        "max_retries": 0,
        "timeout_ms": 10_000,
    }
    fields.update(overrides)
    return Worker(WorkerConfig(**fields), store, {"parse_text": FailingHandler()}, settings)


@pytest.fixture
async def manager(store, test_settings):
    manager = WorkerManager(store, test_settings)
    yield manager
    await manager.stop_all(grace_period_s=0.5)


@pytest.mark.asyncio
async def test_register_rejects_duplicate_names(manager, store, test_settings):
    manager.register(build_worker(store, test_settings, "alpha"))

    with pytest.raises(DuplicateWorkerError):
        manager.register(build_worker(store, test_settings, "alpha"))

    assert manager.worker_names() == ["alpha"]


@pytest.mark.asyncio
async def test_unknown_worker_raises_not_found(manager):
    with pytest.raises(WorkerNotFoundError):
        manager.get_worker("ghost")

    with pytest.raises(WorkerNotFoundError):
        await manager.start_worker("ghost")


@pytest.mark.asyncio
async def test_no_workers_is_unhealthy(manager):
    health = await manager.get_system_health()

    assert health.status == "unhealthy"
    assert health.workers == []
    assert 0.0 <= health.system_load.memory <= 1.0


@pytest.mark.asyncio
async def test_health_tracks_running_workers(manager, store, test_settings):
    manager.register(build_worker(store, test_settings, "alpha"))
    manager.register(build_worker(store, test_settings, "beta"))

    failed = await manager.start_all()
    assert failed == []
    assert manager.running_count() == 2
    assert (await manager.get_system_health()).status == "healthy"

    await manager.stop_worker("beta")
    assert (await manager.get_system_health()).status == "degraded"

    await manager.stop_worker("alpha")
    assert (await manager.get_system_health()).status == "unhealthy"


@pytest.mark.asyncio
async def test_error_rate_marks_worker_unhealthy(manager, store, enqueue, test_settings):
    worker = build_worker(store, test_settings, "alpha")
    manager.register(worker)
    await enqueue(queue_name="alpha-queue", max_attempts=1)

    await manager.start_all()
    for _ in range(200):
        if worker.get_stats().failed_jobs:
            break
        await asyncio.sleep(0.02)

    assert worker.error_rate == 1.0
    health = await manager.get_system_health()
    assert health.status == "unhealthy"
    [queue] = [q for q in health.queues if q.queue_name == "alpha-queue"]
    assert queue.failed == 1


@pytest.mark.asyncio
async def test_start_all_reports_workers_that_failed(manager, store, test_settings):
    manager.register(build_worker(store, test_settings, "good"))
    manager.register(build_worker(store, test_settings, "bad", concurrency=50))

    failed = await manager.start_all()

    assert failed == ["bad"]
    assert manager.get_worker("good").state == WorkerState.RUNNING
    assert manager.get_worker("bad").state == WorkerState.ERROR
    assert (await manager.get_system_health()).status == "degraded"


@pytest.mark.asyncio
async def test_worker_events_are_forwarded(manager, store, test_settings):
    seen = []
    manager.events.subscribe(lambda event, payload: seen.append((event, payload["worker"])))
    manager.register(build_worker(store, test_settings, "alpha"))

    await manager.start_all()
    await manager.stop_all()

    assert (WorkerEvent.STARTED, "alpha") in seen
    assert (WorkerEvent.STOPPED, "alpha") in seen


@pytest.mark.asyncio
async def test_unregister_requires_stopped_worker(manager, store, test_settings):
    worker = build_worker(store, test_settings, "alpha")
    manager.register(worker)
    await manager.start_worker("alpha")

    with pytest.raises(WorkerStateError):
        manager.unregister("alpha")

    await manager.stop_worker("alpha")
    assert manager.unregister("alpha") is worker
    assert not manager.has_worker("alpha")

    # Events from the removed worker no longer reach the manager
    seen = []
    manager.events.subscribe(lambda event, payload: seen.append(event))
    worker.events.emit(WorkerEvent.ERROR, {"worker": "alpha"})
    assert seen == []


@pytest.mark.asyncio
async def test_restart_worker(manager, store, test_settings):
    manager.register(build_worker(store, test_settings, "alpha"))
    await manager.start_all()

    await manager.restart_worker("alpha", delay_s=0)

    assert manager.get_worker("alpha").state == WorkerState.RUNNING
    stats = manager.get_worker_stats("alpha")
    assert stats.worker_name == "alpha"
    assert len(manager.get_worker_stats()) == 1


@pytest.mark.asyncio
async def test_check_health_emits_events(manager):
    seen = []
    manager.events.subscribe(lambda event, payload: seen.append(event))

    health = await manager.check_health()

    assert health.status == "unhealthy"
    assert seen == [WorkerEvent.SYSTEM_UNHEALTHY, WorkerEvent.HEALTH_CHECK]


@pytest.mark.asyncio
async def test_graceful_shutdown_stops_everything(manager, store, test_settings):
    manager.register(build_worker(store, test_settings, "alpha"))
    manager.register(build_worker(store, test_settings, "beta"))
    await manager.start_all()

    await manager.graceful_shutdown("test")
    await asyncio.wait_for(manager.wait_for_shutdown(), timeout=1)

    assert manager.is_shutting_down
    assert manager.running_count() == 0

    with pytest.raises(WorkerStateError):
        await manager.start_all()

    # A second request is a no-op
    await manager.graceful_shutdown("again")


@pytest.mark.asyncio
async def test_request_shutdown_keeps_the_drain_task(manager, store, test_settings):
    manager.register(build_worker(store, test_settings, "alpha"))
    await manager.start_all()

    task = manager.request_shutdown("SIGTERM")

    assert manager.request_shutdown("SIGINT") is task
    await asyncio.wait_for(task, timeout=1)
    assert manager.running_count() == 0


@pytest.mark.asyncio
async def test_restart_all(manager, store, test_settings):
    manager.register(build_worker(store, test_settings, "alpha"))
    manager.register(build_worker(store, test_settings, "beta"))
    await manager.start_all()

    failed = await manager.restart_all(delay_s=0)

    assert failed == []
    assert manager.running_count() == 2
