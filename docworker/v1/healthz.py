from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel

from docworker.config.settings import Settings, SettingsDep
from docworker.v1.core.exceptions import DocWorkerError, create_success_response
from docworker.v1.dependencies import BootstrapDep, StoreDep
from docworker.v1.infra.jobs.store import JobStore
from docworker.v1.infra.workers.bootstrap import WorkerBootstrap

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Aggregate queue depth across all queues."""

    pending: int = 0
    processing: int = 0
    retry: int = 0
    failed: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep,
    store: JobStore = StoreDep,
    bootstrap: WorkerBootstrap | None = BootstrapDep,
):
    """Health check endpoint with database, queue and worker status."""

    timestamp = datetime.now(UTC).isoformat()
    overall_ok = True

    db_health = await _check_database_health(store)
    if not db_health.connected:
        overall_ok = False

    queue_health = None
    if db_health.connected:
        queue_health = await _check_queue_health(store)

    workers = None
    if bootstrap is not None:
        health = await bootstrap.get_system_health()
        workers = {
            "status": health.status,
            "running": bootstrap.manager.running_count(),
            "registered": len(health.workers),
        }

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "queues": queue_health.model_dump() if queue_health else None,
        "workers": workers,
    }

    return create_success_response(data=health_data)


async def _check_database_health(store: JobStore) -> DatabaseHealth:
    """Check database connectivity and response time."""
    try:
        response_time_ms = await store.database.ping()
        return DatabaseHealth(connected=True, response_time_ms=round(response_time_ms, 2))
    except DocWorkerError as e:
        return DatabaseHealth(connected=False, error=str(e.details.get("error", e.message)))


async def _check_queue_health(store: JobStore) -> QueueHealth:
    totals = QueueHealth()
    for stats in await store.queue_stats():
        totals.pending += stats.pending
        totals.processing += stats.processing
        totals.retry += stats.retry
        totals.failed += stats.failed
    return totals


@router.get("/workers", response_model=dict)
async def worker_status(bootstrap: WorkerBootstrap | None = BootstrapDep):
    """System health snapshot of the in-process worker pool."""
    if bootstrap is None:
        return create_success_response(
            data={"embedded": False, "workers": []},
            message="Workers are not running in this process",
        )

    health = await bootstrap.get_system_health()
    return create_success_response(data={"embedded": True, **health.model_dump(mode="json")})


@router.get("/queues", response_model=dict)
async def queue_status(store: JobStore = StoreDep):
    """Per-queue job counts."""
    stats = await store.queue_stats()
    return create_success_response(
        data=[{**entry.model_dump(), "total": entry.total} for entry in stats]
    )


@router.post("/maintenance/cleanup", response_model=dict)
async def run_cleanup(
    settings: Settings = SettingsDep,
    store: JobStore = StoreDep,
    bootstrap: WorkerBootstrap | None = BootstrapDep,
):
    """Reset stale jobs and purge expired rows now."""
    if bootstrap is None:
        # No embedded pool; the supervisor only needs the store for cleanup
        bootstrap = WorkerBootstrap(store.database, settings, store=store)
    results = await bootstrap.run_cleanup()

    data: dict[str, Any] = {
        "reset": results["reset"],
        "completed_deleted": results["purged"].completed_deleted,
        "failed_deleted": results["purged"].failed_deleted,
    }
    return create_success_response(data=data, message="Cleanup finished")
