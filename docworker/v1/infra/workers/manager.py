"""
Worker manager: owns the registered workers, aggregates their health and
drains them on shutdown.
"""

import asyncio
import signal
from datetime import UTC, datetime
from typing import Any, Literal

import structlog
from pydantic import BaseModel

from docworker.config.settings import Settings
from docworker.v1.core.exceptions import (
    DocWorkerError,
    DuplicateWorkerError,
    WorkerNotFoundError,
    WorkerStateError,
)
from docworker.v1.infra.jobs.schemas import QueueStats
from docworker.v1.infra.jobs.store import JobStore
from docworker.v1.infra.workers.events import EventEmitter, WorkerEvent
from docworker.v1.infra.workers.system_load import SystemLoad, sample_system_load
from docworker.v1.infra.workers.worker import Worker, WorkerState, WorkerStats

logger = structlog.get_logger(__name__)

HealthStatus = Literal["healthy", "degraded", "unhealthy"]


class SystemHealth(BaseModel):
    status: HealthStatus
    workers: list[WorkerStats]
    queues: list[QueueStats]
    system_load: SystemLoad
    timestamp: datetime


class WorkerManager:
    """Registry of live workers plus the supervisor-facing lifecycle API."""

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        events: EventEmitter | None = None,
    ):
        self.store = store
        self.settings = settings
        self.events = events or EventEmitter()

        self._workers: dict[str, Worker] = {}
        self._unsubscribe: dict[str, Any] = {}
        self._health_task: asyncio.Task | None = None
        self._shutting_down = False
        self._shutdown_complete = asyncio.Event()
        self._signals_installed: list[signal.Signals] = []
        self._shutdown_task: asyncio.Task | None = None

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def register(self, worker: Worker) -> None:
        if worker.name in self._workers:
            raise DuplicateWorkerError(f"Worker '{worker.name}' is already registered")

        self._workers[worker.name] = worker
        if worker.events is not self.events:
            self._unsubscribe[worker.name] = worker.events.subscribe(self.events.emit)
        logger.info(
            "Worker registered", worker=worker.name, queue_name=worker.config.queue_name
        )

    def unregister(self, name: str) -> Worker:
        worker = self.get_worker(name)
        if worker.state in (WorkerState.RUNNING, WorkerState.STOPPING):
            raise WorkerStateError(f"Worker '{name}' must be stopped before removal")
        unsubscribe = self._unsubscribe.pop(name, None)
        if unsubscribe is not None:
            unsubscribe()
        return self._workers.pop(name)

    def get_worker(self, name: str) -> Worker:
        if name not in self._workers:
            raise WorkerNotFoundError(f"Worker '{name}' is not registered")
        return self._workers[name]

    def has_worker(self, name: str) -> bool:
        return name in self._workers

    def worker_names(self) -> list[str]:
        return list(self._workers.keys())

    def running_count(self) -> int:
        return sum(
            1 for worker in self._workers.values() if worker.state == WorkerState.RUNNING
        )

    async def start_all(self) -> list[str]:
        """
        Start every registered worker and the health check loop.

        A worker that fails to start is logged and left in its failed state;
        the names of those workers are returned.
        """
        if self._shutting_down:
            raise WorkerStateError("System is shutting down, cannot start workers")

        logger.info("Starting all workers", count=len(self._workers))

        failed: list[str] = []
        for worker in self._workers.values():
            try:
                await worker.start()
            except DocWorkerError as e:
                logger.error("Worker failed to start", worker=worker.name, error=e.message)
                failed.append(worker.name)

        self._start_health_check()
        logger.info(
            "Workers started", running=self.running_count(), failed=failed
        )
        return failed

    async def stop_all(self, grace_period_s: float | None = None) -> None:
        """Stop the health loop and drain every worker concurrently."""
        await self._stop_health_check()

        logger.info("Stopping all workers", count=len(self._workers))
        results = await asyncio.gather(
            *(worker.stop(grace_period_s) for worker in self._workers.values()),
            return_exceptions=True,
        )
        for worker, result in zip(self._workers.values(), results, strict=True):
            if isinstance(result, Exception):
                logger.error("Worker failed to stop", worker=worker.name, error=str(result))

        logger.info("All workers stopped")

    async def start_worker(self, name: str) -> None:
        await self.get_worker(name).start()

    async def stop_worker(self, name: str, grace_period_s: float | None = None) -> None:
        await self.get_worker(name).stop(grace_period_s)

    async def restart_worker(self, name: str, delay_s: float = 1.0) -> None:
        logger.info("Restarting worker", worker=name)
        await self.stop_worker(name)
        await asyncio.sleep(delay_s)
        await self.start_worker(name)

    async def restart_all(self, delay_s: float = 2.0) -> list[str]:
        logger.info("Restarting all workers")
        await self.stop_all()
        await asyncio.sleep(delay_s)
        return await self.start_all()

    def get_worker_stats(self, name: str | None = None) -> WorkerStats | list[WorkerStats]:
        if name is not None:
            return self.get_worker(name).get_stats()
        return [worker.get_stats() for worker in self._workers.values()]

    async def get_system_health(self) -> SystemHealth:
        """
        Snapshot of every worker, every queue and the host.

        healthy: all workers RUNNING below the error rate threshold.
        degraded: some are. unhealthy: none are, or none are registered.
        """
        threshold = self.settings.worker_error_rate_threshold
        workers = list(self._workers.values())
        healthy = [worker for worker in workers if worker.is_healthy(threshold)]

        status: HealthStatus
        if workers and len(healthy) == len(workers):
            status = "healthy"
        elif healthy:
            status = "degraded"
        else:
            status = "unhealthy"

        try:
            queues = await self.store.queue_stats()
        except DocWorkerError as e:
            logger.warning("Queue statistics unavailable", error=e.message)
            queues = []

        return SystemHealth(
            status=status,
            workers=[worker.get_stats() for worker in workers],
            queues=queues,
            system_load=sample_system_load(),
            timestamp=datetime.now(UTC),
        )

    async def check_health(self) -> SystemHealth:
        health = await self.get_system_health()
        if health.status == "unhealthy":
            logger.warning("System health is unhealthy")
            self.events.emit(WorkerEvent.SYSTEM_UNHEALTHY, health.model_dump())
        self.events.emit(WorkerEvent.HEALTH_CHECK, health.model_dump())
        return health

    def _start_health_check(self) -> None:
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(
                self._health_loop(), name="worker-health-check"
            )

    async def _stop_health_check(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.health_check_interval_s)
            try:
                await self.check_health()
            except Exception:
                logger.exception("Health check failed")

    def install_signal_handlers(self) -> None:
        """Drain gracefully on SIGINT and SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError):
                # Not on the main thread, or not supported by this platform
                continue
            self._signals_installed.append(sig)

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed.clear()

    def request_shutdown(self, reason: str = "shutdown") -> asyncio.Task:
        """Schedule graceful_shutdown from a synchronous callback."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self.graceful_shutdown(reason))
        return self._shutdown_task

    async def graceful_shutdown(self, reason: str = "shutdown") -> None:
        if self._shutting_down:
            logger.info("Shutdown already in progress", reason=reason)
            return

        logger.info("Graceful shutdown requested", reason=reason)
        self._shutting_down = True
        try:
            await self.stop_all()
        finally:
            self._shutdown_complete.set()
            logger.info("Graceful shutdown complete")

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_complete.wait()
