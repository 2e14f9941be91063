"""
Worker bootstrap: the supervisor that brings the pool up and keeps the
queue tidy while it runs.
"""

import asyncio
from datetime import timedelta
from typing import Any

import structlog

from docworker.config.settings import Settings
from docworker.infra.database import Database
from docworker.v1.core.exceptions import DocWorkerError
from docworker.v1.core.registries import (
    ChunkEmbedder,
    DocumentChunker,
    DocumentParser,
    JobRegistry,
)
from docworker.v1.infra.jobs.registry_init import register_job_handlers
from docworker.v1.infra.jobs.schemas import PurgeResult
from docworker.v1.infra.jobs.store import JobStore
from docworker.v1.infra.workers.config import WorkerConfig
from docworker.v1.infra.workers.events import WorkerEvent
from docworker.v1.infra.workers.manager import SystemHealth, WorkerManager
from docworker.v1.infra.workers.registry import WorkerRegistry

logger = structlog.get_logger(__name__)


class WorkerBootstrap:
    """
    Startup and maintenance orchestration for the worker pool.

    The Database is built once by the caller and shared with the store, the
    workers and this supervisor.
    """

    def __init__(
        self,
        database: Database,
        settings: Settings,
        job_registry: JobRegistry | None = None,
        store: JobStore | None = None,
        parser: DocumentParser | None = None,
        chunker: DocumentChunker | None = None,
        embedder: ChunkEmbedder | None = None,
    ):
        self.database = database
        self.settings = settings
        self.store = store or JobStore(database, settings)

        if job_registry is None:
            job_registry = register_job_handlers(
                JobRegistry(), settings, parser=parser, chunker=chunker, embedder=embedder
            )
        self.job_registry = job_registry

        self.manager = WorkerManager(self.store, settings)
        self.registry = WorkerRegistry(self.store, settings, job_registry)

        self._initialized = False
        self._maintenance_task: asyncio.Task | None = None

    @property
    def stale_timeout(self) -> timedelta:
        return timedelta(minutes=self.settings.job_stale_timeout_minutes)

    async def initialize(self) -> None:
        """Check the store and recover jobs orphaned by a previous run.

        Raises StoreUnavailableError when the database cannot be reached.
        """
        logger.info("Initializing worker system")

        latency_ms = await self.database.ping()
        logger.info("Job store reachable", latency_ms=round(latency_ms, 2))

        reset = await self.store.reset_stale(self.stale_timeout)
        if reset:
            logger.warning("Reset stale jobs on startup", count=reset)

        if not self._initialized:
            self._register_event_listeners()
        self._initialized = True
        logger.info("Worker system initialized")

    def _register_event_listeners(self) -> None:
        self.manager.events.subscribe(self._on_system_unhealthy, WorkerEvent.SYSTEM_UNHEALTHY)
        self.manager.events.subscribe(self._on_job_failed, WorkerEvent.JOB_FAILED)
        self.manager.events.subscribe(self._on_worker_error, WorkerEvent.ERROR)

    def _on_system_unhealthy(self, event: WorkerEvent, payload: dict[str, Any]) -> None:
        unhealthy = [
            worker["worker_name"]
            for worker in payload.get("workers", [])
            if worker.get("state") != "running"
        ]
        logger.warning("System health warning", stopped_workers=unhealthy)

    def _on_job_failed(self, event: WorkerEvent, payload: dict[str, Any]) -> None:
        if not payload.get("will_retry"):
            logger.error(
                "Job failed permanently",
                job_id=payload.get("job_id"),
                worker=payload.get("worker"),
                error_code=payload.get("error_code"),
            )

    def _on_worker_error(self, event: WorkerEvent, payload: dict[str, Any]) -> None:
        logger.error(
            "Worker error", worker=payload.get("worker"), error=payload.get("error")
        )

    async def start_workers(self, configs: list[WorkerConfig] | None = None) -> list[str]:
        """Build, register and start the workers, then schedule maintenance.

        Returns the names of registered workers that failed to start.
        """
        if not self._initialized:
            await self.initialize()

        logger.info("Starting worker service")

        workers = self.registry.create_all_workers(configs)
        for worker in workers:
            if not self.manager.has_worker(worker.name):
                self.manager.register(worker)

        if not workers:
            logger.warning("No workers were created")

        failed = await self.manager.start_all()
        self._start_maintenance()

        logger.info(
            "Worker service started",
            running=self.manager.running_count(),
            failed=failed,
        )
        return failed

    async def stop_workers(self, grace_period_s: float | None = None) -> None:
        logger.info("Stopping worker service")
        await self._stop_maintenance()
        await self.manager.stop_all(grace_period_s)
        logger.info("Worker service stopped")

    async def get_system_health(self) -> SystemHealth:
        return await self.manager.get_system_health()

    async def run_cleanup(self) -> dict[str, Any]:
        """Reset stale jobs and purge expired rows once.

        Each step is attempted even if the other fails.
        """
        results: dict[str, Any] = {"reset": 0, "purged": PurgeResult()}

        try:
            results["reset"] = await self.store.reset_stale(self.stale_timeout)
        except DocWorkerError as e:
            logger.error("Failed to reset stale jobs", error=e.message)

        try:
            results["purged"] = await self.store.purge_old(
                timedelta(hours=self.settings.job_completed_retention_hours),
                timedelta(hours=self.settings.job_failed_retention_hours),
            )
        except DocWorkerError as e:
            logger.error("Failed to purge old jobs", error=e.message)

        return results

    async def perform_maintenance(self) -> dict[str, Any]:
        logger.info("Running maintenance")
        results = await self.run_cleanup()

        health = await self.manager.get_system_health()
        results["health"] = health.status
        logger.info(
            "Maintenance finished",
            reset=results["reset"],
            completed_deleted=results["purged"].completed_deleted,
            failed_deleted=results["purged"].failed_deleted,
            health=health.status,
        )
        return results

    def _start_maintenance(self) -> None:
        if self._maintenance_task is None or self._maintenance_task.done():
            self._maintenance_task = asyncio.create_task(
                self._maintenance_loop(), name="worker-maintenance"
            )

    async def _stop_maintenance(self) -> None:
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.maintenance_interval_s)
            try:
                await self.perform_maintenance()
            except Exception:
                logger.exception("Maintenance failed")

    async def run_forever(self, configs: list[WorkerConfig] | None = None) -> None:
        """Start the pool and block until SIGINT/SIGTERM has drained it."""
        await self.initialize()
        await self.start_workers(configs)

        self.manager.install_signal_handlers()
        try:
            await self.manager.wait_for_shutdown()
        finally:
            await self._stop_maintenance()
            self.manager.remove_signal_handlers()
