"""
Worker registry: builds workers from named configurations.
"""

import logging

from docworker.config.settings import Settings
from docworker.v1.core.registries import JobHandler, JobRegistry
from docworker.v1.infra.jobs.store import JobStore
from docworker.v1.infra.workers.config import WorkerConfig
from docworker.v1.infra.workers.worker import Worker

logger = logging.getLogger(__name__)


class WorkerRegistry:
    """Factory that turns WorkerConfig entries into Worker instances.

    Disabled or out-of-bounds configurations are skipped with a warning so
    that one bad entry does not prevent the rest of the pool from starting.
    """

    def __init__(self, store: JobStore, settings: Settings, job_registry: JobRegistry):
        self.store = store
        self.settings = settings
        self.job_registry = job_registry

    def handlers_for(self, config: WorkerConfig) -> dict[str, JobHandler]:
        handlers: dict[str, JobHandler] = {}
        missing: list[str] = []
        for job_type in config.job_types:
            if self.job_registry.has(job_type):
                handlers[job_type] = self.job_registry.get(job_type)
            else:
                missing.append(job_type)

        if missing:
            logger.warning(
                "No handler registered for job types",
                extra={"worker": config.name, "job_types": missing},
            )
        return handlers

    def create_worker(self, config: WorkerConfig) -> Worker | None:
        """Build one worker, or None when the configuration is skipped."""
        if not config.enabled:
            logger.info("Worker disabled, skipping", extra={"worker": config.name})
            return None

        errors = config.validate_bounds()
        if errors:
            logger.warning(
                "Invalid worker configuration, skipping",
                extra={"worker": config.name, "errors": errors},
            )
            return None

        return Worker(config, self.store, self.handlers_for(config), self.settings)

    def create_all_workers(
        self, configs: list[WorkerConfig] | None = None
    ) -> list[Worker]:
        if configs is None:
            configs = self.settings.worker_configs()

        workers = [
            worker
            for worker in (self.create_worker(config) for config in configs)
            if worker is not None
        ]

        logger.info(
            "Workers created",
            extra={
                "created": [worker.name for worker in workers],
                "configured": len(configs),
            },
        )
        return workers

    def supported_job_types(self) -> list[str]:
        return self.job_registry.list()
