import pytest

from docworker.v1.core.exceptions import ConfigurationError
from docworker.v1.core.registries import JobRegistry
from docworker.v1.infra.jobs.registry_init import register_job_handlers
from docworker.v1.infra.workers.config import WorkerConfig
from docworker.v1.infra.workers.registry import WorkerRegistry


@pytest.fixture
def worker_registry(store, test_settings) -> WorkerRegistry:
    job_registry = register_job_handlers(JobRegistry(), test_settings)
    return WorkerRegistry(store, test_settings, job_registry)


def test_config_bounds():
    """Every bound is checked and reported together."""
    config = WorkerConfig(
        name="",
        queue_name=" ",
        concurrency=11,
        poll_interval_ms=999,
        max_retries=-1,
        timeout_ms=3_600_001,
    )

    assert config.validate_bounds() == [
        "Worker name is required",
        "Queue name is required",
        "Concurrency must be between 1 and 10",
        "Poll interval must be between 1000ms and 60000ms",
        "Max retries must be between 0 and 10",
        "Timeout must be between 10000ms and 3600000ms",
    ]
    assert not config.is_valid()

    with pytest.raises(ConfigurationError) as exc_info:
        config.ensure_valid()
    assert len(exc_info.value.errors) == 6


def test_config_bounds_are_inclusive():
    low = WorkerConfig(
        name="w", queue_name="q", concurrency=1, poll_interval_ms=1000,
        max_retries=0, timeout_ms=10_000,
    )
    high = WorkerConfig(
        name="w", queue_name="q", concurrency=10, poll_interval_ms=60_000,
        max_retries=10, timeout_ms=3_600_000,
    )

    assert low.is_valid()
    assert high.is_valid()
    assert low.poll_interval_s == 1.0
    assert high.timeout_s == 3600.0


def test_create_all_workers_uses_settings(worker_registry):
    workers = worker_registry.create_all_workers()

    # chunk-embedder is disabled by default
    assert [worker.name for worker in workers] == [
        "document-parser",
        "document-chunker",
        "system-cleanup",
    ]
    parser = workers[0]
    assert set(parser.handlers) == {"parse_pdf", "parse_markdown", "parse_text"}
    assert parser.config.queue_name == "document-processing"


def test_invalid_and_disabled_configs_are_skipped(worker_registry):
    configs = [
        WorkerConfig(name="ok", queue_name="q", job_types=["cleanup_temp"]),
        WorkerConfig(name="too-busy", queue_name="q", concurrency=20),
        WorkerConfig(name="off", queue_name="q", enabled=False),
    ]

    workers = worker_registry.create_all_workers(configs)

    assert [worker.name for worker in workers] == ["ok"]
    assert worker_registry.create_worker(configs[1]) is None
    assert worker_registry.create_worker(configs[2]) is None


def test_unknown_job_types_get_no_handler(worker_registry):
    config = WorkerConfig(name="w", queue_name="q", job_types=["cleanup_temp", "transcode"])

    handlers = worker_registry.handlers_for(config)

    assert list(handlers) == ["cleanup_temp"]


def test_supported_job_types(worker_registry):
    assert set(worker_registry.supported_job_types()) == {
        "parse_pdf",
        "parse_markdown",
        "parse_text",
        "chunk_document",
        "embed_chunks",
        "cleanup_temp",
    }
