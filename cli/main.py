"""Document Worker CLI - Main Entry Point"""

import asyncio
import time
from datetime import UTC, datetime

import typer
from rich.console import Console
from rich.panel import Panel

from docworker.config.logging import setup_logging
from docworker.v1.core.exceptions import DocWorkerError
from docworker.v1.infra.jobs.handlers import SimulatedProcessingHandler
from docworker.v1.infra.jobs.models import TERMINAL_STATUSES
from docworker.v1.infra.jobs.schemas import JobCreate
from docworker.v1.infra.workers.bootstrap import WorkerBootstrap
from docworker.v1.infra.workers.config import WorkerConfig
from docworker.v1.infra.workers.worker import Worker

from .client.base import DocWorkerAPIError
from .client.endpoints import DocWorkerClient
from .commands import config, jobs
from .utils.formatting import (
    create_queue_stats_table,
    create_worker_config_table,
    create_worker_stats_table,
    print_error,
    print_info,
    print_success,
    print_warning,
    styled_status,
)
from .utils.runtime import cli_settings, dump, run_with_store

console = Console()

SELF_TEST_JOB_TYPE = "self_test"

# Create main Typer app
app = typer.Typer(
    name="docworker",
    help="📄 Document Worker - processing queue management CLI",
    rich_markup_mode="rich",
)

# Add command subapps
app.add_typer(config.app, name="config")
app.add_typer(jobs.app, name="jobs")


@app.command()
def start(
    ctx: typer.Context,
    worker: list[str] | None = typer.Option(
        None, "--worker", "-w", help="Only start the named worker(s)"
    ),
):
    """🚀 Start the worker pool and run until SIGINT/SIGTERM"""
    settings = cli_settings(ctx)
    setup_logging()

    configs = settings.worker_configs()
    if worker:
        unknown = set(worker) - {c.name for c in configs}
        if unknown:
            print_error(f"Unknown worker(s): {', '.join(sorted(unknown))}")
            raise typer.Exit(1)
        configs = [c for c in configs if c.name in worker]

    async def action(database, store, settings):
        bootstrap = WorkerBootstrap(database, settings, store=store)
        await bootstrap.run_forever(configs)

    try:
        run_with_store(ctx, action)
    except DocWorkerError as e:
        print_error(f"Worker system failed to start: {e.message}")
        raise typer.Exit(1) from None

    print_success("Worker pool stopped")


@app.command()
def status(
    ctx: typer.Context,
    remote: bool = typer.Option(
        False, "--remote", help="Query a running service over HTTP instead of the database"
    ),
):
    """📊 Show queue depth and worker status"""
    if remote:
        _remote_status()
        return

    async def action(database, store, settings):
        latency_ms = await database.ping()
        queues = await store.queue_stats()
        return latency_ms, dump(queues)

    try:
        latency_ms, queues = run_with_store(ctx, action)
    except DocWorkerError as e:
        print_error(f"Job store unreachable: {e.message}")
        raise typer.Exit(1) from None

    settings = cli_settings(ctx)
    console.print(
        Panel(
            f"🗄️  [green]Job store connected[/green] ({latency_ms:.1f} ms)\n"
            f"• Environment: [yellow]{settings.environment}[/yellow]\n"
            f"• Version: [cyan]{settings.version}[/cyan]",
            title="System Status",
            border_style="green",
        )
    )

    if queues:
        console.print(create_queue_stats_table(queues))
    else:
        print_info("No jobs in any queue")

    rows = [
        {**worker.model_dump(), "errors": worker.validate_bounds()}
        for worker in settings.worker_configs()
    ]
    console.print(create_worker_config_table(rows))


def _remote_status() -> None:
    try:
        with DocWorkerClient() as client:
            service = client.health_check()
            health = client.workers()
            queues = client.queues()
    except DocWorkerAPIError as e:
        print_error(str(e))
        raise typer.Exit(1) from None

    database = service.get("database") or {}
    if database.get("connected"):
        print_success(f"Service v{service.get('version', 'unknown')} connected to its job store")
    else:
        print_warning(f"Service cannot reach its job store: {database.get('error')}")

    if not health.get("embedded"):
        print_info("The service is not running workers in-process")
    else:
        console.print(f"System health: {styled_status(health.get('status', ''))}")
        console.print(create_worker_stats_table(health.get("workers", [])))
    console.print(create_queue_stats_table(queues))


@app.command()
def cleanup(
    ctx: typer.Context,
    remote: bool = typer.Option(
        False, "--remote", help="Ask a running service to run the cleanup"
    ),
):
    """🧹 Reset stale jobs and purge expired rows"""
    if remote:
        try:
            with DocWorkerClient() as client:
                data = client.cleanup()
        except DocWorkerAPIError as e:
            print_error(str(e))
            raise typer.Exit(1) from None
        print_success(
            f"Reset {data['reset']} stale job(s); purged "
            f"{data['completed_deleted']} completed and {data['failed_deleted']} failed"
        )
        return

    async def action(database, store, settings):
        bootstrap = WorkerBootstrap(database, settings, store=store)
        return await bootstrap.run_cleanup()

    results = run_with_store(ctx, action)
    purged = results["purged"]
    print_success(
        f"Reset {results['reset']} stale job(s); purged "
        f"{purged.completed_deleted} completed and {purged.failed_deleted} failed"
    )


@app.command("test")
def self_test(
    ctx: typer.Context,
    jobs_count: int = typer.Option(1, "--jobs", "-n", min=1, max=50, help="Jobs to run"),
    queue: str = typer.Option("self-test", "--queue", help="Queue used for the test"),
    step_delay_ms: int = typer.Option(100, "--step-delay-ms", min=0, help="Delay per step"),
    timeout_s: float = typer.Option(60.0, "--timeout", help="Give up after this many seconds"),
):
    """🧪 Run simulated jobs through a worker end to end"""

    async def action(database, store, settings):
        job_ids = [
            await store.enqueue(
                JobCreate(
                    job_type=SELF_TEST_JOB_TYPE,
                    queue_name=queue,
                    max_attempts=1,
                    input_params={"step_delay_ms": step_delay_ms},
                )
            )
            for _ in range(jobs_count)
        ]

        test_worker = Worker(
            WorkerConfig(
                name="self-test",
                queue_name=queue,
                job_types=[SELF_TEST_JOB_TYPE],
                concurrency=min(jobs_count, 10),
                poll_interval_ms=1000,
                max_retries=0,
                timeout_ms=max(10_000, int(timeout_s * 1000)),
            ),
            store,
            {SELF_TEST_JOB_TYPE: SimulatedProcessingHandler(settings)},
            settings,
        )

        deadline = time.monotonic() + timeout_s
        pending = set(job_ids)
        while pending and time.monotonic() < deadline:
            await test_worker.poll_once()
            await test_worker.wait_idle()
            for job_id in list(pending):
                job = await store.get(job_id)
                if job is not None and job.status in TERMINAL_STATUSES:
                    pending.discard(job_id)
            if pending:
                await asyncio.sleep(0.1)

        return [await store.get(job_id) for job_id in job_ids], test_worker.get_stats()

    started = datetime.now(UTC)
    results, stats = run_with_store(ctx, action)
    elapsed = (datetime.now(UTC) - started).total_seconds()

    completed = [job for job in results if job and job.status == "completed"]
    for job in results:
        console.print(
            f"• {job.id[:8]} {styled_status(job.status)} "
            f"{job.processing_duration_ms or 0} ms {job.error_message or ''}"
        )

    console.print(create_worker_stats_table([stats.model_dump(mode="json")]))
    if len(completed) != len(results):
        print_error(f"Self-test failed: {len(completed)}/{len(results)} jobs completed")
        raise typer.Exit(1)

    print_success(f"Self-test passed: {len(completed)} job(s) in {elapsed:.1f}s")


@app.command()
def version():
    """📎 Show version information"""
    from . import __version__

    console.print(f"Document Worker CLI v{__version__}")


@app.callback()
def main(
    ctx: typer.Context,
    database_url: str | None = typer.Option(
        None, "--database-url", envvar="DOCWORKER_DATABASE_URL", help="Override DATABASE_URL"
    ),
    create_tables: bool = typer.Option(
        False, "--create-tables", help="Create missing tables first (development only)"
    ),
):
    """
    📄 Document Worker CLI

    Start the worker pool, inspect queues and jobs, and run maintenance.
    """
    ctx.obj = {"database_url": database_url, "create_tables": create_tables}


if __name__ == "__main__":
    app()
