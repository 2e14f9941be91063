"""Job Commands - enqueue, inspect and cancel processing jobs"""

import json

import typer
from rich.console import Console

from docworker.v1.infra.jobs.schemas import JobCreate, JobResponse

from ..utils.formatting import create_job_panel, print_error, print_info, print_success
from ..utils.runtime import cli_settings, run_with_store

console = Console()
app = typer.Typer(name="jobs", help="Processing job management")


@app.command("enqueue")
def enqueue_job(
    ctx: typer.Context,
    job_type: str = typer.Argument(..., help="Job type (e.g., parse_pdf)"),
    queue: str = typer.Option("document-processing", "--queue", "-q", help="Queue name"),
    doc_id: str | None = typer.Option(None, "--doc-id", help="Document id"),
    priority: int | None = typer.Option(
        None, "--priority", "-p", min=1, max=10, help="1=highest (default from settings)"
    ),
    max_attempts: int | None = typer.Option(
        None, "--max-attempts", min=1, max=20, help="Attempt ceiling (default from settings)"
    ),
    file_path: str | None = typer.Option(None, "--file", help="Source file path"),
    params: str = typer.Option("{}", "--params", help="input_params as JSON"),
):
    """➕ Enqueue a processing job"""
    try:
        input_params = json.loads(params)
    except json.JSONDecodeError as e:
        print_error(f"--params is not valid JSON: {e}")
        raise typer.Exit(1) from None

    settings = cli_settings(ctx)
    job_create = JobCreate(
        job_type=job_type,
        queue_name=queue,
        doc_id=doc_id,
        priority=priority or settings.job_default_priority,
        max_attempts=max_attempts or settings.job_default_max_attempts,
        file_path=file_path,
        input_params=input_params,
    )

    async def action(database, store, settings):
        return await store.enqueue(job_create)

    job_id = run_with_store(ctx, action)
    print_success(f"Enqueued {job_type} job {job_id} on {queue}")


@app.command("show")
def show_job(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Job id"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
):
    """🔍 Show one job"""

    async def action(database, store, settings):
        job = await store.get(job_id)
        return JobResponse.model_validate(job).model_dump(mode="json") if job else None

    job = run_with_store(ctx, action)
    if job is None:
        print_error(f"Job {job_id} not found")
        raise typer.Exit(1)

    if as_json:
        console.print_json(data=job)
    else:
        console.print(create_job_panel(job))


@app.command("list")
def list_jobs(
    ctx: typer.Context,
    doc_id: str = typer.Option(..., "--doc-id", help="Document id"),
):
    """📋 List the jobs of one document"""

    async def action(database, store, settings):
        jobs = await store.list_by_document(doc_id)
        return [JobResponse.model_validate(job).model_dump(mode="json") for job in jobs]

    jobs = run_with_store(ctx, action)
    if not jobs:
        print_info(f"No jobs for document {doc_id}")
        return

    for job in jobs:
        console.print(create_job_panel(job))


@app.command("cancel")
def cancel_job(ctx: typer.Context, job_id: str = typer.Argument(..., help="Job id")):
    """🚫 Cancel a queued or retrying job"""

    async def action(database, store, settings):
        if await store.cancel(job_id):
            return "cancelled"
        job = await store.get(job_id)
        return job.status if job else None

    outcome = run_with_store(ctx, action)
    if outcome == "cancelled":
        print_success(f"Job {job_id} cancelled")
    elif outcome is None:
        print_error(f"Job {job_id} not found")
        raise typer.Exit(1)
    else:
        print_error(f"Job {job_id} cannot be cancelled in status '{outcome}'")
        raise typer.Exit(1)
