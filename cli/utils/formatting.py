"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "queued": "cyan",
    "processing": "yellow",
    "completed": "green",
    "failed": "red",
    "retry": "magenta",
    "cancelled": "dim",
    "running": "green",
    "stopped": "dim",
    "stopping": "yellow",
    "error": "red",
    "healthy": "green",
    "degraded": "yellow",
    "unhealthy": "red",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def create_queue_stats_table(queues: list[dict[str, Any]]) -> Table:
    """Create a formatted table of per-queue job counts"""
    table = Table(title="Queues", box=box.ROUNDED)

    table.add_column("Queue", justify="left", style="cyan", no_wrap=True)
    table.add_column("Pending", justify="right")
    table.add_column("Processing", justify="right", style="yellow")
    table.add_column("Retry", justify="right", style="magenta")
    table.add_column("Completed", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")

    for queue in queues:
        table.add_row(
            queue.get("queue_name", ""),
            str(queue.get("pending", 0)),
            str(queue.get("processing", 0)),
            str(queue.get("retry", 0)),
            str(queue.get("completed", 0)),
            str(queue.get("failed", 0)),
        )

    return table


def create_worker_config_table(configs: list[dict[str, Any]]) -> Table:
    """Create a formatted table of configured workers"""
    table = Table(title="Worker Configuration", box=box.ROUNDED)

    table.add_column("Worker", justify="left", style="cyan", no_wrap=True)
    table.add_column("Queue", justify="left", style="magenta")
    table.add_column("Job Types", justify="left")
    table.add_column("Concurrency", justify="right")
    table.add_column("Poll (ms)", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Timeout (ms)", justify="right")
    table.add_column("Enabled", justify="center")
    table.add_column("Valid", justify="center")

    for config in configs:
        errors = config.get("errors", [])
        table.add_row(
            config.get("name", ""),
            config.get("queue_name", ""),
            ", ".join(config.get("job_types", [])),
            str(config.get("concurrency", "")),
            str(config.get("poll_interval_ms", "")),
            str(config.get("max_retries", "")),
            str(config.get("timeout_ms", "")),
            "✓" if config.get("enabled") else "—",
            "[green]✓[/green]" if not errors else f"[red]✗ {'; '.join(errors)}[/red]",
        )

    return table


def create_worker_stats_table(workers: list[dict[str, Any]]) -> Table:
    """Create a formatted table of live worker statistics"""
    table = Table(title="Workers", box=box.ROUNDED)

    table.add_column("Worker", justify="left", style="cyan", no_wrap=True)
    table.add_column("State", justify="center")
    table.add_column("Active", justify="right")
    table.add_column("Processed", justify="right")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Avg (ms)", justify="right")
    table.add_column("Error Rate", justify="right")

    for worker in workers:
        table.add_row(
            worker.get("worker_name", ""),
            styled_status(str(worker.get("state", ""))),
            str(worker.get("active_jobs", 0)),
            str(worker.get("processed_jobs", 0)),
            str(worker.get("failed_jobs", 0)),
            f"{worker.get('average_processing_time_ms', 0):.0f}",
            f"{worker.get('error_rate', 0):.1%}",
        )

    return table


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create formatted panel describing one job"""
    content = f"""
• Type: [magenta]{job.get("job_type")}[/magenta]
• Status: {styled_status(job.get("status", ""))}
• Queue: [cyan]{job.get("queue_name")}[/cyan]  Priority: {job.get("priority")}
• Document: {job.get("doc_id") or "—"}
• Attempts: {job.get("attempts")}/{job.get("max_attempts")}
• Worker: {job.get("worker_id") or "—"}
• Progress: {job.get("progress_percentage", 0):.2f}% {job.get("progress_message") or ""}
• Queued: {job.get("queued_at")}
• Started: {job.get("started_at") or "—"}
• Next retry: {job.get("next_retry_at") or "—"}
"""
    if job.get("error_message"):
        content += (
            f"• Error: [red]{job.get('error_message')}[/red] ({job.get('error_code')})\n"
        )

    return Panel(content, title=f"Job {job.get('id')}", border_style="blue")
