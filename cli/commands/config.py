"""Configuration Commands - worker configuration and CLI settings"""

import typer
from rich.console import Console

from ..utils.config_manager import config
from ..utils.formatting import create_worker_config_table, print_error, print_success
from ..utils.runtime import cli_settings

console = Console()
app = typer.Typer(
    name="config",
    help="Worker configuration and CLI settings",
    invoke_without_command=True,
)


@app.callback()
def show_worker_config(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
):
    """⚙️ Show the configured workers and whether each one is valid"""
    if ctx.invoked_subcommand is not None:
        return

    settings = cli_settings(ctx)
    rows = [
        {**worker.model_dump(), "errors": worker.validate_bounds()}
        for worker in settings.worker_configs()
    ]

    if as_json:
        console.print_json(data=rows)
        return

    console.print(create_worker_config_table(rows))
    console.print(
        f"Stale timeout: [yellow]{settings.job_stale_timeout_minutes} min[/yellow]  "
        f"Retention: [green]{settings.job_completed_retention_hours}h completed[/green], "
        f"[red]{settings.job_failed_retention_hours}h failed[/red]"
    )


@app.command("set")
def set_config(
    key: str = typer.Argument(..., help="Configuration key (e.g., 'api.base_url')"),
    value: str = typer.Argument(..., help="Configuration value"),
):
    """Set a CLI configuration value"""
    if key == "api.base_url" and not value.startswith(("http://", "https://")):
        print_error("API base URL must start with http:// or https://")
        raise typer.Exit(1)

    if key.endswith(".timeout") and not value.isdigit():
        print_error("Timeout values must be numeric (seconds)")
        raise typer.Exit(1)

    try:
        config.set(key, int(value) if key.endswith(".timeout") else value)
    except OSError as e:
        print_error(f"Failed to set configuration: {e}")
        raise typer.Exit(1) from None
    print_success(f"Set {key} = {value}")


@app.command("get")
def get_config(key: str = typer.Argument(..., help="Configuration key")):
    """Get a CLI configuration value"""
    value = config.get(key)
    if value is None:
        console.print(f"[yellow]Key '{key}' not found[/yellow]")
        raise typer.Exit(1)
    console.print(f"[cyan]{key}[/cyan] = [yellow]{value}[/yellow]")


@app.command("path")
def show_config_path():
    """📁 Show CLI configuration file path"""
    console.print(f"Configuration file: [cyan]{config.config_file}[/cyan]")
    if not config.config_file.exists():
        console.print("[dim]Configuration file will be created on first use[/dim]")
