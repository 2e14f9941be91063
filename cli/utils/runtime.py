"""Helpers for commands that talk to the job store directly"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer

from docworker.config.settings import Settings, get_settings
from docworker.infra.database import Database
from docworker.v1.infra.jobs.store import JobStore

T = TypeVar("T")


def cli_settings(ctx: typer.Context) -> Settings:
    obj = ctx.find_root().obj or {}
    return obj.get("settings") or get_settings()


def cli_database_url(ctx: typer.Context) -> str | None:
    obj = ctx.find_root().obj or {}
    return obj.get("database_url")


def run_with_store(
    ctx: typer.Context, action: Callable[[Database, JobStore, Settings], Awaitable[T]]
) -> T:
    """Open the database, run ``action`` and always dispose the engine."""
    settings = cli_settings(ctx)

    async def runner() -> T:
        database = Database(settings, database_url=cli_database_url(ctx))
        try:
            if (ctx.find_root().obj or {}).get("create_tables"):
                await database.create_all()
            return await action(database, JobStore(database, settings), settings)
        finally:
            await database.close()

    return asyncio.run(runner())


def dump(value: Any) -> Any:
    """JSON-friendly representation of pydantic models and lists of them"""
    if isinstance(value, list):
        return [dump(v) for v in value]
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value
