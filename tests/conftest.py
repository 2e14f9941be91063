import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text, update

from docworker.config.settings import Settings
from docworker.infra.database import Database
from docworker.main import create_app
from docworker.v1.infra.jobs.models import ProcessingJob
from docworker.v1.infra.jobs.schemas import JobCreate
from docworker.v1.infra.jobs.store import JobStore


@pytest.fixture
def database_url(tmp_path) -> str:
    """CI PostgreSQL when DATABASE_URL points to one, otherwise a SQLite file."""
    database_url = os.getenv("DATABASE_URL")
    if database_url and "postgresql" in database_url:
        return database_url
    return f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        environment="development",
        debug=True,
        temp_dir=str(tmp_path / "scratch"),
        shutdown_grace_period_s=2.0,
        health_check_interval_s=3600,
        maintenance_interval_s=3600,
    )


@pytest.fixture
async def database(test_settings, database_url) -> AsyncGenerator[Database, None]:
    db = Database(test_settings, database_url=database_url)
    await db.create_all()

    if db.dialect_name == "postgresql":
        async with db.engine.begin() as conn:
            await conn.execute(text("TRUNCATE processing_jobs"))

    yield db
    await db.close()


@pytest.fixture
async def store(database, test_settings) -> JobStore:
    return JobStore(database, test_settings)


@pytest.fixture
def enqueue(store) -> Callable[..., Awaitable[str]]:
    """Enqueue a job with test defaults."""

    async def _enqueue(**overrides: Any) -> str:
        fields: dict[str, Any] = {"job_type": "parse_text", "queue_name": "test-queue"}
        fields.update(overrides)
        return await store.enqueue(JobCreate(**fields))

    return _enqueue


@pytest.fixture
def update_job(database) -> Callable[..., Awaitable[None]]:
    """Write columns directly, e.g. to backdate timestamps."""

    async def _update(job_id: str, **values: Any) -> None:
        async with database.session() as session:
            await session.execute(
                update(ProcessingJob).where(ProcessingJob.id == job_id).values(**values)
            )
            await session.commit()

    return _update


@pytest.fixture
async def api_client(test_settings, database, store) -> AsyncGenerator[AsyncClient, None]:
    """Async client against the app, sharing the test database."""
    app = create_app(test_settings, database)
    app.state.database = database
    app.state.store = store
    app.state.bootstrap = None

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client
