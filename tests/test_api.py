import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from httpx import AsyncClient

from docworker.config.settings import Settings
from docworker.infra.database import Database
from docworker.main import create_app
from docworker.v1.core.exceptions import StoreUnavailableError
from docworker.v1.infra.jobs.models import JobStatus


@pytest.mark.asyncio
async def test_health_check(api_client: AsyncClient, enqueue):
    """Test health check endpoint returns proper format."""
    await enqueue()
    await enqueue(queue_name="other")

    response = await api_client.get("/v1/healthz")

    assert response.status_code == 200
    assert "X-Request-ID" in response.headers

    data = response.json()
    assert data["ok"] is True
    for key in ["ok", "data", "message", "request_id"]:
        assert key in data

    health = data["data"]
    assert health["ok"] is True
    assert health["database"]["connected"] is True
    assert health["database"]["response_time_ms"] >= 0
    assert health["queues"]["pending"] == 2
    assert health["workers"] is None


@pytest.mark.asyncio
async def test_workers_without_embedded_pool(api_client: AsyncClient):
    response = await api_client.get("/v1/workers")

    assert response.status_code == 200
    assert response.json()["data"] == {"embedded": False, "workers": []}


@pytest.mark.asyncio
async def test_queue_stats(api_client: AsyncClient, enqueue):
    await enqueue()
    await enqueue()

    response = await api_client.get("/v1/queues")

    [queue] = response.json()["data"]
    assert queue["queue_name"] == "test-queue"
    assert queue["pending"] == 2
    assert queue["total"] == 2


@pytest.mark.asyncio
async def test_get_job(api_client: AsyncClient, enqueue):
    job_id = await enqueue(doc_id="doc-1", priority=2)

    response = await api_client.get(f"/v1/jobs/{job_id}")

    assert response.status_code == 200
    job = response.json()["data"]
    assert job["id"] == job_id
    assert job["status"] == "queued"
    assert job["priority"] == 2
    assert job["attempts"] == 0


@pytest.mark.asyncio
async def test_get_missing_job_returns_404(api_client: AsyncClient):
    response = await api_client.get("/v1/jobs/missing")

    assert response.status_code == 404
    body = response.json()
    assert body["ok"] is False
    assert body["error"]["code"] == 404
    assert body["error"]["details"] == {"job_id": "missing"}


@pytest.mark.asyncio
async def test_list_jobs_for_document(api_client: AsyncClient, enqueue):
    first = await enqueue(doc_id="doc-1")
    second = await enqueue(doc_id="doc-1", job_type="chunk_document")
    await enqueue(doc_id="doc-2")

    response = await api_client.get("/v1/jobs", params={"doc_id": "doc-1"})

    assert [job["id"] for job in response.json()["data"]] == [first, second]


@pytest.mark.asyncio
async def test_cancel_job(api_client: AsyncClient, store, enqueue):
    queued = await enqueue()
    claimed = await enqueue(priority=1)
    await store.claim_batch("test-queue", 1, "worker-a")

    response = await api_client.post(f"/v1/jobs/{queued}/cancel")
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "cancelled"

    response = await api_client.post(f"/v1/jobs/{claimed}/cancel")
    assert response.status_code == 409
    assert "processing" in response.json()["error"]["message"]

    response = await api_client.post("/v1/jobs/missing/cancel")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_maintenance_cleanup(api_client: AsyncClient):
    response = await api_client.post("/v1/maintenance/cleanup")

    assert response.status_code == 200
    assert response.json()["data"] == {
        "reset": 0,
        "completed_deleted": 0,
        "failed_deleted": 0,
    }


@pytest.mark.asyncio
async def test_maintenance_cleanup_resets_stale_jobs(
    api_client: AsyncClient, store, enqueue, update_job
):
    job_id = await enqueue()
    await store.claim_batch("test-queue", 1, "worker-dead")
    await update_job(job_id, started_at=datetime.now(UTC) - timedelta(hours=2))

    response = await api_client.post("/v1/maintenance/cleanup")

    assert response.status_code == 200
    assert response.json()["data"]["reset"] == 1
    assert (await store.get(job_id)).status == JobStatus.QUEUED


@pytest.mark.asyncio
async def test_maintenance_cleanup_continues_after_failed_step(
    api_client: AsyncClient, store, enqueue, update_job, monkeypatch
):
    job_id = await enqueue()
    await store.claim_batch("test-queue", 1, "worker-dead")
    await update_job(job_id, started_at=datetime.now(UTC) - timedelta(hours=2))

    async def unavailable(*args, **kwargs):
        raise StoreUnavailableError("connection refused")

    monkeypatch.setattr(store, "purge_old", unavailable)

    response = await api_client.post("/v1/maintenance/cleanup")

    assert response.status_code == 200
    assert response.json()["data"] == {
        "reset": 1,
        "completed_deleted": 0,
        "failed_deleted": 0,
    }


def test_lifespan_starts_embedded_workers(database_url):
    """The app builds its own store and runs the pool when configured to."""
    app_settings = Settings(
        _env_file=None,
        database_url=database_url,
        embedded_workers=True,
        shutdown_grace_period_s=1.0,
        health_check_interval_s=3600,
        maintenance_interval_s=3600,
    )

    async def create_tables():
        database = Database(app_settings)
        await database.create_all()
        await database.close()

    asyncio.run(create_tables())

    with TestClient(create_app(app_settings)) as client:
        response = client.get("/v1/workers")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["embedded"] is True
        assert data["status"] == "healthy"
        assert {worker["worker_name"] for worker in data["workers"]} == {
            "document-parser",
            "document-chunker",
            "system-cleanup",
        }

        response = client.get("/v1/healthz")
        assert response.json()["data"]["workers"]["running"] == 3
