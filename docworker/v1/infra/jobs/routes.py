"""
Job inspection API endpoints.
"""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, status

from docworker.v1.core.exceptions import JobNotFoundError, create_success_response
from docworker.v1.dependencies import StoreDep
from docworker.v1.infra.jobs.schemas import JobResponse
from docworker.v1.infra.jobs.store import JobStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/{job_id}", response_model=dict)
async def get_job(job_id: str, store: JobStore = StoreDep) -> dict[str, Any]:
    """Get a single job with its progress, timing and error details."""
    job = await store.get(job_id)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found", details={"job_id": job_id})

    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )


@router.get("", response_model=dict)
async def list_document_jobs(doc_id: str, store: JobStore = StoreDep) -> dict[str, Any]:
    """List every job of one document in queue order."""
    jobs = await store.list_by_document(doc_id)
    return create_success_response(
        data=[JobResponse.model_validate(job).model_dump(mode="json") for job in jobs]
    )


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(job_id: str, store: JobStore = StoreDep) -> dict[str, Any]:
    """Cancel a job that has not been claimed yet."""
    if await store.cancel(job_id):
        logger.info("Job cancelled via API", extra={"job_id": job_id})
        return create_success_response(
            data={"job_id": job_id, "status": "cancelled"}, message="Job cancelled"
        )

    job = await store.get(job_id)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found", details={"job_id": job_id})

    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"Job {job_id} cannot be cancelled in status '{job.status}'",
    )
