"""Batch API endpoints.

POST /api/v1/batch - Submit a batch job
GET /api/v1/batch/{job_id}/stream - Server-sent event stream of a job
POST /api/v1/batch/{job_id}/cancel - Cancel a job
POST /api/v1/batch/{job_id}/tasks/{task_id}/retry - Retry one task
GET /api/v1/batch/{job_id} - Job snapshot
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Coroutine

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from atelier.api.state import Services, get_services
from atelier.batch.events import format_sse
from atelier.models.domain import BatchJob
from atelier.models.types import BatchJobDetail, BatchRequest, BatchSubmitted

logger = logging.getLogger(__name__)

router = APIRouter()

# Strong references; the event loop only keeps weak ones
_background: set[asyncio.Task] = set()


def _spawn(coro: Coroutine) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background.add(task)
    task.add_done_callback(_background.discard)
    return task


def _get_job(services: Services, job_id: str) -> BatchJob:
    job = services.orchestrator.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Batch job not found: {job_id}")
    return job


@router.post("/batch", response_model=BatchSubmitted, status_code=202)
async def submit_batch(
    request: BatchRequest,
    services: Services = Depends(get_services),
) -> BatchSubmitted:
    """Register a batch job and start it in the background.

    Raises:
        HTTPException: 400 if the source or a reference image cannot be
            resolved, 503 for color batches without segmentation service.
    """
    if request.mode == "color":
        services.require_pipeline()
    try:
        job = services.orchestrator.create_job(request)
    except (FileNotFoundError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Image unavailable: {e}")

    _spawn(services.orchestrator.run(job))
    return BatchSubmitted(job_id=job.job_id, stream_url=f"/api/v1/batch/{job.job_id}/stream")


@router.get("/batch/{job_id}/stream")
async def stream_batch(
    job_id: str,
    services: Services = Depends(get_services),
) -> StreamingResponse:
    """Stream every event of a job, from the first, until it finishes."""
    _get_job(services, job_id)
    events = services.orchestrator.events(job_id)

    async def frames() -> AsyncIterator[str]:
        async for event in events.follow():
            yield format_sse(event)

    return StreamingResponse(
        frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/batch/{job_id}/cancel", response_model=BatchJobDetail)
async def cancel_batch(
    job_id: str,
    services: Services = Depends(get_services),
) -> BatchJobDetail:
    """Cancel a job; settled tasks keep their results."""
    job = _get_job(services, job_id)
    await services.orchestrator.cancel(job)
    return services.orchestrator.snapshot(job)


@router.post("/batch/{job_id}/tasks/{task_id}/retry", response_model=BatchJobDetail)
async def retry_task(
    job_id: str,
    task_id: str,
    services: Services = Depends(get_services),
) -> BatchJobDetail:
    """Re-run one failed or cancelled task and return the updated snapshot.

    Events of the retry are appended to the job stream, which reopens when
    the job had already finished.

    Raises:
        HTTPException: 404 if job or task is unknown, 409 if the task is
            still pending or loading.
    """
    job = _get_job(services, job_id)
    task = job.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
    if task.status in ("pending", "loading") and job.status == "running":
        raise HTTPException(status_code=409, detail=f"Task {task_id} is still {task.status}")

    await services.orchestrator.retry_task(job, task_id)
    return services.orchestrator.snapshot(job)


@router.get("/batch/{job_id}", response_model=BatchJobDetail)
def get_batch(
    job_id: str,
    services: Services = Depends(get_services),
) -> BatchJobDetail:
    """Get a job snapshot."""
    return services.orchestrator.snapshot(_get_job(services, job_id))
