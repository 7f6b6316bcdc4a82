"""
Ingestion endpoints: run jobs, inspect and cancel them, follow progress
"""

import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from api.dependencies import get_bulk_runner, get_failures, get_registry, get_runner, get_scheduler
from core.exceptions import JobNotFoundError
from ingestion.bulk_fast import BulkFastRunner
from ingestion.failures import FailureLog
from ingestion.job_registry import JobRegistry
from ingestion.runner import StreamingETLRunner
from ingestion.scheduler import ETLScheduler
from schemas.api import JobAcceptedResponse, JobListResponse, JobSnapshot, ScheduleInfo
from schemas.etl import BulkFastRequest, BulkFastResult, StreamingEtlRequest, StreamingEtlResult

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/etl", tags=["ETL"])


def _require_job(registry: JobRegistry, job_id: str):
    job = registry.get(job_id)
    if job is None:
        raise JobNotFoundError(f"Unknown job: {job_id}", context={"job_id": job_id})
    return job


@router.post("/stream", response_model=StreamingEtlResult)
async def run_stream(
    payload: StreamingEtlRequest,
    request: Request,
    background: bool = Query(False, description="Schedule the job and return 202 immediately"),
    runner: StreamingETLRunner = Depends(get_runner),
):
    """
    Run one streaming ingestion job.

    With ``background=true`` the job runs as a task; follow it through
    ``/etl/jobs/{id}/events``.
    """
    if background:
        job = runner.run_in_background(payload)
        accepted = JobAcceptedResponse(
            job_id=job.job_id,
            status=job.status.value,
            events_url=str(request.url_for("job_events", job_id=job.job_id).path),
        )
        return JSONResponse(status_code=202, content=accepted.model_dump(by_alias=True))

    return await runner.run(payload)


@router.post("/bulk-fast", response_model=BulkFastResult)
async def run_bulk_fast(
    payload: BulkFastRequest,
    bulk_runner: BulkFastRunner = Depends(get_bulk_runner),
):
    """Generate synthetic orders and load them through the staging tables."""
    return await bulk_runner.run(payload)


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    limit: int = Query(100, ge=1, le=1000),
    registry: JobRegistry = Depends(get_registry),
):
    jobs = [JobSnapshot.model_validate(job.snapshot()) for job in registry.list(limit=limit)]
    return JobListResponse(jobs=jobs, total=len(jobs))


@router.get("/jobs/{job_id}", response_model=JobSnapshot)
async def get_job(
    job_id: str,
    registry: JobRegistry = Depends(get_registry),
    failures: Optional[FailureLog] = Depends(get_failures),
):
    """Job snapshot plus its most recent durable failure, if any."""
    snapshot = _require_job(registry, job_id).snapshot()

    if failures is not None:
        try:
            snapshot["last_failure"] = await failures.last_for_job(job_id)
        except Exception as e:
            logger.error(f"Failed to load failure log for job {job_id}: {e}")

    return JobSnapshot.model_validate(snapshot)


@router.post("/jobs/{job_id}/cancel", response_model=JobSnapshot)
async def cancel_job(job_id: str, registry: JobRegistry = Depends(get_registry)):
    """
    Request cooperative cancellation. The job observes it at its next
    row, page or chunk boundary.
    """
    job = registry.cancel(job_id)
    logger.info(f"Cancellation requested for job {job_id}")
    return JobSnapshot.model_validate(job.snapshot())


@router.get("/jobs/{job_id}/events", name="job_events")
async def job_events(job_id: str, registry: JobRegistry = Depends(get_registry)):
    """Server-Sent Events stream of job snapshots until the job finishes."""
    _require_job(registry, job_id)

    async def event_stream():
        async for snapshot in registry.stream(job_id):
            if snapshot is None:
                yield ": keep-alive\n\n"
                continue
            data = JobSnapshot.model_validate(snapshot).model_dump(by_alias=True)
            yield f"event: progress\ndata: {json.dumps(data, default=str)}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/schedules", response_model=List[ScheduleInfo])
async def list_schedules(scheduler: Optional[ETLScheduler] = Depends(get_scheduler)):
    if scheduler is None:
        return []
    return [ScheduleInfo.model_validate(entry) for entry in scheduler.describe()]
