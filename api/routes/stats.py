"""
ETL statistics and metrics endpoint
"""
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_metrics
from ingestion.metrics import MetricsRecorder
from schemas.api import MetricsResponse

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/etl", tags=["Statistics"])


@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics_summary(
    job_id: Optional[str] = Query(None, description="Restrict recent runs to one job"),
    recorder: MetricsRecorder = Depends(get_metrics),
):
    """
    Get in-memory run metrics.

    Returns:
    - Aggregate summary (runs, rows, durations, percentiles)
    - Recent streaming and fast-bulk runs
    - The last run of ``job_id`` when given
    """
    return MetricsResponse(
        summary=recorder.summary(),
        recent_runs=recorder.recent_runs(job_id),
        recent_bulk_runs=recorder.recent_bulk_runs(job_id),
        last_run_for_job=recorder.last_run_for_job(job_id) if job_id else None,
    )
