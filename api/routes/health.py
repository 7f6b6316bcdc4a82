"""
Health check endpoint with database and job status
"""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from api.dependencies import get_db, get_registry, get_scheduler
from ingestion.job_registry import JobRegistry
from ingestion.scheduler import ETLScheduler
from models.base import JobStatus
from schemas.api import HealthCheckResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    registry: JobRegistry = Depends(get_registry),
    scheduler: Optional[ETLScheduler] = Depends(get_scheduler),
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Number of running and failed jobs in the registry
    - Whether the scheduler is running
    """
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    jobs = registry.list(limit=registry.max_jobs)
    active_jobs = sum(1 for job in jobs if job.status in (JobStatus.PENDING, JobStatus.RUNNING))
    failed_jobs = sum(1 for job in jobs if job.status == JobStatus.FAILED)

    return HealthCheckResponse(
        database_connected=db_connected,
        active_jobs=active_jobs,
        failed_jobs=failed_jobs,
        scheduler_running=bool(scheduler and scheduler.scheduler.running),
    )
