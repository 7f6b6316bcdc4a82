"""
FastAPI application initialization
"""

from typing import Any, Dict

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import etl, health, stats
from core.config import settings
from core.database import async_session_maker
from core.exceptions import (
    APIExtractionError,
    ETLException,
    InvalidRequestError,
    JobConflictError,
    JobNotFoundError,
    NoMatchingColumnsError,
    UnsupportedTableError,
)
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from ingestion.bulk_fast import BulkFastRunner
from ingestion.checkpoint import CheckpointStore
from ingestion.failures import FailureLog
from ingestion.job_registry import registry
from ingestion.loaders.postgres_loader import PostgresLoader
from ingestion.metrics import metrics
from ingestion.runner import StreamingETLRunner
from ingestion.scheduler import ETLScheduler
from schemas.api import ErrorResponse

setup_logging()

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS = (
    (InvalidRequestError, 422),
    (UnsupportedTableError, 400),
    (NoMatchingColumnsError, 400),
    (JobConflictError, 409),
    (JobNotFoundError, 404),
    (APIExtractionError, 502),
)

# Create FastAPI app
app = FastAPI(
    title="Streaming Bulk Ingestion API",
    description="Streams CSV, JSON, paginated API and synthetic sources into the order tables",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(etl.router)
app.include_router(stats.router)


def status_for(error: ETLException) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


@app.exception_handler(ETLException)
async def etl_exception_handler(request: Request, exc: ETLException):
    status_code = status_for(exc)
    context: Dict[str, Any] = {k: v for k, v in exc.context.items() if k != "error_timestamp"}
    body = ErrorResponse(
        error=type(exc).__name__,
        reason=exc.reason,
        detail=exc.message,
        context=context,
        partial_result=exc.partial_result,
    )
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed with {exc.reason}: {exc.message}")
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Streaming Bulk Ingestion API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    loader = PostgresLoader()
    failures = FailureLog(async_session_maker)
    http_client = httpx.AsyncClient(timeout=settings.API_TIMEOUT_SECONDS)

    app.state.http_client = http_client
    app.state.failures = failures
    app.state.runner = StreamingETLRunner(
        loader=loader,
        checkpoints=CheckpointStore(async_session_maker),
        failures=failures,
        registry=registry,
        metrics=metrics,
        http_client=http_client,
        dead_letter_dir=settings.ETL_DEAD_LETTER_DIR,
    )
    app.state.bulk_runner = BulkFastRunner(loader=loader, registry=registry, metrics=metrics)

    # Start Scheduler
    app.state.scheduler = ETLScheduler(app.state.runner)
    app.state.scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Streaming Bulk Ingestion API")
    app.state.scheduler.stop()
    await app.state.runner.shutdown()
    await app.state.http_client.aclose()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Streaming Bulk Ingestion API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "stream": "/etl/stream",
            "bulk_fast": "/etl/bulk-fast",
            "jobs": "/etl/jobs",
            "metrics": "/etl/metrics",
            "schedules": "/etl/schedules"
        }
    }
