"""
FastAPI dependencies.

Engine components are created once at startup and kept on ``app.state``;
routes receive them through these functions so tests can override them.
"""

from typing import Optional

from fastapi import Request
from core.database import get_session
from ingestion.bulk_fast import BulkFastRunner
from ingestion.failures import FailureLog
from ingestion.job_registry import JobRegistry, registry
from ingestion.metrics import MetricsRecorder, metrics
from ingestion.runner import StreamingETLRunner
from ingestion.scheduler import ETLScheduler


get_db = get_session


def get_registry() -> JobRegistry:
    return registry


def get_metrics() -> MetricsRecorder:
    return metrics


def get_runner(request: Request) -> StreamingETLRunner:
    return request.app.state.runner


def get_bulk_runner(request: Request) -> BulkFastRunner:
    return request.app.state.bulk_runner


def get_failures(request: Request) -> Optional[FailureLog]:
    return getattr(request.app.state, "failures", None)


def get_scheduler(request: Request) -> Optional[ETLScheduler]:
    return getattr(request.app.state, "scheduler", None)
