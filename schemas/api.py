"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from schemas.etl import CamelModel


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    active_jobs: int = 0
    failed_jobs: int = 0
    scheduler_running: bool = False
    # Declared last so the validator sees the fields above
    status: str = Field("healthy", description="Overall system status: healthy, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"
        return v or "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "active_jobs": 1,
                "failed_jobs": 0,
                "scheduler_running": True
            }
        }


# ============================================================================
# Job Schemas
# ============================================================================

class FailureInfo(CamelModel):
    """Most recent durable failure of a job"""
    stage: str
    table_name: Optional[str] = None
    approx_row: Optional[int] = None
    error_code: str
    error_message: str
    created_at: Optional[str] = None


class JobSnapshot(CamelModel):
    """Registry view of one job"""
    job_id: str
    table: str
    source_type: str
    status: str
    attempted_rows: int = 0
    inserted_rows: int = 0
    rejected_rows: int = 0
    dead_letter_count: int = 0
    checkpoint: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    created_at: str
    updated_at: str
    completed_at: Optional[str] = None
    last_failure: Optional[FailureInfo] = None


class JobListResponse(CamelModel):
    jobs: List[JobSnapshot]
    total: int


class JobAcceptedResponse(CamelModel):
    """Returned when a job is scheduled in the background"""
    job_id: str
    status: str
    events_url: str


# ============================================================================
# Metrics Schemas
# ============================================================================

class MetricsResponse(CamelModel):
    """In-memory run metrics"""
    summary: Dict[str, Any]
    recent_runs: List[Dict[str, Any]] = Field(default_factory=list)
    recent_bulk_runs: List[Dict[str, Any]] = Field(default_factory=list)
    last_run_for_job: Optional[Dict[str, Any]] = None


class ScheduleInfo(CamelModel):
    id: str
    interval_minutes: Optional[float] = None
    cron: Optional[str] = None
    request: Dict[str, Any]
    next_run_time: Optional[str] = None


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    reason: str
    detail: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    partial_result: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "UnsupportedTableError",
                "reason": "unsupported-table",
                "detail": "Unsupported table: invoices",
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
