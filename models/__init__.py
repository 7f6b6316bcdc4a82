"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class and shared enums (SourceType, JobStatus, ConflictMode)
    checkpoint: Resume positions of checkpointed ingestion jobs
    etl_failure: Durable failure log
    orders: Destination tables of the order-management schema

Usage:
    from models.base import Base, SourceType, JobStatus
    from models.checkpoint import ETLCheckpoint
    from models.etl_failure import ETLFailure
"""

__all__ = [
    "Base",
    "SourceType",
    "JobStatus",
    "ConflictMode",
    "ETLCheckpoint",
    "ETLFailure",
]
