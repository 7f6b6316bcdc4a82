"""
Core utilities and configuration for the streaming ingestion engine.

Modules:
    config: Engine configuration and environment variable management
    database: Async engine, sessions and raw asyncpg connections
    exceptions: Exception hierarchy with reason tags and partial results
    logging: Logging configuration

Usage:
    from core.config import settings
    from core.database import async_session_maker, raw_connection
    from core.exceptions import InvalidRequestError, JobCancelledError
    from core.logging import setup_logging
"""

__all__ = [
    "settings",
    "async_session_maker",
    "raw_connection",
    "setup_logging",
    # Exceptions
    "ETLException",
    "InvalidRequestError",
    "ExtractionError",
    "APIExtractionError",
    "CSVExtractionError",
    "JSONExtractionError",
    "UnsupportedTableError",
    "NoMatchingColumnsError",
    "TransformationError",
    "RowRejectedError",
    "LoadError",
    "DatabaseError",
    "BackpressureTimeoutError",
    "ResourceLimitError",
    "HeapLimitExceededError",
    "JobCancelledError",
    "JobConflictError",
    "JobNotFoundError",
    "CheckpointError",
    "RetryableError",
    "NonRetryableError",
    "NetworkError",
    "RateLimitError",
    "AuthenticationError",
    "ResourceNotFoundError",
]
