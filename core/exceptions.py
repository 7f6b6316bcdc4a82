"""
Custom exceptions for the ingestion engine with structured error context.

Every failure raised by the engine belongs to one of a small number of
categories (validation, source, rejection, load, resource-limit,
cancellation). Each exception carries a context dictionary for logging, the
original exception (if any), a short ``reason`` tag that ends up on the job
record, and optionally the partial result of the run that failed.

Exception Hierarchy:
    ETLException (base)
    ├── InvalidRequestError
    ├── ExtractionError
    │   ├── APIExtractionError
    │   │   ├── NetworkError (retryable)
    │   │   ├── RateLimitError (retryable)
    │   │   ├── AuthenticationError
    │   │   └── ResourceNotFoundError
    │   ├── CSVExtractionError
    │   ├── JSONExtractionError
    │   ├── UnsupportedTableError
    │   └── NoMatchingColumnsError
    ├── TransformationError
    │   └── RowRejectedError
    ├── LoadError
    │   ├── DatabaseError
    │   └── BackpressureTimeoutError
    ├── ResourceLimitError
    │   └── HeapLimitExceededError
    ├── JobCancelledError
    ├── JobConflictError / JobNotFoundError
    ├── CheckpointError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class ETLException(Exception):
    """
    Base exception for all engine errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (job, table, row, etc.)
        original_exception: The original exception that was caught (if any)
        reason: Short machine-readable tag recorded on the failed job
        partial_result: Counts accumulated before the failure (if known)
    """

    reason = "error"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()
        self.partial_result: Optional[Dict[str, Any]] = None

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        data = {
            "error_type": self.__class__.__name__,
            "reason": self.reason,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }
        if self.partial_result is not None:
            data["partial_result"] = self.partial_result
        return data


# ============================================================================
# Validation Errors
# ============================================================================

class InvalidRequestError(ETLException):
    """
    Raised before any I/O when an ingestion request is malformed.

    Examples: upsert without key columns, missing source section for the
    chosen source type, checkpointing without a job id.
    """
    reason = "invalid-request"


# ============================================================================
# Source Errors
# ============================================================================

class ExtractionError(ETLException):
    """Base exception for source read failures."""
    reason = "source-error"


class APIExtractionError(ExtractionError):
    """
    Exception raised when a paginated API source fails.

    Context should include:
        - api_url: The API endpoint that failed
        - status_code: HTTP status code (if applicable)
        - retry_count: Number of retries attempted
    """
    pass


class CSVExtractionError(ExtractionError):
    """
    Exception raised when a delimited file cannot be read.

    Context should include:
        - file_path: Path to the file
        - line_number: Line number where the error occurred (if known)
    """
    pass


class JSONExtractionError(ExtractionError):
    """
    Exception raised when a JSON or NDJSON document is malformed.

    Context should include:
        - file_path: Path to the file
        - line_number: Line number (ndjson) or byte position (array mode)
    """
    pass


class UnsupportedTableError(ExtractionError):
    """Target table is not one the engine knows how to load."""
    reason = "unsupported-table"


class NoMatchingColumnsError(ExtractionError):
    """Column planner produced an empty plan for the source keys."""
    reason = "no-matching-columns"


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(ETLException):
    """Base exception for row transformation failures."""
    pass


class RowRejectedError(TransformationError):
    """
    Raised in strict mode for the first record that fails validation.

    Context should include:
        - row_index: Zero-based index of the rejected record
        - table_name: Target table
        - validation_error: e.g. "missing ordrenr"
    """
    reason = "row-rejected"


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(ETLException):
    """Base exception for destination write failures."""
    reason = "load-error"


class DatabaseError(LoadError):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: COPY, INSERT, MIGRATE, ...
        - table_name: Name of the table
        - error_code: SQLSTATE (if available)
    """
    pass


class BackpressureTimeoutError(LoadError):
    """The sink did not drain within the configured timeout."""
    reason = "backpressure-timeout"


# ============================================================================
# Resource Limits
# ============================================================================

class ResourceLimitError(ETLException):
    """
    A self-termination limit was hit (rows, duration, dead letters, memory).

    The ``reason`` is set per instance to one of the limit tags.
    """

    ROW_LIMIT = "row-limit-exceeded"
    DURATION_LIMIT = "duration-limit-exceeded"
    DEAD_LETTER_LIMIT = "dead-letter-limit-exceeded"
    HEAP_LIMIT = "heap-limit-exceeded"

    def __init__(
        self,
        message: str,
        reason: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.reason = reason
        self.context["limit"] = reason


class HeapLimitExceededError(ResourceLimitError):
    """Process memory went above the abort threshold."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ResourceLimitError.HEAP_LIMIT, context)


# ============================================================================
# Job lifecycle
# ============================================================================

class JobCancelledError(ETLException):
    """Cooperative cancellation was observed at a page/chunk/row boundary."""
    reason = "cancelled"


class JobConflictError(ETLException):
    """A job with the same id is already pending or running."""
    reason = "job-conflict"


class JobNotFoundError(ETLException):
    """No job with the given id is known to the registry."""
    reason = "job-not-found"


class CheckpointError(ETLException):
    """
    Exception raised when checkpoint persistence fails.

    Context should include:
        - job_id: Job the checkpoint belongs to
        - operation: load, save or delete
    """
    reason = "checkpoint-error"


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 5xx)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 0.5
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(ETLException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Resource not found (HTTP 404)
    - Other client errors (HTTP 4xx)
    """
    pass


# ============================================================================
# Specific Retryable Errors
# ============================================================================

class NetworkError(RetryableError, APIExtractionError):
    """Network-related errors that should be retried."""
    pass


class RateLimitError(RetryableError, APIExtractionError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


# ============================================================================
# Specific Non-Retryable Errors
# ============================================================================

class AuthenticationError(NonRetryableError, APIExtractionError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, APIExtractionError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass
