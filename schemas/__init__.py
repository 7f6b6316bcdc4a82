"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models for request/response validation
throughout the ingestion engine:

Schemas:
    etl: Streaming and fast-bulk requests/results (camelCase aliases)
    api: HTTP response models (health, jobs, metrics, errors)

Features:
    - Automatic data validation before any I/O
    - camelCase on the wire, snake_case in Python
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.etl import StreamingEtlRequest, StreamingEtlResult
    from schemas.api import HealthCheckResponse, JobSnapshot

Example:
    request = StreamingEtlRequest.model_validate({
        "sourceType": "json",
        "table": "ordrelinje",
        "json": {"filePath": "/data/linjer.ndjson", "mode": "ndjson"}
    })

    assert request.source_type == SourceType.JSON
    assert request.json_source.mode == "ndjson"
"""

__all__ = [
    "StreamingEtlRequest",
    "StreamingEtlResult",
    "BulkFastRequest",
    "BulkFastResult",
    "HealthCheckResponse",
    "JobSnapshot",
    "MetricsResponse",
    "ErrorResponse",
]
