"""
Streaming bulk-ingestion pipeline.

Modules:
    base: Row source contract and cooperative cancellation token
    tables: Supported destination tables and their validators
    runner: Streaming job orchestrator (source -> plan -> transform -> COPY)
    bulk_fast: Synthetic bulk load through UNLOGGED staging tables
    job_registry: In-memory job registry with progress subscriptions
    checkpoint: Checkpoint persistence for resumable jobs
    dead_letter: NDJSON dead-letter files for rejected rows
    failures: Durable failure log
    metrics: Recent run metrics and summaries
    scheduler: APScheduler integration for scheduled ingestion

Subpackages:
    extractors: Row sources (CSV, JSON, API, generator)
    transformers: Column planning and value transformation
    loaders: COPY encoding, backpressure, PostgreSQL loader, staging

Architecture:
    Records are pulled lazily from a source, mapped onto a column plan,
    validated, encoded to text-COPY chunks in pooled buffers, and streamed
    into PostgreSQL with backpressure. Rejected rows are counted and
    optionally dead-lettered; everything else aborts the job.

Usage:
    from ingestion.runner import StreamingETLRunner
    from schemas.etl import StreamingEtlRequest

    request = StreamingEtlRequest.model_validate({
        "sourceType": "csv",
        "table": "ordre",
        "csv": {"filePath": "/data/ordre.csv"},
    })
    result = await StreamingETLRunner().run(request)

    print(f"Inserted {result.inserted_rows} of {result.attempted_rows} rows")

Error Handling:
    All components raise exceptions from core.exceptions; each carries a
    reason tag that is recorded on the job.
"""

__all__ = [
    "RowSource",
    "CancellationToken",
    "StreamingETLRunner",
    "BulkFastRunner",
    "JobRegistry",
    "MetricsRecorder",
    "ETLScheduler",
]
