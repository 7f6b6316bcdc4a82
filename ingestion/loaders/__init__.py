"""COPY encoding, backpressure handling and PostgreSQL loaders."""

from ingestion.loaders.backpressure import AdaptiveBatchSizer, BatchStats, CopySink, HeapGuard, stream_chunks
from ingestion.loaders.copy_encoder import BufferPool, encode_chunks, format_copy_line
from ingestion.loaders.postgres_loader import CopyOptions, CopyOutcome, PostgresCopySink, PostgresLoader

__all__ = [
    "AdaptiveBatchSizer",
    "BatchStats",
    "BufferPool",
    "CopyOptions",
    "CopyOutcome",
    "CopySink",
    "HeapGuard",
    "PostgresCopySink",
    "PostgresLoader",
    "encode_chunks",
    "format_copy_line",
    "stream_chunks",
]
