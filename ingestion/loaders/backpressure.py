"""
Sink contract, backpressure handling and adaptive batch sizing.

The streamer writes encoded chunks to a ``CopySink``. When the sink reports
that it cannot take more (``write`` returns False) the streamer suspends on
``drained()`` and counts the stall. Stall statistics drive the batch size
used by the encoder, and every few chunks the process memory is sampled.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional
import logging

import psutil

from core.config import settings
from core.exceptions import BackpressureTimeoutError, HeapLimitExceededError, JobCancelledError

logger = logging.getLogger(__name__)

MIN_BATCH_ROWS = 1000
MAX_BATCH_ROWS = 10_000
BATCH_STEP = 1000
GROW_WINDOW_CHUNKS = 5
SHRINK_AFTER_STALLS = 10
HEAP_SAMPLE_INTERVAL = 20


@dataclass
class BatchStats:
    """Run-scoped COPY statistics; only the batch sizer changes rows_per_batch."""
    rows_per_batch: int = MIN_BATCH_ROWS
    drain_count: int = 0
    drain_wait_ms: float = 0.0
    chunks_written: int = 0


class CopySink(ABC):
    """Destination that accepts encoded COPY chunks."""

    @abstractmethod
    async def write(self, chunk: bytes) -> bool:
        """Queue a chunk; False means the caller must await ``drained()``."""

    @abstractmethod
    async def drained(self) -> None:
        """Resolve once the sink can accept more data."""

    @abstractmethod
    async def close(self) -> int:
        """Finish the stream and return the number of rows written."""

    @abstractmethod
    async def abort(self) -> None:
        """Abandon the stream; nothing written so far may be committed."""


class AdaptiveBatchSizer:
    """
    Grow the batch after a window of stall-free chunks, shrink after
    repeated stalls.

    Every ``GROW_WINDOW_CHUNKS`` chunks without a stall adds ``BATCH_STEP``
    rows (capped at ``MAX_BATCH_ROWS``). Once more than
    ``SHRINK_AFTER_STALLS`` stalls have accumulated the batch shrinks by
    ``BATCH_STEP`` (floored at ``MIN_BATCH_ROWS``) and the tally restarts.
    """

    def __init__(self, stats: BatchStats):
        self.stats = stats
        self._stalls_since_resize = 0
        self._window_chunks = 0
        self._window_stalls = 0

    def on_chunk(self, stalled: bool) -> None:
        self._window_chunks += 1
        if stalled:
            self._window_stalls += 1
            self._stalls_since_resize += 1

        if self._stalls_since_resize > SHRINK_AFTER_STALLS:
            self.stats.rows_per_batch = max(self.stats.rows_per_batch - BATCH_STEP, MIN_BATCH_ROWS)
            self._stalls_since_resize = 0
            logger.debug(f"Shrinking COPY batch to {self.stats.rows_per_batch} rows")

        if self._window_chunks >= GROW_WINDOW_CHUNKS:
            if self._window_stalls == 0 and self.stats.rows_per_batch < MAX_BATCH_ROWS:
                self.stats.rows_per_batch = min(self.stats.rows_per_batch + BATCH_STEP, MAX_BATCH_ROWS)
                logger.debug(f"Growing COPY batch to {self.stats.rows_per_batch} rows")
            self._window_chunks = 0
            self._window_stalls = 0


class HeapGuard:
    """
    Sample process RSS every ``HEAP_SAMPLE_INTERVAL`` chunks.

    Above ``warn_mb`` a warning is logged; above ``abort_mb``
    ``HeapLimitExceededError`` is raised. The highest sample is kept in
    ``peak_mb`` for metrics.
    """

    def __init__(
        self,
        warn_mb: Optional[float] = None,
        abort_mb: Optional[float] = None,
        stage: str = "copy",
        sampler: Callable[[], float] = None,
    ):
        self.warn_mb = warn_mb
        self.abort_mb = abort_mb
        self.stage = stage
        self._sampler = sampler or _process_rss_mb
        self.peak_mb = 0.0
        self._chunks = 0

    def sample(self) -> float:
        used = self._sampler()
        self.peak_mb = max(self.peak_mb, used)
        return used

    def on_chunk(self) -> None:
        self._chunks += 1
        if self._chunks % HEAP_SAMPLE_INTERVAL:
            return
        used = self.sample()
        if self.warn_mb is not None and used >= self.warn_mb:
            logger.warning(
                f"Memory above warn threshold during {self.stage}: {used:.1f} MB >= {self.warn_mb} MB",
                extra={"stage": self.stage, "rss_mb": round(used, 2)}
            )
        if self.abort_mb is not None and used >= self.abort_mb:
            raise HeapLimitExceededError(
                f"Heap limit exceeded (failed_heap_guard): {used:.1f} MB >= {self.abort_mb} MB",
                context={"stage": self.stage, "rss_mb": round(used, 2), "chunks_written": self._chunks}
            )


def _process_rss_mb() -> float:
    return psutil.Process().memory_info().rss / (1024 * 1024)


async def stream_chunks(
    chunks: AsyncIterator[bytes],
    sink: CopySink,
    stats: BatchStats,
    sizer: Optional[AdaptiveBatchSizer] = None,
    heap_guard: Optional[HeapGuard] = None,
    is_cancelled: Callable[[], bool] = None,
    drain_timeout: float = None,
) -> None:
    """
    Pump ``chunks`` into ``sink`` honouring backpressure.

    Raises:
        BackpressureTimeoutError: The sink did not drain in time
        HeapLimitExceededError: Memory went over the abort threshold
        JobCancelledError: Cancellation was observed between chunks
    """
    drain_timeout = drain_timeout or settings.ETL_DRAIN_TIMEOUT_SECONDS
    sizer = sizer or AdaptiveBatchSizer(stats)

    try:
        async for chunk in chunks:
            if is_cancelled is not None and is_cancelled():
                raise JobCancelledError("Ingestion cancelled")

            stalled = False
            if not await sink.write(chunk):
                stalled = True
                started = time.perf_counter()
                try:
                    await asyncio.wait_for(sink.drained(), timeout=drain_timeout)
                except asyncio.TimeoutError as e:
                    raise BackpressureTimeoutError(
                        f"Sink did not drain within {drain_timeout}s",
                        context={"chunks_written": stats.chunks_written, "drain_count": stats.drain_count},
                        original_exception=e
                    )
                stats.drain_count += 1
                stats.drain_wait_ms += (time.perf_counter() - started) * 1000

            stats.chunks_written += 1
            sizer.on_chunk(stalled)
            if heap_guard is not None:
                heap_guard.on_chunk()
    finally:
        # Closing the encoder returns its buffer to the pool
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()
