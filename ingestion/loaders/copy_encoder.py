"""
PostgreSQL text-format COPY encoding.

Rows are encoded into fixed-capacity ``bytearray`` buffers borrowed from a
process-wide pool and handed out as ``bytes`` chunks, so a long stream never
allocates more than one buffer per concurrent encoder.

Format: fields separated by TAB, rows terminated by LF, null written as
``\\N``, and backslash, TAB, LF and CR escaped with a backslash.
"""

from contextlib import contextmanager
from typing import AsyncIterator, Iterator, List, Optional, Sequence
import logging

from core.config import settings
from ingestion.transformers.normalizer import Value, format_number

logger = logging.getLogger(__name__)

BUFFER_RESERVE = 512

_ESCAPES = str.maketrans({
    "\\": "\\\\",
    "\t": "\\t",
    "\n": "\\n",
    "\r": "\\r",
})


def format_copy_value(value: Value) -> str:
    if value is None:
        return "\\N"
    if isinstance(value, bool):
        return "t" if value else "f"
    if isinstance(value, float):
        return format_number(value)
    return str(value).translate(_ESCAPES)


def format_copy_line(values: Sequence[Value]) -> str:
    return "\t".join(format_copy_value(v) for v in values) + "\n"


class BufferPool:
    """
    Pool of fixed-size encode buffers.

    At most ``max_free`` idle buffers are retained; extra buffers returned
    to a full pool are dropped.
    """

    def __init__(self, buffer_size: int = None, max_free: int = None):
        self.buffer_size = buffer_size or settings.ETL_COPY_BUFFER_SIZE
        self.max_free = max_free or settings.ETL_COPY_BUFFER_POOL_SIZE
        self._free: List[bytearray] = []
        self.allocated = 0

    @property
    def free_count(self) -> int:
        return len(self._free)

    def take(self) -> bytearray:
        if self._free:
            return self._free.pop()
        self.allocated += 1
        return bytearray(self.buffer_size)

    def give_back(self, buf: bytearray) -> None:
        if len(buf) == self.buffer_size and len(self._free) < self.max_free:
            self._free.append(buf)

    @contextmanager
    def borrow(self) -> Iterator[bytearray]:
        buf = self.take()
        try:
            yield buf
        finally:
            self.give_back(buf)


default_pool = BufferPool()


async def encode_chunks(
    rows: AsyncIterator[Sequence[Value]],
    stats,
    pool: Optional[BufferPool] = None,
) -> AsyncIterator[bytes]:
    """
    Encode rows into COPY chunks.

    A chunk is emitted when ``stats.rows_per_batch`` rows are buffered or
    fewer than ``BUFFER_RESERVE`` bytes remain. A row larger than the buffer
    is emitted as its own chunk. ``stats.rows_per_batch`` is re-read after
    every chunk so adaptive sizing takes effect immediately.
    """
    pool = pool or default_pool
    with pool.borrow() as buf:
        capacity = len(buf)
        view = memoryview(buf)
        used = 0
        rows_in_chunk = 0
        try:
            async for values in rows:
                line = format_copy_line(values).encode("utf-8")
                size = len(line)

                if size > capacity:
                    if used:
                        yield bytes(view[:used])
                        used = rows_in_chunk = 0
                    yield line
                    continue

                if used + size > capacity:
                    yield bytes(view[:used])
                    used = rows_in_chunk = 0

                view[used:used + size] = line
                used += size
                rows_in_chunk += 1

                if rows_in_chunk >= stats.rows_per_batch or capacity - used < BUFFER_RESERVE:
                    yield bytes(view[:used])
                    used = rows_in_chunk = 0

            if used:
                yield bytes(view[:used])
        finally:
            view.release()
