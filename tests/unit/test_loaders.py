"""
Unit tests for COPY encoding, backpressure and the Postgres loader
"""

import asyncio

import asyncpg
import pytest
from unittest.mock import AsyncMock, MagicMock

from core.exceptions import (
    BackpressureTimeoutError, DatabaseError, HeapLimitExceededError, InvalidRequestError, JobCancelledError,
)
from ingestion.loaders.backpressure import (
    HEAP_SAMPLE_INTERVAL, MAX_BATCH_ROWS, AdaptiveBatchSizer, BatchStats, HeapGuard, stream_chunks,
)
from ingestion.loaders.copy_encoder import BufferPool, encode_chunks, format_copy_line, format_copy_value
from ingestion.loaders.postgres_loader import (
    CopyOptions, PostgresCopySink, PostgresLoader, quote_ident, status_count,
)
from models.base import ConflictMode


async def agen(items):
    for item in items:
        yield item


async def collect(aiter):
    return [item async for item in aiter]


COPY_UNESCAPES = {"t": "\t", "n": "\n", "r": "\r", "\\": "\\"}


def parse_copy_text(data: bytes):
    """Minimal reader for PostgreSQL text-format COPY data."""
    rows = []
    for line in data.decode("utf-8").split("\n")[:-1]:
        row = []
        for field in line.split("\t"):
            if field == "\\N":
                row.append(None)
                continue
            out, i = [], 0
            while i < len(field):
                if field[i] == "\\":
                    out.append(COPY_UNESCAPES.get(field[i + 1], field[i + 1]))
                    i += 2
                else:
                    out.append(field[i])
                    i += 1
            row.append("".join(out))
        rows.append(row)
    return rows


class TestCopyEncoder:
    """Test text-format COPY encoding"""

    def test_format_values(self):
        assert format_copy_value(None) == "\\N"
        assert format_copy_value("a\tb\\c\nd\re") == "a\\tb\\\\c\\nd\\re"
        assert format_copy_value(True) == "t"
        assert format_copy_value(1.0) == "1"
        assert format_copy_value(2.5) == "2.5"
        assert format_copy_value(7) == "7"

    def test_format_line(self):
        assert format_copy_line([1, None, "x"]) == "1\t\\N\tx\n"

    @pytest.mark.asyncio
    async def test_encoded_rows_read_back_unchanged(self):
        rows = [
            ["plain", None, "tab\there"],
            ["new\nline", "cr\rreturn", "back\\slash"],
            ["\\N is text", "", "trailing\\"],
            [None, None, "\r\n\t\\"],
        ]

        chunks = await collect(encode_chunks(agen(rows), BatchStats(rows_per_batch=3)))

        assert len(chunks) == 2
        assert parse_copy_text(b"".join(chunks)) == rows

    @pytest.mark.asyncio
    async def test_chunks_follow_rows_per_batch(self):
        stats = BatchStats(rows_per_batch=2)
        pool = BufferPool(buffer_size=4096, max_free=1)

        chunks = await collect(encode_chunks(agen([[i] for i in range(5)]), stats, pool))

        assert chunks == [b"0\n1\n", b"2\n3\n", b"4\n"]
        assert pool.free_count == 1
        assert pool.allocated == 1

    @pytest.mark.asyncio
    async def test_oversized_row_is_its_own_chunk(self):
        stats = BatchStats(rows_per_batch=1000)
        pool = BufferPool(buffer_size=600, max_free=1)
        big = "x" * 1000

        chunks = await collect(encode_chunks(agen([["a"], [big], ["b"]]), stats, pool))

        assert chunks == [b"a\n", (big + "\n").encode(), b"b\n"]

    @pytest.mark.asyncio
    async def test_buffer_reused_between_encoders(self):
        stats = BatchStats()
        pool = BufferPool(buffer_size=4096, max_free=2)

        await collect(encode_chunks(agen([["a"]]), stats, pool))
        await collect(encode_chunks(agen([["b"]]), stats, pool))

        assert pool.allocated == 1


class TestBackpressure:
    """Test batch sizing, drains and the heap guard"""

    def test_batch_grows_after_clean_window(self):
        stats = BatchStats()
        sizer = AdaptiveBatchSizer(stats)

        for _ in range(5):
            sizer.on_chunk(stalled=False)

        assert stats.rows_per_batch == 2000

    def test_batch_is_capped(self):
        stats = BatchStats(rows_per_batch=MAX_BATCH_ROWS)
        sizer = AdaptiveBatchSizer(stats)

        for _ in range(10):
            sizer.on_chunk(stalled=False)

        assert stats.rows_per_batch == MAX_BATCH_ROWS

    def test_batch_shrinks_after_repeated_stalls(self):
        stats = BatchStats(rows_per_batch=5000)
        sizer = AdaptiveBatchSizer(stats)

        for _ in range(11):
            sizer.on_chunk(stalled=True)

        assert stats.rows_per_batch == 4000

    @pytest.mark.asyncio
    async def test_stream_waits_for_drain(self, sink_factory):
        sink = sink_factory(stall_every=2)
        stats = BatchStats()

        await stream_chunks(agen([b"1\n", b"2\n", b"3\n", b"4\n"]), sink, stats)

        assert sink.lines == ["1", "2", "3", "4"]
        assert sink.drain_calls == 2
        assert stats.drain_count == 2
        assert stats.chunks_written == 4

    @pytest.mark.asyncio
    async def test_stream_stops_when_cancelled(self, sink_factory):
        closed = []

        async def chunks():
            try:
                yield b"1\n"
                yield b"2\n"
            finally:
                closed.append(True)

        with pytest.raises(JobCancelledError):
            await stream_chunks(chunks(), sink_factory(), BatchStats(), is_cancelled=lambda: True)

        assert closed == [True]

    @pytest.mark.asyncio
    async def test_drain_timeout(self, sink_factory):
        sink = sink_factory(stall_every=1)
        never = asyncio.Event()
        sink.drained = never.wait

        with pytest.raises(BackpressureTimeoutError) as exc_info:
            await stream_chunks(agen([b"1\n"]), sink, BatchStats(), drain_timeout=0.01)

        assert exc_info.value.reason == "backpressure-timeout"

    def test_heap_guard_aborts(self):
        guard = HeapGuard(warn_mb=10, abort_mb=50, sampler=lambda: 100.0)

        for _ in range(HEAP_SAMPLE_INTERVAL - 1):
            guard.on_chunk()
        assert guard.peak_mb == 0.0

        with pytest.raises(HeapLimitExceededError) as exc_info:
            guard.on_chunk()

        assert exc_info.value.reason == "heap-limit-exceeded"
        assert guard.peak_mb == 100.0

    def test_heap_guard_warns(self, caplog):
        guard = HeapGuard(warn_mb=10, sampler=lambda: 20.0)

        for _ in range(HEAP_SAMPLE_INTERVAL):
            guard.on_chunk()

        assert "warn threshold" in caplog.text


class FakeCopyConnection:
    """asyncpg-like connection whose ``copy_to_table`` drains the source"""

    def __init__(self, fail: Exception = None):
        self.received = []
        self.fail = fail

    async def copy_to_table(self, table, source, columns, format):
        async for chunk in source:
            self.received.append(chunk)
        if self.fail is not None:
            raise self.fail
        rows = b"".join(self.received).count(b"\n")
        return f"COPY {rows}"


class TestPostgresLoader:
    """Test the COPY sink and the merge SQL"""

    def test_helpers(self):
        assert quote_ident('we"ird') == '"we""ird"'
        assert status_count("INSERT 0 12") == 12
        assert status_count("COPY 3") == 3
        assert status_count(None) == 0

    @pytest.mark.asyncio
    async def test_sink_copies_all_chunks(self):
        conn = FakeCopyConnection()
        sink = PostgresCopySink(conn, "ordre", ["ordrenr"], high_water=2)
        stats = BatchStats()

        await stream_chunks(agen([b"1\n", b"2\n", b"3\n"]), sink, stats)
        copied = await sink.close()

        assert copied == 3
        assert conn.received == [b"1\n", b"2\n", b"3\n"]

    @pytest.mark.asyncio
    async def test_sink_surfaces_copy_failure(self):
        conn = FakeCopyConnection(fail=RuntimeError("bad row"))
        sink = PostgresCopySink(conn, "ordre", ["ordrenr"])
        await sink.write(b"1\n")

        with pytest.raises(RuntimeError):
            await sink.close()

    def test_merge_sql_nothing(self):
        sql = PostgresLoader()._merge_sql("ordre", "tmp", ["ordrenr", "sum"], CopyOptions())

        assert sql == (
            'INSERT INTO "ordre" ("ordrenr", "sum") SELECT "ordrenr", "sum" FROM "tmp" ON CONFLICT DO NOTHING'
        )

    def test_merge_sql_upsert(self):
        options = CopyOptions(mode=ConflictMode.UPSERT, key_columns=["ordrenr"])

        sql = PostgresLoader()._merge_sql("ordre", "tmp", ["ordrenr", "sum"], options)

        assert sql.endswith('ON CONFLICT ("ordrenr") DO UPDATE SET "sum" = EXCLUDED."sum"')

    def test_merge_sql_upsert_without_update_columns(self):
        options = CopyOptions(mode=ConflictMode.UPSERT, key_columns=["ordrenr"])

        sql = PostgresLoader()._merge_sql("ordre", "tmp", ["ordrenr"], options)

        assert sql.endswith('ON CONFLICT ("ordrenr") DO NOTHING')

    def test_merge_sql_rejects_unloaded_key(self):
        options = CopyOptions(mode=ConflictMode.UPSERT, key_columns=["kundenr"])

        with pytest.raises(InvalidRequestError):
            PostgresLoader()._merge_sql("ordre", "tmp", ["ordrenr"], options)

    @pytest.mark.asyncio
    async def test_get_table_columns(self):
        conn = MagicMock()
        conn.fetch = AsyncMock(return_value=[{"column_name": "ordrenr"}, {"column_name": "sum"}])

        columns = await PostgresLoader().get_table_columns(conn, "ordre")

        assert columns == ["ordrenr", "sum"]
        assert conn.fetch.await_args.args[1] == "ordre"

    @pytest.mark.asyncio
    async def test_copy_segment_wraps_database_errors(self):
        conn = MagicMock()
        conn.transaction.return_value.__aenter__ = AsyncMock(return_value=None)
        conn.transaction.return_value.__aexit__ = AsyncMock(return_value=False)
        conn.fetch = AsyncMock(return_value=[{"column_name": "ordrenr"}])
        conn.execute = AsyncMock(side_effect=asyncpg.PostgresError("relation does not exist"))

        with pytest.raises(DatabaseError) as exc_info:
            await PostgresLoader().copy_segment(
                conn, "ordre", ["ordrenr"], agen([b"1\n"]), CopyOptions(), BatchStats()
            )

        assert exc_info.value.context["table_name"] == "ordre"
