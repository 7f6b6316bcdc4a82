"""
PostgreSQL COPY loader.

Rows arrive as encoded text-COPY chunks and are fed to asyncpg's
``copy_to_table`` through ``PostgresCopySink``. Depending on the conflict
mode the chunks go straight into the destination table (``error``) or into a
transaction-scoped temp table that is merged with ``INSERT ... SELECT``
(``nothing`` / ``upsert``).
"""

import asyncio
import contextlib
import uuid
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Deque, List, Optional, Sequence
import logging

import asyncpg

from core.database import raw_connection
from core.exceptions import DatabaseError, InvalidRequestError
from ingestion.loaders.backpressure import (
    AdaptiveBatchSizer, BatchStats, CopySink, HeapGuard, stream_chunks,
)
from models.base import ConflictMode

logger = logging.getLogger(__name__)

# Chunks queued ahead of the COPY before writers are told to wait
HIGH_WATER_CHUNKS = 4


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def status_count(status: Optional[str]) -> int:
    """Row count from a command tag such as ``COPY 12`` or ``INSERT 0 12``."""
    if not status:
        return 0
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


@dataclass
class CopyOptions:
    mode: ConflictMode = ConflictMode.NOTHING
    key_columns: Optional[List[str]] = None
    update_columns: Optional[List[str]] = None


@dataclass
class CopyOutcome:
    rows_copied: int
    rows_inserted: int

    @property
    def conflict_skipped(self) -> int:
        return max(self.rows_copied - self.rows_inserted, 0)


# ============================================================================
# Sink
# ============================================================================

class PostgresCopySink(CopySink):
    """
    Sink backed by ``asyncpg.Connection.copy_to_table``.

    Chunks are queued in memory; ``write`` returns False once
    ``high_water`` chunks are waiting and ``drained()`` resolves when the
    COPY has consumed the queue down to half of that.
    """

    def __init__(self, conn, table: str, columns: Sequence[str], high_water: int = HIGH_WATER_CHUNKS):
        self.conn = conn
        self.table = table
        self.columns = list(columns)
        self.high_water = high_water
        self._chunks: Deque[Optional[bytes]] = deque()
        self._available = asyncio.Event()
        self._drained = asyncio.Event()
        self._drained.set()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self.conn.copy_to_table(
            self.table,
            source=self._source(),
            columns=self.columns,
            format="text",
        ))

    async def _source(self) -> AsyncIterator[bytes]:
        while True:
            while not self._chunks:
                self._available.clear()
                await self._available.wait()
            chunk = self._chunks.popleft()
            if len(self._chunks) <= self.high_water // 2:
                self._drained.set()
            if chunk is None:
                return
            yield chunk

    def _raise_if_failed(self) -> None:
        if self._task is not None and self._task.done() and not self._task.cancelled():
            error = self._task.exception()
            if error is not None:
                raise error

    async def write(self, chunk: bytes) -> bool:
        if self._task is None:
            self.start()
        self._raise_if_failed()
        self._chunks.append(chunk)
        self._available.set()
        if len(self._chunks) >= self.high_water:
            self._drained.clear()
            return False
        return True

    async def drained(self) -> None:
        waiter = asyncio.ensure_future(self._drained.wait())
        try:
            await asyncio.wait({waiter, self._task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        self._raise_if_failed()

    async def close(self) -> int:
        if self._task is None:
            self.start()
        self._chunks.append(None)
        self._available.set()
        return status_count(await self._task)

    async def abort(self) -> None:
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            try:
                await self._task
            except Exception as e:
                logger.debug(f"COPY into {self.table} aborted: {e}")


# ============================================================================
# Loader
# ============================================================================

class PostgresLoader:
    """
    Stream encoded rows into PostgreSQL.

    Each ``copy_segment`` call is one transaction on the connection handed
    in; ``connection()`` opens a dedicated connection per job.
    """

    def __init__(self, bind=None, connect: Callable = None):
        self._connect = connect or (lambda: raw_connection(bind))

    def connection(self):
        return self._connect()

    async def get_table_columns(self, conn, table: str) -> List[str]:
        rows = await conn.fetch(
            """
            SELECT column_name FROM information_schema.columns
            WHERE table_schema = 'public' AND table_name = $1
            ORDER BY ordinal_position
            """,
            table,
        )
        return [row["column_name"] for row in rows]

    async def copy_segment(
        self,
        conn,
        table: str,
        columns: Sequence[str],
        chunks: AsyncIterator[bytes],
        options: CopyOptions,
        stats: BatchStats,
        sizer: Optional[AdaptiveBatchSizer] = None,
        heap_guard: Optional[HeapGuard] = None,
        is_cancelled: Callable[[], bool] = None,
    ) -> CopyOutcome:
        """
        COPY one segment of rows into ``table`` and commit it.

        Raises:
            DatabaseError: The COPY or merge statement failed
            BackpressureTimeoutError, HeapLimitExceededError, JobCancelledError:
                propagated from the streamer; the transaction is rolled back
        """
        columns = list(columns)
        try:
            async with conn.transaction():
                if options.mode == ConflictMode.ERROR:
                    copied = await self.copy_into(conn, table, columns, chunks, stats, sizer, heap_guard, is_cancelled)
                    return CopyOutcome(rows_copied=copied, rows_inserted=copied)

                temp = await self._create_temp_table(conn, table, columns)
                copied = await self.copy_into(conn, temp, columns, chunks, stats, sizer, heap_guard, is_cancelled)
                await self.provision_dimensions(conn, temp, table, columns)
                status = await conn.execute(self._merge_sql(table, temp, columns, options))
                inserted = status_count(status)
        except asyncpg.PostgresError as e:
            raise DatabaseError(
                f"COPY into {table} failed: {e}",
                context={"table_name": table, "operation": "copy", "sqlstate": getattr(e, "sqlstate", None)},
                original_exception=e
            )

        logger.debug(f"Segment committed into {table}: copied={copied} inserted={inserted}")
        return CopyOutcome(rows_copied=copied, rows_inserted=inserted)

    async def copy_into(
        self,
        conn,
        target: str,
        columns: Sequence[str],
        chunks: AsyncIterator[bytes],
        stats: BatchStats,
        sizer: Optional[AdaptiveBatchSizer] = None,
        heap_guard: Optional[HeapGuard] = None,
        is_cancelled: Callable[[], bool] = None,
    ) -> int:
        """COPY ``chunks`` into ``target`` on the current transaction; returns rows copied."""
        sink = PostgresCopySink(conn, target, columns)
        sink.start()
        try:
            await stream_chunks(
                chunks, sink, stats,
                sizer=sizer, heap_guard=heap_guard, is_cancelled=is_cancelled,
            )
        except BaseException:
            await sink.abort()
            raise
        return await sink.close()

    async def _create_temp_table(self, conn, table: str, columns: List[str]) -> str:
        temp = f"tmp_{table}_{uuid.uuid4().hex[:8]}"
        await conn.execute(
            f"CREATE TEMP TABLE {quote_ident(temp)} (LIKE {quote_ident(table)} INCLUDING DEFAULTS) ON COMMIT DROP"
        )
        # LIKE copies NOT NULL; columns we do not load must accept nulls
        for column in await self.get_table_columns(conn, table):
            if column not in columns:
                await conn.execute(
                    f"ALTER TABLE {quote_ident(temp)} ALTER COLUMN {quote_ident(column)} DROP NOT NULL"
                )
        return temp

    def _merge_sql(self, table: str, temp: str, columns: List[str], options: CopyOptions) -> str:
        column_list = ", ".join(quote_ident(c) for c in columns)
        sql = f"INSERT INTO {quote_ident(table)} ({column_list}) SELECT {column_list} FROM {quote_ident(temp)}"

        if options.mode != ConflictMode.UPSERT:
            return sql + " ON CONFLICT DO NOTHING"

        keys = options.key_columns or []
        if not keys:
            raise InvalidRequestError(
                "upsert requires upsertKeyColumns",
                context={"table_name": table}
            )
        missing = [k for k in keys if k not in columns]
        if missing:
            raise InvalidRequestError(
                f"Upsert key columns are not loaded: {', '.join(missing)}",
                context={"table_name": table, "columns": columns}
            )
        updates = [c for c in (options.update_columns or columns) if c in columns and c not in keys]
        conflict = f" ON CONFLICT ({', '.join(quote_ident(k) for k in keys)})"
        if not updates:
            return sql + conflict + " DO NOTHING"
        assignments = ", ".join(f"{quote_ident(c)} = EXCLUDED.{quote_ident(c)}" for c in updates)
        return sql + conflict + f" DO UPDATE SET {assignments}"

    async def provision_dimensions(self, conn, source: str, table: str, columns: Sequence[str]) -> None:
        """Insert missing parent rows referenced by ``source`` (skipped for the parent table itself)."""
        src = quote_ident(source)
        if "kundenr" in columns and table != "kunde":
            await conn.execute(
                f"INSERT INTO kunde (kundenr, kundenavn) SELECT DISTINCT kundenr, 'Auto-generert' "
                f"FROM {src} WHERE kundenr IS NOT NULL ON CONFLICT DO NOTHING"
            )
        if "firmaid" in columns and table != "firma":
            await conn.execute(
                f"INSERT INTO firma (firmaid, firmanavn) SELECT DISTINCT firmaid, 'Firma ' || firmaid "
                f"FROM {src} WHERE firmaid IS NOT NULL ON CONFLICT DO NOTHING"
            )
        if "valutaid" in columns and table != "valuta":
            await conn.execute(
                f"INSERT INTO valuta (valutaid) SELECT DISTINCT valutaid "
                f"FROM {src} WHERE valutaid IS NOT NULL ON CONFLICT DO NOTHING"
            )
        if "varekode" in columns and table != "vare":
            await conn.execute(
                f"INSERT INTO vare (varekode, varenavn) SELECT DISTINCT varekode, 'Produkt ' || varekode "
                f"FROM {src} WHERE varekode IS NOT NULL ON CONFLICT DO NOTHING"
            )
        if "lagernavn" in columns and table != "lager":
            firmaid = "COALESCE(firmaid, 1)" if "firmaid" in columns else "1"
            if "firmaid" not in columns:
                await conn.execute("INSERT INTO firma (firmaid, firmanavn) VALUES (1, 'Firma 1') ON CONFLICT DO NOTHING")
            await conn.execute(
                f"INSERT INTO lager (lagernavn, firmaid) SELECT DISTINCT lagernavn, {firmaid} "
                f"FROM {src} WHERE lagernavn IS NOT NULL ON CONFLICT DO NOTHING"
            )
