"""
Staging tables for the fast bulk path.

Synthetic rows are COPYed into ``UNLOGGED`` staging tables and then moved
into the final tables in a single transaction, guarded by a process-wide
write lock. Secondary indexes are dropped before the move and rebuilt
concurrently afterwards.
"""

import asyncio
from typing import Dict, Tuple
import logging

from core.config import settings
from ingestion.extractors.generator import FIRMA_COUNT, LAGERNAVN, PRODUCT_COUNT
from ingestion.loaders.postgres_loader import status_count
from ingestion.tables import (
    HENVISNING_COLUMNS, ORDRE, ORDRE_COLUMNS, ORDRE_HENVISNING,
    ORDRELINJE, ORDRELINJE_COLUMNS, TableSpec,
)

logger = logging.getLogger(__name__)

# One staging-to-final migration at a time per process
WRITE_LOCK = asyncio.Lock()

# (final table spec, staging table, column order)
STAGING_TABLES: Tuple[Tuple[TableSpec, str, Tuple[str, ...]], ...] = (
    (ORDRE, "staging_ordre", ORDRE_COLUMNS),
    (ORDRELINJE, "staging_ordrelinje", ORDRELINJE_COLUMNS),
    (ORDRE_HENVISNING, "staging_ordre_henvisning", HENVISNING_COLUMNS),
)

BULK_INDEXES = (
    ("idx_ordrelinje_ordrenr", "ordrelinje", "ordrenr"),
    ("idx_ordrelinje_varekode", "ordrelinje", "varekode"),
    ("idx_ordre_kundenr", "ordre", "kundenr"),
    ("idx_ordre_dato", "ordre", "dato"),
)


class StagingMigrator:
    """
    Staging lifecycle on one asyncpg connection.

    Usage:
        migrator = StagingMigrator(conn)
        await migrator.configure_session()
        await migrator.prepare()
        await migrator.ensure_dimensions(customers)
        ... COPY into staging_* ...
        counts = await migrator.migrate()
        await migrator.rebuild_indexes()
    """

    def __init__(self, conn, lock: asyncio.Lock = None):
        self.conn = conn
        self.lock = lock or WRITE_LOCK

    async def configure_session(self, work_mem: str = None, maintenance_work_mem: str = None) -> None:
        await self.conn.execute(f"SET work_mem = '{work_mem or settings.ETL_WORK_MEM}'")
        await self.conn.execute(
            f"SET maintenance_work_mem = '{maintenance_work_mem or settings.ETL_MAINTENANCE_WORK_MEM}'"
        )

    async def prepare(self) -> None:
        """Create the staging tables if needed, disable autovacuum on them and empty them."""
        for spec, staging, _ in STAGING_TABLES:
            await self.conn.execute(
                f"CREATE UNLOGGED TABLE IF NOT EXISTS {staging} "
                f"(LIKE public.{spec.name} INCLUDING DEFAULTS EXCLUDING CONSTRAINTS)"
            )
            await self.conn.execute(f"ALTER TABLE {staging} SET (autovacuum_enabled = false)")
        await self._truncate()

    async def ensure_dimensions(self, customers: int) -> None:
        """Parent rows referenced by the synthetic generator."""
        await self.conn.execute(
            "INSERT INTO firma (firmaid, firmanavn) "
            "SELECT g, 'Firma ' || g FROM generate_series(1, $1::int) g ON CONFLICT DO NOTHING",
            FIRMA_COUNT,
        )
        await self.conn.execute(
            "INSERT INTO lager (lagernavn, firmaid) "
            "SELECT $1::text, g FROM generate_series(1, $2::int) g ON CONFLICT DO NOTHING",
            LAGERNAVN, FIRMA_COUNT,
        )
        await self.conn.execute("INSERT INTO valuta (valutaid) VALUES ('NOK') ON CONFLICT DO NOTHING")
        await self.conn.execute(
            "INSERT INTO kunde (kundenr, kundenavn) "
            "SELECT 'K' || lpad(g::text, 6, '0'), 'Kunde ' || g "
            "FROM generate_series(1, $1::int) g ON CONFLICT DO NOTHING",
            customers,
        )
        await self.conn.execute(
            "INSERT INTO vare (varekode, varenavn) "
            "SELECT 'V' || lpad(g::text, 5, '0'), 'Produkt ' || g "
            "FROM generate_series(1, $1::int) g ON CONFLICT DO NOTHING",
            PRODUCT_COUNT,
        )

    async def drop_indexes(self) -> None:
        for name, _, _ in BULK_INDEXES:
            await self.conn.execute(f"DROP INDEX IF EXISTS {name}")

    async def migrate(self) -> Dict[str, int]:
        """
        Move staged rows into the final tables.

        Holds the write lock for the whole transaction. Index drops and the
        staging truncate run inside the same transaction, so a failed
        migration leaves the indexes in place.

        Returns:
            Rows inserted per final table
        """
        counts: Dict[str, int] = {}
        async with self.lock:
            async with self.conn.transaction():
                await self.drop_indexes()
                for spec, staging, columns in STAGING_TABLES:
                    column_list = ", ".join(columns)
                    status = await self.conn.execute(
                        f"INSERT INTO {spec.name} ({column_list}) "
                        f"SELECT {column_list} FROM {staging} "
                        f"ON CONFLICT ({', '.join(spec.conflict_key)}) DO NOTHING"
                    )
                    counts[spec.name] = status_count(status)
                await self._truncate()
        logger.info(f"Staging migrated: {counts}")
        return counts

    async def rebuild_indexes(self) -> None:
        """Must run outside a transaction block."""
        for name, table, column in BULK_INDEXES:
            await self.conn.execute(f"CREATE INDEX CONCURRENTLY IF NOT EXISTS {name} ON {table}({column})")

    async def _truncate(self) -> None:
        await self.conn.execute(
            "TRUNCATE TABLE " + ", ".join(staging for _, staging, _ in STAGING_TABLES)
        )
