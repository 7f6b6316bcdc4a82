import argparse
import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from sqlalchemy.ext.asyncio import create_async_engine
from core.config import settings
from core.logging import setup_logging
from models.base import Base
# Import all models to ensure they are registered
from models.checkpoint import ETLCheckpoint
from models.etl_failure import ETLFailure
from models import orders  # noqa: F401

logger = logging.getLogger(__name__)

ENGINE_TABLES = [ETLCheckpoint.__table__, ETLFailure.__table__]


async def init_database(with_orders: bool = False):
    logger.info("Connecting to database...")
    engine = create_async_engine(settings.DATABASE_URL, echo=False)

    # Order tables usually belong to the application schema; create them only on request
    tables = None if with_orders else ENGINE_TABLES

    async with engine.begin() as conn:
        logger.info("Creating tables...")
        await conn.run_sync(lambda sync_conn: Base.metadata.create_all(sync_conn, tables=tables))
        logger.info(f"Tables created successfully: {', '.join(t.name for t in (tables or Base.metadata.sorted_tables))}")

    await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the ingestion engine tables")
    parser.add_argument(
        "--with-orders",
        action="store_true",
        help="Also create the order tables (kunde, firma, lager, valuta, vare, ordre, ordrelinje, ordre_henvisning)",
    )
    args = parser.parse_args()

    setup_logging()
    asyncio.run(init_database(args.with_orders))
