"""
Database engine and session management with SQLAlchemy async.

COPY and staging statements need the asyncpg connection underneath a
SQLAlchemy connection; ``raw_connection()`` hands it out.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker, AsyncEngine
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    poolclass=NullPool,
    future=True
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False
)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Get database session"""
    async with async_session_maker() as session:
        yield session


@asynccontextmanager
async def raw_connection(bind: AsyncEngine = None):
    """
    Yield the asyncpg driver connection of a fresh engine connection.

    Each ingestion job gets its own connection; it is released when the
    context exits.
    """
    bind = bind or engine
    async with bind.connect() as conn:
        fairy = await conn.get_raw_connection()
        yield fairy.driver_connection
