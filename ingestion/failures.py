"""
Durable failure log backed by the ``etl_failures`` table.
"""

from typing import Any, Dict, Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from models.etl_failure import ETLFailure

logger = logging.getLogger(__name__)


class FailureLog:
    """Record and look up job failures."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def record(
        self,
        job_id: Optional[str],
        stage: str,
        table: str,
        approx_row: Optional[int],
        error_code: str,
        error_message: str,
    ) -> None:
        async with self.session_maker() as session:
            session.add(ETLFailure(
                job_id=job_id,
                stage=stage,
                table_name=table,
                approx_row=approx_row,
                error_code=error_code or "UNKNOWN",
                error_message=error_message[:4000],
            ))
            await session.commit()

    async def last_for_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(ETLFailure)
                .where(ETLFailure.job_id == job_id)
                .order_by(ETLFailure.created_at.desc())
                .limit(1)
            )
            failure = result.scalar_one_or_none()
        if failure is None:
            return None
        return {
            "job_id": failure.job_id,
            "stage": failure.stage,
            "table_name": failure.table_name,
            "approx_row": failure.approx_row,
            "error_code": failure.error_code,
            "error_message": failure.error_message,
            "created_at": failure.created_at.isoformat() if failure.created_at else None,
        }
