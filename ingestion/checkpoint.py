"""
Checkpoint persistence for resumable jobs.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import CheckpointError
from ingestion.transformers.column_planner import ColumnPlanItem
from models.base import SourceType
from models.checkpoint import ETLCheckpoint

logger = logging.getLogger(__name__)


@dataclass
class CheckpointState:
    job_id: str
    table: str
    source_type: SourceType
    attempted_rows: int = 0
    inserted_rows: int = 0
    rejected_rows: int = 0
    resume_state: Dict[str, Any] = field(default_factory=dict)
    column_plan: List[ColumnPlanItem] = field(default_factory=list)
    updated_at: Optional[datetime] = None


class CheckpointStore:
    """
    Load, save and delete checkpoints in ``etl_checkpoints``.

    ``save`` is an upsert keyed by job id, so the row always holds the
    position after the most recently committed segment.
    """

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def load(self, job_id: str) -> Optional[CheckpointState]:
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(ETLCheckpoint).where(ETLCheckpoint.job_id == job_id)
                )
                row = result.scalar_one_or_none()
        except Exception as e:
            raise CheckpointError(
                "Failed to load checkpoint",
                context={"job_id": job_id, "operation": "load"},
                original_exception=e
            )
        if row is None:
            return None
        return CheckpointState(
            job_id=row.job_id,
            table=row.table_name,
            source_type=row.source_type,
            attempted_rows=row.attempted_rows or 0,
            inserted_rows=row.inserted_rows or 0,
            rejected_rows=row.rejected_rows or 0,
            resume_state=dict(row.resume_state or {}),
            column_plan=[ColumnPlanItem(*item) for item in (row.column_plan or [])],
            updated_at=row.updated_at,
        )

    async def save(self, state: CheckpointState) -> None:
        now = datetime.utcnow()
        values = {
            "job_id": state.job_id,
            "table_name": state.table,
            "source_type": state.source_type,
            "attempted_rows": state.attempted_rows,
            "inserted_rows": state.inserted_rows,
            "rejected_rows": state.rejected_rows,
            "resume_state": state.resume_state,
            "column_plan": [list(item) for item in state.column_plan],
            "updated_at": now,
        }
        stmt = insert(ETLCheckpoint).values(created_at=now, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["job_id"],
            set_={key: stmt.excluded[key] for key in values if key != "job_id"},
        )
        try:
            async with self.session_maker() as session:
                await session.execute(stmt)
                await session.commit()
        except Exception as e:
            raise CheckpointError(
                "Failed to save checkpoint",
                context={"job_id": state.job_id, "operation": "save", "attempted_rows": state.attempted_rows},
                original_exception=e
            )
        logger.debug(f"Checkpoint saved for {state.job_id} at {state.attempted_rows} rows")

    async def delete(self, job_id: str) -> None:
        try:
            async with self.session_maker() as session:
                await session.execute(delete(ETLCheckpoint).where(ETLCheckpoint.job_id == job_id))
                await session.commit()
        except Exception as e:
            raise CheckpointError(
                "Failed to delete checkpoint",
                context={"job_id": job_id, "operation": "delete"},
                original_exception=e
            )
