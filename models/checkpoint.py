from sqlalchemy import Column, Integer, String, Enum, DateTime, BigInteger
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
from models.base import Base, SourceType


class ETLCheckpoint(Base):
    """
    Resume position of a checkpointed ingestion job.

    Purpose:
    - Resume a cancelled or failed job without re-processing committed rows
    - Restore the column plan the job started with

    Design:
    - One row per job id, overwritten after every committed segment
    - resume_state is source specific: {"skip_rows": n} for file and
      generator sources, {"next_url": u} or {"page_url": u, "skip_rows": k}
      for API sources
    - Deleted when the job completes
    """
    __tablename__ = "etl_checkpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)

    job_id = Column(String(128), nullable=False, unique=True, index=True)
    table_name = Column(String(64), nullable=False)
    source_type = Column(Enum(SourceType), nullable=False)

    # Counts as of the last committed segment
    attempted_rows = Column(BigInteger, nullable=False, default=0)
    inserted_rows = Column(BigInteger, nullable=False, default=0)
    rejected_rows = Column(BigInteger, nullable=False, default=0)

    resume_state = Column(JSONB, nullable=True)
    column_plan = Column(JSONB, nullable=True)  # [[source_key, db_column], ...]

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
