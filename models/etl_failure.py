from sqlalchemy import Column, BigInteger, String, DateTime, Text, Index
from datetime import datetime
from models.base import Base


class ETLFailure(Base):
    """
    Durable failure log for ingestion jobs.

    Purpose:
    - Survives process restarts, unlike the in-memory job registry
    - Lets the job detail endpoint show why a job failed
    """
    __tablename__ = "etl_failures"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    job_id = Column(String(128), nullable=True, index=True)
    stage = Column(String(32), nullable=False)  # "copy", "source", "migrate"
    table_name = Column(String(64), nullable=False)
    approx_row = Column(BigInteger, nullable=True)

    error_code = Column(String(64), nullable=False, default="UNKNOWN")
    error_message = Column(Text, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("idx_etl_failures_job_created", "job_id", "created_at"),
    )
