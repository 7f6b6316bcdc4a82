from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class SourceType(str, enum.Enum):
    """Streaming source kinds"""
    CSV = "csv"
    JSON = "json"
    API = "api"
    GENERATOR = "generator"


class JobStatus(str, enum.Enum):
    """Ingestion job lifecycle"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class ConflictMode(str, enum.Enum):
    """What to do when a streamed row hits an existing key"""
    NOTHING = "nothing"
    ERROR = "error"
    UPSERT = "upsert"
