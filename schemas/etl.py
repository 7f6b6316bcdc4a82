"""
Pydantic schemas for ingestion requests and results.

Requests arrive in camelCase (``sourceType``, ``onConflict``...) and are
exposed to Python code in snake_case. Cross-field rules (upsert keys,
source sections, job id requirements) are checked by the runner so that
programmatic callers get the same validation as HTTP callers.
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any, Literal
from models.base import SourceType, ConflictMode


def to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


# ============================================================================
# Source sections
# ============================================================================

class CsvSourceConfig(CamelModel):
    """Delimited file source"""
    file_path: str
    delimiter: Optional[str] = Field(None, description="Auto-detected from the first line when omitted")
    compression: Literal["none", "gzip"] = "none"

    @validator("delimiter")
    def single_character(cls, v):
        if v is not None and len(v) != 1:
            raise ValueError("delimiter must be a single character")
        return v


class JsonSourceConfig(CamelModel):
    """JSON array or newline-delimited JSON file source"""
    file_path: str
    mode: Literal["array", "ndjson"] = "array"
    compression: Literal["none", "gzip"] = "none"


class ApiSourceConfig(CamelModel):
    """Paginated HTTP API source"""
    url: str
    method: Literal["GET", "POST"] = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    timeout_ms: int = Field(20000, gt=0)
    data_path: str = "data"
    next_page_path: str = "next"
    next_page_param: Optional[str] = Field(
        None, description="Send the next-page token as this query parameter instead of following it as a URL"
    )
    max_pages: int = Field(1000, ge=1)
    min_request_interval_ms: int = Field(0, ge=0)
    parallel_pages: int = Field(1, ge=1)

    @validator("method", pre=True)
    def upper_method(cls, v):
        return v.upper() if isinstance(v, str) else v


class GeneratorSourceConfig(CamelModel):
    """Synthetic order data"""
    total_orders: int = Field(1000, ge=1)
    customers: int = Field(100, ge=1)
    lines_per_order: int = Field(5, ge=1)


# ============================================================================
# Streaming request / result
# ============================================================================

class StreamingEtlRequest(CamelModel):
    """One streaming ingestion run"""
    source_type: SourceType
    table: str
    strict_mode: bool = False
    on_conflict: ConflictMode = ConflictMode.NOTHING
    upsert_key_columns: Optional[List[str]] = None
    upsert_update_columns: Optional[List[str]] = None
    source_mapping: Optional[Dict[str, str]] = None

    job_id: Optional[str] = None
    checkpoint: bool = False
    dead_letter: bool = False
    progress_interval: Optional[int] = Field(None, gt=0)

    # Self-termination limits
    max_rows: Optional[int] = Field(None, gt=0)
    max_duration_ms: Optional[int] = Field(None, gt=0)
    max_dead_letters: Optional[int] = Field(None, gt=0)
    max_heap_mb: Optional[int] = Field(None, gt=0)

    csv: Optional[CsvSourceConfig] = None
    json_source: Optional[JsonSourceConfig] = Field(None, alias="json")
    api: Optional[ApiSourceConfig] = None
    generator: Optional[GeneratorSourceConfig] = None

    @validator("table", pre=True)
    def normalize_table(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    class Config:
        json_schema_extra = {
            "example": {
                "sourceType": "csv",
                "table": "ordre",
                "onConflict": "nothing",
                "jobId": "ordre-import-2024-01",
                "checkpoint": True,
                "deadLetter": True,
                "csv": {"filePath": "/data/ordre.csv"}
            }
        }


class StreamingEtlResult(CamelModel):
    """Outcome of a streaming run (also attached to failures as partial counts)"""
    job_id: Optional[str] = None
    table: str
    source_type: SourceType
    status: Literal["completed", "cancelled"] = "completed"
    columns: List[str] = Field(default_factory=list)
    attempted_rows: int = 0
    inserted_rows: int = 0
    rejected_rows: int = 0
    # Rows read after the last commit; their segment was rolled back
    rolled_back_rows: int = 0
    conflict_skipped_rows: int = 0
    dead_letter_count: int = 0
    dead_letter_path: Optional[str] = None
    checkpoint_resumed: bool = False
    duration_ms: int = 0
    rows_per_second: float = 0.0
    peak_memory_mb: Optional[float] = None


# ============================================================================
# Fast bulk path
# ============================================================================

class BulkFastRequest(CamelModel):
    """Synthetic bulk load through the staging tables"""
    total_orders: int = Field(10_000, ge=1)
    customers: int = Field(500, ge=1)
    lines_per_order: int = Field(5, ge=1)
    job_id: Optional[str] = None


class BulkFastResult(CamelModel):
    job_id: Optional[str] = None
    status: Literal["completed", "cancelled"] = "completed"
    orders: int
    order_lines: int
    henvisninger: int
    total_rows: int
    # Rows COPYed into staging; nothing is migrated when a run is cancelled
    staged_rows: int = 0
    duration_ms: int
    rows_per_second: float
    peak_memory_mb: Optional[float] = None
    rows_per_batch: int
    drain_count: int
