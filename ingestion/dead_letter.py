"""
Dead-letter collection for rejected rows.

Rejected rows are buffered in memory and appended to a single NDJSON file
per job and table once the buffer fills up, and again when the run ends.
"""

import asyncio
import json
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class DeadLetterRecord:
    job_id: str
    row_index: int
    raw: Dict[str, Any]
    reason: str
    timestamp: str


class DeadLetterCollector:
    """
    Buffer rejected rows and append them to
    ``dead-letter-{job_id}-{table}-{ts}.ndjson`` under ``ETL_DEAD_LETTER_DIR``.
    """

    def __init__(
        self,
        job_id: str,
        table: str,
        directory: Optional[str] = None,
        max_buffer: int = None,
    ):
        self.job_id = job_id
        self.table = table
        self.directory = Path(directory or settings.ETL_DEAD_LETTER_DIR)
        self.max_buffer = max_buffer or settings.ETL_DEAD_LETTER_BUFFER
        stamp = int(datetime.utcnow().timestamp() * 1000)
        self.path = self.directory / f"dead-letter-{job_id}-{table}-{stamp}.ndjson"
        self._buffer: List[DeadLetterRecord] = []
        self._flushed = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def total_count(self) -> int:
        return self._flushed + len(self._buffer)

    def add(self, row_index: int, raw: Dict[str, Any], reason: str) -> None:
        self._buffer.append(DeadLetterRecord(
            job_id=self.job_id,
            row_index=row_index,
            raw=dict(raw),
            reason=reason,
            timestamp=datetime.utcnow().isoformat(),
        ))

    def _append(self, records: List[DeadLetterRecord]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            for record in records:
                f.write(json.dumps(asdict(record), ensure_ascii=False, default=str))
                f.write("\n")

    async def _flush_buffer(self) -> None:
        if not self._buffer:
            return
        records, self._buffer = self._buffer, []
        await asyncio.to_thread(self._append, records)
        self._flushed += len(records)

    async def flush_if_over_capacity(self) -> bool:
        if len(self._buffer) >= self.max_buffer:
            await self._flush_buffer()
            logger.debug(f"Dead letter buffer flushed to {self.path} (capacity limit)")
            return True
        return False

    async def flush(self) -> Optional[str]:
        """Write everything still buffered; returns the file path if any row was written."""
        await self._flush_buffer()
        return str(self.path) if self._flushed else None
