"""
In-memory metrics for recent ingestion runs.
"""

import math
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional
import logging

from core.config import settings

logger = logging.getLogger(__name__)

# Upper bounds (ms) of the duration histogram buckets
DURATION_BUCKETS = (1000, 5000, 30_000, 120_000, math.inf)


def percentile(sorted_values: List[float], p: float) -> float:
    """Nearest-rank percentile; 0 for an empty list."""
    if not sorted_values:
        return 0
    index = math.ceil((p / 100) * len(sorted_values)) - 1
    return sorted_values[max(0, index)]


class MetricsRecorder:
    """
    Keep the most recent streaming and fast bulk runs.

    Recording never raises: a malformed run is logged and dropped.
    """

    def __init__(self, max_runs: int = None, max_bulk_runs: int = None):
        self._runs: Deque[Dict[str, Any]] = deque(maxlen=max_runs or settings.ETL_MAX_RECENT_RUNS)
        self._bulk_runs: Deque[Dict[str, Any]] = deque(maxlen=max_bulk_runs or settings.ETL_MAX_BULK_RUNS)

    def record_run(
        self,
        job_id: Optional[str],
        table: str,
        status: str,
        duration_ms: float,
        inserted_rows: int,
        rejected_rows: int = 0,
        rows_per_second: float = 0.0,
        peak_memory_mb: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> None:
        try:
            self._runs.appendleft({
                "job_id": job_id,
                "table": table,
                "status": status,
                "reason": reason,
                "duration_ms": int(duration_ms),
                "inserted_rows": int(inserted_rows),
                "rejected_rows": int(rejected_rows),
                "rows_per_second": float(rows_per_second),
                "peak_memory_mb": round(peak_memory_mb, 2) if peak_memory_mb else None,
                "finished_at": datetime.utcnow().isoformat(),
            })
        except Exception:
            logger.exception("Failed to record run metrics")

    def record_bulk_run(
        self,
        job_id: Optional[str],
        total_rows: int,
        duration_ms: float,
        rows_per_second: float,
        peak_memory_mb: Optional[float] = None,
        status: str = "completed",
    ) -> None:
        try:
            self._bulk_runs.appendleft({
                "job_id": job_id,
                "status": status,
                "total_rows": int(total_rows),
                "duration_ms": int(duration_ms),
                "rows_per_second": float(rows_per_second),
                "peak_memory_mb": round(peak_memory_mb, 2) if peak_memory_mb else None,
                "finished_at": datetime.utcnow().isoformat(),
            })
        except Exception:
            logger.exception("Failed to record bulk run metrics")

    def last_run(self) -> Optional[Dict[str, Any]]:
        return self._runs[0] if self._runs else None

    def last_run_for_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return next((run for run in self._runs if run["job_id"] == job_id), None)

    def recent_runs(self, job_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [run for run in self._runs if job_id is None or run["job_id"] == job_id]

    def recent_bulk_runs(self, job_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [run for run in self._bulk_runs if job_id is None or run["job_id"] == job_id]

    def summary(self) -> Dict[str, Any]:
        runs = list(self._runs)
        total = len(runs)
        durations = sorted(run["duration_ms"] for run in runs)

        histogram = []
        low = 0
        for high in DURATION_BUCKETS:
            histogram.append(sum(1 for d in durations if low <= d < high))
            low = high

        return {
            "total_runs": total,
            "total_inserted_rows": sum(run["inserted_rows"] for run in runs),
            "total_rejected_rows": sum(run["rejected_rows"] for run in runs),
            "avg_rows_per_second": round(sum(run["rows_per_second"] for run in runs) / total, 2) if total else 0,
            "duration_percentiles": {
                "p50": percentile(durations, 50),
                "p95": percentile(durations, 95),
                "p99": percentile(durations, 99),
            },
            "duration_histogram": histogram,
            "last_run": self.last_run(),
            "last_bulk_run": self._bulk_runs[0] if self._bulk_runs else None,
        }

    def clear(self) -> None:
        self._runs.clear()
        self._bulk_runs.clear()


metrics = MetricsRecorder()
