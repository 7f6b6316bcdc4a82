"""
Unit tests for run metrics and dead-letter collection
"""

import json

import pytest

from ingestion.dead_letter import DeadLetterCollector
from ingestion.metrics import MetricsRecorder, percentile


class TestMetricsRecorder:
    """Test in-memory run metrics"""

    def test_percentile(self):
        assert percentile([], 50) == 0
        assert percentile([1, 2, 3, 4], 50) == 2
        assert percentile([1, 2, 3, 4], 99) == 4

    def test_summary(self, recorder):
        recorder.record_run("a", "ordre", "completed", 500, 10, 1, 20.0)
        recorder.record_run("b", "ordre", "failed", 6000, 5, 0, 1.0, reason="row-limit-exceeded")

        summary = recorder.summary()

        assert summary["total_runs"] == 2
        assert summary["total_inserted_rows"] == 15
        assert summary["total_rejected_rows"] == 1
        assert summary["avg_rows_per_second"] == 10.5
        assert summary["duration_histogram"] == [1, 0, 1, 0, 0]
        assert summary["last_run"]["job_id"] == "b"

    def test_recent_runs_are_bounded(self):
        recorder = MetricsRecorder(max_runs=2)
        for i in range(3):
            recorder.record_run(f"job-{i}", "ordre", "completed", 1, 1)

        assert [run["job_id"] for run in recorder.recent_runs()] == ["job-2", "job-1"]

    def test_per_job_queries(self, recorder):
        recorder.record_run("a", "ordre", "completed", 1, 1)
        recorder.record_run("b", "ordre", "completed", 1, 2)
        recorder.record_run("a", "ordre", "cancelled", 1, 3)
        recorder.record_bulk_run("bulk", 100, 10, 10000.0)

        assert recorder.last_run_for_job("a")["status"] == "cancelled"
        assert len(recorder.recent_runs("a")) == 2
        assert recorder.recent_bulk_runs("bulk")[0]["total_rows"] == 100
        assert recorder.summary()["last_bulk_run"]["job_id"] == "bulk"

    def test_recording_never_raises(self, recorder):
        recorder.record_run("a", "ordre", "completed", "not-a-number", 1)

        assert recorder.recent_runs() == []

    def test_clear(self, recorder):
        recorder.record_run("a", "ordre", "completed", 1, 1)
        recorder.clear()

        assert recorder.summary()["total_runs"] == 0


class TestDeadLetterCollector:
    """Test buffered NDJSON dead letters"""

    @pytest.mark.asyncio
    async def test_flush_writes_ndjson(self, tmp_path):
        collector = DeadLetterCollector("job-1", "ordre", str(tmp_path))
        collector.add(1, {"ordrenr": ""}, "missing ordrenr")

        path = await collector.flush()

        assert path == str(collector.path)
        assert collector.path.name.startswith("dead-letter-job-1-ordre-")
        lines = collector.path.read_text(encoding="utf-8").splitlines()
        record = json.loads(lines[0])
        assert record["row_index"] == 1
        assert record["reason"] == "missing ordrenr"
        assert record["raw"] == {"ordrenr": ""}

    @pytest.mark.asyncio
    async def test_flush_when_buffer_is_full(self, tmp_path):
        collector = DeadLetterCollector("job-1", "ordre", str(tmp_path), max_buffer=2)

        collector.add(0, {}, "missing ordrenr")
        assert await collector.flush_if_over_capacity() is False
        collector.add(1, {}, "missing ordrenr")
        assert await collector.flush_if_over_capacity() is True

        assert collector.buffered == 0
        assert collector.total_count == 2
        assert len(collector.path.read_text(encoding="utf-8").splitlines()) == 2

    @pytest.mark.asyncio
    async def test_nothing_rejected_means_no_file(self, tmp_path):
        collector = DeadLetterCollector("job-1", "ordre", str(tmp_path))

        assert await collector.flush() is None
        assert not collector.path.exists()
