"""
Unit tests for scheduled ingestion
"""

import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from core.exceptions import InvalidRequestError, ResourceLimitError
from ingestion.scheduler import ETLScheduler, ScheduleEntry, load_schedule_file

CSV_REQUEST = {"sourceType": "csv", "table": "ordre", "csv": {"filePath": "/data/ordre.csv"}}


@pytest.fixture
def schedule_file(tmp_path):
    def _write(entries) -> str:
        path = tmp_path / "schedules.json"
        path.write_text(json.dumps(entries), encoding="utf-8")
        return str(path)

    return _write


class TestScheduleEntry:
    """Test schedule entries"""

    def test_requires_exactly_one_trigger(self):
        with pytest.raises(InvalidRequestError):
            ScheduleEntry("nightly", CSV_REQUEST)
        with pytest.raises(InvalidRequestError):
            ScheduleEntry("nightly", CSV_REQUEST, interval_minutes=5, cron="0 2 * * *")

    def test_build_request_uses_fresh_job_ids(self):
        entry = ScheduleEntry("nightly", CSV_REQUEST, cron="0 2 * * *")

        first = entry.build_request()
        second = entry.build_request()

        assert first.job_id.startswith("nightly-")
        assert first.job_id != second.job_id
        assert "jobId" not in entry.request

    def test_describe(self):
        entry = ScheduleEntry("hourly", CSV_REQUEST, interval_minutes=60)

        info = entry.describe()

        assert info["intervalMinutes"] == 60
        assert info["cron"] is None
        assert info["request"]["table"] == "ordre"


class TestScheduleFile:
    """Test schedule file parsing"""

    def test_load(self, schedule_file):
        path = schedule_file([
            {"id": "hourly", "intervalMinutes": 60, "request": CSV_REQUEST},
            {"id": "nightly", "cron": "0 2 * * *", "request": CSV_REQUEST},
        ])

        entries = load_schedule_file(path)

        assert [e.schedule_id for e in entries] == ["hourly", "nightly"]
        assert entries[1].cron == "0 2 * * *"

    def test_missing_file(self, tmp_path):
        with pytest.raises(InvalidRequestError):
            load_schedule_file(str(tmp_path / "nope.json"))

    def test_not_a_list(self, schedule_file):
        with pytest.raises(InvalidRequestError):
            load_schedule_file(schedule_file({"id": "x"}))

    def test_invalid_request(self, schedule_file):
        path = schedule_file([
            {"id": "broken", "intervalMinutes": 5, "request": {"sourceType": "ftp", "table": "ordre"}},
        ])

        with pytest.raises(InvalidRequestError) as exc_info:
            load_schedule_file(path)

        assert exc_info.value.context["schedule_id"] == "broken"


class TestETLScheduler:
    """Test the APScheduler wrapper"""

    @pytest.mark.asyncio
    async def test_run_scheduled_job(self):
        runner = MagicMock()
        runner.run = AsyncMock(return_value=MagicMock(status="completed", inserted_rows=3, rejected_rows=0))
        scheduler = ETLScheduler(runner, schedule_file="")
        entry = ScheduleEntry("hourly", CSV_REQUEST, interval_minutes=60)

        await scheduler.run_scheduled_job(entry)

        request = runner.run.await_args.args[0]
        assert request.job_id.startswith("hourly-")
        assert request.table == "ordre"

    @pytest.mark.asyncio
    async def test_failures_are_logged_not_raised(self):
        runner = MagicMock()
        runner.run = AsyncMock(side_effect=ResourceLimitError("too many", ResourceLimitError.ROW_LIMIT))
        scheduler = ETLScheduler(runner, schedule_file="")

        await scheduler.run_scheduled_job(ScheduleEntry("hourly", CSV_REQUEST, interval_minutes=60))

        runner.run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_describe_stop(self, schedule_file):
        path = schedule_file([{"id": "hourly", "intervalMinutes": 60, "request": CSV_REQUEST}])
        scheduler = ETLScheduler(MagicMock(), schedule_file=path)

        scheduler.start()
        try:
            assert scheduler.scheduler.running
            schedules = scheduler.describe()
        finally:
            scheduler.stop()

        assert len(schedules) == 1
        assert schedules[0]["id"] == "hourly"
        assert schedules[0]["nextRunTime"] is not None

    @pytest.mark.asyncio
    async def test_start_without_schedule_file(self):
        scheduler = ETLScheduler(MagicMock(), schedule_file="")

        scheduler.start()
        try:
            assert scheduler.describe() == []
        finally:
            scheduler.stop()
