import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import ValidationError

from core.config import settings
from core.exceptions import ETLException, InvalidRequestError
from ingestion.runner import StreamingETLRunner
from schemas.etl import StreamingEtlRequest

logger = logging.getLogger(__name__)


class ScheduleEntry:
    """One scheduled request template from the schedule file."""

    def __init__(self, schedule_id: str, request: Dict[str, Any],
                 interval_minutes: Optional[float] = None, cron: Optional[str] = None):
        if (interval_minutes is None) == (cron is None):
            raise InvalidRequestError(
                f"Schedule {schedule_id} needs exactly one of intervalMinutes or cron",
                context={"schedule_id": schedule_id}
            )
        self.schedule_id = schedule_id
        self.request = request
        self.interval_minutes = interval_minutes
        self.cron = cron

    @property
    def trigger(self):
        if self.cron is not None:
            return CronTrigger.from_crontab(self.cron)
        return IntervalTrigger(minutes=self.interval_minutes)

    def build_request(self) -> StreamingEtlRequest:
        """Fresh request with a unique job id for every run."""
        payload = dict(self.request)
        payload["jobId"] = f"{self.schedule_id}-{uuid.uuid4().hex[:8]}"
        return StreamingEtlRequest.model_validate(payload)

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.schedule_id,
            "intervalMinutes": self.interval_minutes,
            "cron": self.cron,
            "request": self.request,
        }


def load_schedule_file(path: str) -> List[ScheduleEntry]:
    """
    Parse ``[{"id", "intervalMinutes" | "cron", "request"}, ...]``.

    Raises:
        InvalidRequestError: Unreadable file or malformed entry
    """
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidRequestError(
            f"Cannot read schedule file {path}",
            context={"path": path},
            original_exception=e
        )
    if not isinstance(raw, list):
        raise InvalidRequestError("Schedule file must contain a JSON list", context={"path": path})

    entries = []
    for item in raw:
        if not isinstance(item, dict) or "id" not in item or not isinstance(item.get("request"), dict):
            raise InvalidRequestError("Schedule entries need an id and a request object", context={"entry": item})
        entry = ScheduleEntry(
            str(item["id"]),
            item["request"],
            interval_minutes=item.get("intervalMinutes"),
            cron=item.get("cron"),
        )
        # Fail at startup rather than on the first tick
        try:
            entry.build_request()
        except ValidationError as e:
            raise InvalidRequestError(
                f"Schedule {entry.schedule_id} has an invalid request",
                context={"schedule_id": entry.schedule_id, "errors": e.errors()},
                original_exception=e
            )
        entries.append(entry)
    return entries


class ETLScheduler:
    def __init__(self, runner: StreamingETLRunner, schedule_file: Optional[str] = None):
        self.scheduler = AsyncIOScheduler()
        self.runner = runner
        self.schedule_file = schedule_file if schedule_file is not None else settings.ETL_SCHEDULE_FILE
        self.entries: List[ScheduleEntry] = []

    async def run_scheduled_job(self, entry: ScheduleEntry):
        """Job to run one scheduled ingestion"""
        request = entry.build_request()
        logger.info(f"Scheduler: Starting {entry.schedule_id} as job {request.job_id}")
        try:
            result = await self.runner.run(request)
            logger.info(
                f"Scheduler: {request.job_id} {result.status} "
                f"({result.inserted_rows} inserted, {result.rejected_rows} rejected)"
            )
        except ETLException as e:
            logger.error(f"Scheduler: {request.job_id} failed - {e.message}")

    def start(self):
        """Start the scheduler"""
        if self.schedule_file:
            self.entries = load_schedule_file(self.schedule_file)
        for entry in self.entries:
            self.scheduler.add_job(
                self.run_scheduled_job,
                trigger=entry.trigger,
                args=[entry],
                id=entry.schedule_id,
                replace_existing=True,
                max_instances=1,
            )
        self.scheduler.start()
        logger.info(f"ETL Scheduler started with {len(self.entries)} schedule(s)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("ETL Scheduler stopped")

    def describe(self) -> List[Dict[str, Any]]:
        schedules = []
        for entry in self.entries:
            info = entry.describe()
            job = self.scheduler.get_job(entry.schedule_id)
            next_run = getattr(job, "next_run_time", None) if job else None
            info["nextRunTime"] = next_run.isoformat() if next_run else None
            schedules.append(info)
        return schedules
