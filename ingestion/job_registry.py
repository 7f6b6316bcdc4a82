"""
In-memory registry of ingestion jobs.

Tracks status and counts for every job, owns each job's cancellation
token, and fans progress snapshots out to subscribers (the SSE endpoint).
At most ``ETL_MAX_JOBS`` jobs are kept; the least recently updated
terminal jobs are evicted first.
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set
import logging

from core.config import settings
from core.exceptions import JobConflictError, JobNotFoundError
from ingestion.base import CancellationToken
from models.base import JobStatus

logger = logging.getLogger(__name__)

Subscriber = Callable[[Dict[str, Any]], None]


@dataclass
class Job:
    job_id: str
    table: str
    source_type: str
    status: JobStatus = JobStatus.PENDING
    attempted_rows: int = 0
    inserted_rows: int = 0
    rejected_rows: int = 0
    dead_letter_count: int = 0
    checkpoint: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken, repr=False)

    def snapshot(self) -> Dict[str, Any]:
        # Token holds an asyncio.Event and is not part of the public view
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "cancel_token"}
        if self.checkpoint is not None:
            data["checkpoint"] = dict(self.checkpoint)
        data["status"] = self.status.value
        for key in ("created_at", "updated_at", "completed_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


class JobRegistry:
    """
    Registry of jobs keyed by id.

    Terminal states (completed, failed, cancelled) are immutable: updates to
    a finished job are ignored.
    """

    def __init__(self, max_jobs: int = None):
        self.max_jobs = max_jobs or settings.ETL_MAX_JOBS
        self._jobs: "OrderedDict[str, Job]" = OrderedDict()
        self._subscribers: Dict[str, Set[Subscriber]] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def register(self, job_id: str, table: str, source_type: str) -> Job:
        """
        Register a new job (or re-register a finished one).

        Raises:
            JobConflictError: A job with this id is pending or running
        """
        existing = self._jobs.get(job_id)
        if existing is not None and not existing.status.is_terminal:
            raise JobConflictError(
                f"Job already running with this jobId: {job_id}",
                context={"job_id": job_id, "status": existing.status.value}
            )
        job = Job(job_id=job_id, table=table, source_type=str(source_type))
        self._jobs[job_id] = job
        self._jobs.move_to_end(job_id)
        self._prune()
        self._broadcast(job)
        return job

    def start(self, job_id: str) -> None:
        job = self._active(job_id)
        if job is not None and job.status == JobStatus.PENDING:
            job.status = JobStatus.RUNNING
            self._touch(job)

    def update_progress(self, job_id: str, **counts: int) -> None:
        job = self._active(job_id)
        if job is None:
            return
        for key in ("attempted_rows", "inserted_rows", "rejected_rows", "dead_letter_count"):
            if key in counts and counts[key] is not None:
                setattr(job, key, counts[key])
        job.status = JobStatus.RUNNING
        self._touch(job)

    def set_checkpoint(self, job_id: str, checkpoint: Dict[str, Any]) -> None:
        job = self._active(job_id)
        if job is not None:
            job.checkpoint = dict(checkpoint)
            self._touch(job)

    def complete(self, job_id: str) -> None:
        self._finish(job_id, JobStatus.COMPLETED, None)

    def fail(self, job_id: str, reason: str) -> None:
        self._finish(job_id, JobStatus.FAILED, reason)

    def mark_cancelled(self, job_id: str, reason: str = "cancelled") -> None:
        self._finish(job_id, JobStatus.CANCELLED, reason)

    def cancel(self, job_id: str, reason: str = "cancelled by request") -> Job:
        """
        Request cooperative cancellation.

        The job keeps its current status until the runner observes the
        signal and calls ``mark_cancelled``.

        Raises:
            JobNotFoundError: Unknown job id
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}", context={"job_id": job_id})
        if not job.status.is_terminal:
            logger.info(f"Cancellation requested for job {job_id}")
            job.cancel_token.cancel(reason)
        return job

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list(self, limit: int = 100) -> List[Job]:
        # Insertion order tracks updates (see _touch), newest last
        return list(reversed(self._jobs.values()))[:limit]

    def token_for(self, job_id: str) -> Optional[CancellationToken]:
        job = self._jobs.get(job_id)
        return job.cancel_token if job else None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, job_id: str, callback: Subscriber) -> Callable[[], None]:
        """
        Register ``callback`` for snapshots of ``job_id``.

        The current snapshot is delivered immediately when the job exists.
        Returns an idempotent unsubscribe function.
        """
        self._subscribers.setdefault(job_id, set()).add(callback)
        job = self._jobs.get(job_id)
        if job is not None:
            self._deliver(callback, job.snapshot())

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(job_id)
            if callbacks is None:
                return
            callbacks.discard(callback)
            if not callbacks:
                self._subscribers.pop(job_id, None)

        return unsubscribe

    async def stream(self, job_id: str, keepalive: float = None) -> AsyncIterator[Optional[Dict[str, Any]]]:
        """
        Yield progress snapshots for ``job_id`` until it reaches a terminal
        state. ``None`` is yielded as a keep-alive every ``keepalive``
        seconds, whether or not progress arrived in between.
        """
        keepalive = keepalive or settings.ETL_KEEPALIVE_SECONDS
        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        unsubscribe = self.subscribe(job_id, queue.put_nowait)
        next_keepalive = loop.time() + keepalive
        try:
            while True:
                remaining = next_keepalive - loop.time()
                if remaining <= 0:
                    next_keepalive = loop.time() + keepalive
                    yield None
                    continue
                try:
                    snapshot = await asyncio.wait_for(queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    continue
                yield snapshot
                if JobStatus(snapshot["status"]).is_terminal:
                    return
        finally:
            unsubscribe()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _active(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None or job.status.is_terminal:
            return None
        return job

    def _finish(self, job_id: str, status: JobStatus, reason: Optional[str]) -> None:
        job = self._active(job_id)
        if job is None:
            return
        job.status = status
        job.reason = reason
        job.completed_at = datetime.utcnow()
        self._touch(job)

    def _touch(self, job: Job) -> None:
        job.updated_at = datetime.utcnow()
        self._jobs.move_to_end(job.job_id)
        self._broadcast(job)

    def _broadcast(self, job: Job) -> None:
        callbacks = self._subscribers.get(job.job_id)
        if not callbacks:
            return
        snapshot = job.snapshot()
        for callback in list(callbacks):
            self._deliver(callback, snapshot)

    @staticmethod
    def _deliver(callback: Subscriber, snapshot: Dict[str, Any]) -> None:
        try:
            callback(dict(snapshot))
        except Exception:
            logger.exception("Job subscriber raised; ignoring")

    def _prune(self) -> None:
        if len(self._jobs) <= self.max_jobs:
            return
        # Oldest first; running jobs are only evicted when nothing else is left
        for job_id in [j for j, job in self._jobs.items() if job.status.is_terminal]:
            if len(self._jobs) <= self.max_jobs:
                return
            del self._jobs[job_id]
        while len(self._jobs) > self.max_jobs:
            self._jobs.popitem(last=False)


registry = JobRegistry()
