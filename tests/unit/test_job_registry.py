"""
Unit tests for the job registry
"""

import asyncio

import pytest

from core.exceptions import JobConflictError, JobNotFoundError
from ingestion.job_registry import JobRegistry
from models.base import JobStatus


class TestJobLifecycle:
    """Test state transitions"""

    def test_pending_running_completed(self, job_registry):
        job = job_registry.register("job-1", "ordre", "csv")
        assert job.status == JobStatus.PENDING

        job_registry.start("job-1")
        job_registry.update_progress("job-1", attempted_rows=10, inserted_rows=9, rejected_rows=1)
        job_registry.complete("job-1")

        job = job_registry.get("job-1")
        assert job.status == JobStatus.COMPLETED
        assert (job.attempted_rows, job.inserted_rows, job.rejected_rows) == (10, 9, 1)
        assert job.completed_at is not None

    def test_progress_moves_pending_to_running(self, job_registry):
        job_registry.register("job-1", "ordre", "csv")

        job_registry.update_progress("job-1", attempted_rows=1)

        assert job_registry.get("job-1").status == JobStatus.RUNNING

    def test_terminal_states_are_final(self, job_registry):
        job_registry.register("job-1", "ordre", "csv")
        job_registry.fail("job-1", "row-limit-exceeded")

        job_registry.update_progress("job-1", attempted_rows=99)
        job_registry.complete("job-1")
        job_registry.mark_cancelled("job-1")

        job = job_registry.get("job-1")
        assert job.status == JobStatus.FAILED
        assert job.reason == "row-limit-exceeded"
        assert job.attempted_rows == 0

    def test_duplicate_running_job_conflicts(self, job_registry):
        job_registry.register("job-1", "ordre", "csv")

        with pytest.raises(JobConflictError):
            job_registry.register("job-1", "ordre", "csv")

    def test_finished_job_can_be_registered_again(self, job_registry):
        job_registry.register("job-1", "ordre", "csv")
        job_registry.mark_cancelled("job-1", "user")

        job = job_registry.register("job-1", "ordre", "csv")

        assert job.status == JobStatus.PENDING
        assert not job.cancel_token.cancelled

    def test_cancel_sets_token_only(self, job_registry):
        job = job_registry.register("job-1", "ordre", "csv")
        job_registry.start("job-1")

        job_registry.cancel("job-1", "user")

        assert job.cancel_token.cancelled
        assert job.cancel_token.reason == "user"
        assert job.status == JobStatus.RUNNING
        assert job_registry.token_for("job-1") is job.cancel_token

    def test_cancel_unknown_job(self, job_registry):
        with pytest.raises(JobNotFoundError):
            job_registry.cancel("nope")

    def test_checkpoint_is_copied(self, job_registry):
        job_registry.register("job-1", "ordre", "api")
        state = {"next_url": "https://x/2"}

        job_registry.set_checkpoint("job-1", state)
        state["next_url"] = "changed"

        assert job_registry.get("job-1").snapshot()["checkpoint"] == {"next_url": "https://x/2"}

    def test_snapshot_is_serializable(self, job_registry):
        job_registry.register("job-1", "ordre", "csv")

        snapshot = job_registry.get("job-1").snapshot()

        assert "cancel_token" not in snapshot
        assert snapshot["status"] == "pending"
        assert isinstance(snapshot["created_at"], str)


class TestRetention:
    """Test bounded most-recent-N retention"""

    def test_terminal_jobs_are_evicted_first(self):
        registry = JobRegistry(max_jobs=2)
        registry.register("running", "ordre", "csv")
        registry.register("done", "ordre", "csv")
        registry.complete("done")

        registry.register("new", "ordre", "csv")

        assert registry.get("done") is None
        assert registry.get("running") is not None
        assert registry.get("new") is not None

    def test_list_is_most_recent_first(self, job_registry):
        for job_id in ("a", "b", "c"):
            job_registry.register(job_id, "ordre", "csv")
        job_registry.update_progress("a", attempted_rows=1)

        assert [job.job_id for job in job_registry.list()] == ["a", "c", "b"]
        assert len(job_registry.list(limit=1)) == 1


class TestSubscriptions:
    """Test progress broadcast"""

    def test_subscriber_gets_current_and_later_snapshots(self, job_registry):
        job_registry.register("job-1", "ordre", "csv")
        received = []

        unsubscribe = job_registry.subscribe("job-1", received.append)
        job_registry.update_progress("job-1", attempted_rows=5)
        unsubscribe()
        unsubscribe()
        job_registry.complete("job-1")

        assert [s["status"] for s in received] == ["pending", "running"]
        assert received[1]["attempted_rows"] == 5

    def test_failing_subscriber_does_not_break_updates(self, job_registry):
        job_registry.register("job-1", "ordre", "csv")

        def broken(snapshot):
            raise RuntimeError("boom")

        job_registry.subscribe("job-1", broken)
        job_registry.update_progress("job-1", attempted_rows=1)

        assert job_registry.get("job-1").attempted_rows == 1

    @pytest.mark.asyncio
    async def test_stream_ends_at_terminal_state(self, job_registry):
        job_registry.register("job-1", "ordre", "csv")

        async def drive():
            await asyncio.sleep(0.01)
            job_registry.update_progress("job-1", attempted_rows=3)
            job_registry.complete("job-1")

        task = asyncio.create_task(drive())
        events = [event async for event in job_registry.stream("job-1", keepalive=5)]
        await task

        assert [e["status"] for e in events] == ["pending", "running", "completed"]

    @pytest.mark.asyncio
    async def test_stream_emits_keepalive(self, job_registry):
        job_registry.register("job-1", "ordre", "csv")
        stream = job_registry.stream("job-1", keepalive=0.01)

        first = await stream.__anext__()
        second = await stream.__anext__()
        await stream.aclose()

        assert first["status"] == "pending"
        assert second is None

    @pytest.mark.asyncio
    async def test_keepalive_continues_during_steady_progress(self, job_registry):
        job_registry.register("job-1", "ordre", "csv")
        job_registry.start("job-1")

        async def drive():
            for i in range(1, 16):
                await asyncio.sleep(0.01)
                job_registry.update_progress("job-1", attempted_rows=i)
            job_registry.complete("job-1")

        task = asyncio.create_task(drive())
        events = [event async for event in job_registry.stream("job-1", keepalive=0.04)]
        await task

        assert events[-1]["status"] == "completed"
        assert any(event is None for event in events)
