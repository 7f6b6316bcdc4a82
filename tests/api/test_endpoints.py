"""
API endpoint tests
"""

import json

import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, MagicMock

from api.dependencies import (
    get_bulk_runner, get_db, get_failures, get_metrics, get_registry, get_runner, get_scheduler,
)
from api.main import app
from ingestion.runner import StreamingETLRunner
from schemas.etl import BulkFastResult


@pytest.fixture
def db_session():
    session = MagicMock()
    session.execute = AsyncMock()
    return session


@pytest.fixture
def runner(fake_loader, checkpoint_store, job_registry, recorder, tmp_path):
    return StreamingETLRunner(
        loader=fake_loader,
        checkpoints=checkpoint_store,
        registry=job_registry,
        metrics=recorder,
        dead_letter_dir=str(tmp_path),
        checkpoint_interval=10,
    )


@pytest.fixture
def overrides(runner, job_registry, recorder, db_session):
    """Dependency values; tests may replace entries before the client is built"""
    async def override_get_db():
        yield db_session

    return {
        get_db: override_get_db,
        get_runner: lambda: runner,
        get_bulk_runner: lambda: MagicMock(),
        get_registry: lambda: job_registry,
        get_metrics: lambda: recorder,
        get_failures: lambda: None,
        get_scheduler: lambda: None,
    }


@pytest.fixture
def client_factory(overrides):
    """Build a test client without startup hooks; every engine component is overridden"""
    def _build():
        app.dependency_overrides.update(overrides)
        return TestClient(app)

    yield _build

    app.dependency_overrides.clear()


@pytest.fixture
def client(client_factory):
    return client_factory()


@pytest.fixture
def csv_payload(write_csv, mock_csv_orders):
    path = write_csv(mock_csv_orders)
    return {"sourceType": "csv", "table": "ordre", "csv": {"filePath": path}}


class TestStreamEndpoint:
    """Test POST /etl/stream"""

    def test_run_returns_camel_case_result(self, client, csv_payload):
        response = client.post("/etl/stream", json=dict(csv_payload, jobId="api-1"))

        assert response.status_code == 200
        data = response.json()
        assert data["jobId"] == "api-1"
        assert data["status"] == "completed"
        assert data["attemptedRows"] == 3
        assert data["insertedRows"] == 2
        assert data["rejectedRows"] == 1
        assert response.headers["X-Request-ID"]

    def test_background_returns_202(self, overrides, client_factory, job_registry, csv_payload):
        job = job_registry.register("bg-1", "ordre", "csv")
        background_runner = MagicMock()
        background_runner.run_in_background.return_value = job
        overrides[get_runner] = lambda: background_runner

        response = client_factory().post("/etl/stream?background=true", json=csv_payload)

        assert response.status_code == 202
        assert response.json() == {
            "jobId": "bg-1",
            "status": "pending",
            "eventsUrl": "/etl/jobs/bg-1/events",
        }

    def test_cancelled_bulk_load_is_not_an_error(self, overrides, client_factory):
        bulk_runner = MagicMock()
        bulk_runner.run = AsyncMock(return_value=BulkFastResult(
            job_id="bulk-1", status="cancelled", orders=0, order_lines=0, henvisninger=0,
            total_rows=0, staged_rows=120, duration_ms=5, rows_per_second=0.0,
            rows_per_batch=500, drain_count=0,
        ))
        overrides[get_bulk_runner] = lambda: bulk_runner

        response = client_factory().post("/etl/bulk-fast", json={"totalOrders": 100})

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["stagedRows"] == 120

    def test_malformed_body_is_422(self, client):
        response = client.post("/etl/stream", json={"sourceType": "ftp", "table": "ordre"})

        assert response.status_code == 422

    def test_invalid_request_is_422(self, client, csv_payload):
        response = client.post("/etl/stream", json=dict(csv_payload, checkpoint=True))

        assert response.status_code == 422
        assert response.json()["reason"] == "invalid-request"

    def test_unsupported_table_is_400(self, client, csv_payload):
        response = client.post("/etl/stream", json=dict(csv_payload, table="invoices"))

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "UnsupportedTableError"
        assert "ordre" in body["context"]["supported"]

    def test_no_matching_columns_is_400(self, client, write_csv):
        path = write_csv("foo,bar\n1,2\n", name="foo.csv")

        response = client.post("/etl/stream", json={"sourceType": "csv", "table": "ordre", "csv": {"filePath": path}})

        assert response.status_code == 400
        assert response.json()["reason"] == "no-matching-columns"

    def test_running_job_id_is_409(self, client, job_registry, csv_payload):
        job_registry.register("dup", "ordre", "csv")
        job_registry.start("dup")

        response = client.post("/etl/stream", json=dict(csv_payload, jobId="dup"))

        assert response.status_code == 409
        assert response.json()["reason"] == "job-conflict"

    def test_limit_failure_carries_partial_result(self, client, csv_payload):
        response = client.post("/etl/stream", json=dict(csv_payload, maxRows=1))

        assert response.status_code == 500
        body = response.json()
        assert body["reason"] == "row-limit-exceeded"
        assert body["partial_result"]["insertedRows"] == 0
        assert body["partial_result"]["rolledBackRows"] == 1


class TestJobEndpoints:
    """Test job inspection and cancellation"""

    def test_list_jobs_newest_first(self, client, job_registry):
        job_registry.register("a", "ordre", "csv")
        job_registry.register("b", "vare", "json")

        response = client.get("/etl/jobs")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert [job["jobId"] for job in data["jobs"]] == ["b", "a"]

    def test_get_job(self, client, job_registry):
        job_registry.register("a", "ordre", "csv")

        response = client.get("/etl/jobs/a")

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["lastFailure"] is None

    def test_get_job_with_last_failure(self, overrides, client_factory, job_registry):
        job_registry.register("a", "ordre", "csv")
        job_registry.fail("a", "row-limit-exceeded")
        failures = MagicMock()
        failures.last_for_job = AsyncMock(return_value={
            "stage": "limit",
            "table_name": "ordre",
            "approx_row": 10,
            "error_code": "row-limit-exceeded",
            "error_message": "Row limit of 10 exceeded",
        })
        overrides[get_failures] = lambda: failures

        response = client_factory().get("/etl/jobs/a")

        assert response.status_code == 200
        assert response.json()["reason"] == "row-limit-exceeded"
        assert response.json()["lastFailure"]["stage"] == "limit"

    def test_unknown_job_is_404(self, client):
        response = client.get("/etl/jobs/missing")

        assert response.status_code == 404
        assert response.json()["reason"] == "job-not-found"

    def test_cancel_job(self, client, job_registry):
        job = job_registry.register("a", "ordre", "csv")
        job_registry.start("a")

        response = client.post("/etl/jobs/a/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "running"
        assert job.cancel_token.cancelled

    def test_cancel_unknown_job_is_404(self, client):
        assert client.post("/etl/jobs/missing/cancel").status_code == 404

    def test_events_for_finished_job(self, client, job_registry):
        job_registry.register("a", "ordre", "csv")
        job_registry.update_progress("a", attempted_rows=5, inserted_rows=5)
        job_registry.complete("a")

        response = client.get("/etl/jobs/a/events")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = [block for block in response.text.split("\n\n") if block]
        assert len(events) == 1
        event, data = events[0].split("\n")
        assert event == "event: progress"
        payload = json.loads(data[len("data: "):])
        assert payload["status"] == "completed"
        assert payload["insertedRows"] == 5

    def test_schedules_without_scheduler(self, client):
        response = client.get("/etl/schedules")

        assert response.status_code == 200
        assert response.json() == []


class TestMetricsAndHealth:
    """Test metrics and health endpoints"""

    def test_metrics(self, client, csv_payload):
        client.post("/etl/stream", json=dict(csv_payload, jobId="m-1"))

        response = client.get("/etl/metrics?job_id=m-1")

        assert response.status_code == 200
        data = response.json()
        assert data["recentRuns"][0]["job_id"] == "m-1"
        assert data["lastRunForJob"]["status"] == "completed"

    def test_health(self, client, job_registry):
        job_registry.register("a", "ordre", "csv")
        job_registry.register("b", "ordre", "csv")
        job_registry.fail("b", "copy-failed")

        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database_connected"] is True
        assert data["active_jobs"] == 1
        assert data["failed_jobs"] == 1
        assert data["scheduler_running"] is False

    def test_health_database_down(self, client, db_session):
        db_session.execute.side_effect = RuntimeError("connection refused")

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "unhealthy"

    def test_root_lists_endpoints(self, client):
        response = client.get("/")

        assert response.json()["endpoints"]["stream"] == "/etl/stream"
