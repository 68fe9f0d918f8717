"""Tests for the job submission API."""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from testrun_jobs.errors import InvalidJobPayloadError, UnknownJobTypeError
from testrun_jobs.main import create_app
from testrun_jobs.models.schemas import JobState, QueueName


@pytest.fixture
def fake_runtime():
    return MagicMock()


@pytest.fixture
def client(fake_runtime):
    with TestClient(create_app(runtime=fake_runtime)) as c:
        yield c


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}
    root = client.get("/").json()
    assert root["status"] == "ok"
    assert root["queues"] == ["test-run-jobs", "export-jobs", "scheduled-run-jobs"]


def test_enqueue_returns_job_id(client, fake_runtime):
    fake_runtime.enqueue.return_value = "abc-123"
    envelope = {"type": "bulk-delete", "data": {"testRunId": 1, "resultIds": [2]}}

    response = client.post("/api/jobs/test-run-jobs", json=envelope)

    assert response.status_code == 202
    assert response.json() == {"jobId": "abc-123", "queue": "test-run-jobs", "state": "queued"}
    fake_runtime.enqueue.assert_called_once_with(QueueName.TEST_RUN, envelope)


def test_enqueue_unknown_type(client, fake_runtime):
    fake_runtime.enqueue.side_effect = UnknownJobTypeError("bulk-archive")

    response = client.post("/api/jobs/test-run-jobs", json={"type": "bulk-archive", "data": {}})

    assert response.status_code == 400
    assert response.json()["detail"] == {
        "code": "UNKNOWN_JOB_TYPE",
        "message": "Unknown job type: bulk-archive",
    }


def test_enqueue_invalid_payload(client, fake_runtime):
    fake_runtime.enqueue.side_effect = InvalidJobPayloadError("Invalid export-jobs payload")

    response = client.post("/api/jobs/export-jobs", json={"format": "csv"})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_PAYLOAD"


def test_unknown_queue_is_404(client, fake_runtime):
    response = client.post("/api/jobs/email-jobs", json={})

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "UNKNOWN_QUEUE"
    fake_runtime.enqueue.assert_not_called()


def test_job_state_completed(client, fake_runtime):
    fake_runtime.job_state.return_value = {
        "state": JobState.COMPLETED,
        "result": {"success": True, "updated": 3},
        "error": None,
        "error_type": None,
    }

    response = client.get("/api/jobs/test-run-jobs/abc-123")

    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "completed"
    assert body["result"] == {"success": True, "updated": 3}
    fake_runtime.job_state.assert_called_once_with("abc-123")


def test_job_state_failed(client, fake_runtime):
    fake_runtime.job_state.return_value = {
        "state": JobState.FAILED,
        "result": None,
        "error": "Unsupported export format: xml",
        "error_type": "UnsupportedExportFormatError",
    }

    body = client.get("/api/jobs/export-jobs/abc-123").json()

    assert body["state"] == "failed"
    assert body["errorType"] == "UnsupportedExportFormatError"


def test_queue_depths(client, fake_runtime):
    fake_runtime.queue_depths.return_value = {"test-run-jobs": 2, "export-jobs": 0, "scheduled-run-jobs": 1}

    response = client.get("/api/jobs/queues")

    assert response.json() == {"depths": {"test-run-jobs": 2, "export-jobs": 0, "scheduled-run-jobs": 1}}


def test_end_to_end_with_eager_runtime(runtime, seed):
    plan, cases = seed.plan()
    run = seed.run(plan, cases)

    with TestClient(create_app(runtime=runtime)) as c:
        response = c.post("/api/jobs/test-run-jobs", json={
            "type": "bulk-status-update",
            "data": {"testRunId": run.id, "testCaseIds": [cases[0].id], "status": "passed"},
        })

    assert response.status_code == 202
    assert response.json()["jobId"]
