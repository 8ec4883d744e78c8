import types

import pytest
from fastapi.testclient import TestClient

from mailgenius import api
from mailgenius.api import API_TOKEN_HEADER_NAME, CRON_SECRET_HEADER_NAME, create_app


API_TOKEN = "secret-token"
CRON_SECRET = "cron-secret"

JOB = {
    "id": "job-1",
    "workspace_id": "acme",
    "campaign_id": "spring",
    "job_type": "campaign",
    "priority": 0,
    "status": "pending",
    "payload": {},
    "batch_size": 100,
    "max_retries": 3,
    "retry_count": 0,
    "total_recipients": 2,
    "processed_count": 0,
    "failed_count": 0,
    "created_at": 1.0,
    "updated_at": 1.0,
}

PROGRESS = {
    "id": "job-1",
    "type": "campaign_send",
    "owner_id": "acme",
    "status": "processing",
    "progress": 50,
    "total_items": 2,
    "processed_items": 1,
    "failed_items": 0,
    "start_time": 1.0,
    "metadata": {"batches": 1},
}


class DummyService:
    def __init__(self):
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")
        self.results = {}

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        if cmd in self.results:
            return self.results[cmd]
        if cmd == "sendCampaign":
            return {"ok": True, "campaign_id": payload["campaign_id"], "job_id": "job-1", "total_recipients": 2}
        if cmd == "enqueueJob":
            return {"ok": True, "job_id": "job-2"}
        if cmd == "listJobs":
            return {"ok": True, "jobs": [JOB]}
        if cmd == "getJob":
            return {"ok": True, "job": JOB, "batches": [], "progress": PROGRESS}
        if cmd == "getProgress":
            return {"ok": True, "progress": PROGRESS}
        if cmd == "scaleWorkers":
            return {"ok": True, "target": payload["count"], "active": payload["count"], "added": ["w-1"], "draining": []}
        if cmd == "retrySweep":
            return {"ok": True, "processed": 1, "succeeded": 1, "rescheduled": 0, "exhausted": 0, "deferred": 0}
        if cmd == "pause":
            return {"ok": True, "paused": True}
        return {"ok": True}


@pytest.fixture(autouse=True)
def reset_service():
    original = api.service
    original_token = getattr(api.app.state, "api_token", None)
    original_secret = getattr(api.app.state, "cron_secret", None)
    api.service = None
    api.app.state.api_token = None
    api.app.state.cron_secret = None
    try:
        yield
    finally:
        api.service = original
        api.app.state.api_token = original_token
        api.app.state.cron_secret = original_secret


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN, cron_secret=CRON_SECRET))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_returns_500_when_service_missing():
    create_app(DummyService(), api_token=API_TOKEN)
    api.service = None
    client = TestClient(api.app)
    response = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_rejects_missing_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.get("/status")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"


def test_no_token_configured_allows_requests():
    client = TestClient(create_app(DummyService()))
    assert client.get("/status").json() == {"ok": True}


def test_commands_dispatch_to_service(client_and_service):
    client, svc = client_and_service
    assert client.post("/commands/run-now").json() == {"ok": True}
    assert client.post("/commands/pause").json() == {"ok": True, "paused": True}
    assert client.post("/commands/clean", json={"days": 7}).status_code == 200
    assert svc.calls == [("run now", {}), ("pause", {}), ("clean", {"days": 7})]


def test_send_campaign(client_and_service):
    client, svc = client_and_service
    response = client.post("/campaigns/send", json={"campaign_id": "spring", "batch_size": 50})
    assert response.status_code == 200
    assert response.json() == {"ok": True, "campaign_id": "spring", "job_id": "job-1", "total_recipients": 2}
    assert svc.calls[-1] == ("sendCampaign", {"campaign_id": "spring", "batch_size": 50})


def test_enqueue_job_builds_payload(client_and_service):
    client, svc = client_and_service
    response = client.post(
        "/jobs",
        json={
            "workspace_id": "acme",
            "job_type": "transactional",
            "priority": 9,
            "recipients": [{"email": "a@example.com", "variables": {"name": "A"}}],
            "template": {"subject": "Hi {{name}}", "html": "<p>x</p>"},
            "sender": {"from_email": "news@acme.io"},
        },
    )
    assert response.status_code == 200
    assert response.json()["job_id"] == "job-2"
    cmd, payload = svc.calls[-1]
    assert cmd == "enqueueJob"
    assert payload["priority"] == 9
    assert payload["payload"]["recipients"] == [{"email": "a@example.com", "variables": {"name": "A"}}]
    assert payload["payload"]["sender"] == {"from_email": "news@acme.io"}


def test_enqueue_job_validates_body(client_and_service):
    client, svc = client_and_service
    response = client.post("/jobs", json={"workspace_id": "acme", "recipients": []})
    assert response.status_code == 422
    assert svc.calls == []


def test_job_endpoints(client_and_service):
    client, svc = client_and_service
    listed = client.get("/jobs", params={"status": "pending", "workspace_id": "acme"}).json()
    assert listed["jobs"][0]["id"] == "job-1"
    assert svc.calls[-1] == ("listJobs", {"workspace_id": "acme", "status": "pending", "limit": 100})

    detail = client.get("/jobs/job-1").json()
    assert detail["progress"]["progress"] == 50
    assert "worker_id" not in detail["job"]

    svc.results["cancelJob"] = {"ok": True, "job": {**JOB, "status": "cancelled"}}
    assert client.post("/jobs/job-1/cancel").json()["job"]["status"] == "cancelled"
    assert client.delete("/jobs/job-1").json() == {"ok": True}
    assert svc.calls[-1] == ("removeJob", {"id": "job-1"})


def test_errors_map_to_http_status(client_and_service):
    client, svc = client_and_service
    svc.results["getJob"] = {"ok": False, "error": "Job 'x' not found", "code": "not_found", "status": 404}
    response = client.get("/jobs/x")
    assert response.status_code == 404
    assert response.json()["detail"] == {"error": "Job 'x' not found", "code": "not_found"}

    svc.results["sendCampaign"] = {"ok": False, "error": "no leads", "code": "no_recipients", "status": 400}
    assert client.post("/campaigns/send", json={"campaign_id": "c"}).status_code == 400

    svc.results["listWorkers"] = {"ok": False, "error": "unknown command"}
    assert client.get("/workers").status_code == 400


def test_progress_and_workers(client_and_service):
    client, svc = client_and_service
    assert client.get("/progress/job-1").json()["progress"]["status"] == "processing"
    scaled = client.post("/workers/scale", json={"count": 4}).json()
    assert scaled["target"] == 4
    assert scaled["added"] == ["w-1"]
    assert svc.calls[-1] == ("scaleWorkers", {"count": 4})


def test_worker_health_route(client_and_service):
    client, svc = client_and_service
    svc.results["workerHealth"] = {
        "ok": True,
        "healthy": False,
        "pending_jobs": 1200,
        "workers": [
            {"id": "w-1", "name": "w-1", "status": "idle", "healthy": False, "last_heartbeat": 1.0, "consecutive_failures": 7}
        ],
        "alerts": [
            {"type": "high_failure_rate", "severity": "high", "worker_id": "w-1", "message": "7 failures"},
            {"type": "high_queue_size", "severity": "high", "worker_id": None, "message": "1200 pending"},
        ],
    }
    body = client.get("/workers/health").json()
    assert body["healthy"] is False
    assert body["workers"][0]["consecutive_failures"] == 7
    assert [a["type"] for a in body["alerts"]] == ["high_failure_rate", "high_queue_size"]
    assert "worker_id" not in body["alerts"][1]
    assert svc.calls[-1] == ("workerHealth", {})


def test_cron_requires_secret(client_and_service):
    client, svc = client_and_service
    assert client.post("/cron/retry-sweep").status_code == 403
    response = client.post("/cron/retry-sweep", headers={CRON_SECRET_HEADER_NAME: "wrong"})
    assert response.status_code == 403

    response = client.post("/cron/retry-sweep", headers={CRON_SECRET_HEADER_NAME: CRON_SECRET})
    assert response.status_code == 200
    assert response.json()["succeeded"] == 1


def test_cron_disabled_without_secret():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.post("/cron/process-scheduled", headers={CRON_SECRET_HEADER_NAME: "anything"})
    assert response.status_code == 403
    assert response.json()["detail"] == "Cron endpoints are disabled"


def test_metrics_endpoint(client_and_service):
    client, _ = client_and_service
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.content == b"metrics-data"
    assert response.headers["content-type"].startswith("text/plain")
