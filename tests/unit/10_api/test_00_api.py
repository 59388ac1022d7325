import types

import pytest
from fastapi.testclient import TestClient

from portmail.api import API_TOKEN_HEADER_NAME, USER_ID_HEADER_NAME, create_app, cron_authorized
from portmail.errors import ConfigurationError, StoreError
from portmail.models import SweepError, SweepReport

API_TOKEN = "secret-token"
CRON_SECRET = "cron-secret"


class DummyService:
    def __init__(self):
        self.calls = []
        self.sweeps = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"pm_sweeps_total 1.0\n")
        self.report = SweepReport()
        self.sweep_error = None
        self.results = {}

    async def run_sweep(self, now=None, trigger="manual"):
        self.sweeps.append(trigger)
        if self.sweep_error:
            raise self.sweep_error
        return self.report

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        if cmd in self.results:
            return self.results[cmd]
        if cmd == "listJobs":
            return {"ok": True, "jobs": []}
        if cmd == "stats":
            return {"ok": True, "pending": 2, "sent_today": 5, "failed": 1}
        if cmd in ("addJob", "getJob", "cancelJob", "retryJob"):
            return {"ok": True, "job": {"id": payload.get("id", "new"), "status": "pending"}}
        if cmd == "listShips":
            return {"ok": True, "ships": []}
        return {"ok": True}


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN, cron_secret=CRON_SECRET))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN, USER_ID_HEADER_NAME: "u1"})
    return client, svc


# Sweep trigger -------------------------------------------------------------
@pytest.mark.parametrize(
    "authorization,production,secret,expected",
    [
        (None, False, None, True),
        ("Bearer anything", False, CRON_SECRET, True),
        (f"Bearer {CRON_SECRET}", True, CRON_SECRET, True),
        (None, True, CRON_SECRET, False),
        ("Bearer wrong", True, CRON_SECRET, False),
        (CRON_SECRET, True, CRON_SECRET, False),
        (f"Bearer {CRON_SECRET}", True, None, False),
        ("Bearer caf\u00e9", True, CRON_SECRET, False),
    ],
)
def test_cron_authorization(authorization, production, secret, expected):
    assert cron_authorized(authorization, secret, production) is expected


def test_cron_rejects_missing_bearer():
    svc = DummyService()
    client = TestClient(create_app(svc, cron_secret=CRON_SECRET))

    response = client.get("/cron/send-mails")

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}
    assert svc.sweeps == []


def test_cron_rejects_everything_without_secret_in_production():
    svc = DummyService()
    client = TestClient(create_app(svc))

    response = client.post("/cron/send-mails", headers={"Authorization": "Bearer "})

    assert response.status_code == 401
    assert svc.sweeps == []


def test_non_ascii_credentials_are_unauthorized():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN, cron_secret=CRON_SECRET))

    cron = client.get("/cron/send-mails", headers={"Authorization": b"Bearer caf\xe9"})
    metrics = client.get("/metrics", headers={API_TOKEN_HEADER_NAME: b"t\xe9k"})

    assert cron.status_code == 401
    assert cron.json() == {"error": "Unauthorized"}
    assert metrics.status_code == 401
    assert svc.sweeps == []


def test_cron_open_outside_production():
    svc = DummyService()
    client = TestClient(create_app(svc, cron_secret=CRON_SECRET, production=False))

    response = client.get("/cron/send-mails")

    assert response.status_code == 200
    assert svc.sweeps == ["http"]


@pytest.mark.parametrize("method", ["get", "post"])
def test_cron_runs_sweep_and_reports(method):
    svc = DummyService()
    svc.report = SweepReport(
        processed=3,
        sent=2,
        failed=1,
        errors=[SweepError(job_id="job-9", error="SMTP timeout after 30.0s")],
    )
    client = TestClient(create_app(svc, cron_secret=CRON_SECRET))

    response = getattr(client, method)("/cron/send-mails", headers={"Authorization": f"Bearer {CRON_SECRET}"})

    assert response.status_code == 200
    assert response.json() == {
        "message": "Cron job completed",
        "processed": 3,
        "sent": 2,
        "failed": 1,
        "errors": [{"jobId": "job-9", "error": "SMTP timeout after 30.0s"}],
    }


def test_cron_reports_empty_sweep():
    svc = DummyService()
    client = TestClient(create_app(svc, production=False))

    body = client.get("/cron/send-mails").json()

    assert body == {"message": "No pending jobs to process", "processed": 0, "sent": 0, "failed": 0, "errors": []}


@pytest.mark.parametrize(
    "error,code",
    [
        (ConfigurationError("SMTP configuration incomplete: missing smtp.password"), "configuration_error"),
        (StoreError("database is locked"), "store_error"),
    ],
)
def test_cron_reports_sweep_abort_as_500(error, code):
    svc = DummyService()
    svc.sweep_error = error
    client = TestClient(create_app(svc, production=False))

    response = client.get("/cron/send-mails")

    assert response.status_code == 500
    assert response.json() == {"error": str(error), "code": code}


# Management routes ---------------------------------------------------------
def test_rejects_missing_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))

    response = client.get("/jobs", headers={USER_ID_HEADER_NAME: "u1"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"


def test_health_and_metrics_access(client_and_service):
    client, _ = client_and_service
    anonymous = TestClient(client.app)

    assert anonymous.get("/health").json() == {"status": "ok"}
    assert anonymous.get("/metrics").status_code == 401
    response = client.get("/metrics")
    assert response.status_code == 200
    assert b"pm_sweeps_total" in response.content


def test_job_routes_require_user(client_and_service):
    client, svc = client_and_service

    response = client.get("/jobs", headers={USER_ID_HEADER_NAME: ""})

    assert response.status_code == 401
    assert svc.calls == []


def test_job_routes_dispatch_to_service(client_and_service):
    client, svc = client_and_service

    assert client.get("/jobs?status=failed&limit=10").json() == []
    assert svc.calls[-1] == ("listJobs", {"user_id": "u1", "status": "failed", "limit": 10})

    created = client.post(
        "/jobs",
        json={
            "ship_name": "MV AURORA",
            "target_email": "master@aurora.example",
            "port_id": "port-1",
            "scheduled_time": "2026-05-01T09:00:00",
            "timezone": "Europe/Istanbul",
        },
    )
    assert created.status_code == 201
    cmd, payload = svc.calls[-1]
    assert cmd == "addJob"
    assert payload["user_id"] == "u1"
    assert payload["port_id"] == "port-1"
    assert "subject" not in payload

    assert client.patch("/jobs/job-1", json={"action": "cancel"}).status_code == 200
    assert svc.calls[-1] == ("cancelJob", {"id": "job-1", "user_id": "u1"})
    assert client.patch("/jobs/job-1", json={"action": "retry"}).status_code == 200
    assert svc.calls[-1] == ("retryJob", {"id": "job-1", "user_id": "u1"})
    assert client.delete("/jobs/job-1").json() == {"success": True}


def test_unknown_job_action_is_rejected(client_and_service):
    client, svc = client_and_service

    response = client.patch("/jobs/job-1", json={"action": "resend"})

    assert response.status_code == 422
    assert svc.calls == []


@pytest.mark.parametrize(
    "code,status",
    [("not_found", 404), ("invalid_transition", 409), ("invalid_request", 400)],
)
def test_command_errors_map_to_status(client_and_service, code, status):
    client, svc = client_and_service
    svc.results["cancelJob"] = {"ok": False, "error": "nope", "code": code}

    response = client.patch("/jobs/job-1", json={"action": "cancel"})

    assert response.status_code == status
    assert response.json()["detail"] == "nope"


def test_stats_uses_dashboard_keys(client_and_service):
    client, svc = client_and_service

    assert client.get("/stats").json() == {"pending": 2, "sentToday": 5, "failed": 1}
    assert svc.calls[-1] == ("stats", {"user_id": "u1"})


def test_ship_and_port_routes(client_and_service):
    client, svc = client_and_service

    created = client.post("/ships", json={"name": "MV AURORA", "default_email": "master@aurora.example"})
    assert created.status_code == 201
    assert svc.calls[-1][0] == "addShip"
    assert svc.calls[-1][1]["user_id"] == "u1"

    client.put("/ships/ship-1", json={"flag_country": "Malta"})
    assert svc.calls[-1] == ("updateShip", {"flag_country": "Malta", "id": "ship-1"})

    bad = client.post("/ships", json={"name": "MV AURORA", "default_email": "nope"})
    assert bad.status_code == 422

    client.post("/ports/port-1/attachments", json={"file_path": "p/crew.pdf", "file_name": "Crew.pdf"})
    cmd, payload = svc.calls[-1]
    assert cmd == "addPortAttachment"
    assert payload["port_id"] == "port-1"

    assert client.delete("/ports/port-1/attachments/att-1").json() == {"success": True}
    assert svc.calls[-1] == ("deletePortAttachment", {"port_id": "port-1", "id": "att-1"})
