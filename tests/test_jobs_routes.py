import time
import uuid

from fastapi.testclient import TestClient

from jobcore.main import create_app
from jobcore.v1.jobs.runtime import build_runtime


def test_submit_job(client: TestClient):
    """Submitting a registered type returns 202 with the routing decision."""
    response = client.post(
        "/v1/jobs",
        json={"type": "echo", "payload": {"text": "hello"}, "priority": "high"},
    )

    assert response.status_code == 202
    data = response.json()
    assert data["ok"] is True
    assert data["data"]["type"] == "echo"
    assert data["data"]["priority"] == "high"
    assert data["data"]["queue"] == "jobs.high"
    uuid.UUID(data["data"]["job_id"])
    assert data["request_id"] == response.headers["X-Request-ID"]


def test_submit_uses_default_priority(client: TestClient):
    response = client.post("/v1/jobs", json={"type": "echo"})

    assert response.status_code == 202
    assert response.json()["data"]["priority"] == "normal"


def test_submit_unknown_type(client: TestClient):
    response = client.post("/v1/jobs", json={"type": "transcode", "payload": {}})

    assert response.status_code == 404
    data = response.json()
    assert data["ok"] is False
    assert data["error"]["message"] == "Unknown job type: transcode"
    assert data["error"]["details"] == {"job_type": "transcode"}


def test_submit_rate_limited_type_requires_owner(client: TestClient):
    response = client.post("/v1/jobs", json={"type": "render", "payload": {}})

    assert response.status_code == 422
    assert "owner_context" in response.json()["error"]["message"]

    response = client.post(
        "/v1/jobs",
        json={
            "type": "render",
            "payload": {},
            "owner_context": {"tenant_id": "acme", "user_id": "u1"},
        },
    )
    assert response.status_code == 202


def test_submit_rejects_non_object_payload(client: TestClient):
    response = client.post("/v1/jobs", json={"type": "echo", "payload": [1, 2]})

    assert response.status_code == 422


def test_list_job_types(client: TestClient):
    response = client.get("/v1/jobs/types")

    assert response.status_code == 200
    data = response.json()["data"]
    assert [t["type"] for t in data["job_types"]] == ["echo", "render"]
    assert data["job_types"][1]["rate_limit"]["max_concurrent_per_owner"] == 2
    assert data["handlers"] == ["echo"]


def test_stats_reflect_submissions(client: TestClient):
    client.post("/v1/jobs", json={"type": "echo"})
    client.post("/v1/jobs", json={"type": "echo", "priority": "low"})

    response = client.get("/v1/jobs/stats")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["queue_depths"]["jobs.normal"] == 1
    assert data["queue_depths"]["jobs.low"] == 1
    assert data["queue_depths"]["jobs.dead"] == 0
    assert data["in_flight"] == 0
    assert data["dead_letter_total"] == 0
    assert data["breaches"] == []


def test_dead_letters_empty(client: TestClient):
    response = client.get("/v1/jobs/dead-letters?limit=5")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data == {"dead_letters": [], "total": 0, "limit": 5}


def test_dead_letter_not_found(client: TestClient):
    job_id = uuid.uuid4()
    response = client.get(f"/v1/jobs/dead-letters/{job_id}")

    assert response.status_code == 404
    assert response.json()["error"]["message"] == "Dead letter not found"


def test_dead_letter_lookup(client: TestClient):
    """A job that fails terminally becomes visible through the API."""
    runtime = client.app.state.runtime
    submitted = client.post(
        "/v1/jobs",
        json={
            "type": "render",
            "payload": {"page": 1},
            "owner_context": {"tenant_id": "acme"},
        },
    )
    job_id = submitted.json()["data"]["job_id"]

    # render has no handler, so the worker dead-letters it
    client.portal.call(runtime.start_workers)
    for _ in range(500):
        if client.get(f"/v1/jobs/dead-letters/{job_id}").status_code == 200:
            break
        time.sleep(0.01)

    response = client.get(f"/v1/jobs/dead-letters/{job_id}")
    assert response.status_code == 200
    record = response.json()["data"]
    assert record["job_type"] == "render"
    assert record["error_kind"] == "configuration"
    assert record["severity"] == "user_notice"
    assert record["owner_tenant_id"] == "acme"

    listing = client.get("/v1/jobs/dead-letters").json()["data"]
    assert listing["total"] == 1
    assert listing["dead_letters"][0]["job_id"] == job_id


def test_metrics_endpoint(client: TestClient):
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "jobcore_jobs_submitted_total" in response.text


def test_metrics_basic_auth(settings, app_registries):
    job_types, handlers = app_registries
    secured = settings.model_copy(update={"metrics_auth": "prom:s3cret"})
    app = create_app(
        secured, runtime=build_runtime(secured, job_types=job_types, handlers=handlers)
    )

    with TestClient(app) as client:
        assert client.get("/metrics").status_code == 401
        assert client.get("/metrics", auth=("prom", "wrong")).status_code == 401
        assert client.get("/metrics", auth=("prom", "s3cret")).status_code == 200


def test_submit_when_broker_unavailable(client: TestClient):
    """An unavailable broker is reported as a retryable 503."""
    client.portal.call(client.app.state.runtime.broker.close)

    response = client.post("/v1/jobs", json={"type": "echo"})

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "5"
    assert response.json()["error"]["message"] == "Broker is closed"
