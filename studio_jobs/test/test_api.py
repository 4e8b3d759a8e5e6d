import time
import uuid

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from studio_jobs.config import settings
from studio_jobs.domain.enums import JobKind
from studio_jobs.main import AppServices, create_app

from conftest import OTHER_OWNER, OWNER, PNG_BYTES, FakeProvider, failed, succeeded

FOX_URL = "https://cdn.example.com/fox.png"


def auth(sub: str) -> dict:
    token = jwt.encode({"sub": sub}, "test-secret", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def api(jwt_secret, make_orchestrator, notifier, blob_store):
    """Client over an app wired to scripted providers; yields (client, providers)."""
    providers = {
        "fal": FakeProvider("fal", statuses=[succeeded(FOX_URL)]),
        "a2e": FakeProvider("a2e", kinds=(JobKind.video,), statuses=[failed("quota exceeded")]),
    }
    orch = make_orchestrator(*providers.values())
    app = create_app(AppServices(orch, orch.registry, notifier, blob_store))
    with TestClient(app) as client:
        yield client, providers


def wait_terminal(client, job_id, headers, tries=500):
    for _ in range(tries):
        body = client.get(f"/jobs/{job_id}", headers=headers).json()
        if body["status"] in ("completed", "failed", "cancelled"):
            return body
        time.sleep(0.01)
    raise AssertionError(f"job {job_id} did not finish")


def test_health(api):
    client, _ = api
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_requests_without_token_are_rejected(api):
    client, _ = api
    assert client.post("/jobs", json={"kind": "image", "parameters": {"prompt": "fox"}}).status_code == 401
    assert client.get("/jobs", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401


def test_submit_then_poll_to_completion(api):
    client, _ = api
    headers = auth(OWNER)

    resp = client.post(
        "/jobs",
        json={"kind": "image", "parameters": {"prompt": "a red fox", "aspect_ratio": "1:1"}},
        headers=headers,
    )
    assert resp.status_code == 202
    assert resp.json()["status"] == "pending"

    body = wait_terminal(client, resp.json()["job_id"], headers)
    assert body["status"] == "completed"
    assert body["progress"]["percentage"] == 100
    assert body["results"][0]["metadata"]["width"] == 1024

    # stored bytes are served back from the artifact url
    artifact_id = body["results"][0]["metadata"]["artifact_id"]
    art = client.get(f"/artifacts/{artifact_id}")
    assert art.status_code == 200
    assert art.headers["content-type"] == "image/png"
    assert art.content == PNG_BYTES


def test_provider_failure_surfaces_on_the_job(api):
    client, _ = api
    headers = auth(OWNER)

    resp = client.post(
        "/jobs",
        json={"kind": "video", "parameters": {"avatar_id": "anchor-1", "script": "Hello"}},
        headers=headers,
    )
    body = wait_terminal(client, resp.json()["job_id"], headers)

    assert body["status"] == "failed"
    assert body["error"] == {"message": "quota exceeded", "code": "GENERATION_FAILED", "details": body["error"]["details"]}


def test_invalid_parameters_are_400(api):
    client, _ = api
    resp = client.post("/jobs", json={"kind": "image", "parameters": {"prompt": ""}}, headers=auth(OWNER))
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "VALIDATION"


def test_other_owner_gets_403_and_unknown_job_404(api):
    client, _ = api
    job_id = client.post(
        "/jobs", json={"kind": "image", "parameters": {"prompt": "fox"}}, headers=auth(OWNER)
    ).json()["job_id"]

    assert client.get(f"/jobs/{job_id}", headers=auth(OTHER_OWNER)).status_code == 403
    assert client.get(f"/jobs/{uuid.uuid4()}", headers=auth(OWNER)).status_code == 404


def test_cancel_of_finished_job_is_400(api):
    client, _ = api
    headers = auth(OWNER)
    job_id = client.post("/jobs", json={"kind": "image", "parameters": {"prompt": "fox"}}, headers=headers).json()["job_id"]
    wait_terminal(client, job_id, headers)

    resp = client.post(f"/jobs/{job_id}/cancel", headers=headers)
    assert resp.status_code == 400


def test_retry_budget_exhausted_is_400(api):
    client, _ = api
    headers = auth(OWNER)
    job_id = client.post(
        "/jobs",
        json={"kind": "video", "parameters": {"avatar_id": "anchor-1", "script": "Hi"}, "max_retries": 0},
        headers=headers,
    ).json()["job_id"]
    wait_terminal(client, job_id, headers)

    resp = client.post(f"/jobs/{job_id}/retry", headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"]["message"] == "Maximum retry attempts reached"


def test_list_jobs_is_scoped_to_caller(api):
    client, _ = api
    client.post("/jobs", json={"kind": "image", "parameters": {"prompt": "fox"}}, headers=auth(OWNER))
    client.post("/jobs", json={"kind": "image", "parameters": {"prompt": "owl"}}, headers=auth(OTHER_OWNER))

    rows = client.get("/jobs", params={"kind": "image"}, headers=auth(OWNER)).json()
    assert len(rows) == 1
    assert rows[0]["parameters"]["prompt"] == "fox"
    assert client.get("/jobs", params={"limit": 0}, headers=auth(OWNER)).status_code == 422


def test_service_token_acts_for_header_user(api):
    client, _ = api
    headers = {"Authorization": "Bearer svc-secret", "X-Actor-User-Id": OWNER}

    job_id = client.post("/jobs", json={"kind": "image", "parameters": {"prompt": "fox"}}, headers=headers).json()["job_id"]

    assert client.get(f"/jobs/{job_id}", headers=auth(OWNER)).status_code == 200
    missing_actor = client.get("/jobs", headers={"Authorization": "Bearer svc-secret"})
    assert missing_actor.status_code == 401


def test_providers_lists_configured_per_kind(api):
    client, _ = api
    body = client.get("/providers", headers=auth(OWNER)).json()
    assert body["providers"]["image"] == ["fal"]
    assert body["providers"]["video"] == ["a2e"]
    assert "9:16" in body["aspect_ratios"]


def test_unknown_artifact_is_404(api):
    client, _ = api
    assert client.get(f"/artifacts/{uuid.uuid4()}").status_code == 404


def test_max_retries_follows_configured_ceiling(api, monkeypatch):
    client, _ = api
    headers = auth(OWNER)
    monkeypatch.setattr(settings, "MAX_RETRIES_CEILING", 7)

    def submit(n):
        return client.post("/jobs", json={"kind": "image", "parameters": {"prompt": "fox"}, "max_retries": n}, headers=headers)

    accepted = submit(6)
    assert accepted.status_code == 202
    wait_terminal(client, accepted.json()["job_id"], headers)

    for n in (8, -1):
        resp = submit(n)
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "VALIDATION"
