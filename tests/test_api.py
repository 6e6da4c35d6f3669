"""Tests for the HTTP layer."""

import json

import pytest
from fastapi.testclient import TestClient

from conftest import CHARACTER, SCENES, STORY
from stripforge.api.main import create_app
from stripforge.inference.webhooks import SIGNATURE_HEADER, compute_signature
from stripforge.jobs.schemas import JobStatus, PhaseName


@pytest.fixture
def client(settings, orchestrator):
    with TestClient(create_app(settings, orchestrator=orchestrator)) as client:
        yield client


def start_payload(**overrides):
    payload = {"story": STORY, "characters": [CHARACTER], "style": "manga", "background": "city"}
    payload.update(overrides)
    return payload


class TestJobRoutes:
    def test_start_and_poll(self, client):
        response = client.post("/v1/jobs", json=start_payload())
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processing"
        assert body["progress"] == 0

        status = client.get(f"/v1/jobs/{body['job_id']}").json()
        assert status["status"] == "processing"
        assert status["phases"]["nlp"] == "processing"
        assert status["output_url"] is None

    def test_validation_error_is_422(self, client):
        response = client.post("/v1/jobs", json=start_payload(characters=[{"id": "c1", "name": "Hero"}]))
        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "characters[0].image"

    def test_unknown_job_is_404(self, client):
        assert client.get("/v1/jobs/job-nope").status_code == 404
        assert client.get("/v1/jobs/job-nope/output").status_code == 404

    def test_list_jobs(self, client):
        client.post("/v1/jobs", json=start_payload())
        body = client.get("/v1/jobs", params={"status": "processing"}).json()
        assert body["count"] == 1
        assert client.get("/v1/jobs", params={"status": "bogus"}).status_code == 422

    def test_output_of_failed_job_is_409(self, client, orchestrator):
        job_id = client.post("/v1/jobs", json=start_payload()).json()["job_id"]
        orchestrator.fail(job_id, PhaseName.NLP, "bad story")
        response = client.get(f"/v1/jobs/{job_id}/output")
        assert response.status_code == 409
        assert "bad story" in response.json()["detail"]

    def test_failed_job_exposes_reason_only(self, client, orchestrator):
        job_id = client.post("/v1/jobs", json=start_payload()).json()["job_id"]
        orchestrator.fail(job_id, PhaseName.NLP, "segmentation failed")
        status = client.get(f"/v1/jobs/{job_id}").json()
        assert status["status"] == "failed"
        assert status["error"] == "segmentation failed"

    def test_polling_expires_stalled_items(self, settings, orchestrator):
        orchestrator.settings = settings.model_copy(update={"item_timeout": -1})
        with TestClient(create_app(settings, orchestrator=orchestrator)) as client:
            job_id = client.post("/v1/jobs", json=start_payload()).json()["job_id"]
            status = client.get(f"/v1/jobs/{job_id}").json()
        assert status["status"] == "failed"
        assert "Timed out" in status["error"]


class TestWebhookRoute:
    def test_callback_advances_job(self, client, backend, store):
        job_id = client.post("/v1/jobs", json=start_payload()).json()["job_id"]
        handle = backend.handles("nlp")[0]

        response = client.post("/v1/webhooks/inference", json={"id": handle, "status": "succeeded", "output": SCENES})

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        job = store.get(job_id)
        assert job.phase(PhaseName.NLP).status.value == "completed"
        assert len(backend.handles("cartoonify")) == 1

    @pytest.mark.parametrize(
        "body",
        [b"garbage", b'{"status": "succeeded"}', b'{"id": "unknown-handle", "status": "succeeded"}',
         b'{"id": "p", "status": "processing"}'],
    )
    def test_bad_or_unknown_callbacks_are_acknowledged(self, client, body):
        response = client.post("/v1/webhooks/inference", content=body, headers={"Content-Type": "application/json"})
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_signature_is_enforced_when_configured(self, settings, orchestrator, backend, store):
        orchestrator.settings = settings.model_copy(update={"webhook_secret": "s3cret"})
        with TestClient(create_app(settings, orchestrator=orchestrator)) as client:
            job_id = client.post("/v1/jobs", json=start_payload()).json()["job_id"]
            body = json.dumps({"id": backend.handles("nlp")[0], "status": "succeeded", "output": SCENES}).encode()

            unsigned = client.post("/v1/webhooks/inference", content=body)
            assert unsigned.status_code == 200
            assert store.get(job_id).phase(PhaseName.NLP).status.value == "processing"

            signed = client.post(
                "/v1/webhooks/inference",
                content=body,
                headers={SIGNATURE_HEADER: compute_signature("s3cret", body)},
            )
            assert signed.status_code == 200
            assert store.get(job_id).phase(PhaseName.NLP).status.value == "completed"


class TestServiceRoutes:
    def test_health_and_root(self, client):
        assert client.get("/health").json()["status"] == "healthy"
        assert client.get("/").json()["endpoints"]["jobs"] == "/v1/jobs"

    def test_generated_images_are_served(self, client, settings):
        (settings.output_dir / "panel-abc.png").write_bytes(b"\x89PNG fake")
        response = client.get("/generated/panel-abc.png")
        assert response.status_code == 200
        assert response.content == b"\x89PNG fake"


def test_job_status_enum_matches_api_values():
    assert [s.value for s in JobStatus] == ["init", "processing", "completed", "failed"]
