"""Tests for the Replicate backend, against a mocked HTTP transport."""

import json

import httpx
import pytest

from stripforge.errors import SubmissionError
from stripforge.inference.backends import InferenceBackend, ReplicateBackend
from stripforge.inference.factory import get_backend
from stripforge.jobs.schemas import CallbackStatus


def make_backend(settings, handler, **overrides):
    settings = settings.model_copy(update={"replicate_api_token": "r8_test", **overrides})
    client = httpx.Client(base_url="https://api.replicate.test/v1", transport=httpx.MockTransport(handler))
    return ReplicateBackend(settings, client=client)


class TestSubmissions:
    def test_background_submission_body(self, settings):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"id": "pred-1", "status": "starting"})

        backend = make_backend(settings, handler, environment="production")
        handle = backend.submit_background("A robot attacks downtown.", {"style": "manga", "background": "city"}, "panel-2")

        assert handle.handle == "pred-1"
        request = seen[0]
        assert request.url.path == "/v1/predictions"
        assert request.headers["Authorization"] == "Token r8_test"
        body = json.loads(request.content)
        assert body["version"] == settings.background_model
        assert body["webhook"] == "http://localhost:8000/v1/webhooks/inference"
        assert body["webhook_events_filter"] == ["completed"]
        assert body["input"]["prompt"] == (
            "Generate a manga style background for a comic panel showing: A robot attacks downtown. "
            "The scene should be set in a city environment."
        )
        assert "blurry" in body["input"]["negative_prompt"]

    def test_development_omits_webhook(self, settings):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(201, json={"id": "pred-2", "status": "starting"})

        backend = make_backend(settings, handler, environment="development")
        backend.submit_cartoonify("data:image/png;base64,AAAA", "c1")
        assert "webhook" not in seen[0]
        assert seen[0]["input"]["image"] == "data:image/png;base64,AAAA"

    @pytest.mark.parametrize("status_code", [429, 500, 503])
    def test_server_errors_are_transient(self, settings, status_code):
        backend = make_backend(settings, lambda request: httpx.Response(status_code))
        with pytest.raises(SubmissionError) as exc_info:
            backend.submit_segmentation("story", job_id="job-1")
        assert exc_info.value.transient

    def test_connection_errors_are_transient(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        backend = make_backend(settings, handler)
        with pytest.raises(SubmissionError) as exc_info:
            backend.submit_segmentation("story", job_id="job-1")
        assert exc_info.value.transient

    @pytest.mark.parametrize(
        "response",
        [httpx.Response(422, json={"detail": "bad input"}), httpx.Response(201, json={"status": "starting"})],
    )
    def test_rejections_are_permanent(self, settings, response):
        backend = make_backend(settings, lambda request: response)
        with pytest.raises(SubmissionError) as exc_info:
            backend.submit_segmentation("story", job_id="job-1")
        assert not exc_info.value.transient

    def test_missing_token_is_permanent(self, settings):
        backend = make_backend(settings, lambda request: httpx.Response(201, json={"id": "x"}), replicate_api_token=None)
        with pytest.raises(SubmissionError) as exc_info:
            backend.submit_segmentation("story", job_id="job-1")
        assert not exc_info.value.transient


class TestFetchOutcome:
    def test_running_prediction_has_no_outcome(self, settings):
        backend = make_backend(settings, lambda request: httpx.Response(200, json={"id": "p", "status": "processing"}))
        assert backend.fetch_outcome("p") is None

    def test_succeeded_prediction(self, settings):
        def handler(request):
            assert request.url.path == "/v1/predictions/p"
            return httpx.Response(200, json={"id": "p", "status": "succeeded", "output": ["https://img.test/x.png"]})

        outcome = make_backend(settings, handler).fetch_outcome("p")
        assert outcome.status == CallbackStatus.SUCCEEDED
        assert outcome.output == ["https://img.test/x.png"]


def test_factory_returns_replicate_backend(settings):
    backend = get_backend(settings)
    assert isinstance(backend, ReplicateBackend)
    assert isinstance(backend, InferenceBackend)
