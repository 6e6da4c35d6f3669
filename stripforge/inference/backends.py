"""Inference backend abstraction.

The orchestrator needs three long-running submissions from the provider
(story segmentation, character cartoonification, panel background) plus an
optional way to poll a handle when its webhook never arrives. Each backend
hides the provider's request format behind that contract.

Backends raise SubmissionError on failure, with `transient=True` for
network-class problems (connection errors, timeouts, 429 and 5xx
responses) that are worth retrying. Retry itself is the orchestrator's job.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

from stripforge.config import Settings
from stripforge.errors import SubmissionError
from stripforge.inference.prompts import (
    build_background_prompt,
    build_segmentation_prompt,
    negative_prompt,
)
from stripforge.jobs.schemas import CallbackOutcome, CallbackStatus

logger = logging.getLogger(__name__)

# Provider statuses that mean the prediction is finished
SUCCEEDED_STATUSES = ("succeeded", "completed", "success")
FAILED_STATUSES = ("failed", "canceled", "cancelled", "error")


@dataclass
class SubmissionHandle:
    """Opaque handle returned by a submission, plus the provider's initial status."""

    handle: str
    status: str = "starting"
    duration_ms: int = 0


@runtime_checkable
class InferenceBackend(Protocol):
    """Contract between the orchestrator and the inference provider."""

    def submit_segmentation(self, story: str, *, job_id: str) -> SubmissionHandle: ...

    def submit_cartoonify(self, image: str, character_id: str) -> SubmissionHandle: ...

    def submit_background(
        self,
        description: str,
        options: dict[str, Any],
        panel_id: str,
    ) -> SubmissionHandle: ...

    def fetch_outcome(self, handle: str) -> Optional[CallbackOutcome]:
        """Poll a handle. Returns None while the prediction is still running."""
        ...


def outcome_from_prediction(prediction: dict[str, Any]) -> Optional[CallbackOutcome]:
    """Map a provider prediction record to a terminal outcome, if it has one."""
    status = str(prediction.get("status", "")).lower()
    if status in SUCCEEDED_STATUSES:
        return CallbackOutcome(status=CallbackStatus.SUCCEEDED, output=prediction.get("output"))
    if status in FAILED_STATUSES:
        error = prediction.get("error") or f"Prediction {status}"
        return CallbackOutcome(status=CallbackStatus.FAILED, error=str(error))
    return None


class ReplicateBackend:
    """Replicate predictions API.

    Each submission creates a prediction with a completion webhook pointing
    back at this service. In development the webhook is omitted (the
    provider cannot reach localhost); stalled items are then resolved by the
    sweeper through fetch_outcome().
    """

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self._client = client or httpx.Client(
            base_url=settings.replicate_api_url.rstrip("/"),
            timeout=httpx.Timeout(
                connect=10.0,
                read=settings.submission_timeout,
                write=settings.submission_timeout,
                pool=10.0,
            ),
        )

    def _headers(self) -> dict[str, str]:
        if not self.settings.replicate_api_token:
            raise SubmissionError("Replicate API token not configured", transient=False)
        return {
            "Authorization": f"Token {self.settings.replicate_api_token}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, label: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise SubmissionError(f"[{label}] Timed out: {e}", transient=True) from e
        except httpx.TransportError as e:
            raise SubmissionError(f"[{label}] Connection error: {e}", transient=True) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise SubmissionError(
                f"[{label}] Provider returned HTTP {response.status_code}",
                transient=True,
            )
        if response.status_code >= 400:
            raise SubmissionError(
                f"[{label}] Provider rejected request: HTTP {response.status_code} {response.text[:200]}",
                transient=False,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise SubmissionError(f"[{label}] Invalid JSON from provider", transient=False) from e
        if not isinstance(data, dict):
            raise SubmissionError(f"[{label}] Unexpected response shape", transient=False)
        return data

    def _create_prediction(self, version: str, model_input: dict[str, Any], label: str) -> SubmissionHandle:
        body: dict[str, Any] = {"version": version, "input": model_input}
        if not self.settings.is_development:
            body["webhook"] = self.settings.webhook_url
            body["webhook_events_filter"] = ["completed"]

        start_time = time.time()
        data = self._request("POST", "/predictions", label, json=body)
        duration_ms = int((time.time() - start_time) * 1000)

        if not data.get("id"):
            raise SubmissionError(f"[{label}] Invalid prediction response: missing id", transient=False)

        logger.info(
            f"[{label}] Prediction {data['id']} created "
            f"(status={data.get('status', 'unknown')}, webhook={'webhook' in body}, {duration_ms}ms)"
        )
        return SubmissionHandle(
            handle=str(data["id"]),
            status=str(data.get("status", "starting")),
            duration_ms=duration_ms,
        )

    def submit_segmentation(self, story: str, *, job_id: str) -> SubmissionHandle:
        return self._create_prediction(
            self.settings.nlp_model,
            {
                "prompt": build_segmentation_prompt(story),
                "max_length": 2048,
                "temperature": 0.75,
                "top_p": 0.9,
                "repetition_penalty": 1.2,
            },
            label=f"{job_id}/nlp",
        )

    def submit_cartoonify(self, image: str, character_id: str) -> SubmissionHandle:
        return self._create_prediction(
            self.settings.cartoonify_model,
            {"image": image, "seed": 2862431},
            label=f"cartoonify/{character_id}",
        )

    def submit_background(
        self,
        description: str,
        options: dict[str, Any],
        panel_id: str,
    ) -> SubmissionHandle:
        return self._create_prediction(
            self.settings.background_model,
            {
                "prompt": build_background_prompt(description, options),
                "negative_prompt": negative_prompt(),
                "width": self.settings.panel_width,
                "height": self.settings.panel_height,
                "num_outputs": 1,
                "num_inference_steps": 50,
                "guidance_scale": 7.5,
                "apply_watermark": False,
            },
            label=f"background/{panel_id}",
        )

    def fetch_outcome(self, handle: str) -> Optional[CallbackOutcome]:
        prediction = self._request("GET", f"/predictions/{handle}", label=f"poll/{handle}")
        return outcome_from_prediction(prediction)

    def close(self) -> None:
        self._client.close()
