"""Webhook ingress helpers: signature check and payload parsing.

Both are pure functions over the raw request so the route stays a thin
acknowledgment layer and the orchestrator never sees transport details.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from stripforge.errors import CallbackError
from stripforge.inference.backends import FAILED_STATUSES, SUCCEEDED_STATUSES
from stripforge.jobs.schemas import CallbackOutcome, CallbackStatus

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Replicate-Webhook-Signature"


@dataclass
class ParsedCallback:
    """A webhook reduced to what the orchestrator needs.

    `outcome` is None for non-terminal statuses (starting, processing),
    which are acknowledged and ignored.
    """

    handle: str
    outcome: Optional[CallbackOutcome]
    raw_status: str


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: Optional[str], body: bytes, signature: Optional[str]) -> bool:
    """Check the HMAC-SHA256 hex digest of the raw body.

    Always passes when no secret is configured.
    """
    if not secret:
        return True
    if not signature:
        return False
    expected = compute_signature(secret, body)
    return hmac.compare_digest(expected, signature.strip().lower())


def parse_callback(payload: Any) -> ParsedCallback:
    """Parse a callback payload.

    Accepts our own `{handle, status, output?, error?}` shape and the
    provider's native prediction record `{id, status, output, error, ...}`.
    Raises CallbackError if the payload cannot be attributed to a handle.
    """
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            raise CallbackError(f"Webhook body is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise CallbackError(f"Webhook body must be a JSON object, got {type(payload).__name__}")

    handle = payload.get("handle") or payload.get("id")
    if not handle or not isinstance(handle, str):
        raise CallbackError("Webhook payload has no handle or id")

    raw_status = str(payload.get("status") or "").strip().lower()
    if not raw_status:
        raise CallbackError(f"Webhook payload for {handle} has no status")

    if raw_status in SUCCEEDED_STATUSES:
        outcome = CallbackOutcome(status=CallbackStatus.SUCCEEDED, output=payload.get("output"))
    elif raw_status in FAILED_STATUSES:
        error = payload.get("error") or f"Prediction {raw_status}"
        outcome = CallbackOutcome(status=CallbackStatus.FAILED, error=str(error))
    else:
        outcome = None

    return ParsedCallback(handle=handle, outcome=outcome, raw_status=raw_status)
