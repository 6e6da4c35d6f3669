"""Inference webhook ingress.

    POST /v1/webhooks/inference

Always answers 200 {"status": "ok"}: the provider cannot act on our
processing errors, so they go to the log. The callback itself is applied
in a background task after the response is sent.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Request

from stripforge.errors import CallbackError
from stripforge.inference.webhooks import SIGNATURE_HEADER, parse_callback, verify_signature
from stripforge.jobs.orchestrator import Orchestrator
from stripforge.jobs.schemas import CallbackOutcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

ACK = {"status": "ok"}


def process_callback(orchestrator: Orchestrator, handle: str, outcome: CallbackOutcome) -> None:
    try:
        orchestrator.on_callback(handle, outcome)
    except Exception as e:
        logger.error(f"Processing callback {handle} failed: {e}", exc_info=True)


@router.post("/inference")
async def inference_webhook(request: Request, background_tasks: BackgroundTasks):
    orchestrator: Orchestrator = request.app.state.orchestrator
    body = await request.body()

    secret = orchestrator.settings.webhook_secret
    if not verify_signature(secret, body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("Rejected webhook with missing or invalid signature")
        return ACK

    try:
        parsed = parse_callback(body)
    except CallbackError as e:
        logger.warning(f"Ignoring malformed webhook: {e}")
        return ACK

    if parsed.outcome is None:
        logger.debug(f"Webhook for {parsed.handle} with status '{parsed.raw_status}'; not terminal yet")
        return ACK

    logger.info(f"Webhook for {parsed.handle}: {parsed.outcome.status.value}")
    background_tasks.add_task(process_callback, orchestrator, parsed.handle, parsed.outcome)
    return ACK
