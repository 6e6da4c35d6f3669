"""Inference backend factory.

Resolves the configured provider to a backend implementation.
"""

import logging

from stripforge.config import Settings
from stripforge.inference.backends import InferenceBackend, ReplicateBackend

logger = logging.getLogger(__name__)


def get_backend(settings: Settings) -> InferenceBackend:
    """Get the inference backend for these settings.

    Replicate is the only provider. A missing API token is not an error
    here: submissions will fail with a non-transient SubmissionError, which
    the orchestrator records on the job.
    """
    if not settings.replicate_api_token:
        logger.warning("REPLICATE_API_TOKEN is not set; every submission will fail")
    return ReplicateBackend(settings)
