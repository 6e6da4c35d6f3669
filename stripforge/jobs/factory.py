"""Orchestrator factory.

Wires the orchestrator and its collaborators from settings. Importing this
module has no side effects, so scripts can build an orchestrator without
loading the API app.
"""

import logging

from stripforge.composition.compositor import Compositor
from stripforge.config import Settings
from stripforge.inference.factory import get_backend
from stripforge.jobs.orchestrator import Orchestrator
from stripforge.jobs.state_store import StateStore

logger = logging.getLogger(__name__)


def build_orchestrator(settings: Settings) -> Orchestrator:
    """Build an orchestrator backed by the file store and the configured backend.

    Args:
        settings: Service settings (state_dir, provider token, output paths)

    Returns:
        Orchestrator ready to start jobs and accept callbacks
    """
    logger.debug(f"Building orchestrator (state_dir={settings.state_dir}, env={settings.environment})")
    return Orchestrator(
        store=StateStore(settings.state_dir),
        backend=get_backend(settings),
        compositor=Compositor(settings),
        settings=settings,
    )
