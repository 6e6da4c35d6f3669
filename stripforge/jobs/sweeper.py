"""Stalled-item sweep.

Webhooks can be lost. The sweep walks every job that is still processing
and hands it to Orchestrator.expire_stalled_items(), which polls the
provider for each stalled handle and times out whatever is still
unresolved. It is optional infrastructure around the orchestrator: it can
run on a daemon thread inside the API process (STRIPFORGE_SWEEP_INTERVAL > 0),
from cron via scripts/sweep_stalled.py, or not at all.
"""

import logging
import threading
from typing import Optional

from stripforge.errors import StripforgeError
from stripforge.jobs.orchestrator import Orchestrator
from stripforge.jobs.schemas import JobStatus

logger = logging.getLogger(__name__)


class StallSweeper:
    def __init__(self, orchestrator: Orchestrator, timeout_seconds: float, interval_seconds: float = 60.0):
        self.orchestrator = orchestrator
        self.timeout_seconds = timeout_seconds
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        """Sweep all processing jobs once. Returns the number of items resolved."""
        jobs = self.orchestrator.store.list_jobs(status=JobStatus.PROCESSING)
        resolved = 0
        for job in jobs:
            try:
                resolved += self.orchestrator.expire_stalled_items(job.id, self.timeout_seconds)
            except StripforgeError as e:
                # One broken job must not stop the sweep of the others
                logger.error(f"[{job.id}] Stall sweep failed: {e}")
        if resolved:
            logger.info(f"Stall sweep resolved {resolved} items across {len(jobs)} jobs")
        return resolved

    def _loop(self) -> None:
        logger.info(
            f"Stall sweeper started (interval={self.interval_seconds}s, "
            f"timeout={self.timeout_seconds}s)"
        )
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Stall sweep crashed: {e}", exc_info=True)
        logger.info("Stall sweeper stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="stall-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
