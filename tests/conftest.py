"""Shared fixtures: isolated state, a recording inference backend and a scriptable compositor."""

import itertools
import threading

import pytest

from stripforge.config import Settings
from stripforge.errors import ImageFetchError
from stripforge.inference.backends import SubmissionHandle
from stripforge.jobs.orchestrator import Orchestrator
from stripforge.jobs.schemas import CallbackOutcome, CallbackStatus
from stripforge.jobs.state_store import StateStore

STORY = "A hero saves the city."
CHARACTER = {"id": "c1", "name": "Hero", "image": "data:image/png;base64,AAAA"}
SCENES = [
    "The hero stands on a rooftop at dusk.",
    "A giant robot attacks downtown.",
    "The hero battles the robot in the streets.",
    "Citizens cheer as the sun rises.",
]


def succeeded(output):
    return CallbackOutcome(status=CallbackStatus.SUCCEEDED, output=output)


def failed(error="boom"):
    return CallbackOutcome(status=CallbackStatus.FAILED, error=error)


class FakeBackend:
    """Records submissions and hands out unique handles.

    `failures[(kind, key)]` is a list of exceptions raised, in order, by the
    next submissions for that key. `outcomes[handle]` is what fetch_outcome
    reports.
    """

    def __init__(self):
        self.submissions = []
        self.background_requests = []
        self.failures = {}
        self.outcomes = {}
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def _submit(self, kind, key):
        with self._lock:
            queue = self.failures.get((kind, key))
            if queue:
                raise queue.pop(0)
            handle = f"{kind}-{key}-{next(self._counter)}"
            self.submissions.append((kind, key, handle))
        return SubmissionHandle(handle=handle)

    def submit_segmentation(self, story, *, job_id):
        return self._submit("nlp", job_id)

    def submit_cartoonify(self, image, character_id):
        return self._submit("cartoonify", character_id)

    def submit_background(self, description, options, panel_id):
        with self._lock:
            self.background_requests.append((description, dict(options), panel_id))
        return self._submit("background", panel_id)

    def fetch_outcome(self, handle):
        return self.outcomes.get(handle)

    def handles(self, kind):
        return [h for k, _, h in self.submissions if k == kind]

    def latest(self, kind):
        """Most recent handle per key for one kind of submission."""
        latest = {}
        for k, key, handle in self.submissions:
            if k == kind:
                latest[key] = handle
        return latest


class FakeCompositor:
    """Composes nothing; returns URLs derived from the requested name."""

    def __init__(self):
        self.fail_backgrounds = set()
        self.strip_error = None
        self.panel_calls = []
        self.strip_calls = []

    def compose_panel(self, background_url, characters, *, name=None):
        self.panel_calls.append((background_url, list(characters), name))
        if background_url in self.fail_backgrounds:
            raise ImageFetchError(f"Failed to download image {background_url}: HTTP 404")
        return f"http://localhost:8000/generated/{name}.png"

    def compose_strip(self, panel_urls, layout=None, *, name=None):
        self.strip_calls.append(list(panel_urls))
        if self.strip_error is not None:
            raise self.strip_error
        return f"http://localhost:8000/generated/{name}.png"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        state_dir=tmp_path / "state",
        output_dir=tmp_path / "generated",
        environment="development",
        retry_delay=0,
        max_attempts=3,
    )


@pytest.fixture
def store(settings):
    return StateStore(settings.state_dir)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def compositor():
    return FakeCompositor()


@pytest.fixture
def make_orchestrator(settings, store, backend, compositor):
    """Build an orchestrator, optionally overriding settings fields."""

    def _make(**overrides):
        merged = settings.model_copy(update=overrides)
        return Orchestrator(store=store, backend=backend, compositor=compositor, settings=merged)

    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()
