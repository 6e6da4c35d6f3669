"""Job orchestrator: decides and performs the next action for a comic strip job.

Pipeline (strictly sequential phases):
    nlp          one segmentation submission for the story
    characters   one cartoonify submission per character
    backgrounds  one background submission per panel
    composition  one Compositor call per panel, then the strip

Progress is driven entirely by inbound events. start_job() and every
webhook callback end in advance(), which repeatedly:
    1. claims the next action under the job lock (marks the items as
       dispatched and persists that before anything external happens)
    2. performs it outside the lock (provider submissions or composition)
until nothing is left to claim. Concurrent advance() calls therefore never
dispatch the same item twice, and no lock is held during slow calls.

Item-level failures are recorded on the job, never raised. Only structural
problems (missing job, broken handle index, storage failure) reach callers.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from stripforge.composition.compositor import Compositor
from stripforge.config import Settings
from stripforge.errors import (
    CallbackError,
    ImageCompositionError,
    JobFailed,
    StripforgeError,
    SubmissionError,
    ValidationError,
)
from stripforge.inference.backends import InferenceBackend, SubmissionHandle
from stripforge.jobs.phase_tracker import (
    claimable_items,
    failed_items,
    init_phase,
    mark_phase_processing,
    transition_job,
    update_item,
)
from stripforge.jobs.schemas import (
    PANEL_COUNT,
    PIPELINE,
    CallbackOutcome,
    Character,
    HandleRecord,
    ItemState,
    ItemStatus,
    Job,
    JobFailure,
    JobOutput,
    JobStatus,
    Panel,
    PanelComposition,
    PhaseName,
    PhaseStatus,
    utc_now,
)
from stripforge.jobs.segmentation import parse_segmentation_output
from stripforge.jobs.state_store import StateStore

logger = logging.getLogger(__name__)

STORY_ITEM = "story"

# Phases whose items are external submissions. A failed item in any of
# these fails the whole job.
SUBMISSION_PHASES = (PhaseName.NLP, PhaseName.CHARACTERS, PhaseName.BACKGROUNDS)


@dataclass
class _Action:
    """Work claimed under the lock, to be performed outside it."""

    phase: PhaseName
    item_ids: list[str]


def panel_id(index: int) -> str:
    return f"panel-{index + 1}"


def _first_url(output: Any) -> Optional[str]:
    if isinstance(output, str) and output.strip():
        return output.strip()
    if isinstance(output, list):
        for entry in output:
            if isinstance(entry, str) and entry.strip():
                return entry.strip()
    return None


class Orchestrator:
    """Drives jobs through the pipeline. All collaborators are injected."""

    def __init__(
        self,
        store: StateStore,
        backend: InferenceBackend,
        compositor: Compositor,
        settings: Settings,
    ):
        self.store = store
        self.backend = backend
        self.compositor = compositor
        self.settings = settings
        self.retry_policy = settings.retry_policy

    # ------------------------------------------------------------------
    # Job creation
    # ------------------------------------------------------------------

    def start_job(
        self,
        story: str,
        characters: list[Any],
        options: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Validate, persist and start a job.

        Raises ValidationError for bad input, before any state exists. Once
        the job is persisted this never raises for progression problems:
        the job is failed instead and returned with status 'failed'.
        """
        story, parsed = self._validate(story, characters)
        job = Job(story=story, characters=parsed, options=dict(options or {}))
        self.store.put(job)
        logger.info(f"[{job.id}] Created job with {len(parsed)} characters")

        try:
            job = self.advance(job.id)
        except Exception as e:
            logger.error(f"[{job.id}] Failed to start job: {e}", exc_info=True)
            job = self.fail(job.id, PhaseName.NLP, f"Failed to start: {e}")

        return {"job_id": job.id, "status": job.status.value, "progress": job.progress}

    @staticmethod
    def _validate(story: Any, characters: Any) -> tuple[str, list[Character]]:
        if not isinstance(story, str) or not story.strip():
            raise ValidationError("story must be a non-empty string", field="story")
        if not isinstance(characters, list) or not characters:
            raise ValidationError("characters must be a non-empty list", field="characters")

        parsed: list[Character] = []
        seen: set[str] = set()
        for index, raw in enumerate(characters):
            if isinstance(raw, Character):
                raw = raw.model_dump()
            if not isinstance(raw, dict):
                raise ValidationError(
                    f"characters[{index}] must be an object",
                    field=f"characters[{index}]",
                )
            for key in ("id", "name", "image"):
                value = raw.get(key)
                if not isinstance(value, str) or not value.strip():
                    raise ValidationError(
                        f"characters[{index}].{key} is required",
                        field=f"characters[{index}].{key}",
                    )
            character_id = raw["id"].strip()
            if character_id in seen:
                raise ValidationError(
                    f"Duplicate character id: {character_id}",
                    field=f"characters[{index}].id",
                )
            seen.add(character_id)
            parsed.append(Character(id=character_id, name=raw["name"].strip(), image=raw["image"].strip()))

        return story.strip(), parsed

    # ------------------------------------------------------------------
    # advance(): claim then dispatch
    # ------------------------------------------------------------------

    def advance(self, job_id: str) -> Job:
        """Re-evaluate a job and perform whatever is due. Safe to call any time."""
        while True:
            claimed: dict[str, Optional[_Action]] = {"action": None}

            def claim(job: Job) -> Optional[Job]:
                action, changed = self._claim_next_action(job)
                claimed["action"] = action
                return job if changed else None

            job = self.store.update(job_id, claim)
            action = claimed["action"]
            if action is None:
                return job

            if action.phase == PhaseName.COMPOSITION:
                self._run_composition(job, action.item_ids)
            else:
                self._dispatch_submissions(job, action)

    def _claim_next_action(self, job: Job) -> tuple[Optional[_Action], bool]:
        """Decide the next action. Returns (action, whether the job changed)."""
        if job.is_terminal:
            logger.debug(f"[{job.id}] advance on {job.status.value} job; nothing to do")
            return None, False

        if job.status == JobStatus.INIT:
            transition_job(job, JobStatus.PROCESSING)
            state = init_phase(job, PhaseName.NLP, [STORY_ITEM])
            mark_phase_processing(state)
            return self._claim_items(job, PhaseName.NLP, claimable_items(state)), True

        for phase in SUBMISSION_PHASES:
            state = job.phase(phase)
            if state.status == PhaseStatus.FAILED:
                self._mark_failed(job, phase, self._phase_failure_reason(phase, failed_items(state)))
                return None, True

        for index, phase in enumerate(PIPELINE):
            state = job.phase(phase)
            if state.status == PhaseStatus.COMPLETED:
                continue
            if index > 0 and job.phase(PIPELINE[index - 1]).status != PhaseStatus.COMPLETED:
                return None, False

            changed = False
            if state.status == PhaseStatus.PENDING and not state.items:
                state = init_phase(job, phase, self._item_ids(job, phase))
                mark_phase_processing(state)
                changed = True

            items = claimable_items(state)
            if not items:
                # Waiting on outstanding callbacks
                return None, changed
            return self._claim_items(job, phase, items), True

        return None, False

    def _item_ids(self, job: Job, phase: PhaseName) -> list[str]:
        if phase == PhaseName.NLP:
            return [STORY_ITEM]
        if phase == PhaseName.CHARACTERS:
            return [c.id for c in job.characters if c.status == ItemStatus.PENDING]
        return [panel.id for panel in job.panels]

    def _claim_items(self, job: Job, phase: PhaseName, items: list[ItemState]) -> _Action:
        now = utc_now()
        for item in items:
            item.dispatched_at = now
            item.updated_at = now
        logger.info(f"[{job.id}] Dispatching {phase.value}: {', '.join(i.id for i in items)}")
        return _Action(phase=phase, item_ids=[item.id for item in items])

    @staticmethod
    def _phase_failure_reason(phase: PhaseName, items: list[ItemState]) -> str:
        details = "; ".join(f"{item.id}: {item.error or 'unknown error'}" for item in items)
        return f"{phase.value} phase failed ({details})"

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def _dispatch_submissions(self, job: Job, action: _Action) -> None:
        workers = max(1, min(self.settings.max_parallel_submissions, len(action.item_ids)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self._submit_item, job, action.phase, item_id): item_id
                for item_id in action.item_ids
            }
            for future in as_completed(futures):
                # Storage errors propagate; item failures are already recorded
                future.result()

    def _submit(self, job: Job, phase: PhaseName, item_id: str) -> SubmissionHandle:
        if phase == PhaseName.NLP:
            return self.backend.submit_segmentation(job.story, job_id=job.id)
        if phase == PhaseName.CHARACTERS:
            character = job.character(item_id)
            return self.backend.submit_cartoonify(character.image, character.id)
        panel = job.panel(item_id)
        return self.backend.submit_background(panel.description, job.options, panel.id)

    def _submit_with_retry(
        self,
        job: Job,
        phase: PhaseName,
        item_id: str,
        budget: int,
    ) -> tuple[Optional[SubmissionHandle], int, Optional[str]]:
        """Submit with linear backoff on transient errors.

        Returns (handle or None, attempts spent, last error).
        """
        label = f"{job.id}/{phase.value}/{item_id}"
        last_error = None

        for attempt in range(1, budget + 1):
            if attempt > 1:
                delay = self.retry_policy.delay_seconds * (attempt - 1)
                logger.warning(
                    f"[{label}] Retry {attempt - 1}/{budget - 1} after {delay}s "
                    f"(previous error: {last_error})"
                )
                if delay > 0:
                    time.sleep(delay)

            try:
                return self._submit(job, phase, item_id), attempt, None
            except SubmissionError as e:
                last_error = str(e)
                logger.error(f"[{label}] Submission attempt {attempt} failed: {last_error}")
                if not e.transient:
                    return None, attempt, last_error
            except Exception as e:
                logger.error(f"[{label}] Unexpected submission error: {e}", exc_info=True)
                return None, attempt, f"Unexpected submission error: {e}"

        return None, budget, f"Failed after {budget} attempts. Last error: {last_error}"

    def _submit_item(self, job: Job, phase: PhaseName, item_id: str) -> None:
        claimed_item = job.phase(phase).items[item_id]
        spent = claimed_item.attempts
        claimed_at = claimed_item.dispatched_at
        budget = max(1, self.retry_policy.max_attempts - spent)
        submission, attempts, error = self._submit_with_retry(job, phase, item_id, budget)

        if submission is None:
            def record_failure(current: Job) -> Optional[Job]:
                if current.is_terminal:
                    return None
                item = current.phase(phase).items[item_id]
                if item.dispatched_at != claimed_at:
                    return None
                update_item(
                    current, phase, item_id,
                    status=ItemStatus.FAILED,
                    error=error,
                    attempts=item.attempts + attempts,
                )
                self._mirror_item(current, phase, item_id, ItemStatus.FAILED, error)
                return current

            self.store.update(job.id, record_failure)
            return

        terminal = {"value": False}

        def record_attempts(current: Job) -> Optional[Job]:
            if current.is_terminal:
                terminal["value"] = True
                return None
            item = current.phase(phase).items[item_id]
            update_item(current, phase, item_id, attempts=item.attempts + attempts)
            return current

        # Spent attempts land before the handle is indexed, so an early
        # failed webhook is judged against the full count
        self.store.update(job.id, record_attempts)
        if terminal["value"]:
            return

        # Index before binding: a webhook may arrive before the item update lands
        self.store.put_handle(HandleRecord(
            handle=submission.handle,
            job_id=job.id,
            phase=phase,
            item_id=item_id,
        ))

        def record_handle(current: Job) -> Optional[Job]:
            if current.is_terminal:
                terminal["value"] = True
                return None
            item = current.phase(phase).items[item_id]
            # Only bind the handle to the claim that made it
            if item.status != ItemStatus.PENDING or item.dispatched_at != claimed_at:
                return None
            update_item(
                current, phase, item_id,
                status=ItemStatus.PROCESSING,
                external_handle=submission.handle,
            )
            self._mirror_item(current, phase, item_id, ItemStatus.PROCESSING)
            return current

        self.store.update(job.id, record_handle)
        if terminal["value"]:
            self.store.delete_handle(submission.handle)

    @staticmethod
    def _mirror_item(
        job: Job,
        phase: PhaseName,
        item_id: str,
        status: ItemStatus,
        error: Optional[str] = None,
    ) -> None:
        """Keep Character/Panel status in step with their phase item."""
        if phase == PhaseName.CHARACTERS:
            target = job.character(item_id)
        elif phase in (PhaseName.BACKGROUNDS, PhaseName.COMPOSITION):
            target = job.panel(item_id)
        else:
            return
        if target is not None:
            target.status = status
            target.error = error

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def on_callback(self, handle: str, outcome: CallbackOutcome) -> Optional[Job]:
        """Apply a terminal outcome for an external handle, then advance.

        Unknown or already consumed handles are no-ops and return None.
        """
        record = self.store.get_handle(handle)
        if record is None:
            logger.info(f"Callback for unknown or consumed handle {handle}; ignoring")
            return None

        applied = {"value": False}

        def apply(job: Job) -> Optional[Job]:
            if job.is_terminal:
                logger.info(
                    f"[{job.id}] Callback {handle} for {record.phase.value}/{record.item_id} "
                    f"after job {job.status.value}; ignoring"
                )
                return None

            item = job.phase(record.phase).items.get(record.item_id)
            if item is None:
                raise CallbackError(
                    f"Handle {handle} points at missing item "
                    f"{record.phase.value}/{record.item_id} in job {job.id}"
                )
            if item.status in (ItemStatus.COMPLETED, ItemStatus.FAILED) or (
                item.external_handle is not None and item.external_handle != handle
            ):
                logger.info(f"[{job.id}] Stale callback {handle} for {record.item_id}; ignoring")
                return None

            if item.external_handle is None:
                update_item(job, record.phase, record.item_id, external_handle=handle)

            if outcome.succeeded:
                self._apply_success(job, record, outcome)
            else:
                self._apply_failure(job, record, outcome.error)
            applied["value"] = True
            return job

        job = self.store.update(record.job_id, apply)
        self.store.delete_handle(handle)

        if not applied["value"]:
            return job
        return self.advance(job.id)

    def _apply_success(self, job: Job, record: HandleRecord, outcome: CallbackOutcome) -> None:
        phase, item_id = record.phase, record.item_id

        if phase == PhaseName.NLP:
            try:
                segments = parse_segmentation_output(outcome.output, PANEL_COUNT)
            except ValueError as e:
                self._apply_failure(job, record, f"Unusable segmentation output: {e}")
                return
            job.panels = [
                Panel(id=panel_id(i), description=text) for i, text in enumerate(segments)
            ]
            job.phase(phase).result = segments
            update_item(job, phase, item_id, status=ItemStatus.COMPLETED, result=segments, error=None)
            logger.info(f"[{job.id}] Story segmented into {len(segments)} panels")
            return

        url = _first_url(outcome.output)
        if url is None:
            self._apply_failure(job, record, f"No image URL in output: {str(outcome.output)[:100]}")
            return

        if phase == PhaseName.CHARACTERS:
            character = job.character(item_id)
            if character is not None:
                character.cartoonify_url = url
            self._mirror_item(job, phase, item_id, ItemStatus.COMPLETED)
        elif phase == PhaseName.BACKGROUNDS:
            panel = job.panel(item_id)
            if panel is not None:
                panel.background_url = url

        update_item(job, phase, item_id, status=ItemStatus.COMPLETED, result=url, error=None)
        logger.info(f"[{job.id}] {phase.value}/{item_id} completed")

    def _apply_failure(self, job: Job, record: HandleRecord, error: Optional[str]) -> None:
        phase, item_id = record.phase, record.item_id
        error = error or "External job failed"
        item = job.phase(phase).items[item_id]

        if item.attempts < self.retry_policy.max_attempts:
            logger.warning(
                f"[{job.id}] {phase.value}/{item_id} failed ({error}); re-queueing "
                f"(attempt {item.attempts}/{self.retry_policy.max_attempts})"
            )
            update_item(
                job, phase, item_id,
                status=ItemStatus.PENDING,
                external_handle=None,
                dispatched_at=None,
                error=error,
            )
            self._mirror_item(job, phase, item_id, ItemStatus.PENDING, error)
            return

        logger.error(f"[{job.id}] {phase.value}/{item_id} failed permanently: {error}")
        update_item(job, phase, item_id, status=ItemStatus.FAILED, error=error)
        self._mirror_item(job, phase, item_id, ItemStatus.FAILED, error)

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------

    def _compose_one(self, job: Job, pid: str, character_urls: list[str]) -> PanelComposition:
        panel = job.panel(pid)
        if panel is None or not panel.background_url:
            return PanelComposition(panel_id=pid, error="Panel has no background image")
        try:
            url = self.compositor.compose_panel(
                panel.background_url,
                list(character_urls),
                name=f"{job.id}-{pid}",
            )
            return PanelComposition(panel_id=pid, composed_url=url)
        except ImageCompositionError as e:
            logger.warning(f"[{job.id}] Composition of {pid} failed: {e}")
            return PanelComposition(panel_id=pid, error=str(e))
        except Exception as e:
            logger.error(f"[{job.id}] Unexpected composition error for {pid}: {e}", exc_info=True)
            return PanelComposition(panel_id=pid, error=f"Unexpected composition error: {e}")

    def _compose_strip(self, job: Job, urls: list[str]) -> tuple[Optional[str], Optional[PanelComposition]]:
        try:
            return self.compositor.compose_strip(urls, name=f"{job.id}-strip"), None
        except (ImageCompositionError, ValueError) as e:
            logger.warning(f"[{job.id}] Strip composition failed: {e}")
            return None, PanelComposition(panel_id="strip", error=str(e))
        except Exception as e:
            logger.error(f"[{job.id}] Unexpected strip composition error: {e}", exc_info=True)
            return None, PanelComposition(panel_id="strip", error=f"Unexpected composition error: {e}")

    def _run_composition(self, job: Job, item_ids: list[str]) -> None:
        character_urls = [
            c.cartoonify_url for c in job.characters
            if c.status == ItemStatus.COMPLETED and c.cartoonify_url
        ]
        order = [p.id for p in job.panels if p.id in item_ids]

        results: dict[str, PanelComposition] = {}
        workers = max(1, min(self.settings.max_parallel_submissions, len(order)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self._compose_one, job, pid, character_urls): pid
                for pid in order
            }
            for future in as_completed(futures):
                results[futures[future]] = future.result()

        compositions = [results[pid] for pid in order]
        successes = [c for c in compositions if c.composed_url]

        strip_url, strip_error = None, None
        if successes:
            strip_url, strip_error = self._compose_strip(job, [c.composed_url for c in successes])

        def finalize(current: Job) -> Optional[Job]:
            if current.is_terminal:
                return None
            for comp in compositions:
                if comp.composed_url:
                    panel = current.panel(comp.panel_id)
                    if panel is not None:
                        panel.composed_url = comp.composed_url
                    update_item(
                        current, PhaseName.COMPOSITION, comp.panel_id,
                        status=ItemStatus.COMPLETED, result=comp.composed_url, error=None,
                    )
                    self._mirror_item(current, PhaseName.COMPOSITION, comp.panel_id, ItemStatus.COMPLETED)
                else:
                    update_item(
                        current, PhaseName.COMPOSITION, comp.panel_id,
                        status=ItemStatus.FAILED, error=comp.error,
                    )
                    self._mirror_item(
                        current, PhaseName.COMPOSITION, comp.panel_id, ItemStatus.FAILED, comp.error,
                    )

            errors = [c for c in compositions if c.error]
            if strip_error is not None:
                errors.append(strip_error)
            current.output = JobOutput(
                output_url=successes[0].composed_url if successes else None,
                strip_url=strip_url,
                panels=compositions,
                errors=errors,
            )

            if successes:
                transition_job(current, JobStatus.COMPLETED)
                logger.info(
                    f"[{current.id}] Completed: {len(successes)}/{len(compositions)} panels composed"
                )
            else:
                details = "; ".join(f"{c.panel_id}: {c.error}" for c in compositions)
                self._mark_failed(current, PhaseName.COMPOSITION, f"No panel could be composed ({details})")
            return current

        self.store.update(job.id, finalize)

    # ------------------------------------------------------------------
    # Failure
    # ------------------------------------------------------------------

    @staticmethod
    def _mark_failed(job: Job, phase: Optional[PhaseName], reason: str) -> None:
        transition_job(job, JobStatus.FAILED)
        job.failure = JobFailure(phase=phase, reason=reason)
        logger.error(f"[{job.id}] Job failed in {phase.value if phase else 'unknown'}: {reason}")

    def fail(self, job_id: str, phase: Optional[PhaseName], reason: str) -> Job:
        """Fail a job. Terminal and idempotent: a terminal job is left alone."""

        def mark(job: Job) -> Optional[Job]:
            if job.is_terminal:
                logger.info(f"[{job.id}] fail() on {job.status.value} job; ignoring ({reason})")
                return None
            self._mark_failed(job, phase, reason)
            return job

        return self.store.update(job_id, mark)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def status_payload(job: Job) -> dict[str, Any]:
        return {
            "job_id": job.id,
            "status": job.status.value,
            "progress": job.progress,
            "output_url": job.output.output_url,
            "strip_url": job.output.strip_url,
            "errors": [e.model_dump() for e in job.output.errors],
            "error": job.failure.reason if job.failure else None,
            "phases": {name.value: state.status.value for name, state in job.phases.items()},
            "created_at": job.created_at,
            "updated_at": job.updated_at,
        }

    def get_status(self, job_id: str) -> dict[str, Any]:
        """Polling view of a job. Raises JobNotFound."""
        return self.status_payload(self.store.get(job_id))

    def list_jobs(self, status: Optional[JobStatus] = None, limit: Optional[int] = None) -> list[dict[str, Any]]:
        return [self.status_payload(job) for job in self.store.list_jobs(status=status, limit=limit)]

    def get_output(self, job_id: str) -> Optional[JobOutput]:
        """Output of a completed job, None while it is still running.

        Raises JobFailed for a failed job.
        """
        job = self.store.get(job_id)
        if job.status == JobStatus.FAILED:
            raise JobFailed(job.id, job.failure.reason if job.failure else "unknown")
        if job.status != JobStatus.COMPLETED:
            return None
        return job.output

    # ------------------------------------------------------------------
    # Stalled items
    # ------------------------------------------------------------------

    def expire_stalled_items(
        self,
        job_id: str,
        timeout_seconds: float,
        now: Optional[datetime] = None,
    ) -> int:
        """Resolve submission items dispatched more than `timeout_seconds` ago.

        Each stalled item with a handle is polled first; a terminal outcome
        is applied as if its webhook had arrived. Anything still unresolved
        fails with a timeout reason. Returns the number of items resolved.
        """
        now = now or datetime.now(timezone.utc)
        job = self.store.get(job_id)
        if job.is_terminal:
            return 0

        stalled: list[tuple[PhaseName, ItemState]] = []
        for phase in SUBMISSION_PHASES:
            for item in job.phase(phase).items.values():
                if item.status not in (ItemStatus.PENDING, ItemStatus.PROCESSING) or not item.dispatched_at:
                    continue
                age = (now - datetime.fromisoformat(item.dispatched_at)).total_seconds()
                if age > timeout_seconds:
                    stalled.append((phase, item))

        resolved = 0
        for phase, item in stalled:
            if item.external_handle:
                try:
                    outcome = self.backend.fetch_outcome(item.external_handle)
                except StripforgeError as e:
                    logger.warning(f"[{job_id}] Polling {item.external_handle} failed: {e}")
                    outcome = None
                if outcome is not None:
                    if self.on_callback(item.external_handle, outcome) is not None:
                        logger.info(f"[{job_id}] Resolved stalled {phase.value}/{item.id} by polling")
                        resolved += 1
                    continue

            reason = f"Timed out after {timeout_seconds:g}s waiting for {phase.value}/{item.id}"
            if self._expire_item(job_id, phase, item, reason):
                resolved += 1

        if stalled:
            self.advance(job_id)
        return resolved

    def _expire_item(self, job_id: str, phase: PhaseName, snapshot: ItemState, reason: str) -> bool:
        expired = {"value": False}

        def expire(job: Job) -> Optional[Job]:
            if job.is_terminal:
                return None
            item = job.phase(phase).items.get(snapshot.id)
            if (
                item is None
                or item.status not in (ItemStatus.PENDING, ItemStatus.PROCESSING)
                or item.dispatched_at != snapshot.dispatched_at
                or item.external_handle != snapshot.external_handle
            ):
                return None
            update_item(job, phase, item.id, status=ItemStatus.FAILED, error=reason)
            self._mirror_item(job, phase, item.id, ItemStatus.FAILED, reason)
            expired["value"] = True
            logger.warning(f"[{job_id}] {reason}")
            return job

        self.store.update(job_id, expire)
        if expired["value"] and snapshot.external_handle:
            self.store.delete_handle(snapshot.external_handle)
        return expired["value"]
