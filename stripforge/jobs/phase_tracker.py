"""Phase and item bookkeeping for a job.

Pure functions over a Job record: they mutate the record in memory and
leave persistence to the caller (normally inside StateStore.update).

Progress is a cache derived from item completion ratios. Every phase has a
planned item count known when the job is created (one story, one item per
character, four panels for backgrounds and for composition), so progress is
computed against a fixed denominator and can only grow as items complete.
"""

import logging
from typing import Any

from stripforge.errors import InvalidTransition
from stripforge.jobs.schemas import (
    PANEL_COUNT,
    ItemState,
    ItemStatus,
    Job,
    JobStatus,
    PhaseName,
    PhaseState,
    PhaseStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS = {
    JobStatus.INIT: (JobStatus.PROCESSING, JobStatus.FAILED),
    JobStatus.PROCESSING: (JobStatus.COMPLETED, JobStatus.FAILED),
    JobStatus.COMPLETED: (),
    JobStatus.FAILED: (),
}


def transition_job(job: Job, new_status: JobStatus) -> None:
    """Move a job forward. Raises InvalidTransition for anything else."""
    if new_status not in _ALLOWED_TRANSITIONS[job.status]:
        raise InvalidTransition(
            f"Job {job.id}: cannot move from {job.status.value} to {new_status.value}"
        )
    job.status = new_status
    if new_status == JobStatus.COMPLETED:
        job.progress = 100
    logger.info(f"[{job.id}] Job status -> {new_status.value}")


def init_phase(job: Job, phase: PhaseName, item_ids: list[str]) -> PhaseState:
    """Create a pending PhaseState with one pending item per id."""
    state = PhaseState(
        name=phase,
        status=PhaseStatus.PENDING,
        items={item_id: ItemState(id=item_id) for item_id in item_ids},
    )
    job.phases[phase] = state
    return state


def recompute_phase_status(state: PhaseState) -> PhaseStatus:
    """Derive a phase's status from its items.

    A phase without items cannot complete on its own. A failed item always
    means the failure is permanent: a retry re-queues the item as pending.
    """
    if not state.items:
        return state.status

    statuses = [item.status for item in state.items.values()]
    if all(s == ItemStatus.COMPLETED for s in statuses):
        return PhaseStatus.COMPLETED
    if any(s == ItemStatus.FAILED for s in statuses):
        return PhaseStatus.FAILED
    if state.status == PhaseStatus.PENDING and not any(
        item.dispatched_at for item in state.items.values()
    ):
        return PhaseStatus.PENDING
    return PhaseStatus.PROCESSING


def planned_item_count(job: Job, phase: PhaseName) -> int:
    if phase == PhaseName.NLP:
        return 1
    if phase == PhaseName.CHARACTERS:
        return len(job.characters)
    return PANEL_COUNT


def compute_progress(job: Job) -> int:
    """round(100 * completed items / planned items) across all phases."""
    if job.status == JobStatus.COMPLETED:
        return 100

    completed = 0
    total = 0
    for phase in PhaseName:
        state = job.phases.get(phase)
        items = state.items if state else {}
        total += max(len(items), planned_item_count(job, phase))
        completed += sum(1 for item in items.values() if item.status == ItemStatus.COMPLETED)

    if total == 0:
        return 0
    return round(100 * completed / total)


def _apply_phase_status(state: PhaseState, status: PhaseStatus) -> None:
    if status == state.status:
        return
    state.status = status
    now = utc_now()
    if status == PhaseStatus.PROCESSING and state.started_at is None:
        state.started_at = now
    elif status in (PhaseStatus.COMPLETED, PhaseStatus.FAILED):
        state.completed_at = now


def mark_phase_processing(state: PhaseState) -> None:
    _apply_phase_status(state, PhaseStatus.PROCESSING)


def update_item(job: Job, phase: PhaseName, item_id: str, **fields: Any) -> Job:
    """Merge fields into one item, then recompute phase status and progress."""
    state = job.phase(phase)
    item = state.items.get(item_id)
    if item is None:
        raise KeyError(f"Job {job.id}: no item {item_id!r} in phase {phase.value}")

    for key, value in fields.items():
        if not hasattr(item, key):
            raise KeyError(f"Unknown item field: {key}")
        setattr(item, key, value)
    item.updated_at = utc_now()

    _apply_phase_status(state, recompute_phase_status(state))

    job.progress = max(job.progress, compute_progress(job))
    job.updated_at = utc_now()
    return job


def claimable_items(state: PhaseState) -> list[ItemState]:
    """Items waiting for a dispatch that nobody has claimed yet."""
    return [
        item for item in state.items.values()
        if item.status == ItemStatus.PENDING and item.dispatched_at is None
    ]


def failed_items(state: PhaseState) -> list[ItemState]:
    return [item for item in state.items.values() if item.status == ItemStatus.FAILED]
