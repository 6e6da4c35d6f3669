"""Job API routes.

Endpoints:
    POST /v1/jobs                    Start a comic strip job
    GET  /v1/jobs                    List jobs (optionally by status)
    GET  /v1/jobs/{job_id}           Poll status + progress
    GET  /v1/jobs/{job_id}/output    Output of a completed job
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from stripforge.errors import JobFailed, JobNotFound, StripforgeError, ValidationError
from stripforge.jobs.orchestrator import Orchestrator
from stripforge.jobs.schemas import (
    JobOutput,
    JobStatus,
    JobStatusResponse,
    StartJobRequest,
    StartJobResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


@router.post("", response_model=StartJobResponse)
def start_job(body: StartJobRequest, request: Request):
    """Start a job.

    Returns as soon as the first phase is dispatched. A job whose first
    phase could not be dispatched is still created and comes back with
    status 'failed'; poll it for the reason.
    """
    options = {"style": body.style, "background": body.background}
    try:
        result = _orchestrator(request).start_job(body.story, body.characters, options)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail={"field": e.field, "message": str(e)})
    return StartJobResponse(**result)


@router.get("")
def list_jobs(
    request: Request,
    status: Optional[JobStatus] = None,
    limit: int = Query(default=20, ge=1, le=500),
):
    """List jobs, newest first."""
    jobs = _orchestrator(request).list_jobs(status=status, limit=limit)
    return {"jobs": jobs, "count": len(jobs)}


@router.get("/{job_id}", response_model=JobStatusResponse)
def get_job_status(job_id: str, request: Request):
    """Get job status and progress.

    This is the polling endpoint. It also resolves stalled items on read,
    so a lost webhook cannot leave a job processing forever.
    """
    orchestrator = _orchestrator(request)
    try:
        status = orchestrator.get_status(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")

    if status["status"] == JobStatus.PROCESSING.value:
        try:
            if orchestrator.expire_stalled_items(job_id, orchestrator.settings.item_timeout):
                status = orchestrator.get_status(job_id)
        except StripforgeError as e:
            logger.warning(f"[{job_id}] Stalled-item check failed: {e}")

    return JobStatusResponse(**status)


@router.get("/{job_id}/output", response_model=JobOutput)
def get_job_output(job_id: str, request: Request):
    """Composed panels and strip of a completed job."""
    try:
        output = _orchestrator(request).get_output(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    except JobFailed as e:
        raise HTTPException(status_code=409, detail=f"Job failed: {e.reason}")
    if output is None:
        raise HTTPException(status_code=409, detail=f"Job {job_id} has not finished yet")
    return output
