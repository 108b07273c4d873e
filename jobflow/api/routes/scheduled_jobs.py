"""Scheduled job routes: enqueue, inspect, and trigger a poll cycle.

Endpoints:
    POST /v1/scheduled-jobs              Enqueue a one-time or recurring job
    GET  /v1/scheduled-jobs              List jobs (optionally by status)
    GET  /v1/scheduled-jobs/{job_id}     Job detail, stats, latest result (?history=true)
    GET|POST /v1/process-jobs            Run one poll cycle
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from jobflow.api.auth import Identity, require_identity
from jobflow.errors import ValidationError
from jobflow.scheduler.job_runner import process_jobs
from jobflow.scheduler.job_store import (
    create_job,
    get_job,
    get_job_history,
    get_job_stats,
    get_latest_result,
    list_jobs,
)
from jobflow.scheduler.schemas import (
    ProcessJobsResponse,
    ScheduledJobDetail,
    ScheduleJobRequest,
    ScheduleJobResponse,
)
from jobflow.scheduler.scheduling import validate_schedule_request

logger = logging.getLogger(__name__)

router = APIRouter(tags=["scheduled-jobs"], dependencies=[Depends(require_identity)])


@router.post("/scheduled-jobs", response_model=ScheduleJobResponse, status_code=201)
async def schedule_job(
    request: ScheduleJobRequest,
    identity: Identity = Depends(require_identity),
):
    """Enqueue a job.

    The first run is at scheduled_time if given, else now + delay, else
    about five seconds from now.
    """
    try:
        job_spec = validate_schedule_request(request.model_dump())
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    job = create_job(job_spec, created_by=identity.subject)
    return ScheduleJobResponse(
        id=job["id"],
        scheduled_time=job["scheduled_time"],
        type=job["type"],
        job_type=job["job_type"],
    )


@router.get("/scheduled-jobs")
async def list_scheduled_jobs(
    status: Optional[str] = Query(None, description="pending | running | completed | failed"),
    limit: int = Query(50, ge=1, le=500),
):
    """List scheduled jobs, soonest first."""
    return list_jobs(status=status, limit=limit)


@router.get("/scheduled-jobs/{job_id}", response_model=ScheduledJobDetail)
async def get_scheduled_job(
    job_id: str,
    history: bool = Query(False, description="Include every attempt"),
):
    """Job metadata with run stats and the latest attempt."""
    job = get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")

    return ScheduledJobDetail(
        **job,
        stats=get_job_stats(job_id),
        latest_execution=get_latest_result(job_id),
        history=get_job_history(job_id) if history else None,
    )


@router.api_route("/process-jobs", methods=["GET", "POST"], response_model=ProcessJobsResponse)
def trigger_process_jobs():
    """Run one poll cycle: recover stale claims, claim due jobs, execute them.

    Safe to call concurrently and on a timer. A failure to claim is
    reported as 500; individual job failures are in the results.
    """
    try:
        return process_jobs()
    except Exception as e:
        logger.error(f"Poll cycle failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to process jobs: {e}")
