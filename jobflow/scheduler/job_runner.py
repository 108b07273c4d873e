"""Job runner - one poll cycle over the scheduled_jobs table.

process_jobs() is safe to call from any number of workers at once (API
trigger, worker loop, external cron):

1. Release stale claims (jobs and workflow executions).
2. Claim up to JOB_BATCH_SIZE due jobs.
3. Execute each claimed job, then record the attempt and apply the
   success / retry / terminal transition in one transaction per job.

Execution failures become failed attempts and never escape the batch.
Failures of the recovery or claim transactions propagate to the caller.
"""

import logging
import time
from datetime import datetime
from typing import Any, Optional

from jobflow.db import to_db_timestamp, transaction
from jobflow.errors import ExecutionError
from jobflow.scheduler import job_store
from jobflow.scheduler.job_executor import JobExecutor, get_job_executor
from jobflow.scheduler.schemas import JobType, ScheduleType
from jobflow.workflows import store as workflow_store
from jobflow.workflows.advancer import advance_workflow
from jobflow.workflows.schemas import CLAIMABLE_STATUSES

logger = logging.getLogger(__name__)


def _resume_workflow(job: dict, descriptor: dict, executor: JobExecutor) -> Any:
    """Continue the workflow execution a resume/continuation job points at.

    A resume job whose execution has since moved on (advanced manually,
    finished, or suspended again elsewhere) is stale and does nothing.
    """
    execution_id = descriptor.get("execution_id") or job.get("workflow_execution_id")
    execution = workflow_store.get_execution(execution_id) if execution_id else None
    if execution is None:
        raise ExecutionError(
            f"Workflow execution not found: {execution_id}",
            job_type=JobType.WORKFLOW_RESUME.value,
        )

    expected_step = descriptor.get("next_step")
    claimable = [s.value for s in CLAIMABLE_STATUSES]
    if execution["status"] not in claimable or (
        expected_step is not None and execution["current_step_number"] != expected_step
    ):
        logger.info(
            f"Resume job {job['id']} is stale: execution {execution_id} is "
            f"{execution['status']} at step {execution['current_step_number']}"
        )
        return {"status": "skipped", "reason": "stale", "execution_id": execution_id}

    return advance_workflow(execution_id, executor=executor)


def execute_job(job: dict, executor: JobExecutor) -> Any:
    """Run a claimed job's descriptor and return its output."""
    descriptor = dict(job.get("data") or {})
    descriptor.setdefault("type", job["job_type"])
    if descriptor["type"] == JobType.WORKFLOW_RESUME.value:
        return _resume_workflow(job, descriptor, executor)
    return executor.execute(descriptor, label=job["id"])


def _record_success(job: dict, attempt: int, execution_number: int, output: Any, duration_ms: int) -> dict:
    with transaction() as tx:
        job_store.record_attempt(
            tx, job["id"], execution_number, attempt, True,
            output=output, duration_ms=duration_ms,
        )
        if job["type"] == ScheduleType.RECURRING.value:
            next_time = job_store.advance_recurring(tx, job)
            return {"id": job["id"], "status": "advanced", "next_run": to_db_timestamp(next_time)}
        job_store.complete_one_time(tx, job["id"], attempt)
        return {"id": job["id"], "status": "completed"}


def _record_failure(job: dict, attempt: int, execution_number: int, error: str, duration_ms: int) -> dict:
    with transaction() as tx:
        job_store.record_attempt(
            tx, job["id"], execution_number, attempt, False,
            error=error, duration_ms=duration_ms,
        )
        if attempt < job["max_attempts"]:
            retry_at = job_store.schedule_retry(tx, job["id"], attempt, job["backoff_seconds"])
            return {
                "id": job["id"],
                "status": "retry_scheduled",
                "attempt": attempt,
                "retry_at": to_db_timestamp(retry_at),
                "error": error,
            }
        if job["type"] == ScheduleType.RECURRING.value:
            next_time = job_store.advance_recurring(tx, job)
            return {
                "id": job["id"],
                "status": "advanced_after_failure",
                "next_run": to_db_timestamp(next_time),
                "error": error,
            }
        job_store.fail_one_time(tx, job["id"], attempt)
        return {"id": job["id"], "status": "failed", "error": error}


def process_job(job: dict, executor: Optional[JobExecutor] = None) -> dict:
    """Execute one claimed job and apply its bookkeeping. Never raises."""
    executor = executor or get_job_executor()
    attempt = (job.get("attempts") or 0) + 1
    execution_number = (job.get("execution_count") or 0) + 1

    started = time.monotonic()
    try:
        output = execute_job(job, executor)
        error = None
    except ExecutionError as e:
        output, error = None, str(e)
        logger.warning(f"Job {job['id']} attempt {attempt} failed ({e.kind}): {e}")
    except Exception as e:
        output, error = None, f"{type(e).__name__}: {e}"
        logger.error(f"Job {job['id']} attempt {attempt} raised unexpectedly: {e}", exc_info=True)
    duration_ms = int((time.monotonic() - started) * 1000)

    try:
        if error is None:
            return _record_success(job, attempt, execution_number, output, duration_ms)
        return _record_failure(job, attempt, execution_number, error, duration_ms)
    except Exception as e:
        # Row stays running; recover_stuck releases it after the staleness window
        logger.error(f"Bookkeeping failed for job {job['id']}: {e}", exc_info=True)
        return {"id": job["id"], "status": "bookkeeping_failed", "error": str(e)}


def process_jobs(
    limit: int = job_store.JOB_BATCH_SIZE,
    executor: Optional[JobExecutor] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Run one poll cycle. Returns {"processed": n, "results": [...]}."""
    job_store.recover_stuck(now=now)
    workflow_store.recover_stuck_executions(now=now)

    jobs = job_store.claim_batch(limit, now=now)
    if not jobs:
        return {"processed": 0, "results": []}

    results = [process_job(job, executor) for job in jobs]
    logger.info(
        f"Processed {len(results)} job(s): "
        + ", ".join(f"{r['id']}={r['status']}" for r in results)
    )
    return {"processed": len(results), "results": results}
