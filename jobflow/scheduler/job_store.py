"""Job store - sole writer of the scheduled_jobs and job_results tables.

Handles:
- Job creation (validated specs from the API, resume jobs from the advancer)
- Claiming due jobs in batches (FOR UPDATE SKIP LOCKED / BEGIN IMMEDIATE)
- Stale claim recovery
- Per-attempt result rows (append-only)
- Terminal, retry and recurrence transitions

Bookkeeping functions take a Transaction as their first argument so the
runner can commit an attempt row and the status transition together.
"""

import logging
import os
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from jobflow.db import (
    Transaction,
    _json_dumps,
    _json_loads,
    execute,
    lock_clause,
    normalize_timestamps,
    to_db_timestamp,
    transaction,
    utcnow,
)
from jobflow.errors import StaleLockRecovered
from jobflow.scheduler.schemas import AttemptStatus, JobStatus, JobType, ScheduleType
from jobflow.scheduler.scheduling import (
    DEFAULT_BACKOFF_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    next_occurrence,
    retry_delay,
)

logger = logging.getLogger(__name__)

JOB_BATCH_SIZE = int(os.environ.get("JOB_BATCH_SIZE", "10"))

# A running row untouched for this long belongs to a dead runner
STALE_AFTER = timedelta(minutes=int(os.environ.get("STALE_AFTER_MINUTES", "10")))


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _run(tx: Optional[Transaction]):
    return tx.execute if tx is not None else execute


def _parse_job(row: dict) -> dict:
    row["data"] = _json_loads(row.get("data")) or {}
    return normalize_timestamps(row)


def _parse_result(row: dict) -> dict:
    row["output_data"] = _json_loads(row.get("output_data"))
    return normalize_timestamps(row)


# --- Creation and queries ---


def create_job(
    job_spec: dict[str, Any],
    created_by: Optional[str] = None,
    workflow_execution_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    tx: Optional[Transaction] = None,
) -> dict:
    """Persist a validated job spec (see scheduling.validate_schedule_request).

    With an idempotency_key, a repeated insert is ignored and the existing
    job is returned.
    """
    job_id = _new_id("job")
    now = to_db_timestamp(utcnow())
    scheduled_time = to_db_timestamp(job_spec["scheduled_time"])
    run = _run(tx)

    inserted = run(
        """INSERT INTO scheduled_jobs
           (id, name, type, job_type, data, scheduled_time, recurrence_rule,
            status, attempts, max_attempts, backoff_seconds, execution_count,
            workflow_execution_id, idempotency_key, created_by, created_at, updated_at)
           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
           ON CONFLICT (idempotency_key) DO NOTHING""",
        (job_id, job_spec["name"], job_spec["type"], job_spec["job_type"], _json_dumps(job_spec["data"]),
         scheduled_time, job_spec.get("recurrence_rule"), JobStatus.PENDING.value, 0,
         job_spec.get("max_attempts", DEFAULT_MAX_ATTEMPTS),
         job_spec.get("backoff_seconds", DEFAULT_BACKOFF_SECONDS), 0,
         workflow_execution_id, idempotency_key, created_by, now, now),
        fetch="rowcount",
    )

    if not inserted:
        existing = run(
            "SELECT * FROM scheduled_jobs WHERE idempotency_key = %s",
            (idempotency_key,),
            fetch="one",
        )
        logger.info(f"Job with idempotency key {idempotency_key} already exists: {existing['id']}")
        return _parse_job(existing)

    logger.info(f"Created {job_spec['type']} {job_spec['job_type']} job {job_id} for {scheduled_time}")
    return {
        "id": job_id,
        "name": job_spec["name"],
        "type": job_spec["type"],
        "job_type": job_spec["job_type"],
        "status": JobStatus.PENDING.value,
        "scheduled_time": scheduled_time,
    }


def create_resume_job(
    execution_id: str,
    next_step: int,
    run_at: datetime,
    reason: str = "resume",
    tx: Optional[Transaction] = None,
) -> dict:
    """Schedule a one-time job that continues a workflow execution at `next_step`."""
    job_spec = {
        "name": f"{reason.capitalize()} {execution_id} at step {next_step}",
        "type": ScheduleType.ONE_TIME.value,
        "job_type": JobType.WORKFLOW_RESUME.value,
        "data": {
            "type": JobType.WORKFLOW_RESUME.value,
            "execution_id": execution_id,
            "next_step": next_step,
        },
        "scheduled_time": run_at,
        "recurrence_rule": None,
        "max_attempts": DEFAULT_MAX_ATTEMPTS,
        "backoff_seconds": 60,
    }
    key = f"{reason}:{execution_id}:{next_step}:{to_db_timestamp(run_at)}"
    return create_job(job_spec, workflow_execution_id=execution_id, idempotency_key=key, tx=tx)


def get_job(job_id: str) -> Optional[dict]:
    """Get a job record by ID, with its descriptor parsed."""
    row = execute("SELECT * FROM scheduled_jobs WHERE id = %s", (job_id,), fetch="one")
    if row is None:
        return None
    return _parse_job(row)


def list_jobs(status: Optional[str] = None, limit: int = 50) -> list[dict]:
    """List jobs, soonest first, optionally filtered by status."""
    if status:
        rows = execute(
            """SELECT * FROM scheduled_jobs WHERE status = %s
               ORDER BY scheduled_time LIMIT %s""",
            (status, limit),
            fetch="all",
        )
    else:
        rows = execute(
            "SELECT * FROM scheduled_jobs ORDER BY scheduled_time LIMIT %s",
            (limit,),
            fetch="all",
        )
    return [_parse_job(r) for r in rows]


def list_jobs_for_execution(execution_id: str) -> list[dict]:
    rows = execute(
        """SELECT * FROM scheduled_jobs WHERE workflow_execution_id = %s
           ORDER BY scheduled_time""",
        (execution_id,),
        fetch="all",
    )
    return [_parse_job(r) for r in rows]


def get_job_stats(job_id: str) -> dict:
    row = execute(
        """SELECT COUNT(*) AS total_runs,
                  SUM(CASE WHEN status = %s THEN 1 ELSE 0 END) AS total_failures
           FROM job_results WHERE job_id = %s""",
        (AttemptStatus.FAILED.value, job_id),
        fetch="one",
    )
    return {
        "total_runs": int(row["total_runs"] or 0),
        "total_failures": int(row["total_failures"] or 0),
    }


def get_latest_result(job_id: str) -> Optional[dict]:
    row = execute(
        """SELECT * FROM job_results WHERE job_id = %s
           ORDER BY execution_number DESC, attempt DESC LIMIT 1""",
        (job_id,),
        fetch="one",
    )
    return _parse_result(row) if row else None


def get_job_history(job_id: str) -> list[dict]:
    """All attempts for a job, oldest first."""
    rows = execute(
        """SELECT * FROM job_results WHERE job_id = %s
           ORDER BY execution_number, attempt""",
        (job_id,),
        fetch="all",
    )
    return [_parse_result(r) for r in rows]


# --- Claiming and recovery ---


def claim_batch(limit: int = JOB_BATCH_SIZE, now: Optional[datetime] = None) -> list[dict]:
    """Claim up to `limit` due pending jobs for this runner.

    Selected rows are flipped to running and committed before the caller
    executes anything. Rows locked by another claimant are skipped, not
    waited on.
    """
    now_ts = to_db_timestamp(now or utcnow())
    with transaction() as tx:
        rows = tx.execute(
            """SELECT * FROM scheduled_jobs
               WHERE status = %s AND scheduled_time <= %s
               ORDER BY scheduled_time
               LIMIT %s""" + lock_clause(skip_locked=True),
            (JobStatus.PENDING.value, now_ts, limit),
            fetch="all",
        )
        if not rows:
            return []

        ids = [r["id"] for r in rows]
        placeholders = ", ".join(["%s"] * len(ids))
        tx.execute(
            f"""UPDATE scheduled_jobs SET status = %s, updated_at = %s
                WHERE status = %s AND id IN ({placeholders})""",
            (JobStatus.RUNNING.value, now_ts, JobStatus.PENDING.value, *ids),
        )

    jobs = []
    for row in rows:
        row["status"] = JobStatus.RUNNING.value
        row["updated_at"] = now_ts
        jobs.append(_parse_job(row))
    logger.info(f"Claimed {len(jobs)} job(s): {', '.join(ids)}")
    return jobs


def recover_stuck(now: Optional[datetime] = None) -> list[str]:
    """Release running jobs whose runner went quiet past the staleness window.

    attempts is left untouched; the interrupted attempt simply runs again.
    Returns the recovered job IDs.
    """
    now = now or utcnow()
    cutoff = to_db_timestamp(now - STALE_AFTER)
    with transaction() as tx:
        rows = tx.execute(
            "SELECT id FROM scheduled_jobs WHERE status = %s AND updated_at < %s" + lock_clause(skip_locked=True),
            (JobStatus.RUNNING.value, cutoff),
            fetch="all",
        )
        ids = [r["id"] for r in rows]
        if ids:
            placeholders = ", ".join(["%s"] * len(ids))
            tx.execute(
                f"""UPDATE scheduled_jobs SET status = %s, updated_at = %s
                    WHERE status = %s AND id IN ({placeholders})""",
                (JobStatus.PENDING.value, to_db_timestamp(now), JobStatus.RUNNING.value, *ids),
            )

    if ids:
        recovered = StaleLockRecovered("scheduled_jobs", ids)
        logger.warning(f"{recovered}: {', '.join(ids)}", extra={"recovered": recovered})
    return ids


# --- Bookkeeping (called inside the runner's per-job transaction) ---


def record_attempt(
    tx: Transaction,
    job_id: str,
    execution_number: int,
    attempt: int,
    success: bool,
    output: Any = None,
    error: Optional[str] = None,
    duration_ms: int = 0,
) -> str:
    """Append one job_results row. Existing rows are never touched."""
    result_id = _new_id("res")
    status = AttemptStatus.SUCCESS if success else AttemptStatus.FAILED
    tx.execute(
        """INSERT INTO job_results
           (id, job_id, execution_number, attempt, status, output_data,
            error_message, duration_ms, executed_at)
           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)""",
        (result_id, job_id, execution_number, attempt, status.value,
         _json_dumps(output) if success else None,
         None if success else error, duration_ms, to_db_timestamp(utcnow())),
    )
    return result_id


def complete_one_time(tx: Transaction, job_id: str, attempt: int) -> None:
    tx.execute(
        """UPDATE scheduled_jobs
           SET status = %s, attempts = %s, execution_count = execution_count + 1,
               updated_at = %s
           WHERE id = %s""",
        (JobStatus.COMPLETED.value, attempt, to_db_timestamp(utcnow()), job_id),
    )
    logger.info(f"Job {job_id} status → completed (attempt {attempt})")


def fail_one_time(tx: Transaction, job_id: str, attempt: int) -> None:
    tx.execute(
        """UPDATE scheduled_jobs
           SET status = %s, attempts = %s, execution_count = execution_count + 1,
               updated_at = %s
           WHERE id = %s""",
        (JobStatus.FAILED.value, attempt, to_db_timestamp(utcnow()), job_id),
    )
    logger.info(f"Job {job_id} status → failed after {attempt} attempt(s)")


def advance_recurring(tx: Transaction, job: dict) -> datetime:
    """Move a recurring job to its next occurrence.

    The next fire time is computed from the job's last scheduled_time, so
    the schedule doesn't drift with runner latency. Applies after success
    and after exhausted retries alike.
    """
    next_time = next_occurrence(job["recurrence_rule"], job["scheduled_time"])
    tx.execute(
        """UPDATE scheduled_jobs
           SET status = %s, attempts = 0, execution_count = execution_count + 1,
               scheduled_time = %s, updated_at = %s
           WHERE id = %s""",
        (JobStatus.PENDING.value, to_db_timestamp(next_time), to_db_timestamp(utcnow()), job["id"]),
    )
    logger.info(f"Recurring job {job['id']} advanced to {to_db_timestamp(next_time)}")
    return next_time


def schedule_retry(
    tx: Transaction,
    job_id: str,
    attempt: int,
    backoff_seconds: int,
    now: Optional[datetime] = None,
) -> datetime:
    """Put a failed job back to pending after an exponential backoff."""
    now = now or utcnow()
    retry_at = now + retry_delay(backoff_seconds, attempt)
    tx.execute(
        """UPDATE scheduled_jobs
           SET status = %s, attempts = %s, scheduled_time = %s, updated_at = %s
           WHERE id = %s""",
        (JobStatus.PENDING.value, attempt, to_db_timestamp(retry_at), to_db_timestamp(now), job_id),
    )
    logger.info(f"Job {job_id} retry {attempt} scheduled for {to_db_timestamp(retry_at)}")
    return retry_at
