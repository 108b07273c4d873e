"""Workflow store - sole writer of the workflow tables.

Owns workflows, workflow_steps, workflow_executions and
workflow_execution_steps:
- Definitions: create, list, fetch, step lookup by number
- Executions: create, exclusive claim, cursor and status transitions
- Variables: read fresh, shallow last-writer-wins merge under row lock
- Step results: append-only audit rows
"""

import logging
import uuid
from datetime import datetime
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
from jobflow.errors import ClaimConflict, NotFoundError, StaleLockRecovered, ValidationError
from jobflow.scheduler.job_store import STALE_AFTER
from jobflow.scheduler.schemas import AttemptStatus, SCHEDULABLE_JOB_TYPES
from jobflow.workflows.results import StepOutcome
from jobflow.workflows.schemas import CLAIMABLE_STATUSES, TERMINAL_STATUSES, ExecutionStatus

logger = logging.getLogger(__name__)

STEP_TYPES = tuple(t.value for t in SCHEDULABLE_JOB_TYPES)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _run(tx: Optional[Transaction]):
    return tx.execute if tx is not None else execute


def _parse_step(row: dict) -> dict:
    row["config"] = _json_loads(row.get("config")) or {}
    return row


def _parse_execution(row: dict) -> dict:
    row["variables"] = _json_loads(row.get("variables")) or {}
    row["init_data"] = _json_loads(row.get("init_data")) or {}
    return normalize_timestamps(row)


def _parse_step_result(row: dict) -> dict:
    row["output_data"] = _json_loads(row.get("output_data"))
    return normalize_timestamps(row)


# --- Definitions ---


def create_workflow(
    name: str,
    steps: list[dict[str, Any]],
    description: str = "",
    created_by: Optional[str] = None,
) -> dict:
    """Create a workflow definition with its numbered steps.

    Steps without an explicit step_number are numbered by position.
    """
    if not name:
        raise ValidationError("name is required")
    if not steps:
        raise ValidationError("A workflow needs at least one step")

    numbered = []
    for position, step in enumerate(steps, start=1):
        step_type = step.get("type")
        if step_type not in STEP_TYPES:
            raise ValidationError(
                f"Step {position}: type must be one of {', '.join(STEP_TYPES)}"
            )
        config = step.get("config") or {}
        if not isinstance(config, dict):
            raise ValidationError(f"Step {position}: config must be an object")
        step_number = step.get("step_number") or position
        numbered.append((step_number, step.get("name") or "", step_type, config))

    numbers = [n for n, _, _, _ in numbered]
    if len(set(numbers)) != len(numbers):
        raise ValidationError("Duplicate step_number in workflow steps")

    workflow_id = _new_id("wf")
    now = to_db_timestamp(utcnow())
    with transaction() as tx:
        tx.execute(
            """INSERT INTO workflows (id, name, description, created_by, created_at, updated_at)
               VALUES (%s, %s, %s, %s, %s, %s)""",
            (workflow_id, name, description, created_by, now, now),
        )
        for step_number, step_name, step_type, config in numbered:
            tx.execute(
                """INSERT INTO workflow_steps (id, workflow_id, step_number, name, type, config)
                   VALUES (%s, %s, %s, %s, %s, %s)""",
                (_new_id("step"), workflow_id, step_number, step_name, step_type, _json_dumps(config)),
            )

    logger.info(f"Created workflow {workflow_id} '{name}' with {len(numbered)} step(s)")
    return get_workflow(workflow_id)


def list_workflows() -> list[dict]:
    rows = execute(
        """SELECT w.id, w.name, w.description, w.created_at,
                  (SELECT COUNT(*) FROM workflow_steps s WHERE s.workflow_id = w.id) AS step_count
           FROM workflows w
           ORDER BY w.created_at DESC""",
        fetch="all",
    )
    return [normalize_timestamps(r) for r in rows]


def get_workflow(workflow_id: str, include_steps: bool = True) -> Optional[dict]:
    row = execute("SELECT * FROM workflows WHERE id = %s", (workflow_id,), fetch="one")
    if row is None:
        return None
    normalize_timestamps(row)
    if include_steps:
        rows = execute(
            "SELECT * FROM workflow_steps WHERE workflow_id = %s ORDER BY step_number",
            (workflow_id,),
            fetch="all",
        )
        row["steps"] = [_parse_step(r) for r in rows]
    return row


def get_step(workflow_id: str, step_number: int) -> Optional[dict]:
    """Get the step at `step_number`, or None once the workflow is exhausted."""
    row = execute(
        "SELECT * FROM workflow_steps WHERE workflow_id = %s AND step_number = %s",
        (workflow_id, step_number),
        fetch="one",
    )
    return _parse_step(row) if row else None


# --- Executions ---


def create_execution(
    workflow_id: str,
    init_data: Optional[dict[str, Any]] = None,
    created_by: Optional[str] = None,
) -> dict:
    """Start a new execution at step 1 with variables seeded from init_data."""
    if get_workflow(workflow_id, include_steps=False) is None:
        raise NotFoundError(f"Workflow not found: {workflow_id}")
    init_data = init_data or {}
    if not isinstance(init_data, dict):
        raise ValidationError("init_data must be an object")

    execution_id = _new_id("exec")
    now = to_db_timestamp(utcnow())
    execute(
        """INSERT INTO workflow_executions
           (id, workflow_id, status, current_step_number, variables, init_data,
            created_by, created_at, updated_at)
           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)""",
        (execution_id, workflow_id, ExecutionStatus.ACTIVE.value, 1,
         _json_dumps(init_data), _json_dumps(init_data), created_by, now, now),
    )
    logger.info(f"Created execution {execution_id} for workflow {workflow_id}")
    return get_execution(execution_id)


def get_execution(execution_id: str, include_steps: bool = False) -> Optional[dict]:
    row = execute(
        "SELECT * FROM workflow_executions WHERE id = %s",
        (execution_id,),
        fetch="one",
    )
    if row is None:
        return None
    _parse_execution(row)
    if include_steps:
        row["steps"] = list_execution_steps(execution_id)
    return row


def list_execution_steps(execution_id: str) -> list[dict]:
    rows = execute(
        """SELECT * FROM workflow_execution_steps WHERE execution_id = %s
           ORDER BY executed_at""",
        (execution_id,),
        fetch="all",
    )
    return [_parse_step_result(r) for r in rows]


def claim_execution(execution_id: str) -> dict:
    """Take the execution's processing mutex.

    Flips active/delayed to processing under a row lock and commits before
    returning. Raises ClaimConflict if the execution is missing, already
    processing, or finished.
    """
    claimable = [s.value for s in CLAIMABLE_STATUSES]
    with transaction() as tx:
        row = tx.execute(
            """SELECT * FROM workflow_executions
               WHERE id = %s AND status IN (%s, %s)""" + lock_clause(),
            (execution_id, *claimable),
            fetch="one",
        )
        if row is None:
            raise ClaimConflict(f"Execution {execution_id} is not claimable")
        tx.execute(
            "UPDATE workflow_executions SET status = %s, updated_at = %s WHERE id = %s",
            (ExecutionStatus.PROCESSING.value, to_db_timestamp(utcnow()), execution_id),
        )

    row["status"] = ExecutionStatus.PROCESSING.value
    logger.info(f"Execution {execution_id} status → processing")
    return _parse_execution(row)


def get_variables(execution_id: str) -> dict:
    """Read the execution's variables from storage (never cached)."""
    row = execute(
        "SELECT variables FROM workflow_executions WHERE id = %s",
        (execution_id,),
        fetch="one",
    )
    if row is None:
        raise NotFoundError(f"Execution not found: {execution_id}")
    return _json_loads(row["variables"]) or {}


def merge_variables(execution_id: str, new_vars: dict[str, Any]) -> dict:
    """Shallow-merge new_vars into the stored variables, last writer wins.

    Re-reads under a row lock so concurrent merges can't lose updates.
    Returns the merged mapping.
    """
    with transaction() as tx:
        row = tx.execute(
            "SELECT variables FROM workflow_executions WHERE id = %s" + lock_clause(),
            (execution_id,),
            fetch="one",
        )
        if row is None:
            raise NotFoundError(f"Execution not found: {execution_id}")
        merged = {**(_json_loads(row["variables"]) or {}), **new_vars}
        tx.execute(
            "UPDATE workflow_executions SET variables = %s, updated_at = %s WHERE id = %s",
            (_json_dumps(merged), to_db_timestamp(utcnow()), execution_id),
        )
    logger.debug(f"Execution {execution_id} variables updated: {', '.join(new_vars)}")
    return merged


def record_step_result(
    execution_id: str,
    step: dict,
    step_number: int,
    outcome: StepOutcome,
) -> str:
    """Append one workflow_execution_steps row."""
    row_id = _new_id("estep")
    status = AttemptStatus.SUCCESS if outcome.success else AttemptStatus.FAILED
    execute(
        """INSERT INTO workflow_execution_steps
           (id, execution_id, step_id, step_number, status, output_data,
            error_message, duration_ms, executed_at)
           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)""",
        (row_id, execution_id, step.get("id"), step_number, status.value,
         _json_dumps(outcome.output) if outcome.success else None,
         outcome.error, outcome.duration_ms, to_db_timestamp(utcnow())),
    )
    return row_id


def set_cursor(execution_id: str, step_number: int) -> None:
    execute(
        """UPDATE workflow_executions
           SET current_step_number = %s, updated_at = %s WHERE id = %s""",
        (step_number, to_db_timestamp(utcnow()), execution_id),
    )


def update_status(
    execution_id: str,
    status: ExecutionStatus,
    current_step_number: Optional[int] = None,
    tx: Optional[Transaction] = None,
) -> None:
    """Set execution status (and optionally the cursor); terminal states stamp completed_at."""
    now = to_db_timestamp(utcnow())
    completed_at = now if status in TERMINAL_STATUSES else None
    if current_step_number is None:
        _run(tx)(
            """UPDATE workflow_executions
               SET status = %s, completed_at = %s, updated_at = %s WHERE id = %s""",
            (status.value, completed_at, now, execution_id),
        )
    else:
        _run(tx)(
            """UPDATE workflow_executions
               SET status = %s, current_step_number = %s, completed_at = %s, updated_at = %s
               WHERE id = %s""",
            (status.value, current_step_number, completed_at, now, execution_id),
        )
    logger.info(f"Execution {execution_id} status → {status.value}")


def release_execution(execution_id: str) -> bool:
    """Drop the processing mutex without finishing (back to active)."""
    released = execute(
        """UPDATE workflow_executions SET status = %s, updated_at = %s
           WHERE id = %s AND status = %s""",
        (ExecutionStatus.ACTIVE.value, to_db_timestamp(utcnow()), execution_id,
         ExecutionStatus.PROCESSING.value),
        fetch="rowcount",
    )
    if released:
        logger.info(f"Execution {execution_id} released → active")
    return bool(released)


def recover_stuck_executions(now: Optional[datetime] = None) -> list[str]:
    """Release executions left processing past the staleness window by a dead advancer."""
    now = now or utcnow()
    cutoff = to_db_timestamp(now - STALE_AFTER)
    with transaction() as tx:
        rows = tx.execute(
            "SELECT id FROM workflow_executions WHERE status = %s AND updated_at < %s" + lock_clause(skip_locked=True),
            (ExecutionStatus.PROCESSING.value, cutoff),
            fetch="all",
        )
        ids = [r["id"] for r in rows]
        if ids:
            placeholders = ", ".join(["%s"] * len(ids))
            tx.execute(
                f"""UPDATE workflow_executions SET status = %s, updated_at = %s
                    WHERE status = %s AND id IN ({placeholders})""",
                (ExecutionStatus.ACTIVE.value, to_db_timestamp(now),
                 ExecutionStatus.PROCESSING.value, *ids),
            )

    if ids:
        recovered = StaleLockRecovered("workflow_executions", ids)
        logger.warning(f"{recovered}: {', '.join(ids)}", extra={"recovered": recovered})
    return ids
