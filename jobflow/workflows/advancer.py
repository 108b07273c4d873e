"""Workflow advancer - drives one execution forward.

advance_workflow(execution_id):
1. Claims the execution (active/delayed → processing). If someone else
   holds it, or it is finished, returns {"status": "skipped"}.
2. Runs steps in cursor order, at most MAX_STEPS_PER_INVOCATION per call:
   - variables are re-read from storage before every step
   - the step config is resolved against {variables, this, env}
   - the resolved descriptor runs through the JobExecutor
   - set_vars (static then dynamic) are merged and persisted immediately
   - the step's outcome is recorded whether it succeeded or not
   - a control step's next_step can jump, complete, cancel or fail
   - delayed_until schedules a resume job and suspends the execution
3. When the step cap is hit, schedules a continuation job ~1s out and
   returns the execution to active.

Anything a step's executor raises is recorded as a failed step and the
workflow moves on; errors outside the ExecutionError taxonomy are also
logged with their traceback. A failure in the advancer's own bookkeeping
(claim, variable merge, audit row, resume job) is unexpected: the execution
is released back to active and the error re-raised to the caller.
"""

import logging
import os
import time
from datetime import timedelta
from typing import Any, Optional

from jobflow.db import to_db_timestamp, transaction, utcnow
from jobflow.errors import ClaimConflict, ExecutionError
from jobflow.routines.registry import CONTROL_ROUTINE
from jobflow.scheduler import job_store
from jobflow.scheduler.job_executor import JobExecutor, get_job_executor
from jobflow.scheduler.schemas import JobType
from jobflow.templating.placeholders import build_context, resolve_placeholders
from jobflow.workflows import store
from jobflow.workflows.results import StepOutcome
from jobflow.workflows.schemas import ExecutionStatus

logger = logging.getLogger(__name__)

MAX_STEPS_PER_INVOCATION = int(os.environ.get("MAX_STEPS_PER_INVOCATION", "20"))
CONTINUATION_DELAY = timedelta(seconds=1)

# next_step values that end the execution with that status
_TERMINAL_SIGNALS = {
    "cancel": ExecutionStatus.CANCEL,
    "fail": ExecutionStatus.FAIL,
}


def is_control_step(step: dict) -> bool:
    """Only set_next steps may redirect the cursor."""
    return (
        step.get("type") == JobType.INTERNAL_FUNCTION.value
        and (step.get("config") or {}).get("function_name") == CONTROL_ROUTINE
    )


def _interpret_next_step(value: Any) -> tuple[Optional[ExecutionStatus], Optional[int]]:
    """Map a next_step signal to (terminal status, None) or (None, step number)."""
    if value is None:
        return ExecutionStatus.COMPLETED, None
    if isinstance(value, str) and value.strip().lower() in _TERMINAL_SIGNALS:
        return _TERMINAL_SIGNALS[value.strip().lower()], None
    if isinstance(value, bool):
        return ExecutionStatus.ERROR, None
    if isinstance(value, int):
        return None, value
    if isinstance(value, float) and value.is_integer():
        return None, int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return None, int(value.strip())
    return ExecutionStatus.ERROR, None


def run_step(execution_id: str, step: dict, step_number: int, executor: JobExecutor) -> StepOutcome:
    """Execute one step and persist its variables and audit row."""
    variables = store.get_variables(execution_id)
    context = build_context(variables, execution_id=execution_id, step_number=step_number)

    config = dict(step.get("config") or {})
    set_vars_template = config.pop("set_vars", None)
    descriptor = resolve_placeholders(config, context)
    descriptor["type"] = step["type"]

    label = f"{execution_id}:step-{step_number}"
    started = time.monotonic()
    try:
        output = executor.execute(descriptor, label=label)
    except ExecutionError as e:
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.warning(f"[{label}] {step['type']} step failed: {e}")
        outcome = StepOutcome.failure(str(e), duration_ms)
    except Exception as e:
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.error(f"[{label}] {step['type']} step raised {type(e).__name__}: {e}", exc_info=True)
        outcome = StepOutcome.failure(f"{type(e).__name__}: {e}", duration_ms)
    else:
        duration_ms = int((time.monotonic() - started) * 1000)
        context["this"] = output if output is not None else {}
        static_set_vars = {}
        if isinstance(set_vars_template, dict):
            static_set_vars = resolve_placeholders(set_vars_template, context)
        outcome = StepOutcome.from_output(
            output,
            control_step=is_control_step(step),
            static_set_vars=static_set_vars,
            duration_ms=duration_ms,
        )
        logger.info(f"[{label}] {step['type']} step succeeded in {duration_ms}ms")

    if outcome.success and outcome.set_vars:
        store.merge_variables(execution_id, outcome.set_vars)
    store.record_step_result(execution_id, step, step_number, outcome)
    return outcome


def _finished(execution_id: str, status: ExecutionStatus, steps_run: list[int], **extra) -> dict:
    return {"status": status.value, "execution_id": execution_id, "steps_run": steps_run, **extra}


def advance_workflow(execution_id: str, executor: Optional[JobExecutor] = None) -> dict:
    """Claim an execution and run it until it completes, suspends or hits the step cap."""
    try:
        execution = store.claim_execution(execution_id)
    except ClaimConflict:
        logger.info(f"Execution {execution_id} not claimable, skipping")
        return {"status": "skipped", "execution_id": execution_id}

    executor = executor or get_job_executor()
    workflow_id = execution["workflow_id"]
    step_number = execution["current_step_number"]
    steps_run: list[int] = []

    try:
        for _ in range(MAX_STEPS_PER_INVOCATION):
            step = store.get_step(workflow_id, step_number)
            if step is None:
                store.update_status(execution_id, ExecutionStatus.COMPLETED, step_number)
                return _finished(execution_id, ExecutionStatus.COMPLETED, steps_run)

            outcome = run_step(execution_id, step, step_number, executor)
            steps_run.append(step_number)

            next_step = step_number + 1
            if outcome.has_next_step:
                terminal, jump = _interpret_next_step(outcome.next_step)
                if terminal is not None:
                    if terminal == ExecutionStatus.ERROR:
                        logger.error(
                            f"Execution {execution_id} step {step_number} returned "
                            f"invalid next_step {outcome.next_step!r}"
                        )
                    store.update_status(execution_id, terminal, step_number)
                    return _finished(execution_id, terminal, steps_run)
                next_step = jump

            if outcome.delayed_until is not None:
                with transaction() as tx:
                    resume_job = job_store.create_resume_job(
                        execution_id, next_step, outcome.delayed_until, reason="resume", tx=tx,
                    )
                    store.update_status(execution_id, ExecutionStatus.DELAYED, next_step, tx=tx)
                logger.info(
                    f"Execution {execution_id} delayed until "
                    f"{to_db_timestamp(outcome.delayed_until)} (resume at step {next_step})"
                )
                return _finished(
                    execution_id,
                    ExecutionStatus.DELAYED,
                    steps_run,
                    delayed_until=to_db_timestamp(outcome.delayed_until),
                    resume_job_id=resume_job["id"],
                    next_step=next_step,
                )

            step_number = next_step
            store.set_cursor(execution_id, step_number)

        with transaction() as tx:
            continuation = job_store.create_resume_job(
                execution_id, step_number, utcnow() + CONTINUATION_DELAY, reason="continue", tx=tx,
            )
            store.update_status(execution_id, ExecutionStatus.ACTIVE, step_number, tx=tx)
        logger.info(
            f"Execution {execution_id} hit {MAX_STEPS_PER_INVOCATION}-step cap, "
            f"continuing at step {step_number} via job {continuation['id']}"
        )
        return {
            "status": "continued_later",
            "execution_id": execution_id,
            "steps_run": steps_run,
            "continuation_job_id": continuation["id"],
            "next_step": step_number,
        }

    except Exception as e:
        logger.error(f"Execution {execution_id} failed at step {step_number}: {e}", exc_info=True)
        store.release_execution(execution_id)
        raise
