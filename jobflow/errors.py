"""Error classes for the scheduler and workflow engine.

- ValidationError: malformed schedule/start request. Raised synchronously
  at enqueue or start time and reported to the caller (HTTP 400).
- ExecutionError: a unit of work failed inside the Job Executor. Caught per
  job or per step, persisted as a failure record, and fed into the
  retry/terminal state machine. Never propagated to the poll/advance caller.
- ClaimConflict: a job or execution is already owned by another worker.
  Resolves to a "skipped" outcome rather than an error response.
- StaleLockRecovered: informational. Attached to warning log records when
  an abandoned claim is released; never raised.

Anything else escaping a claim or bookkeeping transaction is a hard failure
of that poll/advance invocation.
"""

from typing import Optional


class JobflowError(Exception):
    """Base exception for jobflow."""
    pass


class ValidationError(JobflowError):
    """A schedule or workflow request is malformed."""
    pass


class NotFoundError(JobflowError):
    """A referenced job, workflow or execution does not exist."""
    pass


class ExecutionError(JobflowError):
    """A job or step failed while being executed.

    `kind` names the failing executor kind so failure records can be
    grouped without parsing messages.
    """

    kind = "execution"

    def __init__(self, message: str, job_type: Optional[str] = None):
        super().__init__(message)
        self.job_type = job_type


class TransportError(ExecutionError):
    """Outbound HTTP call failed: connection error, timeout or non-2xx status."""

    kind = "transport"

    def __init__(self, message: str, status_code: Optional[int] = None, body=None):
        super().__init__(message, job_type="webhook")
        self.status_code = status_code
        self.body = body


class UnknownRoutineError(ExecutionError):
    """No internal routine is registered under the requested name."""

    kind = "unknown_routine"

    def __init__(self, name: str):
        super().__init__(f"Unknown internal function: {name}", job_type="internal_function")
        self.name = name


class ScriptRuntimeError(ExecutionError):
    """A sandboxed script raised, produced no usable value, or could not start."""

    kind = "script_runtime"

    def __init__(self, message: str):
        super().__init__(message, job_type="custom_code")


class ScriptTimeoutError(ScriptRuntimeError):
    """A sandboxed script exceeded its time box."""

    kind = "script_timeout"


class UnsupportedJobTypeError(ExecutionError):
    """The descriptor names a job type the executor cannot dispatch."""

    kind = "unsupported_job_type"


class ClaimConflict(JobflowError):
    """The row is already claimed by another worker."""
    pass


class StaleLockRecovered(JobflowError):
    """An abandoned claim was released back to its runnable state."""

    def __init__(self, table: str, row_ids: list[str]):
        super().__init__(f"Recovered {len(row_ids)} stale row(s) in {table}")
        self.table = table
        self.row_ids = row_ids
