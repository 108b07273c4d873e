"""Scheduler schemas: job lifecycle enums and API request/response models.

Request models are deliberately loose on `type` / `job_type` so that
malformed requests reach scheduling.validate_schedule_request and are
rejected with a descriptive ValidationError instead of a generic 422.
"""

from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field


class ScheduleType(str, Enum):
    """How often a job runs."""
    ONE_TIME = "one_time"
    RECURRING = "recurring"


class JobType(str, Enum):
    """What a job (or workflow step) executes."""
    WEBHOOK = "webhook"
    INTERNAL_FUNCTION = "internal_function"
    CUSTOM_CODE = "custom_code"
    WORKFLOW_RESUME = "workflow_resume"


# Job types a caller may schedule directly; workflow_resume is engine-internal
SCHEDULABLE_JOB_TYPES = (JobType.WEBHOOK, JobType.INTERNAL_FUNCTION, JobType.CUSTOM_CODE)


class JobStatus(str, Enum):
    """Scheduled job lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class AttemptStatus(str, Enum):
    """Outcome of one execution attempt (job_results / workflow_execution_steps)."""
    SUCCESS = "success"
    FAILED = "failed"


class ScheduleJobRequest(BaseModel):
    """Request to enqueue a one-time or recurring job.

    Descriptor fields are flat, as callers send them; only the ones that
    belong to `job_type` are kept.
    """

    type: Optional[str] = Field(default=None, description="one_time | recurring")
    job_type: Optional[str] = Field(default=None, description="webhook | internal_function | custom_code")
    name: Optional[str] = None
    delay: Optional[Union[str, int, float]] = Field(
        default=None, description="Relative delay, e.g. 30s, 5m, 2h, 1d",
    )
    scheduled_time: Optional[str] = Field(default=None, description="Absolute ISO-8601 time")
    recurrence_rule: Optional[str] = Field(default=None, description="Cron expression (recurring only)")
    max_attempts: int = 3
    backoff_seconds: int = 300

    # webhook
    url: Optional[str] = None
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None

    # internal_function
    function_name: Optional[str] = None
    params: dict[str, Any] = Field(default_factory=dict)

    # custom_code
    code: Optional[str] = None
    input: Any = Field(default_factory=dict)


class ScheduleJobResponse(BaseModel):
    id: str
    message: str = "Job created"
    scheduled_time: str
    type: str
    job_type: str


class JobResultRecord(BaseModel):
    """One immutable execution attempt."""

    id: str
    job_id: str
    execution_number: int
    attempt: int
    status: AttemptStatus
    output_data: Any = None
    error_message: Optional[str] = None
    duration_ms: int = 0
    executed_at: Optional[str] = None


class JobStats(BaseModel):
    total_runs: int = 0
    total_failures: int = 0


class ScheduledJobDetail(BaseModel):
    """Job metadata plus its attempt history summary."""

    id: str
    name: str
    type: ScheduleType
    job_type: str
    data: dict[str, Any] = Field(default_factory=dict)
    scheduled_time: str
    recurrence_rule: Optional[str] = None
    status: JobStatus
    attempts: int = 0
    max_attempts: int = 3
    backoff_seconds: int = 300
    execution_count: int = 0
    workflow_execution_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    stats: JobStats = Field(default_factory=JobStats)
    latest_execution: Optional[JobResultRecord] = None
    history: Optional[list[JobResultRecord]] = None


class ProcessJobsResponse(BaseModel):
    """Per-job outcomes of one poll cycle."""

    processed: int
    results: list[dict[str, Any]] = Field(default_factory=list)
