"""Time arithmetic and request validation for scheduled jobs.

- parse_delay: human durations ("30s", "5m", "2h", "1d", "1500") -> timedelta
- resolve_scheduled_time: explicit time, else relative delay, else now + 5s
- next_occurrence: next cron fire time after a given base time (croniter)
- retry_delay: exponential backoff, backoff_seconds * 2^(attempt-1)
- validate_schedule_request: turns a raw enqueue request into a job spec
"""

import re
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from croniter import croniter

from jobflow.db import parse_timestamp, utcnow
from jobflow.errors import ValidationError
from jobflow.scheduler.schemas import SCHEDULABLE_JOB_TYPES, JobType, ScheduleType

DEFAULT_DELAY = timedelta(seconds=5)
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 300

_DELAY_PATTERN = re.compile(
    r"^(?P<value>\d+(?:\.\d+)?|\.\d+)\s*"
    r"(?P<unit>milliseconds?|msecs?|ms|seconds?|secs?|s|minutes?|mins?|m|"
    r"hours?|hrs?|h|days?|d|weeks?|w|years?|yrs?|y)?$",
    re.IGNORECASE,
)

_UNIT_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
    "y": 365.25 * 24 * 60 * 60 * 1000,
}


def _unit_key(unit: str) -> str:
    unit = unit.lower()
    if unit.startswith("ms") or unit.startswith("msec") or unit.startswith("milli"):
        return "ms"
    if unit.startswith("mi") or unit == "m":
        return "m"
    return unit[0]


def parse_delay(value: Union[str, int, float]) -> timedelta:
    """Parse a relative delay.

    Strings carry a unit ("30s", "5 minutes", "2h"); a bare number is
    milliseconds.
    """
    if isinstance(value, bool):
        raise ValidationError(f'Invalid delay format: "{value}". Examples: 30s, 5m, 2h, 1d')
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValidationError(f"Delay must not be negative: {value}")
        return timedelta(milliseconds=value)

    match = _DELAY_PATTERN.match(str(value).strip())
    if not match:
        raise ValidationError(f'Invalid delay format: "{value}". Examples: 30s, 5m, 2h, 1d')
    unit = match.group("unit")
    factor = _UNIT_MS[_unit_key(unit)] if unit else 1
    return timedelta(milliseconds=float(match.group("value")) * factor)


def resolve_scheduled_time(
    scheduled_time: Optional[Union[str, datetime]] = None,
    delay: Optional[Union[str, int, float]] = None,
    now: Optional[datetime] = None,
) -> datetime:
    """Pick the first fire time: explicit time wins, then delay, then the default."""
    now = now or utcnow()
    if scheduled_time:
        try:
            return parse_timestamp(scheduled_time)
        except ValueError as e:
            raise ValidationError("Invalid scheduled_time format (use ISO)") from e
    if delay is not None and delay != "":
        return now + parse_delay(delay)
    return now + DEFAULT_DELAY


def validate_recurrence_rule(rule: Optional[str]) -> str:
    if not rule or not isinstance(rule, str):
        raise ValidationError("recurrence_rule is required for recurring jobs")
    if not croniter.is_valid(rule):
        raise ValidationError(f"Invalid recurrence_rule: {rule}")
    return rule


def next_occurrence(rule: str, after: Union[str, datetime]) -> datetime:
    """Next fire time strictly after `after`.

    Callers pass the job's previous scheduled_time, not the wall clock, so
    late runs don't shift the schedule.
    """
    base = parse_timestamp(after)
    return croniter(rule, base).get_next(datetime)


def retry_delay(backoff_seconds: int, attempt: int) -> timedelta:
    """Backoff before retrying after failed attempt number `attempt` (1-based).

    Unbounded: only max_attempts limits how far out the last retry lands.
    """
    return timedelta(seconds=backoff_seconds * 2 ** (max(attempt, 1) - 1))


def build_descriptor(job_type: str, fields: dict[str, Any]) -> dict[str, Any]:
    """Pick the kind-specific fields out of a flat request into a job descriptor."""
    descriptor: dict[str, Any] = {"type": job_type}
    if job_type == JobType.WEBHOOK.value:
        if not fields.get("url"):
            raise ValidationError("url is required for webhook")
        descriptor["url"] = fields["url"]
        descriptor["method"] = (fields.get("method") or "GET").upper()
        descriptor["headers"] = fields.get("headers") or {}
        descriptor["body"] = fields.get("body")
    elif job_type == JobType.INTERNAL_FUNCTION.value:
        if not fields.get("function_name"):
            raise ValidationError("function_name is required")
        descriptor["function_name"] = fields["function_name"]
        descriptor["params"] = fields.get("params") or {}
    elif job_type == JobType.CUSTOM_CODE.value:
        if not fields.get("code"):
            raise ValidationError("code is required")
        descriptor["code"] = fields["code"]
        descriptor["input"] = fields.get("input") if fields.get("input") is not None else {}
    else:
        raise ValidationError("job_type must be webhook, internal_function or custom_code")
    return descriptor


def validate_schedule_request(request: dict[str, Any], now: Optional[datetime] = None) -> dict[str, Any]:
    """Validate an enqueue request and normalize it into a job spec.

    Returns a dict with name, type, job_type, data, scheduled_time
    (datetime), recurrence_rule, max_attempts and backoff_seconds.
    """
    schedule_type = request.get("type")
    if schedule_type not in (ScheduleType.ONE_TIME.value, ScheduleType.RECURRING.value):
        raise ValidationError("type must be 'one_time' or 'recurring'")

    job_type = request.get("job_type")
    if job_type not in [t.value for t in SCHEDULABLE_JOB_TYPES]:
        raise ValidationError("job_type must be webhook, internal_function or custom_code")

    descriptor = build_descriptor(job_type, request)

    recurrence_rule = None
    if schedule_type == ScheduleType.RECURRING.value:
        recurrence_rule = validate_recurrence_rule(request.get("recurrence_rule"))

    max_attempts = request.get("max_attempts")
    max_attempts = DEFAULT_MAX_ATTEMPTS if max_attempts is None else max_attempts
    if not isinstance(max_attempts, int) or max_attempts < 1:
        raise ValidationError("max_attempts must be a positive integer")

    backoff_seconds = request.get("backoff_seconds")
    backoff_seconds = DEFAULT_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
    if not isinstance(backoff_seconds, int) or backoff_seconds < 0:
        raise ValidationError("backoff_seconds must be a non-negative integer")

    return {
        "name": request.get("name") or f"{job_type} job",
        "type": schedule_type,
        "job_type": job_type,
        "data": descriptor,
        "scheduled_time": resolve_scheduled_time(
            request.get("scheduled_time"), request.get("delay"), now=now,
        ),
        "recurrence_rule": recurrence_rule,
        "max_attempts": max_attempts,
        "backoff_seconds": backoff_seconds,
    }
