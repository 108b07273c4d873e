"""Job executor - runs one job descriptor and returns its output.

Dispatches on descriptor["type"]:
- webhook: one HTTP request through the OutboundClient
- internal_function: named routine from the RoutineRegistry
- custom_code: script through the ScriptRunner

Failures raise an ExecutionError subclass specific to the kind. The
executor has no datastore access and never retries.

Collaborators are injected. get_job_executor() builds a process-wide
default from the global routine registry, a fresh OutboundClient and a
SubprocessScriptRunner; set_job_executor() swaps it (tests, custom wiring).
"""

import logging
from typing import Any, Callable, Optional

from jobflow.errors import ExecutionError, TransportError, UnsupportedJobTypeError
from jobflow.routines.registry import RoutineRegistry, get_routine_registry
from jobflow.scheduler.http_client import OutboundClient
from jobflow.scheduler.sandbox import ScriptRunner, SubprocessScriptRunner
from jobflow.scheduler.schemas import JobType

logger = logging.getLogger(__name__)


class JobExecutor:
    """Stateless dispatcher over the three executable job types."""

    def __init__(
        self,
        http_client: Optional[OutboundClient] = None,
        routines: Optional[RoutineRegistry] = None,
        script_runner: Optional[ScriptRunner] = None,
    ):
        self.http_client = http_client or OutboundClient()
        self.routines = routines or get_routine_registry()
        self.script_runner = script_runner or SubprocessScriptRunner()
        self._handlers: dict[str, Callable[[dict, str], Any]] = {
            JobType.WEBHOOK.value: self._run_webhook,
            JobType.INTERNAL_FUNCTION.value: self._run_internal_function,
            JobType.CUSTOM_CODE.value: self._run_custom_code,
        }

    def execute(self, descriptor: dict, label: str = "") -> Any:
        """Execute a descriptor and return its output."""
        job_type = descriptor.get("type")
        handler = self._handlers.get(job_type)
        if handler is None:
            raise UnsupportedJobTypeError(f"Unsupported job type: {job_type}", job_type=job_type)
        logger.debug(f"[{label}] executing {job_type}")
        return handler(descriptor, label)

    def _run_webhook(self, descriptor: dict, label: str) -> Any:
        url = descriptor.get("url")
        if not url:
            raise TransportError("Webhook descriptor has no url")
        return self.http_client.request(
            descriptor.get("method") or "GET",
            url,
            headers=descriptor.get("headers") or {},
            body=descriptor.get("body"),
        )

    def _run_internal_function(self, descriptor: dict, label: str) -> Any:
        name = descriptor.get("function_name")
        routine = self.routines.get(name)
        try:
            return routine(descriptor.get("params") or {})
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(
                f"Internal function {name} failed: {e}",
                job_type=JobType.INTERNAL_FUNCTION.value,
            ) from e

    def _run_custom_code(self, descriptor: dict, label: str) -> Any:
        code = descriptor.get("code")
        if not code:
            raise ExecutionError("custom_code descriptor has no code", job_type=JobType.CUSTOM_CODE.value)
        return self.script_runner.run(code, descriptor.get("input"), label=label)


# Global executor instance
_executor: Optional[JobExecutor] = None


def get_job_executor() -> JobExecutor:
    """Get the global job executor instance."""
    global _executor
    if _executor is None:
        _executor = JobExecutor()
    return _executor


def set_job_executor(executor: Optional[JobExecutor]) -> None:
    """Replace the global job executor (None resets to the default on next use)."""
    global _executor
    _executor = executor
