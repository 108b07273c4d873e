"""Routine registry - maps routine names to callables.

Routines are registered in code, not discovered dynamically. Registration
checks the name and the callable's signature up front, so a lookup can
only ever fail one way: UnknownRoutineError.
"""

import inspect
import logging
import threading
from typing import Any, Callable, Optional

from jobflow.errors import UnknownRoutineError

logger = logging.getLogger(__name__)

Routine = Callable[[dict], Any]

# Steps calling this routine are control steps: their next_step is honored
CONTROL_ROUTINE = "set_next"


class RoutineRegistry:
    """Registry of internal routines keyed by exact name."""

    def __init__(self):
        self._routines: dict[str, Routine] = {}
        self._loaded = False
        self._load_lock = threading.Lock()

    def load(self) -> None:
        """Register the built-in routines."""
        if self._loaded:
            return
        with self._load_lock:
            if self._loaded:
                return
            for name, fn in BUILTIN_ROUTINES.items():
                self.register(name, fn)
            self._loaded = True
        logger.info(f"Loaded {len(BUILTIN_ROUTINES)} built-in routines")

    def register(self, name: str, fn: Routine, replace: bool = False) -> None:
        """Register a routine.

        Raises ValueError if the name is not an identifier, the callable
        can't be invoked with a single params dict, or the name is taken
        (unless replace=True).
        """
        if not isinstance(name, str) or not name.isidentifier():
            raise ValueError(f"Invalid routine name: {name!r}")
        if not callable(fn):
            raise ValueError(f"Routine {name} is not callable")
        try:
            inspect.signature(fn).bind({})
        except TypeError as e:
            raise ValueError(f"Routine {name} must accept a single params argument: {e}") from e
        except ValueError:
            pass  # builtins without an introspectable signature
        if name in self._routines and not replace:
            raise ValueError(f"Routine already registered: {name}")
        self._routines[name] = fn
        logger.debug(f"Registered routine: {name}")

    def get(self, name: str) -> Routine:
        """Look up a routine by exact name."""
        self.load()
        fn = self._routines.get(name)
        if fn is None:
            raise UnknownRoutineError(name)
        return fn

    def call(self, name: str, params: Optional[dict] = None) -> Any:
        return self.get(name)(params or {})

    def list_names(self) -> list[str]:
        self.load()
        return sorted(self._routines)

    def count(self) -> int:
        self.load()
        return len(self._routines)


def set_next(params: dict) -> dict:
    """Jump to another step. value: step number, null (complete), "cancel" or "fail"."""
    return {"next_step": params.get("value", params.get("next_step"))}


def schedule_resume(params: dict) -> dict:
    """Suspend the workflow until resume_at (ISO timestamp) or for a delay ("1h")."""
    from jobflow.scheduler.scheduling import parse_delay
    from jobflow.db import to_db_timestamp, utcnow

    if params.get("resume_at"):
        return {"delayed_until": params["resume_at"]}
    if params.get("delay") is not None:
        return {"delayed_until": to_db_timestamp(utcnow() + parse_delay(params["delay"]))}
    return {}


def set_vars(params: dict) -> dict:
    """Return params (or params["values"]) as variables to merge."""
    values = params.get("values", params)
    return {"set_vars": dict(values)}


def noop(params: dict) -> dict:
    return {}


BUILTIN_ROUTINES: dict[str, Routine] = {
    "set_next": set_next,
    "schedule_resume": schedule_resume,
    "set_vars": set_vars,
    "noop": noop,
}


# Global registry instance
_registry: Optional[RoutineRegistry] = None


def get_routine_registry() -> RoutineRegistry:
    """Get the global routine registry instance."""
    global _registry
    if _registry is None:
        _registry = RoutineRegistry()
        _registry.load()
    return _registry
