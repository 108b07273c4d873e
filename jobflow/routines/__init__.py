"""Internal routines - named functions callable from jobs and workflow steps.

Each routine takes the step's resolved params (a dict) and returns a
JSON-serializable result. A few built-ins return control signals that the
workflow advancer interprets:

- set_next: {"next_step": ...}, honored only for set_next steps
- schedule_resume: {"delayed_until": ...}, suspends the workflow until then
- set_vars: {"set_vars": {...}}, merged into the execution's variables
"""

from jobflow.routines.registry import CONTROL_ROUTINE, RoutineRegistry, get_routine_registry

__all__ = ["CONTROL_ROUTINE", "RoutineRegistry", "get_routine_registry"]
