"""Step outcome - the tagged result of executing one workflow step.

Ordinary output is kept as the payload. Control signals are lifted out into
their own fields when the outcome is built:

- next_step: only from control steps (the set_next routine). Any other
  step's "next_step" key is plain payload.
- delayed_until: from any step whose output is a mapping; must parse as
  a timestamp or it is ignored.
- set_vars: static step-level set_vars merged with the output's own
  set_vars mapping, output values winning.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from jobflow.db import parse_timestamp

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    """What one step produced and what it asks the advancer to do next."""

    success: bool
    output: Any = None
    error: Optional[str] = None
    duration_ms: int = 0
    set_vars: dict[str, Any] = field(default_factory=dict)
    has_next_step: bool = False
    next_step: Any = None
    delayed_until: Optional[datetime] = None

    @classmethod
    def failure(cls, error: str, duration_ms: int = 0) -> "StepOutcome":
        return cls(success=False, error=error, duration_ms=duration_ms)

    @classmethod
    def from_output(
        cls,
        output: Any,
        control_step: bool = False,
        static_set_vars: Optional[dict[str, Any]] = None,
        duration_ms: int = 0,
    ) -> "StepOutcome":
        outcome = cls(success=True, output=output, duration_ms=duration_ms)
        outcome.set_vars = dict(static_set_vars or {})

        if not isinstance(output, dict):
            return outcome

        dynamic = output.get("set_vars")
        if isinstance(dynamic, dict):
            outcome.set_vars.update(dynamic)

        if control_step and "next_step" in output:
            outcome.has_next_step = True
            outcome.next_step = output["next_step"]

        raw_delay = output.get("delayed_until")
        if raw_delay:
            try:
                outcome.delayed_until = parse_timestamp(raw_delay)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring unparsable delayed_until: {raw_delay!r}")

        return outcome
