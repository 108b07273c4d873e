"""Template resolution for workflow step configs and outbound messages.

- placeholders: workflow variant. Resolves {{key}} against execution
  variables, the current step output (this) and env helpers. Unresolved
  keys become empty strings.
- entity: personalization variant. Resolves {{entity.field|modifiers}}
  against named records and reports unresolved placeholders explicitly.
"""

from jobflow.templating.entity import EntityRenderResult, format_date, render_entity_template
from jobflow.templating.placeholders import build_context, get_nested, resolve_placeholders

__all__ = [
    "EntityRenderResult",
    "build_context",
    "format_date",
    "get_nested",
    "render_entity_template",
    "resolve_placeholders",
]
