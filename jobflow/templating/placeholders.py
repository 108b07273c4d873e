"""Placeholder resolution for workflow step configs.

Walks strings, lists and dicts and substitutes every {{key}} expression.
Lookup order for a key:

1. Exact key in `variables`, then dotted path into `variables`
   (`customer.email`, `items[0].sku`).
2. `this` or `this.<path>`: the live output of the step being executed.
3. `env.now`, `env.executionId`, `env.stepNumber`. Any other env key is null.

Missing and null values render as "". A string that consists of a single
placeholder yields the looked-up value itself, so numbers, lists and
mappings keep their type; placeholders embedded in longer text are
stringified (JSON for non-string values).
"""

import json
import re
from datetime import datetime, timezone
from typing import Any, Optional

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
_INDEX_PATTERN = re.compile(r"\[(\w+)\]")

ENV_HELPERS = ("now", "executionId", "stepNumber")

_MISSING = object()


def build_context(
    variables: Optional[dict] = None,
    this: Any = None,
    execution_id: Optional[str] = None,
    step_number: Optional[int] = None,
) -> dict:
    """Assemble the three resolution scopes for one step."""
    return {
        "variables": variables or {},
        "this": this if this is not None else {},
        "env": {"executionId": execution_id, "stepNumber": step_number},
    }


def get_nested(obj: Any, path: str) -> Any:
    """Follow a dotted path (with optional [n] segments) into nested data.

    Returns None when any segment is missing.
    """
    value = _walk(obj, path)
    return None if value is _MISSING else value


def _walk(obj: Any, path: str) -> Any:
    current = obj
    for part in _INDEX_PATTERN.sub(r".\1", path).split("."):
        if part == "":
            continue
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _lookup(key: str, context: dict) -> Any:
    variables = context.get("variables") or {}
    if key in variables:
        return variables[key]
    if "." in key or "[" in key:
        value = _walk(variables, key)
        if value is not _MISSING:
            return value

    if key == "this":
        return context.get("this")
    if key.startswith("this.") or key.startswith("this["):
        return _walk(context.get("this"), key[4:])

    if key.startswith("env."):
        name = key[4:]
        env = context.get("env") or {}
        if name == "now":
            return env.get("now") or datetime.now(timezone.utc).isoformat()
        if name in ENV_HELPERS:
            return env.get(name)
        return None

    return _MISSING


def _stringify(value: Any) -> str:
    if value is None or value is _MISSING:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def _resolve_string(text: str, context: dict) -> Any:
    whole = PLACEHOLDER_PATTERN.fullmatch(text)
    if whole:
        value = _lookup(whole.group(1).strip(), context)
        if value is None or value is _MISSING:
            return ""
        return value

    return PLACEHOLDER_PATTERN.sub(
        lambda m: _stringify(_lookup(m.group(1).strip(), context)),
        text,
    )


def resolve_placeholders(value: Any, context: dict) -> Any:
    """Return a copy of `value` with every placeholder substituted.

    Mapping keys are left as-is; only values are resolved. Never mutates
    the input.
    """
    if isinstance(value, str):
        return _resolve_string(value, context)
    if isinstance(value, list):
        return [resolve_placeholders(item, context) for item in value]
    if isinstance(value, dict):
        return {k: resolve_placeholders(v, context) for k, v in value.items()}
    return value
