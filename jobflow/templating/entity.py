"""Entity placeholder resolution for outbound message personalization.

Placeholders take the form {{entity.field}} with optional pipe-chained
modifiers:

    {{contact.first_name|capitalize}}
    {{appt.start_time|date:dddd, MMMM Do|default:soon}}

Modifiers:
- date:FMT, time:FMT, datetime:FMT   format the value as a date (see format_date)
- default:TEXT                       used when the value is missing or unformattable
- upper, lower, capitalize, title    text-case transforms, applied after formatting

Only entities in `entities` are processed; other {{a.b}} expressions pass
through untouched. A placeholder that cannot be resolved and has no default
is left in the text and reported in `unresolved`.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Optional

ENTITY_PATTERN = re.compile(r"\{\{(\w+)\.(\w+)(?:\|([^}]+))?\}\}")

DEFAULT_ENTITIES = ("contact", "case", "appt")

ORDINAL_WORDS = [
    "First", "Second", "Third", "Fourth", "Fifth", "Sixth", "Seventh", "Eighth",
    "Ninth", "Tenth", "Eleventh", "Twelfth", "Thirteenth", "Fourteenth",
    "Fifteenth", "Sixteenth", "Seventeenth", "Eighteenth", "Nineteenth",
    "Twentieth", "Twenty-first", "Twenty-second", "Twenty-third",
    "Twenty-fourth", "Twenty-fifth", "Twenty-sixth", "Twenty-seventh",
    "Twenty-eighth", "Twenty-ninth", "Thirtieth", "Thirty-first",
]

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
WEEKDAYS_ABBR = ["Mon", "Tues", "Wed", "Thurs", "Fri", "Sat", "Sun"]
MONTHS = [
    "January", "February", "March", "April", "May", "June", "July",
    "August", "September", "October", "November", "December",
]
MONTHS_ABBR = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sept", "Oct", "Nov", "Dec"]

# Longest tokens first so "MMMM" wins over "MMM" and "MM"
_DATE_TOKENS = ["YYYY", "MMMM", "dddd", "MMM", "DoW", "ddd", "MM", "DD", "Do", "HH", "hh", "mm", "ss", "D", "A"]
_DATE_TOKEN_PATTERN = re.compile("|".join(_DATE_TOKENS))

CASE_TRANSFORMS = {
    "upper": str.upper,
    "lower": str.lower,
    "capitalize": str.capitalize,
    "title": str.title,
}


def ordinal(n: int) -> str:
    if 11 <= n % 100 <= 13:
        return f"{n}th"
    return f"{n}" + {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")


def _coerce_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return None
    return None


def format_date(value: Any, fmt: str) -> Optional[str]:
    """Format a date-like value with moment-style tokens.

    Tokens: YYYY, MM, MMM, MMMM, D, DD, Do (1st), DoW (First), ddd, dddd,
    HH, hh, mm, ss, A. Returns None if the value is not a date.
    """
    d = _coerce_datetime(value)
    if d is None:
        return None

    tokens = {
        "YYYY": str(d.year),
        "MM": f"{d.month:02d}",
        "MMMM": MONTHS[d.month - 1],
        "MMM": MONTHS_ABBR[d.month - 1],
        "DD": f"{d.day:02d}",
        "D": str(d.day),
        "Do": ordinal(d.day),
        "DoW": ORDINAL_WORDS[d.day - 1],
        "dddd": WEEKDAYS[d.weekday()],
        "ddd": WEEKDAYS_ABBR[d.weekday()],
        "HH": f"{d.hour:02d}",
        "hh": f"{(d.hour % 12) or 12:02d}",
        "mm": f"{d.minute:02d}",
        "ss": f"{d.second:02d}",
        "A": "PM" if d.hour >= 12 else "AM",
    }
    return _DATE_TOKEN_PATTERN.sub(lambda m: tokens[m.group(0)], fmt)


@dataclass
class EntityRenderResult:
    """Outcome of rendering one template.

    status is "success" when everything resolved, "partial_success" when
    some placeholders were left in place, and "failed" when that happened
    under strict mode.
    """

    status: str
    text: str
    unresolved: list[str] = field(default_factory=list)


def _parse_modifiers(pipe: Optional[str]) -> tuple[Optional[str], Optional[str], list[str]]:
    fmt = None
    default = None
    transforms = []
    if not pipe:
        return fmt, default, transforms
    for part in pipe.split("|"):
        name, _, arg = part.partition(":")
        name = name.strip()
        if name in ("date", "time", "datetime") and arg:
            fmt = arg
        elif name == "default":
            default = arg
        elif name in CASE_TRANSFORMS:
            transforms.append(name)
    return fmt, default, transforms


def render_entity_template(
    text: str,
    records: dict[str, Optional[dict]],
    strict: bool = False,
    entities: Iterable[str] = DEFAULT_ENTITIES,
) -> EntityRenderResult:
    """Substitute entity placeholders in `text` from `records`.

    Args:
        text: Template text.
        records: Entity name -> record mapping (None for a missing record).
        strict: Report "failed" instead of "partial_success" when anything
            is left unresolved.
        entities: Entity names this call is responsible for.
    """
    known = set(entities)
    unresolved: list[str] = []

    def replace(match: re.Match) -> str:
        entity, field_name, pipe = match.group(1), match.group(2), match.group(3)
        if entity not in known:
            return match.group(0)

        record = records.get(entity) or {}
        value = record.get(field_name)
        fmt, default, transforms = _parse_modifiers(pipe)

        if value is None:
            if default is not None:
                return default
            unresolved.append(match.group(0))
            return match.group(0)

        if fmt:
            rendered = format_date(value, fmt)
            if rendered is None:
                if default is not None:
                    return default
                unresolved.append(match.group(0))
                return match.group(0)
        else:
            rendered = str(value)

        for name in transforms:
            rendered = CASE_TRANSFORMS[name](rendered)
        return rendered

    output = ENTITY_PATTERN.sub(replace, text)

    if unresolved and strict:
        status = "failed"
    elif unresolved:
        status = "partial_success"
    else:
        status = "success"
    return EntityRenderResult(status=status, text=output, unresolved=unresolved)
