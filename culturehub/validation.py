"""
culturehub/validation.py
-----------------------------------------------------------------------------
Schema-driven validation and sanitisation of submitted form fields.

A schema is a plain mapping of field name → ``FieldSpec``.  Each spec
compiles into a list of tagged rules which are evaluated uniformly:

    Required                     – value must be non-blank
    Length(min, max)             – on the *sanitised* string
    Pattern(regex, message)      – full match (email, YYYY-MM-DD)
    Custom(predicate, message)   – arbitrary check

``validate_and_sanitize`` checks every field in declaration order and
collects all errors rather than stopping at the first bad field, so a form
can show every problem at once.  A field stops at its own first failing
rule.  Only fields that passed appear in ``sanitized``; callers must treat
any error as a rejection of the whole request.

Sanitisation strips ``<script>…</script>`` blocks, ``javascript:`` URIs and
inline ``on<event>=`` handler attributes before any length check, then
trims surrounding whitespace.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Mapping, Union

from culturehub.errors import ApiError

# -----------------------------------------------------------------------------
# Sanitisation
# -----------------------------------------------------------------------------

_SANITIZE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
)

# Max lengths applied when a spec does not set one.
DEFAULT_MAX_LENGTHS: dict[str, int] = {
    "title": 255,
    "description": 5000,
    "name": 255,
    "email": 255,
    "username": 255,
    "password": 255,
    "url": 2048,
}
FALLBACK_MAX_LENGTH = 5000

EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")


def sanitize_string(value: str) -> str:
    """Remove known script-injection fragments and trim."""
    for pattern in _SANITIZE_PATTERNS:
        value = pattern.sub("", value)
    return value.strip()


# -----------------------------------------------------------------------------
# Rules
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Required:
    pass


@dataclass(frozen=True)
class Length:
    min: int | None = None
    max: int | None = None


@dataclass(frozen=True)
class Pattern:
    regex: re.Pattern[str]
    message: str


@dataclass(frozen=True)
class Custom:
    predicate: Callable[[Any], bool]
    message: str


Rule = Union[Required, Length, Pattern, Custom]


def _is_blank(value: Any) -> bool:
    return not value or str(value).strip() == ""


def _scalar(spec: "FieldSpec", value: Any) -> Any:
    """
    Bring a JSON value into the string form the rules expect.

    Numbers become strings, except ints for ``type="integer"`` fields.

    Raises
    ------
    TypeError for booleans, lists, objects and other non-scalars.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(type(value).__name__)
    if spec.type == "integer" and isinstance(value, int):
        return value
    return str(value)


def check_rule(name: str, rule: Rule, value: Any) -> str | None:
    """
    Evaluate one rule against an already sanitised value.

    Returns
    -------
    str | None : The error message, or None if the rule passed.
    """
    if isinstance(rule, Required):
        return f"{name} is required" if _is_blank(value) else None
    if isinstance(rule, Length):
        if not isinstance(value, str):
            return None
        if rule.max is not None and len(value) > rule.max:
            return f"{name} must not exceed {rule.max} characters"
        if rule.min is not None and len(value) < rule.min:
            return f"{name} must be at least {rule.min} characters"
        return None
    if isinstance(rule, Pattern):
        return None if rule.regex.fullmatch(str(value)) else rule.message.format(name=name)
    if isinstance(rule, Custom):
        try:
            ok = bool(rule.predicate(value))
        except (TypeError, ValueError):
            ok = False
        return None if ok else rule.message.format(name=name)
    raise TypeError(f"Unknown validation rule: {rule!r}")


@dataclass(frozen=True)
class FieldSpec:
    """
    Declarative description of one field.

    ``type`` is ``"email"``, ``"date"`` or ``"integer"`` (JSON ints are kept
    as ints, everything else is checked as text); ``validate`` is an optional
    predicate whose failure is reported as ``validate_message``.
    """

    required: bool = False
    min_length: int | None = None
    max_length: int | None = None
    type: str | None = None
    validate: Callable[[Any], bool] | None = None
    validate_message: str | None = None

    def rules(self, name: str) -> list[Rule]:
        rules: list[Rule] = []
        if self.required:
            rules.append(Required())
        max_length = self.max_length or DEFAULT_MAX_LENGTHS.get(name, FALLBACK_MAX_LENGTH)
        rules.append(Length(min=self.min_length, max=max_length))
        if self.type == "email":
            rules.append(Pattern(EMAIL_RE, "{name} must be a valid email"))
        elif self.type == "date":
            rules.append(Pattern(DATE_RE, "{name} must be in YYYY-MM-DD format"))
        if self.validate is not None:
            rules.append(Custom(self.validate, self.validate_message or "{name} is invalid"))
        return rules


Schema = Mapping[str, FieldSpec]


@dataclass
class ValidationResult:
    sanitized: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def validate_and_sanitize(data: Mapping[str, Any], schema: Schema) -> ValidationResult:
    """
    Validate ``data`` against ``schema`` and return cleaned values.

    Parameters
    ----------
    data   : Submitted fields (form or JSON).  Keys not in the schema are
             ignored and never reach ``sanitized``.
    schema : Field name → ``FieldSpec``, checked in declaration order.

    Returns
    -------
    ValidationResult
        ``sanitized`` holds every field that passed (optional blank fields
        are passed through unchanged); ``errors`` lists one message per
        failing field.
    """
    result = ValidationResult()

    for name, spec in schema.items():
        value = data.get(name)

        if spec.required and _is_blank(value):
            result.errors.append(f"{name} is required")
            continue

        # Absent optional fields skip every other check.
        if value is None or value == "":
            result.sanitized[name] = value
            continue

        try:
            value = _scalar(spec, value)
        except TypeError:
            kind = "a number" if spec.type == "integer" else "a string"
            result.errors.append(f"{name} must be {kind}")
            continue

        if isinstance(value, str):
            value = sanitize_string(value)

        for rule in spec.rules(name):
            if isinstance(rule, Required):
                continue
            error = check_rule(name, rule, value)
            if error is not None:
                result.errors.append(error)
                break
        else:
            result.sanitized[name] = value

    return result


# -----------------------------------------------------------------------------
# Shared predicates
# -----------------------------------------------------------------------------

ALLOWED_PRIORITIES = frozenset({"high", "medium", "low"})


def is_valid_date(value: Any) -> bool:
    """True when ``value`` is a real calendar date in ISO form."""
    try:
        date.fromisoformat(str(value))
    except ValueError:
        return False
    return True


def is_valid_year(value: Any) -> bool:
    try:
        year = int(str(value).strip())
    except ValueError:
        return False
    return 2000 <= year <= 2100


def parse_id(raw: str) -> int:
    """
    Parse a path id.

    Raises
    ------
    culturehub.errors.ApiError(400) for non-numeric or negative ids.
    """
    match = re.match(r"\s*([+-]?\d+)", raw)
    if match is None:
        raise ApiError(400, "ID must be a number")
    value = int(match.group(1))
    if value < 0:
        raise ApiError(400, "ID must not be negative")
    return value


# -----------------------------------------------------------------------------
# Entity schemas
# -----------------------------------------------------------------------------

EVENT_SCHEMA: dict[str, FieldSpec] = {
    "title": FieldSpec(required=True, min_length=3, max_length=255),
    "shortDescription": FieldSpec(required=True, min_length=10, max_length=500),
    "fullDescription": FieldSpec(required=True, min_length=20, max_length=5000),
    "date": FieldSpec(required=True, type="date"),
}

DOCUMENT_SCHEMA: dict[str, FieldSpec] = {
    "title": FieldSpec(required=True, min_length=1, max_length=200),
    "description": FieldSpec(required=False, max_length=1000),
    "category": FieldSpec(required=False, max_length=50),
}

REMINDER_SCHEMA: dict[str, FieldSpec] = {
    "title": FieldSpec(required=True, min_length=1, max_length=200),
    "description": FieldSpec(required=True, min_length=1, max_length=5000),
    "date": FieldSpec(
        required=True,
        type="date",
        validate=is_valid_date,
        validate_message="Invalid date",
    ),
    "priority": FieldSpec(
        required=False,
        validate=lambda value: not value or value in ALLOWED_PRIORITIES,
        validate_message="Invalid priority",
    ),
}

WORKPLAN_SCHEMA: dict[str, FieldSpec] = {
    "month": FieldSpec(required=True, min_length=1, max_length=30),
    "year": FieldSpec(
        required=True,
        type="integer",
        validate=is_valid_year,
        validate_message="Invalid year",
    ),
    "description": FieldSpec(required=True, min_length=1, max_length=5000),
}
