"""
Field-level validation for personal data records.

Rules are a static ordered table of (field, predicate, message) entries.
Every rule is evaluated, and every failure is reported, so the caller can
show the complete list of problems in one response. Validation has no side
effects.

Rules for the optional flat-revision fields (date of birth, email, document
issue date) only apply when the field is populated.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Iterable, List, Optional

from zzld_form.app.schemas.personal_data import PersonalData


EGN_LENGTH = 10
POSTAL_CODE_LENGTH = 4
MAX_AGE_YEARS = 150

_DIGITS_RE = re.compile(r"^[0-9]+$")
_EMAIL_RE = re.compile(
    r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+$"
)


@dataclass(frozen=True)
class FieldViolation:
    field: str
    message: str


@dataclass(frozen=True)
class _Rule:
    field: str
    check: Callable[[PersonalData, date], bool]
    message: str


def _years_before(today: date, years: int) -> date:
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        # 29 February
        return today.replace(year=today.year - years, day=28)


def _dob_in_past(r: PersonalData, today: date) -> bool:
    return r.date_of_birth is None or r.date_of_birth < today


def _dob_within_max_age(r: PersonalData, today: date) -> bool:
    return (
        r.date_of_birth is None
        or r.date_of_birth >= _years_before(today, MAX_AGE_YEARS)
    )


_RULES: tuple[_Rule, ...] = (
    _Rule("first_name", lambda r, _: bool(r.first_name), "First name is required"),
    _Rule("last_name", lambda r, _: bool(r.last_name), "Last name is required"),
    _Rule("egn", lambda r, _: bool(r.egn), "EGN is required"),
    _Rule(
        "egn",
        lambda r, _: not r.egn or len(r.egn) == EGN_LENGTH,
        f"EGN must be exactly {EGN_LENGTH} digits",
    ),
    _Rule(
        "egn",
        lambda r, _: not r.egn or bool(_DIGITS_RE.match(r.egn)),
        "EGN must contain only digits",
    ),
    _Rule("date_of_birth", _dob_in_past, "Date of birth must be in the past"),
    _Rule(
        "date_of_birth",
        _dob_within_max_age,
        f"Date of birth cannot be more than {MAX_AGE_YEARS} years ago",
    ),
    _Rule("city", lambda r, _: bool(r.city), "City is required"),
    _Rule("postal_code", lambda r, _: bool(r.postal_code), "Postal code is required"),
    _Rule(
        "postal_code",
        lambda r, _: not r.postal_code or len(r.postal_code) == POSTAL_CODE_LENGTH,
        f"Postal code must be exactly {POSTAL_CODE_LENGTH} digits",
    ),
    _Rule(
        "postal_code",
        lambda r, _: not r.postal_code or bool(_DIGITS_RE.match(r.postal_code)),
        "Postal code must contain only digits",
    ),
    _Rule(
        "email",
        lambda r, _: not r.email or bool(_EMAIL_RE.match(r.email)),
        "Email address is not valid",
    ),
    _Rule(
        "document_issue_date",
        lambda r, today: r.document_issue_date is None or r.document_issue_date <= today,
        "Document issue date cannot be in the future",
    ),
)


def validate_personal_data(
    record: PersonalData,
    now: Optional[datetime] = None,
) -> List[FieldViolation]:
    """
    Check a record against every field rule.

    Returns all violations in rule order; an empty list means valid.
    ``now`` defaults to the current UTC time.
    """
    today = (now or datetime.now(timezone.utc)).date()
    return [
        FieldViolation(rule.field, rule.message)
        for rule in _RULES
        if not rule.check(record, today)
    ]


def join_violations(violations: Iterable[FieldViolation]) -> str:
    return "; ".join(v.message for v in violations)
