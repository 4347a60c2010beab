"""Age-in-months helper used to pick the reference-table row."""
from __future__ import annotations

from datetime import date, datetime
from typing import Optional, Union

from .errors import InvalidInputError

DateLike = Union[date, datetime, str]

MIN_SUPPORTED_AGE_MONTHS = 0
MAX_SUPPORTED_AGE_MONTHS = 227


def parse_date(value: DateLike, *, field: str = "date") -> date:
    """Coerce a date, datetime or ISO-8601 string into a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"Invalid {field}: {value!r}", field=field)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        if len(text) == 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text).date()
    except ValueError as exc:
        raise InvalidInputError(f"Invalid {field}: {value!r}", field=field) from exc


def age_in_months(
    birth_date: DateLike,
    today: Optional[DateLike] = None,
    *,
    day_precise: bool = False,
) -> int:
    """Whole months between ``birth_date`` and ``today``.

    The reference tables bucket by calendar month difference, so the day of the
    month is ignored unless ``day_precise`` is set. A ``today`` before the birth
    date gives a negative count; callers treat that as "no data".
    """
    born = parse_date(birth_date, field="birth_date")
    now = parse_date(today, field="today") if today is not None else date.today()

    years = now.year - born.year
    months = now.month - born.month
    if months < 0:
        years -= 1
        months += 12
    total = years * 12 + months
    if day_precise and now.day < born.day:
        total -= 1
    return total


def is_supported_age(age_months: int) -> bool:
    return MIN_SUPPORTED_AGE_MONTHS <= age_months <= MAX_SUPPORTED_AGE_MONTHS
