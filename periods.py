import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

from errors import ValidationError

MONTH_PATTERN = re.compile(r"^\d{4}-\d{2}$")


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def parse_month(value: str) -> tuple[int, int]:
    if not isinstance(value, str) or not MONTH_PATTERN.match(value):
        raise ValidationError("Month must use the YYYY-MM format", month=value)
    year, month = int(value[:4]), int(value[5:])
    if not 1 <= month <= 12:
        raise ValidationError("Month must be between 01 and 12", month=value)
    return year, month


def validate_month(value: str) -> str:
    parse_month(value)
    return value


def month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def add_months(value: str, count: int) -> str:
    year, month = parse_month(value)
    month_index = (year * 12) + (month - 1) + count
    return f"{month_index // 12:04d}-{month_index % 12 + 1:02d}"


def next_month(value: str) -> str:
    return add_months(value, 1)


def previous_month(value: str) -> str:
    return add_months(value, -1)


def month_period(value: str) -> Period:
    year, month = parse_month(value)
    first = date(year, month, 1)
    last = date(year, month, days_in_month(year, month))
    return Period(value, first, last)


def days_until_month_end(d: date) -> int:
    return days_in_month(d.year, d.month) - d.day


def resolve_budget_month(
    on_date: date,
    *,
    threshold_days: int,
    choice: Optional[str] = None,
) -> str:
    """Pick the budget month an income receipt counts towards.

    Income landing within ``threshold_days`` of month end may be pushed into
    the next month when the caller asks for ``"next"``; otherwise it belongs
    to the calendar month of ``on_date``.
    """
    current = month_key(on_date)
    if choice is None or choice == "current":
        return current
    if choice != "next":
        raise ValidationError(
            "Budget month choice must be 'current' or 'next'", choice=choice
        )
    remaining = days_until_month_end(on_date)
    if remaining > threshold_days:
        raise ValidationError(
            "Income can only move to next month near month end",
            days_until_month_end=remaining,
            threshold_days=threshold_days,
        )
    return next_month(current)
