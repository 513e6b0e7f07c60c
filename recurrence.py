from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterator, Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationError
from models import Frequency
from money import scale_cents
from periods import days_in_month

MonthlyConversion = Callable[[int, Frequency, int], int]

FIXED_MULTIPLIERS: dict[Frequency, Decimal] = {
    Frequency.weekly: Decimal("4.33"),
    Frequency.biweekly: Decimal("2.17"),
    Frequency.semimonthly: Decimal("2"),
    Frequency.monthly: Decimal("1"),
    Frequency.quarterly: Decimal("1") / Decimal("3"),
    Frequency.semiannual: Decimal("1") / Decimal("6"),
    Frequency.annual: Decimal("1") / Decimal("12"),
}

MONTH_STEPS: dict[Frequency, int] = {
    Frequency.monthly: 1,
    Frequency.quarterly: 3,
    Frequency.semiannual: 6,
    Frequency.annual: 12,
}

# average Gregorian month
DAYS_PER_MONTH = Decimal("365.25") / Decimal("12")


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def fixed_multiplier_monthly(
    amount_cents: int, frequency: Frequency, every_n: int = 1
) -> int:
    """Monthly equivalent using the fixed multipliers (weekly x4.33, ...)."""
    if frequency == Frequency.every_n_months:
        return scale_cents(amount_cents, Decimal("1") / Decimal(max(every_n, 1)))
    return scale_cents(amount_cents, FIXED_MULTIPLIERS[frequency])


def calendar_exact_monthly(
    amount_cents: int, frequency: Frequency, every_n: int = 1
) -> int:
    """Monthly equivalent from the average month length in days."""
    if frequency == Frequency.weekly:
        return scale_cents(amount_cents, DAYS_PER_MONTH / Decimal(7))
    if frequency == Frequency.biweekly:
        return scale_cents(amount_cents, DAYS_PER_MONTH / Decimal(14))
    if frequency == Frequency.semimonthly:
        return amount_cents * 2
    if frequency == Frequency.every_n_months:
        return scale_cents(amount_cents, Decimal("1") / Decimal(max(every_n, 1)))
    return scale_cents(amount_cents, Decimal("1") / Decimal(MONTH_STEPS[frequency]))


MONTHLY_CONVERSIONS: dict[str, MonthlyConversion] = {
    "fixed": fixed_multiplier_monthly,
    "calendar": calendar_exact_monthly,
}


def monthly_equivalent(
    amount_cents: int,
    frequency: Frequency,
    every_n: int = 1,
    *,
    policy: Optional[str] = None,
) -> int:
    policy = policy or get_settings().conversion_policy
    try:
        convert = MONTHLY_CONVERSIONS[policy]
    except KeyError as exc:
        raise ValidationError(
            "Unknown monthly conversion policy", policy=policy
        ) from exc
    return convert(amount_cents, Frequency(frequency), every_n)


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    dim = days_in_month(year, month)
    if desired_day == -1 or desired_day > dim:
        return date(year, month, dim)
    return date(year, month, desired_day)


def shift_weekend(d: date) -> date:
    if d.weekday() == 5:
        return d + timedelta(days=2)
    if d.weekday() == 6:
        return d + timedelta(days=1)
    return d


def _nominal_dates(
    frequency: Frequency,
    start: date,
    *,
    day_of_month: Optional[int],
    second_day: Optional[int],
    weekday: Optional[int],
    every_n: int,
) -> Iterator[date]:
    if frequency in (Frequency.weekly, Frequency.biweekly):
        step = timedelta(weeks=1 if frequency == Frequency.weekly else 2)
        current = start
        if weekday is not None:
            current = start + timedelta(days=(weekday - start.weekday()) % 7)
        while True:
            yield current
            current += step
    elif frequency == Frequency.semimonthly:
        first_day = day_of_month or 15
        last_day = second_day or -1
        month_start = start.replace(day=1)
        while True:
            for desired in sorted({first_day, last_day}, key=lambda d: 99 if d == -1 else d):
                candidate = _add_months(month_start, 0, desired_day=desired)
                if candidate >= start:
                    yield candidate
            month_start = _add_months(month_start, 1, desired_day=1)
    else:
        if frequency == Frequency.every_n_months:
            step = max(every_n, 1)
        else:
            step = MONTH_STEPS[frequency]
        desired = day_of_month or start.day
        current = _add_months(start, 0, desired_day=desired)
        if current < start:
            current = _add_months(start, step, desired_day=desired)
        offset = 0
        anchor = current
        while True:
            yield current
            offset += step
            current = _add_months(anchor, offset, desired_day=desired)


def iter_occurrence_dates(
    frequency: Frequency,
    start: date,
    until: date,
    *,
    day_of_month: Optional[int] = None,
    second_day: Optional[int] = None,
    weekday: Optional[int] = None,
    every_n: int = 1,
    ends_on: Optional[date] = None,
    skip_weekends: bool = False,
) -> Iterator[date]:
    """Yield due dates of a schedule between ``start`` and ``until``.

    Month-based schedules snap to the last day of short months (``-1`` always
    means the last day). Weekend shifting moves the emitted date only, so the
    underlying cadence never drifts.
    """
    if day_of_month is not None and not (day_of_month == -1 or 1 <= day_of_month <= 31):
        raise ValidationError("day_of_month must be 1..31 or -1", day_of_month=day_of_month)
    if weekday is not None and not 0 <= weekday <= 6:
        raise ValidationError("weekday must be 0..6", weekday=weekday)

    limit = min(until, ends_on) if ends_on else until
    max_iterations = 1000
    for iterations, nominal in enumerate(
        _nominal_dates(
            Frequency(frequency),
            start,
            day_of_month=day_of_month,
            second_day=second_day,
            weekday=weekday,
            every_n=every_n,
        )
    ):
        if nominal > limit or iterations >= max_iterations:
            return
        yield shift_weekend(nominal) if skip_weekends else nominal
