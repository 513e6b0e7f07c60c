from datetime import date

import pytest

from errors import ValidationError
from models import Frequency
from recurrence import (
    calendar_exact_monthly,
    fixed_multiplier_monthly,
    iter_occurrence_dates,
    monthly_equivalent,
    shift_weekend,
)


@pytest.mark.parametrize(
    "frequency,amount,expected",
    [
        (Frequency.weekly, 100_000, 433_000),
        (Frequency.biweekly, 200_000, 434_000),
        (Frequency.semimonthly, 150_000, 300_000),
        (Frequency.monthly, 400_000, 400_000),
        (Frequency.quarterly, 30_000, 10_000),
        (Frequency.semiannual, 60_000, 10_000),
        (Frequency.annual, 120_000, 10_000),
    ],
)
def test_fixed_multiplier_monthly(frequency, amount, expected):
    assert fixed_multiplier_monthly(amount, frequency) == expected
    assert monthly_equivalent(amount, frequency, policy="fixed") == expected


def test_every_n_months_divides_by_n():
    assert fixed_multiplier_monthly(30_000, Frequency.every_n_months, 3) == 10_000
    assert calendar_exact_monthly(30_000, Frequency.every_n_months, 3) == 10_000


def test_calendar_exact_uses_average_month_length():
    # 700 * (365.25 / 12 / 7) = 3043.75
    assert calendar_exact_monthly(700, Frequency.weekly) == 3_044
    assert monthly_equivalent(700, Frequency.weekly, policy="calendar") == 3_044
    assert calendar_exact_monthly(1_000, Frequency.semimonthly) == 2_000


def test_unknown_conversion_policy():
    with pytest.raises(ValidationError):
        monthly_equivalent(100, Frequency.monthly, policy="lunar")


def test_monthly_schedule_snaps_to_month_end():
    dates = list(
        iter_occurrence_dates(
            Frequency.monthly, date(2025, 1, 31), date(2025, 4, 30), day_of_month=31
        )
    )
    assert dates == [
        date(2025, 1, 31),
        date(2025, 2, 28),
        date(2025, 3, 31),
        date(2025, 4, 30),
    ]


def test_semimonthly_defaults_to_fifteenth_and_last_day():
    dates = list(
        iter_occurrence_dates(Frequency.semimonthly, date(2025, 1, 10), date(2025, 2, 28))
    )
    assert dates == [
        date(2025, 1, 15),
        date(2025, 1, 31),
        date(2025, 2, 15),
        date(2025, 2, 28),
    ]


def test_weekly_schedule_on_weekday():
    dates = list(
        iter_occurrence_dates(
            Frequency.weekly, date(2025, 1, 1), date(2025, 1, 20), weekday=4
        )
    )
    assert dates == [date(2025, 1, 3), date(2025, 1, 10), date(2025, 1, 17)]


def test_biweekly_steps_from_anchor():
    dates = list(
        iter_occurrence_dates(Frequency.biweekly, date(2025, 1, 6), date(2025, 2, 10))
    )
    assert dates == [date(2025, 1, 6), date(2025, 1, 20), date(2025, 2, 3)]


def test_every_n_months_schedule():
    dates = list(
        iter_occurrence_dates(
            Frequency.every_n_months, date(2025, 1, 15), date(2025, 6, 30), every_n=2
        )
    )
    assert dates == [date(2025, 1, 15), date(2025, 3, 15), date(2025, 5, 15)]


def test_weekend_shift_moves_only_emitted_dates():
    # 2025-02-01 and 2025-03-01 are Saturdays
    dates = list(
        iter_occurrence_dates(
            Frequency.monthly,
            date(2025, 2, 1),
            date(2025, 3, 31),
            day_of_month=1,
            skip_weekends=True,
        )
    )
    assert dates == [date(2025, 2, 3), date(2025, 3, 3)]
    assert shift_weekend(date(2025, 2, 2)) == date(2025, 2, 3)
    assert shift_weekend(date(2025, 2, 4)) == date(2025, 2, 4)


def test_ends_on_stops_schedule():
    dates = list(
        iter_occurrence_dates(
            Frequency.monthly,
            date(2025, 1, 1),
            date(2025, 12, 31),
            ends_on=date(2025, 3, 15),
        )
    )
    assert dates == [date(2025, 1, 1), date(2025, 2, 1), date(2025, 3, 1)]


def test_invalid_schedule_parameters():
    with pytest.raises(ValidationError):
        list(
            iter_occurrence_dates(
                Frequency.monthly, date(2025, 1, 1), date(2025, 2, 1), day_of_month=32
            )
        )
    with pytest.raises(ValidationError):
        list(
            iter_occurrence_dates(
                Frequency.weekly, date(2025, 1, 1), date(2025, 2, 1), weekday=7
            )
        )
