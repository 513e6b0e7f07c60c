from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable

from errors import ValidationError


def ensure_cents(
    value: object,
    *,
    field: str = "amount_cents",
    allow_negative: bool = False,
    allow_zero: bool = True,
) -> int:
    # bool is an int subclass and floats must never reach the ledger
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            f"{field} must be an integer number of cents",
            field=field,
            value=repr(value),
        )
    if value < 0 and not allow_negative:
        raise ValidationError(f"{field} must not be negative", field=field, value=value)
    if value == 0 and not allow_zero:
        raise ValidationError(f"{field} must not be zero", field=field, value=value)
    return value


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    clean = value.strip().replace("$", "").replace(" ", "").replace(",", "")
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValidationError("Invalid amount", value=value) from exc
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents < 0 and not allow_negative:
        raise ValidationError("Amount must be positive", value=value)
    return cents


def scale_cents(cents: int, factor: Decimal) -> int:
    return int((Decimal(cents) * factor).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def sum_cents(values: Iterable[int]) -> int:
    total = 0
    for value in values:
        total += value
    return total


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return f"{sign}${whole:,}.{frac:02d}"
