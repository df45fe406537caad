"""Quote arithmetic.

All amounts are integer minor units (cents). Percentages are Decimals, so a
quote recomputed any number of times lands on the same cent.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .exceptions import ValidationError

CENT = Decimal('0.01')
HUNDRED = Decimal(100)


@dataclass(frozen=True)
class QuoteFigures:
    base_price_cents: int
    markup_percentage: Decimal
    markup_amount_cents: int
    final_price_cents: int


def to_decimal(value, field='amount'):
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f'{field} must be a number', field=field)
    if not result.is_finite():
        raise ValidationError(f'{field} must be a number', field=field)
    return result


def to_cents(amount, field='amount'):
    value = to_decimal(amount, field)
    if value < 0:
        raise ValidationError(f'{field} cannot be negative', field=field)
    return int((value * HUNDRED).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def from_cents(cents):
    return (Decimal(cents) / HUNDRED).quantize(CENT)


def format_amount(cents):
    return f'{from_cents(cents):.2f}'


def normalize_percentage(percentage):
    value = to_decimal(percentage, 'markup_percentage')
    if value < 0:
        raise ValidationError('markup_percentage cannot be negative', field='markup_percentage')
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def markup_amount(base_price_cents, percentage):
    percentage = normalize_percentage(percentage)
    return int((Decimal(base_price_cents) * percentage / HUNDRED).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def compute_quote(base_price_cents, percentage):
    if base_price_cents is None or base_price_cents < 0:
        raise ValidationError('base_price cannot be negative', field='base_price')
    percentage = normalize_percentage(percentage)
    amount = markup_amount(base_price_cents, percentage)
    return QuoteFigures(
        base_price_cents=base_price_cents,
        markup_percentage=percentage,
        markup_amount_cents=amount,
        final_price_cents=base_price_cents + amount,
    )
