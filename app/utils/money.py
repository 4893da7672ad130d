"""Money helpers: Decimal rounding, paise conversion and display formatting."""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union, Optional

CENT = Decimal('0.01')
ZERO = Decimal('0.00')


def to_decimal(value: Union[int, float, Decimal, str, None]) -> Decimal:
    """Convert a stored or user-supplied number to Decimal without float noise."""
    if value is None or value == '':
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value: Union[int, float, Decimal, str, None]) -> Decimal:
    """Round half-up to the smallest currency unit."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_paise(value: Union[int, float, Decimal, str]) -> int:
    """Rupees to integer paise, rounding half-up (1234.565 -> 123457)."""
    return int((to_decimal(value) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def from_paise(value: Optional[int]) -> Decimal:
    """Integer paise to rupees."""
    if value is None:
        return ZERO
    return (Decimal(int(value)) / 100).quantize(CENT)


def parse_amount(value, field='amount', allow_zero=False) -> Decimal:
    """
    Parse a positive monetary amount from request input.

    Raises:
        ValueError: if the value is missing, not numeric or out of range.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError(f'{field} is required')
    if isinstance(value, bool):
        raise ValueError(f'{field} must be a number')
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f'{field} must be a number')
    if not amount.is_finite():
        raise ValueError(f'{field} must be a number')
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValueError(f'{field} must be greater than 0')
    return quantize_money(amount)


def money_inr(value: Union[int, float, Decimal, str, None]) -> str:
    """
    Format an amount in Indian digit grouping.

    Examples:
        money_inr(1234567.5) -> "₹12,34,567.50"
        money_inr(999) -> "₹999.00"
        money_inr(None) -> "-"
    """
    if value is None or value == '':
        return '-'
    try:
        amount = quantize_money(value)
    except (InvalidOperation, ValueError, TypeError):
        return str(value)

    sign = '-' if amount < 0 else ''
    integer_part, fraction = f"{abs(amount):.2f}".split('.')
    if len(integer_part) > 3:
        head, tail = integer_part[:-3], integer_part[-3:]
        groups = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        integer_part = ','.join(groups + [tail])
    return f"{sign}₹{integer_part}.{fraction}"
