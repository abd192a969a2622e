from decimal import ROUND_HALF_UP, Decimal
from typing import Union

CENT = Decimal("0.01")

Amount = Union[Decimal, float, int, str]


def to_decimal(amount: Amount) -> Decimal:
    """Two-decimal Decimal; floats go through str() so 19.99 stays 19.99."""
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Amount) -> int:
    """Integer cents, as the payment provider expects."""
    return int(to_decimal(amount) * 100)
