"""Decimal quantization matching the column precision contract."""
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

Number = Union[Decimal, int, float, str]

TOKEN_QUANTUM = Decimal("0.00000001")
USD_QUANTUM = Decimal("0.01")
PRICE_QUANTUM = Decimal("0.000000000001")

ZERO_TOKENS = Decimal("0.00000000")
ZERO_USD = Decimal("0.00")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        # str() keeps floats from dragging binary noise into the ledger
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Not a decimal amount: {value!r}") from e


def tokens(value: Number) -> Decimal:
    """Token amount at 8 dp. Rounds down so nothing is credited that wasn't accrued."""
    return to_decimal(value).quantize(TOKEN_QUANTUM, rounding=ROUND_DOWN)


def usd(value: Number) -> Decimal:
    """USD amount at 2 dp."""
    return to_decimal(value).quantize(USD_QUANTUM, rounding=ROUND_HALF_UP)


def price(value: Number) -> Decimal:
    return to_decimal(value).quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP)
