from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

Number = Union[Decimal, int, float, str]


def to_cents(value: Optional[Number]) -> Optional[int]:
    """Major units (as sent by the provider or stored in legacy tables) to
    integer cents, rounding half up."""
    if value is None or value == "":
        return None
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid monetary amount: {value!r}") from exc
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_units(cents: Optional[int]) -> Optional[float]:
    if cents is None:
        return None
    return float(Decimal(cents) / Decimal(100))


def mul_cents(cents: int, factor: Decimal) -> int:
    return int((Decimal(cents) * factor).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def div_cents(cents: int, divisor: Decimal) -> int:
    return int((Decimal(cents) / divisor).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
