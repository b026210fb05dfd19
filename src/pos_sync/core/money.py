"""
Money conversion between provider minor units and Decimal major units.

Only provider adapters call these; every amount inside the engine is a
``Decimal`` in major units.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

# ISO 4217 exponents that differ from the usual two decimals
_CURRENCY_EXPONENTS = {
    "JPY": 0, "KRW": 0, "VND": 0, "CLP": 0, "ISK": 0, "XOF": 0, "XAF": 0,
    "BHD": 3, "KWD": 3, "OMR": 3, "JOD": 3, "TND": 3,
}


def currency_exponent(currency: Optional[str]) -> int:
    return _CURRENCY_EXPONENTS.get((currency or "USD").upper(), 2)


def minor_to_major(amount: Optional[int], currency: Optional[str] = "USD") -> Optional[Decimal]:
    """1099 cents -> Decimal('10.99')."""
    if amount is None:
        return None
    exponent = currency_exponent(currency)
    return (Decimal(int(amount)) / (Decimal(10) ** exponent)).quantize(Decimal(1).scaleb(-exponent))


def major_to_minor(amount: Optional[Decimal], currency: Optional[str] = "USD") -> Optional[int]:
    """Decimal('10.99') -> 1099, rounding half up at the currency's precision."""
    if amount is None:
        return None
    exponent = currency_exponent(currency)
    scaled = Decimal(str(amount)) * (Decimal(10) ** exponent)
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))
