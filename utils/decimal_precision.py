#!/usr/bin/env python3
"""
Decimal Precision Utilities for Token Amounts
Exact conversion between decimal token amounts and integer minor units
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_DOWN, getcontext
from typing import Optional, Union

from services.escrow_errors import ValidationError

logger = logging.getLogger(__name__)

# Wide enough for 18-decimal tokens with large balances
getcontext().prec = 60

Number = Union[str, int, Decimal]


class TokenAmount:
    """Decimal-only token arithmetic"""

    DISPLAY_PRECISION = Decimal("0.01")

    @classmethod
    def parse(cls, value: Optional[Number], field: str = "amount") -> Decimal:
        """Parse user-supplied text into a strictly positive Decimal"""
        if value is None:
            raise ValidationError(f"Missing {field}", user_message=f"❌ Please provide the {field}.")
        if isinstance(value, float):
            # Floats never reach financial state
            raise ValidationError(f"Float {field} rejected: {value}")
        text = str(value).strip().replace(",", "")
        if text.startswith("$"):
            text = text[1:]
        try:
            amount = Decimal(text)
        except InvalidOperation:
            raise ValidationError(
                f"Invalid {field}: {value!r}",
                user_message=f"❌ {field.capitalize()} must be a number.",
            )
        if not amount.is_finite() or amount <= 0:
            raise ValidationError(
                f"Non-positive {field}: {value!r}",
                user_message=f"❌ {field.capitalize()} must be greater than zero.",
            )
        return amount

    @classmethod
    def to_minor_units(cls, amount: Decimal, decimals: int) -> int:
        """Decimal amount -> integer minor units, truncating sub-unit dust"""
        scaled = (Decimal(amount) * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN)
        return int(scaled)

    @classmethod
    def from_minor_units(cls, minor: int, decimals: int) -> Decimal:
        """Integer minor units -> exact Decimal amount"""
        amount = Decimal(int(minor)).scaleb(-decimals)
        if amount == amount.to_integral_value():
            # normalize() would turn 40 into 4E+1
            return amount.quantize(Decimal(1))
        return amount.normalize()

    @classmethod
    def meets_expected(cls, accumulated: Decimal, expected: Decimal, tolerance: Decimal) -> bool:
        """True when accumulated is at or above expected minus tolerance (boundary inclusive)"""
        return Decimal(accumulated) >= Decimal(expected) - Decimal(tolerance)

    @classmethod
    def remaining(cls, accumulated: Decimal, expected: Decimal) -> Decimal:
        return max(Decimal("0"), Decimal(expected) - Decimal(accumulated))

    @classmethod
    def over_delivery(cls, accumulated: Decimal, expected: Decimal, tolerance: Decimal) -> Decimal:
        """Amount above expected, reported only when it exceeds the tolerance"""
        excess = Decimal(accumulated) - Decimal(expected)
        return excess if excess > Decimal(tolerance) else Decimal("0")

    @classmethod
    def display(cls, amount: Optional[Decimal]) -> str:
        if amount is None:
            return "0.00"
        quantized = Decimal(amount).quantize(cls.DISPLAY_PRECISION, rounding=ROUND_DOWN)
        return f"{quantized:,.2f}"
