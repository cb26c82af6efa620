"""Fixed-point currency helpers.

Amounts travel through the service as integer minor units (cents). Decimal
values coming from clients are rounded half-up to the cent exactly once, at
the API boundary.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
# One minor unit of slack when comparing client-computed totals
TOTAL_TOLERANCE_CENTS = 1
# Money columns are 32-bit integers
MAX_MINOR_UNITS = 2**31 - 1


def to_minor_units(amount: Union[Decimal, int, float, str]) -> int:
    """Convert a major-unit amount (e.g. ``Decimal("19.99")``) to cents."""
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def format_amount(cents: int) -> str:
    """Gateway wire format, always two decimals: 2200 -> '22.00'."""
    return f"{from_minor_units(cents):.2f}"


@dataclass(frozen=True)
class Totals:
    subtotal: int
    tax: int
    shipping: int
    discount: int
    total: int

    def expected_total(self) -> int:
        return self.subtotal + self.tax + self.shipping - self.discount

    def is_consistent(self, tolerance: int = TOTAL_TOLERANCE_CENTS) -> bool:
        return abs(self.total - self.expected_total()) <= tolerance

    def oversized_fields(self, limit: int = MAX_MINOR_UNITS) -> list[str]:
        return [
            name
            for name in ("subtotal", "tax", "shipping", "discount", "total")
            if getattr(self, name) > limit
        ]

    def negative_fields(self) -> list[str]:
        return [
            name
            for name in ("subtotal", "tax", "shipping", "discount", "total")
            if getattr(self, name) < 0
        ]
