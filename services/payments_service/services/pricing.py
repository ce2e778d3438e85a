"""Integer-cent price arithmetic."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class PriceBreakdown:
    gross: int
    discount: int
    net: int

    @property
    def is_zero_dollar(self) -> bool:
        return self.net == 0


def percentage_discount(base: int, percentage: int) -> int:
    """``floor(base * percentage / 100)``; percentage must be 0..100."""
    if base < 0:
        raise ValueError("Base amount cannot be negative")
    if not 0 <= percentage <= 100:
        raise ValueError("Discount percentage must be between 0 and 100")
    return base * percentage // 100


def compute_price(
    base: int, *, percentage: Optional[int] = None, fixed_discount: int = 0
) -> PriceBreakdown:
    """Apply a percentage and/or fixed discount, capped at the base amount."""
    if base < 0:
        raise ValueError("Base amount cannot be negative")
    if fixed_discount < 0:
        raise ValueError("Discount cannot be negative")

    discount = fixed_discount
    if percentage is not None:
        discount += percentage_discount(base, percentage)
    discount = min(discount, base)
    return PriceBreakdown(gross=base, discount=discount, net=max(0, base - discount))
