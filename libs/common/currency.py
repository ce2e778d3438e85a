"""Currency helpers.

Internal storage unit: cents (integer, 100 cents = $1).
API / display unit: dollars, formatted as ``$1,234.56``.
"""

from __future__ import annotations

CENTS_PER_DOLLAR: int = 100


def format_cents(cents: int) -> str:
    """Format cents for user-facing messages, e.g. 2000 -> ``$20.00``."""
    sign = "-" if cents < 0 else ""
    return f"{sign}${abs(cents) / CENTS_PER_DOLLAR:,.2f}"
