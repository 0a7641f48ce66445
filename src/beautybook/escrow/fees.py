"""Platform fee computation.

Pure function of the booking price: no state, no side effects. The fee
is rounded to the currency's minor unit with ROUND_HALF_UP, so a half
unit always goes to the platform and the same inputs always produce the
same split.

Invariant: fee + stylist_payout == price.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP


@dataclass(frozen=True)
class FeeBreakdown:
    """Published split of a booking price at release time."""
    price: Decimal
    rate: Decimal
    fee: Decimal
    stylist_payout: Decimal


def compute_fee(
    price: Decimal,
    rate: Decimal,
    minor_unit: Decimal = Decimal("0.01"),
) -> FeeBreakdown:
    """Split price into platform fee and stylist payout."""
    if price <= Decimal("0"):
        raise ValueError("Price must be positive")
    if not Decimal("0") <= rate < Decimal("1"):
        raise ValueError(f"Fee rate must be in [0, 1), got {rate}")
    fee = (price * rate).quantize(minor_unit, rounding=ROUND_HALF_UP)
    return FeeBreakdown(
        price=price,
        rate=rate,
        fee=fee,
        stylist_payout=price - fee,
    )
