"""Pricing engine: subtotal, shipping, stacked discounts and the payable total.

Everything here is pure. The same inputs always give the same
:class:`PriceBreakdown`, so a quote can be recomputed on every change
without touching anything that was already committed.
"""

import random
from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

ZERO = Decimal("0.00")
PAISE = Decimal("0.01")


def to_money(value) -> Decimal:
    """Quantize to paise. Floats go through ``str`` so 0.42 stays 0.42."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(PAISE, rounding=ROUND_HALF_UP)


def format_inr(amount) -> str:
    amount = to_money(amount)
    if amount == amount.to_integral_value():
        return f"₹{amount:,.0f}"
    return f"₹{amount:,.2f}"


class ShippingTier(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    PRIORITY = "priority"


@dataclass(frozen=True)
class TierInfo:
    name: str
    fee: Decimal
    min_days: int
    max_days: int

    @property
    def estimated_days(self) -> str:
        if self.min_days == self.max_days:
            return f"{self.max_days} day"
        return f"{self.min_days}-{self.max_days} days"


SHIPPING_TIERS = {
    ShippingTier.STANDARD: TierInfo("Standard Delivery", Decimal("0.00"), 5, 7),
    ShippingTier.EXPRESS: TierInfo("Express Delivery", Decimal("99.00"), 2, 3),
    ShippingTier.PRIORITY: TierInfo("Priority Delivery", Decimal("199.00"), 1, 1),
}


@dataclass(frozen=True)
class CouponDiscount:
    """A resolved coupon: the code it came from, a display name and its value."""
    code: str
    name: str
    amount: Decimal


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: Decimal
    shipping_fee: Decimal
    lucky_discount: Decimal
    coupon_discount: Decimal
    discount_total: Decimal
    final_total: Decimal

    def to_dict(self):
        return {
            "subtotal": float(self.subtotal),
            "shipping_fee": float(self.shipping_fee),
            "lucky_discount": float(self.lucky_discount),
            "coupon_discount": float(self.coupon_discount),
            "discount_total": float(self.discount_total),
            "final_total": float(self.final_total),
        }


def shipping_fee(tier) -> Decimal:
    return SHIPPING_TIERS[ShippingTier(tier)].fee


def estimated_delivery(tier, placed_at):
    """Latest expected delivery date for an order placed at ``placed_at``."""
    return placed_at + timedelta(days=SHIPPING_TIERS[ShippingTier(tier)].max_days)


def generate_lucky_discount(rng: Optional[random.Random] = None) -> Decimal:
    """Random whole-paise discount between ₹0.01 and ₹0.99."""
    rng = rng or random
    return to_money(Decimal(rng.randint(1, 99)) / 100)


def subtotal_of(lines) -> Decimal:
    return to_money(sum((Decimal(line.unit_price) * line.quantity for line in lines), ZERO))


def compute_totals(
    lines,
    shipping_tier,
    lucky_discount,
    coupon: Optional[CouponDiscount] = None,
    shipping_fee_override=None,
) -> PriceBreakdown:
    """Price a cart.

    ``shipping_fee_override`` is the fee stored on an earlier order; retries
    pass it so shipping is never re-priced from the current tier table.
    """
    subtotal = subtotal_of(lines)
    if shipping_fee_override is not None:
        fee = to_money(shipping_fee_override)
    else:
        fee = shipping_fee(shipping_tier)
    lucky = to_money(lucky_discount)
    coupon_amount = to_money(coupon.amount) if coupon else ZERO
    discount_total = lucky + coupon_amount
    final_total = max(ZERO, subtotal + fee - discount_total)
    return PriceBreakdown(
        subtotal=subtotal,
        shipping_fee=fee,
        lucky_discount=lucky,
        coupon_discount=coupon_amount,
        discount_total=discount_total,
        final_total=to_money(final_total),
    )
