import random
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from checkout_service.app.pricing import (
    ZERO,
    CouponDiscount,
    ShippingTier,
    compute_totals,
    estimated_delivery,
    format_inr,
    generate_lucky_discount,
    shipping_fee,
    to_money,
)


def test_scenario_a_standard_shipping_with_lucky_discount(make_line):
    totals = compute_totals([make_line(unit_price="500", quantity=2)], ShippingTier.STANDARD, Decimal("0.42"))

    assert totals.subtotal == Decimal("1000.00")
    assert totals.shipping_fee == ZERO
    assert totals.final_total == Decimal("999.58")


def test_scenario_b_coupon_stacks_with_lucky_discount(make_line):
    coupon = CouponDiscount(code="save100", name="SAVE100", amount=Decimal("100"))
    totals = compute_totals([make_line(unit_price="500", quantity=2)], "standard", Decimal("0.42"), coupon)

    assert totals.coupon_discount == Decimal("100.00")
    assert totals.discount_total == Decimal("100.42")
    assert totals.final_total == Decimal("899.58")


@pytest.mark.parametrize(
    "tier,fee",
    [(ShippingTier.STANDARD, "0"), (ShippingTier.EXPRESS, "99"), (ShippingTier.PRIORITY, "199")],
)
def test_shipping_tier_fees(tier, fee):
    assert shipping_fee(tier) == Decimal(fee)


def test_shipping_override_wins_over_tier(make_line):
    totals = compute_totals(
        [make_line(unit_price="250", quantity=1)],
        ShippingTier.STANDARD,
        Decimal("0.37"),
        shipping_fee_override=Decimal("199"),
    )

    assert totals.shipping_fee == Decimal("199.00")
    assert totals.final_total == Decimal("448.63")


def test_final_total_never_negative(make_line):
    coupon = CouponDiscount(code="huge", name="Huge", amount=Decimal("5000"))
    totals = compute_totals([make_line(unit_price="10", quantity=1)], "standard", Decimal("0.99"), coupon)

    assert totals.final_total == ZERO


def test_final_total_formula_holds_for_random_carts(make_line):
    rng = random.Random(7)
    for _ in range(50):
        lines = [
            make_line(product_id=f"p-{i}", unit_price=f"{rng.randint(1, 200000) / 100:.2f}", quantity=rng.randint(1, 4))
            for i in range(rng.randint(1, 4))
        ]
        tier = rng.choice(list(ShippingTier))
        lucky = generate_lucky_discount(rng)
        coupon = CouponDiscount("c", "C", to_money(rng.randint(0, 50000) / 100))
        totals = compute_totals(lines, tier, lucky, coupon)

        expected = max(ZERO, totals.subtotal + totals.shipping_fee - (lucky + coupon.amount))
        assert totals.final_total == expected
        assert totals.final_total >= 0


def test_lucky_discount_range():
    rng = random.Random(1)
    values = {generate_lucky_discount(rng) for _ in range(500)}

    assert min(values) >= Decimal("0.01")
    assert max(values) <= Decimal("0.99")
    assert all(value == value.quantize(Decimal("0.01")) for value in values)


def test_estimated_delivery_uses_slowest_day():
    placed = datetime(2024, 1, 1, tzinfo=timezone.utc)

    assert estimated_delivery("standard", placed).day == 8
    assert estimated_delivery("priority", placed).day == 2


def test_format_inr():
    assert format_inr(Decimal("1000")) == "₹1,000"
    assert format_inr(Decimal("899.58")) == "₹899.58"
    assert to_money(0.42) == Decimal("0.42")
