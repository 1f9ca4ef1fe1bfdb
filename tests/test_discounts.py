from datetime import timedelta
from decimal import Decimal

import pytest

from checkout_service.app.discounts import CouponValidation, DiscountCatalog, DiscountResolver, SqlDiscountCatalog
from checkout_service.app.errors import InvalidCoupon
from checkout_service.app.models import utcnow


class CountingCatalog(DiscountCatalog):
    def __init__(self, result):
        self.result = result
        self.calls = 0

    def validate_coupon(self, code, lines):
        self.calls += 1
        return self.result


@pytest.fixture
def resolver(session_factory):
    return DiscountResolver(SqlDiscountCatalog(session_factory))


def test_fixed_coupon_resolves(resolver, seed_discount, make_line):
    seed_discount("save100", "100", name="Save 100")

    coupon = resolver.resolve_coupon("SAVE100", [make_line()])

    assert coupon.code == "save100"
    assert coupon.name == "Save 100"
    assert coupon.amount == Decimal("100.00")


def test_percentage_coupon_is_capped(resolver, seed_discount, make_line):
    seed_discount("tenoff", "10", type="percentage", max_discount_amount=Decimal("50"))

    coupon = resolver.resolve_coupon("tenoff", [make_line(unit_price="500", quantity=2)])

    assert coupon.amount == Decimal("50.00")


def test_blank_code_never_reaches_catalog():
    catalog = CountingCatalog(CouponValidation(True))
    with pytest.raises(InvalidCoupon) as exc:
        DiscountResolver(catalog).resolve_coupon("   ", [])

    assert exc.value.message == "Please enter a coupon code"
    assert catalog.calls == 0


def test_catalog_reason_is_passed_through():
    catalog = CountingCatalog(CouponValidation(False, reason="Coupon code has expired"))
    with pytest.raises(InvalidCoupon) as exc:
        DiscountResolver(catalog).resolve_coupon("old", [])

    assert exc.value.reason == "invalid_coupon"
    assert exc.value.message == "Coupon code has expired"


@pytest.mark.parametrize(
    "kwargs,message",
    [
        ({"end_date": utcnow() - timedelta(days=1)}, "Coupon code has expired"),
        ({"start_date": utcnow() + timedelta(days=1)}, "Coupon code is not yet active"),
        ({"usage_limit": 5, "usage_count": 5}, "Coupon code usage limit reached"),
        ({"min_cart_value": Decimal("5000")}, "Cart total below minimum of ₹5,000"),
        ({"applicable_to": "products", "product_ids": "p-9, p-10"}, "Coupon does not apply to items in your cart"),
        ({"is_active": False}, "Invalid coupon code"),
    ],
)
def test_rejections(resolver, seed_discount, make_line, kwargs, message):
    seed_discount("promo", "100", **kwargs)

    with pytest.raises(InvalidCoupon) as exc:
        resolver.resolve_coupon("promo", [make_line(product_id="p-1")])

    assert exc.value.message == message


def test_variant_scoped_coupon(resolver, seed_discount, make_line):
    seed_discount("var", "25", applicable_to="variants", variant_ids="v-2")

    coupon = resolver.resolve_coupon("var", [make_line(variant_id="v-2")])

    assert coupon.amount == Decimal("25.00")


def test_coupon_cannot_exceed_subtotal(resolver, seed_discount, make_line):
    seed_discount("big", "5000")

    coupon = resolver.resolve_coupon("big", [make_line(unit_price="100", quantity=1)])

    assert coupon.amount == Decimal("100.00")
