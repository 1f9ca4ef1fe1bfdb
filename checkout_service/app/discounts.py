"""Coupon resolution.

:class:`DiscountResolver` adapts the catalog's verdict on a coupon code into
the :class:`~checkout_service.app.pricing.CouponDiscount` used by pricing.
The rules themselves (active window, minimum cart value, usage limit, which
products/combos/variants a coupon covers) belong to the catalog, represented
here by :class:`DiscountCatalog`.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .errors import InvalidCoupon
from .models import Discount, as_utc, utcnow
from .pricing import CouponDiscount, format_inr, subtotal_of, to_money

logger = logging.getLogger(__name__)


@dataclass
class CouponValidation:
    valid: bool
    discount: Optional[CouponDiscount] = None
    reason: Optional[str] = None


class DiscountCatalog:
    """Catalog-side coupon validation."""
    def validate_coupon(self, code: str, lines) -> CouponValidation:
        raise NotImplementedError


def _id_list(raw):
    return {part.strip() for part in (raw or "").split(",") if part.strip()}


class SqlDiscountCatalog(DiscountCatalog):
    """Validates coupons against the ``discounts`` table."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def validate_coupon(self, code: str, lines) -> CouponValidation:
        db = self.session_factory()
        try:
            discount = (
                db.query(Discount)
                .filter(Discount.code == code.strip().lower(), Discount.is_active.is_(True))
                .first()
            )
            if not discount:
                return CouponValidation(False, reason="Invalid coupon code")

            now = utcnow()
            if discount.end_date and as_utc(discount.end_date) < now:
                return CouponValidation(False, reason="Coupon code has expired")
            if discount.start_date and as_utc(discount.start_date) > now:
                return CouponValidation(False, reason="Coupon code is not yet active")
            if discount.usage_limit is not None and (discount.usage_count or 0) >= discount.usage_limit:
                return CouponValidation(False, reason="Coupon code usage limit reached")

            subtotal = subtotal_of(lines)
            if discount.min_cart_value is not None and subtotal < discount.min_cart_value:
                return CouponValidation(
                    False, reason=f"Cart total below minimum of {format_inr(discount.min_cart_value)}"
                )
            if not self._covers(discount, lines):
                return CouponValidation(False, reason="Coupon does not apply to items in your cart")

            amount = self._amount(discount, subtotal)
            return CouponValidation(True, CouponDiscount(code=discount.code, name=discount.name, amount=amount))
        finally:
            db.close()

    @staticmethod
    def _covers(discount, lines) -> bool:
        scope = discount.applicable_to or "all"
        if scope == "all":
            return True
        if scope == "products":
            ids = _id_list(discount.product_ids)
            return any(not line.combo_id and line.product_id in ids for line in lines)
        if scope == "combos":
            ids = _id_list(discount.combo_ids)
            return any(line.combo_id and line.combo_id in ids for line in lines)
        if scope == "variants":
            ids = _id_list(discount.variant_ids)
            return any(line.variant_id and line.variant_id in ids for line in lines)
        return False

    @staticmethod
    def _amount(discount, subtotal) -> Decimal:
        if discount.type == "percentage":
            amount = subtotal * Decimal(discount.value) / 100
            if discount.max_discount_amount is not None:
                amount = min(amount, Decimal(discount.max_discount_amount))
        else:
            amount = Decimal(discount.value)
        # A coupon never takes more than the goods are worth.
        return to_money(min(amount, subtotal))


class DiscountResolver:
    """Resolves a shopper-entered code into a coupon discount."""

    def __init__(self, catalog: DiscountCatalog):
        self.catalog = catalog

    def resolve_coupon(self, code, lines) -> CouponDiscount:
        if not code or not code.strip():
            raise InvalidCoupon("Please enter a coupon code")

        result = self.catalog.validate_coupon(code.strip(), lines)
        if not result.valid or result.discount is None:
            logger.info("Coupon rejected", extra={"extra": {"coupon_code": code.strip(), "reason": result.reason}})
            raise InvalidCoupon(result.reason or "Invalid coupon code")
        return result.discount
