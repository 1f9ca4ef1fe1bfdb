"""Pydantic models shared by the checkout components and the HTTP layer."""

from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .pricing import ShippingTier, to_money


class CartLine(BaseModel):
    """One cart entry with the price and display data captured when it was added."""
    product_id: str
    variant_id: Optional[str] = None
    combo_id: Optional[str] = None
    name: str
    brand: Optional[str] = None
    image: Optional[str] = None
    variant_name: Optional[str] = None
    unit_price: Decimal = Field(..., ge=0)
    quantity: int = Field(1, ge=1)

    @property
    def line_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)

    def same_item(self, product_id, variant_id=None, combo_id=None) -> bool:
        return (
            self.product_id == product_id
            and (self.variant_id or None) == (variant_id or None)
            and (self.combo_id or None) == (combo_id or None)
        )


class ShippingAddress(BaseModel):
    """Address book entry; used as an opaque snapshot, never validated here."""
    full_name: str
    phone: str
    address: str
    city: str
    state: str
    postal_code: str
    country: str = "India"
    label: Optional[str] = None


class RetrySnapshot(BaseModel):
    """Everything needed to re-enter payment for an earlier order."""
    order_id: str
    display_order_id: Optional[str] = None
    lines: List[CartLine] = Field(default_factory=list)
    address: Optional[ShippingAddress] = None
    shipping_method: ShippingTier = ShippingTier.STANDARD
    shipping_fee: Decimal = Field(Decimal("0"), ge=0)
    lucky_discount: Decimal = Field(..., gt=0, le=1)
    coupon_code: Optional[str] = None
    coupon_name: Optional[str] = None
    coupon_amount: Decimal = Field(Decimal("0"), ge=0)
    amount_paid: Decimal = Field(Decimal("0"), ge=0)


# --- Request Models ---

class StartCheckoutRequest(BaseModel):
    """Starts a checkout in one of the three entry flows."""
    flow: Literal["cart", "buy_now", "retry"] = "cart"
    lines: List[CartLine] = Field(default_factory=list)
    item: Optional[CartLine] = None
    order_id: Optional[str] = None
    retry_snapshot: Optional[RetrySnapshot] = None
    shipping_method: ShippingTier = ShippingTier.STANDARD
    address: Optional[ShippingAddress] = None


class ShippingRequest(BaseModel):
    method: ShippingTier


class CouponRequest(BaseModel):
    code: str = ""


class WalletRequest(BaseModel):
    enabled: bool = True
    amount: Optional[Decimal] = None


class QuantityRequest(BaseModel):
    quantity: int
