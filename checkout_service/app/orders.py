"""Order writer: exactly one order aggregate per checkout attempt.

The order row, its line items and the coupon usage bump are committed in a
single database transaction. Each attempt carries an idempotency key with a
unique constraint behind it, so a repeated submission gets the order that
already exists instead of a second one.
"""

import logging
import random
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .context import Retry
from .errors import InvalidCoupon, OrderNotRetryable, OrderPersistenceError
from .models import PAYABLE_STATUSES, Discount, Order, OrderItem, utcnow
from .pricing import (
    ZERO,
    CouponDiscount,
    compute_totals,
    estimated_delivery,
    to_money,
)
from .schemas import CartLine, RetrySnapshot, ShippingAddress

logger = logging.getLogger(__name__)

DISPLAY_ID_ATTEMPTS = 20
MIN_WALLET_LOAD = Decimal("1.00")


@dataclass
class OrderDraft:
    """What the director hands over for a new order."""
    user_id: str
    lines: List[CartLine]
    address: ShippingAddress
    shipping_method: str
    lucky_discount: Decimal
    idempotency_key: str
    coupon: Optional[CouponDiscount] = None
    shipping_fee_override: Optional[Decimal] = None
    count_coupon_usage: bool = True


@dataclass
class OrderRecord:
    """Plain copy of an order row, safe to use after the session closes."""
    id: str
    display_order_id: str
    user_id: str
    status: str
    order_type: str
    subtotal: Decimal
    shipping: Decimal
    lucky_discount: Decimal
    coupon_discount: Decimal
    discount: Decimal
    total: Decimal
    amount_paid: Decimal
    shipping_method: str
    discount_code: Optional[str]
    payment_method: str
    created_at: Optional[datetime]
    estimated_delivery: Optional[datetime]
    address: Optional[dict] = None
    items: List[dict] = field(default_factory=list)
    transactions: List[dict] = field(default_factory=list)

    @property
    def amount_due(self) -> Decimal:
        return max(ZERO, to_money(self.total) - to_money(self.amount_paid))

    @property
    def retryable(self) -> bool:
        """Only unpaid shop orders can go back through payment."""
        return self.order_type == "standard" and self.status in PAYABLE_STATUSES

    @classmethod
    def from_model(cls, order: Order, with_transactions: bool = False) -> "OrderRecord":
        record = cls(
            id=order.id,
            display_order_id=order.display_order_id,
            user_id=order.user_id,
            status=order.status,
            order_type=order.order_type,
            subtotal=to_money(order.subtotal),
            shipping=to_money(order.shipping),
            lucky_discount=to_money(order.lucky_discount),
            coupon_discount=to_money(order.coupon_discount),
            discount=to_money(order.discount),
            total=to_money(order.total),
            amount_paid=to_money(order.amount_paid or 0),
            shipping_method=order.shipping_method,
            discount_code=order.discount_code,
            payment_method=order.payment_method,
            created_at=order.created_at,
            estimated_delivery=order.estimated_delivery,
            address={
                "full_name": order.shipping_name,
                "phone": order.shipping_phone,
                "address": order.shipping_address,
                "city": order.shipping_city,
                "state": order.shipping_state,
                "postal_code": order.shipping_postal_code,
                "country": order.shipping_country,
            },
            items=[
                {
                    "product_id": item.product_id,
                    "variant_id": item.variant_id,
                    "combo_id": item.combo_id,
                    "name": item.product_name,
                    "brand": item.product_brand,
                    "image": item.product_image,
                    "variant_name": item.variant_name,
                    "unit_price": to_money(item.unit_price),
                    "quantity": item.quantity,
                }
                for item in order.items
            ],
        )
        if with_transactions:
            record.transactions = [
                {
                    "transaction_id": txn.internal_transaction_id,
                    "amount": float(txn.amount),
                    "direction": txn.direction,
                    "method": txn.method,
                    "status": txn.status,
                    "verified": bool(txn.verified),
                    "created_at": txn.created_at,
                }
                for txn in order.transactions
            ]
        return record

    def to_dict(self):
        return {
            "order_id": self.id,
            "display_order_id": self.display_order_id,
            "status": self.status,
            "order_type": self.order_type,
            "subtotal": float(self.subtotal),
            "shipping": float(self.shipping),
            "lucky_discount": float(self.lucky_discount),
            "coupon_discount": float(self.coupon_discount),
            "discount": float(self.discount),
            "total": float(self.total),
            "amount_paid": float(self.amount_paid),
            "shipping_method": self.shipping_method,
            "discount_code": self.discount_code,
            "payment_method": self.payment_method,
            "created_at": self.created_at,
            "estimated_delivery": self.estimated_delivery,
            "shipping_address": self.address,
            "items": [{**item, "unit_price": float(item["unit_price"])} for item in self.items],
            "transactions": self.transactions,
        }

    def to_retry_snapshot(self):
        """Rebuild the retry snapshot for re-entering payment on this order."""
        address = self.address if self.address and self.address.get("full_name") else None
        return RetrySnapshot(
            order_id=self.id,
            display_order_id=self.display_order_id,
            lines=[CartLine(**item) for item in self.items],
            address=ShippingAddress(**address) if address else None,
            shipping_method=self.shipping_method or "standard",
            shipping_fee=self.shipping,
            lucky_discount=self.lucky_discount,
            coupon_code=self.discount_code,
            coupon_name=self.discount_code,
            coupon_amount=self.coupon_discount,
            amount_paid=self.amount_paid,
        )


def check_line_reconciliation(order: Order):
    """Standard orders need items whose extended prices add up to the subtotal."""
    if order.order_type == "wallet_load":
        return
    if not order.items:
        raise OrderPersistenceError("Order has no items")
    line_sum = sum((to_money(item.unit_price) * item.quantity for item in order.items), ZERO)
    if to_money(line_sum) != to_money(order.subtotal):
        raise OrderPersistenceError(
            "Order lines do not add up to the subtotal",
            subtotal=float(order.subtotal),
            line_sum=float(line_sum),
        )


class SqlOrderStore:
    """Order persistence over SQLAlchemy."""

    def __init__(self, session_factory, rng: Optional[random.Random] = None):
        self.session_factory = session_factory
        self.rng = rng or random.Random()

    def _display_order_id(self, db) -> str:
        for _ in range(DISPLAY_ID_ATTEMPTS):
            candidate = str(self.rng.randint(10000, 99999))
            if not db.query(Order.id).filter(Order.display_order_id == candidate).first():
                return candidate
        raise OrderPersistenceError("Could not allocate an order number")

    def _existing(self, db, idempotency_key):
        return db.query(Order).filter(Order.idempotency_key == idempotency_key).first()

    def _commit_new(self, db, order: Order, idempotency_key: str) -> OrderRecord:
        try:
            db.add(order)
            db.commit()
        except IntegrityError:
            # Lost a race with an identical submission; return its order.
            db.rollback()
            existing = self._existing(db, idempotency_key)
            if existing:
                return OrderRecord.from_model(existing)
            raise
        db.refresh(order)
        return OrderRecord.from_model(order)

    def create_order(self, draft: OrderDraft) -> OrderRecord:
        """Create the order and its items, or return the one already made for this key."""
        db = self.session_factory()
        try:
            existing = self._existing(db, draft.idempotency_key)
            if existing:
                logger.info(
                    "Order already exists for checkout attempt",
                    extra={"extra": {"order_id": existing.id, "idempotency_key": draft.idempotency_key}},
                )
                return OrderRecord.from_model(existing)

            totals = compute_totals(
                draft.lines,
                draft.shipping_method,
                draft.lucky_discount,
                draft.coupon,
                shipping_fee_override=draft.shipping_fee_override,
            )
            placed_at = utcnow()
            address = draft.address
            order = Order(
                id=str(uuid.uuid4()),
                display_order_id=self._display_order_id(db),
                user_id=draft.user_id,
                status="pending",
                order_type="standard",
                subtotal=totals.subtotal,
                shipping=totals.shipping_fee,
                lucky_discount=totals.lucky_discount,
                coupon_discount=totals.coupon_discount,
                discount=totals.discount_total,
                total=totals.final_total,
                amount_paid=ZERO,
                shipping_method=str(getattr(draft.shipping_method, "value", draft.shipping_method)),
                discount_code=draft.coupon.code if draft.coupon else None,
                payment_method="upi",
                shipping_name=address.full_name,
                shipping_phone=address.phone,
                shipping_address=address.address,
                shipping_city=address.city,
                shipping_state=address.state,
                shipping_postal_code=address.postal_code,
                shipping_country=address.country or "India",
                idempotency_key=draft.idempotency_key,
                created_at=placed_at,
                estimated_delivery=estimated_delivery(draft.shipping_method, placed_at),
            )
            for line in draft.lines:
                order.items.append(
                    OrderItem(
                        product_id=line.product_id,
                        variant_id=line.variant_id,
                        combo_id=line.combo_id,
                        product_name=line.name,
                        product_brand=line.brand or "Premium",
                        product_image=line.image or "",
                        variant_name=line.variant_name,
                        unit_price=to_money(line.unit_price),
                        quantity=line.quantity,
                    )
                )
            check_line_reconciliation(order)

            if draft.coupon and draft.count_coupon_usage:
                # Conditional increment; zero rows means someone used the last slot.
                claimed = (
                    db.query(Discount)
                    .filter(
                        Discount.code == draft.coupon.code,
                        or_(Discount.usage_limit.is_(None), Discount.usage_count < Discount.usage_limit),
                    )
                    .update({Discount.usage_count: Discount.usage_count + 1}, synchronize_session=False)
                )
                if not claimed:
                    db.rollback()
                    raise InvalidCoupon("Coupon code usage limit reached")

            return self._commit_new(db, order, draft.idempotency_key)
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception(
                "Order write failed",
                extra={"extra": {"user_id": draft.user_id, "idempotency_key": draft.idempotency_key}},
            )
            raise OrderPersistenceError() from e
        finally:
            db.close()

    def create_wallet_load(self, user_id: str, amount, idempotency_key: str) -> OrderRecord:
        """Zero-line order used to top up the wallet by a custom amount."""
        amount = to_money(amount)
        if amount < MIN_WALLET_LOAD:
            raise OrderPersistenceError("Invalid wallet load amount")
        db = self.session_factory()
        try:
            existing = self._existing(db, idempotency_key)
            if existing:
                return OrderRecord.from_model(existing)
            order = Order(
                id=str(uuid.uuid4()),
                display_order_id=self._display_order_id(db),
                user_id=user_id,
                status="pending",
                order_type="wallet_load",
                subtotal=amount,
                shipping=ZERO,
                lucky_discount=ZERO,
                coupon_discount=ZERO,
                discount=ZERO,
                total=amount,
                amount_paid=ZERO,
                shipping_method="standard",
                payment_method="upi",
                idempotency_key=idempotency_key,
            )
            return self._commit_new(db, order, idempotency_key)
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Wallet load order failed", extra={"extra": {"user_id": user_id}})
            raise OrderPersistenceError() from e
        finally:
            db.close()

    def get_order(self, order_id: str, user_id: Optional[str] = None, with_transactions: bool = False):
        """Fetch an order by id, optionally requiring that ``user_id`` owns it."""
        db = self.session_factory()
        try:
            query = db.query(Order).filter(Order.id == order_id)
            if user_id is not None:
                query = query.filter(Order.user_id == user_id)
            order = query.first()
            return OrderRecord.from_model(order, with_transactions) if order else None
        finally:
            db.close()


@dataclass
class OrderResult:
    order: OrderRecord
    reused: bool = False
    fallback_from: Optional[str] = None


class OrderWriter:
    """Creates the order for a checkout attempt, or finds it again on retry."""

    def __init__(self, store: SqlOrderStore):
        self.store = store

    def create_or_get(self, context, draft: OrderDraft) -> OrderResult:
        if not isinstance(context, Retry):
            return OrderResult(self.store.create_order(draft))

        original_id = context.original_order_id
        try:
            existing = self.store.get_order(original_id, user_id=draft.user_id)
        except SQLAlchemyError as e:
            logger.exception("Could not load order for retry", extra={"extra": {"order_id": original_id}})
            raise OrderPersistenceError() from e

        if existing:
            if not existing.retryable:
                raise OrderNotRetryable(f"Order #{existing.display_order_id} is {existing.status} and cannot be paid again")
            logger.info("Reusing order for payment retry", extra={"extra": {"order_id": original_id}})
            return OrderResult(existing, reused=True)

        # The replacement is a new order: current shipping table, coupon counted again.
        order = self.store.create_order(replace(draft, shipping_fee_override=None, count_coupon_usage=True))
        logger.warning(
            "Retry order not found; created replacement order",
            extra={"extra": {"original_order_id": original_id, "order_id": order.id, "user_id": draft.user_id}},
        )
        return OrderResult(order, fallback_from=original_id)
