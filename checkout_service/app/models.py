from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from .database import Base  # Import the Base class from our database setup


def utcnow():
    return datetime.now(timezone.utc)


# Orders whose payment can still be attempted or retried.
PAYABLE_STATUSES = ("pending", "failed")


def as_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Defines the ORM model for an 'Order' aggregate. Money is Numeric(12, 2).
class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)  # uuid4 string.
    display_order_id = Column(String, unique=True, index=True)  # Human-facing 5-digit id.
    user_id = Column(String, index=True, nullable=False)
    status = Column(String, default="pending")  # pending, paid, shipped, delivered, cancelled, failed.
    order_type = Column(String, default="standard")  # standard or wallet_load.

    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping = Column(Numeric(12, 2), nullable=False, default=0)
    lucky_discount = Column(Numeric(12, 2), nullable=False, default=0)
    coupon_discount = Column(Numeric(12, 2), nullable=False, default=0)
    discount = Column(Numeric(12, 2), nullable=False, default=0)  # lucky + coupon.
    total = Column(Numeric(12, 2), nullable=False)
    amount_paid = Column(Numeric(12, 2), nullable=False, default=0)  # Completed debits so far.

    shipping_method = Column(String, default="standard")
    discount_code = Column(String, nullable=True)
    payment_method = Column(String, default="upi")

    # Shipping address snapshot.
    shipping_name = Column(String)
    shipping_phone = Column(String)
    shipping_address = Column(String)
    shipping_city = Column(String)
    shipping_state = Column(String)
    shipping_postal_code = Column(String)
    shipping_country = Column(String, default="India")

    idempotency_key = Column(String, unique=True)  # One order per checkout attempt.
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    estimated_delivery = Column(DateTime(timezone=True), nullable=True)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    transactions = relationship("Transaction", back_populates="order")


# One line of an order. Product details are snapshots taken at creation time.
class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String, ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False)
    product_id = Column(String, nullable=False)
    variant_id = Column(String, nullable=True)
    combo_id = Column(String, nullable=True)
    product_name = Column(String, nullable=False)
    product_brand = Column(String, nullable=True)
    product_image = Column(String, nullable=True)
    variant_name = Column(String, nullable=True)
    unit_price = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")


# An attempted settlement, either a wallet debit or a gateway payment.
class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    internal_transaction_id = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    direction = Column(String, default="debit")  # credit or debit.
    method = Column(String, nullable=False)  # wallet, upi or qr.
    status = Column(String, default="pending")  # pending, completed or failed.
    verified = Column(Boolean, default=False)
    metadata_json = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    order = relationship("Order", back_populates="transactions")


# Stored-value wallet. Only the settlement service writes the balance.
class Wallet(Base):
    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, unique=True, index=True, nullable=False)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# Coupon codes and automatic discounts, owned by the catalog admin.
class Discount(Base):
    __tablename__ = "discounts"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, unique=True, index=True)  # Stored lower-case.
    name = Column(String, nullable=False)
    type = Column(String, default="fixed")  # percentage or fixed.
    value = Column(Numeric(12, 2), nullable=False)
    max_discount_amount = Column(Numeric(12, 2), nullable=True)
    min_cart_value = Column(Numeric(12, 2), nullable=True)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    usage_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)
    applicable_to = Column(String, default="all")  # all, products, combos or variants.
    product_ids = Column(String, default="")  # Comma-separated ids.
    combo_ids = Column(String, default="")
    variant_ids = Column(String, default="")
