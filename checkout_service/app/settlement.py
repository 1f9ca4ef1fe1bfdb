"""Settlement: records the wallet debit and the gateway leg of an order payment.

One call, one database transaction. The wallet debit is a conditional
``UPDATE ... WHERE balance >= amount``; when two checkouts race for the same
balance only one of them can win, and the loser writes nothing.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .models import PAYABLE_STATUSES, Order, Transaction, Wallet, utcnow
from .pricing import ZERO, format_inr, to_money

logger = logging.getLogger(__name__)

GATEWAY_METHODS = {"upi", "qr"}


@dataclass
class SettlementResult:
    success: bool
    wallet_transaction_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    wallet_amount: Decimal = ZERO
    gateway_amount: Decimal = ZERO
    error: Optional[str] = None
    message: str = ""

    @classmethod
    def rejected(cls, error, message):
        return cls(False, error=error, message=message)


class SqlSettlementService:
    """Settles orders against the ``wallets`` and ``transactions`` tables."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def settle(
        self,
        user_id,
        order_id,
        transaction_id,
        amount,
        method="upi",
        use_wallet=False,
        wallet_amount=ZERO,
        metadata=None,
    ) -> SettlementResult:
        amount = to_money(amount)
        wallet_amount = to_money(wallet_amount or 0) if use_wallet else ZERO
        metadata = dict(metadata or {})

        if method not in GATEWAY_METHODS and method != "wallet":
            return SettlementResult.rejected("invalid_method", f"Unsupported payment method: {method}")

        db = self.session_factory()
        try:
            order = db.query(Order).filter(Order.id == order_id, Order.user_id == user_id).first()
            if not order:
                return SettlementResult.rejected("order_not_found", "Order not found or does not belong to user")
            if order.status not in PAYABLE_STATUSES:
                return SettlementResult.rejected("order_not_payable", f"Order is {order.status} and cannot be paid")

            amount_due = to_money(order.total) - to_money(order.amount_paid or 0)
            if amount != amount_due:
                return SettlementResult.rejected(
                    "amount_mismatch",
                    f"Payment amount {format_inr(amount)} does not match amount due {format_inr(amount_due)}",
                )
            if wallet_amount < 0 or wallet_amount > amount:
                return SettlementResult.rejected("invalid_wallet_amount", "Wallet amount cannot exceed order total")
            if wallet_amount > 0 and order.order_type == "wallet_load":
                return SettlementResult.rejected("invalid_wallet_amount", "Wallet top-ups cannot be paid from the wallet")

            now = utcnow()
            wallet_txn = None
            if wallet_amount > 0:
                already_applied = (
                    db.query(Transaction.id)
                    .filter(
                        Transaction.order_id == order.id,
                        Transaction.method == "wallet",
                        Transaction.status != "failed",
                    )
                    .first()
                )
                if already_applied:
                    return SettlementResult.rejected(
                        "wallet_already_applied", "Wallet balance was already applied to this order"
                    )

                # Compare-and-set debit.
                debited = (
                    db.query(Wallet)
                    .filter(Wallet.user_id == user_id, Wallet.balance >= wallet_amount)
                    .update(
                        {Wallet.balance: Wallet.balance - wallet_amount, Wallet.updated_at: now},
                        synchronize_session=False,
                    )
                )
                if not debited:
                    db.rollback()
                    return SettlementResult.rejected("insufficient_wallet_balance", "Insufficient wallet balance")

                balance_after = db.query(Wallet.balance).filter(Wallet.user_id == user_id).scalar()
                wallet_txn = Transaction(
                    internal_transaction_id=f"{transaction_id}_WALLET",
                    user_id=user_id,
                    order_id=order.id,
                    amount=wallet_amount,
                    direction="debit",
                    method="wallet",
                    status="completed",
                    verified=True,
                    completed_at=now,
                    verified_at=now,
                    metadata_json={
                        **metadata,
                        "wallet_deduction": True,
                        "balance_after": float(to_money(balance_after or 0)),
                    },
                )
                db.add(wallet_txn)
                order.amount_paid = to_money(order.amount_paid or 0) + wallet_amount

            # At most one live gateway attempt per order.
            superseded = (
                db.query(Transaction)
                .filter(
                    Transaction.order_id == order.id,
                    Transaction.method != "wallet",
                    Transaction.status == "pending",
                )
                .update({Transaction.status: "failed"}, synchronize_session=False)
            )
            if superseded:
                logger.info(
                    "Superseded pending gateway transactions",
                    extra={"extra": {"order_id": order.id, "count": superseded}},
                )

            gateway_amount = amount - wallet_amount
            gateway_txn = None
            if gateway_amount > 0:
                gateway_method = method if method in GATEWAY_METHODS else "upi"
                gateway_txn = Transaction(
                    internal_transaction_id=transaction_id,
                    user_id=user_id,
                    order_id=order.id,
                    amount=gateway_amount,
                    direction="credit" if order.order_type == "wallet_load" else "debit",
                    method=gateway_method,
                    status="pending",
                    verified=False,
                    metadata_json={
                        **metadata,
                        "gateway_payment": True,
                        "wallet_amount_used": float(wallet_amount),
                    },
                )
                db.add(gateway_txn)
                order.payment_method = gateway_method
                if order.status == "failed":
                    order.status = "pending"
            else:
                order.status = "paid"
                order.payment_method = "wallet"

            db.commit()
            logger.info(
                "Payment settled",
                extra={
                    "extra": {
                        "order_id": order_id,
                        "transaction_id": transaction_id,
                        "wallet_amount": float(wallet_amount),
                        "gateway_amount": float(gateway_amount),
                    }
                },
            )
            return SettlementResult(
                success=True,
                wallet_transaction_id=wallet_txn.internal_transaction_id if wallet_txn else None,
                gateway_transaction_id=gateway_txn.internal_transaction_id if gateway_txn else None,
                wallet_amount=wallet_amount,
                gateway_amount=gateway_amount,
                message="Payment processed successfully",
            )
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Settlement failed", extra={"extra": {"order_id": order_id, "transaction_id": transaction_id}})
            return SettlementResult.rejected("processing_error", str(e))
        finally:
            db.close()
