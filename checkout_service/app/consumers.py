import json
import logging
import threading
import time

import pika
from sqlalchemy.exc import SQLAlchemyError

from .config import EVENTS_EXCHANGE, RABBITMQ_HOST
from .database import SessionLocal
from .models import Order, Transaction, Wallet, utcnow
from .pricing import to_money

logger = logging.getLogger(__name__)

VERIFIED = "payment.verified"
FAILED = "payment.failed"


def _credit_wallet(db, user_id, amount, now):
    credited = (
        db.query(Wallet)
        .filter(Wallet.user_id == user_id)
        .update({Wallet.balance: Wallet.balance + amount, Wallet.updated_at: now}, synchronize_session=False)
    )
    if not credited:
        db.add(Wallet(user_id=user_id, balance=amount, updated_at=now))


def apply_verification_event(db, routing_key, event):
    """
    Settle a pending gateway transaction from a verification result.

    Returns the transaction's resulting status, or None when the event
    names no known transaction. Events for transactions that are no longer
    pending are ignored, so redelivery is harmless.
    """
    transaction_id = event.get("transaction_id") or event.get("transactionId")
    if not transaction_id or routing_key not in (VERIFIED, FAILED):
        return None

    txn = db.query(Transaction).filter(Transaction.internal_transaction_id == transaction_id).first()
    if not txn:
        logger.warning("Verification for unknown transaction", extra={"extra": {"transaction_id": transaction_id}})
        return None
    if txn.status != "pending":
        logger.info(
            "Transaction already settled; ignoring event",
            extra={"extra": {"transaction_id": transaction_id, "status": txn.status}},
        )
        return txn.status

    order = db.query(Order).filter(Order.id == txn.order_id).first() if txn.order_id else None
    now = utcnow()

    if routing_key == VERIFIED:
        reported = event.get("amount")
        if reported is not None and to_money(reported) != to_money(txn.amount):
            logger.warning(
                "Verified amount does not match transaction",
                extra={"extra": {"transaction_id": transaction_id, "reported": reported, "expected": float(txn.amount)}},
            )
            routing_key = FAILED

    if routing_key == VERIFIED:
        txn.status = "completed"
        txn.verified = True
        txn.completed_at = now
        txn.verified_at = now
        if order is not None:
            order.amount_paid = to_money(order.amount_paid or 0) + to_money(txn.amount)
            if order.amount_paid >= to_money(order.total):
                order.status = "paid"
            if order.order_type == "wallet_load":
                _credit_wallet(db, order.user_id, to_money(txn.amount), now)
    else:
        txn.status = "failed"
        if order is not None and order.status == "pending":
            order.status = "failed"

    db.commit()
    logger.info(
        "Payment verification applied",
        extra={"extra": {"transaction_id": transaction_id, "order_id": txn.order_id, "status": txn.status}},
    )
    return txn.status


class VerificationConsumer:
    def __init__(self, host=RABBITMQ_HOST, exchange_name=EVENTS_EXCHANGE, session_factory=SessionLocal):
        self.session_factory = session_factory
        # Keep trying until RabbitMQ is reachable.
        while True:
            try:
                self.connection = pika.BlockingConnection(
                    pika.ConnectionParameters(host=host, heartbeat=600, blocked_connection_timeout=300)
                )
                self.channel = self.connection.channel()
                self.channel.exchange_declare(exchange=exchange_name, exchange_type="topic", durable=True)

                result = self.channel.queue_declare(queue="", exclusive=True)
                queue_name = result.method.queue

                # Results from the out-of-band verification worker.
                self.channel.queue_bind(exchange=exchange_name, queue=queue_name, routing_key=VERIFIED)
                self.channel.queue_bind(exchange=exchange_name, queue=queue_name, routing_key=FAILED)

                self.channel.basic_consume(queue=queue_name, on_message_callback=self.callback, auto_ack=True)
                logger.info("Verification consumer started listening")
                self.channel.start_consuming()
                break
            except pika.exceptions.AMQPError as e:
                logger.warning("Connection failed, retrying in 5s", extra={"extra": {"error": str(e)}})
                time.sleep(5)

    def callback(self, ch, method, properties, body):
        try:
            event = json.loads(body)
        except ValueError:
            logger.warning("Dropping malformed event", extra={"extra": {"routing_key": method.routing_key}})
            return

        db = self.session_factory()
        try:
            apply_verification_event(db, method.routing_key, event)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Error processing event", extra={"extra": {"routing_key": method.routing_key}})
        finally:
            db.close()


def start_consumer_thread():
    t = threading.Thread(target=VerificationConsumer, daemon=True)
    t.start()
    return t
