import logging
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import config
from .consumers import start_consumer_thread
from .context import BuyNow, FreshCart, Retry
from .database import SessionLocal, engine
from .director import (
    CheckoutRegistry,
    CheckoutServices,
    PaymentDirector,
    build_upi_link,
    new_transaction_id,
    reprice_client_snapshot,
)
from .discounts import DiscountResolver, SqlDiscountCatalog
from .errors import (
    CheckoutError,
    CheckoutNotFound,
    EmptyCart,
    OrderNotRetryable,
    SettlementError,
    SignInRequired,
)
from .logging_config import configure_logging
from .messaging.bus import EventPublisher, RabbitMQProducer
from .models import Base
from .notifier import VerificationNotifier
from .orders import OrderWriter, SqlOrderStore
from .schemas import (
    CouponRequest,
    QuantityRequest,
    ShippingAddress,
    ShippingRequest,
    StartCheckoutRequest,
    WalletRequest,
)
from .settlement import SqlSettlementService
from .wallet import SqlWalletService

logger = logging.getLogger(__name__)

# Create database tables on startup if they don't exist.
Base.metadata.create_all(bind=engine)


def build_services(session_factory=SessionLocal, events=None, notifier=None) -> CheckoutServices:
    """Wire the SQL-backed collaborators around one session factory."""
    store = SqlOrderStore(session_factory)
    return CheckoutServices(
        order_writer=OrderWriter(store),
        settlement=SqlSettlementService(session_factory),
        wallets=SqlWalletService(session_factory),
        discounts=DiscountResolver(SqlDiscountCatalog(session_factory)),
        notifier=notifier
        or VerificationNotifier(
            url=config.VERIFICATION_WEBHOOK_URL,
            secret=config.WEBHOOK_SECRET,
            timeout=config.WEBHOOK_TIMEOUT_SECONDS,
        ),
        events=events or EventPublisher(enabled=False),
        merchant_upi_id=config.MERCHANT_UPI_ID,
        merchant_name=config.MERCHANT_NAME,
        currency=config.CURRENCY,
    )


services = build_services()
registry = CheckoutRegistry(max_outcomes=config.CHECKOUT_REPLAY_LIMIT, ttl_seconds=config.CHECKOUT_TTL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(config.LOG_LEVEL, config.LOG_DIR)
    producer = None
    if config.EVENTS_ENABLED:
        producer = RabbitMQProducer(config.RABBITMQ_HOST, config.EVENTS_EXCHANGE)
        services.events = EventPublisher(producer)
        start_consumer_thread()
    logger.info("Checkout service started", extra={"extra": {"events_enabled": config.EVENTS_ENABLED}})
    yield
    if producer is not None:
        producer.close()


app = FastAPI(title="Checkout Service", lifespan=lifespan)


@app.exception_handler(CheckoutError)
def checkout_error_handler(request: Request, exc: CheckoutError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# --- Dependencies ---
def get_services() -> CheckoutServices:
    return services


def get_registry() -> CheckoutRegistry:
    return registry


def current_user(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Identity comes from the session layer in front of us."""
    return x_user_id or None


def require_user(user_id: Optional[str] = Depends(current_user)) -> str:
    if not user_id:
        raise SignInRequired()
    return user_id


class WalletLoadRequest(BaseModel):
    amount: Decimal = Field(..., ge=1)
    idempotency_key: Optional[str] = None


# --- Endpoints ---
@app.get("/")
def root():
    """Health check endpoint."""
    return {"message": "Checkout service is running"}


@app.get("/health")
def health():
    return {"status": "ok"}


def _context_for(req: StartCheckoutRequest, user_id, svc: CheckoutServices):
    if req.flow == "buy_now":
        if req.item is None:
            raise EmptyCart("No item selected for buy now")
        return BuyNow(req.item)
    if req.flow == "retry":
        if not req.order_id:
            raise CheckoutNotFound("No order selected for payment retry")
        if not user_id:
            raise SignInRequired()
        order = svc.order_writer.store.get_order(req.order_id, user_id=user_id)
        if order is not None:
            if not order.retryable:
                raise OrderNotRetryable(f"Order #{order.display_order_id} is {order.status} and cannot be paid again")
            return Retry(order.to_retry_snapshot())
        if req.retry_snapshot is None or req.retry_snapshot.order_id != req.order_id:
            raise CheckoutNotFound("Order not found")
        # Money fields sent back by the client are priced again.
        return Retry(reprice_client_snapshot(req.retry_snapshot, svc.discounts))
    return FreshCart(list(req.lines))


@app.post("/api/v1/checkouts")
def start_checkout(
    req: StartCheckoutRequest,
    user_id: Optional[str] = Depends(current_user),
    svc: CheckoutServices = Depends(get_services),
    checkouts: CheckoutRegistry = Depends(get_registry),
):
    context = _context_for(req, user_id, svc)
    director = PaymentDirector(
        context,
        svc,
        user_id=user_id,
        address=req.address,
        shipping_method=req.shipping_method,
    )
    checkouts.add(director)
    logger.info(
        "Checkout started",
        extra={"extra": {"checkout_id": director.checkout_id, "user_id": user_id, "flow": director.flow}},
    )
    return director.quote().to_dict()


@app.get("/api/v1/checkouts/{checkout_id}")
def get_checkout(
    checkout_id: str,
    user_id: Optional[str] = Depends(current_user),
    checkouts: CheckoutRegistry = Depends(get_registry),
):
    return checkouts.get(checkout_id, user_id).quote().to_dict()


@app.put("/api/v1/checkouts/{checkout_id}/address")
def select_address(
    checkout_id: str,
    address: ShippingAddress,
    user_id: str = Depends(require_user),
    checkouts: CheckoutRegistry = Depends(get_registry),
):
    director = checkouts.get(checkout_id, user_id)
    director.select_address(address)
    return director.quote().to_dict()


@app.put("/api/v1/checkouts/{checkout_id}/shipping")
def select_shipping(
    checkout_id: str,
    req: ShippingRequest,
    user_id: str = Depends(require_user),
    checkouts: CheckoutRegistry = Depends(get_registry),
):
    director = checkouts.get(checkout_id, user_id)
    director.select_shipping(req.method)
    return director.quote().to_dict()


@app.put("/api/v1/checkouts/{checkout_id}/coupon")
def apply_coupon(
    checkout_id: str,
    req: CouponRequest,
    user_id: str = Depends(require_user),
    checkouts: CheckoutRegistry = Depends(get_registry),
):
    director = checkouts.get(checkout_id, user_id)
    director.apply_coupon(req.code)
    return director.quote().to_dict()


@app.delete("/api/v1/checkouts/{checkout_id}/coupon")
def remove_coupon(
    checkout_id: str,
    user_id: str = Depends(require_user),
    checkouts: CheckoutRegistry = Depends(get_registry),
):
    director = checkouts.get(checkout_id, user_id)
    director.remove_coupon()
    return director.quote().to_dict()


@app.put("/api/v1/checkouts/{checkout_id}/wallet")
def set_wallet(
    checkout_id: str,
    req: WalletRequest,
    user_id: str = Depends(require_user),
    checkouts: CheckoutRegistry = Depends(get_registry),
):
    director = checkouts.get(checkout_id, user_id)
    if req.enabled and req.amount is not None:
        director.set_wallet_amount(req.amount)
    else:
        director.use_wallet(req.enabled)
    return director.quote().to_dict()


@app.put("/api/v1/checkouts/{checkout_id}/buy-now-quantity")
def update_buy_now_quantity(
    checkout_id: str,
    req: QuantityRequest,
    user_id: str = Depends(require_user),
    checkouts: CheckoutRegistry = Depends(get_registry),
):
    director = checkouts.get(checkout_id, user_id)
    try:
        director.update_buy_now_quantity(req.quantity)
    except EmptyCart:
        checkouts.discard(checkout_id)
        raise
    return director.quote().to_dict()


@app.post("/api/v1/checkouts/{checkout_id}/submit")
def submit_checkout(
    checkout_id: str,
    user_id: str = Depends(require_user),
    checkouts: CheckoutRegistry = Depends(get_registry),
):
    replay = checkouts.outcome(checkout_id, user_id)
    if replay is not None:
        return replay.to_dict()
    director = checkouts.get(checkout_id, user_id)
    outcome = director.submit()
    checkouts.finish(director)
    return outcome.to_dict()


@app.delete("/api/v1/checkouts/{checkout_id}")
def abandon_checkout(
    checkout_id: str,
    user_id: str = Depends(require_user),
    checkouts: CheckoutRegistry = Depends(get_registry),
):
    checkouts.get(checkout_id, user_id)
    checkouts.discard(checkout_id)
    return {"status": "closed", "checkout_id": checkout_id}


# Retrieves a single order with its items and transactions.
@app.get("/api/v1/orders/{order_id}")
def get_order(
    order_id: str,
    user_id: str = Depends(require_user),
    svc: CheckoutServices = Depends(get_services),
):
    order = svc.order_writer.store.get_order(order_id, user_id=user_id, with_transactions=True)
    if not order:
        raise CheckoutNotFound("Order not found")
    return order.to_dict()


@app.get("/api/v1/wallets/{wallet_user_id}")
def get_wallet(
    wallet_user_id: str,
    user_id: str = Depends(require_user),
    svc: CheckoutServices = Depends(get_services),
):
    if wallet_user_id != user_id:
        raise CheckoutNotFound("Wallet not found")
    return {"user_id": user_id, "balance": float(svc.wallets.get_balance(user_id))}


# Tops up the wallet through the gateway; credited once verification arrives.
@app.post("/api/v1/wallets/{wallet_user_id}/loads")
def load_wallet(
    wallet_user_id: str,
    req: WalletLoadRequest,
    user_id: str = Depends(require_user),
    svc: CheckoutServices = Depends(get_services),
):
    if wallet_user_id != user_id:
        raise CheckoutNotFound("Wallet not found")
    order = svc.order_writer.store.create_wallet_load(
        user_id, req.amount, req.idempotency_key or uuid.uuid4().hex
    )
    transaction_id = new_transaction_id()
    result = svc.settlement.settle(
        user_id,
        order.id,
        transaction_id,
        order.amount_due,
        method="upi",
        metadata={"wallet_load": True},
    )
    if not result.success:
        raise SettlementError(
            f"Payment failed: {result.message}",
            order_id=order.id,
            display_order_id=order.display_order_id,
            cause=result.error,
        )
    svc.notifier.notify(transaction_id, order.id, result.gateway_amount)
    svc.events.publish(
        "payment.initiated",
        {"order_id": order.id, "transaction_id": transaction_id, "amount": float(result.gateway_amount)},
    )
    return {
        "status": "awaiting_gateway_confirmation",
        "order_id": order.id,
        "display_order_id": order.display_order_id,
        "transaction_id": transaction_id,
        "amount": float(result.gateway_amount),
        "gateway_url": build_upi_link(
            svc.merchant_upi_id,
            svc.merchant_name,
            result.gateway_amount,
            transaction_id,
            order.display_order_id,
            currency=svc.currency,
        ),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("checkout_service.app.main:app", host="0.0.0.0", port=8000)
