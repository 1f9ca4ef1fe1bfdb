"""Payment director: one checkout attempt from cart to payment handoff.

A :class:`PaymentDirector` is built for a single attempt in one of three
flows (:class:`~checkout_service.app.context.FreshCart`,
:class:`~checkout_service.app.context.BuyNow`,
:class:`~checkout_service.app.context.Retry`). It prices the cart, lets the
shopper adjust coupon, shipping and wallet usage, and on submit runs

    order writer -> settlement -> (done | gateway link + verification hint)

States::

    IDLE -> ADDRESS_REQUIRED -> PRICING_READY -> AWAITING_PAYMENT_CHOICE
         -> SETTLING -> AWAITING_GATEWAY_CONFIRMATION | COMPLETED
    any step -> FAILED

AWAITING_GATEWAY_CONFIRMATION is resolved by the verification worker, never
by polling from here.
"""

import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional
from urllib.parse import quote, urlencode

from .context import BuyNow, FreshCart, Retry
from .discounts import DiscountResolver
from .errors import (
    AddressRequired,
    CheckoutError,
    CheckoutInProgress,
    CheckoutNotFound,
    EmptyCart,
    InvalidCoupon,
    OrderNotRetryable,
    OrderPersistenceError,
    SettlementError,
    SignInRequired,
)
from .messaging.bus import EventPublisher
from .notifier import VerificationNotifier
from .orders import OrderDraft, OrderRecord, OrderWriter
from .pricing import (
    ZERO,
    CouponDiscount,
    PriceBreakdown,
    ShippingTier,
    compute_totals,
    format_inr,
    generate_lucky_discount,
    shipping_fee,
    to_money,
)
from .schemas import RetrySnapshot, ShippingAddress
from .settlement import SqlSettlementService
from .wallet import (
    WalletAllocation,
    WalletBalanceService,
    allocate,
    no_wallet,
    wallet_ceiling,
)

logger = logging.getLogger(__name__)

LUCKY_PRESERVED_NOTE = "Lucky discount preserved from your original order"


class CheckoutState(str, Enum):
    IDLE = "idle"
    ADDRESS_REQUIRED = "address_required"
    PRICING_READY = "pricing_ready"
    AWAITING_PAYMENT_CHOICE = "awaiting_payment_choice"
    SETTLING = "settling"
    AWAITING_GATEWAY_CONFIRMATION = "awaiting_gateway_confirmation"
    COMPLETED = "completed"
    FAILED = "failed"


SUBMITTED_STATES = {
    CheckoutState.SETTLING,
    CheckoutState.AWAITING_GATEWAY_CONFIRMATION,
    CheckoutState.COMPLETED,
}


@dataclass
class CheckoutServices:
    """Collaborators shared by every director."""
    order_writer: OrderWriter
    settlement: SqlSettlementService
    wallets: WalletBalanceService
    discounts: DiscountResolver
    notifier: VerificationNotifier
    events: EventPublisher
    merchant_upi_id: str = "cigarro@paytm"
    merchant_name: str = "Cigarro"
    currency: str = "INR"


@dataclass
class CheckoutQuote:
    """Live payable view, recomputed on every change."""
    checkout_id: str
    flow: str
    state: CheckoutState
    breakdown: PriceBreakdown
    amount_due: Decimal
    wallet_balance: Decimal
    wallet: WalletAllocation
    wallet_enabled: bool
    coupon: Optional[CouponDiscount]
    shipping_method: str
    address: Optional[ShippingAddress]
    lucky_note: Optional[str]

    @property
    def amount_to_pay(self) -> Decimal:
        return self.wallet.remainder

    @property
    def pay_label(self) -> str:
        if self.wallet.remainder > 0:
            return f"Pay {format_inr(self.wallet.remainder)}"
        return "Pay with Wallet"

    def to_dict(self):
        return {
            "checkout_id": self.checkout_id,
            "flow": self.flow,
            "state": self.state.value,
            **self.breakdown.to_dict(),
            "amount_due": float(self.amount_due),
            "wallet_balance": float(self.wallet_balance),
            "wallet_enabled": self.wallet_enabled,
            "wallet_amount": float(self.wallet.wallet_amount),
            "amount_to_pay": float(self.amount_to_pay),
            "pay_label": self.pay_label,
            "coupon": (
                {"code": self.coupon.code, "name": self.coupon.name, "amount": float(self.coupon.amount)}
                if self.coupon
                else None
            ),
            "shipping_method": self.shipping_method,
            "address": self.address.model_dump() if self.address else None,
            "lucky_note": self.lucky_note,
        }


@dataclass
class CheckoutOutcome:
    state: CheckoutState
    order_id: str
    display_order_id: str
    transaction_id: str
    total: Decimal
    wallet_amount: Decimal
    gateway_amount: Decimal
    gateway_url: Optional[str] = None
    reused_order: bool = False
    fallback_from: Optional[str] = None

    def to_dict(self):
        return {
            "status": self.state.value,
            "order_id": self.order_id,
            "display_order_id": self.display_order_id,
            "transaction_id": self.transaction_id,
            "total": float(self.total),
            "wallet_amount": float(self.wallet_amount),
            "gateway_amount": float(self.gateway_amount),
            "gateway_url": self.gateway_url,
            "reused_order": self.reused_order,
            "fallback_from": self.fallback_from,
        }


def new_transaction_id() -> str:
    return f"TXN{int(time.time() * 1000)}{uuid.uuid4().hex[:4].upper()}"


def build_upi_link(vpa, payee_name, amount, transaction_id, display_order_id, currency="INR") -> str:
    """Generic UPI deep link; the same string is rendered as the QR payload."""
    params = {
        "pa": vpa,
        "pn": payee_name,
        "am": f"{to_money(amount):.2f}",
        "cu": currency,
        "tr": transaction_id,
        "tn": f"Order {display_order_id}",
    }
    return "upi://pay?" + urlencode(params, quote_via=quote, safe="@")


def reprice_client_snapshot(snapshot: RetrySnapshot, discounts: DiscountResolver) -> RetrySnapshot:
    """Re-derive the money fields of a retry snapshot sent back by the client.

    Only the cart, address, shipping tier and lucky discount are kept. The
    shipping fee comes from the tier table, the coupon is resolved again and
    nothing counts as already paid.
    """
    coupon = discounts.resolve_coupon(snapshot.coupon_code, snapshot.lines) if snapshot.coupon_code else None
    return snapshot.model_copy(
        update={
            "shipping_fee": shipping_fee(snapshot.shipping_method),
            "coupon_code": coupon.code if coupon else None,
            "coupon_name": coupon.name if coupon else None,
            "coupon_amount": coupon.amount if coupon else ZERO,
            "amount_paid": ZERO,
        }
    )


class PaymentDirector:
    def __init__(
        self,
        context,
        services: CheckoutServices,
        user_id: Optional[str] = None,
        address: Optional[ShippingAddress] = None,
        shipping_method=ShippingTier.STANDARD,
        lucky_discount=None,
        checkout_id: Optional[str] = None,
    ):
        self.context = context
        self.flow = context.flow
        self.services = services
        self.user_id = user_id
        self.checkout_id = checkout_id or uuid.uuid4().hex
        self.state = CheckoutState.IDLE
        self.closed = False

        self.coupon: Optional[CouponDiscount] = None
        self.address = address
        self.shipping_method = ShippingTier(shipping_method)
        self.amount_paid = ZERO
        self.shipping_fee_override = None

        if isinstance(context, Retry):
            snapshot = context.snapshot
            # Retries keep the original attempt's lucky discount, shipping fee and coupon.
            self.lucky_discount = to_money(snapshot.lucky_discount)
            self.shipping_method = ShippingTier(snapshot.shipping_method)
            self.shipping_fee_override = to_money(snapshot.shipping_fee)
            self.amount_paid = to_money(snapshot.amount_paid)
            self.address = address or snapshot.address
            if snapshot.coupon_code and snapshot.coupon_amount > 0:
                self.coupon = CouponDiscount(
                    code=snapshot.coupon_code,
                    name=snapshot.coupon_name or snapshot.coupon_code,
                    amount=to_money(snapshot.coupon_amount),
                )
        elif lucky_discount is not None:
            self.lucky_discount = to_money(lucky_discount)
        else:
            self.lucky_discount = generate_lucky_discount()

        self.wallet_enabled = False
        self.wallet_requested: Optional[Decimal] = None
        self._wallet_balance: Optional[Decimal] = None

        self.order: Optional[OrderRecord] = None
        self.outcome: Optional[CheckoutOutcome] = None
        self.failure: Optional[CheckoutError] = None
        # Held for the whole of submit(); a second submit does not wait for it.
        self._submit_lock = threading.Lock()

        self._reprice()

    # ----- derived values -----
    @property
    def is_retry(self) -> bool:
        return isinstance(self.context, Retry)

    @property
    def lines(self):
        return self.context.lines

    def _log_extra(self, **fields):
        return {"extra": {"checkout_id": self.checkout_id, "user_id": self.user_id, "flow": self.flow, **fields}}

    def totals(self) -> PriceBreakdown:
        return compute_totals(
            self.lines,
            self.shipping_method,
            self.lucky_discount,
            self.coupon,
            shipping_fee_override=self.shipping_fee_override,
        )

    def amount_due(self, totals: Optional[PriceBreakdown] = None) -> Decimal:
        totals = totals or self.totals()
        return max(ZERO, totals.final_total - self.amount_paid)

    def wallet_balance(self, refresh: bool = False) -> Decimal:
        if not self.user_id:
            return ZERO
        if self._wallet_balance is None or refresh:
            self._wallet_balance = to_money(self.services.wallets.get_balance(self.user_id))
        return self._wallet_balance

    def allocation(self, amount_due: Optional[Decimal] = None) -> WalletAllocation:
        due = self.amount_due() if amount_due is None else amount_due
        if not self.wallet_enabled:
            return no_wallet(due)
        balance = self.wallet_balance()
        requested = self.wallet_requested
        if requested is not None:
            # An earlier override may no longer fit after a price change.
            requested = min(requested, wallet_ceiling(balance, due))
            if requested <= 0:
                return no_wallet(due)
        return allocate(balance, due, requested)

    def quote(self) -> CheckoutQuote:
        totals = self.totals()
        due = self.amount_due(totals)
        return CheckoutQuote(
            checkout_id=self.checkout_id,
            flow=self.flow,
            state=self.state,
            breakdown=totals,
            amount_due=due,
            wallet_balance=self.wallet_balance(),
            wallet=self.allocation(due),
            wallet_enabled=self.wallet_enabled,
            coupon=self.coupon,
            shipping_method=self.shipping_method.value,
            address=self.address,
            lucky_note=LUCKY_PRESERVED_NOTE if self.is_retry else None,
        )

    # ----- shopper adjustments (no side effects) -----
    def _reprice(self):
        if self.state in SUBMITTED_STATES:
            return
        if self.address is None:
            self.state = CheckoutState.ADDRESS_REQUIRED
            return
        self.state = CheckoutState.PRICING_READY
        self.totals()
        self.state = CheckoutState.AWAITING_PAYMENT_CHOICE

    def _ensure_open(self):
        if self.closed:
            raise CheckoutNotFound()
        if self.state in SUBMITTED_STATES:
            raise CheckoutInProgress("This checkout has already been submitted")

    def _ensure_price_editable(self):
        self._ensure_open()
        if self.order is not None:
            raise CheckoutInProgress("Your order is already placed; only the payment can be retried")

    def select_address(self, address: ShippingAddress):
        self._ensure_open()
        self.address = address
        self._reprice()

    def select_shipping(self, tier):
        self._ensure_price_editable()
        self.shipping_method = ShippingTier(tier)
        self._reprice()

    def update_buy_now_quantity(self, quantity: int):
        self._ensure_price_editable()
        if not isinstance(self.context, BuyNow):
            raise CheckoutError("Quantity can only be changed here for a buy-now item")
        if quantity < 1:
            self.close()
            raise EmptyCart("Item removed from checkout")
        self.context.item = self.context.item.model_copy(update={"quantity": quantity})
        self._reprice()

    def apply_coupon(self, code) -> CouponDiscount:
        self._ensure_price_editable()
        if self.is_retry:
            raise InvalidCoupon("Coupons cannot be changed when retrying a payment")
        # A rejected code leaves the current coupon in place.
        coupon = self.services.discounts.resolve_coupon(code, self.lines)
        self.coupon = coupon
        self._reprice()
        logger.info("Coupon applied", extra=self._log_extra(coupon_code=coupon.code, amount=float(coupon.amount)))
        return coupon

    def remove_coupon(self):
        self._ensure_price_editable()
        if self.is_retry:
            raise InvalidCoupon("Coupons cannot be changed when retrying a payment")
        self.coupon = None
        self._reprice()

    def use_wallet(self, enabled: bool = True):
        self._ensure_open()
        if enabled and not self.user_id:
            raise SignInRequired()
        self.wallet_enabled = enabled
        self.wallet_requested = None
        if enabled:
            self.wallet_balance(refresh=True)
        self._reprice()

    def set_wallet_amount(self, amount) -> WalletAllocation:
        """Custom wallet amount. Out-of-range values raise and change nothing."""
        self._ensure_open()
        if not self.user_id:
            raise SignInRequired()
        allocation = allocate(self.wallet_balance(refresh=True), self.amount_due(), amount)
        self.wallet_enabled = True
        self.wallet_requested = allocation.wallet_amount
        self._reprice()
        return allocation

    def close(self):
        """Drop the flow context; the director cannot be used afterwards."""
        self.closed = True
        self.context = FreshCart([])

    # ----- submission -----
    def _fail(self, error: CheckoutError, state=CheckoutState.FAILED):
        self.state = state
        self.failure = error
        raise error

    def submit(self) -> CheckoutOutcome:
        if not self._submit_lock.acquire(blocking=False):
            raise CheckoutInProgress()
        try:
            if self.outcome is not None:
                return self.outcome
            if self.closed:
                raise CheckoutNotFound()
            return self._submit()
        finally:
            self._submit_lock.release()

    def _submit(self) -> CheckoutOutcome:
        self.failure = None
        if not self.user_id:
            self._fail(SignInRequired())
        if self.address is None:
            self._fail(AddressRequired(), state=CheckoutState.ADDRESS_REQUIRED)
        if not self.lines:
            self._fail(EmptyCart())

        if self.wallet_enabled:
            self.wallet_balance(refresh=True)
        totals = self.totals()
        self.state = CheckoutState.SETTLING

        order, reused, fallback_from = self._write_order(totals)

        due = order.amount_due
        if due != self.amount_due(totals):
            logger.warning(
                "Stored order total differs from quote; charging stored amount",
                extra=self._log_extra(order_id=order.id, stored=float(due), quoted=float(self.amount_due(totals))),
            )
        allocation = self.allocation(due)
        return self._settle(order, allocation, reused, fallback_from)

    def _write_order(self, totals):
        draft = OrderDraft(
            user_id=self.user_id,
            lines=self.lines,
            address=self.address,
            shipping_method=self.shipping_method.value,
            lucky_discount=self.lucky_discount,
            idempotency_key=self.checkout_id,
            coupon=self.coupon,
            shipping_fee_override=self.shipping_fee_override,
            count_coupon_usage=not self.is_retry,
        )
        try:
            result = self.services.order_writer.create_or_get(self.context, draft)
        except InvalidCoupon as e:
            # Exhausted between quote and submit; drop it so a resubmit goes through.
            self.coupon = None
            logger.info("Coupon exhausted at submission", extra=self._log_extra())
            self._fail(e)
        except OrderNotRetryable as e:
            logger.warning(
                "Retry refused for settled order", extra=self._log_extra(order_id=self.context.original_order_id)
            )
            self._fail(e)
        except OrderPersistenceError as e:
            logger.error(
                "Order could not be written",
                extra=self._log_extra(final_total=float(totals.final_total), lines=len(self.lines)),
            )
            self._fail(e)

        self.order = result.order
        if not result.reused:
            self.services.events.publish(
                "order.created",
                {
                    "order_id": result.order.id,
                    "display_order_id": result.order.display_order_id,
                    "user_id": self.user_id,
                    "total": float(result.order.total),
                    "flow": self.flow,
                    "fallback_from": result.fallback_from,
                },
            )
        return result.order, result.reused, result.fallback_from

    def _settle(self, order: OrderRecord, allocation: WalletAllocation, reused, fallback_from) -> CheckoutOutcome:
        transaction_id = new_transaction_id()
        method = "wallet" if allocation.fully_covered else "upi"
        wallet_balance = self.wallet_balance() if allocation.uses_wallet else ZERO

        result = self.services.settlement.settle(
            self.user_id,
            order.id,
            transaction_id,
            order.amount_due,
            method=method,
            use_wallet=allocation.uses_wallet,
            wallet_amount=allocation.wallet_amount,
            metadata={
                "checkout_id": self.checkout_id,
                "flow": self.flow,
                "wallet_balance_before": float(wallet_balance),
                "wallet_amount_used": float(allocation.wallet_amount),
                "remaining_amount": float(allocation.remainder),
                "shipping_cost": float(order.shipping),
                "discount": float(order.discount),
                "coupon_code": order.discount_code,
            },
        )
        if not result.success:
            logger.error(
                "Settlement rejected",
                extra=self._log_extra(order_id=order.id, transaction_id=transaction_id, error=result.error),
            )
            self._fail(
                SettlementError(
                    f"Payment failed: {result.message}. Order #{order.display_order_id} is saved; "
                    "you can retry payment from your orders.",
                    order_id=order.id,
                    display_order_id=order.display_order_id,
                    cause=result.error,
                )
            )

        # The wallet balance changed; read it again next time.
        self._wallet_balance = None
        outcome = CheckoutOutcome(
            state=CheckoutState.COMPLETED,
            order_id=order.id,
            display_order_id=order.display_order_id,
            transaction_id=transaction_id,
            total=order.total,
            wallet_amount=result.wallet_amount,
            gateway_amount=result.gateway_amount,
            reused_order=reused,
            fallback_from=fallback_from,
        )

        if result.gateway_amount == 0:
            self.state = CheckoutState.COMPLETED
            self.services.events.publish(
                "payment.completed",
                {"order_id": order.id, "transaction_id": result.wallet_transaction_id, "amount": float(order.total)},
            )
            logger.info("Order paid from wallet", extra=self._log_extra(order_id=order.id))
        else:
            outcome.state = CheckoutState.AWAITING_GATEWAY_CONFIRMATION
            outcome.gateway_url = build_upi_link(
                self.services.merchant_upi_id,
                self.services.merchant_name,
                result.gateway_amount,
                transaction_id,
                order.display_order_id,
                currency=self.services.currency,
            )
            self.state = CheckoutState.AWAITING_GATEWAY_CONFIRMATION
            self.services.notifier.notify(transaction_id, order.id, result.gateway_amount)
            self.services.events.publish(
                "payment.initiated",
                {
                    "order_id": order.id,
                    "transaction_id": transaction_id,
                    "amount": float(result.gateway_amount),
                    "wallet_amount": float(result.wallet_amount),
                },
            )
            logger.info(
                "Awaiting gateway confirmation",
                extra=self._log_extra(order_id=order.id, transaction_id=transaction_id),
            )

        self.outcome = outcome
        return outcome


class CheckoutRegistry:
    """In-process store of open checkouts, keyed by checkout id.

    A checkout is visible only to the user it was started for. Once a submit
    has produced an outcome the director is dropped with :meth:`finish`; the
    outcome stays in a bounded replay cache so a repeated submit gets the same
    answer. Checkouts left idle longer than ``ttl_seconds`` are pruned.
    """

    def __init__(self, max_outcomes: int = 1000, ttl_seconds: Optional[float] = None, clock=time.monotonic):
        self.max_outcomes = max_outcomes
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._directors = {}
        self._touched = {}
        self._outcomes = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._directors)

    def add(self, director: PaymentDirector) -> PaymentDirector:
        with self._lock:
            expired = self._expired()
            self._directors[director.checkout_id] = director
            self._touched[director.checkout_id] = self.clock()
        for stale in expired:
            stale.close()
        return director

    def get(self, checkout_id: str, user_id: Optional[str] = None) -> PaymentDirector:
        with self._lock:
            director = self._directors.get(checkout_id)
            if director is not None:
                self._touched[checkout_id] = self.clock()
        if director is None or director.closed or director.user_id != user_id:
            raise CheckoutNotFound()
        return director

    def finish(self, director: PaymentDirector):
        """Drop a submitted checkout, keeping its outcome for replay."""
        if director.outcome is None:
            return
        with self._lock:
            self._directors.pop(director.checkout_id, None)
            self._touched.pop(director.checkout_id, None)
            self._outcomes[director.checkout_id] = (director.user_id, director.outcome)
            while len(self._outcomes) > self.max_outcomes:
                self._outcomes.popitem(last=False)
        director.close()

    def outcome(self, checkout_id: str, user_id: Optional[str] = None) -> Optional[CheckoutOutcome]:
        with self._lock:
            entry = self._outcomes.get(checkout_id)
        if entry is None or entry[0] != user_id:
            return None
        return entry[1]

    def discard(self, checkout_id: str):
        with self._lock:
            director = self._directors.pop(checkout_id, None)
            self._touched.pop(checkout_id, None)
        if director is not None:
            director.close()

    def _expired(self):
        # Caller holds the lock.
        if not self.ttl_seconds:
            return []
        cutoff = self.clock() - self.ttl_seconds
        stale = [cid for cid, touched in self._touched.items() if touched < cutoff]
        expired = []
        for cid in stale:
            self._touched.pop(cid, None)
            director = self._directors.pop(cid, None)
            if director is not None:
                expired.append(director)
        if expired:
            logger.info("Pruned idle checkouts", extra={"extra": {"count": len(expired)}})
        return expired
