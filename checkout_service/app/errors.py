"""Checkout error taxonomy.

Every error carries a machine-readable ``reason`` and a message that can be
shown to the shopper as-is. ``status_code`` is what the HTTP layer answers
with.
"""


class CheckoutError(Exception):
    reason = "checkout_error"
    status_code = 400
    default_message = "Checkout could not be completed"

    def __init__(self, message=None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        return {"status": "failed", "error": self.reason, "message": self.message, **self.details}


# --- Input errors (user-correctable, nothing submitted) ---

class AddressRequired(CheckoutError):
    reason = "address_required"
    status_code = 422
    default_message = "Please select a delivery address"


class InvalidCoupon(CheckoutError):
    reason = "invalid_coupon"
    status_code = 422
    default_message = "Invalid coupon code"


class WalletOverrideError(CheckoutError):
    reason = "invalid_wallet_amount"
    status_code = 422
    default_message = "Invalid wallet amount"


class EmptyCart(CheckoutError):
    reason = "empty_cart"
    status_code = 422
    default_message = "Your cart is empty"


# --- Precondition errors ---

class SignInRequired(CheckoutError):
    reason = "sign_in_required"
    status_code = 401
    default_message = "Please sign in to continue"


class CheckoutInProgress(CheckoutError):
    reason = "checkout_in_progress"
    status_code = 409
    default_message = "Your order is already being placed"


class CheckoutNotFound(CheckoutError):
    reason = "checkout_not_found"
    status_code = 404
    default_message = "Checkout session expired. Please try again."


class OrderNotRetryable(CheckoutError):
    reason = "order_not_retryable"
    status_code = 409
    default_message = "This order can no longer be paid"


# --- Persistence and settlement errors (reported, never retried automatically) ---

class OrderPersistenceError(CheckoutError):
    reason = "order_failed"
    status_code = 503
    default_message = "We could not place your order. Please try again."


class SettlementError(CheckoutError):
    reason = "payment_failed"
    status_code = 502
    default_message = "Payment failed. Your order is saved and you can retry payment from your orders."
