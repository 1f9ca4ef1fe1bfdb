"""One-way notification to the out-of-band payment verification worker.

This is a hint that a gateway payment was started, not a delivery guarantee:
the worker settles orders on its own schedule whether or not the hint
arrives. The POST runs on a daemon thread so a request that has already
returned is not held up, and no failure ever reaches the caller.
"""

import logging
import threading

import requests

from .models import utcnow
from .pricing import to_money

logger = logging.getLogger(__name__)


class VerificationNotifier:
    def __init__(self, url="", secret="", timeout=10.0, session=None, background=True):
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self.session = session or requests
        self.background = background

    def payload(self, transaction_id, order_id, amount):
        now = utcnow().isoformat()
        return {
            "orderId": order_id,
            "transactionId": transaction_id,
            "amount": float(to_money(amount)),
            "orderCreatedAt": now,
            "timestamp": now,
        }

    def notify(self, transaction_id, order_id, amount) -> None:
        """Fire and forget. Never raises."""
        try:
            body = self.payload(transaction_id, order_id, amount)
            if not self.url:
                logger.info("Verification webhook not configured; skipping", extra={"extra": body})
                return
            if self.background:
                thread = threading.Thread(target=self._post, args=(body,), daemon=True)
                thread.start()
            else:
                self._post(body)
        except Exception:
            logger.exception("Could not dispatch verification notification")

    def _post(self, body):
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["Authorization"] = f"Bearer {self.secret}"
        try:
            response = self.session.post(self.url, json=body, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            logger.info(
                "Verification worker notified",
                extra={"extra": {"transaction_id": body["transactionId"], "status_code": response.status_code}},
            )
        except requests.exceptions.RequestException as e:
            logger.warning(
                "Verification webhook failed",
                extra={"extra": {"transaction_id": body["transactionId"], "error": str(e)}},
            )
