#!/usr/bin/env python3
"""
Checkout service - E2E checks against a running instance.

Run:
  python tests/checkout_e2e.py

Optional env:
  CHECKOUT_BASE=http://localhost:8000
  E2E_USER=e2e-user
  COUPON_CODE=        (a coupon seeded in the target database)
  DEBUG=1
"""

import os
import sys
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests


# =========================
# Simple CLI UI (ANSI)
# =========================

class Style:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


def section_title(text: str):
    print(f"\n{Style.BLUE}{Style.BOLD}== {text} =={Style.RESET}")


def info(msg: str):
    print(f"{Style.CYAN}ℹ {msg}{Style.RESET}")


def warn(msg: str):
    print(f"{Style.YELLOW}⚠ {msg}{Style.RESET}")


def ok(msg: str):
    print(f"{Style.GREEN}✔ {msg}{Style.RESET}")


def fail(msg: str):
    print(f"{Style.RED}✘ {msg}{Style.RESET}")


# =========================
# Config
# =========================

CHECKOUT_BASE = os.getenv("CHECKOUT_BASE", "http://localhost:8000")
E2E_USER = os.getenv("E2E_USER", "e2e-user")
COUPON_CODE = os.getenv("COUPON_CODE", "")
DEBUG = os.getenv("DEBUG", "0").strip() in {"1", "true", "True", "YES", "yes"}

HEADERS = {"X-User-Id": E2E_USER}

CART = [{"product_id": "e2e-p1", "name": "E2E Product", "unit_price": "500.00", "quantity": 2}]
ADDRESS = {
    "full_name": "E2E Shopper",
    "phone": "9000000000",
    "address": "1 Test Street",
    "city": "Pune",
    "state": "Maharashtra",
    "postal_code": "411001",
}


def debug(msg: str):
    if DEBUG:
        print(f"{Style.GRAY}… {msg}{Style.RESET}")


@dataclass
class CheckResult:
    name: str
    success: bool
    details: str = ""


# =========================
# HTTP helpers
# =========================

def http(method: str, path: str, **kwargs) -> requests.Response:
    kwargs.setdefault("timeout", 8)
    kwargs.setdefault("headers", HEADERS)
    url = CHECKOUT_BASE + path
    debug(f"{method} {url} json={kwargs.get('json')}")
    return requests.request(method, url, **kwargs)


def wait_for_health(timeout: int = 30) -> bool:
    start = time.time()
    while time.time() - start < timeout:
        try:
            if http("GET", "/health").status_code == 200:
                ok("checkout service is healthy.")
                return True
        except requests.exceptions.RequestException as e:
            debug(f"not ready: {e}")
        time.sleep(1)
    fail(f"checkout service did not become healthy in {timeout} seconds.")
    return False


def start_checkout(**body) -> Dict[str, Any]:
    body.setdefault("lines", CART)
    resp = http("POST", "/api/v1/checkouts", json=body)
    resp.raise_for_status()
    return resp.json()


def submit(checkout_id: str) -> requests.Response:
    return http("POST", f"/api/v1/checkouts/{checkout_id}/submit")


# =========================
# Checks
# =========================

def check_address_gate() -> CheckResult:
    section_title("Submit without address")
    checkout = start_checkout()
    resp = submit(checkout["checkout_id"])
    success = resp.status_code == 422 and resp.json().get("error") == "address_required"
    (ok if success else fail)(f"HTTP {resp.status_code}: {resp.text}")
    return CheckResult("Address required before submit", success, resp.text)


def check_gateway_handoff() -> (CheckResult, Optional[str]):
    section_title("Cart checkout to gateway")
    checkout = start_checkout(address=ADDRESS)
    cid = checkout["checkout_id"]
    info(f"Quote: total={checkout['final_total']} lucky={checkout['lucky_discount']}")

    if COUPON_CODE:
        resp = http("PUT", f"/api/v1/checkouts/{cid}/coupon", json={"code": COUPON_CODE})
        info(f"Coupon {COUPON_CODE}: HTTP {resp.status_code}")

    resp = submit(cid)
    if resp.status_code != 200:
        fail(f"Submit failed: {resp.text}")
        return CheckResult("Gateway handoff", False, resp.text), None

    outcome = resp.json()
    success = outcome["status"] in {"awaiting_gateway_confirmation", "completed"}
    if outcome.get("gateway_url"):
        info(f"Deep link: {outcome['gateway_url']}")
    (ok if success else fail)(f"Order {outcome['display_order_id']} -> {outcome['status']}")
    return CheckResult("Gateway handoff", success, f"order_id={outcome['order_id']}"), outcome["order_id"]


def check_double_submit() -> CheckResult:
    section_title("Double submit")
    cid = start_checkout(address=ADDRESS)["checkout_id"]
    first = submit(cid).json()
    second = submit(cid).json()
    success = first.get("order_id") is not None and first.get("order_id") == second.get("order_id")
    (ok if success else fail)(f"first={first.get('order_id')} second={second.get('order_id')}")
    return CheckResult("Double submit creates one order", success)


def check_retry(order_id: Optional[str]) -> CheckResult:
    section_title("Payment retry")
    if not order_id:
        warn("No order from the gateway check; skipping.")
        return CheckResult("Retry reuses order", False, "no order to retry")

    retry = start_checkout(flow="retry", order_id=order_id, lines=[])
    info(f"Retry note: {retry.get('lucky_note')}")
    outcome = submit(retry["checkout_id"]).json()
    success = outcome.get("order_id") == order_id and outcome.get("reused_order") is True
    (ok if success else fail)(f"retry outcome={outcome}")
    return CheckResult("Retry reuses order", success)


def check_order_readback(order_id: Optional[str]) -> CheckResult:
    section_title("Order read-back")
    if not order_id:
        return CheckResult("Order read-back", False, "no order")
    resp = http("GET", f"/api/v1/orders/{order_id}")
    success = resp.status_code == 200 and len(resp.json().get("transactions", [])) >= 1
    (ok if success else fail)(f"HTTP {resp.status_code}")
    return CheckResult("Order read-back", success)


# =========================
# Summary
# =========================

def print_results(results: List[CheckResult]):
    print(f"\n{Style.BOLD}================ E2E RESULTS ================ {Style.RESET}")
    passed = 0
    for r in results:
        color = Style.GREEN if r.success else Style.RED
        print(f"{color}{'PASS' if r.success else 'FAIL'} {r.name}{Style.RESET}")
        if r.details:
            print(f"    {Style.DIM}{r.details}{Style.RESET}")
        passed += r.success
    failed = len(results) - passed
    print(f"Total: {len(results)}  |  Passed: {Style.GREEN}{passed}{Style.RESET}  |  Failed: {Style.RED}{failed}{Style.RESET}")
    if failed:
        print(f"{Style.YELLOW}- Check logs: docker compose logs -f checkout_service rabbitmq{Style.RESET}")
    return failed


def main():
    if not wait_for_health():
        sys.exit(1)

    results = [check_address_gate()]
    handoff, order_id = check_gateway_handoff()
    results.append(handoff)
    results.append(check_double_submit())
    results.append(check_order_readback(order_id))
    results.append(check_retry(order_id))

    sys.exit(1 if print_results(results) else 0)


if __name__ == "__main__":
    main()
