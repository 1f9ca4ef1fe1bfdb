import random
from decimal import Decimal

import pytest

from checkout_service.app.errors import WalletOverrideError
from checkout_service.app.pricing import to_money
from checkout_service.app.wallet import SqlWalletService, allocate, no_wallet


def test_toggle_uses_as_much_wallet_as_possible():
    allocation = allocate(Decimal("500"), Decimal("899.58"))

    assert allocation.wallet_amount == Decimal("500.00")
    assert allocation.remainder == Decimal("399.58")
    assert not allocation.fully_covered


def test_full_coverage():
    allocation = allocate(Decimal("1000"), Decimal("899.58"))

    assert allocation.wallet_amount == Decimal("899.58")
    assert allocation.remainder == 0
    assert allocation.fully_covered


@pytest.mark.parametrize(
    "requested,message",
    [
        ("0", "Wallet amount must be greater than ₹0"),
        ("-5", "Wallet amount must be greater than ₹0"),
        ("1200", "Wallet amount exceeds wallet balance of ₹1,000"),
        ("1000000", "Wallet amount exceeds wallet balance of ₹1,000"),
        ("950", "Wallet amount exceeds payable amount of ₹899.58"),
    ],
)
def test_override_out_of_range_is_rejected(requested, message):
    with pytest.raises(WalletOverrideError) as exc:
        allocate(Decimal("1000"), Decimal("899.58"), Decimal(requested))

    assert exc.value.message == message


def test_override_within_range():
    allocation = allocate(Decimal("1000"), Decimal("899.58"), Decimal("250"))

    assert allocation.wallet_amount == Decimal("250.00")
    assert allocation.remainder == Decimal("649.58")


def test_allocation_always_adds_up():
    rng = random.Random(3)
    for _ in range(200):
        balance = to_money(rng.randint(0, 200000) / 100)
        total = to_money(rng.randint(0, 200000) / 100)
        allocation = allocate(balance, total)
        assert allocation.wallet_amount + allocation.remainder == total
        assert 0 <= allocation.wallet_amount <= min(balance, total)
        assert allocation.remainder >= 0


def test_no_wallet():
    allocation = no_wallet(Decimal("10"))

    assert not allocation.uses_wallet
    assert allocation.remainder == Decimal("10.00")


def test_missing_wallet_reads_as_empty(session_factory, seed_wallet):
    service = SqlWalletService(session_factory)
    seed_wallet("u-1", "250.50")

    assert service.get_balance("u-1") == Decimal("250.50")
    assert service.get_balance("nobody") == Decimal("0.00")
