"""Wallet allocation: how much of the payable amount the stored-value wallet covers.

Allocation only reads the balance. Nothing is reserved; the debit happens in
settlement, which re-checks the balance atomically.
"""

from dataclasses import dataclass
from decimal import Decimal

from .errors import WalletOverrideError
from .models import Wallet
from .pricing import ZERO, format_inr, to_money


@dataclass(frozen=True)
class WalletAllocation:
    wallet_amount: Decimal
    remainder: Decimal

    @property
    def uses_wallet(self) -> bool:
        return self.wallet_amount > 0

    @property
    def fully_covered(self) -> bool:
        return self.remainder == 0


def no_wallet(final_total) -> WalletAllocation:
    return WalletAllocation(ZERO, to_money(final_total))


def wallet_ceiling(balance, final_total) -> Decimal:
    return max(ZERO, min(to_money(balance), to_money(final_total)))


def allocate(balance, final_total, requested=None) -> WalletAllocation:
    """Split ``final_total`` between the wallet and the gateway.

    With no ``requested`` amount the wallet covers as much as it can.
    A requested amount must satisfy ``0 < requested <= min(balance, final_total)``.
    """
    balance = to_money(balance)
    final_total = to_money(final_total)

    if requested is None:
        wallet_amount = wallet_ceiling(balance, final_total)
    else:
        wallet_amount = to_money(requested)
        if wallet_amount <= 0:
            raise WalletOverrideError("Wallet amount must be greater than ₹0")
        if wallet_amount > balance:
            raise WalletOverrideError(f"Wallet amount exceeds wallet balance of {format_inr(balance)}")
        if wallet_amount > final_total:
            raise WalletOverrideError(f"Wallet amount exceeds payable amount of {format_inr(final_total)}")

    return WalletAllocation(wallet_amount, max(ZERO, final_total - wallet_amount))


class WalletBalanceService:
    """Read-only wallet balance lookup."""
    def get_balance(self, user_id) -> Decimal:
        raise NotImplementedError


class SqlWalletService(WalletBalanceService):
    """Reads balances from the ``wallets`` table; a missing row is an empty wallet."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get_balance(self, user_id) -> Decimal:
        db = self.session_factory()
        try:
            wallet = db.query(Wallet).filter(Wallet.user_id == user_id).first()
            return to_money(wallet.balance) if wallet else ZERO
        finally:
            db.close()
