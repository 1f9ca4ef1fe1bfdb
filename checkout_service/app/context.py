"""The three ways into checkout, as explicit values instead of ambient flags."""

from dataclasses import dataclass
from typing import List, Union

from .schemas import CartLine, RetrySnapshot


@dataclass
class FreshCart:
    lines: List[CartLine]
    flow = "cart"


@dataclass
class BuyNow:
    item: CartLine
    flow = "buy_now"

    @property
    def lines(self) -> List[CartLine]:
        return [self.item]


@dataclass
class Retry:
    snapshot: RetrySnapshot
    flow = "retry"

    @property
    def lines(self) -> List[CartLine]:
        return list(self.snapshot.lines)

    @property
    def original_order_id(self) -> str:
        return self.snapshot.order_id


CheckoutContext = Union[FreshCart, BuyNow, Retry]
