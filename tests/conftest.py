"""Shared fixtures: an in-memory database and checkout collaborators around it."""

import os

# Settings are read at import time; keep the app module off the real database.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("EVENTS_ENABLED", "0")

from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from checkout_service.app.database import Base
from checkout_service.app.director import CheckoutServices
from checkout_service.app.discounts import DiscountResolver, SqlDiscountCatalog
from checkout_service.app.messaging.bus import EventPublisher
from checkout_service.app.models import Discount, Wallet
from checkout_service.app.notifier import VerificationNotifier
from checkout_service.app.orders import OrderWriter, SqlOrderStore
from checkout_service.app.schemas import CartLine, ShippingAddress
from checkout_service.app.settlement import SqlSettlementService
from checkout_service.app.wallet import SqlWalletService


class RecordingNotifier(VerificationNotifier):
    def __init__(self):
        super().__init__(url="")
        self.calls = []

    def notify(self, transaction_id, order_id, amount):
        self.calls.append((transaction_id, order_id, Decimal(amount)))


class RecordingEvents(EventPublisher):
    def __init__(self):
        super().__init__(enabled=False)
        self.events = []

    def publish(self, routing_key, message):
        self.events.append((routing_key, message))

    def keys(self):
        return [key for key, _ in self.events]


@pytest.fixture
def engine():
    """In-memory SQLite shared across threads and sessions."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(session_factory):
    return SqlOrderStore(session_factory)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def events():
    return RecordingEvents()


@pytest.fixture
def services(session_factory, store, notifier, events):
    return CheckoutServices(
        order_writer=OrderWriter(store),
        settlement=SqlSettlementService(session_factory),
        wallets=SqlWalletService(session_factory),
        discounts=DiscountResolver(SqlDiscountCatalog(session_factory)),
        notifier=notifier,
        events=events,
    )


@pytest.fixture
def address():
    return ShippingAddress(
        full_name="Asha Rao",
        phone="9876543210",
        address="12 MG Road",
        city="Bengaluru",
        state="Karnataka",
        postal_code="560001",
    )


@pytest.fixture
def make_line():
    def _make(product_id="p-1", unit_price="500.00", quantity=2, **kwargs):
        return CartLine(
            product_id=product_id,
            name=kwargs.pop("name", f"Product {product_id}"),
            unit_price=Decimal(unit_price),
            quantity=quantity,
            **kwargs,
        )

    return _make


@pytest.fixture
def seed_wallet(session_factory):
    def _seed(user_id, balance):
        session = session_factory()
        try:
            session.add(Wallet(user_id=user_id, balance=Decimal(balance)))
            session.commit()
        finally:
            session.close()

    return _seed


@pytest.fixture
def wallet_balance(session_factory):
    def _balance(user_id):
        return SqlWalletService(session_factory).get_balance(user_id)

    return _balance


@pytest.fixture
def seed_discount(session_factory):
    def _seed(code="save100", value="100", **kwargs):
        session = session_factory()
        try:
            session.add(
                Discount(
                    code=code,
                    name=kwargs.pop("name", code.upper()),
                    type=kwargs.pop("type", "fixed"),
                    value=Decimal(value),
                    usage_count=kwargs.pop("usage_count", 0),
                    **kwargs,
                )
            )
            session.commit()
        finally:
            session.close()

    return _seed
