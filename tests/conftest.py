"""Shared fixtures: a file-backed SQLite database per test and a wired container."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite+aiosqlite:///./shopcore-test.db")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = ""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from shopcore.common import clock
from shopcore.common.db import Base, build_engine, build_session_factory
from shopcore.services.orders.main import build_container
from shopcore.services.orders.schemas import Cart, CartItem
from shopcore.services.orders.service import Caller
from shopcore.services.payments.gateways.fake import FakeGateway
from shopcore.services.webhooks.carriers import CarrierWebhookSource

CUSTOMER = Caller(customer_id="cust-1")
SYSTEM = Caller.system()


class RecordingSink:
    """Notification sink that keeps everything it is handed."""

    def __init__(self) -> None:
        self.published = []
        self.fail = False

    async def publish(self, topic, event) -> None:
        if self.fail:
            raise RuntimeError("sink down")
        self.published.append((topic, event))

    async def close(self) -> None:
        pass

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.published]


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def frozen_clock(monkeypatch):
    frozen = FrozenClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    monkeypatch.setattr(clock, "utcnow", frozen)
    return frozen


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'shopcore.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def gateway():
    return FakeGateway(hang_seconds=5)


@pytest.fixture
def carrier():
    return CarrierWebhookSource("carrier", "carrier-secret")


@pytest.fixture
def container(session_factory, sink, gateway, carrier):
    container = build_container(session_factory, sink, gateways=[gateway], carriers=[carrier])
    container.payments.timeout_seconds = 0.2
    container.payments.retry_backoff_seconds = 0
    return container


@pytest.fixture
def stock(container):
    async def receive(sku: str, quantity: int, location: str = "main", threshold: int | None = None):
        return await container.ledger.receive_stock(sku, location, quantity, low_stock_threshold=threshold)

    return receive


def make_cart(*lines, currency: str = "USD", shipping: str = "0", discount: str = "0", customer_id=None) -> Cart:
    """Build a cart from `(sku, quantity, unit_price)` tuples."""

    lines = lines or (("SKU-1", 1, "10.00"),)
    return Cart(
        customer_id=customer_id,
        email="buyer@example.com",
        currency=currency,
        shipping=Decimal(shipping),
        discount=Decimal(discount),
        items=[
            CartItem(product_id=f"prod-{sku}", sku=sku, title=sku.title(), quantity=qty, unit_price=Decimal(price))
            for sku, qty, price in lines
        ],
    )


@pytest.fixture
def checkout(container, stock):
    """Stock the cart's SKUs, then create and place the order."""

    async def run(*lines, caller: Caller = CUSTOMER, stock_each: int | None = 10, **cart_kwargs):
        cart = make_cart(*lines, **cart_kwargs)
        if stock_each:
            for item in cart.items:
                await stock(item.sku, stock_each)
        return await container.orders.create_order(cart, caller)

    return run
