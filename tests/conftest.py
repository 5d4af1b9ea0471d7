"""
Pytest configuration and fixtures.

The suite runs against in-memory SQLite and the in-memory job queue, with
test-mode settlement and zero synthetic delays.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TEST_MODE"] = "true"
os.environ["TEST_PROCESSING_DELAY"] = "0"
os.environ["REFUND_DELAY_MIN"] = "0"
os.environ["REFUND_DELAY_MAX"] = "0"
os.environ["LOG_LEVEL"] = "WARNING"

from typing import Any, Dict  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402

import config  # noqa: E402
from database import SessionLocal, engine  # noqa: E402
from models import Base, Order, Payment, Refund, utc_now  # noqa: E402
from queue_jobs import build_in_memory_queue, set_queue  # noqa: E402
from services import gen_unique_id, seed_test_merchant  # noqa: E402

MERCHANT_WEBHOOK_URL = "http://merchant.test/webhooks"


class ManualClock:
    """Clock for the in-memory queue that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def reset_schema() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


@pytest.fixture(autouse=True)
def schema():
    reset_schema()
    yield


@pytest.fixture
def reset_db():
    return reset_schema


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def job_queue(clock):
    queue = build_in_memory_queue(clock=clock)
    set_queue(queue)
    yield queue
    set_queue(None)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def merchant(db):
    merchant = seed_test_merchant(db)
    merchant.webhook_url = MERCHANT_WEBHOOK_URL
    db.commit()
    db.refresh(merchant)
    return merchant


@pytest.fixture
def make_order(db, merchant):
    def _make(amount: int = 50000, currency: str = "INR") -> Order:
        order = Order(
            id=gen_unique_id(db, Order, "order"),
            merchant_id=merchant.id,
            amount=amount,
            currency=currency,
            status="created",
        )
        db.add(order)
        db.commit()
        return order

    return _make


@pytest.fixture
def make_payment(db, merchant, make_order):
    def _make(amount: int = 50000, status: str = "pending", method: str = "upi") -> Payment:
        order = make_order(amount=amount)
        now = utc_now()
        payment = Payment(
            id=gen_unique_id(db, Payment, "pay"),
            order_id=order.id,
            merchant_id=merchant.id,
            amount=amount,
            currency="INR",
            method=method,
            status=status,
            vpa="user@okbank" if method == "upi" else None,
            card_network="visa" if method == "card" else None,
            card_last4="1111" if method == "card" else None,
            created_at=now,
            updated_at=now,
        )
        db.add(payment)
        db.commit()
        return payment

    return _make


@pytest.fixture
def make_refund(db, merchant):
    def _make(payment: Payment, amount: int, status: str = "pending") -> Refund:
        refund = Refund(
            id=gen_unique_id(db, Refund, "rfnd"),
            payment_id=payment.id,
            merchant_id=merchant.id,
            amount=amount,
            status=status,
            created_at=utc_now(),
        )
        db.add(refund)
        db.commit()
        return refund

    return _make


@pytest.fixture
def http_response():
    def _make(status_code: int = 200, text: str = "ok") -> Any:
        response = MagicMock()
        response.status_code = status_code
        response.text = text
        return response

    return _make


@pytest.fixture
def fast_retries(monkeypatch):
    monkeypatch.setattr(config, "WEBHOOK_RETRY_INTERVALS_TEST", True)


@pytest.fixture
def card_details():
    def _make(**overrides) -> Dict[str, str]:
        card = {
            "number": "4111111111111111",
            "expiry_month": "12",
            "expiry_year": "2099",
            "cvv": "123",
            "holder_name": "Test User",
        }
        card.update(overrides)
        return card

    return _make
