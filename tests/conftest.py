"""Pytest fixtures for paydesk tests."""

import hashlib
import hmac
import os
from datetime import datetime, timedelta
from decimal import Decimal

# Configuration is read at import time, so set it before importing the app
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_paydesk"
os.environ["PAYSTACK_PUBLIC_KEY"] = "pk_test_paydesk"
os.environ["CHECKOUT_RATE_LIMIT_PER_MIN"] = "10000"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from core.database import Base, get_db
from models.shop import Product, Order, OrderItem, OrderStatus, PaymentStatus
from models.booking import Booking, BookingStatus, Service
from models import payment_event  # noqa: F401
from utils import paystack
from utils.paystack import InitializedTransaction, VerifiedTransaction

SECRET = "sk_test_paydesk"


@pytest.fixture
def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite file per test."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'paydesk.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def client(session_factory):
    """TestClient whose requests use the per-test database."""
    from main import app

    def _override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


class FakeGateway:
    """Stands in for the Paystack HTTP API."""

    def __init__(self):
        self.initialized = []
        self.verified = []
        self.transactions = {}
        self.init_error = None
        self.verify_error = None

    async def initialize_transaction(self, email, amount, reference=None, callback_url=None, metadata=None, currency=None):
        if self.init_error:
            raise self.init_error
        ref = reference or "txn_generated"
        self.initialized.append({
            "email": email,
            "amount": amount,
            "reference": ref,
            "callback_url": callback_url,
            "metadata": metadata or {},
            "currency": currency,
        })
        return InitializedTransaction(
            authorization_url=f"https://checkout.paystack.com/{ref}",
            access_code=f"ac_{ref}",
            reference=ref,
        )

    async def verify_transaction(self, reference):
        self.verified.append(reference)
        if self.verify_error:
            raise self.verify_error
        return self.transactions[reference]

    def settle(self, reference, amount, status="success", currency="KES"):
        self.transactions[reference] = VerifiedTransaction(
            status=status,
            amount=amount,
            currency=currency,
            reference=reference,
            paid_at="2026-10-18T10:00:00.000Z" if status == "success" else None,
        )


@pytest.fixture
def gateway(monkeypatch):
    fake = FakeGateway()
    monkeypatch.setattr(paystack, "initialize_transaction", fake.initialize_transaction)
    monkeypatch.setattr(paystack, "verify_transaction", fake.verify_transaction)
    return fake


@pytest.fixture
def sign():
    """Compute the x-paystack-signature for a raw body."""
    def _sign(body: bytes, secret: str = SECRET) -> str:
        return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return _sign


@pytest.fixture
def make_product(db_session):
    def _make(name="Field Manual", price="1000.00", stock=10, is_digital=False):
        product = Product(name=name, price=Decimal(price), stock=stock, is_digital=is_digital)
        db_session.add(product)
        db_session.commit()
        db_session.refresh(product)
        return product
    return _make


@pytest.fixture
def make_order(db_session):
    def _make(order_number="ORD-1", total="1000.00", items=(), payment_intent=None,
              payment_status=PaymentStatus.PENDING):
        order = Order(
            order_number=order_number,
            customer_name="Wanjiru Kamau",
            customer_email="wanjiru@example.com",
            subtotal=Decimal(total),
            tax=Decimal("0"),
            shipping=Decimal("0"),
            total=Decimal(total),
            status=OrderStatus.PENDING,
            payment_status=payment_status,
            payment_intent=payment_intent,
            items=[
                OrderItem(product_id=product.id, quantity=qty, price=product.price)
                for product, qty in items
            ],
        )
        db_session.add(order)
        db_session.commit()
        db_session.refresh(order)
        return order
    return _make


@pytest.fixture
def service(db_session):
    svc = Service(name="Security Audit", duration=120, price=Decimal("1000.00"))
    db_session.add(svc)
    db_session.commit()
    db_session.refresh(svc)
    return svc


@pytest.fixture
def make_booking(db_session, service):
    def _make(booking_number="BK-1", price="1000.00", notes=None, payment_reference=None, paid=False):
        start = datetime(2026, 11, 2, 9, 0)
        booking = Booking(
            booking_number=booking_number,
            client_name="Otieno Ouma",
            client_email="otieno@example.com",
            client_phone="+254700000000",
            service_id=service.id,
            start_time=start,
            end_time=start + timedelta(minutes=service.duration),
            status=BookingStatus.CONFIRMED if paid else BookingStatus.PENDING,
            price=Decimal(price),
            paid=paid,
            payment_status=PaymentStatus.PAID if paid else PaymentStatus.PENDING,
            payment_reference=payment_reference,
            notes=notes,
        )
        db_session.add(booking)
        db_session.commit()
        db_session.refresh(booking)
        return booking
    return _make
