import json
import os
from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal
from types import SimpleNamespace

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_feebook.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import feebook.auth
from feebook.cache import TTLCache, get_dashboard_cache
from feebook.database import Base, get_db
from feebook.errors import GatewayUnavailableError, InconsistentStateError, ValidationError
from feebook.main import app as fastapi_app
from feebook.models import Consumer, FeePlan, FeePlanStatus, Member, OrderStatus, Provider
from feebook.stripe_service import GatewayOrder, GatewayPayment, WebhookEvent, get_gateway

SQLALCHEMY_DATABASE_URL = os.environ["DATABASE_URL"]
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

YESTERDAY = date.today() - timedelta(days=1)
NEXT_WEEK = date.today() + timedelta(days=7)


class FakeGateway:
    """In-memory payment gateway whose orders and payments tests script directly."""

    def __init__(self):
        self.orders = {}
        self.created = []
        self.terminated = []
        self.fetch_calls = 0
        self.unavailable = False
        self._seq = 0

    def create_order(self, order_id, amount, currency, description, customer, tags):
        if self.unavailable:
            raise GatewayUnavailableError(order_id=order_id)
        self._seq += 1
        external_id = f"cs_test_{self._seq}"
        self.orders[external_id] = GatewayOrder(
            external_order_id=external_id,
            state=OrderStatus.ACTIVE,
            amount=amount,
            currency=currency.upper(),
            order_reference=order_id,
            payment_session_id=f"session_{self._seq}",
            checkout_url=f"https://checkout.test/{external_id}",
            tags=dict(tags),
        )
        self.created.append({"order_id": order_id, "amount": amount, "customer": customer})
        return self.orders[external_id]

    def fetch_order(self, external_order_id):
        self.fetch_calls += 1
        if self.unavailable:
            raise GatewayUnavailableError(external_order_id=external_order_id)
        if external_order_id not in self.orders:
            raise InconsistentStateError(external_order_id=external_order_id)
        order = self.orders[external_order_id]
        return replace(order, payments=list(order.payments))

    def terminate_order(self, external_order_id):
        self.terminated.append(external_order_id)
        self.set_state(external_order_id, OrderStatus.EXPIRED)

    def parse_webhook(self, payload, signature):
        if signature != "valid-signature":
            raise ValidationError("Invalid signature")
        body = json.loads(payload)
        return WebhookEvent(
            type=body["type"],
            order_reference=body.get("order_id"),
            external_order_id=body.get("external_order_id"),
        )

    def set_state(self, external_order_id, state):
        self.orders[external_order_id].state = state

    def report_payment(self, external_order_id, payment_id, status, amount=Decimal("500.00"), **extra):
        payments = self.orders[external_order_id].payments
        payment = GatewayPayment(
            external_payment_id=payment_id,
            status=status,
            amount=amount,
            currency="INR",
            **extra,
        )
        for i, existing in enumerate(payments):
            if payment_id is not None and existing.external_payment_id == payment_id:
                payments[i] = payment
                return payment
        payments.append(payment)
        return payment


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def dashboard_cache():
    return TTLCache()


def override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(gateway, dashboard_cache):
    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_gateway] = lambda: gateway
    fastapi_app.dependency_overrides[get_dashboard_cache] = lambda: dashboard_cache
    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[feebook.auth.verify_token] = lambda: {
        "sub": "tester", "role": "moderator"}

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def seed(db):
    """One provider with one claimed member owing 500.00, due yesterday."""
    provider = Provider(name="Sunrise Academy", code="SUN01", email="desk@sunrise.test",
                        phone="9800000001", wallet_balance=Decimal("0.00"))
    consumer = Consumer(first_name="Asha", last_name="Rao", phone="9800000002",
                        email="asha@example.test")
    db.add_all([provider, consumer])
    db.flush()
    member = Member(provider_id=provider.id, consumer_id=consumer.id, unique_id="SUN-001",
                    first_name="Kiran", last_name="Rao", phone="9800000003")
    db.add(member)
    db.flush()
    fee_plan = FeePlan(member_id=member.id, provider_id=provider.id, name="Term 1 tuition",
                       amount=Decimal("500.00"), due_date=YESTERDAY,
                       status=FeePlanStatus.OVERDUE)
    db.add(fee_plan)
    db.commit()
    return SimpleNamespace(
        provider_id=provider.id,
        consumer_id=consumer.id,
        member_id=member.id,
        fee_plan_id=fee_plan.id,
    )


@pytest.fixture
def make_fee_plan(db, seed):
    def factory(**overrides):
        values = {
            "member_id": seed.member_id,
            "provider_id": seed.provider_id,
            "name": "Term 2 tuition",
            "amount": Decimal("750.00"),
            "due_date": NEXT_WEEK,
            "status": FeePlanStatus.DUE,
        }
        values.update(overrides)
        fee_plan = FeePlan(**values)
        db.add(fee_plan)
        db.commit()
        return fee_plan.id

    return factory


def fresh(db, model, ident):
    """Reload a row, discarding anything cached in the session."""
    return db.get(model, ident, populate_existing=True)
