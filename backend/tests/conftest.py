"""Pytest configuration and fixtures."""
import hashlib
import hmac
import itertools
import json
from datetime import datetime
from typing import Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from app.config import settings
from app.database import Base, get_db, get_session_factory
from app.models.enums import TransactionStatus, TransactionType
from app.models.payment_transaction import PaymentTransaction
from app.models.subscription import Subscription
from app.models.subscription_tier import SubscriptionTier
from app.models.user import User
from app.auth.security import create_access_token
from app.services.exceptions import GatewayError
from app.services.gateway import (
    GatewayCustomer, GatewayPlan, GatewayRefund, GatewaySubscription,
    GatewayTransfer, PaymentGateway, get_gateway,
)
from main import app

WEBHOOK_SECRET = "whsec_test"
KEY_SECRET = "key_secret_test"


class FakeGateway(PaymentGateway):
    """In-memory gateway; set `fail_with` to make lifecycle calls raise."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.calls = []
        self.fail_with: Optional[GatewayError] = None

    def _next(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    async def create_plan(self, name, amount, currency, billing_cycle, description=None):
        self.calls.append(("create_plan", name, amount, billing_cycle))
        return GatewayPlan(id=self._next("plan"))

    async def create_customer(self, name, email, phone=None):
        self.calls.append(("create_customer", email))
        return GatewayCustomer(id=self._next("cust"))

    async def create_subscription(self, plan_id, customer_id, total_count, notes=None):
        self.calls.append(("create_subscription", plan_id, customer_id, total_count))
        return GatewaySubscription(id=self._next("sub"), status="created")

    async def cancel_subscription(self, subscription_id, at_cycle_end):
        self._maybe_fail()
        self.calls.append(("cancel_subscription", subscription_id, at_cycle_end))
        return GatewaySubscription(id=subscription_id, status="cancelled")

    async def pause_subscription(self, subscription_id):
        self._maybe_fail()
        self.calls.append(("pause_subscription", subscription_id))
        return GatewaySubscription(id=subscription_id, status="paused")

    async def resume_subscription(self, subscription_id):
        self._maybe_fail()
        self.calls.append(("resume_subscription", subscription_id))
        return GatewaySubscription(id=subscription_id, status="active")

    async def retry_payment(self, subscription_id):
        self._maybe_fail()
        self.calls.append(("retry_payment", subscription_id))
        return GatewaySubscription(id=subscription_id, status="pending")

    async def refund_payment(self, payment_id, amount, notes=None):
        self._maybe_fail()
        self.calls.append(("refund_payment", payment_id, amount))
        return GatewayRefund(id=self._next("rfnd"), amount=amount, status="processed")

    async def create_transfer(self, account_id, amount, currency, reference):
        self._maybe_fail()
        self.calls.append(("create_transfer", account_id, amount, reference))
        return GatewayTransfer(id=self._next("trf"), amount=amount, status="processed")

    def called(self, name: str) -> list:
        return [c for c in self.calls if c[0] == name]


@pytest.fixture(autouse=True)
def billing_settings(monkeypatch):
    """Deterministic secrets and rules for every test."""
    monkeypatch.setattr(settings, "RAZORPAY_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "RAZORPAY_KEY_SECRET", KEY_SECRET)
    monkeypatch.setattr(settings, "RAZORPAY_KEY_ID", "rzp_test_key")
    monkeypatch.setattr(settings, "RESEND_API_KEY", "")
    monkeypatch.setattr(settings, "MAX_PAYMENT_RETRIES", 3)
    monkeypatch.setattr(settings, "GRACE_PERIOD_DAYS", 7)
    monkeypatch.setattr(settings, "PLATFORM_COMMISSION_RATE", 0.20)
    monkeypatch.setattr(settings, "WEBHOOK_MAX_ATTEMPTS", 5)


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so several sessions can run concurrently."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        echo=False,
        poolclass=NullPool,
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
async def client(session_factory, gateway):
    """HTTP client with the database, session factory and gateway overridden."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _add(db, obj):
    db.add(obj)
    await db.commit()
    await db.refresh(obj)
    return obj


@pytest.fixture
async def trader(test_db):
    """Create a trader."""
    return await _add(test_db, User(
        name="Trader One",
        email="trader@example.com",
        phone_number="+919800000001",
        status="active",
        user_type="trader",
    ))


@pytest.fixture
async def analyst(test_db):
    """Create an analyst with a linked payout account."""
    return await _add(test_db, User(
        name="Analyst One",
        email="analyst@example.com",
        status="active",
        user_type="analyst",
        razorpay_account_id="acc_analyst_1",
    ))


@pytest.fixture
async def admin(test_db):
    return await _add(test_db, User(
        name="Admin",
        email="admin@example.com",
        status="active",
        user_type="admin",
    ))


@pytest.fixture
async def tier(test_db, analyst):
    """Monthly tier priced at 999.00 INR."""
    return await _add(test_db, SubscriptionTier(
        analyst_id=analyst.uuid,
        name="Pro",
        description="Daily calls",
        price=99900,
        billing_cycle="monthly",
        features={"calls": "daily"},
        is_active=True,
    ))


def token_for(user: User) -> str:
    return create_access_token(data={"sub": user.uuid, "email": user.email, "role": user.user_type})


def auth_header(user: User) -> dict:
    return {"Authorization": f"Bearer {token_for(user)}"}


async def make_subscription(
    db,
    trader: User,
    tier: SubscriptionTier,
    status: str = "pending_payment",
    gateway_id: str = "sub_test_1",
    **fields,
) -> Subscription:
    """Insert a subscription directly, bypassing checkout."""
    values = dict(
        trader_id=trader.uuid,
        analyst_id=tier.analyst_id,
        tier_id=tier.uuid,
        status=status,
        billing_cycle=tier.billing_cycle,
        price_paid=tier.price,
        discount_applied=0,
        final_price=tier.price,
        razorpay_subscription_id=gateway_id,
    )
    values.update(fields)
    return await _add(db, Subscription(**values))


async def make_payment(
    db,
    subscription: Subscription,
    gateway_payment_id: str,
    amount: Optional[int] = None,
    transaction_type: str = TransactionType.SUBSCRIPTION_PAYMENT.value,
    status: str = TransactionStatus.CAPTURED.value,
    created_at: Optional[datetime] = None,
) -> PaymentTransaction:
    """Insert a ledger row directly."""
    tx = PaymentTransaction(
        subscription_id=subscription.uuid,
        trader_id=subscription.trader_id,
        analyst_id=subscription.analyst_id,
        gateway_payment_id=gateway_payment_id,
        transaction_type=transaction_type,
        amount=subscription.final_price if amount is None else amount,
        currency="INR",
        status=status,
    )
    if created_at is not None:
        tx.created_at = created_at
    return await _add(db, tx)


def charge_payload(gateway_subscription_id: str, payment_id: Optional[str], amount: int = 99900,
                   created_at: Optional[datetime] = None) -> dict:
    """Payload of a subscription.activated / subscription.charged webhook."""
    payload = {"subscription": {"entity": {"id": gateway_subscription_id, "status": "active"}}}
    if payment_id:
        payment = {"id": payment_id, "amount": amount, "currency": "INR", "status": "captured", "method": "upi"}
        if created_at is not None:
            payment["created_at"] = int((created_at - datetime(1970, 1, 1)).total_seconds())
        payload["payment"] = {"entity": payment}
    return payload


def failed_payload(gateway_subscription_id: Optional[str], payment_id: str, amount: int = 99900,
                   created_at: Optional[datetime] = None) -> dict:
    payment = {
        "id": payment_id,
        "amount": amount,
        "currency": "INR",
        "status": "failed",
        "error_code": "BAD_REQUEST_ERROR",
        "error_description": "Card declined",
        "notes": {"subscription_id": gateway_subscription_id} if gateway_subscription_id else [],
    }
    if created_at is not None:
        payment["created_at"] = int((created_at - datetime(1970, 1, 1)).total_seconds())
    return {"payment": {"entity": payment}}


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def webhook_body(event: str, payload: dict) -> bytes:
    return json.dumps({"entity": "event", "event": event, "payload": payload}).encode()
