"""Pytest configuration and fixtures."""

import hashlib
import hmac
import json
import os
import tempfile
from datetime import timedelta

# Point the app at a throwaway SQLite database before any billing module reads settings
_TEST_DIR = tempfile.mkdtemp(prefix="billing-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/billing.db"
os.environ["DEBUG"] = "true"
os.environ["JWT_SECRET"] = "test-only-jwt-secret"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "test-key-secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["RAZORPAY_MONTHLY_PLAN_ID"] = "plan_monthly"
os.environ["RAZORPAY_YEARLY_PLAN_ID"] = "plan_yearly"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from billing.app import app  # noqa: E402
from billing.db.session import async_session_factory, engine  # noqa: E402
from billing.lifecycle import DEFAULT_POLICY, new_subscription_fields  # noqa: E402
from billing.models import Base, Subscription  # noqa: E402
from billing.services.auth_service import create_jwt  # noqa: E402
from billing.services.gateway_client import (  # noqa: E402
    GatewayRejectedError,
    GatewaySubscriptionStatus,
    RazorpayGateway,
    get_gateway,
)
from billing.utils import now_utc  # noqa: E402

KEY_SECRET = "test-key-secret"
WEBHOOK_SECRET = "test-webhook-secret"
PACKAGE_ID = "com.gumbo.learning"


def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class FakeGateway(RazorpayGateway):
    """In-memory Razorpay double. Signature checks use the real HMAC code."""

    def __init__(self):
        super().__init__("rzp_test_key", KEY_SECRET, WEBHOOK_SECRET, timeout=1)
        self.orders: dict[str, dict] = {}
        self.payments: dict[str, dict] = {}
        self.subscriptions: dict[str, dict] = {}
        self.cancelled: list[tuple[str, bool]] = []
        self.fail_with: Exception | None = None
        self.status_error: Exception | None = None
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq:06d}"

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def create_order(self, amount, currency, receipt, notes):
        self._maybe_fail()
        order_id = self._next("order")
        self.orders[order_id] = {"id": order_id, "amount": amount, "currency": currency, "notes": notes}
        return self.orders[order_id]

    async def fetch_payment(self, payment_id):
        self._maybe_fail()
        if payment_id not in self.payments:
            raise GatewayRejectedError(f"unknown payment {payment_id}")
        return self.payments[payment_id]

    async def create_customer(self, name, email, contact, notes):
        self._maybe_fail()
        return {"id": self._next("cust"), "name": name}

    async def create_recurring_subscription(self, plan_id, customer_id, total_count, notes):
        self._maybe_fail()
        gateway_subscription_id = self._next("sub")
        self.subscriptions[gateway_subscription_id] = {
            "id": gateway_subscription_id,
            "plan_id": plan_id,
            "status": "created",
            "paid_count": 0,
            "notes": notes,
        }
        return {"id": gateway_subscription_id, "short_url": f"https://rzp.io/i/{gateway_subscription_id}"}

    async def fetch_subscription_status(self, gateway_subscription_id):
        if self.status_error is not None:
            raise self.status_error
        data = self.subscriptions[gateway_subscription_id]
        return GatewaySubscriptionStatus(
            gateway_subscription_id=gateway_subscription_id,
            status=data["status"],
            paid_count=data.get("paid_count"),
            raw=data,
        )

    async def cancel_subscription(self, gateway_subscription_id, at_cycle_end):
        self._maybe_fail()
        self.cancelled.append((gateway_subscription_id, at_cycle_end))
        return {"id": gateway_subscription_id, "status": "cancelled"}

    # --- helpers for driving checkouts in tests ---

    def pay_order(self, order_id: str, status: str = "captured") -> tuple[str, str]:
        """Record a payment for an order and return (payment_id, client signature)."""
        payment_id = self._next("pay")
        self.payments[payment_id] = {"id": payment_id, "order_id": order_id, "status": status}
        return payment_id, sign(KEY_SECRET, f"{order_id}|{payment_id}".encode())

    def pay_subscription(self, gateway_subscription_id: str) -> tuple[str, str]:
        payment_id = self._next("pay")
        data = self.subscriptions[gateway_subscription_id]
        data["status"] = "active"
        data["paid_count"] = data.get("paid_count", 0) + 1
        return payment_id, sign(KEY_SECRET, f"{payment_id}|{gateway_subscription_id}".encode())


@pytest_asyncio.fixture
async def db():
    """Fresh schema per test, plus a session on it."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    async with async_session_factory() as session:
        yield session
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def client(db, gateway):
    app.dependency_overrides[get_gateway] = lambda: gateway
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def user_headers():
    return {"Authorization": f"Bearer {create_jwt('user-1')}", "X-Package-ID": PACKAGE_ID}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_jwt('ops-1', role='admin')}"}


async def make_subscription(
    db,
    *,
    user_id: str = "user-1",
    plan: str = "monthly",
    billing_mode: str = "recurring",
    status: str = "active",
    days_left: float = 20,
    gateway_subscription_id: str | None = None,
    **overrides,
) -> Subscription:
    """Insert a row directly, already in the requested state."""
    now = now_utc()
    fields = new_subscription_fields(
        user_id=user_id,
        package_id=PACKAGE_ID,
        plan=plan,
        billing_mode=billing_mode,
        amount=11700,
        currency="INR",
        now=now,
        policy=DEFAULT_POLICY,
        gateway_subscription_id=gateway_subscription_id,
    )
    end = now + timedelta(days=days_left)
    fields.update(
        status=status,
        start_date=end - DEFAULT_POLICY.period(plan),
        end_date=end,
        next_billing_date=end if billing_mode == "recurring" else None,
        paid_count=1 if status != "pending" else 0,
        failed_payment_count=0,
        version=1,
    )
    fields.update(overrides)
    sub = Subscription(**fields)
    db.add(sub)
    await db.commit()
    return sub


def webhook_body(event: str, **entities) -> bytes:
    """Build a Razorpay webhook envelope, e.g. webhook_body("subscription.charged", subscription={...})."""
    payload = {name: {"entity": entity} for name, entity in entities.items()}
    return json.dumps({"entity": "event", "event": event, "payload": payload}).encode()


def webhook_headers(body: bytes, event_id: str | None = None) -> dict[str, str]:
    headers = {"Content-Type": "application/json", "X-Razorpay-Signature": sign(WEBHOOK_SECRET, body)}
    if event_id:
        headers["X-Razorpay-Event-Id"] = event_id
    return headers
