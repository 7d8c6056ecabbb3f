"""Razorpay gateway client — orders, recurring subscriptions, signatures.

The SDK is synchronous, so every call runs in a worker thread under
``asyncio.wait_for``. SDK and transport errors are translated into three
exceptions callers can branch on: timeouts and 5xx/connection problems are
retryable, 4xx rejections are not.
"""

import asyncio
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, UTC
from functools import lru_cache
from typing import Any, Callable

from billing.config import get_settings

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Base class for payment gateway failures."""


class GatewayUnavailableError(GatewayError):
    """Gateway could not be reached or answered with a server error. Safe to retry."""


class GatewayTimeoutError(GatewayUnavailableError):
    """No answer within the configured timeout; the call may or may not have happened."""


class GatewayRejectedError(GatewayError):
    """Gateway refused the request (bad request, unknown id, already cancelled)."""


@dataclass(frozen=True)
class GatewaySubscriptionStatus:
    gateway_subscription_id: str
    status: str
    paid_count: int | None = None
    current_end: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _matches(secret: str, message: bytes, signature: str | None) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(_hmac_hex(secret, message), signature)


class RazorpayGateway:
    def __init__(self, key_id: str, key_secret: str, webhook_secret: str, timeout: float):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self._client = None

    def _sdk(self):
        if self._client is None:
            import razorpay

            self._client = razorpay.Client(auth=(self.key_id, self.key_secret))
        return self._client

    @staticmethod
    def _translate(label: str, exc: Exception) -> GatewayError:
        from razorpay.errors import BadRequestError

        if isinstance(exc, BadRequestError):
            return GatewayRejectedError(f"{label} rejected by gateway: {exc}")
        return GatewayUnavailableError(f"{label} failed: {exc}")

    async def _call(self, label: str, fn: Callable, *args) -> dict:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Gateway call {label} timed out after {self.timeout}s")
            raise GatewayTimeoutError(f"{label} timed out") from e
        except Exception as e:
            error = self._translate(label, e)
            logger.warning(str(error))
            raise error from e

    # --- Orders (one-time payments) ---

    async def create_order(self, amount: int, currency: str, receipt: str, notes: dict[str, str]) -> dict:
        return await self._call(
            "create_order",
            self._sdk().order.create,
            {"amount": amount, "currency": currency, "receipt": receipt, "payment_capture": 1, "notes": notes},
        )

    async def fetch_payment(self, payment_id: str) -> dict:
        return await self._call("fetch_payment", self._sdk().payment.fetch, payment_id)

    # --- Recurring subscriptions ---

    async def create_customer(self, name: str, email: str, contact: str | None, notes: dict[str, str]) -> dict:
        data = {"name": name, "email": email, "fail_existing": "0", "notes": notes}
        if contact:
            data["contact"] = contact
        return await self._call("create_customer", self._sdk().customer.create, data)

    async def create_recurring_subscription(
        self, plan_id: str, customer_id: str, total_count: int, notes: dict[str, str]
    ) -> dict:
        return await self._call(
            "create_subscription",
            self._sdk().subscription.create,
            {
                "plan_id": plan_id,
                "customer_id": customer_id,
                "total_count": total_count,
                "customer_notify": 1,
                "notes": notes,
            },
        )

    async def fetch_subscription_status(self, gateway_subscription_id: str) -> GatewaySubscriptionStatus:
        data = await self._call("fetch_subscription", self._sdk().subscription.fetch, gateway_subscription_id)
        current_end = data.get("current_end")
        return GatewaySubscriptionStatus(
            gateway_subscription_id=gateway_subscription_id,
            status=str(data.get("status") or ""),
            paid_count=data.get("paid_count"),
            current_end=datetime.fromtimestamp(current_end, tz=UTC) if current_end else None,
            raw=data,
        )

    async def cancel_subscription(self, gateway_subscription_id: str, at_cycle_end: bool) -> dict:
        return await self._call(
            "cancel_subscription",
            self._sdk().subscription.cancel,
            gateway_subscription_id,
            {"cancel_at_cycle_end": 1 if at_cycle_end else 0},
        )

    # --- Signatures ---

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str | None) -> bool:
        return _matches(self.key_secret, f"{order_id}|{payment_id}".encode(), signature)

    def verify_subscription_signature(self, payment_id: str, gateway_subscription_id: str, signature: str | None) -> bool:
        return _matches(self.key_secret, f"{payment_id}|{gateway_subscription_id}".encode(), signature)

    def verify_webhook_signature(self, body: bytes, signature: str | None) -> bool:
        """HMAC-SHA256 over the raw request body, compared in constant time."""
        return _matches(self.webhook_secret, body, signature)


@lru_cache
def get_gateway() -> RazorpayGateway:
    """FastAPI dependency returning the process-wide gateway client."""
    settings = get_settings()
    return RazorpayGateway(
        key_id=settings.razorpay_key_id,
        key_secret=settings.razorpay_key_secret,
        webhook_secret=settings.razorpay_webhook_secret,
        timeout=settings.gateway_timeout_seconds,
    )
