"""Webhook-related Pydantic schemas."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel


class GatewayEventKind(StrEnum):
    CHARGED = "charged"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    PAYMENT_FAILED = "payment_failed"


class GatewayEvent(BaseModel):
    """Canonical form of a gateway webhook, whatever envelope it arrived in."""

    event_name: str
    kind: GatewayEventKind | None = None
    gateway_subscription_id: str | None = None
    payment_id: str | None = None
    order_id: str | None = None
    amount: int | None = None
    currency: str | None = None
    paid_count: int | None = None
    status: str | None = None
    description: str | None = None
    notes: dict[str, Any] = {}

    @property
    def supported(self) -> bool:
        return self.kind is not None


class WebhookAck(BaseModel):
    accepted: bool
    status: str
    reason: str = ""


class WebhookEventOut(BaseModel):
    id: int
    provider: str
    event_id: str
    event_name: str
    kind: str | None
    status: str
    reason: str | None
    gateway_subscription_id: str | None
    payment_id: str | None
    order_id: str | None
    subscription_id: int | None
    attempts: int
    received_at: datetime
    processed_at: datetime | None

    model_config = {"from_attributes": True}
