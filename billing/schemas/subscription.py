"""Subscription-related Pydantic schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from billing.lifecycle import BillingMode, Plan


class CustomerProfile(BaseModel):
    name: str | None = Field(None, max_length=100)
    email: str | None = Field(None, max_length=255)
    contact: str | None = Field(None, max_length=20)


class CreateOrderRequest(CustomerProfile):
    plan: Plan
    billing_mode: BillingMode = BillingMode.ONE_TIME

    @model_validator(mode="after")
    def _trial_is_one_time(self) -> "CreateOrderRequest":
        if self.plan is Plan.TRIAL and self.billing_mode is BillingMode.RECURRING:
            raise ValueError("Trial subscriptions are one-time payments")
        return self


class ConvertTrialRequest(CustomerProfile):
    billing_mode: BillingMode = BillingMode.RECURRING


class VerifyPaymentRequest(BaseModel):
    payment_id: str = Field(..., min_length=1, max_length=64)
    signature: str = Field(..., min_length=1, max_length=256)
    order_id: str | None = Field(None, max_length=64)
    gateway_subscription_id: str | None = Field(None, max_length=64)

    @model_validator(mode="after")
    def _one_reference(self) -> "VerifyPaymentRequest":
        if bool(self.order_id) == bool(self.gateway_subscription_id):
            raise ValueError("Provide exactly one of order_id or gateway_subscription_id")
        return self


class CancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=255)


class ExtendRequest(BaseModel):
    days: int = Field(..., ge=1, le=3650)


class PlanOut(BaseModel):
    plan: Plan
    amount: int
    currency: str
    duration_days: int
    billing_modes: list[BillingMode]


class SubscriptionOut(BaseModel):
    id: int
    user_id: str
    package_id: str
    plan: str
    billing_mode: str
    status: str
    amount: int
    currency: str
    start_date: datetime
    end_date: datetime
    next_billing_date: datetime | None
    auto_renew: bool
    failed_payment_count: int
    paid_count: int
    is_trial_subscription: bool
    gateway_subscription_id: str | None
    order_id: str | None
    cancelled_at: datetime | None
    cancel_reason: str | None
    expiry_reason: str | None
    converted_from_id: int | None
    created_at: datetime

    model_config = {"from_attributes": True}


class OutcomeOut(BaseModel):
    kind: str
    reason: str = ""
    subscription: SubscriptionOut | None = None
    data: dict[str, Any] = {}


class SubscriptionStatusOut(BaseModel):
    has_access: bool
    days_remaining: int
    status: str | None = None
    plan: str | None = None
    auto_renew: bool = False
    end_date: datetime | None = None
    is_trial: bool = False
    subscription: SubscriptionOut | None = None


class SubscriptionPage(BaseModel):
    items: list[SubscriptionOut]
    total: int
    page: int
    limit: int


class SubscriptionStats(BaseModel):
    total: int
    active: int
    recurring: int
    due_for_renewal: int
    failed_renewals: int
    expiring: int
