"""Subscription model — the single local source of truth for billing state.

Rows are only ever changed through the lifecycle engine and the store's
version-checked writer (see billing.services.subscription_store).
"""

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from billing.constants import DEFAULT_CURRENCY
from billing.utils import now_utc
from .base import Base, UTCDateTime


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    package_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    plan: Mapped[str] = mapped_column(String(16), nullable=False)
    billing_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="one-time")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default=DEFAULT_CURRENCY)

    start_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    next_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Gateway references
    gateway_subscription_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    gateway_plan_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gateway_customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    last_failed_payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Recurrence bookkeeping
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failed_payment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_renewal_attempt: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_successful_payment: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Cancellation / expiry
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expiry_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Trial bookkeeping
    is_trial_subscription: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_trial_end_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    converted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    converted_from_id: Mapped[int | None] = mapped_column(ForeignKey("subscriptions.id"), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=now_utc, onupdate=now_utc)

    __table_args__ = (
        Index("ix_subscriptions_status_end_date", "status", "end_date"),
        Index("ix_subscriptions_status_next_billing", "status", "next_billing_date"),
        Index("ix_subscriptions_user_status", "user_id", "status"),
        CheckConstraint("end_date > start_date", name="ck_subscriptions_period"),
    )

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} user={self.user_id} plan={self.plan} status={self.status}>"
