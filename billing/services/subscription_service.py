"""User-facing subscription operations — checkout, verification, cancel, reactivate, convert.

Every state change is dispatched through the store's version-checked writer;
gateway calls that a transition needs run through :func:`gateway_side_effects`
just before the write so a gateway outage leaves the row untouched.
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from billing.config import Settings
from billing.constants import RECEIPT_PREFIX, REASON_SUPERSEDED, USER_LEASE_SECONDS
from billing.lifecycle import (
    BillingMode,
    Decision,
    LifecycleEvent,
    LifecyclePolicy,
    Plan,
    SideEffect,
    SubscriptionStatus,
    Trigger,
    days_remaining,
    has_access,
    new_subscription_fields,
)
from billing.models.subscription import Subscription
from billing.outcome import Outcome, OutcomeKind
from billing.schemas.subscription import CustomerProfile, VerifyPaymentRequest
from billing.services import subscription_store as store
from billing.services.gateway_client import (
    GatewayError,
    GatewayRejectedError,
    GatewayUnavailableError,
    RazorpayGateway,
)
from billing.services.lease_service import hold_lease, user_lease_name
from billing.utils import now_utc

logger = logging.getLogger(__name__)

GATEWAY_UNAVAILABLE = "Payment provider is unavailable, please try again"
GATEWAY_REFUSED = "Payment provider rejected the request"
BUSY = "Another subscription request is in progress, please try again"


def policy_from_settings(settings: Settings) -> LifecyclePolicy:
    return LifecyclePolicy(trial_days=settings.trial_duration_days)


def price_for(plan: str, settings: Settings) -> int:
    return {
        Plan.TRIAL: settings.trial_price,
        Plan.MONTHLY: settings.monthly_price,
        Plan.YEARLY: settings.yearly_price,
    }[Plan(plan)]


def gateway_plan_id(plan: str, settings: Settings) -> str:
    return {
        Plan.MONTHLY: settings.razorpay_monthly_plan_id,
        Plan.YEARLY: settings.razorpay_yearly_plan_id,
    }.get(Plan(plan), "")


def list_plans(settings: Settings) -> list[dict[str, Any]]:
    policy = policy_from_settings(settings)
    plans = []
    for plan in Plan:
        modes = [BillingMode.ONE_TIME]
        if plan is not Plan.TRIAL and gateway_plan_id(plan, settings):
            modes.append(BillingMode.RECURRING)
        plans.append({
            "plan": plan,
            "amount": price_for(plan, settings),
            "currency": settings.currency,
            "duration_days": policy.period(plan).days,
            "billing_modes": modes,
        })
    return plans


def _gateway_failure(exc: GatewayError) -> Outcome:
    if isinstance(exc, GatewayRejectedError):
        return Outcome.rejected(GATEWAY_REFUSED)
    return Outcome.retryable(GATEWAY_UNAVAILABLE)


def gateway_side_effects(gateway: RazorpayGateway):
    """Build the store hook that performs gateway calls a decision requires."""

    async def run(sub: Subscription, decision: Decision) -> Outcome | None:
        for effect in decision.side_effects:
            at_cycle_end = effect is SideEffect.CANCEL_GATEWAY_AT_CYCLE_END
            try:
                await gateway.cancel_subscription(sub.gateway_subscription_id, at_cycle_end=at_cycle_end)
            except GatewayRejectedError as e:
                # Already cancelled or unknown at the gateway; the local transition still stands
                logger.warning(f"Gateway refused to cancel {sub.gateway_subscription_id} for subscription {sub.id}: {e}")
            except GatewayUnavailableError:
                logger.warning(f"Subscription {sub.id}: {decision.trigger} postponed, gateway cancel did not complete")
                return Outcome.retryable(GATEWAY_UNAVAILABLE, sub)
        return None

    return run


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


def _receipt(user_id: str) -> str:
    # Razorpay caps receipts at 40 characters
    return f"{RECEIPT_PREFIX}_{user_id}_{int(now_utc().timestamp())}"[-40:]


async def _open_checkout(
    db: AsyncSession,
    gateway: RazorpayGateway,
    settings: Settings,
    user_id: str,
    package_id: str,
    plan: Plan,
    billing_mode: BillingMode,
    customer: CustomerProfile,
    converted_from_id: int | None = None,
) -> Outcome:
    """Create the gateway order or subscription and insert the pending row."""
    policy = policy_from_settings(settings)
    amount = price_for(plan, settings)
    notes = {
        "AppName": settings.tenant_app_names[0] if settings.tenant_app_names else "",
        "packageName": package_id,
        "user_id": user_id,
        "plan": plan.value,
    }

    if billing_mode is BillingMode.ONE_TIME:
        try:
            order = await gateway.create_order(amount, settings.currency, _receipt(user_id), notes)
        except GatewayError as e:
            return _gateway_failure(e)
        fields = new_subscription_fields(
            user_id=user_id, package_id=package_id, plan=plan, billing_mode=billing_mode,
            amount=amount, currency=settings.currency, policy=policy,
            order_id=order["id"], converted_from_id=converted_from_id,
        )
        sub = await store.insert_subscription(db, fields)
        return Outcome.applied(
            sub, reason="order created",
            order_id=order["id"], amount=amount, currency=settings.currency, key_id=settings.razorpay_key_id,
        )

    plan_id = gateway_plan_id(plan, settings)
    if not plan_id:
        return Outcome.not_supported(f"Recurring billing is not available for the {plan} plan")

    try:
        gateway_customer = await gateway.create_customer(
            customer.name or user_id, customer.email or "", customer.contact, notes
        )
        total_count = settings.yearly_total_cycles if plan is Plan.YEARLY else settings.monthly_total_cycles
        gateway_sub = await gateway.create_recurring_subscription(plan_id, gateway_customer["id"], total_count, notes)
    except GatewayError as e:
        return _gateway_failure(e)

    fields = new_subscription_fields(
        user_id=user_id, package_id=package_id, plan=plan, billing_mode=billing_mode,
        amount=amount, currency=settings.currency, policy=policy,
        gateway_subscription_id=gateway_sub["id"], gateway_plan_id=plan_id,
        gateway_customer_id=gateway_customer["id"], converted_from_id=converted_from_id,
    )
    sub = await store.insert_subscription(db, fields)
    return Outcome.applied(
        sub, reason="subscription created",
        gateway_subscription_id=gateway_sub["id"], short_url=gateway_sub.get("short_url"),
        key_id=settings.razorpay_key_id,
    )


async def _abandon_pending(
    db: AsyncSession, gateway: RazorpayGateway, rows: list[Subscription], policy: LifecyclePolicy
) -> Outcome | None:
    """Close earlier unfinished checkouts so the new one holds the only open slot."""
    for row in rows:
        if row.status != SubscriptionStatus.PENDING:
            continue
        outcome = await store.apply_transition(
            db, row.id, LifecycleEvent(Trigger.ABANDON, reason=REASON_SUPERSEDED),
            policy=policy, before_write=gateway_side_effects(gateway),
        )
        if outcome.kind is OutcomeKind.RETRYABLE:
            return outcome
        if outcome.kind is OutcomeKind.REJECTED and outcome.subscription is not None:
            if outcome.subscription.status == SubscriptionStatus.ACTIVE:
                # paid while we were deciding
                return Outcome.rejected("User already has an active subscription", outcome.subscription)
    return None


async def create_order(
    db: AsyncSession,
    gateway: RazorpayGateway,
    settings: Settings,
    user_id: str,
    package_id: str,
    plan: Plan,
    billing_mode: BillingMode,
    customer: CustomerProfile,
) -> Outcome:
    """Start a checkout: one-time order or recurring gateway subscription."""
    if plan is Plan.TRIAL and billing_mode is BillingMode.RECURRING:
        return Outcome.not_supported("Trial subscriptions are one-time payments")

    async with hold_lease(user_lease_name(package_id, user_id), USER_LEASE_SECONDS) as acquired:
        if not acquired:
            return Outcome.retryable(BUSY)

        open_rows = await store.find_open_subscriptions(db, user_id, package_id)
        active = next((row for row in open_rows if row.status == SubscriptionStatus.ACTIVE), None)
        if active:
            return Outcome.rejected("User already has an active subscription", active)
        if plan is Plan.TRIAL and await store.has_used_trial(db, user_id, package_id):
            return Outcome.rejected("Trial has already been used")

        policy = policy_from_settings(settings)
        aborted = await _abandon_pending(db, gateway, open_rows, policy)
        if aborted:
            return aborted

        return await _open_checkout(db, gateway, settings, user_id, package_id, plan, billing_mode, customer)


async def start_trial_conversion(
    db: AsyncSession,
    gateway: RazorpayGateway,
    settings: Settings,
    user_id: str,
    package_id: str,
    billing_mode: BillingMode,
    customer: CustomerProfile,
) -> Outcome:
    """Open a monthly checkout linked to the running trial.

    The trial row is left alone here; it is closed in the same transaction
    that activates the new row.
    """
    async with hold_lease(user_lease_name(package_id, user_id), USER_LEASE_SECONDS) as acquired:
        if not acquired:
            return Outcome.retryable(BUSY)

        open_rows = await store.find_open_subscriptions(db, user_id, package_id)
        trial = next(
            (row for row in open_rows if row.status == SubscriptionStatus.ACTIVE and row.is_trial_subscription),
            None,
        )
        if trial is None:
            return Outcome.rejected("No active trial to convert")

        policy = policy_from_settings(settings)
        aborted = await _abandon_pending(db, gateway, open_rows, policy)
        if aborted:
            return aborted

        return await _open_checkout(
            db, gateway, settings, user_id, package_id, Plan.MONTHLY, billing_mode, customer,
            converted_from_id=trial.id,
        )


# ---------------------------------------------------------------------------
# Payment verification
# ---------------------------------------------------------------------------


def _bad_signature() -> Outcome:
    return Outcome(OutcomeKind.REJECTED, "Invalid payment signature", data={"bad_signature": True})


async def verify_payment(
    db: AsyncSession,
    gateway: RazorpayGateway,
    settings: Settings,
    user_id: str,
    request: VerifyPaymentRequest,
) -> Outcome:
    """Confirm a checkout from the client callback and activate the subscription."""
    policy = policy_from_settings(settings)

    if request.gateway_subscription_id:
        if not gateway.verify_subscription_signature(
            request.payment_id, request.gateway_subscription_id, request.signature
        ):
            logger.warning(f"Invalid subscription signature for {request.gateway_subscription_id}")
            return _bad_signature()
        sub = await store.find_by_gateway_subscription_id(db, request.gateway_subscription_id)
        if sub is None or sub.user_id != user_id:
            return Outcome.rejected("Subscription not found")
        try:
            status = await gateway.fetch_subscription_status(request.gateway_subscription_id)
        except GatewayError as e:
            return _gateway_failure(e)
        if status.status not in ("authenticated", "active"):
            return Outcome.rejected("Subscription payment was not completed", sub)
        event = LifecycleEvent(Trigger.PAYMENT_VERIFIED, payment_id=request.payment_id, paid_count=status.paid_count)
    else:
        if not gateway.verify_payment_signature(request.order_id, request.payment_id, request.signature):
            logger.warning(f"Invalid payment signature for order {request.order_id}")
            return _bad_signature()
        sub = await store.find_by_order_id(db, request.order_id)
        if sub is None or sub.user_id != user_id:
            return Outcome.rejected("Subscription not found")
        try:
            payment = await gateway.fetch_payment(request.payment_id)
        except GatewayError as e:
            return _gateway_failure(e)
        if payment.get("order_id") != request.order_id:
            return Outcome.rejected("Payment does not belong to this order", sub)
        if payment.get("status") == "authorized":
            return Outcome.retryable("Payment is still being processed", sub)
        if payment.get("status") != "captured":
            return Outcome.rejected("Payment was not successful", sub)
        event = LifecycleEvent(Trigger.PAYMENT_VERIFIED, payment_id=request.payment_id, order_id=request.order_id)

    return await store.dispatch(db, sub, event, policy=policy)


# ---------------------------------------------------------------------------
# Cancel / reactivate
# ---------------------------------------------------------------------------


async def cancel_subscription(
    db: AsyncSession,
    gateway: RazorpayGateway,
    settings: Settings,
    user_id: str,
    package_id: str,
    reason: str | None = None,
) -> Outcome:
    """Stop renewals; paid access continues until ``end_date``."""
    open_rows = await store.find_open_subscriptions(db, user_id, package_id)
    active = next((row for row in open_rows if row.status == SubscriptionStatus.ACTIVE), None)
    if active is None:
        return Outcome.rejected("No active subscription found")

    return await store.apply_transition(
        db, active.id, LifecycleEvent(Trigger.USER_CANCEL, reason=reason or "Cancelled by user"),
        policy=policy_from_settings(settings), before_write=gateway_side_effects(gateway),
    )


async def reactivate_subscription(
    db: AsyncSession,
    settings: Settings,
    user_id: str,
    package_id: str,
) -> Outcome:
    """Undo a cancellation while the paid period is still running."""
    async with hold_lease(user_lease_name(package_id, user_id), USER_LEASE_SECONDS) as acquired:
        if not acquired:
            return Outcome.retryable(BUSY)

        sub = await store.find_current_subscription(db, user_id, package_id)
        if sub is None or sub.status != SubscriptionStatus.CANCELLED:
            return Outcome.rejected("No cancelled subscription to reactivate", sub)

        others = [row for row in await store.find_open_subscriptions(db, user_id, package_id) if row.id != sub.id]
        if others:
            return Outcome.rejected("User already has an open subscription", others[0])

        return await store.apply_transition(
            db, sub.id, LifecycleEvent(Trigger.REACTIVATE), policy=policy_from_settings(settings)
        )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_user_status(db: AsyncSession, user_id: str, package_id: str) -> dict[str, Any]:
    """Access summary consumed by the app: entitled or not, and for how long."""
    sub = await store.find_current_subscription(db, user_id, package_id)
    now = now_utc()
    if sub is None:
        return {"has_access": False, "days_remaining": 0}
    return {
        "has_access": has_access(sub, now),
        "days_remaining": days_remaining(sub, now),
        "status": sub.status,
        "plan": sub.plan,
        "auto_renew": sub.auto_renew,
        "end_date": sub.end_date,
        "is_trial": sub.is_trial_subscription,
        "subscription": sub,
    }


async def extend_subscription(db: AsyncSession, settings: Settings, sub_id: int, days: int) -> Outcome:
    """Operator goodwill extension of an active subscription."""
    return await store.apply_transition(
        db, sub_id, LifecycleEvent(Trigger.EXTEND, days=days), policy=policy_from_settings(settings)
    )
