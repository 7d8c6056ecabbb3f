"""Subscription lifecycle engine — the transition table for every status change.

Every write path (webhooks, reconciliation, user and admin actions) asks
:func:`decide` what a trigger means for the current row and hands the returned
:class:`Decision` to the store, which applies it with a version-checked update.
Nothing in this module performs I/O.

States::

    (none) --create--> pending --paid--> active --charged/failed--> active
                          |                 |--cancel--> cancelled --reactivate--> active
                          |                 |--expire/completed/cutoff/converted--> expired
                          +--abandon--> expired

``cancelled`` and ``expired`` are terminal for a row; a user can still get a
new row later.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Callable

from billing.constants import (
    DEFAULT_TRIAL_DAYS,
    MAX_FAILED_PAYMENTS,
    MONTHLY_PERIOD_DAYS,
    REASON_ABANDONED,
    REASON_CONVERTED,
    REASON_GATEWAY_CANCELLED,
    REASON_GATEWAY_COMPLETED,
    REASON_ORPHANED_PAYMENT,
    REASON_PAYMENT_CUTOFF,
    REASON_PERIOD_ENDED,
    REASON_SUPERSEDED,
    REASON_TRIAL_ENDED,
    YEARLY_PERIOD_DAYS,
)
from billing.utils import ceil_days, ensure_utc, now_utc

logger = logging.getLogger(__name__)


class SubscriptionStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


OPEN_STATUSES = frozenset({SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE})
TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED})


class Plan(StrEnum):
    TRIAL = "trial"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class BillingMode(StrEnum):
    ONE_TIME = "one-time"
    RECURRING = "recurring"


class Trigger(StrEnum):
    PAYMENT_VERIFIED = "payment_verified"
    CHARGED = "charged"
    PAYMENT_FAILED = "payment_failed"
    GATEWAY_CANCELLED = "cancelled"
    COMPLETED = "completed"
    USER_CANCEL = "user_cancel"
    EXPIRE = "expire"
    REACTIVATE = "reactivate"
    CONVERTED = "converted"
    ABANDON = "abandon"
    EXTEND = "extend"


# Triggers that originate at the gateway; on a terminal row they are stale, not errors.
GATEWAY_TRIGGERS = frozenset({
    Trigger.PAYMENT_VERIFIED,
    Trigger.CHARGED,
    Trigger.PAYMENT_FAILED,
    Trigger.GATEWAY_CANCELLED,
    Trigger.COMPLETED,
})

# Expiry reasons of checkouts that were closed before any payment landed.
ABANDONED_REASONS = frozenset({REASON_ABANDONED, REASON_SUPERSEDED})


class SideEffect(StrEnum):
    CANCEL_GATEWAY_AT_CYCLE_END = "cancel_gateway_at_cycle_end"
    CANCEL_GATEWAY_NOW = "cancel_gateway_now"


class DecisionKind(StrEnum):
    APPLY = "apply"
    NOOP = "noop"
    REJECT = "reject"


@dataclass(frozen=True)
class LifecycleEvent:
    """A trigger plus the gateway identifiers that make it idempotent."""

    trigger: Trigger
    payment_id: str | None = None
    order_id: str | None = None
    paid_count: int | None = None
    reason: str | None = None
    days: int | None = None


@dataclass(frozen=True)
class Decision:
    kind: DecisionKind
    trigger: Trigger
    from_status: str
    to_status: str
    reason: str = ""
    changes: dict[str, Any] = field(default_factory=dict)
    side_effects: tuple[SideEffect, ...] = ()
    anomaly: bool = False

    @property
    def applies(self) -> bool:
        return self.kind is DecisionKind.APPLY


@dataclass(frozen=True)
class LifecyclePolicy:
    trial_days: int = DEFAULT_TRIAL_DAYS
    max_failed_payments: int = MAX_FAILED_PAYMENTS

    def period(self, plan: str) -> timedelta:
        days = {
            Plan.TRIAL: self.trial_days,
            Plan.MONTHLY: MONTHLY_PERIOD_DAYS,
            Plan.YEARLY: YEARLY_PERIOD_DAYS,
        }[Plan(plan)]
        return timedelta(days=days)


DEFAULT_POLICY = LifecyclePolicy()


# ---------------------------------------------------------------------------
# Decision builders
# ---------------------------------------------------------------------------


def _apply(sub, event: LifecycleEvent, to_status: SubscriptionStatus, changes: dict[str, Any],
           reason: str = "", side_effects: tuple[SideEffect, ...] = ()) -> Decision:
    changes = dict(changes)
    if to_status != sub.status:
        changes["status"] = to_status.value
    return Decision(DecisionKind.APPLY, event.trigger, sub.status, to_status.value, reason, changes, side_effects)


def _noop(sub, event: LifecycleEvent, reason: str) -> Decision:
    return Decision(DecisionKind.NOOP, event.trigger, sub.status, sub.status, reason)


def _reject(sub, event: LifecycleEvent, reason: str, anomaly: bool = False) -> Decision:
    return Decision(DecisionKind.REJECT, event.trigger, sub.status, sub.status, reason, anomaly=anomaly)


def _ignore(reason: str) -> Callable:
    def handler(sub, event, now, policy):
        return _noop(sub, event, reason)
    return handler


def _is_recurring(sub) -> bool:
    return sub.billing_mode == BillingMode.RECURRING


# ---------------------------------------------------------------------------
# Transition handlers
# ---------------------------------------------------------------------------


def _activate(sub, event: LifecycleEvent, now: datetime, policy: LifecyclePolicy) -> Decision:
    if event.order_id and sub.order_id and event.order_id != sub.order_id:
        return _reject(sub, event, f"order {event.order_id} does not belong to this subscription")

    end = now + policy.period(sub.plan)
    recurring = _is_recurring(sub)
    changes = {
        "start_date": now,
        "end_date": end,
        "next_billing_date": end if recurring else None,
        "auto_renew": recurring,
        "failed_payment_count": 0,
        "paid_count": event.paid_count or 1,
        "last_successful_payment": now,
    }
    if event.payment_id:
        changes["payment_id"] = event.payment_id
    if event.order_id:
        changes["order_id"] = event.order_id
    if sub.is_trial_subscription:
        changes["original_trial_end_date"] = end
    return _apply(sub, event, SubscriptionStatus.ACTIVE, changes, reason="payment confirmed")


def _renew(sub, event: LifecycleEvent, now: datetime, policy: LifecyclePolicy) -> Decision:
    if not _is_recurring(sub):
        return _noop(sub, event, "one-time subscription already paid")
    if event.paid_count is not None and event.paid_count <= sub.paid_count:
        return _noop(sub, event, f"billing cycle {event.paid_count} already applied")
    if event.payment_id and event.payment_id == sub.payment_id:
        return _noop(sub, event, f"payment {event.payment_id} already applied")

    period = policy.period(sub.plan)
    end_date = ensure_utc(sub.end_date)
    next_billing = ensure_utc(sub.next_billing_date) or end_date
    changes = {
        "end_date": end_date + period,
        "next_billing_date": next_billing + period,
        "failed_payment_count": 0,
        "last_successful_payment": now,
        "last_renewal_attempt": now,
        "paid_count": event.paid_count if event.paid_count is not None else sub.paid_count + 1,
    }
    if event.payment_id:
        changes["payment_id"] = event.payment_id
    return _apply(sub, event, SubscriptionStatus.ACTIVE, changes, reason="renewed for one billing period")


def _fail(sub, event: LifecycleEvent, now: datetime, policy: LifecyclePolicy) -> Decision:
    if not _is_recurring(sub):
        return _noop(sub, event, "one-time subscription already paid")
    if event.payment_id and event.payment_id == sub.last_failed_payment_id:
        return _noop(sub, event, f"failed payment {event.payment_id} already counted")

    count = sub.failed_payment_count + 1
    changes: dict[str, Any] = {"failed_payment_count": count, "last_renewal_attempt": now}
    if event.payment_id:
        changes["last_failed_payment_id"] = event.payment_id

    if count >= policy.max_failed_payments:
        changes["auto_renew"] = False
        changes["expiry_reason"] = REASON_PAYMENT_CUTOFF
        return _apply(sub, event, SubscriptionStatus.EXPIRED, changes, reason=REASON_PAYMENT_CUTOFF)
    return _apply(
        sub, event, SubscriptionStatus.ACTIVE, changes,
        reason=f"payment failed ({count}/{policy.max_failed_payments})",
    )


def _gateway_cancel(sub, event: LifecycleEvent, now: datetime, policy: LifecyclePolicy) -> Decision:
    changes = {
        "cancelled_at": now,
        "auto_renew": False,
        "cancel_reason": event.reason or REASON_GATEWAY_CANCELLED,
    }
    return _apply(sub, event, SubscriptionStatus.CANCELLED, changes, reason=REASON_GATEWAY_CANCELLED)


def _user_cancel(sub, event: LifecycleEvent, now: datetime, policy: LifecyclePolicy) -> Decision:
    changes = {
        "cancelled_at": now,
        "auto_renew": False,
        "cancel_reason": event.reason or "Cancelled by user",
    }
    effects: tuple[SideEffect, ...] = ()
    if _is_recurring(sub) and sub.gateway_subscription_id:
        effects = (SideEffect.CANCEL_GATEWAY_AT_CYCLE_END,)
    return _apply(sub, event, SubscriptionStatus.CANCELLED, changes, reason="cancelled by user", side_effects=effects)


def _complete(sub, event: LifecycleEvent, now: datetime, policy: LifecyclePolicy) -> Decision:
    changes = {"auto_renew": False, "expiry_reason": REASON_GATEWAY_COMPLETED}
    return _apply(sub, event, SubscriptionStatus.EXPIRED, changes, reason=REASON_GATEWAY_COMPLETED)


def _expire(sub, event: LifecycleEvent, now: datetime, policy: LifecyclePolicy) -> Decision:
    if ensure_utc(sub.end_date) > now:
        return _reject(sub, event, "subscription period has not ended")
    reason = REASON_TRIAL_ENDED if sub.is_trial_subscription else REASON_PERIOD_ENDED
    changes = {"auto_renew": False, "expiry_reason": reason}
    return _apply(sub, event, SubscriptionStatus.EXPIRED, changes, reason=reason)


def _convert(sub, event: LifecycleEvent, now: datetime, policy: LifecyclePolicy) -> Decision:
    if not sub.is_trial_subscription:
        return _reject(sub, event, "only trial subscriptions can be converted")
    changes = {"auto_renew": False, "expiry_reason": REASON_CONVERTED, "converted_at": now}
    return _apply(sub, event, SubscriptionStatus.EXPIRED, changes, reason=REASON_CONVERTED)


def _abandon(sub, event: LifecycleEvent, now: datetime, policy: LifecyclePolicy) -> Decision:
    changes = {"auto_renew": False, "expiry_reason": event.reason or REASON_ABANDONED}
    effects: tuple[SideEffect, ...] = ()
    if sub.gateway_subscription_id:
        effects = (SideEffect.CANCEL_GATEWAY_NOW,)
    return _apply(sub, event, SubscriptionStatus.EXPIRED, changes, reason=REASON_ABANDONED, side_effects=effects)


def _late_payment(sub, event: LifecycleEvent, now: datetime, policy: LifecyclePolicy) -> Decision:
    """Money arriving for an expired row is stale unless the row never got paid.

    A checkout closed as abandoned or superseded can still be paid at the
    gateway; that payment has nowhere to go and needs an operator.
    """
    if sub.expiry_reason in ABANDONED_REASONS and not sub.paid_count:
        return _reject(sub, event, REASON_ORPHANED_PAYMENT, anomaly=True)
    return _noop(sub, event, f"stale {event.trigger} event for expired subscription")


def _reactivate(sub, event: LifecycleEvent, now: datetime, policy: LifecyclePolicy) -> Decision:
    if ensure_utc(sub.end_date) <= now:
        return _reject(sub, event, "Subscription period has expired. Please create a new subscription.")
    changes = {"cancelled_at": None, "cancel_reason": None, "auto_renew": _is_recurring(sub)}
    return _apply(sub, event, SubscriptionStatus.ACTIVE, changes, reason="reactivated")


def _extend(sub, event: LifecycleEvent, now: datetime, policy: LifecyclePolicy) -> Decision:
    if not event.days or event.days < 1:
        return _reject(sub, event, "extension must be at least one day")
    delta = timedelta(days=event.days)
    changes: dict[str, Any] = {"end_date": ensure_utc(sub.end_date) + delta}
    if sub.next_billing_date is not None:
        changes["next_billing_date"] = ensure_utc(sub.next_billing_date) + delta
    return _apply(sub, event, SubscriptionStatus.ACTIVE, changes, reason=f"extended by {event.days} days")


S = SubscriptionStatus
T = Trigger

_TRANSITIONS: dict[tuple[SubscriptionStatus, Trigger], Callable[..., Decision]] = {
    (S.PENDING, T.PAYMENT_VERIFIED): _activate,
    (S.PENDING, T.CHARGED): _activate,
    (S.PENDING, T.PAYMENT_FAILED): _ignore("checkout still open"),
    (S.PENDING, T.GATEWAY_CANCELLED): _gateway_cancel,
    (S.PENDING, T.ABANDON): _abandon,
    (S.ACTIVE, T.PAYMENT_VERIFIED): _ignore("already active"),
    (S.ACTIVE, T.CHARGED): _renew,
    (S.ACTIVE, T.PAYMENT_FAILED): _fail,
    (S.ACTIVE, T.GATEWAY_CANCELLED): _gateway_cancel,
    (S.ACTIVE, T.USER_CANCEL): _user_cancel,
    (S.ACTIVE, T.COMPLETED): _complete,
    (S.ACTIVE, T.EXPIRE): _expire,
    (S.ACTIVE, T.CONVERTED): _convert,
    (S.ACTIVE, T.EXTEND): _extend,
    (S.ACTIVE, T.REACTIVATE): _ignore("already active"),
    (S.CANCELLED, T.REACTIVATE): _reactivate,
    (S.CANCELLED, T.USER_CANCEL): _ignore("already cancelled"),
    (S.CANCELLED, T.EXPIRE): _ignore("already cancelled"),
    (S.CANCELLED, T.CONVERTED): _ignore("already cancelled"),
    (S.EXPIRED, T.PAYMENT_VERIFIED): _late_payment,
    (S.EXPIRED, T.CHARGED): _late_payment,
    (S.EXPIRED, T.EXPIRE): _ignore("already expired"),
    (S.EXPIRED, T.CONVERTED): _ignore("already expired"),
    (S.EXPIRED, T.ABANDON): _ignore("already expired"),
}

del S, T


def decide(
    sub,
    event: LifecycleEvent,
    now: datetime | None = None,
    policy: LifecyclePolicy = DEFAULT_POLICY,
) -> Decision:
    """Compute the transition for ``event`` against the current state of ``sub``.

    ``sub`` is read, never mutated. Pairs without an edge are rejected rather
    than mapped onto a neighbouring state; gateway events against a terminal
    row are no-ops so late or duplicated deliveries never resurrect it.
    """
    now = now or now_utc()
    try:
        status = SubscriptionStatus(sub.status)
    except ValueError:
        return _reject(sub, event, f"unknown status {sub.status!r}")

    handler = _TRANSITIONS.get((status, event.trigger))
    if handler is None:
        if status in TERMINAL_STATUSES and event.trigger in GATEWAY_TRIGGERS:
            return _noop(sub, event, f"stale {event.trigger} event for {status} subscription")
        return _reject(sub, event, f"no transition from {status} on {event.trigger}")
    return handler(sub, event, now, policy)


def follow_up_steps(sub, event: LifecycleEvent) -> list[tuple[int, LifecycleEvent]]:
    """Other rows that must change in the same transaction as ``sub``.

    Activating the paid row of a trial conversion closes the trial.
    """
    activating = event.trigger in (Trigger.PAYMENT_VERIFIED, Trigger.CHARGED)
    if activating and sub.status == SubscriptionStatus.PENDING and sub.converted_from_id:
        return [(sub.converted_from_id, LifecycleEvent(Trigger.CONVERTED))]
    return []


# ---------------------------------------------------------------------------
# (none) -> pending
# ---------------------------------------------------------------------------


def new_subscription_fields(
    *,
    user_id: str,
    package_id: str,
    plan: str,
    billing_mode: str,
    amount: int,
    currency: str,
    now: datetime | None = None,
    policy: LifecyclePolicy = DEFAULT_POLICY,
    order_id: str | None = None,
    gateway_subscription_id: str | None = None,
    gateway_plan_id: str | None = None,
    gateway_customer_id: str | None = None,
    converted_from_id: int | None = None,
) -> dict[str, Any]:
    """Column values for a freshly created pending row.

    The period is provisional until payment is confirmed, but it keeps
    ``end_date > start_date`` true from the first insert.
    """
    plan = Plan(plan)
    mode = BillingMode(billing_mode)
    if plan is Plan.TRIAL and mode is BillingMode.RECURRING:
        raise ValueError("trial subscriptions are always one-time payments")

    now = now or now_utc()
    end = now + policy.period(plan)
    recurring = mode is BillingMode.RECURRING
    return {
        "user_id": user_id,
        "package_id": package_id,
        "plan": plan.value,
        "billing_mode": mode.value,
        "status": SubscriptionStatus.PENDING.value,
        "amount": amount,
        "currency": currency,
        "start_date": now,
        "end_date": end,
        "next_billing_date": end if recurring else None,
        "auto_renew": recurring,
        "is_trial_subscription": plan is Plan.TRIAL,
        "order_id": order_id,
        "gateway_subscription_id": gateway_subscription_id,
        "gateway_plan_id": gateway_plan_id,
        "gateway_customer_id": gateway_customer_id,
        "converted_from_id": converted_from_id,
    }


# ---------------------------------------------------------------------------
# Reconciliation and access helpers
# ---------------------------------------------------------------------------


def event_from_gateway_status(sub, status: str, paid_count: int | None = None) -> LifecycleEvent | None:
    """Translate a gateway-reported subscription status into a trigger.

    Returns None when the gateway has nothing new to say yet (authenticated,
    or active without a newly paid cycle).
    """
    status = (status or "").lower()
    if status == "active":
        if paid_count is not None and paid_count <= sub.paid_count:
            return None
        return LifecycleEvent(Trigger.CHARGED, paid_count=paid_count)
    if status == "authenticated":
        return None
    if status == "cancelled":
        return LifecycleEvent(Trigger.GATEWAY_CANCELLED)
    if status in ("completed", "expired"):
        return LifecycleEvent(Trigger.COMPLETED)
    return LifecycleEvent(Trigger.PAYMENT_FAILED, reason=f"gateway status {status or 'unknown'}")


def has_access(sub, now: datetime | None = None) -> bool:
    """Paid access lasts until ``end_date``; cancelling does not revoke paid time."""
    if sub is None:
        return False
    now = now or now_utc()
    if sub.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED):
        return False
    return ensure_utc(sub.end_date) > now


def days_remaining(sub, now: datetime | None = None) -> int:
    now = now or now_utc()
    if not has_access(sub, now):
        return 0
    return ceil_days((ensure_utc(sub.end_date) - now).total_seconds())
