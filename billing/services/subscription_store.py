"""Subscription Store access layer.

All status changes go through :func:`apply_transitions`, which re-reads the
row, asks the lifecycle engine for a decision and writes it with
``UPDATE ... WHERE id = :id AND version = :version``. A lost race re-reads and
re-decides up to ``CAS_MAX_ATTEMPTS`` times before giving up with a retryable
outcome.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta

from sqlalchemy import and_, func, not_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing.constants import CAS_MAX_ATTEMPTS, MAX_FAILED_PAYMENTS
from billing.lifecycle import (
    DEFAULT_POLICY,
    BillingMode,
    Decision,
    DecisionKind,
    LifecycleEvent,
    LifecyclePolicy,
    SubscriptionStatus,
    decide,
    follow_up_steps,
)
from billing.models.subscription import Subscription
from billing.outcome import Outcome
from billing.utils import now_utc

logger = logging.getLogger(__name__)

# Runs after a decision is made and before it is written. Returning an Outcome
# aborts the write and hands that outcome back to the caller.
BeforeWrite = Callable[[Subscription, Decision], Awaitable[Outcome | None]]

OPEN = (SubscriptionStatus.PENDING.value, SubscriptionStatus.ACTIVE.value)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_subscription(db: AsyncSession, sub_id: int, fresh: bool = False) -> Subscription | None:
    stmt = select(Subscription).where(Subscription.id == sub_id)
    if fresh:
        stmt = stmt.execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def find_by_gateway_subscription_id(db: AsyncSession, gateway_subscription_id: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription).where(Subscription.gateway_subscription_id == gateway_subscription_id)
    )
    return result.scalar_one_or_none()


async def find_by_payment_id(db: AsyncSession, payment_id: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription)
        .where(or_(Subscription.payment_id == payment_id, Subscription.last_failed_payment_id == payment_id))
        .order_by(Subscription.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_by_order_id(db: AsyncSession, order_id: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription).where(Subscription.order_id == order_id).order_by(Subscription.id.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def find_open_subscriptions(db: AsyncSession, user_id: str, package_id: str) -> list[Subscription]:
    """Pending and active rows for a user, newest first."""
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.package_id == package_id,
            Subscription.status.in_(OPEN),
        )
        .order_by(Subscription.id.desc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def find_current_subscription(db: AsyncSession, user_id: str, package_id: str) -> Subscription | None:
    """The row that decides a user's access: the latest paid period still running, else the newest row."""
    now = now_utc()
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.package_id == package_id,
            Subscription.status.in_((SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELLED.value)),
            Subscription.end_date > now,
        )
        .order_by(Subscription.end_date.desc())
        .limit(1)
    )
    sub = result.scalar_one_or_none()
    if sub:
        return sub

    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.package_id == package_id)
        .order_by(Subscription.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def has_used_trial(db: AsyncSession, user_id: str, package_id: str) -> bool:
    """A trial counts as used once it was paid for; abandoned checkouts do not count."""
    result = await db.execute(
        select(Subscription.id)
        .where(
            Subscription.user_id == user_id,
            Subscription.package_id == package_id,
            Subscription.is_trial_subscription.is_(True),
            Subscription.paid_count > 0,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def list_user_history(
    db: AsyncSession, user_id: str, package_id: str, page: int = 1, limit: int = 10
) -> tuple[list[Subscription], int]:
    base = select(Subscription).where(Subscription.user_id == user_id, Subscription.package_id == package_id)
    total = await db.scalar(select(func.count()).select_from(base.subquery()))
    result = await db.execute(
        base.order_by(Subscription.created_at.desc(), Subscription.id.desc()).offset((page - 1) * limit).limit(limit)
    )
    return list(result.scalars().all()), total or 0


async def list_subscriptions(
    db: AsyncSession,
    *,
    status: str | None = None,
    plan: str | None = None,
    billing_mode: str | None = None,
    user_id: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Subscription], int]:
    """Filtered, paginated read-only listing for operators."""
    base = select(Subscription)
    if status:
        base = base.where(Subscription.status == status)
    if plan:
        base = base.where(Subscription.plan == plan)
    if billing_mode:
        base = base.where(Subscription.billing_mode == billing_mode)
    if user_id:
        base = base.where(Subscription.user_id == user_id)

    total = await db.scalar(select(func.count()).select_from(base.subquery()))
    result = await db.execute(base.order_by(Subscription.id.desc()).offset((page - 1) * limit).limit(limit))
    return list(result.scalars().all()), total or 0


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


async def insert_subscription(db: AsyncSession, fields: dict) -> Subscription:
    """Insert a new row built by ``lifecycle.new_subscription_fields`` and commit."""
    sub = Subscription(**fields, version=1)
    db.add(sub)
    await db.commit()
    logger.info(f"Created {sub.plan} {sub.billing_mode} subscription {sub.id} for user {sub.user_id} (pending)")
    return sub


async def _write_decision(db: AsyncSession, sub: Subscription, decision: Decision) -> bool:
    """Conditional update keyed on the version that was read. Does not commit."""
    values = dict(decision.changes)
    values["version"] = sub.version + 1
    values["updated_at"] = now_utc()
    result = await db.execute(
        update(Subscription)
        .where(Subscription.id == sub.id, Subscription.version == sub.version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _log_decision(sub: Subscription, decision: Decision) -> None:
    if decision.kind is DecisionKind.APPLY:
        logger.info(
            f"Subscription {sub.id}: {decision.from_status} -> {decision.to_status} "
            f"on {decision.trigger} ({decision.reason})"
        )
    elif decision.kind is DecisionKind.NOOP:
        logger.debug(f"Subscription {sub.id}: {decision.trigger} is a no-op ({decision.reason})")
    else:
        logger.error(f"Subscription {sub.id}: rejected {decision.trigger} in {sub.status} ({decision.reason})")


async def apply_transitions(
    db: AsyncSession,
    steps: Sequence[tuple[int, LifecycleEvent]],
    *,
    policy: LifecyclePolicy = DEFAULT_POLICY,
    now: datetime | None = None,
    before_write: BeforeWrite | None = None,
) -> Outcome:
    """Decide and write one or more transitions in a single transaction.

    The first step is the primary one; its row is the outcome's subscription
    and the others are only written when it applies. Any rejected step aborts
    the whole group. No-op follow-ups are skipped, so converting an
    already-expired trial still activates the paid row.
    """
    if not steps:
        raise ValueError("apply_transitions needs at least one step")
    primary_id = steps[0][0]

    for attempt in range(1, CAS_MAX_ATTEMPTS + 1):
        decided: list[tuple[Subscription, Decision]] = []
        for sub_id, event in steps:
            sub = await get_subscription(db, sub_id, fresh=True)
            if sub is None:
                await db.commit()
                logger.error(f"Subscription {sub_id} not found for {event.trigger}")
                return Outcome.rejected(f"subscription {sub_id} not found")
            decision = decide(sub, event, now or now_utc(), policy)
            decided.append((sub, decision))

        primary, primary_decision = decided[0]
        if primary_decision.kind is DecisionKind.NOOP:
            _log_decision(primary, primary_decision)
            await db.commit()
            return Outcome.noop(primary_decision.reason, primary)
        for sub, decision in decided:
            if decision.kind is DecisionKind.REJECT:
                _log_decision(sub, decision)
                await db.commit()
                data = {"anomaly": True} if decision.anomaly else {}
                return Outcome.rejected(decision.reason, primary, **data)

        to_write = [(sub, decision) for sub, decision in decided if decision.applies]

        if before_write:
            for sub, decision in to_write:
                if not decision.side_effects:
                    continue
                aborted = await before_write(sub, decision)
                if aborted is not None:
                    await db.commit()
                    return aborted

        written = True
        for sub, decision in to_write:
            if not await _write_decision(db, sub, decision):
                written = False
                break

        if written:
            await db.commit()
            for sub, decision in to_write:
                await db.refresh(sub)
                _log_decision(sub, decision)
            return Outcome.applied(primary, reason=primary_decision.reason)

        await db.rollback()
        logger.warning(
            f"Subscription {primary_id}: concurrent update detected (attempt {attempt}/{CAS_MAX_ATTEMPTS})"
        )

    primary = await get_subscription(db, primary_id, fresh=True)
    await db.commit()
    return Outcome.retryable("subscription is being updated concurrently, try again", primary)


async def apply_transition(
    db: AsyncSession,
    sub_id: int,
    event: LifecycleEvent,
    *,
    policy: LifecyclePolicy = DEFAULT_POLICY,
    now: datetime | None = None,
    before_write: BeforeWrite | None = None,
) -> Outcome:
    return await apply_transitions(db, [(sub_id, event)], policy=policy, now=now, before_write=before_write)


async def dispatch(
    db: AsyncSession,
    sub: Subscription,
    event: LifecycleEvent,
    *,
    policy: LifecyclePolicy = DEFAULT_POLICY,
    now: datetime | None = None,
    before_write: BeforeWrite | None = None,
) -> Outcome:
    """Apply ``event`` to ``sub`` together with any linked row changes (trial conversion)."""
    steps = [(sub.id, event), *follow_up_steps(sub, event)]
    return await apply_transitions(db, steps, policy=policy, now=now, before_write=before_write)


# ---------------------------------------------------------------------------
# Reconciliation scans
# ---------------------------------------------------------------------------


def _recurring_active():
    return and_(
        Subscription.status == SubscriptionStatus.ACTIVE.value,
        Subscription.billing_mode == BillingMode.RECURRING.value,
        Subscription.auto_renew.is_(True),
    )


def _due_for_renewal(now: datetime):
    return and_(
        _recurring_active(),
        Subscription.next_billing_date.is_not(None),
        Subscription.next_billing_date <= now,
        Subscription.failed_payment_count == 0,
    )


async def _ids(db: AsyncSession, *criteria, limit: int) -> list[int]:
    result = await db.execute(select(Subscription.id).where(*criteria).order_by(Subscription.id).limit(limit))
    return list(result.scalars().all())


async def due_for_renewal_ids(db: AsyncSession, now: datetime, limit: int) -> list[int]:
    """Recurring rows whose next billing date has passed and that have not failed yet."""
    return await _ids(db, _due_for_renewal(now), limit=limit)


async def failed_renewal_ids(
    db: AsyncSession, now: datetime, backoff: timedelta, limit: int, max_failed: int = MAX_FAILED_PAYMENTS
) -> list[int]:
    """Recurring rows below the cutoff whose last attempt is older than the retry backoff."""
    return await _ids(
        db,
        _recurring_active(),
        Subscription.failed_payment_count > 0,
        Subscription.failed_payment_count < max_failed,
        or_(Subscription.last_renewal_attempt.is_(None), Subscription.last_renewal_attempt < now - backoff),
        limit=limit,
    )


async def expired_ids(
    db: AsyncSession, now: datetime, grace: timedelta, limit: int, max_failed: int = MAX_FAILED_PAYMENTS
) -> list[int]:
    """Active rows past ``end_date`` with no renewal still able to land."""
    awaiting_renewal = and_(
        _recurring_active(),
        Subscription.failed_payment_count < max_failed,
        Subscription.end_date >= now - grace,
    )
    return await _ids(
        db,
        Subscription.status == SubscriptionStatus.ACTIVE.value,
        Subscription.end_date < now,
        not_(awaiting_renewal),
        limit=limit,
    )


async def stale_pending_ids(db: AsyncSession, older_than: datetime, limit: int) -> list[int]:
    return await _ids(
        db,
        Subscription.status == SubscriptionStatus.PENDING.value,
        Subscription.created_at < older_than,
        limit=limit,
    )


async def get_stats(db: AsyncSession, now: datetime, expiring_window: timedelta) -> dict[str, int]:
    """Counts for the operator dashboard."""

    async def count(*criteria) -> int:
        return await db.scalar(select(func.count(Subscription.id)).where(*criteria)) or 0

    active = Subscription.status == SubscriptionStatus.ACTIVE.value
    return {
        "total": await count(),
        "active": await count(active),
        "recurring": await count(active, Subscription.billing_mode == BillingMode.RECURRING.value),
        "due_for_renewal": await count(_due_for_renewal(now)),
        "failed_renewals": await count(_recurring_active(), Subscription.failed_payment_count > 0),
        "expiring": await count(active, Subscription.end_date > now, Subscription.end_date <= now + expiring_window),
    }
