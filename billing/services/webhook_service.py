"""Webhook ingestion — normalize, filter, record, resolve and dispatch gateway events.

The HTTP layer verifies the signature on the raw body and hands the parsed
envelope to :func:`handle_webhook`. From there every event is recorded once in
``webhook_events`` (keyed by the gateway's event id) before anything touches a
subscription, so the endpoint can always answer 200 and let replay deal with
anything that could not be applied yet.
"""

import hashlib
import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.config import get_settings
from billing.db.session import async_session_factory
from billing.lifecycle import DEFAULT_POLICY, BillingMode, LifecycleEvent, LifecyclePolicy, Trigger
from billing.models.subscription import Subscription
from billing.models.webhook_event import WebhookEvent
from billing.outcome import OutcomeKind
from billing.schemas.webhook import GatewayEvent, GatewayEventKind, WebhookAck
from billing.services import subscription_store as store
from billing.services.tenant_filter import TenantConfig, should_ignore
from billing.utils import now_utc

logger = logging.getLogger(__name__)

# webhook_events.status values
RECEIVED = "received"
PROCESSED = "processed"
IGNORED = "ignored"
UNRESOLVED = "unresolved"
FAILED = "failed"
REJECTED = "rejected"
ANOMALY = "anomaly"

FINISHED = frozenset({PROCESSED, IGNORED, REJECTED, ANOMALY})
REPLAYABLE = frozenset({RECEIVED, UNRESOLVED, FAILED})

EVENT_KINDS = {
    "subscription.charged": GatewayEventKind.CHARGED,
    "subscription.cancelled": GatewayEventKind.CANCELLED,
    "subscription.completed": GatewayEventKind.COMPLETED,
    "payment.failed": GatewayEventKind.PAYMENT_FAILED,
    "payment.captured": GatewayEventKind.CHARGED,
}

TRIGGERS = {
    GatewayEventKind.CHARGED: Trigger.CHARGED,
    GatewayEventKind.CANCELLED: Trigger.GATEWAY_CANCELLED,
    GatewayEventKind.COMPLETED: Trigger.COMPLETED,
    GatewayEventKind.PAYMENT_FAILED: Trigger.PAYMENT_FAILED,
}


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _entity(payload: dict, name: str) -> dict:
    wrapper = payload.get(name)
    if isinstance(wrapper, dict) and isinstance(wrapper.get("entity"), dict):
        return wrapper["entity"]
    return {}


def _notes(entity: dict) -> dict:
    # Razorpay serializes empty notes as []
    notes = entity.get("notes")
    return notes if isinstance(notes, dict) else {}


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def normalize_event(envelope: dict) -> GatewayEvent:
    """Collapse the payload variants Razorpay sends into one GatewayEvent.

    Handles ``payload.subscription.entity`` + ``payload.payment.entity`` as
    well as the older bare ``payload.entity`` shape.
    """
    event_name = str(envelope.get("event") or "")
    payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}

    subscription = _entity(payload, "subscription")
    payment = _entity(payload, "payment")
    bare = payload.get("entity") if isinstance(payload.get("entity"), dict) else {}

    if not subscription and not payment and bare:
        if event_name.startswith("subscription."):
            subscription = bare
        else:
            payment = bare

    gateway_subscription_id = subscription.get("id") or payment.get("subscription_id")
    notes = {**_notes(payment), **_notes(subscription)}

    kind = EVENT_KINDS.get(event_name)
    if event_name == "payment.captured" and gateway_subscription_id:
        # Recurring charges also arrive as subscription.charged; only one-time orders count here.
        kind = None

    return GatewayEvent(
        event_name=event_name,
        kind=kind,
        gateway_subscription_id=gateway_subscription_id,
        payment_id=payment.get("id"),
        order_id=payment.get("order_id"),
        amount=_as_int(payment.get("amount")),
        currency=payment.get("currency"),
        paid_count=_as_int(subscription.get("paid_count")),
        status=subscription.get("status") or payment.get("status"),
        description=payment.get("description"),
        notes=notes,
    )


def event_fingerprint(body: bytes, event_id: str | None) -> str:
    """The gateway's event id, or a digest of the raw body when the header is missing."""
    if event_id:
        return event_id
    return "sha256:" + hashlib.sha256(body).hexdigest()


def lifecycle_event_for(event: GatewayEvent) -> LifecycleEvent:
    return LifecycleEvent(
        trigger=TRIGGERS[event.kind],
        payment_id=event.payment_id,
        order_id=event.order_id,
        paid_count=event.paid_count,
    )


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------


async def _find_record(db: AsyncSession, event_id: str) -> WebhookEvent | None:
    result = await db.execute(
        select(WebhookEvent).where(WebhookEvent.event_id == event_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def record_event(
    db: AsyncSession, provider: str, event_id: str, event: GatewayEvent, envelope: dict
) -> tuple[WebhookEvent, bool]:
    """Insert the event log row. Returns ``(record, created)``; a duplicate returns the existing row."""
    existing = await _find_record(db, event_id)
    if existing:
        return existing, False

    record = WebhookEvent(
        provider=provider,
        event_id=event_id,
        event_name=event.event_name,
        kind=event.kind.value if event.kind else None,
        status=RECEIVED,
        gateway_subscription_id=event.gateway_subscription_id,
        payment_id=event.payment_id,
        order_id=event.order_id,
        payload=envelope,
        received_at=now_utc(),
    )
    db.add(record)
    try:
        await db.commit()
    except IntegrityError:
        # Concurrent delivery of the same event won the insert
        await db.rollback()
        existing = await _find_record(db, event_id)
        return existing, False
    return record, True


async def _finish(db: AsyncSession, record: WebhookEvent, status: str, reason: str, sub: Subscription | None = None) -> None:
    record.status = status
    record.reason = reason
    if sub is not None:
        record.subscription_id = sub.id
    if status in FINISHED:
        record.processed_at = now_utc()
    await db.commit()
    await db.refresh(record)


# ---------------------------------------------------------------------------
# Resolution and dispatch
# ---------------------------------------------------------------------------


async def resolve_subscription(db: AsyncSession, event: GatewayEvent) -> Subscription | None:
    """Gateway subscription id first, then payment id, then order id."""
    if event.gateway_subscription_id:
        sub = await store.find_by_gateway_subscription_id(db, event.gateway_subscription_id)
        if sub:
            return sub
    if event.payment_id:
        sub = await store.find_by_payment_id(db, event.payment_id)
        if sub:
            return sub
    if event.order_id:
        return await store.find_by_order_id(db, event.order_id)
    return None


async def process_event(
    db: AsyncSession, record: WebhookEvent, event: GatewayEvent, policy: LifecyclePolicy = DEFAULT_POLICY
) -> str:
    """Resolve and apply a recorded event; returns the record's new status."""
    record.attempts += 1
    await db.commit()
    sub = await resolve_subscription(db, event)
    if sub is None:
        reason = "no local subscription matches this event"
        logger.warning(f"Webhook {record.event_id} ({event.event_name}) unresolved: {reason}")
        await _finish(db, record, UNRESOLVED, reason)
        return UNRESOLVED

    if event.event_name == "payment.captured" and sub.billing_mode != BillingMode.ONE_TIME:
        await _finish(db, record, IGNORED, "captured payment belongs to a recurring subscription", sub)
        return IGNORED

    outcome = await store.dispatch(db, sub, lifecycle_event_for(event), policy=policy)

    if outcome.kind is OutcomeKind.REJECTED and outcome.data.get("anomaly"):
        logger.error(
            f"Webhook {record.event_id} ({event.event_name}) needs operator attention for subscription {sub.id}: "
            f"{outcome.reason} (payment {event.payment_id}, order {event.order_id})"
        )
        await _finish(db, record, ANOMALY, outcome.reason, sub)
        return ANOMALY
    if outcome.kind is OutcomeKind.REJECTED:
        logger.error(f"Webhook {record.event_id} ({event.event_name}) rejected for subscription {sub.id}: {outcome.reason}")
        await _finish(db, record, REJECTED, outcome.reason, sub)
        return REJECTED
    if outcome.kind is OutcomeKind.RETRYABLE:
        await _finish(db, record, FAILED, outcome.reason, sub)
        return FAILED

    await _finish(db, record, PROCESSED, f"{outcome.kind}: {outcome.reason}", sub)
    return PROCESSED


async def handle_webhook(
    db: AsyncSession,
    provider: str,
    body: bytes,
    envelope: dict,
    event_id: str | None,
    tenant: TenantConfig,
    policy: LifecyclePolicy = DEFAULT_POLICY,
) -> WebhookAck:
    """Process one authenticated webhook. Never raises for event-level problems."""
    event = normalize_event(envelope)
    fingerprint = event_fingerprint(body, event_id)
    logger.info(f"Webhook {provider}:{event.event_name} ({fingerprint})")

    record, created = await record_event(db, provider, fingerprint, event, envelope)
    if not created and record.status in FINISHED:
        return WebhookAck(accepted=True, status=record.status, reason="duplicate delivery")

    if not event.supported:
        await _finish(db, record, IGNORED, f"unhandled event {event.event_name or '(none)'}")
        return WebhookAck(accepted=True, status=IGNORED, reason="event ignored")

    tenant_decision = should_ignore(event, tenant)
    if tenant_decision.ignore:
        await _finish(db, record, IGNORED, tenant_decision.reason)
        return WebhookAck(accepted=True, status=IGNORED, reason=tenant_decision.reason)

    try:
        status = await process_event(db, record, event, policy)
    except Exception:
        logger.exception(f"Webhook {fingerprint} failed while processing")
        await db.rollback()
        record = await _find_record(db, fingerprint)
        await _finish(db, record, FAILED, "processing error")
        status = FAILED

    return WebhookAck(accepted=True, status=status, reason=record.reason or "")


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------


async def replay_event(db: AsyncSession, record: WebhookEvent, max_attempts: int, policy: LifecyclePolicy) -> str:
    event = normalize_event(record.payload or {})
    if not event.supported:
        await _finish(db, record, IGNORED, f"unhandled event {event.event_name}")
        return IGNORED

    status = await process_event(db, record, event, policy)
    if status in (UNRESOLVED, FAILED) and record.attempts >= max_attempts:
        logger.error(
            f"Webhook {record.event_id} ({record.event_name}) still {status} after {record.attempts} attempts, "
            "needs operator attention"
        )
        await _finish(db, record, ANOMALY, f"gave up after {record.attempts} attempts: {record.reason}")
        return ANOMALY
    return status


async def replay_unresolved_events(policy: LifecyclePolicy = DEFAULT_POLICY, limit: int = 100) -> dict[str, int]:
    """Retry events that could not be applied yet; exhausted or aged-out ones become anomalies."""
    settings = get_settings()
    now = now_utc()
    window_start = now - timedelta(hours=settings.webhook_replay_window_hours)
    counts: dict[str, int] = {}

    async with async_session_factory() as db:
        result = await db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.status.in_(REPLAYABLE))
            .order_by(WebhookEvent.received_at)
            .limit(limit)
        )
        records = list(result.scalars().all())

        for record in records:
            if record.received_at < window_start:
                logger.error(f"Webhook {record.event_id} ({record.event_name}) aged out of the replay window")
                await _finish(db, record, ANOMALY, f"not applied within {settings.webhook_replay_window_hours}h: {record.reason}")
                status = ANOMALY
            else:
                try:
                    status = await replay_event(db, record, settings.webhook_replay_attempts, policy)
                except Exception:
                    logger.exception(f"Replay of webhook {record.event_id} failed")
                    await db.rollback()
                    status = FAILED
            counts[status] = counts.get(status, 0) + 1

    if records:
        logger.info(f"Webhook replay: {len(records)} events, {counts}")
    return counts


async def list_operator_events(
    db: AsyncSession, statuses: list[str], page: int = 1, limit: int = 20
) -> tuple[list[WebhookEvent], int]:
    base = select(WebhookEvent).where(WebhookEvent.status.in_(statuses))
    total = await db.scalar(select(func.count()).select_from(base.subquery()))
    result = await db.execute(base.order_by(WebhookEvent.received_at.desc()).offset((page - 1) * limit).limit(limit))
    return list(result.scalars().all()), total or 0


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

# Anomalies stay until an operator deals with them; replayable rows are still in flight.
PURGEABLE = frozenset({PROCESSED, IGNORED, REJECTED})


async def purge_finished_events(db: AsyncSession, older_than: timedelta, now=None) -> int:
    """Delete settled event log rows received before ``now - older_than``."""
    cutoff = (now or now_utc()) - older_than
    result = await db.execute(
        delete(WebhookEvent)
        .where(WebhookEvent.status.in_(PURGEABLE), WebhookEvent.received_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0


async def cleanup_webhook_events() -> int:
    """Daily retention pass over ``webhook_events``."""
    settings = get_settings()
    async with async_session_factory() as db:
        deleted = await purge_finished_events(db, timedelta(days=settings.webhook_retention_days))
    logger.info(f"Webhook retention: deleted {deleted} events older than {settings.webhook_retention_days} days")
    return deleted
