"""Reconciliation scheduler — periodic scans that keep local state in step with the gateway.

A tick runs four independent scans, each with its own session, batch limit
and timeout, so a slow gateway or a broken row in one scan never stops the
others. Only one tick runs at a time across all processes, guarded by the
``reconciliation`` lease.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from billing.config import Settings, get_settings
from billing.constants import REASON_ABANDONED, RECONCILIATION_LEASE
from billing.db.session import async_session_factory
from billing.lifecycle import LifecycleEvent, LifecyclePolicy, Trigger, event_from_gateway_status
from billing.outcome import Outcome, OutcomeKind
from billing.services import subscription_store as store
from billing.services.gateway_client import GatewayError, GatewayTimeoutError, RazorpayGateway, get_gateway
from billing.services.lease_service import acquire_lease, new_holder, release_lease
from billing.services.subscription_service import gateway_side_effects, policy_from_settings
from billing.utils import now_utc

logger = logging.getLogger(__name__)


@dataclass
class ScanReport:
    name: str
    examined: int = 0
    applied: int = 0
    noop: int = 0
    failed: int = 0
    error: str | None = None

    def record(self, outcome: Outcome) -> None:
        if outcome.kind is OutcomeKind.APPLIED:
            self.applied += 1
        elif outcome.kind is OutcomeKind.NOOP:
            self.noop += 1
        else:
            self.failed += 1


async def renew_one(db: AsyncSession, gateway: RazorpayGateway, sub_id: int, policy: LifecyclePolicy) -> Outcome:
    """Ask the gateway what happened to a due renewal and apply the answer."""
    sub = await store.get_subscription(db, sub_id, fresh=True)
    if sub is None:
        return Outcome.rejected(f"subscription {sub_id} not found")
    if not sub.gateway_subscription_id:
        logger.error(f"Recurring subscription {sub.id} has no gateway subscription id")
        return Outcome.rejected("missing gateway subscription id", sub)

    try:
        status = await gateway.fetch_subscription_status(sub.gateway_subscription_id)
    except GatewayTimeoutError:
        event = LifecycleEvent(Trigger.PAYMENT_FAILED, reason="gateway status check timed out")
    except GatewayError as e:
        logger.warning(f"Renewal check for subscription {sub.id} deferred: {e}")
        return Outcome.retryable("gateway unavailable", sub)
    else:
        event = event_from_gateway_status(sub, status.status, status.paid_count)
        if event is None:
            return Outcome.noop(f"gateway reports {status.status}, awaiting charge", sub)

    return await store.dispatch(db, sub, event, policy=policy)


async def _each(
    db: AsyncSession, report: ScanReport, ids: list[int], apply: Callable[[int], Awaitable[Outcome]]
) -> None:
    for sub_id in ids:
        report.examined += 1
        try:
            outcome = await apply(sub_id)
        except Exception:
            logger.exception(f"{report.name}: subscription {sub_id} failed")
            await db.rollback()
            report.failed += 1
            continue
        report.record(outcome)


async def scan_due_for_renewal(
    report: ScanReport, gateway: RazorpayGateway, policy: LifecyclePolicy, settings: Settings, now: datetime
) -> None:
    async with async_session_factory() as db:
        ids = await store.due_for_renewal_ids(db, now, settings.scan_batch_size)
        await _each(db, report, ids, lambda sub_id: renew_one(db, gateway, sub_id, policy))


async def scan_failed_renewals(
    report: ScanReport, gateway: RazorpayGateway, policy: LifecyclePolicy, settings: Settings, now: datetime
) -> None:
    async with async_session_factory() as db:
        backoff = timedelta(hours=settings.renewal_retry_backoff_hours)
        ids = await store.failed_renewal_ids(db, now, backoff, settings.scan_batch_size, policy.max_failed_payments)
        await _each(db, report, ids, lambda sub_id: renew_one(db, gateway, sub_id, policy))


async def scan_expired(
    report: ScanReport, gateway: RazorpayGateway, policy: LifecyclePolicy, settings: Settings, now: datetime
) -> None:
    async with async_session_factory() as db:
        grace = timedelta(hours=settings.renewal_grace_hours)
        ids = await store.expired_ids(db, now, grace, settings.scan_batch_size, policy.max_failed_payments)
        event = LifecycleEvent(Trigger.EXPIRE)
        await _each(db, report, ids, lambda sub_id: store.apply_transition(db, sub_id, event, policy=policy, now=now))


async def scan_stale_pending(
    report: ScanReport, gateway: RazorpayGateway, policy: LifecyclePolicy, settings: Settings, now: datetime
) -> None:
    async with async_session_factory() as db:
        cutoff = now - timedelta(minutes=settings.pending_abandon_minutes)
        ids = await store.stale_pending_ids(db, cutoff, settings.scan_batch_size)
        event = LifecycleEvent(Trigger.ABANDON, reason=REASON_ABANDONED)
        hook = gateway_side_effects(gateway)
        await _each(
            db, report, ids,
            lambda sub_id: store.apply_transition(db, sub_id, event, policy=policy, now=now, before_write=hook),
        )


SCANS = (
    ("due_for_renewal", scan_due_for_renewal),
    ("expired", scan_expired),
    ("failed_renewal_retry", scan_failed_renewals),
    ("stale_pending", scan_stale_pending),
)


async def run_reconciliation(gateway: RazorpayGateway | None = None, now: datetime | None = None) -> dict:
    """Run one reconciliation tick. Returns a per-scan report; ``skipped`` if another run holds the lease."""
    settings = get_settings()
    gateway = gateway or get_gateway()
    policy = policy_from_settings(settings)
    now = now or now_utc()

    holder = new_holder()
    if not await acquire_lease(RECONCILIATION_LEASE, holder, settings.reconciliation_lease_seconds):
        logger.info("Reconciliation already running elsewhere, skipping this tick")
        return {"skipped": True, "started_at": now, "scans": []}

    reports = []
    try:
        for name, scan in SCANS:
            report = ScanReport(name)
            try:
                await asyncio.wait_for(scan(report, gateway, policy, settings, now), settings.scan_timeout_seconds)
            except asyncio.TimeoutError:
                report.error = f"timed out after {settings.scan_timeout_seconds}s"
                logger.error(f"Reconciliation scan {name} {report.error}")
            except Exception as e:
                report.error = str(e) or e.__class__.__name__
                logger.exception(f"Reconciliation scan {name} failed")
            reports.append(report)
            logger.info(
                f"Reconciliation {name}: examined={report.examined} applied={report.applied} "
                f"noop={report.noop} failed={report.failed}"
            )
    finally:
        await release_lease(RECONCILIATION_LEASE, holder)

    return {"skipped": False, "started_at": now, "scans": [asdict(report) for report in reports]}
