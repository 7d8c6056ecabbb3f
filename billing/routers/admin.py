"""Admin routes — stats, maintenance runs and read-only listings for operators."""

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from billing.config import get_settings
from billing.constants import MAX_PAGE_SIZE
from billing.db.session import get_db
from billing.lifecycle import BillingMode, Plan, SubscriptionStatus
from billing.routers.subscriptions import outcome_response
from billing.scheduler_tasks import run_reconciliation
from billing.schemas.subscription import ExtendRequest, SubscriptionPage, SubscriptionStats
from billing.schemas.webhook import WebhookEventOut
from billing.services import subscription_service, webhook_service
from billing.services import subscription_store as store
from billing.services.auth_service import require_admin
from billing.services.gateway_client import RazorpayGateway, get_gateway
from billing.utils import now_utc

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/subscriptions/stats", response_model=SubscriptionStats)
async def subscription_stats(db: AsyncSession = Depends(get_db)):
    settings = get_settings()
    return await store.get_stats(db, now_utc(), timedelta(days=settings.expiring_window_days))


@router.post("/maintenance")
async def run_maintenance(gateway: RazorpayGateway = Depends(get_gateway)):
    """Run the four reconciliation scans now and return their report."""
    report = await run_reconciliation(gateway)
    if report["skipped"]:
        raise HTTPException(status_code=409, detail="Reconciliation is already running")
    return report


@router.get("/subscriptions", response_model=SubscriptionPage)
async def list_subscriptions(
    status: SubscriptionStatus | None = None,
    plan: Plan | None = None,
    billing_mode: BillingMode | None = None,
    user_id: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    db: AsyncSession = Depends(get_db),
):
    items, total = await store.list_subscriptions(
        db, status=status, plan=plan, billing_mode=billing_mode, user_id=user_id, page=page, limit=limit
    )
    return {"items": items, "total": total, "page": page, "limit": limit}


@router.get("/webhook-events")
async def list_webhook_events(
    status: list[str] = Query([webhook_service.ANOMALY, webhook_service.UNRESOLVED, webhook_service.FAILED]),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    db: AsyncSession = Depends(get_db),
):
    """Events that need operator attention."""
    items, total = await webhook_service.list_operator_events(db, status, page, limit)
    return {
        "items": [WebhookEventOut.model_validate(item).model_dump(mode="json") for item in items],
        "total": total,
        "page": page,
        "limit": limit,
    }


@router.post("/subscriptions/{subscription_id}/extend")
async def extend_subscription(subscription_id: int, body: ExtendRequest, db: AsyncSession = Depends(get_db)):
    outcome = await subscription_service.extend_subscription(db, get_settings(), subscription_id, body.days)
    return outcome_response(outcome)
