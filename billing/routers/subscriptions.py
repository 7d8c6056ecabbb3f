"""Subscription routes — plans, checkout, verification and self-service actions."""

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from billing.config import get_settings
from billing.constants import HISTORY_PAGE_SIZE, MAX_PAGE_SIZE
from billing.db.session import get_db
from billing.outcome import Outcome
from billing.schemas.subscription import (
    CancelRequest,
    ConvertTrialRequest,
    CreateOrderRequest,
    OutcomeOut,
    PlanOut,
    SubscriptionOut,
    SubscriptionPage,
    SubscriptionStatusOut,
    VerifyPaymentRequest,
)
from billing.services import subscription_service
from billing.services import subscription_store as store
from billing.services.auth_service import get_current_user_id, get_package_id
from billing.services.gateway_client import RazorpayGateway, get_gateway

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def outcome_response(outcome: Outcome) -> JSONResponse:
    """Serialize an Outcome with the HTTP status its kind maps to."""
    status_code = outcome.http_status
    if outcome.data.get("bad_signature"):
        status_code = 400
    body = OutcomeOut(
        kind=outcome.kind.value,
        reason=outcome.reason,
        subscription=SubscriptionOut.model_validate(outcome.subscription) if outcome.subscription else None,
        data={k: v for k, v in outcome.data.items() if k not in ("bad_signature", "anomaly")},
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@router.get("/plans", response_model=list[PlanOut])
async def get_plans():
    return subscription_service.list_plans(get_settings())


@router.post("/orders")
async def create_order(
    body: CreateOrderRequest,
    user_id: str = Depends(get_current_user_id),
    package_id: str = Depends(get_package_id),
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    outcome = await subscription_service.create_order(
        db, gateway, get_settings(), user_id, package_id, body.plan, body.billing_mode, body
    )
    return outcome_response(outcome)


@router.post("/verify")
async def verify_payment(
    body: VerifyPaymentRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    outcome = await subscription_service.verify_payment(db, gateway, get_settings(), user_id, body)
    return outcome_response(outcome)


@router.get("/status", response_model=SubscriptionStatusOut)
async def get_status(
    user_id: str = Depends(get_current_user_id),
    package_id: str = Depends(get_package_id),
    db: AsyncSession = Depends(get_db),
):
    return await subscription_service.get_user_status(db, user_id, package_id)


@router.post("/cancel")
async def cancel(
    body: CancelRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    package_id: str = Depends(get_package_id),
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    reason = body.reason if body else None
    outcome = await subscription_service.cancel_subscription(db, gateway, get_settings(), user_id, package_id, reason)
    return outcome_response(outcome)


@router.post("/reactivate")
async def reactivate(
    user_id: str = Depends(get_current_user_id),
    package_id: str = Depends(get_package_id),
    db: AsyncSession = Depends(get_db),
):
    outcome = await subscription_service.reactivate_subscription(db, get_settings(), user_id, package_id)
    return outcome_response(outcome)


@router.post("/convert")
async def convert_trial(
    body: ConvertTrialRequest,
    user_id: str = Depends(get_current_user_id),
    package_id: str = Depends(get_package_id),
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    outcome = await subscription_service.start_trial_conversion(
        db, gateway, get_settings(), user_id, package_id, body.billing_mode, body
    )
    return outcome_response(outcome)


@router.get("/history", response_model=SubscriptionPage)
async def history(
    page: int = Query(1, ge=1),
    limit: int = Query(HISTORY_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    user_id: str = Depends(get_current_user_id),
    package_id: str = Depends(get_package_id),
    db: AsyncSession = Depends(get_db),
):
    items, total = await store.list_user_history(db, user_id, package_id, page, limit)
    if page > 1 and not items and total:
        raise HTTPException(status_code=404, detail="Page out of range")
    return {"items": items, "total": total, "page": page, "limit": limit}
