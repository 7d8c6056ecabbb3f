"""Webhook routes — Razorpay."""

import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from billing.config import get_settings
from billing.constants import WEBHOOK_PROVIDER
from billing.db.session import get_db
from billing.schemas.webhook import WebhookAck
from billing.services.gateway_client import RazorpayGateway, get_gateway
from billing.services.subscription_service import policy_from_settings
from billing.services.tenant_filter import TenantConfig
from billing.services.webhook_service import handle_webhook

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}", response_model=WebhookAck)
async def gateway_webhook(
    provider: str,
    request: Request,
    x_razorpay_signature: str | None = Header(None),
    x_razorpay_event_id: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    if provider != WEBHOOK_PROVIDER:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")

    settings = get_settings()
    body = await request.body()

    if not gateway.verify_webhook_signature(body, x_razorpay_signature):
        logger.warning("Rejected webhook with invalid or missing signature")
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        envelope = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(envelope, dict):
        raise HTTPException(status_code=400, detail="Body is not a JSON object")

    return await handle_webhook(
        db,
        provider,
        body,
        envelope,
        x_razorpay_event_id,
        TenantConfig.from_settings(settings),
        policy_from_settings(settings),
    )
