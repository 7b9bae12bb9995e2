"""Payment provider webhook routes."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.api.deps import get_db
from app.errors import InvalidSignature, WebhookRejected
from app.schemas.webhook import WebhookAck
from app.services.payment_gateway import paystack_gateway
from app.services.stripe_gateway import stripe_gateway
from app.services.stripe_webhooks import StripeWebhookReconciler
from app.services.webhooks import ReconciliationError, WebhookReconciler

logger = logging.getLogger(__name__)
router = APIRouter(tags=["payments"])


@router.post("/webhook", response_model=WebhookAck)
async def paystack_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Paystack webhook. No auth, the body signature is verified instead."""
    if not paystack_gateway.is_configured():
        raise HTTPException(status_code=503, detail="Payment gateway not configured")

    body = await request.body()
    signature = request.headers.get("x-paystack-signature", "")
    if not paystack_gateway.validate_webhook_signature(body, signature):
        raise InvalidSignature("Invalid signature")

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise WebhookRejected("Invalid JSON") from exc

    try:
        outcome, event_id = WebhookReconciler(db).handle(payload)
    except ReconciliationError as exc:
        raise HTTPException(
            status_code=500,
            detail={"code": "webhook_processing_failed", "message": str(exc)},
        ) from exc
    return WebhookAck(status=outcome.value, event_id=event_id)


@router.post("/webhook/stripe", response_model=WebhookAck)
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Stripe webhook, verified against the endpoint signing secret."""
    if not stripe_gateway.accepts_webhooks():
        raise HTTPException(status_code=503, detail="Payment gateway not configured")

    body = await request.body()
    signature = request.headers.get("stripe-signature", "")
    if not stripe_gateway.validate_webhook_signature(body, signature):
        raise InvalidSignature("Invalid signature")

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise WebhookRejected("Invalid JSON") from exc

    try:
        outcome, event_id = StripeWebhookReconciler(db).handle(payload)
    except ReconciliationError as exc:
        raise HTTPException(
            status_code=500,
            detail={"code": "webhook_processing_failed", "message": str(exc)},
        ) from exc
    return WebhookAck(status=outcome.value, event_id=event_id)
