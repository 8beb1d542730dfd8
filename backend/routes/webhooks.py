"""Webhook Routes - payment gateway events.

POST /api/payment-webhook - Stripe payment_intent.* events

Security:
- Body is read as raw bytes and verified against Stripe-Signature before any
  JSON parsing
- A failed verification answers 400 {"error": ...}; nothing is processed
- Once verified the answer is always {"received": true}, so Stripe stops
  redelivering; processing problems are logged and recorded internally
"""
from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
from services.billing_errors import ValidationError
from services.webhook_reconciler import webhook_reconciler
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/api/payment-webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    payload = await request.body()
    try:
        result = await webhook_reconciler.reconcile(payload, stripe_signature)
    except ValidationError as e:
        logger.warning(f"Webhook rejected: {e.message}")
        return JSONResponse(status_code=400, content={"error": e.message})
    
    logger.debug(f"Webhook result: {result.to_dict()}")
    return {"received": True}
