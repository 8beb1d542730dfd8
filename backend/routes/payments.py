"""Payment Routes - payment intents for the card path.

Endpoints:
- POST /api/payment-intents - Create a payment intent for a tokenized card
- POST /api/payment-intents/confirm - Confirm an intent by its client secret

Card data never reaches these routes; the client tokenizes with Stripe.js and
sends only the payment method token.
"""
from fastapi import APIRouter, Request
from models import PaymentAttemptStatus, PaymentIntentConfirmRequest, PaymentIntentRequest
from middleware import require_auth
from services.billing_errors import GatewayError, IntentRefusedError, ValidationError
from services.payment_gateway import intent_id_from_client_secret, payment_gateway
from services.plan_catalog import parse_billing_frequency, parse_plan_id, plan_catalog
from services.subscription_lifecycle import create_payment_intent
from services.subscription_store import subscription_store
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/payment-intents", tags=["payments"])


@router.post("")
async def create_intent(request: Request, body: PaymentIntentRequest):
    """
    Create a payment intent.
    
    When planId is supplied the amount must equal the plan price for the
    chosen frequency, and the intent carries correlation metadata. A refusal
    from the gateway answers 400 with the gateway message.
    """
    user = await require_auth(request)
    user_id = user["user_id"]
    
    plan_id = None
    frequency = None
    if body.plan_id is not None:
        plan = await plan_catalog.get_plan(parse_plan_id(body.plan_id))
        frequency = parse_billing_frequency(body.billing_frequency or "monthly")
        expected = plan_catalog.amount_minor_units(plan, frequency)
        if body.amount_minor_units != expected:
            raise ValidationError(
                f"Amount {body.amount_minor_units} does not match plan price {expected}"
            )
        if body.currency.lower() != plan.currency.lower():
            raise ValidationError(f"Currency must be {plan.currency}")
        plan_id = plan.plan_id
    
    if body.subscription_id:
        await subscription_store.get_owned(body.subscription_id, user_id)
    
    try:
        intent = await create_payment_intent(
            user_id=user_id,
            amount_minor_units=body.amount_minor_units,
            currency=body.currency.lower(),
            payment_method_token=body.payment_method_token,
            plan_id=plan_id,
            billing_frequency=frequency,
            subscription_id=body.subscription_id,
        )
    except GatewayError as e:
        logger.warning("PAYMENT_INTENT_REFUSED user_id=%s error=%s", user_id, e.message)
        raise IntentRefusedError(e.message, e.details) from e
    return {
        "clientSecret": intent["client_secret"],
        "status": intent["status"],
        "intentId": intent["intent_id"],
    }


@router.post("/confirm")
async def confirm_intent(request: Request, body: PaymentIntentConfirmRequest):
    """Confirm server-side. Returns {status, intentId} (and error when declined)."""
    user = await require_auth(request)
    
    intent_id = intent_id_from_client_secret(body.client_secret)
    intent = payment_gateway.retrieve_payment_intent(intent_id)
    owner = (intent.get("metadata") or {}).get("user_id")
    if owner and owner != user["user_id"]:
        raise ValidationError("Payment intent belongs to another user")
    
    result = payment_gateway.confirm_payment_intent(body.client_secret)
    status = result["status"]
    
    attempt_status = {
        "succeeded": PaymentAttemptStatus.SUCCEEDED,
        "requires_action": PaymentAttemptStatus.REQUIRES_ACTION,
        "failed": PaymentAttemptStatus.FAILED,
    }.get(status)
    if attempt_status:
        await subscription_store.update_attempt(
            intent_id=intent_id, status=attempt_status, error=result.get("error"),
        )
    
    response = {"status": status, "intentId": intent_id}
    if result.get("error"):
        response["error"] = result["error"]
    if status == "requires_action":
        response["clientSecret"] = body.client_secret
    return response
