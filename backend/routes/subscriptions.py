"""Subscription Routes - plans and the subscription lifecycle.

Endpoints:
- GET /api/subscription-plans - Active plans with display pricing (VAT line)
- GET /api/subscription-plans/{plan_id} - One plan
- GET /api/subscription - Caller's current subscription
- POST /api/subscriptions - Select a plan (free, card or bank transfer)
- PUT /api/subscriptions/{subscription_id} - Change plan on an existing subscription

POST and PUT are idempotent on paymentIntentId: a retry returns the same
resource with 200 and never creates a second record. The body is the stored
subscription row; the per-attempt lifecycle outcome travels in the
X-Lifecycle-* response headers.
"""
from fastapi import APIRouter, Request, Response
from typing import Any, Dict, Optional
from models import SubscriptionRequest
from middleware import require_auth
from services.billing_errors import SubscriptionNotFoundError
from services.plan_catalog import parse_plan_id, plan_catalog
from services.subscription_lifecycle import SubscriptionLifecycleManager
from services.subscription_store import subscription_store
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["subscriptions"])


def _lifecycle_response(snapshot: Dict[str, Any], response: Response) -> Dict[str, Any]:
    response.headers["X-Lifecycle-Attempt-Id"] = snapshot["attempt_id"]
    response.headers["X-Lifecycle-State"] = snapshot["state"]
    if snapshot.get("amount_minor_units") is not None:
        response.headers["X-Lifecycle-Amount"] = f"{snapshot['amount_minor_units']} {snapshot['currency']}"
    return snapshot.get("subscription") or {}


def _payment_info(body: SubscriptionRequest) -> Optional[Dict[str, Any]]:
    if body.payment_info is None:
        return None
    return body.payment_info.model_dump(exclude_none=True) or None


@router.get("/subscription-plans")
async def list_plans():
    plans = await plan_catalog.get_all_plans()
    return {"plans": [plan_catalog.to_public_dict(p) for p in plans]}


@router.get("/subscription-plans/{plan_id}")
async def get_plan(plan_id: str):
    plan = await plan_catalog.get_plan(parse_plan_id(plan_id))
    return plan_catalog.to_public_dict(plan)


@router.get("/subscription")
async def get_current_subscription(request: Request):
    """Current subscription with its plan, or 404 when the user never subscribed."""
    user = await require_auth(request)
    subscription = await subscription_store.get_for_user(user["user_id"])
    if not subscription:
        raise SubscriptionNotFoundError("No subscription for this user")
    
    plan = await plan_catalog.find_plan(subscription.get("plan_id"))
    subscription["plan"] = plan_catalog.to_public_dict(plan) if plan else None
    return subscription


@router.post("/subscriptions")
async def create_subscription(request: Request, response: Response, body: SubscriptionRequest):
    """
    Run one lifecycle attempt for the caller.
    
    - Free plan: activated immediately, no payment
    - bank_transfer: recorded as pending_verification, with paymentInfo
      (billing contact) stored on the subscription
    - credit_card: paymentIntentId (confirmed client-side) or
      paymentMethodToken (created and confirmed here)
    """
    user = await require_auth(request)
    manager = SubscriptionLifecycleManager(user_id=user["user_id"])
    snapshot = await manager.execute(
        plan_id=body.plan_id,
        billing_frequency=body.billing_frequency,
        payment_method=body.payment_method,
        payment_method_token=body.payment_method_token,
        payment_intent_id=body.payment_intent_id,
        payment_info=_payment_info(body),
    )
    logger.info(
        "SUBSCRIPTION_REQUEST_DONE user_id=%s attempt_id=%s state=%s changed=%s",
        user["user_id"], snapshot["attempt_id"], snapshot["state"], manager.changed,
    )
    return _lifecycle_response(snapshot, response)


@router.put("/subscriptions/{subscription_id}")
async def change_subscription(subscription_id: str, request: Request, response: Response, body: SubscriptionRequest):
    """Plan change on an existing subscription. Same body shape as POST."""
    user = await require_auth(request)
    await subscription_store.get_owned(subscription_id, user["user_id"])
    
    manager = SubscriptionLifecycleManager(user_id=user["user_id"], subscription_id=subscription_id)
    snapshot = await manager.execute(
        plan_id=body.plan_id,
        billing_frequency=body.billing_frequency,
        payment_method=body.payment_method,
        payment_method_token=body.payment_method_token,
        payment_intent_id=body.payment_intent_id,
        payment_info=_payment_info(body),
    )
    return _lifecycle_response(snapshot, response)
