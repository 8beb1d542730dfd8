"""Admin Billing Routes - manual verification and reconciliation.

Endpoints:
- GET /api/admin/subscriptions - List subscriptions (filter by status)
- POST /api/admin/subscriptions/{subscription_id}/verify-payment - Promote a bank
  transfer from pending_verification to active
- GET /api/admin/subscriptions/{subscription_id}/audit - Audit history
- GET /api/admin/reconciliation-flags - Payments that moved without entitlement
- POST /api/admin/reconciliation-flags/{flag_id}/resolve - Close a flag

NON-NEGOTIABLE RULES:
1. Stripe is the payment authority. The subscription row is the entitlement authority.
2. No admin action marks a card subscription active without a recorded intent.
3. Every admin billing action is audit-logged.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Request
from middleware import require_admin
from models import ResolveFlagRequest, SubscriptionStatus
from services.billing_errors import ValidationError
from services.subscription_store import subscription_store
from utils.audit import billing_history

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin-billing"], dependencies=[Depends(require_admin)])


@router.get("/subscriptions")
async def list_subscriptions(status: Optional[str] = None, limit: int = 100):
    if status is not None:
        try:
            status = SubscriptionStatus(status).value
        except ValueError:
            raise ValidationError(f"Unknown subscription status: {status}")
    subscriptions = await subscription_store.list_by_status(status, limit=min(max(limit, 1), 500))
    return {"subscriptions": subscriptions, "count": len(subscriptions)}


@router.post("/subscriptions/{subscription_id}/verify-payment")
async def verify_payment(subscription_id: str, request: Request):
    """Bank transfer received: activate the subscription."""
    admin = await require_admin(request)
    subscription = await subscription_store.verify_bank_transfer(subscription_id, admin["user_id"])
    return {"success": True, "subscription": subscription}


@router.get("/subscriptions/{subscription_id}/audit")
async def subscription_audit(subscription_id: str, limit: int = 50):
    logs = await billing_history("subscription", subscription_id, limit=limit)
    return {"subscription_id": subscription_id, "audit_logs": logs}


@router.get("/reconciliation-flags")
async def list_reconciliation_flags(status: Optional[str] = "open", limit: int = 100):
    flags = await subscription_store.list_flags(status=status or None, limit=min(max(limit, 1), 500))
    return {"flags": flags, "count": len(flags)}


@router.post("/reconciliation-flags/{flag_id}/resolve")
async def resolve_reconciliation_flag(flag_id: str, request: Request, body: ResolveFlagRequest):
    admin = await require_admin(request)
    flag = await subscription_store.resolve_flag(flag_id, admin["user_id"], note=body.note)
    logger.info(f"Reconciliation flag {flag_id} resolved by {admin['user_id']}")
    return {"success": True, "flag": flag}
