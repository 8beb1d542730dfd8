"""Billing audit trail.

One record per billing event: payment intents created or failed, subscription
plan/status transitions, admin verification, reconciliation flags. For
subscription changes only the billing-relevant fields are kept, as a
``{field: {"from": old, "to": new}}`` transition.
"""
from database import database
from models import AuditLog, AuditAction, UserRole
from pymongo.errors import PyMongoError
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

TRANSITION_FIELDS = (
    "plan_id",
    "billing_frequency",
    "status",
    "is_active",
    "payment_method",
    "payment_intent_id",
)


def subscription_transition(
    before: Optional[Dict[str, Any]],
    after: Optional[Dict[str, Any]],
) -> Dict[str, Dict[str, Any]]:
    """Tracked subscription fields whose value differs between the two rows."""
    before = before or {}
    after = after or {}
    return {
        field: {"from": before.get(field), "to": after.get(field)}
        for field in TRANSITION_FIELDS
        if before.get(field) != after.get(field)
    }


async def record_billing_event(
    action: AuditAction,
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    actor_role: Optional[UserRole] = None,
    actor_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """Write one audit record. Returns its id, or None if the write failed.

    ``before``/``after`` are subscription rows; pass them for transitions.
    An audit failure is logged and never fails the billing operation.
    """
    transition = subscription_transition(before, after) if (before or after) else None
    entry = AuditLog(
        action=action,
        actor_role=actor_role,
        actor_id=actor_id,
        user_id=user_id,
        resource_type=resource_type,
        resource_id=resource_id,
        transition=transition or None,
        metadata=metadata or None,
    )
    try:
        db = database.get_db()
        await db.audit_logs.insert_one(entry.model_dump(mode="json"))
    except PyMongoError as e:
        logger.error(
            "AUDIT_WRITE_FAILED action=%s resource=%s/%s error=%s",
            action.value, resource_type, resource_id, e,
        )
        return None

    logger.info(
        "AUDIT action=%s resource=%s/%s changed=%s",
        action.value, resource_type, resource_id, ",".join(transition or {}) or "-",
    )
    return entry.audit_id


async def billing_history(resource_type: str, resource_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Audit records for one resource, newest first."""
    db = database.get_db()
    cursor = db.audit_logs.find(
        {"resource_type": resource_type, "resource_id": resource_id},
        {"_id": 0},
    ).sort("timestamp", -1).limit(limit)
    return await cursor.to_list(length=limit)
