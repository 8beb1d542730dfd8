"""Subscription Store - every write to subscriptions goes through here.

Shared by the synchronous lifecycle and the webhook reconciler so that both
paths converge on the same row. There is no locking: convergence comes from
the unique index on ``payment_intent_ids`` and the one-row-per-user index,
plus conditional updates that refuse to re-apply a recorded intent.

Persistence after a confirmed payment is retried locally (never by charging
again). When retries run out, a reconciliation flag is written for manual
follow-up and PersistenceError is raised.
"""
import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError, PyMongoError

from database import database
from models import (
    AuditAction,
    BillingFrequency,
    PaymentAttempt,
    PaymentAttemptStatus,
    PaymentMethod,
    Plan,
    ReconciliationFlag,
    ReconciliationFlagStatus,
    Subscription,
    SubscriptionStatus,
    UserRole,
)
from services.billing_errors import (
    BillingError,
    ForbiddenError,
    PersistenceError,
    SubscriptionNotFoundError,
    ValidationError,
)
from services.plan_catalog import plan_catalog
from utils.audit import record_billing_event

logger = logging.getLogger(__name__)

PERSIST_MAX_ATTEMPTS = int(os.getenv("SUBSCRIPTION_PERSIST_MAX_ATTEMPTS", "3"))
PERSIST_RETRY_DELAY_SECONDS = float(os.getenv("SUBSCRIPTION_PERSIST_RETRY_DELAY_SECONDS", "0.5"))


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


class SubscriptionStore:
    """Mongo-backed subscription, payment attempt and reconciliation records."""
    
    # =========================================================================
    # Reads
    # =========================================================================
    
    async def get_for_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.subscriptions.find_one({"user_id": user_id}, {"_id": 0})
    
    async def get_by_id(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.subscriptions.find_one({"subscription_id": subscription_id}, {"_id": 0})
    
    async def find_by_intent(self, intent_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.subscriptions.find_one({"payment_intent_ids": intent_id}, {"_id": 0})
    
    async def list_by_status(self, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        db = database.get_db()
        query = {"status": status} if status else {}
        return await db.subscriptions.find(query, {"_id": 0}).sort("updated_at", -1).to_list(limit)
    
    async def get_owned(self, subscription_id: str, user_id: str) -> Dict[str, Any]:
        subscription = await self.get_by_id(subscription_id)
        if not subscription:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        if subscription.get("user_id") != user_id:
            raise ForbiddenError("Subscription belongs to another user")
        return subscription
    
    # =========================================================================
    # Writes
    # =========================================================================
    
    async def persist(
        self,
        user_id: str,
        plan: Plan,
        billing_frequency: BillingFrequency,
        payment_method: Optional[PaymentMethod],
        status: SubscriptionStatus,
        payment_intent_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        source: str = "lifecycle",
        payment_info: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """Write the subscription, retrying transient database failures.
        
        Returns (subscription, changed). ``changed`` is False when the intent
        was already recorded, i.e. this call was a retry or a duplicate.
        ``payment_info`` is the billing contact for bank transfers; it replaces
        whatever the row held before.
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, max(PERSIST_MAX_ATTEMPTS, 1) + 1):
            try:
                return await self._persist_once(
                    user_id, plan, billing_frequency, payment_method, status,
                    payment_intent_id, subscription_id, payment_info,
                )
            except BillingError:
                raise
            except PyMongoError as e:
                last_error = e
                logger.warning(
                    "SUBSCRIPTION_PERSIST_RETRY attempt=%s/%s user_id=%s intent_id=%s error=%s",
                    attempt, PERSIST_MAX_ATTEMPTS, user_id, payment_intent_id, e,
                )
                if attempt < PERSIST_MAX_ATTEMPTS:
                    await asyncio.sleep(PERSIST_RETRY_DELAY_SECONDS)
        
        logger.critical(
            "SUBSCRIPTION_PERSIST_EXHAUSTED user_id=%s plan_id=%s intent_id=%s source=%s error=%s",
            user_id, plan.plan_id, payment_intent_id, source, last_error,
        )
        flag_id = None
        if payment_intent_id:
            # Money has moved; entitlement has not
            flag_id = await self.flag_for_reconciliation(
                user_id=user_id,
                plan_id=plan.plan_id,
                billing_frequency=billing_frequency,
                intent_id=payment_intent_id,
                subscription_id=subscription_id,
                source=source,
                error=str(last_error),
            )
        raise PersistenceError(
            "Payment was received but the subscription could not be updated. "
            "It has been flagged for manual reconciliation." if payment_intent_id
            else "Subscription could not be saved. Please retry.",
            intent_id=payment_intent_id,
            flag_id=flag_id,
        )
    
    async def _persist_once(
        self,
        user_id: str,
        plan: Plan,
        billing_frequency: BillingFrequency,
        payment_method: Optional[PaymentMethod],
        status: SubscriptionStatus,
        payment_intent_id: Optional[str],
        subscription_id: Optional[str],
        payment_info: Optional[Dict[str, Any]] = None,
        allow_race_retry: bool = True,
    ) -> Tuple[Dict[str, Any], bool]:
        db = database.get_db()
        
        # Idempotency: an intent already recorded means this write already happened
        if payment_intent_id:
            recorded = await self.find_by_intent(payment_intent_id)
            if recorded:
                if recorded.get("user_id") != user_id:
                    raise ValidationError("Payment intent is already attached to another subscription")
                logger.info(
                    "SUBSCRIPTION_PERSIST_DUPLICATE intent_id=%s subscription_id=%s",
                    payment_intent_id, recorded.get("subscription_id"),
                )
                return recorded, False
        
        if subscription_id:
            target = await self.get_owned(subscription_id, user_id)
        else:
            target = await self.get_for_user(user_id)
        
        now = datetime.now(timezone.utc)
        fields = {
            "plan_id": plan.plan_id,
            "billing_frequency": billing_frequency.value,
            "status": status.value,
            "is_active": status == SubscriptionStatus.ACTIVE,
            "payment_method": _enum_value(payment_method),
            "start_date": now,
            "end_date": plan_catalog.period_end(plan, billing_frequency, now),
            "payment_intent_id": payment_intent_id,
            "payment_info": payment_info,
            "updated_at": now,
        }
        
        if target:
            query: Dict[str, Any] = {"subscription_id": target["subscription_id"]}
            update: Dict[str, Any] = {"$set": fields}
            if payment_intent_id:
                # Conditional on the intent not being recorded yet (webhook may race us)
                query["payment_intent_ids"] = {"$ne": payment_intent_id}
                update["$addToSet"] = {"payment_intent_ids": payment_intent_id}
            result = await db.subscriptions.update_one(query, update)
            updated = await self.get_by_id(target["subscription_id"])
            if payment_intent_id and result.modified_count == 0:
                logger.info(
                    "SUBSCRIPTION_PERSIST_RACE_LOST intent_id=%s subscription_id=%s",
                    payment_intent_id, target["subscription_id"],
                )
                return updated, False
            await record_billing_event(
                action=AuditAction.SUBSCRIPTION_PLAN_CHANGED,
                user_id=user_id,
                resource_type="subscription",
                resource_id=target["subscription_id"],
                before=target,
                after=updated,
                metadata={"payment_intent_id": payment_intent_id},
            )
            return updated, True
        
        subscription = Subscription(
            user_id=user_id,
            plan_id=plan.plan_id,
            billing_frequency=billing_frequency,
            status=status,
            is_active=status == SubscriptionStatus.ACTIVE,
            payment_method=payment_method,
            payment_intent_id=payment_intent_id,
            payment_intent_ids=[payment_intent_id] if payment_intent_id else [],
            payment_info=payment_info,
            start_date=now,
            end_date=fields["end_date"],
            created_at=now,
            updated_at=now,
        )
        doc = subscription.model_dump()
        doc["billing_frequency"] = billing_frequency.value
        doc["status"] = status.value
        doc["payment_method"] = _enum_value(payment_method)
        try:
            await db.subscriptions.insert_one(doc)
        except DuplicateKeyError:
            if not allow_race_retry:
                raise
            # Another path created the user's row first; apply as an update
            logger.info("SUBSCRIPTION_CREATE_RACE user_id=%s intent_id=%s", user_id, payment_intent_id)
            return await self._persist_once(
                user_id, plan, billing_frequency, payment_method, status,
                payment_intent_id, subscription_id, payment_info, allow_race_retry=False,
            )
        stored = await self.get_by_id(subscription.subscription_id)
        await record_billing_event(
            action=AuditAction.SUBSCRIPTION_ACTIVATED
            if status == SubscriptionStatus.ACTIVE
            else AuditAction.SUBSCRIPTION_PENDING_VERIFICATION,
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription.subscription_id,
            after=stored,
            metadata={"payment_intent_id": payment_intent_id},
        )
        return stored, True
    
    async def mark_failed_for_intent(self, intent_id: str, reason: str) -> int:
        """Mark subscriptions referencing the intent as failed. Rows are kept."""
        db = database.get_db()
        result = await db.subscriptions.update_many(
            {"payment_intent_ids": intent_id, "status": {"$ne": SubscriptionStatus.FAILED.value}},
            {"$set": {
                "status": SubscriptionStatus.FAILED.value,
                "is_active": False,
                "failure_reason": reason,
                "updated_at": datetime.now(timezone.utc),
            }},
        )
        if result.modified_count:
            logger.warning(
                "SUBSCRIPTION_MARKED_FAILED intent_id=%s count=%s reason=%s",
                intent_id, result.modified_count, reason,
            )
            await record_billing_event(
                action=AuditAction.SUBSCRIPTION_FAILED,
                resource_type="subscription",
                metadata={"payment_intent_id": intent_id, "reason": reason, "count": result.modified_count},
            )
        return result.modified_count
    
    async def verify_bank_transfer(self, subscription_id: str, admin_id: str) -> Dict[str, Any]:
        """Promote a pending_verification subscription to active."""
        db = database.get_db()
        subscription = await self.get_by_id(subscription_id)
        if not subscription:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        if subscription.get("status") != SubscriptionStatus.PENDING_VERIFICATION.value:
            raise ValidationError(
                f"Subscription is {subscription.get('status')}; only pending_verification can be verified"
            )
        
        now = datetime.now(timezone.utc)
        plan = await plan_catalog.get_plan(subscription["plan_id"])
        frequency = BillingFrequency(subscription["billing_frequency"])
        await db.subscriptions.update_one(
            {"subscription_id": subscription_id, "status": SubscriptionStatus.PENDING_VERIFICATION.value},
            {"$set": {
                "status": SubscriptionStatus.ACTIVE.value,
                "is_active": True,
                "start_date": now,
                "end_date": plan_catalog.period_end(plan, frequency, now),
                "verified_by": admin_id,
                "verified_at": now,
                "updated_at": now,
            }},
        )
        updated = await self.get_by_id(subscription_id)
        await record_billing_event(
            action=AuditAction.SUBSCRIPTION_PAYMENT_VERIFIED,
            actor_role=UserRole.ROLE_ADMIN,
            actor_id=admin_id,
            user_id=subscription.get("user_id"),
            resource_type="subscription",
            resource_id=subscription_id,
            before=subscription,
            after=updated,
        )
        logger.info(f"Bank transfer verified for subscription {subscription_id} by {admin_id}")
        return updated
    
    # =========================================================================
    # Payment attempts
    # =========================================================================
    
    async def record_attempt(self, attempt: PaymentAttempt) -> None:
        db = database.get_db()
        await db.payment_attempts.insert_one(attempt.model_dump(mode="json"))
    
    async def update_attempt(
        self,
        intent_id: str,
        status: PaymentAttemptStatus,
        error: Optional[str] = None,
    ) -> int:
        """Move the attempt that created this intent to a new status."""
        db = database.get_db()
        fields: Dict[str, Any] = {
            "status": status.value,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        if error:
            fields["error"] = error
        result = await db.payment_attempts.update_one({"intent_id": intent_id}, {"$set": fields})
        return result.modified_count
    
    async def find_attempt_by_intent(self, intent_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.payment_attempts.find_one({"intent_id": intent_id}, {"_id": 0})
    
    # =========================================================================
    # Reconciliation flags
    # =========================================================================
    
    async def flag_for_reconciliation(
        self,
        user_id: str,
        plan_id: int,
        billing_frequency: BillingFrequency,
        intent_id: Optional[str],
        subscription_id: Optional[str],
        source: str,
        error: str,
    ) -> Optional[str]:
        flag = ReconciliationFlag(
            intent_id=intent_id,
            user_id=user_id,
            plan_id=plan_id,
            billing_frequency=billing_frequency,
            subscription_id=subscription_id,
            source=source,
            error=error,
        )
        try:
            db = database.get_db()
            await db.reconciliation_flags.insert_one(flag.model_dump(mode="json"))
        except PyMongoError as e:
            # Last resort: the log line is the record
            logger.critical(
                "RECONCILIATION_FLAG_WRITE_FAILED user_id=%s plan_id=%s frequency=%s intent_id=%s error=%s",
                user_id, plan_id, billing_frequency.value, intent_id, e,
            )
            return None
        
        logger.critical(
            "RECONCILIATION_FLAGGED flag_id=%s user_id=%s intent_id=%s source=%s",
            flag.flag_id, user_id, intent_id, source,
        )
        await record_billing_event(
            action=AuditAction.RECONCILIATION_FLAGGED,
            user_id=user_id,
            resource_type="reconciliation_flag",
            resource_id=flag.flag_id,
            metadata={"payment_intent_id": intent_id, "source": source, "error": error},
        )
        return flag.flag_id
    
    async def list_flags(self, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        db = database.get_db()
        query = {"status": status} if status else {}
        return await db.reconciliation_flags.find(query, {"_id": 0}).sort("created_at", -1).to_list(limit)
    
    async def resolve_flag(self, flag_id: str, admin_id: str, note: Optional[str] = None) -> Dict[str, Any]:
        db = database.get_db()
        flag = await db.reconciliation_flags.find_one({"flag_id": flag_id}, {"_id": 0})
        if not flag:
            raise ValidationError(f"Reconciliation flag {flag_id} not found")
        if flag.get("status") == ReconciliationFlagStatus.RESOLVED.value:
            return flag
        
        now = datetime.now(timezone.utc)
        await db.reconciliation_flags.update_one(
            {"flag_id": flag_id},
            {"$set": {
                "status": ReconciliationFlagStatus.RESOLVED.value,
                "resolved_by": admin_id,
                "resolved_at": now.isoformat(),
                "resolution_note": note,
            }},
        )
        await record_billing_event(
            action=AuditAction.RECONCILIATION_RESOLVED,
            actor_role=UserRole.ROLE_ADMIN,
            actor_id=admin_id,
            user_id=flag.get("user_id"),
            resource_type="reconciliation_flag",
            resource_id=flag_id,
            metadata={"note": note},
        )
        return await db.reconciliation_flags.find_one({"flag_id": flag_id}, {"_id": 0})


# Singleton instance
subscription_store = SubscriptionStore()
