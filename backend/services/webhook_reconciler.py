"""Webhook Reconciler - asynchronous gateway events vs. subscription state.

Runs independently of (and concurrently with) the synchronous lifecycle. Both
paths converge on the same subscription row through the payment intent id.

Key Principles:
1. Signature verification first, over the raw body. A bad signature is a
   hard rejection, not a retryable error
2. Event idempotency: each event id is processed once (webhook_events)
3. Intent idempotency: a "payment succeeded" for an intent already recorded
   on a subscription is a no-op
4. The reconciler can finish activation from the event payload alone
   (metadata), falling back to the payment attempt record
5. Unknown event types and unknown intents are logged and acknowledged;
   the gateway always gets a success answer once the signature passed

Events Handled:
- payment_intent.succeeded
- payment_intent.payment_failed
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    AuditAction,
    BillingFrequency,
    PaymentAttemptStatus,
    PaymentMethod,
    SubscriptionStatus,
)
from services.billing_errors import (
    PersistenceError,
    PlanNotFoundError,
    ReconciliationConflict,
)
from services.payment_gateway import payment_gateway
from services.plan_catalog import plan_catalog
from services.subscription_store import subscription_store
from utils.audit import record_billing_event

logger = logging.getLogger(__name__)


class ReconciliationOutcome(str, Enum):
    ACTIVATED = "activated"
    NO_OP = "no_op"
    MARKED_FAILED = "marked_failed"
    IGNORED = "ignored"
    ALREADY_PROCESSED = "already_processed"
    CONFLICT = "conflict"
    FLAGGED = "flagged"
    ERROR = "error"


@dataclass
class ReconciliationResult:
    event_id: Optional[str]
    event_type: Optional[str]
    outcome: ReconciliationOutcome
    subscription_id: Optional[str] = None
    intent_id: Optional[str] = None
    detail: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "outcome": self.outcome.value,
            "subscription_id": self.subscription_id,
            "intent_id": self.intent_id,
            "detail": self.detail,
            **self.extra,
        }


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    """Safe fields for structured logging. Never card data."""
    obj = event.get("data", {}).get("object", {}) or {}
    metadata = obj.get("metadata", {}) or {}
    return {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "livemode": event.get("livemode"),
        "intent_id": obj.get("id"),
        "user_id": metadata.get("user_id"),
        "amount": obj.get("amount"),
    }


class WebhookReconciler:
    """Idempotent payment-intent webhook processing."""
    
    # =========================================================================
    # Entry Point
    # =========================================================================
    
    async def reconcile(self, payload: bytes, signature: Optional[str]) -> ReconciliationResult:
        """Verify, de-duplicate and apply one gateway event.
        
        Raises ValidationError only for signature/payload problems. Everything
        after verification is acknowledged.
        """
        event = payment_gateway.verify_webhook(payload, signature)
        
        event_id = event.get("id")
        event_type = event.get("type")
        ctx = _extract_webhook_context(event)
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s intent_id=%s user_id=%s",
            event_id, event_type, ctx.get("livemode"), ctx.get("intent_id"), ctx.get("user_id"),
        )
        
        db = database.get_db()
        existing = await db.webhook_events.find_one({"event_id": event_id})
        if existing and existing.get("status") == "PROCESSED":
            logger.info(f"Event {event_id} already processed - skipping")
            return ReconciliationResult(event_id, event_type, ReconciliationOutcome.ALREADY_PROCESSED)
        
        event_record = {
            "event_id": event_id,
            "type": event_type,
            "created": datetime.now(timezone.utc),
            "processed_at": None,
            "status": "PROCESSING",
            "outcome": None,
            "error": None,
            "intent_id": ctx.get("intent_id"),
        }
        if existing:
            await db.webhook_events.update_one({"event_id": event_id}, {"$set": event_record})
        else:
            try:
                await db.webhook_events.insert_one(event_record)
            except DuplicateKeyError:
                logger.info(f"Event {event_id} duplicate insert (race) - skipping")
                return ReconciliationResult(event_id, event_type, ReconciliationOutcome.ALREADY_PROCESSED)
        
        try:
            result = await self._handle_event(event)
            status = "PROCESSED"
        except ReconciliationConflict as e:
            logger.warning(
                "RECONCILIATION_CONFLICT event_id=%s event_type=%s intent_id=%s detail=%s",
                event_id, event_type, e.intent_id, e.message,
            )
            result = ReconciliationResult(
                event_id, event_type, ReconciliationOutcome.CONFLICT,
                intent_id=e.intent_id, detail=e.message,
            )
            status = "PROCESSED"
        except PersistenceError as e:
            # Already flagged for manual reconciliation by the store
            result = ReconciliationResult(
                event_id, event_type, ReconciliationOutcome.FLAGGED,
                intent_id=e.intent_id, detail=e.message,
                extra={"reconciliation_flag_id": e.flag_id},
            )
            status = "FAILED"
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e),
            )
            await record_billing_event(
                action=AuditAction.WEBHOOK_RECONCILED,
                metadata={
                    "action_type": "WEBHOOK_EVENT_FAILED",
                    "event_id": event_id,
                    "event_type": event_type,
                    "error": str(e),
                },
            )
            result = ReconciliationResult(
                event_id, event_type, ReconciliationOutcome.ERROR, detail=str(e),
            )
            status = "FAILED"
        
        await db.webhook_events.update_one(
            {"event_id": event_id},
            {"$set": {
                "status": status,
                "processed_at": datetime.now(timezone.utc),
                "outcome": result.outcome.value,
                "error": result.detail if status == "FAILED" else None,
                "related_subscription_id": result.subscription_id,
            }},
        )
        logger.info(
            "WEBHOOK_PROCESSED event_id=%s event_type=%s outcome=%s subscription_id=%s",
            event_id, event_type, result.outcome.value, result.subscription_id,
        )
        return result
    
    # =========================================================================
    # Event Handlers
    # =========================================================================
    
    async def _handle_event(self, event: Dict) -> ReconciliationResult:
        event_type = event.get("type")
        data = event.get("data", {}).get("object", {}) or {}
        
        handlers = {
            "payment_intent.succeeded": self._handle_payment_succeeded,
            "payment_intent.payment_failed": self._handle_payment_failed,
        }
        handler = handlers.get(event_type)
        if handler:
            return await handler(data, event)
        
        logger.info(f"Ignoring unhandled event type: {event_type}")
        return ReconciliationResult(event.get("id"), event_type, ReconciliationOutcome.IGNORED)
    
    async def _handle_payment_succeeded(self, intent: Dict, event: Dict) -> ReconciliationResult:
        """Finish persistence if the synchronous path did not."""
        intent_id = intent.get("id")
        event_id, event_type = event.get("id"), event.get("type")
        
        recorded = await subscription_store.find_by_intent(intent_id)
        if recorded:
            logger.info(
                "WEBHOOK_INTENT_ALREADY_RECORDED intent_id=%s subscription_id=%s",
                intent_id, recorded.get("subscription_id"),
            )
            return ReconciliationResult(
                event_id, event_type, ReconciliationOutcome.NO_OP,
                subscription_id=recorded.get("subscription_id"), intent_id=intent_id,
            )
        
        correlation = await self._correlate(intent)
        if not correlation.get("user_id") or not correlation.get("plan_id"):
            raise ReconciliationConflict(
                "Payment intent is not correlated to any user/plan", intent_id=intent_id
            )
        
        try:
            plan = await plan_catalog.get_plan(int(correlation["plan_id"]))
            frequency = BillingFrequency(correlation.get("billing_frequency") or BillingFrequency.MONTHLY.value)
        except (PlanNotFoundError, ValueError) as e:
            raise ReconciliationConflict(f"Cannot resolve plan for intent: {e}", intent_id=intent_id)
        
        expected = plan_catalog.amount_minor_units(plan, frequency)
        if intent.get("amount") != expected:
            flag_id = await subscription_store.flag_for_reconciliation(
                user_id=correlation["user_id"],
                plan_id=plan.plan_id,
                billing_frequency=frequency,
                intent_id=intent_id,
                subscription_id=correlation.get("subscription_id"),
                source="webhook",
                error=f"Amount mismatch: paid {intent.get('amount')}, plan price {expected}",
            )
            return ReconciliationResult(
                event_id, event_type, ReconciliationOutcome.FLAGGED,
                intent_id=intent_id, detail="amount_mismatch",
                extra={"reconciliation_flag_id": flag_id},
            )
        
        await subscription_store.update_attempt(intent_id=intent_id, status=PaymentAttemptStatus.SUCCEEDED)
        subscription, changed = await subscription_store.persist(
            user_id=correlation["user_id"],
            plan=plan,
            billing_frequency=frequency,
            payment_method=PaymentMethod.CREDIT_CARD,
            status=SubscriptionStatus.ACTIVE,
            payment_intent_id=intent_id,
            subscription_id=correlation.get("subscription_id"),
            source="webhook",
        )
        if changed:
            logger.warning(
                "WEBHOOK_COMPLETED_ACTIVATION intent_id=%s subscription_id=%s (synchronous path did not persist)",
                intent_id, subscription.get("subscription_id"),
            )
            await record_billing_event(
                action=AuditAction.WEBHOOK_RECONCILED,
                user_id=correlation["user_id"],
                resource_type="subscription",
                resource_id=subscription.get("subscription_id"),
                metadata={"event_id": event_id, "payment_intent_id": intent_id},
            )
        return ReconciliationResult(
            event_id, event_type,
            ReconciliationOutcome.ACTIVATED if changed else ReconciliationOutcome.NO_OP,
            subscription_id=subscription.get("subscription_id"), intent_id=intent_id,
        )
    
    async def _handle_payment_failed(self, intent: Dict, event: Dict) -> ReconciliationResult:
        intent_id = intent.get("id")
        error = (intent.get("last_payment_error") or {}).get("message") or "payment_failed"
        
        attempts = await subscription_store.update_attempt(
            intent_id=intent_id, status=PaymentAttemptStatus.FAILED, error=error,
        )
        marked = await subscription_store.mark_failed_for_intent(intent_id, reason=error)
        if not attempts and not marked:
            attempt = await subscription_store.find_attempt_by_intent(intent_id)
            if not attempt:
                raise ReconciliationConflict("Failed payment for unknown intent", intent_id=intent_id)
        
        await record_billing_event(
            action=AuditAction.PAYMENT_FAILED,
            user_id=(intent.get("metadata") or {}).get("user_id"),
            resource_type="payment_intent",
            resource_id=intent_id,
            metadata={"event_id": event.get("id"), "error": error, "subscriptions_marked": marked},
        )
        return ReconciliationResult(
            event.get("id"), event.get("type"), ReconciliationOutcome.MARKED_FAILED,
            intent_id=intent_id, detail=error, extra={"subscriptions_marked": marked},
        )
    
    async def _correlate(self, intent: Dict) -> Dict[str, Any]:
        """User/plan correlation from intent metadata, else the attempt record."""
        metadata = intent.get("metadata") or {}
        correlation = {
            "user_id": metadata.get("user_id"),
            "plan_id": metadata.get("plan_id"),
            "billing_frequency": metadata.get("billing_frequency"),
            "subscription_id": metadata.get("subscription_id"),
        }
        if correlation["user_id"] and correlation["plan_id"]:
            return correlation
        
        attempt = await subscription_store.find_attempt_by_intent(intent.get("id"))
        if attempt:
            for key in correlation:
                correlation[key] = correlation[key] or attempt.get(key)
        return correlation


# Singleton instance
webhook_reconciler = WebhookReconciler()
