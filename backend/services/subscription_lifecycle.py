"""Subscription Lifecycle - plan choice -> payment -> subscription record.

One SubscriptionLifecycleManager per plan-change attempt. It is a strict
state machine; callers drive it with ``advance(event, **data)`` and render
from the returned snapshot.

    SELECTING_PLAN --free--> ACTIVATING_FREE --> PERSISTING_SUBSCRIPTION --> DONE
    SELECTING_PLAN --card--> AWAITING_PAYMENT_METHOD --> CONFIRMING_PAYMENT
                                                     --> PERSISTING_SUBSCRIPTION --> DONE
    SELECTING_PLAN --bank transfer--> PERSISTING_SUBSCRIPTION --> PENDING_VERIFICATION

    any non-terminal --error--> FAILED
    CONFIRMING_PAYMENT --step-up--> REQUIRES_ACTION  (recoverable: start a new attempt)

Events:
- select_plan(plan_id, billing_frequency, payment_method)
- submit_payment_method(payment_method_token)   creates exactly one intent
- confirm()                                     server-side confirmation
- payment_confirmed(payment_intent_id)          intent confirmed by the client

Key Principles:
- The free check uses the price of the CHOSEN frequency (or the is_free flag);
  free plans never touch the gateway
- Exactly one "create payment intent" per attempt; the attempt id doubles as
  the Stripe idempotency key
- Nothing is persisted unless the gateway says "succeeded"
- Persisting is idempotent on the payment intent id
"""
import logging
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from models import (
    AuditAction,
    BillingFrequency,
    PaymentAttempt,
    PaymentAttemptStatus,
    PaymentIntentStatus,
    PaymentMethod,
    Plan,
    SubscriptionStatus,
)
from services.billing_errors import (
    BillingError,
    GatewayError,
    RequiresActionError,
    ValidationError,
)
from services.payment_gateway import DEFAULT_CURRENCY, payment_gateway
from services.plan_catalog import parse_billing_frequency, parse_plan_id, plan_catalog
from services.subscription_store import subscription_store
from utils.audit import record_billing_event

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    SELECTING_PLAN = "selecting_plan"
    ACTIVATING_FREE = "activating_free"
    AWAITING_PAYMENT_METHOD = "awaiting_payment_method"
    CONFIRMING_PAYMENT = "confirming_payment"
    PERSISTING_SUBSCRIPTION = "persisting_subscription"
    DONE = "done"
    PENDING_VERIFICATION = "pending_verification"
    REQUIRES_ACTION = "requires_action"
    FAILED = "failed"


class LifecycleEvent(str, Enum):
    SELECT_PLAN = "select_plan"
    SUBMIT_PAYMENT_METHOD = "submit_payment_method"
    CONFIRM = "confirm"
    PAYMENT_CONFIRMED = "payment_confirmed"


TERMINAL_STATES = frozenset({
    LifecycleState.DONE,
    LifecycleState.PENDING_VERIFICATION,
    LifecycleState.REQUIRES_ACTION,
    LifecycleState.FAILED,
})

# Which event each waiting state accepts
ALLOWED_EVENTS = {
    LifecycleState.SELECTING_PLAN: {LifecycleEvent.SELECT_PLAN},
    LifecycleState.AWAITING_PAYMENT_METHOD: {
        LifecycleEvent.SUBMIT_PAYMENT_METHOD,
        LifecycleEvent.PAYMENT_CONFIRMED,
    },
    LifecycleState.CONFIRMING_PAYMENT: {
        LifecycleEvent.CONFIRM,
        LifecycleEvent.PAYMENT_CONFIRMED,
    },
}


def parse_payment_method(raw: Optional[str]) -> Optional[PaymentMethod]:
    if raw is None or raw == "":
        return None
    try:
        return PaymentMethod(str(raw).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unsupported payment method: {raw!r}. Expected 'credit_card' or 'bank_transfer'."
        )


async def create_payment_intent(
    user_id: str,
    amount_minor_units: int,
    currency: str,
    payment_method_token: str,
    plan_id: Optional[int] = None,
    billing_frequency: Optional[BillingFrequency] = None,
    subscription_id: Optional[str] = None,
    attempt_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Create one gateway intent and, when the plan is known, an attempt record.
    
    The correlation metadata lets the webhook reconciler finish persistence
    from the event alone if the synchronous path never completes.
    """
    attempt_id = attempt_id or str(uuid.uuid4())
    metadata = {"user_id": user_id, "attempt_id": attempt_id, "source": "subscription_checkout"}
    if plan_id is not None and billing_frequency is not None:
        metadata["plan_id"] = str(plan_id)
        metadata["billing_frequency"] = billing_frequency.value
    if subscription_id:
        metadata["subscription_id"] = subscription_id
    
    intent = payment_gateway.create_payment_intent(
        amount_minor_units=amount_minor_units,
        currency=currency,
        payment_method_token=payment_method_token,
        metadata=metadata,
        idempotency_key=attempt_id,
    )
    
    if plan_id is not None and billing_frequency is not None:
        await subscription_store.record_attempt(PaymentAttempt(
            attempt_id=attempt_id,
            intent_id=intent["intent_id"],
            user_id=user_id,
            plan_id=plan_id,
            billing_frequency=billing_frequency,
            subscription_id=subscription_id,
            amount_minor_units=amount_minor_units,
            currency=currency,
        ))
    await record_billing_event(
        action=AuditAction.PAYMENT_INTENT_CREATED,
        user_id=user_id,
        resource_type="payment_intent",
        resource_id=intent["intent_id"],
        metadata={"amount_minor_units": amount_minor_units, "currency": currency, "plan_id": plan_id},
    )
    return intent


class SubscriptionLifecycleManager:
    """State machine for a single plan-change attempt."""
    
    def __init__(self, user_id: str, subscription_id: Optional[str] = None):
        self.user_id = user_id
        self.subscription_id = subscription_id
        self.attempt_id = str(uuid.uuid4())
        self.state = LifecycleState.SELECTING_PLAN
        self.plan: Optional[Plan] = None
        self.billing_frequency: Optional[BillingFrequency] = None
        self.payment_method: Optional[PaymentMethod] = None
        self.amount_minor_units: Optional[int] = None
        self.currency: str = DEFAULT_CURRENCY
        self.intent_id: Optional[str] = None
        self.client_secret: Optional[str] = None
        self.payment_info: Optional[Dict[str, Any]] = None
        self.subscription: Optional[Dict[str, Any]] = None
        self.changed = False
        self.error: Optional[BillingError] = None
    
    # =========================================================================
    # Driving the machine
    # =========================================================================
    
    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES
    
    def snapshot(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "state": self.state.value,
            "plan_id": self.plan.plan_id if self.plan else None,
            "billing_frequency": self.billing_frequency.value if self.billing_frequency else None,
            "payment_method": self.payment_method.value if self.payment_method else None,
            "amount_minor_units": self.amount_minor_units,
            "currency": self.currency,
            "payment_intent_id": self.intent_id,
            "client_secret": self.client_secret if self.state == LifecycleState.CONFIRMING_PAYMENT else None,
            "subscription": self.subscription,
            "error": self.error.to_response() if self.error else None,
        }
    
    async def advance(self, event: LifecycleEvent, **data) -> Dict[str, Any]:
        """Apply one caller event and any automatic transitions that follow it."""
        event = LifecycleEvent(event)
        if self.is_terminal:
            raise ValidationError(f"Attempt {self.attempt_id} already finished in state {self.state.value}")
        if event not in ALLOWED_EVENTS.get(self.state, set()):
            raise ValidationError(f"Event {event.value} is not valid in state {self.state.value}")
        
        handlers = {
            LifecycleEvent.SELECT_PLAN: self._on_select_plan,
            LifecycleEvent.SUBMIT_PAYMENT_METHOD: self._on_submit_payment_method,
            LifecycleEvent.CONFIRM: self._on_confirm,
            LifecycleEvent.PAYMENT_CONFIRMED: self._on_payment_confirmed,
        }
        try:
            await handlers[event](**data)
        except RequiresActionError as e:
            self.error = e
            self._transition(LifecycleState.REQUIRES_ACTION)
            raise
        except BillingError as e:
            self.error = e
            self._transition(LifecycleState.FAILED)
            raise
        except Exception:
            # Database or gateway SDK failure outside the billing error hierarchy
            logger.exception("LIFECYCLE_UNEXPECTED_ERROR attempt_id=%s event=%s", self.attempt_id, event.value)
            self._transition(LifecycleState.FAILED)
            raise
        return self.snapshot()
    
    async def execute(
        self,
        plan_id: Any,
        billing_frequency: Any,
        payment_method: Optional[str] = None,
        payment_method_token: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        payment_info: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Run a whole attempt for request/response callers."""
        snapshot = await self.advance(
            LifecycleEvent.SELECT_PLAN,
            plan_id=plan_id,
            billing_frequency=billing_frequency,
            payment_method=payment_method,
            payment_info=payment_info,
        )
        if self.state != LifecycleState.AWAITING_PAYMENT_METHOD:
            return snapshot
        
        if payment_intent_id:
            return await self.advance(LifecycleEvent.PAYMENT_CONFIRMED, payment_intent_id=payment_intent_id)
        if payment_method_token:
            await self.advance(LifecycleEvent.SUBMIT_PAYMENT_METHOD, payment_method_token=payment_method_token)
            if self.state == LifecycleState.CONFIRMING_PAYMENT:
                return await self.advance(LifecycleEvent.CONFIRM)
            return self.snapshot()
        
        error = ValidationError("paymentIntentId or paymentMethodToken is required for card payments")
        self.error = error
        self._transition(LifecycleState.FAILED)
        raise error
    
    def _transition(self, new_state: LifecycleState):
        logger.info(
            "LIFECYCLE_TRANSITION attempt_id=%s user_id=%s from=%s to=%s",
            self.attempt_id, self.user_id, self.state.value, new_state.value,
        )
        self.state = new_state
    
    # =========================================================================
    # Transitions
    # =========================================================================
    
    async def _on_select_plan(
        self,
        plan_id: Any,
        billing_frequency: Any,
        payment_method: Optional[str] = None,
        payment_info: Optional[Dict[str, Any]] = None,
    ):
        self.plan = await plan_catalog.get_plan(parse_plan_id(plan_id))
        self.billing_frequency = parse_billing_frequency(billing_frequency)
        self.currency = (self.plan.currency or DEFAULT_CURRENCY).lower()
        
        if plan_catalog.is_free(self.plan, self.billing_frequency):
            self.payment_method = None
            self.amount_minor_units = 0
            self._transition(LifecycleState.ACTIVATING_FREE)
            self._transition(LifecycleState.PERSISTING_SUBSCRIPTION)
            await self._persist(SubscriptionStatus.ACTIVE)
            return
        
        self.payment_method = parse_payment_method(payment_method)
        if self.payment_method is None:
            raise ValidationError("A payment method is required for paid plans")
        self.amount_minor_units = plan_catalog.amount_minor_units(self.plan, self.billing_frequency)
        
        if self.payment_method == PaymentMethod.BANK_TRANSFER:
            # Verified out-of-band by an admin; no gateway involvement
            self.payment_info = payment_info or None
            self._transition(LifecycleState.PERSISTING_SUBSCRIPTION)
            await self._persist(SubscriptionStatus.PENDING_VERIFICATION)
            return
        
        self._transition(LifecycleState.AWAITING_PAYMENT_METHOD)
    
    async def _on_submit_payment_method(self, payment_method_token: str):
        if not payment_method_token:
            raise ValidationError("A tokenized payment method is required")
        intent = await create_payment_intent(
            user_id=self.user_id,
            amount_minor_units=self.amount_minor_units,
            currency=self.currency,
            payment_method_token=payment_method_token,
            plan_id=self.plan.plan_id,
            billing_frequency=self.billing_frequency,
            subscription_id=self.subscription_id,
            attempt_id=self.attempt_id,
        )
        self.intent_id = intent["intent_id"]
        self.client_secret = intent["client_secret"]
        self._transition(LifecycleState.CONFIRMING_PAYMENT)
    
    async def _on_confirm(self):
        result = payment_gateway.confirm_payment_intent(self.client_secret)
        await self._apply_confirmation(result.get("status"), result.get("error"))
    
    async def _on_payment_confirmed(self, payment_intent_id: str):
        if not payment_intent_id:
            raise ValidationError("paymentIntentId is required")
        if self.intent_id and payment_intent_id != self.intent_id:
            raise ValidationError("paymentIntentId does not belong to this attempt")
        
        # A retry of a request that already landed: answer from the record
        recorded = await subscription_store.find_by_intent(payment_intent_id)
        if recorded and recorded.get("user_id") == self.user_id:
            self.intent_id = payment_intent_id
            self._transition(LifecycleState.PERSISTING_SUBSCRIPTION)
            await self._persist(SubscriptionStatus.ACTIVE)
            return
        
        intent = payment_gateway.retrieve_payment_intent(payment_intent_id)
        owner = (intent.get("metadata") or {}).get("user_id")
        if owner and owner != self.user_id:
            raise ValidationError("Payment intent belongs to another user")
        if intent.get("amount") != self.amount_minor_units:
            raise ValidationError(
                f"Payment amount {intent.get('amount')} does not match plan price {self.amount_minor_units}"
            )
        if (intent.get("currency") or "").lower() != self.currency:
            raise ValidationError(f"Payment currency {intent.get('currency')} does not match plan currency {self.currency}")
        
        self.intent_id = payment_intent_id
        self.client_secret = intent.get("client_secret")
        await self._apply_confirmation(intent.get("status"))
    
    async def _apply_confirmation(self, status: Optional[str], error: Optional[str] = None):
        if status == PaymentIntentStatus.SUCCEEDED.value:
            await subscription_store.update_attempt(
                intent_id=self.intent_id,
                status=PaymentAttemptStatus.SUCCEEDED,
            )
            self._transition(LifecycleState.PERSISTING_SUBSCRIPTION)
            await self._persist(SubscriptionStatus.ACTIVE)
            return
        
        if status == PaymentIntentStatus.REQUIRES_ACTION.value:
            await subscription_store.update_attempt(
                intent_id=self.intent_id,
                status=PaymentAttemptStatus.REQUIRES_ACTION,
            )
            # Step-up is not resumed here; the caller re-prompts and starts over
            raise RequiresActionError(
                "Payment requires additional authentication",
                intent_id=self.intent_id,
                client_secret=self.client_secret,
            )
        
        await subscription_store.update_attempt(
            intent_id=self.intent_id,
            status=PaymentAttemptStatus.FAILED, error=error or f"status={status}",
        )
        await record_billing_event(
            action=AuditAction.PAYMENT_FAILED,
            user_id=self.user_id,
            resource_type="payment_intent",
            resource_id=self.intent_id,
            metadata={"status": status, "error": error},
        )
        raise GatewayError(error or "Payment not completed")
    
    async def _persist(self, status: SubscriptionStatus):
        subscription, changed = await subscription_store.persist(
            user_id=self.user_id,
            plan=self.plan,
            billing_frequency=self.billing_frequency,
            payment_method=self.payment_method,
            status=status,
            payment_intent_id=self.intent_id,
            subscription_id=self.subscription_id,
            source="lifecycle",
            payment_info=self.payment_info,
        )
        self.subscription = subscription
        self.changed = changed
        if status == SubscriptionStatus.PENDING_VERIFICATION:
            self._transition(LifecycleState.PENDING_VERIFICATION)
        else:
            self._transition(LifecycleState.DONE)
