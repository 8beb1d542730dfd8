"""Billing error taxonomy.

Every failure the subscription lifecycle and webhook reconciler can surface
maps onto one of these. Routes never build error bodies by hand: the
exception handler in server.py renders ``to_response()``.

- ValidationError: bad input, rejected immediately, never retried
- GatewayError: the payment gateway refused; caller may start a fresh attempt
- IntentRefusedError: intent creation refused up front (400, not 402)
- RequiresActionError: step-up authentication needed; nothing was persisted
- ReconciliationConflict: webhook references an unknown intent; logged only
- PersistenceError: payment succeeded but the subscription write did not
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for billing failures surfaced to callers."""
    error_code = "BILLING_ERROR"
    status_code = 400
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)
    
    def to_response(self) -> Dict[str, Any]:
        return {"error": self.message, "error_code": self.error_code, **self.details}


class ValidationError(BillingError):
    error_code = "VALIDATION_ERROR"
    status_code = 400


class PlanNotFoundError(ValidationError):
    error_code = "PLAN_NOT_FOUND"
    status_code = 404


class SubscriptionNotFoundError(BillingError):
    error_code = "SUBSCRIPTION_NOT_FOUND"
    status_code = 404


class ForbiddenError(BillingError):
    error_code = "FORBIDDEN"
    status_code = 403


class GatewayError(BillingError):
    """Card declined, intent refused, or the gateway is unreachable."""
    error_code = "GATEWAY_ERROR"
    status_code = 402


class IntentRefusedError(GatewayError):
    """The gateway would not create a payment intent. Nothing was charged."""
    error_code = "INTENT_REFUSED"
    status_code = 400


class RequiresActionError(BillingError):
    """The gateway wants a secondary authentication step.

    Recoverable: the caller re-prompts the user and starts a new attempt.
    """
    error_code = "REQUIRES_ACTION"
    status_code = 402
    
    def __init__(self, message: str, intent_id: Optional[str] = None, client_secret: Optional[str] = None):
        super().__init__(message, {
            "requires_action": True,
            "intent_id": intent_id,
            "client_secret": client_secret,
        })
        self.intent_id = intent_id
        self.client_secret = client_secret


class ReconciliationConflict(BillingError):
    """A webhook referenced an intent no attempt or subscription knows about."""
    error_code = "RECONCILIATION_CONFLICT"
    status_code = 200
    
    def __init__(self, message: str, intent_id: Optional[str] = None):
        super().__init__(message, {"intent_id": intent_id})
        self.intent_id = intent_id


class PersistenceError(BillingError):
    """Money moved but entitlement did not; a reconciliation flag was raised."""
    error_code = "SUBSCRIPTION_PERSIST_FAILED"
    status_code = 500
    
    def __init__(self, message: str, intent_id: Optional[str] = None, flag_id: Optional[str] = None):
        super().__init__(message, {"intent_id": intent_id, "reconciliation_flag_id": flag_id})
        self.intent_id = intent_id
        self.flag_id = flag_id
