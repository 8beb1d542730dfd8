"""Payment Gateway Adapter - the only module that talks to Stripe.

The core treats the gateway as an opaque service with a small contract:
- create_payment_intent(amount, currency, token) -> intent id, client secret, status
- confirm_payment_intent(client_secret) -> intent id, status
- retrieve_payment_intent(intent_id) -> status, amount, currency, metadata
- verify_webhook(payload, signature) -> event dict

Key Principles:
- Raw card data never reaches this service; only tokenized payment methods
- Amounts are integer minor units, computed by the caller
- Stripe statuses are normalized to PaymentIntentStatus before leaving here
- Every Stripe error becomes a GatewayError; signature failures become a
  ValidationError (hard rejection, never retried)
"""
import json
import logging
import os
from typing import Any, Dict, Optional

import stripe

from models import PaymentIntentStatus
from services.billing_errors import GatewayError, ValidationError

logger = logging.getLogger(__name__)

# Initialize Stripe (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

DEFAULT_CURRENCY = (os.getenv("PAYMENT_CURRENCY") or "eur").strip().lower()


def _get_webhook_secret() -> str:
    return (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()


def _return_url() -> str:
    base = (os.getenv("APP_URL") or "http://localhost:3000").strip().rstrip("/")
    return f"{base}/payment-success"


def normalize_intent_status(raw_status: Optional[str]) -> PaymentIntentStatus:
    """Collapse Stripe's intent statuses onto the four the lifecycle knows."""
    if raw_status == "succeeded":
        return PaymentIntentStatus.SUCCEEDED
    if raw_status == "requires_action":
        return PaymentIntentStatus.REQUIRES_ACTION
    if raw_status == "requires_confirmation":
        return PaymentIntentStatus.REQUIRES_CONFIRMATION
    # requires_payment_method (declined), canceled, processing, unknown
    return PaymentIntentStatus.FAILED


def intent_id_from_client_secret(client_secret: str) -> str:
    """Client secrets look like ``pi_123_secret_abc``; the id is the prefix."""
    intent_id, sep, _ = (client_secret or "").partition("_secret_")
    if not sep or not intent_id:
        raise ValidationError("Malformed client secret")
    return intent_id


class PaymentGatewayAdapter:
    """Stripe-backed payment intent operations."""
    
    def _require_key(self):
        if not (stripe.api_key or "").strip():
            raise GatewayError("STRIPE_SECRET_KEY or STRIPE_API_KEY is not set. Configure env and restart.")
    
    def _intent_to_dict(self, intent: Any) -> Dict[str, Any]:
        raw_status = intent.get("status")
        return {
            "intent_id": intent.get("id"),
            "client_secret": intent.get("client_secret"),
            "status": normalize_intent_status(raw_status).value,
            "gateway_status": raw_status,
            "amount": intent.get("amount"),
            "currency": intent.get("currency"),
            "metadata": dict(intent.get("metadata") or {}),
        }
    
    def create_payment_intent(
        self,
        amount_minor_units: int,
        currency: str,
        payment_method_token: str,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create (but do not confirm) a payment intent for a tokenized method."""
        if not isinstance(amount_minor_units, int) or isinstance(amount_minor_units, bool) or amount_minor_units <= 0:
            raise ValidationError("Amount must be a positive integer in minor currency units")
        if not payment_method_token:
            raise ValidationError("A tokenized payment method is required")
        self._require_key()
        
        params = {
            "amount": amount_minor_units,
            "currency": (currency or DEFAULT_CURRENCY).lower(),
            "payment_method": payment_method_token,
            "confirmation_method": "manual",
            "metadata": metadata or {},
        }
        try:
            if idempotency_key:
                intent = stripe.PaymentIntent.create(idempotency_key=idempotency_key, **params)
            else:
                intent = stripe.PaymentIntent.create(**params)
        except stripe.CardError as e:
            logger.warning(f"Card declined creating payment intent: {e.user_message or e}")
            raise GatewayError(e.user_message or "Card declined")
        except stripe.StripeError as e:
            logger.error(f"Stripe payment intent creation failed: {e}")
            raise GatewayError(f"Error creating payment intent: {e.user_message or str(e)}")
        
        result = self._intent_to_dict(intent)
        logger.info(
            "PAYMENT_INTENT_CREATED intent_id=%s amount=%s currency=%s status=%s",
            result["intent_id"], amount_minor_units, params["currency"], result["gateway_status"],
        )
        return result
    
    def confirm_payment_intent(self, client_secret: str) -> Dict[str, Any]:
        """Confirm an intent server-side. Returns the normalized status."""
        intent_id = intent_id_from_client_secret(client_secret)
        self._require_key()
        try:
            intent = stripe.PaymentIntent.confirm(intent_id, return_url=_return_url())
        except stripe.CardError as e:
            logger.warning(f"Card declined confirming {intent_id}: {e.user_message or e}")
            return {
                "intent_id": intent_id,
                "client_secret": client_secret,
                "status": PaymentIntentStatus.FAILED.value,
                "gateway_status": "requires_payment_method",
                "error": e.user_message or "Card declined",
            }
        except stripe.StripeError as e:
            logger.error(f"Stripe confirmation failed for {intent_id}: {e}")
            raise GatewayError(f"Error confirming payment: {e.user_message or str(e)}")
        
        result = self._intent_to_dict(intent)
        logger.info("PAYMENT_INTENT_CONFIRMED intent_id=%s status=%s", intent_id, result["gateway_status"])
        return result
    
    def retrieve_payment_intent(self, intent_id: str) -> Dict[str, Any]:
        if not intent_id:
            raise ValidationError("paymentIntentId is required")
        self._require_key()
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
        except stripe.InvalidRequestError as e:
            logger.warning(f"Unknown payment intent {intent_id}: {e}")
            raise ValidationError(f"Unknown payment intent: {intent_id}")
        except stripe.StripeError as e:
            logger.error(f"Stripe retrieve failed for {intent_id}: {e}")
            raise GatewayError(f"Error retrieving payment intent: {e.user_message or str(e)}")
        return self._intent_to_dict(intent)
    
    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the signature over the raw body, then parse it.
        
        The body must be the unparsed bytes exactly as received.
        """
        webhook_secret = _get_webhook_secret()
        if not webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not set - rejecting webhook")
            raise ValidationError("Webhook secret not configured")
        if not signature:
            raise ValidationError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            raise ValidationError("Invalid webhook signature")
        except ValueError as e:
            logger.error(f"Webhook payload is not valid JSON: {e}")
            raise ValidationError("Invalid webhook payload")
        return json.loads(payload)


# Singleton instance
payment_gateway = PaymentGatewayAdapter()
