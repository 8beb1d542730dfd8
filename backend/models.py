from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class BillingFrequency(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PENDING_VERIFICATION = "pending_verification"
    FAILED = "failed"
    CANCELED = "canceled"

class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    BANK_TRANSFER = "bank_transfer"

class PaymentIntentStatus(str, Enum):
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

class PaymentAttemptStatus(str, Enum):
    CREATED = "created"
    SUCCEEDED = "succeeded"
    REQUIRES_ACTION = "requires_action"
    FAILED = "failed"

class ReconciliationFlagStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"

class UserRole(str, Enum):
    ROLE_USER = "ROLE_USER"
    ROLE_ADMIN = "ROLE_ADMIN"

class AuditAction(str, Enum):
    # Lifecycle
    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    SUBSCRIPTION_PLAN_CHANGED = "SUBSCRIPTION_PLAN_CHANGED"
    SUBSCRIPTION_PENDING_VERIFICATION = "SUBSCRIPTION_PENDING_VERIFICATION"
    SUBSCRIPTION_PAYMENT_VERIFIED = "SUBSCRIPTION_PAYMENT_VERIFIED"
    SUBSCRIPTION_FAILED = "SUBSCRIPTION_FAILED"
    
    # Payments
    PAYMENT_INTENT_CREATED = "PAYMENT_INTENT_CREATED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    
    # Reconciliation
    WEBHOOK_RECONCILED = "WEBHOOK_RECONCILED"
    RECONCILIATION_FLAGGED = "RECONCILIATION_FLAGGED"
    RECONCILIATION_RESOLVED = "RECONCILIATION_RESOLVED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

# ============================================================================
# DOCUMENT MODELS
# ============================================================================

class Plan(BaseModel):
    """Subscription plan as stored in subscription_plans.

    Prices are decimal strings (e.g. "19.99") so they survive the round trip
    through Mongo without float drift.
    """
    model_config = ConfigDict(extra="ignore")
    
    plan_id: int
    name: str
    description: Optional[str] = None
    monthly_price: str = "0.00"
    yearly_price: str = "0.00"
    monthly_duration_days: int = 30
    yearly_duration_days: int = 365
    is_free: bool = False
    currency: str = "eur"
    is_active: bool = True
    features: Dict[str, Any] = Field(default_factory=dict)

class Subscription(BaseModel):
    model_config = ConfigDict(extra="ignore")
    
    subscription_id: str = Field(default_factory=lambda: f"SUB-{uuid.uuid4().hex[:12].upper()}")
    user_id: str
    plan_id: int
    billing_frequency: BillingFrequency
    status: SubscriptionStatus
    is_active: bool = True
    payment_method: Optional[PaymentMethod] = None
    # Latest intent that paid for the current plan, plus every intent ever applied
    payment_intent_id: Optional[str] = None
    payment_intent_ids: list[str] = Field(default_factory=list)
    # Billing contact for bank transfers, never card data
    payment_info: Optional[Dict[str, Any]] = None
    start_date: datetime = Field(default_factory=_utcnow)
    end_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

class PaymentAttempt(BaseModel):
    """One lifecycle attempt that reached the gateway."""
    model_config = ConfigDict(extra="ignore")
    
    attempt_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    intent_id: Optional[str] = None
    user_id: str
    plan_id: int
    billing_frequency: BillingFrequency
    subscription_id: Optional[str] = None
    amount_minor_units: int
    currency: str
    status: PaymentAttemptStatus = PaymentAttemptStatus.CREATED
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

class ReconciliationFlag(BaseModel):
    """Payment moved but the subscription write did not land."""
    model_config = ConfigDict(extra="ignore")
    
    flag_id: str = Field(default_factory=lambda: f"RCF-{uuid.uuid4().hex[:10].upper()}")
    intent_id: Optional[str] = None
    user_id: str
    plan_id: int
    billing_frequency: BillingFrequency
    subscription_id: Optional[str] = None
    source: str  # "lifecycle" or "webhook"
    error: str
    status: ReconciliationFlagStatus = ReconciliationFlagStatus.OPEN
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")
    
    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    transition: Optional[Dict[str, Dict[str, Any]]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_utcnow)

# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class PaymentIntentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    
    amount_minor_units: int = Field(alias="amountMinorUnits", gt=0)
    currency: str = "eur"
    payment_method_token: str = Field(alias="paymentMethodToken", min_length=1)
    # Optional correlation so the webhook can finish activation on its own
    plan_id: Optional[Any] = Field(default=None, alias="planId")
    billing_frequency: Optional[str] = Field(default=None, alias="billingFrequency")
    subscription_id: Optional[str] = Field(default=None, alias="subscriptionId")

class PaymentIntentConfirmRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    
    client_secret: str = Field(alias="clientSecret", min_length=1)

class PaymentInfo(BaseModel):
    """Billing contact collected at checkout.

    Only identity and bank-transfer details. Unknown keys (card number, CVC,
    expiry) are dropped on parse so they can never reach the database.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)
    
    full_name: Optional[str] = Field(default=None, alias="fullName", max_length=200)
    email: Optional[str] = Field(default=None, max_length=254)
    company_name: Optional[str] = Field(default=None, alias="companyName", max_length=200)
    vat_number: Optional[str] = Field(default=None, alias="vatNumber", max_length=50)
    bank_name: Optional[str] = Field(default=None, alias="bankName", max_length=200)
    iban: Optional[str] = Field(default=None, max_length=34)
    swift: Optional[str] = Field(default=None, max_length=11)

class SubscriptionRequest(BaseModel):
    """Body of POST /api/subscriptions and PUT /api/subscriptions/{id}.

    paymentMethod and billingFrequency stay plain strings here; the lifecycle
    validates them so bad values surface as a ValidationError with a specific
    message instead of a generic 422.
    """
    model_config = ConfigDict(populate_by_name=True)
    
    plan_id: Any = Field(alias="planId")
    billing_frequency: str = Field(default="monthly", alias="billingFrequency")
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    payment_intent_id: Optional[str] = Field(default=None, alias="paymentIntentId")
    payment_method_token: Optional[str] = Field(default=None, alias="paymentMethodToken")
    payment_info: Optional[PaymentInfo] = Field(default=None, alias="paymentInfo")

class ResolveFlagRequest(BaseModel):
    note: Optional[str] = None
