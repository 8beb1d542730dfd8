"""Plan Catalog - read-only access to subscription plans.

This is the ONLY place that turns a stored plan document into prices,
durations and a feature bag. Everything downstream (entitlements, lifecycle,
display) asks the catalog instead of re-deriving plan data.

Key Principles:
- Plans are snapshots: fetched per call, never cached across requests
- Prices are Decimals; floats never touch money
- "Free" means the price for the CHOSEN billing frequency is zero, or the
  plan carries the is_free flag
- The feature bag may be stored as a dict or as a JSON string (legacy rows)
"""
import json
import logging
import os
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from database import database
from models import BillingFrequency, Plan
from services.billing_errors import PlanNotFoundError, ValidationError

logger = logging.getLogger(__name__)

VAT_RATE = Decimal(os.getenv("VAT_RATE", "0.22"))
_CENT = Decimal("0.01")


# ============================================================================
# DEFAULT CATALOG - seeded when subscription_plans is empty
# ============================================================================
DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "plan_id": 1,
        "name": "Free",
        "description": "Client and job tracking for a single artisan",
        "monthly_price": "0.00",
        "yearly_price": "0.00",
        "is_free": True,
        "features": {
            "client_management": True,
            "job_management": True,
            "collaborator_management": False,
            "activity_tracking": False,
            "materials_inventory": False,
            "calendar": False,
            "invoice_generation": False,
            "reports": False,
            "notifications": True,
            "permissions": {
                "client.view": True,
                "client.create": True,
                "client.edit": True,
                "client.delete": False,
                "job.view": True,
                "job.create": True,
                "job.edit": True,
                "job.delete": False,
                "job.complete": True,
                "settings.view": True,
            },
        },
    },
    {
        "plan_id": 2,
        "name": "Pro",
        "description": "Calendar, invoices and reports for growing workshops",
        "monthly_price": "29.00",
        "yearly_price": "290.00",
        "is_free": False,
        "features": {
            "client_management": True,
            "job_management": True,
            "collaborator_management": False,
            "activity_tracking": True,
            "materials_inventory": True,
            "calendar": True,
            "invoice_generation": True,
            "reports": True,
            "notifications": True,
            "permissions": {
                "client.view": True,
                "client.view_all": True,
                "client.create": True,
                "client.edit": True,
                "client.delete": True,
                "job.view": True,
                "job.view_all": True,
                "job.create": True,
                "job.edit": True,
                "job.delete": True,
                "job.complete": True,
                "invoice.create": True,
                "invoice.edit": True,
                "invoice.send": True,
                "settings.view": True,
                "settings.edit": True,
            },
        },
    },
    {
        "plan_id": 3,
        "name": "Business",
        "description": "Teams with collaborators and full invoicing",
        "monthly_price": "59.00",
        "yearly_price": "590.00",
        "is_free": False,
        "features": {
            "client_management": True,
            "job_management": True,
            "collaborator_management": True,
            "activity_tracking": True,
            "materials_inventory": True,
            "calendar": True,
            "invoice_generation": True,
            "reports": True,
            "notifications": True,
            "permissions": {
                "client.view": True,
                "client.view_all": True,
                "client.create": True,
                "client.edit": True,
                "client.delete": True,
                "job.view": True,
                "job.view_all": True,
                "job.create": True,
                "job.edit": True,
                "job.delete": True,
                "job.complete": True,
                "collaborator.create": True,
                "collaborator.edit": True,
                "collaborator.delete": True,
                "collaborator.assign": True,
                "invoice.create": True,
                "invoice.edit": True,
                "invoice.delete": True,
                "invoice.send": True,
                "settings.view": True,
                "settings.edit": True,
            },
        },
    },
]


def parse_plan_id(raw: Any) -> int:
    """Coerce a request plan id to int; bools and non-integers are rejected."""
    if isinstance(raw, bool) or raw is None:
        raise ValidationError(f"Invalid plan id: {raw!r}")
    if isinstance(raw, int):
        plan_id = raw
    elif isinstance(raw, str) and raw.strip().isdigit():
        plan_id = int(raw.strip())
    else:
        raise ValidationError(f"Invalid plan id: {raw!r}")
    if plan_id <= 0:
        raise ValidationError(f"Invalid plan id: {raw!r}")
    return plan_id


def parse_billing_frequency(raw: Any) -> BillingFrequency:
    try:
        return BillingFrequency(str(raw).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Invalid billing frequency: {raw!r}. Expected 'monthly' or 'yearly'."
        )


def normalize_features(raw: Any) -> Dict[str, Any]:
    """Return the plan feature bag as a dict.

    Missing bags, invalid JSON and non-object values all become an empty bag,
    so a half-configured plan denies everything instead of erroring.
    """
    if raw is None:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("Plan features are not valid JSON - treating as empty")
            return {}
    if not isinstance(raw, dict):
        return {}
    features = dict(raw)
    if "permissions" in features and not isinstance(features["permissions"], dict):
        features["permissions"] = {}
    return features


def to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value if value is not None else "0"))
    except InvalidOperation:
        raise ValidationError(f"Invalid price value: {value!r}")


def to_minor_units(amount: Any) -> int:
    """Convert a currency amount to integer minor units, rounding half up.

    19.99 -> 1999, 29 -> 2900, 0.015 -> 2. Never truncates.
    """
    return int((to_decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PlanCatalog:
    """Read access to subscription plans."""
    
    def _to_plan(self, doc: Dict[str, Any]) -> Plan:
        doc = dict(doc)
        doc["features"] = normalize_features(doc.get("features"))
        doc["is_free"] = bool(doc.get("is_free"))
        # Legacy rows may carry null durations
        for key, default in (("monthly_duration_days", 30), ("yearly_duration_days", 365)):
            if doc.get(key) is None:
                doc[key] = default
        for key in ("monthly_price", "yearly_price"):
            if doc.get(key) is None:
                doc[key] = "0.00"
            else:
                doc[key] = str(doc[key])
        return Plan(**doc)
    
    async def get_plan(self, plan_id: int) -> Plan:
        db = database.get_db()
        doc = await db.subscription_plans.find_one({"plan_id": plan_id}, {"_id": 0})
        if not doc or not doc.get("is_active", True):
            raise PlanNotFoundError(f"Plan {plan_id} not found")
        return self._to_plan(doc)
    
    async def find_plan(self, plan_id: Optional[int]) -> Optional[Plan]:
        """Like get_plan but returns None instead of raising."""
        if plan_id is None:
            return None
        try:
            return await self.get_plan(plan_id)
        except PlanNotFoundError:
            return None
    
    async def get_all_plans(self) -> List[Plan]:
        db = database.get_db()
        docs = await db.subscription_plans.find(
            {"is_active": {"$ne": False}}, {"_id": 0}
        ).sort("plan_id", 1).to_list(100)
        return [self._to_plan(d) for d in docs]
    
    async def seed_defaults(self) -> int:
        """Insert the default catalog when the collection is empty."""
        db = database.get_db()
        existing = await db.subscription_plans.count_documents({})
        if existing:
            return 0
        await db.subscription_plans.insert_many([dict(p) for p in DEFAULT_PLANS])
        logger.info(f"Seeded {len(DEFAULT_PLANS)} default subscription plans")
        return len(DEFAULT_PLANS)
    
    # =========================================================================
    # Pricing
    # =========================================================================
    
    def price_for(self, plan: Plan, frequency: BillingFrequency) -> Decimal:
        if frequency == BillingFrequency.YEARLY:
            return to_decimal(plan.yearly_price)
        return to_decimal(plan.monthly_price)
    
    def is_free(self, plan: Plan, frequency: BillingFrequency) -> bool:
        # Compared after rounding: a price that charges 0 minor units is free
        return bool(plan.is_free) or self.amount_minor_units(plan, frequency) == 0
    
    def amount_minor_units(self, plan: Plan, frequency: BillingFrequency) -> int:
        return to_minor_units(self.price_for(plan, frequency))
    
    def duration_for(self, plan: Plan, frequency: BillingFrequency) -> timedelta:
        if frequency == BillingFrequency.YEARLY:
            return timedelta(days=plan.yearly_duration_days)
        return timedelta(days=plan.monthly_duration_days)
    
    def period_end(self, plan: Plan, frequency: BillingFrequency, start: datetime) -> datetime:
        return start + self.duration_for(plan, frequency)
    
    def price_breakdown(self, plan: Plan, frequency: BillingFrequency) -> Dict[str, str]:
        """Display-only price lines with a flat VAT rate. Never charged."""
        net = self.price_for(plan, frequency).quantize(_CENT, rounding=ROUND_HALF_UP)
        vat = (net * VAT_RATE).quantize(_CENT, rounding=ROUND_HALF_UP)
        return {
            "net": str(net),
            "vat": str(vat),
            "gross": str(net + vat),
            "vat_rate": str(VAT_RATE),
            "currency": plan.currency,
        }
    
    def to_public_dict(self, plan: Plan) -> Dict[str, Any]:
        data = plan.model_dump()
        data["pricing"] = {
            BillingFrequency.MONTHLY.value: self.price_breakdown(plan, BillingFrequency.MONTHLY),
            BillingFrequency.YEARLY.value: self.price_breakdown(plan, BillingFrequency.YEARLY),
        }
        return data


# Singleton instance
plan_catalog = PlanCatalog()
