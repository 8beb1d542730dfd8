"""Entitlement Resolver - effective capabilities from plan + raw permissions.

Two permission naming generations coexist:
- legacy boolean flags (canViewJobs, canEditClients, ...) coming from the
  user/role-level permission map
- dotted capability keys (job.view, client.edit, ...) coming from the plan's
  ``features.permissions`` sub-map (and, sometimes, the raw map as well)

Both live in ONE key space here. The merge is a plain dict union where the
plan wins on collision, so a plan change can revoke a legacy grant.

NON-NEGOTIABLE RULES:
1. A capability is granted iff its merged value ``is True``. Missing, False,
   "true", 1 - all deny.
2. Composite queries are data (COMPOSITE_QUERIES), never hand-written OR
   chains; each one accepts the legacy flag OR any equivalent dotted key.
3. Resolution is pure and never raises on partial input: a missing plan is
   an empty feature bag.
4. EffectiveEntitlement is immutable and computed once per request, then
   passed to consumers explicitly.
"""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, NamedTuple, Optional, Tuple
import logging

from database import database
from models import SubscriptionStatus
from services.plan_catalog import normalize_features, plan_catalog

logger = logging.getLogger(__name__)


# ============================================================================
# LEGACY -> DOTTED TRANSLATION TABLE
# ============================================================================
# Each legacy flag and the dotted keys that grant the same capability.
LEGACY_CAPABILITY_ALIASES: Dict[str, Tuple[str, ...]] = {
    "canViewClients": ("client.view", "client.view_all"),
    "canCreateClients": ("client.create",),
    "canEditClients": ("client.edit",),
    "canDeleteClients": ("client.delete",),
    "canViewJobs": ("job.view", "job.view_all"),
    "canCreateJobs": ("job.create",),
    "canEditJobs": ("job.edit",),
    "canDeleteJobs": ("job.delete",),
    # Reports never got a dotted key; the plan gates them with a feature flag
    "canViewReports": (),
}


class CompositeQuery(NamedTuple):
    """A capability check satisfied by any of its sources."""
    legacy: Optional[str] = None
    keys: Tuple[str, ...] = ()
    features: Tuple[str, ...] = ()
    
    def capability_keys(self) -> Tuple[str, ...]:
        if not self.legacy:
            return self.keys
        return (self.legacy,) + LEGACY_CAPABILITY_ALIASES.get(self.legacy, ()) + self.keys


COMPOSITE_QUERIES: Dict[str, CompositeQuery] = {
    # Clients
    "can_view_clients": CompositeQuery(legacy="canViewClients"),
    "can_create_clients": CompositeQuery(legacy="canCreateClients"),
    "can_edit_clients": CompositeQuery(legacy="canEditClients"),
    "can_delete_clients": CompositeQuery(legacy="canDeleteClients"),
    
    # Jobs
    "can_view_jobs": CompositeQuery(legacy="canViewJobs"),
    "can_create_jobs": CompositeQuery(legacy="canCreateJobs"),
    "can_edit_jobs": CompositeQuery(legacy="canEditJobs"),
    "can_delete_jobs": CompositeQuery(legacy="canDeleteJobs"),
    "can_complete_jobs": CompositeQuery(keys=("job.complete",)),
    
    # Collaborators
    "can_manage_collaborators": CompositeQuery(
        keys=("collaborator.create", "collaborator.edit", "collaborator.delete")
    ),
    "can_create_collaborators": CompositeQuery(keys=("collaborator.create",)),
    
    # Invoices
    "can_manage_invoices": CompositeQuery(
        keys=("invoice.create", "invoice.edit", "invoice.delete")
    ),
    
    # Feature areas
    "can_view_reports": CompositeQuery(legacy="canViewReports", features=("reports",)),
    "can_view_calendar": CompositeQuery(features=("calendar",)),
    "can_view_settings": CompositeQuery(keys=("settings.view", "settings.edit")),
}


# ============================================================================
# EFFECTIVE ENTITLEMENT (value object)
# ============================================================================
@dataclass(frozen=True)
class EffectiveEntitlement:
    permissions: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    features: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    plan_id: Optional[int] = None
    
    def has_permission(self, key: str) -> bool:
        return self.permissions.get(key) is True
    
    def has_any_permission(self, keys: Iterable[str]) -> bool:
        return any(self.has_permission(k) for k in keys)
    
    def has_all_permissions(self, keys: Iterable[str]) -> bool:
        return all(self.has_permission(k) for k in keys)
    
    def has_feature(self, name: str) -> bool:
        return self.features.get(name) is True
    
    def allows(self, query: str) -> bool:
        """Evaluate a named composite query (see COMPOSITE_QUERIES)."""
        composite = COMPOSITE_QUERIES.get(query)
        if composite is None:
            raise KeyError(f"Unknown capability query: {query}")
        return (
            self.has_any_permission(composite.capability_keys())
            or any(self.has_feature(f) for f in composite.features)
        )
    
    def computed(self) -> Dict[str, bool]:
        return {name: self.allows(name) for name in COMPOSITE_QUERIES}
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "permissions": dict(self.permissions),
            "features": dict(self.features),
            "computed": self.computed(),
        }


def _unwrap_raw_permissions(raw: Any) -> Dict[str, Any]:
    """The permissions endpoint answers either flat or as {"permissions": {...}}."""
    if not isinstance(raw, dict):
        return {}
    inner = raw.get("permissions")
    if isinstance(inner, dict):
        return dict(inner)
    return dict(raw)


def resolve(
    raw_permissions: Optional[Mapping[str, Any]],
    plan_features: Optional[Any],
    plan_id: Optional[int] = None,
) -> EffectiveEntitlement:
    """Merge raw permissions with the plan's permission sub-map.
    
    effective = {**raw, **plan.permissions}; top-level plan booleans become
    the feature set. Safe with None/partial inputs.
    """
    raw = _unwrap_raw_permissions(raw_permissions)
    bag = normalize_features(plan_features)
    plan_permissions = bag.get("permissions") or {}
    
    merged = {**raw, **plan_permissions}
    features = {k: v for k, v in bag.items() if k != "permissions"}
    
    return EffectiveEntitlement(
        permissions=MappingProxyType(merged),
        features=MappingProxyType(features),
        plan_id=plan_id,
    )


# ============================================================================
# ENTITLEMENT SERVICE (data loading)
# ============================================================================
class EntitlementService:
    """Loads the two entitlement inputs and resolves them once per request."""
    
    async def get_raw_permissions(self, user_id: str) -> Dict[str, Any]:
        db = database.get_db()
        doc = await db.user_permissions.find_one({"user_id": user_id}, {"_id": 0})
        if not doc:
            return {}
        doc.pop("user_id", None)
        return _unwrap_raw_permissions(doc)
    
    async def get_plan_configuration(self, user_id: str) -> Dict[str, Any]:
        """Feature bag of the plan backing the user's ACTIVE subscription.
        
        Users without an active subscription get an empty bag (plan_id None):
        pending or failed payments never unlock plan features.
        """
        db = database.get_db()
        subscription = await db.subscriptions.find_one(
            {"user_id": user_id},
            {"_id": 0, "plan_id": 1, "status": 1},
        )
        if not subscription or subscription.get("status") != SubscriptionStatus.ACTIVE.value:
            return {"plan_id": None, "features": {}}
        
        plan = await plan_catalog.find_plan(subscription.get("plan_id"))
        if not plan:
            logger.warning(
                "Subscription for user %s references missing plan %s - empty feature bag",
                user_id, subscription.get("plan_id"),
            )
            return {"plan_id": subscription.get("plan_id"), "features": {}}
        return {"plan_id": plan.plan_id, "features": plan.features}
    
    async def load_entitlement(self, user_id: str) -> EffectiveEntitlement:
        raw = await self.get_raw_permissions(user_id)
        plan_config = await self.get_plan_configuration(user_id)
        return resolve(raw, plan_config.get("features"), plan_config.get("plan_id"))


# Singleton instance
entitlement_service = EntitlementService()
