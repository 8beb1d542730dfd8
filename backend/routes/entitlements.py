"""Entitlement Routes - read-only permission data.

Endpoints:
- GET /api/permissions - Raw permission map for the caller
- GET /api/plan-configuration - Feature bag of the caller's active plan
- GET /api/entitlements - The resolved, merged entitlement
- GET /api/entitlements/{capability} - One composite query (e.g. can_view_jobs)
"""
from fastapi import APIRouter, Depends, Request
from middleware import require_auth
from services.billing_errors import ValidationError
from services.entitlement_resolver import EffectiveEntitlement, entitlement_service

router = APIRouter(prefix="/api", tags=["entitlements"])


async def current_entitlement(request: Request) -> EffectiveEntitlement:
    """Dependency: resolve once per request."""
    user = await require_auth(request)
    return await entitlement_service.load_entitlement(user["user_id"])


@router.get("/permissions")
async def get_permissions(request: Request):
    user = await require_auth(request)
    return {"permissions": await entitlement_service.get_raw_permissions(user["user_id"])}


@router.get("/plan-configuration")
async def get_plan_configuration(request: Request):
    user = await require_auth(request)
    return await entitlement_service.get_plan_configuration(user["user_id"])


@router.get("/entitlements")
async def get_entitlements(entitlement: EffectiveEntitlement = Depends(current_entitlement)):
    return entitlement.to_dict()


@router.get("/entitlements/{capability}")
async def check_capability(capability: str, entitlement: EffectiveEntitlement = Depends(current_entitlement)):
    """Evaluate one composite query, e.g. can_view_jobs."""
    try:
        allowed = entitlement.allows(capability)
    except KeyError:
        raise ValidationError(f"Unknown capability: {capability}")
    return {"capability": capability, "allowed": allowed}
