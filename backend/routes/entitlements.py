"""Entitlement Routes.

Endpoints:
- GET /api/entitlements - Effective plan, limits, feature flags and usage
- GET /api/entitlements/check?kind=&scope_id= - Can the caller create one more?
"""
from fastapi import APIRouter, Request
from typing import Optional
from services.entitlements import entitlement_checker
from middleware import require_auth
from utils.errors import RejectionError

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


@router.get("")
async def get_entitlements(request: Request):
    user = await require_auth(request)
    return await entitlement_checker.usage_summary(user["id"])


@router.get("/check")
async def check_entitlement(request: Request, kind: str, scope_id: Optional[str] = None):
    user = await require_auth(request)
    if scope_id:
        denied = await entitlement_checker.catalogue_access(user["id"], scope_id)
        if denied:
            raise RejectionError.from_rejection(denied)
    decision = await entitlement_checker.check_entitlement(
        user["id"], kind, scope_id=scope_id, email=user.get("email")
    )
    return decision.model_dump()
