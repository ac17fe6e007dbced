"""Coupon Routes.

Endpoints:
- POST /api/coupons/validate - Price a code for a plan (advisory)
- POST /api/coupons/redeem - Redeem a code against one of the caller's subscriptions
- GET /api/coupons/usage/history - The caller's coupon usage
- GET /api/coupons/{code} - Public coupon lookup (no auth)
"""
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel
from typing import Optional
from models import Rejection
from services.coupon_ledger import coupon_ledger
from services.plan_catalog import plan_catalog
from middleware import require_auth
from utils.errors import RejectionError
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/coupons", tags=["coupons"])


class ValidateCouponRequest(BaseModel):
    code: str
    billing_cycle: str
    plan: Optional[str] = None
    amount: Optional[float] = None


class RedeemCouponRequest(BaseModel):
    code: str
    subscription_id: str


@router.post("/validate")
async def validate_coupon(request: Request, body: ValidateCouponRequest):
    """Price the code against an explicit amount or the plan's price for the cycle."""
    user = await require_auth(request)
    if body.amount is not None:
        amount = body.amount
    elif body.plan:
        try:
            amount = plan_catalog.price_for(body.plan, body.billing_cycle)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid plan or billing cycle")
    else:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="plan or amount is required")

    result = await coupon_ledger.validate(body.code, body.billing_cycle, amount, user["id"])
    if isinstance(result, Rejection):
        raise RejectionError.from_rejection(result)
    return {"valid": True, "original_amount": amount, **result.model_dump()}


@router.post("/redeem")
async def redeem_coupon(request: Request, body: RedeemCouponRequest):
    user = await require_auth(request)
    coupon = await coupon_ledger.get_coupon(body.code)
    if not coupon:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invalid coupon code")

    result = await coupon_ledger.redeem(coupon["coupon_id"], user["id"], body.subscription_id)
    if isinstance(result, Rejection):
        raise RejectionError.from_rejection(result)
    return {"success": True, "usage": result.model_dump()}


@router.get("/usage/history")
async def usage_history(request: Request):
    user = await require_auth(request)
    return {"usages": await coupon_ledger.usage_history(user["id"])}


@router.get("/{code}")
async def lookup_coupon(code: str):
    info = await coupon_ledger.lookup(code)
    if not info:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    return info
