"""Billing Routes - Plans, checkout and subscription management.

Endpoints:
- GET /api/billing/plans - Plan catalog for the pricing page
- POST /api/billing/checkout - Start checkout (local free path or Stripe session)
- GET /api/billing/subscription - Current and effective subscription
- POST /api/billing/portal - Create Stripe billing portal session
- POST /api/billing/cancel - Cancel subscription
"""
from fastapi import APIRouter, Request
from pydantic import BaseModel
from typing import Optional
from models import Rejection
from services.checkout_service import checkout_service
from services.plan_catalog import plan_catalog
from services.subscription_state import subscription_state
from middleware import require_auth
from utils.errors import RejectionError
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to start checkout."""
    plan: str  # STANDARD, PROFESSIONAL, BUSINESS
    billing_cycle: str  # MONTHLY, YEARLY
    coupon_code: Optional[str] = None


class CancelRequest(BaseModel):
    """Request to cancel subscription."""
    cancel_immediately: bool = False


@router.get("/plans")
async def list_plans():
    return {"plans": plan_catalog.list_plans(), "currency": plan_catalog.currency}


@router.post("/checkout")
async def create_checkout(request: Request, body: CheckoutRequest):
    """
    Start checkout for a paid plan.

    Returns mode "local" with the activated subscription when a coupon brings
    the price to zero, otherwise mode "provider" with the Stripe checkout URL.
    """
    user = await require_auth(request)
    result = await checkout_service.start_checkout(
        user,
        plan=body.plan,
        billing_cycle=body.billing_cycle,
        coupon_code=body.coupon_code,
    )
    if isinstance(result, Rejection):
        raise RejectionError.from_rejection(result)
    return result


@router.get("/subscription")
async def get_subscription(request: Request):
    user = await require_auth(request)
    current = await subscription_state.get_current_subscription(user["id"])
    effective = await subscription_state.get_effective_subscription(user["id"])
    return {
        "plan": effective["plan"] if effective else "FREE",
        "effective_subscription": effective,
        "current_subscription": current,
    }


@router.post("/portal")
async def create_portal_session(request: Request):
    user = await require_auth(request)
    url = await checkout_service.billing_portal_url(user["id"])
    return {"portal_url": url}


@router.post("/cancel")
async def cancel_subscription(request: Request, body: CancelRequest):
    user = await require_auth(request)
    subscription = await checkout_service.cancel_subscription(
        user["id"], at_period_end=not body.cancel_immediately
    )
    if not subscription:
        return {"success": False, "message": "No active subscription"}
    logger.info(f"Subscription {subscription['subscription_id']} cancel requested by {user['id']}")
    return {"success": True, "subscription": subscription}
