"""Checkout - turning a plan choice into a subscription.

Two paths:
- Free path (final amount 0 after coupon): a local subscription is created
  INCOMPLETE, the coupon is redeemed authoritatively, then the subscription
  is activated with a locally computed period. A refused redemption cancels
  the local record.
- Paid path: a Stripe checkout session is created; the subscription is
  materialized later by the webhook reconciler.
"""
import os
import logging
from typing import Any, Dict, Optional, Union

from database import database
from models import (
    BillingCycle, CouponQuote, PlanTier, Rejection, SubscriptionStatus,
)
from services.coupon_ledger import coupon_ledger
from services.plan_catalog import plan_catalog
from services.stripe_service import stripe_service
from services.subscription_state import subscription_state
from utils.errors import ValidationError

logger = logging.getLogger(__name__)


def _frontend_url() -> str:
    return os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")


class CheckoutService:

    async def start_checkout(
        self,
        user: Dict[str, Any],
        plan: str,
        billing_cycle: str,
        coupon_code: Optional[str] = None,
    ) -> Union[Dict[str, Any], Rejection]:
        try:
            tier = PlanTier((plan or "").upper())
            cycle = BillingCycle((billing_cycle or "").upper())
        except ValueError:
            raise ValidationError(f"Invalid plan or billing cycle: {plan} / {billing_cycle}")
        if tier == PlanTier.FREE:
            raise ValidationError("The FREE plan does not require checkout")

        account_id = user["id"]
        amount = plan_catalog.price_for(tier, cycle)
        currency = plan_catalog.currency

        quote: Optional[CouponQuote] = None
        if coupon_code:
            result = await coupon_ledger.validate(coupon_code, cycle, amount, account_id)
            if isinstance(result, Rejection):
                return result
            quote = result

        final_amount = quote.final_amount if quote else amount
        logger.info(
            f"Checkout account={account_id} plan={tier.value} cycle={cycle.value} "
            f"amount={amount} final={final_amount} coupon={quote.code if quote else None}"
        )

        if final_amount <= 0:
            return await self._free_checkout(account_id, tier, cycle, currency, quote)

        return await self._provider_checkout(user, tier, cycle, currency, quote)

    async def _free_checkout(
        self,
        account_id: str,
        tier: PlanTier,
        cycle: BillingCycle,
        currency: str,
        quote: Optional[CouponQuote],
    ) -> Union[Dict[str, Any], Rejection]:
        subscription = await subscription_state.create_local_subscription(
            account_id, tier, cycle, amount=0, currency=currency
        )
        subscription_id = subscription["subscription_id"]

        if quote:
            usage = await coupon_ledger.redeem(quote.coupon_id, account_id, subscription_id)
            if isinstance(usage, Rejection):
                await subscription_state.transition(
                    subscription_id, SubscriptionStatus.CANCELED, reason="coupon_rejected"
                )
                return usage

        _, subscription = await subscription_state.activate_local(subscription_id)
        return {
            "mode": "local",
            "subscription": subscription,
            "discount_amount": quote.discount_amount if quote else 0,
            "final_amount": 0,
        }

    async def _provider_checkout(
        self,
        user: Dict[str, Any],
        tier: PlanTier,
        cycle: BillingCycle,
        currency: str,
        quote: Optional[CouponQuote],
    ) -> Dict[str, Any]:
        price_id = plan_catalog.price_id_for(tier, cycle)
        if not price_id:
            raise ValueError(f"STRIPE_PRICE_{tier.value}_{cycle.value} is not configured")

        account_id = user["id"]
        customer_id = await stripe_service.get_or_create_customer(account_id, user.get("email"))

        provider_coupon_id = None
        if quote:
            coupon = await coupon_ledger.get_coupon(quote.code)
            provider_coupon_id = await stripe_service.ensure_provider_coupon(coupon, currency)

        metadata = {
            "account_id": account_id,
            "plan": tier.value,
            "billing_cycle": cycle.value,
        }
        if quote:
            metadata["coupon_code"] = quote.code

        base = _frontend_url()
        session = await stripe_service.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            metadata=metadata,
            success_url=f"{base}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base}/billing/cancel",
            provider_coupon_id=provider_coupon_id,
        )
        return {
            "mode": "provider",
            "checkout_url": session["checkout_url"],
            "session_id": session["session_id"],
            "discount_amount": quote.discount_amount if quote else 0,
            "final_amount": quote.final_amount if quote else plan_catalog.price_for(tier, cycle),
        }

    async def cancel_subscription(self, account_id: str, at_period_end: bool = True) -> Optional[Dict[str, Any]]:
        """Cancel the effective subscription. Returns the updated record, or None."""
        subscription = await subscription_state.get_effective_subscription(account_id)
        if not subscription:
            return None

        provider_id = subscription.get("provider_subscription_id")
        if provider_id:
            await stripe_service.cancel_subscription(provider_id, at_period_end=at_period_end)

        if at_period_end:
            return await subscription_state.set_cancel_at_period_end(subscription["subscription_id"], True)

        _, doc = await subscription_state.transition(
            subscription["subscription_id"], SubscriptionStatus.CANCELED, cancel_at_period_end=False,
            reason="user_cancel",
        )
        return doc

    async def billing_portal_url(self, account_id: str) -> str:
        db = database.get_db()
        account = await db.accounts.find_one({"account_id": account_id}, {"_id": 0, "stripe_customer_id": 1})
        customer_id = (account or {}).get("stripe_customer_id")
        if not customer_id:
            raise ValidationError("No billing account found - subscribe to a paid plan first")
        return await stripe_service.create_portal_session(customer_id, f"{_frontend_url()}/billing")


checkout_service = CheckoutService()
