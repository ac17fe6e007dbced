"""Stripe Service - outbound calls to the payment provider.

Every SDK failure is wrapped into UpstreamError; nothing here is retried.
Checkout session metadata always carries account_id, plan and
billing_cycle so the webhook reconciler can materialize the subscription.
"""
import stripe
import os
import logging
from typing import Optional, Dict, Any

from database import database
from models import DiscountType
from utils.errors import UpstreamError

logger = logging.getLogger(__name__)

# Initialize Stripe (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()


class StripeService:
    """Stripe billing operations service."""

    def _require_key(self):
        if not (stripe.api_key or "").strip():
            raise UpstreamError("Payment provider is not configured")

    async def get_or_create_customer(self, account_id: str, email: Optional[str]) -> str:
        """Return the account's Stripe customer id, creating the customer once."""
        db = database.get_db()
        account = await db.accounts.find_one(
            {"account_id": account_id},
            {"_id": 0, "stripe_customer_id": 1}
        )
        if account and account.get("stripe_customer_id"):
            return account["stripe_customer_id"]

        self._require_key()
        try:
            customer = stripe.Customer.create(
                email=email,
                metadata={"account_id": account_id},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe customer creation failed for {account_id}: {e}")
            raise UpstreamError("Failed to create payment customer") from e

        await db.accounts.update_one(
            {"account_id": account_id},
            {"$set": {"stripe_customer_id": customer["id"]}}
        )
        logger.info(f"Stripe customer {customer['id']} created for {account_id}")
        return customer["id"]

    async def ensure_provider_coupon(self, coupon: Dict[str, Any], currency: str) -> str:
        """Stripe coupon mirroring a local coupon (id = code, single use per subscription)."""
        self._require_key()
        code = coupon["code"]
        try:
            try:
                existing = stripe.Coupon.retrieve(code)
                return existing["id"]
            except stripe.InvalidRequestError:
                pass

            params: Dict[str, Any] = {"id": code, "duration": "once", "name": coupon.get("name") or code}
            if coupon["discount_type"] == DiscountType.PERCENTAGE.value:
                params["percent_off"] = coupon["value"]
            else:
                params["amount_off"] = int(round(coupon["value"] * 100))
                params["currency"] = currency.lower()
            created = stripe.Coupon.create(**params)
            logger.info(f"Stripe coupon {code} created")
            return created["id"]
        except stripe.StripeError as e:
            logger.error(f"Stripe coupon sync failed for {code}: {e}")
            raise UpstreamError("Failed to prepare discount with payment provider") from e

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        provider_coupon_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._require_key()
        params: Dict[str, Any] = {
            "customer": customer_id,
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if provider_coupon_id:
            params["discounts"] = [{"coupon": provider_coupon_id}]
        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout session failed for {metadata.get('account_id')}: {e}")
            raise UpstreamError("Failed to create checkout session") from e

        logger.info(f"Checkout session {session['id']} created for {metadata.get('account_id')} ({metadata.get('plan')})")
        return {"session_id": session["id"], "checkout_url": session["url"]}

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        self._require_key()
        try:
            portal = stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)
        except stripe.StripeError as e:
            logger.error(f"Stripe portal session failed for {customer_id}: {e}")
            raise UpstreamError("Failed to open billing portal") from e
        return portal["url"]

    async def cancel_subscription(self, provider_subscription_id: str, at_period_end: bool = True) -> Dict[str, Any]:
        self._require_key()
        try:
            if at_period_end:
                result = stripe.Subscription.modify(provider_subscription_id, cancel_at_period_end=True)
            else:
                result = stripe.Subscription.cancel(provider_subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe cancellation failed for {provider_subscription_id}: {e}")
            raise UpstreamError("Failed to cancel subscription with payment provider") from e
        logger.info(f"Stripe subscription {provider_subscription_id} cancel requested (at_period_end={at_period_end})")
        return {"id": result["id"], "status": result["status"]}


stripe_service = StripeService()
