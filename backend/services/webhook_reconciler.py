"""Webhook Reconciler - Stripe events into the local subscription state machine.

Key Principles:
1. Signature verification: an envelope that fails verification is rejected
   before any processing (SignatureError)
2. Idempotency by construction: every mutation is an upsert keyed on the
   Stripe subscription id, coupon usage is guarded by an existence check
3. Acknowledge always: a handler failure is logged, audited and recorded,
   and the provider still receives a 2xx
4. Audit trail: every event lands in webhook_events after processing,
   best-effort

Events Handled:
- checkout.session.completed (materializes the subscription, applies coupon)
- customer.subscription.created (informational)
- customer.subscription.updated (status / period sync)
- customer.subscription.deleted (forces CANCELED)
- invoice.payment_succeeded, invoice.paid (forces ACTIVE)
- invoice.payment_failed (forces PAST_DUE)
"""
import json
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import stripe

from database import database
from models import AuditAction, BillingCycle, PlanTier, Rejection, SubscriptionStatus
from services.coupon_ledger import coupon_ledger
from services.plan_catalog import plan_catalog
from services.subscription_state import map_provider_status, subscription_state
from utils.audit import create_audit_log, record_webhook_event
from utils.errors import SignatureError, ValidationError

logger = logging.getLogger(__name__)

# Initialize Stripe (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()


def _get_webhook_secret() -> str:
    return (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()


def _allow_unsigned() -> bool:
    return os.getenv("STRIPE_WEBHOOK_ALLOW_UNSIGNED", "").strip().lower() == "true"


def _as_dict(obj: Any) -> Dict[str, Any]:
    """Plain dict for a Stripe SDK object (or a dict already)."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return json.loads(str(obj))


def _object_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return None


def _ts(value: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


def _period_bounds(subscription: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Current period; newer API versions carry it on the subscription items."""
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = start or items[0].get("current_period_start")
            end = end or items[0].get("current_period_end")
    return _ts(start), _ts(end)


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub_id = _object_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return _object_id(details.get("subscription"))


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    """Safe fields for structured logging."""
    obj = event.get("data", {}).get("object", {}) or {}
    metadata = obj.get("metadata", {}) or {}
    return {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "livemode": event.get("livemode"),
        "account_id": metadata.get("account_id"),
        "subscription_id": _object_id(obj.get("subscription")) or (obj.get("id") if obj.get("object") == "subscription" else None),
    }


class WebhookReconciler:
    """Stripe webhook handler."""

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    def verify(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """Authenticate the envelope and return the parsed event."""
        webhook_secret = _get_webhook_secret()
        if webhook_secret:
            try:
                stripe.Webhook.construct_event(payload, signature, webhook_secret)
            except stripe.SignatureVerificationError as e:
                logger.error("Webhook signature verification failed: %s", e)
                raise SignatureError("Invalid signature")
            except ValueError as e:
                logger.error("Webhook payload could not be parsed: %s", e)
                raise ValidationError("Invalid payload")
        elif _allow_unsigned():
            logger.warning("STRIPE_WEBHOOK_SECRET not set - accepting unsigned webhook (development only)")
        else:
            logger.error("STRIPE_WEBHOOK_SECRET not set - rejecting webhook")
            raise SignatureError("Webhook signing secret is not configured")

        try:
            event = json.loads(payload)
        except ValueError:
            raise ValidationError("Invalid payload")
        if not isinstance(event, dict) or not event.get("type"):
            raise ValidationError("Invalid payload")
        return event

    async def process_webhook(
        self,
        payload: bytes,
        signature: str
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Raises SignatureError / ValidationError for envelopes that must be
        refused. Otherwise always returns (True, message, details).
        """
        event = self.verify(payload, signature)

        event_id = event.get("id")
        event_type = event.get("type")
        ctx = _extract_webhook_context(event)
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s account_id=%s subscription_id=%s",
            event_id, event_type, ctx.get("livemode"), ctx.get("account_id"), ctx.get("subscription_id"),
        )

        processed = False
        error = None
        try:
            result = await self.apply(event)
            processed = True
            logger.info(
                "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s handled=%s",
                event_id, event_type, result.get("handled"),
            )
        except Exception as e:
            error = str(e)
            result = {"error": error}
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, error, exc_info=True,
            )
            await create_audit_log(
                action=AuditAction.WEBHOOK_PROCESSING_FAILED,
                account_id=ctx.get("account_id"),
                resource_type="webhook_event",
                resource_id=event_id,
                metadata={"event_type": event_type, "error": error},
            )

        await record_webhook_event(
            event_id=event_id,
            event_type=event_type,
            processed=processed,
            payload=event,
            error=error,
        )

        # 2xx either way so the provider does not retry a failing handler forever
        message = "Processed" if processed else "Event logged with error"
        return True, message, {"event_id": event_id, **result}

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def apply(self, event: Dict) -> Dict:
        """Route event to the appropriate handler. Safe to replay."""
        event_type = event.get("type")
        data = event.get("data", {}).get("object", {}) or {}

        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_created,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_invoice_paid,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_payment_failed,
        }

        handler = handlers.get(event_type)
        if handler:
            return await handler(data, event)

        logger.info(f"Ignoring unhandled event type: {event_type}")
        return {"handled": False, "event_type": event_type}

    async def _handle_checkout_completed(self, session: Dict, event: Dict) -> Dict:
        """Materialize (or re-sync) the subscription and apply an attached coupon once."""
        if session.get("mode") != "subscription":
            logger.info(f"Ignoring checkout mode: {session.get('mode')}")
            return {"handled": False, "mode": session.get("mode")}

        metadata = session.get("metadata", {}) or {}
        account_id = metadata.get("account_id")
        stripe_customer_id = _object_id(session.get("customer"))
        stripe_subscription_id = _object_id(session.get("subscription"))
        logger.info(
            "HANDLER_START event.type=checkout.session.completed checkout_session_id=%s "
            "stripe_customer_id=%s subscription_id=%s metadata.account_id=%s metadata.plan=%s",
            session.get("id"), stripe_customer_id, stripe_subscription_id, account_id, metadata.get("plan"),
        )
        if not account_id:
            raise ValueError(f"account_id missing from session.metadata ({session.get('id')})")
        if not stripe_subscription_id:
            raise ValueError(f"subscription missing from checkout session {session.get('id')}")

        subscription = _as_dict(stripe.Subscription.retrieve(
            stripe_subscription_id,
            expand=["items.data.price"]
        ))
        items = (subscription.get("items") or {}).get("data") or []
        price = (items[0].get("price") if items else None) or {}

        plan = None
        if metadata.get("plan"):
            plan = PlanTier(metadata["plan"].upper())
        else:
            plan = plan_catalog.plan_from_price_id(price.get("id"))
        if not plan:
            raise ValueError(f"No matching plan found for subscription {stripe_subscription_id}")

        if metadata.get("billing_cycle"):
            cycle = BillingCycle(metadata["billing_cycle"].upper())
        else:
            cycle = plan_catalog.billing_cycle_from_price(price)

        if session.get("amount_total") is not None:
            amount = session["amount_total"] / 100
        else:
            amount = (price.get("unit_amount") or 0) / 100
        currency = (session.get("currency") or price.get("currency") or plan_catalog.currency).upper()

        period_start, period_end = _period_bounds(subscription)
        status = map_provider_status(subscription.get("status"))
        local = await subscription_state.upsert_from_provider(
            stripe_subscription_id,
            account_id=account_id,
            status=status,
            plan=plan,
            billing_cycle=cycle,
            amount=amount,
            currency=currency,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
            trial_end=_ts(subscription.get("trial_end")),
            provider_customer_id=stripe_customer_id,
        )
        if not local:
            raise ValueError(f"Subscription {stripe_subscription_id} could not be materialized")

        if stripe_customer_id:
            db = database.get_db()
            await db.accounts.update_one(
                {"account_id": account_id},
                {"$set": {"stripe_customer_id": stripe_customer_id}}
            )

        coupon_result = None
        coupon_code = metadata.get("coupon_code")
        if coupon_code:
            usage = await coupon_ledger.record_provider_redemption(
                coupon_code, account_id, local["subscription_id"]
            )
            if isinstance(usage, Rejection):
                logger.warning(
                    f"Coupon {coupon_code} on {stripe_subscription_id} not recorded: {usage.reason.value}"
                )
                coupon_result = {"applied": False, "reason": usage.reason.value}
            else:
                coupon_result = {"applied": True, "usage_id": usage.usage_id}

        logger.info(
            "HANDLER_END event.type=checkout.session.completed account_id=%s subscription_id=%s status=%s",
            account_id, local["subscription_id"], local["status"],
        )
        return {
            "handled": True,
            "account_id": account_id,
            "subscription_id": local["subscription_id"],
            "status": local["status"],
            "coupon": coupon_result,
        }

    async def _handle_subscription_created(self, subscription: Dict, event: Dict) -> Dict:
        # Materialization happens on checkout.session.completed
        logger.info(f"Subscription created at provider: {subscription.get('id')} ({subscription.get('status')})")
        return {"handled": True, "informational": True}

    async def _handle_subscription_updated(self, subscription: Dict, event: Dict) -> Dict:
        period_start, period_end = _period_bounds(subscription)
        local = await subscription_state.sync_from_provider(
            subscription.get("id"),
            map_provider_status(subscription.get("status")),
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
            trial_end=_ts(subscription.get("trial_end")),
        )
        return self._result(local)

    async def _handle_subscription_deleted(self, subscription: Dict, event: Dict) -> Dict:
        local = await subscription_state.force_status(subscription.get("id"), SubscriptionStatus.CANCELED)
        return self._result(local)

    async def _handle_invoice_paid(self, invoice: Dict, event: Dict) -> Dict:
        sub_id = _invoice_subscription_id(invoice)
        if not sub_id:
            return {"handled": False, "reason": "invoice without subscription"}
        local = await subscription_state.force_status(sub_id, SubscriptionStatus.ACTIVE)
        return self._result(local)

    async def _handle_payment_failed(self, invoice: Dict, event: Dict) -> Dict:
        sub_id = _invoice_subscription_id(invoice)
        if not sub_id:
            return {"handled": False, "reason": "invoice without subscription"}
        local = await subscription_state.force_status(sub_id, SubscriptionStatus.PAST_DUE)
        return self._result(local)

    @staticmethod
    def _result(local: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not local:
            return {"handled": False, "reason": "unknown subscription"}
        return {
            "handled": True,
            "account_id": local["account_id"],
            "subscription_id": local["subscription_id"],
            "status": local["status"],
        }


# Singleton instance
webhook_reconciler = WebhookReconciler()
