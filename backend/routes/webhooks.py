"""Webhook Routes - Stripe webhooks.

Stripe webhook endpoint with:
- Signature verification (400 on failure, nothing processed)
- Idempotent application through the subscription state machine
- Every event recorded in webhook_events

POST /api/webhooks/stripe - Main Stripe webhook endpoint
POST /api/webhook/stripe - Alias (older dashboard configuration)
"""
from fastapi import APIRouter, Request, Header
from services.webhook_reconciler import webhook_reconciler
from utils.errors import SignatureError, ValidationError
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_stripe_webhook(request: Request, stripe_signature: str = None):
    """
    Core Stripe webhook handler.

    Envelope failures propagate (mapped to 400 by the app). Anything else is
    acknowledged with 200 so Stripe does not retry into the same failure.
    """
    payload = await request.body()
    try:
        success, message, details = await webhook_reconciler.process_webhook(
            payload=payload,
            signature=stripe_signature or ""
        )
        return {"status": "received", "message": message, "details": details}
    except (SignatureError, ValidationError):
        raise
    except Exception as e:
        logger.exception(f"Stripe webhook error: {e}")
        # Return 200 to prevent Stripe retries - we've logged the error
        return {"status": "error", "message": "Event logged with error"}


@router.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/webhooks/stripe"""
    return await _handle_stripe_webhook(request, stripe_signature)


@router.post("/api/webhook/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/webhook/stripe (alias)"""
    return await _handle_stripe_webhook(request, stripe_signature)
