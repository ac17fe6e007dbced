"""Subscription State Machine - the only writer of subscription records.

States and allowed transitions:
    INCOMPLETE -> ACTIVE, CANCELED
    ACTIVE     -> PAST_DUE, CANCELED, UNPAID
    PAST_DUE   -> ACTIVE, CANCELED, UNPAID
    TRIALING   -> ACTIVE, CANCELED, PAST_DUE
    UNPAID     -> ACTIVE, CANCELED
    CANCELED   (terminal)

Entitlement-counting states are ACTIVE and TRIALING. The effective
subscription of an account is its most recently created counting row.

Re-applying the current state is a no-op apart from refreshing period
fields. A transition outside the table is refused and audited; the stored
record is left untouched.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple, Union

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    AuditAction, BillingCycle, PlanTier, Subscription, SubscriptionStatus,
)
from utils.audit import create_audit_log
from utils.errors import ConflictError

logger = logging.getLogger(__name__)

S = SubscriptionStatus

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, frozenset] = {
    S.INCOMPLETE: frozenset({S.ACTIVE, S.CANCELED}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.CANCELED, S.UNPAID}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.CANCELED, S.UNPAID}),
    S.TRIALING: frozenset({S.ACTIVE, S.CANCELED, S.PAST_DUE}),
    S.UNPAID: frozenset({S.ACTIVE, S.CANCELED}),
    S.CANCELED: frozenset(),
}

ENTITLEMENT_STATUSES = frozenset({S.ACTIVE, S.TRIALING})

# Stripe subscription.status -> local status
PROVIDER_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": S.ACTIVE,
    "trialing": S.TRIALING,
    "past_due": S.PAST_DUE,
    "canceled": S.CANCELED,
    "unpaid": S.UNPAID,
    "incomplete": S.INCOMPLETE,
    "incomplete_expired": S.INCOMPLETE,
}

LOCAL_PERIOD_DAYS = {
    BillingCycle.MONTHLY: 30,
    BillingCycle.YEARLY: 365,
}

_CAS_ATTEMPTS = 3


def map_provider_status(provider_status: Optional[str]) -> SubscriptionStatus:
    status = PROVIDER_STATUS_MAP.get((provider_status or "").lower())
    if status is None:
        logger.warning(f"Unrecognized provider status {provider_status!r} - mapping to INCOMPLETE")
        return S.INCOMPLETE
    return status


def can_transition(current: Union[SubscriptionStatus, str], target: Union[SubscriptionStatus, str]) -> bool:
    current, target = S(current), S(target)
    return current == target or target in ALLOWED_TRANSITIONS[current]


def counts_toward_entitlement(status: Union[SubscriptionStatus, str, None]) -> bool:
    return status is not None and S(status) in ENTITLEMENT_STATUSES


class SubscriptionStateMachine:
    """Owns the lifecycle of local subscription records."""

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.subscriptions.find_one({"subscription_id": subscription_id}, {"_id": 0})

    async def get_by_provider_id(self, provider_subscription_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.subscriptions.find_one(
            {"provider_subscription_id": provider_subscription_id},
            {"_id": 0}
        )

    async def get_effective_subscription(self, account_id: str) -> Optional[Dict[str, Any]]:
        """Most recently created subscription in an entitlement-counting state."""
        db = database.get_db()
        rows = await db.subscriptions.find(
            {
                "account_id": account_id,
                "status": {"$in": [s.value for s in ENTITLEMENT_STATUSES]},
            },
            {"_id": 0}
        ).sort([("created_at", -1)]).limit(1).to_list(length=1)
        return rows[0] if rows else None

    async def get_effective_plan(self, account_id: str) -> PlanTier:
        subscription = await self.get_effective_subscription(account_id)
        if not subscription:
            return PlanTier.FREE
        return PlanTier(subscription["plan"])

    async def get_current_subscription(self, account_id: str) -> Optional[Dict[str, Any]]:
        """Most recent subscription in any status, for display."""
        db = database.get_db()
        rows = await db.subscriptions.find(
            {"account_id": account_id},
            {"_id": 0}
        ).sort([("created_at", -1)]).limit(1).to_list(length=1)
        return rows[0] if rows else None

    # =========================================================================
    # Local (free-path) subscriptions
    # =========================================================================

    async def create_local_subscription(
        self,
        account_id: str,
        plan: PlanTier,
        billing_cycle: BillingCycle,
        amount: float = 0,
        currency: str = "INR",
    ) -> Dict[str, Any]:
        """Insert a local subscription in INCOMPLETE; activate_local() completes it."""
        subscription = Subscription(
            account_id=account_id,
            plan=plan,
            billing_cycle=billing_cycle,
            amount=amount,
            currency=currency,
        )
        doc = subscription.to_document()
        db = database.get_db()
        await db.subscriptions.insert_one(doc)
        doc.pop("_id", None)

        logger.info(f"Local subscription {doc['subscription_id']} created for {account_id} ({plan.value} {billing_cycle.value})")
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CREATED,
            account_id=account_id,
            resource_type="subscription",
            resource_id=doc["subscription_id"],
            metadata={"plan": plan.value, "billing_cycle": billing_cycle.value, "source": "local"},
        )
        return doc

    async def activate_local(self, subscription_id: str, now: Optional[datetime] = None) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """Move a local subscription to ACTIVE with a locally computed period."""
        subscription = await self.get(subscription_id)
        if not subscription:
            return False, None
        now = now or datetime.now(timezone.utc)
        days = LOCAL_PERIOD_DAYS[BillingCycle(subscription["billing_cycle"])]
        return await self.transition(
            subscription_id,
            S.ACTIVE,
            current_period_start=now,
            current_period_end=now + timedelta(days=days),
            reason="local_activation",
        )

    # =========================================================================
    # Transitions
    # =========================================================================

    async def transition(
        self,
        subscription_id: str,
        target: Union[SubscriptionStatus, str],
        current_period_start: Optional[datetime] = None,
        current_period_end: Optional[datetime] = None,
        cancel_at_period_end: Optional[bool] = None,
        trial_end: Optional[datetime] = None,
        reason: str = "",
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """Apply a status change. Returns (applied, document).

        ``applied`` is False when the record is missing or the transition is
        refused; the returned document is then the unchanged stored one.
        """
        target = S(target)
        db = database.get_db()

        fields: Dict[str, Any] = {}
        if current_period_start is not None:
            fields["current_period_start"] = current_period_start
        if current_period_end is not None:
            fields["current_period_end"] = current_period_end
        if cancel_at_period_end is not None:
            fields["cancel_at_period_end"] = cancel_at_period_end
        if trial_end is not None:
            fields["trial_end"] = trial_end

        for _ in range(_CAS_ATTEMPTS):
            current_doc = await self.get(subscription_id)
            if not current_doc:
                logger.warning(f"Transition to {target.value} for unknown subscription {subscription_id}")
                return False, None
            current = S(current_doc["status"])

            if current != target and target not in ALLOWED_TRANSITIONS[current]:
                logger.warning(
                    f"Refused transition {current.value} -> {target.value} for subscription "
                    f"{subscription_id} (reason={reason or 'n/a'})"
                )
                await create_audit_log(
                    action=AuditAction.SUBSCRIPTION_TRANSITION_REFUSED,
                    account_id=current_doc["account_id"],
                    resource_type="subscription",
                    resource_id=subscription_id,
                    metadata={"from": current.value, "to": target.value, "reason": reason},
                )
                return False, current_doc

            now = datetime.now(timezone.utc)
            update = {**fields, "status": target.value, "updated_at": now}
            if target == S.CANCELED and current != S.CANCELED:
                update["canceled_at"] = now

            # Compare-and-set on the status we just read
            updated = await db.subscriptions.find_one_and_update(
                {"subscription_id": subscription_id, "status": current.value},
                {"$set": update},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                continue

            if current != target:
                logger.info(f"Subscription {subscription_id}: {current.value} -> {target.value} ({reason or 'n/a'})")
                await create_audit_log(
                    action=AuditAction.SUBSCRIPTION_STATUS_CHANGED,
                    account_id=updated["account_id"],
                    resource_type="subscription",
                    resource_id=subscription_id,
                    before_state={"status": current.value},
                    after_state={"status": target.value},
                    metadata={"reason": reason},
                )
                if target in ENTITLEMENT_STATUSES:
                    await self._supersede_older_local(updated)
            return True, updated

        raise ConflictError(f"Subscription {subscription_id} changed concurrently; retry")

    async def _supersede_older_local(self, subscription: Dict[str, Any]) -> None:
        """Cancel older counting subscriptions of the account that are not provider-backed.

        Provider-backed rows are left for the provider's own events.
        """
        db = database.get_db()
        older = await db.subscriptions.find(
            {
                "account_id": subscription["account_id"],
                "subscription_id": {"$ne": subscription["subscription_id"]},
                "status": {"$in": [s.value for s in ENTITLEMENT_STATUSES]},
                "provider_subscription_id": {"$exists": False},
                "created_at": {"$lt": subscription["created_at"]},
            },
            {"_id": 0, "subscription_id": 1}
        ).to_list(length=100)

        for row in older:
            applied, _ = await self.transition(row["subscription_id"], S.CANCELED, reason="superseded")
            if applied:
                await create_audit_log(
                    action=AuditAction.SUBSCRIPTION_SUPERSEDED,
                    account_id=subscription["account_id"],
                    resource_type="subscription",
                    resource_id=row["subscription_id"],
                    metadata={"superseded_by": subscription["subscription_id"]},
                )

    # =========================================================================
    # Provider-backed subscriptions
    # =========================================================================

    async def upsert_from_provider(
        self,
        provider_subscription_id: str,
        account_id: str,
        status: SubscriptionStatus,
        plan: PlanTier,
        billing_cycle: BillingCycle,
        amount: float,
        currency: str,
        current_period_start: Optional[datetime] = None,
        current_period_end: Optional[datetime] = None,
        cancel_at_period_end: bool = False,
        trial_end: Optional[datetime] = None,
        provider_customer_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Insert-or-sync keyed on the provider subscription id.

        Plan, amount and currency are written only on insert; an existing row
        only receives status, period and cancel-flag updates.
        """
        db = database.get_db()
        subscription = Subscription(
            account_id=account_id,
            provider_subscription_id=provider_subscription_id,
            provider_customer_id=provider_customer_id,
            status=status,
            plan=plan,
            billing_cycle=billing_cycle,
            amount=amount,
            currency=(currency or "INR").upper(),
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            cancel_at_period_end=cancel_at_period_end,
            trial_end=trial_end,
            canceled_at=datetime.now(timezone.utc) if status == S.CANCELED else None,
        )
        doc = subscription.to_document()
        on_insert = {k: v for k, v in doc.items() if k != "provider_subscription_id"}

        try:
            result = await db.subscriptions.update_one(
                {"provider_subscription_id": provider_subscription_id},
                {"$setOnInsert": on_insert},
                upsert=True,
            )
            inserted = result.upserted_id is not None
        except DuplicateKeyError:
            # Concurrent delivery inserted it first
            inserted = False

        if inserted:
            logger.info(
                f"Provider subscription {provider_subscription_id} materialized as "
                f"{doc['subscription_id']} ({status.value}) for {account_id}"
            )
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_CREATED,
                account_id=account_id,
                resource_type="subscription",
                resource_id=doc["subscription_id"],
                metadata={
                    "plan": plan.value,
                    "billing_cycle": billing_cycle.value,
                    "status": status.value,
                    "source": "provider",
                    "provider_subscription_id": provider_subscription_id,
                },
            )
            stored = await self.get_by_provider_id(provider_subscription_id)
            if stored and status in ENTITLEMENT_STATUSES:
                await self._supersede_older_local(stored)
            return stored

        return await self.sync_from_provider(
            provider_subscription_id,
            status,
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            cancel_at_period_end=cancel_at_period_end,
            trial_end=trial_end,
        )

    async def sync_from_provider(
        self,
        provider_subscription_id: str,
        status: SubscriptionStatus,
        current_period_start: Optional[datetime] = None,
        current_period_end: Optional[datetime] = None,
        cancel_at_period_end: Optional[bool] = None,
        trial_end: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        """Status/period/cancel-flag update for a known provider subscription."""
        existing = await self.get_by_provider_id(provider_subscription_id)
        if not existing:
            logger.warning(f"No local subscription for provider id {provider_subscription_id}")
            return None
        _, doc = await self.transition(
            existing["subscription_id"],
            status,
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            cancel_at_period_end=cancel_at_period_end,
            trial_end=trial_end,
            reason="provider_sync",
        )
        return doc

    async def force_status(self, provider_subscription_id: str, status: SubscriptionStatus) -> Optional[Dict[str, Any]]:
        """Status-only update from a provider event (deleted / invoice outcome)."""
        cancel_flag = False if status == S.CANCELED else None
        return await self.sync_from_provider(provider_subscription_id, status, cancel_at_period_end=cancel_flag)

    async def set_cancel_at_period_end(self, subscription_id: str, flag: bool) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.subscriptions.find_one_and_update(
            {"subscription_id": subscription_id, "status": {"$ne": S.CANCELED.value}},
            {"$set": {"cancel_at_period_end": flag, "updated_at": datetime.now(timezone.utc)}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )


# Singleton instance
subscription_state = SubscriptionStateMachine()
