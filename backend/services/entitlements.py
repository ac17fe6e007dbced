"""Entitlement Checker - admission control for metered resources.

check_entitlement() / can_create() are advisory answers computed from the
effective plan and a live count. create_within_limit() is the authoritative
path: it holds a per-scope lock while it re-counts and inserts, so two
concurrent creations can never both take the last slot.

Scopes:
- catalogue, export: the account
- product, category, team_member: the catalogue; the catalogue owner's
  plan governs, whoever performs the action

Exports are counted per calendar month (UTC).

Writing into a catalogue (products, categories, seats, exports of it)
requires the caller to own it or hold a team_members row on it.
"""
import asyncio
import os
import time
import uuid
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple, Union

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    AuditAction, EntitlementDecision, PlanTier, Rejection, RejectionReason, ResourceKind,
)
from services.entitlement_overrides import EntitlementOverrides
from services.plan_catalog import plan_catalog, UNLIMITED
from services.subscription_state import subscription_state
from utils.audit import create_audit_log
from utils.errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)

LOCK_SECONDS = float(os.getenv("ENTITLEMENT_LOCK_SECONDS", "10"))
LOCK_WAIT_SECONDS = float(os.getenv("ENTITLEMENT_LOCK_WAIT_SECONDS", "5"))
LOCK_POLL_SECONDS = 0.02

SCOPED_KINDS = frozenset({ResourceKind.PRODUCT, ResourceKind.CATEGORY, ResourceKind.TEAM_MEMBER})

COLLECTIONS: Dict[ResourceKind, str] = {
    ResourceKind.CATALOGUE: "catalogues",
    ResourceKind.PRODUCT: "products",
    ResourceKind.CATEGORY: "categories",
    ResourceKind.EXPORT: "exports",
    ResourceKind.TEAM_MEMBER: "team_members",
}

LABELS: Dict[ResourceKind, str] = {
    ResourceKind.CATALOGUE: "Catalogue",
    ResourceKind.PRODUCT: "Product",
    ResourceKind.CATEGORY: "Category",
    ResourceKind.EXPORT: "Monthly export",
    ResourceKind.TEAM_MEMBER: "Team member",
}

# Overrides never lift the export meter
OVERRIDABLE_KINDS = frozenset({
    ResourceKind.CATALOGUE, ResourceKind.PRODUCT, ResourceKind.CATEGORY, ResourceKind.TEAM_MEMBER,
})


def month_window(now: datetime) -> Tuple[datetime, datetime]:
    """[start, end) of the calendar month containing ``now``, in UTC."""
    now = now.astimezone(timezone.utc)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


class EntitlementChecker:
    def __init__(self, overrides: Optional[EntitlementOverrides] = None):
        self.overrides = overrides or EntitlementOverrides()

    def configure(self, overrides: EntitlementOverrides) -> None:
        self.overrides = overrides

    # =========================================================================
    # Advisory checks
    # =========================================================================

    async def check_entitlement(
        self,
        account_id: str,
        kind: Union[ResourceKind, str],
        scope_id: Optional[str] = None,
        email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EntitlementDecision:
        try:
            kind = ResourceKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown resource kind: {kind}")
        if kind in SCOPED_KINDS and not scope_id:
            raise ValidationError(f"{kind.value} checks require a catalogue id")

        db = database.get_db()
        now = now or datetime.now(timezone.utc)

        governing_account = account_id
        if kind in SCOPED_KINDS:
            catalogue = await db.catalogues.find_one(
                {"catalogue_id": scope_id},
                {"_id": 0, "account_id": 1}
            )
            if not catalogue:
                return EntitlementDecision(
                    allowed=False, resource_kind=kind, plan=PlanTier.FREE, limit=0, count=0,
                    reason=RejectionReason.SCOPE_NOT_FOUND, message="Catalogue not found",
                )
            if catalogue["account_id"] != account_id:
                # Email only identifies the caller, not the owner
                email = None
            governing_account = catalogue["account_id"]

        plan = await subscription_state.get_effective_plan(governing_account)
        limit = plan_catalog.limit_for_resource(plan, kind)
        count = await self._live_count(governing_account, kind, scope_id, now)

        if kind in OVERRIDABLE_KINDS and await self._is_overridden(governing_account, email):
            return EntitlementDecision(
                allowed=True, resource_kind=kind, plan=plan, limit=UNLIMITED, count=count,
            )

        flag = plan_catalog.feature_for_resource(kind)
        if flag and not plan_catalog.has_feature(plan, flag):
            return EntitlementDecision(
                allowed=False, resource_kind=kind, plan=plan, limit=limit, count=count,
                reason=RejectionReason.FEATURE_NOT_AVAILABLE,
                message=plan_catalog.get_upgrade_message(plan, flag.replace("_", " ")),
            )

        if limit == UNLIMITED or count < limit:
            return EntitlementDecision(allowed=True, resource_kind=kind, plan=plan, limit=limit, count=count)

        return EntitlementDecision(
            allowed=False, resource_kind=kind, plan=plan, limit=limit, count=count,
            reason=RejectionReason.LIMIT_REACHED,
            message=(
                f"{LABELS[kind]} limit reached ({count}/{limit}). "
                + plan_catalog.get_upgrade_message(plan, f"more {kind.value.replace('_', ' ')}s")
            ),
        )

    async def can_create(
        self,
        account_id: str,
        kind: Union[ResourceKind, str],
        scope_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> bool:
        decision = await self.check_entitlement(account_id, kind, scope_id, email)
        return decision.allowed

    async def catalogue_access(self, account_id: str, catalogue_id: str) -> Optional[Rejection]:
        """None if the account owns or collaborates on the catalogue."""
        db = database.get_db()
        catalogue = await db.catalogues.find_one(
            {"catalogue_id": catalogue_id},
            {"_id": 0, "account_id": 1}
        )
        if not catalogue:
            return Rejection(reason=RejectionReason.SCOPE_NOT_FOUND, message="Catalogue not found")
        if catalogue["account_id"] == account_id:
            return None
        member = await db.team_members.find_one(
            {"catalogue_id": catalogue_id, "account_id": account_id},
            {"_id": 0, "member_id": 1}
        )
        if member:
            return None
        return Rejection(
            reason=RejectionReason.NOT_OWNER,
            message="You do not have access to this catalogue",
        )

    async def _is_overridden(self, account_id: str, email: Optional[str]) -> bool:
        if not self.overrides:
            return False
        if email is None and self.overrides.has_emails:
            db = database.get_db()
            account = await db.accounts.find_one({"account_id": account_id}, {"_id": 0, "email": 1})
            email = (account or {}).get("email")
        return self.overrides.is_unlimited(account_id, email)

    async def _live_count(
        self,
        account_id: str,
        kind: ResourceKind,
        scope_id: Optional[str],
        now: datetime,
    ) -> int:
        db = database.get_db()
        collection = db[COLLECTIONS[kind]]
        if kind == ResourceKind.CATALOGUE:
            return await collection.count_documents({"account_id": account_id})
        if kind == ResourceKind.EXPORT:
            start, end = month_window(now)
            return await collection.count_documents(
                {"account_id": account_id, "created_at": {"$gte": start, "$lt": end}}
            )
        return await collection.count_documents({"catalogue_id": scope_id})

    # =========================================================================
    # Authoritative creation
    # =========================================================================

    async def create_within_limit(
        self,
        account_id: str,
        kind: Union[ResourceKind, str],
        document: Dict[str, Any],
        scope_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Union[Dict[str, Any], EntitlementDecision, Rejection]:
        """Re-check access and the limit, then insert ``document`` under the scope lock.

        Returns the inserted document, a Rejection when the caller may not
        write into the catalogue, or the refusing decision.
        """
        kind = ResourceKind(kind)
        scope_key = f"{kind.value}:{scope_id if kind in SCOPED_KINDS else account_id}"
        catalogue_id = scope_id if kind in SCOPED_KINDS else document.get("catalogue_id")

        async with self._scope_lock(scope_key):
            if catalogue_id and kind != ResourceKind.CATALOGUE:
                denied = await self.catalogue_access(account_id, catalogue_id)
                if denied:
                    logger.warning(
                        f"Catalogue access denied account={account_id} kind={kind.value} "
                        f"catalogue={catalogue_id} reason={denied.reason.value}"
                    )
                    await create_audit_log(
                        action=AuditAction.ENTITLEMENT_DENIED,
                        actor_id=account_id,
                        account_id=account_id,
                        resource_type=kind.value,
                        resource_id=catalogue_id,
                        reason_code=denied.reason.value,
                    )
                    return denied

            decision = await self.check_entitlement(account_id, kind, scope_id, email)
            if not decision.allowed:
                logger.info(
                    f"Entitlement denied account={account_id} kind={kind.value} scope={scope_id} "
                    f"reason={decision.reason.value if decision.reason else None} count={decision.count} limit={decision.limit}"
                )
                await create_audit_log(
                    action=AuditAction.ENTITLEMENT_DENIED,
                    actor_id=account_id,
                    account_id=account_id,
                    resource_type=kind.value,
                    resource_id=scope_id,
                    metadata={"count": decision.count, "limit": decision.limit, "plan": decision.plan.value},
                    reason_code=decision.reason.value if decision.reason else None,
                )
                return decision

            doc = dict(document)
            doc.setdefault("created_at", datetime.now(timezone.utc))
            if kind in SCOPED_KINDS:
                doc.setdefault("catalogue_id", scope_id)
            else:
                doc.setdefault("account_id", account_id)

            db = database.get_db()
            await db[COLLECTIONS[kind]].insert_one(doc)
            doc.pop("_id", None)
            return doc

    @asynccontextmanager
    async def _scope_lock(self, scope_key: str):
        owner = str(uuid.uuid4())
        deadline = time.monotonic() + LOCK_WAIT_SECONDS
        while not await self._acquire_lock(scope_key, owner):
            if time.monotonic() >= deadline:
                logger.warning(f"Scope lock {scope_key} busy - giving up")
                raise ConflictError("Another request is creating this resource; please retry")
            await asyncio.sleep(LOCK_POLL_SECONDS)
        try:
            yield
        finally:
            await self._release_lock(scope_key, owner)

    async def _acquire_lock(self, scope_key: str, owner: str) -> bool:
        """Atomically take the scope lock. Expired leases may be taken over."""
        db = database.get_db()
        now = datetime.now(timezone.utc)
        try:
            result = await db.entitlement_locks.find_one_and_update(
                {
                    "scope_key": scope_key,
                    "$or": [
                        {"locked_until": None},
                        {"locked_until": {"$lt": now}},
                    ],
                },
                {"$set": {"locked_until": now + timedelta(seconds=LOCK_SECONDS), "lock_owner": owner}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Row exists and is held: the upsert tried to insert a second one
            return False
        return result is not None and result.get("lock_owner") == owner

    async def _release_lock(self, scope_key: str, owner: str) -> None:
        db = database.get_db()
        await db.entitlement_locks.update_one(
            {"scope_key": scope_key, "lock_owner": owner},
            {"$set": {"locked_until": None, "lock_owner": None}},
        )

    # =========================================================================
    # Display
    # =========================================================================

    async def usage_summary(self, account_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        subscription = await subscription_state.get_effective_subscription(account_id)
        plan_tier = PlanTier(subscription["plan"]) if subscription else PlanTier.FREE
        plan = plan_catalog.get_plan_features(plan_tier)
        start, _ = month_window(now)
        return {
            "account_id": account_id,
            "plan": plan_tier.value,
            "subscription": subscription,
            "limits": dict(plan.limits),
            "features": dict(plan.features),
            "usage": {
                "catalogues": await self._live_count(account_id, ResourceKind.CATALOGUE, None, now),
                "exports_this_month": await self._live_count(account_id, ResourceKind.EXPORT, None, now),
                "month_start": start,
            },
            "next_tier": plan_catalog.next_tier(plan_tier).value,
        }


# Singleton instance
entitlement_checker = EntitlementChecker()
