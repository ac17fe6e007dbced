"""Coupon Ledger - validation and exactly-once redemption of promotional codes.

validate() is advisory: it prices a code for a prospective purchase.
redeem() is authoritative: it re-runs every check against current state
immediately before writing, then claims the coupon's global slot with a
single conditional update, so ``used_count`` can never pass ``limit_total``
no matter how many redemptions race.

Write order inside redeem():
1. Conditional ``$inc`` of used_count (global slot claim)
2. Insert CouponUsage (unique per coupon/account/customer_slot and per
   coupon/subscription)
   in the lowest free customer slot, moving up a slot when a concurrent
   redemption by the same account took the one counted
3. If no slot is left, the global slot claim is released
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    AuditAction, BillingCycle, Coupon, CouponQuote, CouponUsage,
    DiscountType, Rejection, RejectionReason,
)
from services.coupon_rules import get_rule
from utils.audit import create_audit_log
from utils.errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def compute_discount(discount_type: Union[DiscountType, str], value: float, amount: float) -> Tuple[float, float]:
    """Return (discount_amount, final_amount), discount clamped to [0, amount]."""
    if DiscountType(discount_type) == DiscountType.PERCENTAGE:
        discount = amount * value / 100
    else:
        discount = value
    discount = round(min(max(discount, 0), amount), 2)
    final_amount = round(max(amount - discount, 0), 2)
    return discount, final_amount


def _public_coupon(coupon: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "code": coupon["code"],
        "name": coupon.get("name"),
        "description": coupon.get("description"),
        "discount_type": coupon["discount_type"],
        "value": coupon["value"],
        "allowed_billing_cycles": coupon.get("allowed_billing_cycles") or [],
        "valid_from": coupon.get("valid_from"),
        "valid_until": coupon.get("valid_until"),
    }


class CouponLedger:
    """Coupon validation and redemption."""

    # =========================================================================
    # Checks (shared by validate and redeem)
    # =========================================================================

    async def _check(
        self,
        coupon: Optional[Dict[str, Any]],
        billing_cycle: BillingCycle,
        account_id: str,
        now: datetime,
        subscription_id: Optional[str] = None,
    ) -> Tuple[Optional[Rejection], int]:
        """Run every eligibility check in priority order.

        Returns (rejection or None, number of this account's prior uses).
        """
        if not coupon:
            return Rejection(reason=RejectionReason.NOT_FOUND, message="Invalid coupon code"), 0

        if not coupon.get("is_active", False):
            return Rejection(reason=RejectionReason.INACTIVE, message="This coupon is no longer active"), 0

        valid_until = coupon.get("valid_until")
        if valid_until and valid_until < now:
            return Rejection(reason=RejectionReason.EXPIRED, message="This coupon has expired"), 0

        valid_from = coupon.get("valid_from")
        if valid_from and valid_from > now:
            return Rejection(reason=RejectionReason.NOT_YET_VALID, message="This coupon is not yet valid"), 0

        allowed_cycles = coupon.get("allowed_billing_cycles") or []
        if allowed_cycles and billing_cycle.value not in allowed_cycles:
            cycles = " or ".join(c.lower() for c in allowed_cycles)
            return Rejection(
                reason=RejectionReason.WRONG_BILLING_CYCLE,
                message=f"This coupon is only valid for {cycles} billing",
            ), 0

        db = database.get_db()
        used = await db.coupon_usages.count_documents(
            {"coupon_id": coupon["coupon_id"], "account_id": account_id}
        )
        if used >= coupon.get("limit_per_customer", 1):
            return Rejection(
                reason=RejectionReason.ALREADY_USED,
                message="You have already used this coupon",
            ), used

        limit_total = coupon.get("limit_total")
        if limit_total is not None and coupon.get("used_count", 0) >= limit_total:
            return Rejection(
                reason=RejectionReason.GLOBAL_LIMIT_REACHED,
                message="This coupon has reached its usage limit",
            ), used

        rule_name = coupon.get("eligibility_rule")
        if rule_name:
            rule = get_rule(rule_name)
            if rule is None:
                logger.error(f"Coupon {coupon['code']} names unknown eligibility rule {rule_name!r}")
                eligible = False
            else:
                eligible = await rule(account_id, subscription_id, now)
            if not eligible:
                return Rejection(
                    reason=RejectionReason.NOT_ELIGIBLE,
                    message="Your account is not eligible for this coupon",
                ), used

        return None, used

    # =========================================================================
    # Advisory validation
    # =========================================================================

    async def validate(
        self,
        code: str,
        billing_cycle: Union[BillingCycle, str],
        proposed_amount: float,
        account_id: str,
    ) -> Union[CouponQuote, Rejection]:
        if not normalize_code(code):
            raise ValidationError("Coupon code is required")
        if proposed_amount is None or proposed_amount < 0:
            raise ValidationError("Amount must be zero or greater")
        try:
            cycle = BillingCycle((billing_cycle or "").upper())
        except ValueError:
            raise ValidationError(f"Invalid billing cycle: {billing_cycle}")

        db = database.get_db()
        coupon = await db.coupons.find_one({"code": normalize_code(code)}, {"_id": 0})
        rejection, _ = await self._check(coupon, cycle, account_id, datetime.now(timezone.utc))
        if rejection:
            logger.info(f"Coupon {normalize_code(code)} rejected for {account_id}: {rejection.reason.value}")
            return rejection

        discount, final_amount = compute_discount(coupon["discount_type"], coupon["value"], proposed_amount)
        return CouponQuote(
            coupon_id=coupon["coupon_id"],
            code=coupon["code"],
            name=coupon.get("name"),
            discount_type=coupon["discount_type"],
            value=coupon["value"],
            discount_amount=discount,
            final_amount=final_amount,
        )

    # =========================================================================
    # Authoritative redemption
    # =========================================================================

    async def redeem(
        self,
        coupon_id: str,
        account_id: str,
        subscription_id: str,
    ) -> Union[CouponUsage, Rejection]:
        db = database.get_db()
        now = datetime.now(timezone.utc)

        coupon = await db.coupons.find_one({"coupon_id": coupon_id}, {"_id": 0})
        subscription = await db.subscriptions.find_one(
            {"subscription_id": subscription_id, "account_id": account_id},
            {"_id": 0, "billing_cycle": 1}
        )
        if coupon and not subscription:
            rejection = Rejection(
                reason=RejectionReason.SUBSCRIPTION_NOT_FOUND,
                message="Subscription not found for this account",
            )
            return await self._rejected(rejection, coupon, account_id, subscription_id)

        cycle = BillingCycle(subscription["billing_cycle"]) if subscription else BillingCycle.MONTHLY
        rejection, used = await self._check(coupon, cycle, account_id, now, subscription_id)
        if rejection:
            return await self._rejected(rejection, coupon, account_id, subscription_id)

        # Claim a global slot; the filter re-checks the cap against the live row
        claimed = await db.coupons.find_one_and_update(
            {
                "coupon_id": coupon_id,
                "is_active": True,
                "$or": [
                    {"limit_total": None},
                    {"$expr": {"$lt": ["$used_count", "$limit_total"]}},
                ],
            },
            {"$inc": {"used_count": 1}, "$set": {"updated_at": now}},
            projection={"_id": 0, "used_count": 1},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            logger.warning(f"Coupon {coupon['code']}: lost race for last slot (account {account_id})")
            rejection = Rejection(
                reason=RejectionReason.GLOBAL_LIMIT_REACHED,
                message="This coupon has reached its usage limit",
            )
            return await self._rejected(rejection, coupon, account_id, subscription_id)

        try:
            usage = await self._insert_usage(coupon, account_id, subscription_id, used + 1)
        except Exception:
            await self._release_slot(coupon_id)
            raise
        if usage is None:
            await self._release_slot(coupon_id)
            logger.warning(f"Coupon {coupon['code']}: concurrent redemption by {account_id} lost")
            rejection = Rejection(
                reason=RejectionReason.ALREADY_USED,
                message="You have already used this coupon",
            )
            return await self._rejected(rejection, coupon, account_id, subscription_id)

        logger.info(
            f"Coupon {coupon['code']} redeemed by {account_id} for {subscription_id} "
            f"(used {claimed['used_count']}/{coupon.get('limit_total') or 'unlimited'})"
        )
        await create_audit_log(
            action=AuditAction.COUPON_REDEEMED,
            actor_id=account_id,
            account_id=account_id,
            resource_type="coupon",
            resource_id=coupon_id,
            metadata={
                "code": coupon["code"],
                "subscription_id": subscription_id,
                "usage_id": usage.usage_id,
                "used_count": claimed["used_count"],
            },
        )
        return usage

    async def _insert_usage(
        self,
        coupon: Dict[str, Any],
        account_id: str,
        subscription_id: str,
        first_slot: int,
    ) -> Optional[CouponUsage]:
        """Insert the usage row in the lowest free per-customer slot.

        A concurrent redemption by the same account can take the slot that
        _check() counted; the following slots up to limit_per_customer are
        tried in turn. Returns None when they are all taken or when this
        subscription already carries the coupon.
        """
        db = database.get_db()
        for slot in range(first_slot, coupon.get("limit_per_customer", 1) + 1):
            usage = CouponUsage(
                coupon_id=coupon["coupon_id"],
                account_id=account_id,
                subscription_id=subscription_id,
                customer_slot=slot,
            )
            try:
                await db.coupon_usages.insert_one(usage.model_dump())
                return usage
            except DuplicateKeyError:
                same_subscription = await db.coupon_usages.find_one(
                    {"coupon_id": coupon["coupon_id"], "subscription_id": subscription_id},
                    {"_id": 0, "usage_id": 1}
                )
                if same_subscription:
                    return None
                logger.info(f"Coupon {coupon['code']}: slot {slot} for {account_id} taken, trying next")
        return None

    async def _release_slot(self, coupon_id: str) -> None:
        db = database.get_db()
        await db.coupons.update_one(
            {"coupon_id": coupon_id, "used_count": {"$gt": 0}},
            {"$inc": {"used_count": -1}}
        )

    async def _rejected(
        self,
        rejection: Rejection,
        coupon: Optional[Dict[str, Any]],
        account_id: str,
        subscription_id: str,
    ) -> Rejection:
        logger.info(f"Redemption rejected for {account_id}: {rejection.reason.value}")
        await create_audit_log(
            action=AuditAction.COUPON_REDEMPTION_REJECTED,
            actor_id=account_id,
            account_id=account_id,
            resource_type="coupon",
            resource_id=(coupon or {}).get("coupon_id"),
            metadata={"subscription_id": subscription_id},
            reason_code=rejection.reason.value,
        )
        return rejection

    async def record_provider_redemption(
        self,
        code: str,
        account_id: str,
        subscription_id: str,
    ) -> Union[CouponUsage, Rejection]:
        """Apply a coupon attached to a provider checkout, at most once per subscription."""
        db = database.get_db()
        coupon = await db.coupons.find_one({"code": normalize_code(code)}, {"_id": 0, "coupon_id": 1})
        if not coupon:
            return Rejection(reason=RejectionReason.NOT_FOUND, message="Invalid coupon code")

        existing = await db.coupon_usages.find_one(
            {
                "coupon_id": coupon["coupon_id"],
                "account_id": account_id,
                "subscription_id": subscription_id,
            },
            {"_id": 0}
        )
        if existing:
            logger.info(f"Coupon {normalize_code(code)} already applied to {subscription_id} - skipping")
            return CouponUsage(**existing)

        result = await self.redeem(coupon["coupon_id"], account_id, subscription_id)
        if isinstance(result, Rejection) and result.reason == RejectionReason.ALREADY_USED:
            # A concurrent delivery of the same event may have just written it
            existing = await db.coupon_usages.find_one(
                {"coupon_id": coupon["coupon_id"], "subscription_id": subscription_id},
                {"_id": 0}
            )
            if existing:
                return CouponUsage(**existing)
        return result

    # =========================================================================
    # Lookups and administration
    # =========================================================================

    async def lookup(self, code: str) -> Optional[Dict[str, Any]]:
        """Public description of a coupon, or None when the code is unknown."""
        db = database.get_db()
        coupon = await db.coupons.find_one({"code": normalize_code(code)}, {"_id": 0})
        if not coupon:
            return None

        now = datetime.now(timezone.utc)
        is_expired = bool(coupon.get("valid_until") and coupon["valid_until"] < now)
        is_not_yet_valid = bool(coupon.get("valid_from") and coupon["valid_from"] > now)
        limit_total = coupon.get("limit_total")
        used_count = coupon.get("used_count", 0)
        has_capacity = limit_total is None or used_count < limit_total

        info = _public_coupon(coupon)
        info.update({
            "is_active": coupon.get("is_active", False),
            "is_expired": is_expired,
            "is_not_yet_valid": is_not_yet_valid,
            "is_available": coupon.get("is_active", False) and not is_expired and not is_not_yet_valid and has_capacity,
        })
        if coupon.get("is_public") and limit_total is not None:
            info["remaining_uses"] = max(limit_total - used_count, 0)
        return info

    async def usage_history(self, account_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """The account's coupon usages, newest first."""
        db = database.get_db()
        usages = await db.coupon_usages.find(
            {"account_id": account_id},
            {"_id": 0}
        ).sort("created_at", -1).limit(limit).to_list(length=limit)

        history = []
        for usage in usages:
            coupon = await db.coupons.find_one(
                {"coupon_id": usage["coupon_id"]},
                {"_id": 0, "code": 1, "name": 1, "discount_type": 1, "value": 1}
            ) or {}
            subscription = await db.subscriptions.find_one(
                {"subscription_id": usage["subscription_id"]},
                {"_id": 0, "plan": 1, "billing_cycle": 1, "status": 1}
            ) or {}
            history.append({**usage, "coupon": coupon, "subscription": subscription})
        return history

    async def get_coupon(self, code: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.coupons.find_one({"code": normalize_code(code)}, {"_id": 0})

    async def create_coupon(self, coupon: Coupon) -> Dict[str, Any]:
        """Insert a new coupon. Raises ConflictError when the code exists."""
        if coupon.value < 0:
            raise ValidationError("Coupon value must be zero or greater")
        if coupon.discount_type == DiscountType.PERCENTAGE and coupon.value > 100:
            raise ValidationError("Percentage coupons cannot exceed 100")
        if coupon.limit_per_customer < 1:
            raise ValidationError("limit_per_customer must be at least 1")

        doc = coupon.to_document()
        doc["code"] = normalize_code(coupon.code)
        db = database.get_db()
        try:
            await db.coupons.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError(f"Coupon {doc['code']} already exists")
        doc.pop("_id", None)

        await create_audit_log(
            action=AuditAction.COUPON_CREATED,
            resource_type="coupon",
            resource_id=doc["coupon_id"],
            metadata={"code": doc["code"]},
        )
        return doc


# Singleton instance
coupon_ledger = CouponLedger()
