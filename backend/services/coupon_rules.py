"""Per-coupon eligibility predicates.

A coupon document may name one predicate in ``eligibility_rule``. The
ledger runs it after every generic check has passed; the generic path
never knows what a predicate does.

A predicate is ``async (account_id, subscription_id, now) -> bool``.
``subscription_id`` is the subscription being discounted when called from
redemption, and ``None`` during advisory validation.
"""
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional

from database import database
from models import SubscriptionStatus

logger = logging.getLogger(__name__)

EligibilityPredicate = Callable[[str, Optional[str], datetime], Awaitable[bool]]

_RULES: Dict[str, EligibilityPredicate] = {}


def register_rule(name: str):
    """Decorator registering an eligibility predicate under ``name``."""
    def decorator(func: EligibilityPredicate) -> EligibilityPredicate:
        _RULES[name] = func
        return func
    return decorator


def get_rule(name: str) -> Optional[EligibilityPredicate]:
    return _RULES.get(name)


def registered_rules() -> list:
    return sorted(_RULES)


NEW_ACCOUNT_WINDOW = timedelta(hours=24)

# Statuses that mean the account has already been a subscriber
PRIOR_SUBSCRIBER_STATUSES = [
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.CANCELED.value,
    SubscriptionStatus.PAST_DUE.value,
]


@register_rule("new_account_first_subscription")
async def new_account_first_subscription(
    account_id: str,
    subscription_id: Optional[str],
    now: datetime,
) -> bool:
    """Account created within the last 24 hours with no prior subscription."""
    db = database.get_db()
    account = await db.accounts.find_one(
        {"account_id": account_id},
        {"_id": 0, "created_at": 1}
    )
    created_at = (account or {}).get("created_at")
    if not created_at:
        logger.info(f"Eligibility: account {account_id} has no creation time - not eligible")
        return False
    if now - created_at > NEW_ACCOUNT_WINDOW:
        return False

    query = {"account_id": account_id, "status": {"$in": PRIOR_SUBSCRIBER_STATUSES}}
    if subscription_id:
        # The subscription being discounted is not a prior one
        query["subscription_id"] = {"$ne": subscription_id}
    prior = await db.subscriptions.find_one(query, {"_id": 0, "subscription_id": 1})
    return prior is None
