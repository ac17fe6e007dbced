"""Entitlement overrides - accounts exempt from plan limits.

Built once at startup from ENTITLEMENT_UNLIMITED_ACCOUNTS (comma separated
account ids or emails) plus active rows of the ``entitlement_overrides``
collection, then injected into the entitlement checker.
"""
import os
import logging
from typing import Iterable, Optional

from database import database

logger = logging.getLogger(__name__)


class EntitlementOverrides:
    def __init__(self, account_ids: Iterable[str] = (), emails: Iterable[str] = ()):
        self.account_ids = {a.strip() for a in account_ids if a and a.strip()}
        self.emails = {e.strip().lower() for e in emails if e and e.strip()}

    @classmethod
    def from_env(cls) -> "EntitlementOverrides":
        raw = os.getenv("ENTITLEMENT_UNLIMITED_ACCOUNTS", "")
        entries = [e.strip() for e in raw.split(",") if e.strip()]
        return cls(
            account_ids=[e for e in entries if "@" not in e],
            emails=[e for e in entries if "@" in e],
        )

    async def load(self) -> "EntitlementOverrides":
        """Merge active rows of the entitlement_overrides collection."""
        db = database.get_db()
        rows = await db.entitlement_overrides.find(
            {"active": True},
            {"_id": 0, "account_id": 1, "email": 1}
        ).to_list(length=1000)
        for row in rows:
            if row.get("account_id"):
                self.account_ids.add(row["account_id"])
            if row.get("email"):
                self.emails.add(row["email"].lower())
        logger.info(f"Entitlement overrides loaded: {len(self.account_ids)} accounts, {len(self.emails)} emails")
        return self

    @property
    def has_emails(self) -> bool:
        return bool(self.emails)

    def is_unlimited(self, account_id: Optional[str], email: Optional[str] = None) -> bool:
        if account_id and account_id in self.account_ids:
            return True
        return bool(email and email.strip().lower() in self.emails)

    def __bool__(self) -> bool:
        return bool(self.account_ids or self.emails)
