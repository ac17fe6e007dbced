from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

# (collection, keys, options). Unique indexes carry the concurrency
# guarantees of the engine, so a failure to create one is logged loudly.
INDEXES = [
    # Accounts mirror the identity provider (created_at drives coupon eligibility)
    ("accounts", "account_id", {"unique": True}),
    ("accounts", "email", {}),

    # Subscriptions - provider id is omitted for local subscriptions, hence sparse
    ("subscriptions", "subscription_id", {"unique": True}),
    ("subscriptions", "provider_subscription_id", {"unique": True, "sparse": True}),
    ("subscriptions", [("account_id", 1), ("created_at", -1)], {}),
    ("subscriptions", [("account_id", 1), ("status", 1)], {}),

    # Coupons and their usage rows
    ("coupons", "coupon_id", {"unique": True}),
    ("coupons", "code", {"unique": True}),
    ("coupon_usages", "usage_id", {"unique": True}),
    ("coupon_usages", [("coupon_id", 1), ("account_id", 1), ("customer_slot", 1)], {"unique": True}),
    ("coupon_usages", [("coupon_id", 1), ("subscription_id", 1)], {"unique": True}),
    ("coupon_usages", [("account_id", 1), ("created_at", -1)], {}),

    # Webhook audit trail (write-once, not an idempotency key)
    ("webhook_events", [("event_id", 1), ("received_at", -1)], {}),
    ("webhook_events", [("event_type", 1), ("received_at", -1)], {}),

    # Metered resources
    ("catalogues", "catalogue_id", {"unique": True}),
    ("catalogues", "account_id", {}),
    ("products", "catalogue_id", {}),
    ("categories", "catalogue_id", {}),
    ("exports", [("account_id", 1), ("created_at", -1)], {}),

    # Team seats
    ("team_members", "member_id", {"unique": True}),
    ("team_members", [("catalogue_id", 1), ("account_id", 1)], {"unique": True}),
    ("invitations", "invitation_id", {"unique": True}),
    ("invitations", "token", {"unique": True}),
    ("invitations", [("catalogue_id", 1), ("email", 1), ("status", 1)], {}),

    # Scope locks for guarded resource creation
    ("entitlement_locks", "scope_key", {"unique": True}),
    ("entitlement_overrides", "account_id", {"sparse": True}),

    # Audit / message logs
    ("audit_logs", [("account_id", 1), ("timestamp", -1)], {}),
    ("audit_logs", [("resource_type", 1), ("resource_id", 1), ("timestamp", -1)], {}),
    ("audit_logs", [("action", 1), ("timestamp", -1)], {}),
    ("message_logs", [("created_at", -1)], {}),
]

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            # tz_aware so stored datetimes compare with datetime.now(timezone.utc)
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes. Safe to run on every startup."""
        for collection, keys, options in INDEXES:
            try:
                await self.db[collection].create_index(keys, **options)
            except Exception as e:
                if options.get("unique"):
                    logger.error(f"Unique index on {collection} {keys} not created: {e}")
                else:
                    # Index may already exist with different options
                    logger.warning(f"Index creation note for {collection}: {e}")
        logger.info("MongoDB indexes created/verified")

# Global database instance
database = Database()

