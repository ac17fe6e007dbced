"""
Seed launch coupons.
Safe to run repeatedly: existing codes are left untouched.
"""
import asyncio
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from database import database
from models import Coupon, DiscountType, BillingCycle
from services.coupon_ledger import coupon_ledger
from utils.errors import ConflictError

COUPONS = [
    Coupon(
        code="FIRST100",
        name="First 100 customers",
        description="50% off the first yearly plan for new accounts",
        discount_type=DiscountType.PERCENTAGE,
        value=50,
        limit_total=100,
        limit_per_customer=1,
        allowed_billing_cycles=[BillingCycle.YEARLY],
        eligibility_rule="new_account_first_subscription",
    ),
    Coupon(
        code="WELCOME10",
        name="Welcome discount",
        description="10% off any plan",
        discount_type=DiscountType.PERCENTAGE,
        value=10,
        limit_per_customer=1,
    ),
    Coupon(
        code="FLAT200",
        name="Flat 200 off",
        description="200 off a monthly plan",
        discount_type=DiscountType.FIXED_AMOUNT,
        value=200,
        limit_total=500,
        limit_per_customer=1,
        allowed_billing_cycles=[BillingCycle.MONTHLY],
        is_public=False,
    ),
]


async def seed_coupons():
    await database.connect()

    print("Seeding coupons...")
    print("=" * 80)

    created = 0
    for coupon in COUPONS:
        try:
            await coupon_ledger.create_coupon(coupon)
            created += 1
            print(f"Created {coupon.code}")
        except ConflictError:
            print(f"Skipped {coupon.code} (already exists)")

    print(f"✅ Inserted {created} coupons")

    await database.close()

if __name__ == "__main__":
    asyncio.run(seed_coupons())
