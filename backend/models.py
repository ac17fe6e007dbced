from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class PlanTier(str, Enum):
    """Ordered plan tiers: FREE < STANDARD < PROFESSIONAL < BUSINESS."""
    FREE = "FREE"
    STANDARD = "STANDARD"
    PROFESSIONAL = "PROFESSIONAL"
    BUSINESS = "BUSINESS"

class BillingCycle(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"

class SubscriptionStatus(str, Enum):
    INCOMPLETE = "INCOMPLETE"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    TRIALING = "TRIALING"
    UNPAID = "UNPAID"
    CANCELED = "CANCELED"

class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"

class ResourceKind(str, Enum):
    CATALOGUE = "catalogue"
    PRODUCT = "product"
    CATEGORY = "category"
    EXPORT = "export"
    TEAM_MEMBER = "team_member"

class RejectionReason(str, Enum):
    # Coupon ledger
    NOT_FOUND = "NOT_FOUND"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"
    NOT_YET_VALID = "NOT_YET_VALID"
    WRONG_BILLING_CYCLE = "WRONG_BILLING_CYCLE"
    ALREADY_USED = "ALREADY_USED"
    GLOBAL_LIMIT_REACHED = "GLOBAL_LIMIT_REACHED"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"

    # Entitlements
    LIMIT_REACHED = "LIMIT_REACHED"
    FEATURE_NOT_AVAILABLE = "FEATURE_NOT_AVAILABLE"
    SCOPE_NOT_FOUND = "SCOPE_NOT_FOUND"

    # Team seats
    NOT_OWNER = "NOT_OWNER"
    SELF_INVITE = "SELF_INVITE"
    ALREADY_MEMBER = "ALREADY_MEMBER"
    INVITATION_PENDING = "INVITATION_PENDING"
    INVITATION_NOT_FOUND = "INVITATION_NOT_FOUND"
    INVITATION_EXPIRED = "INVITATION_EXPIRED"
    EMAIL_MISMATCH = "EMAIL_MISMATCH"
    MEMBER_NOT_FOUND = "MEMBER_NOT_FOUND"

class InvitationStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    EXPIRED = "EXPIRED"

class AuditAction(str, Enum):
    # Coupons
    COUPON_CREATED = "COUPON_CREATED"
    COUPON_REDEEMED = "COUPON_REDEEMED"
    COUPON_REDEMPTION_REJECTED = "COUPON_REDEMPTION_REJECTED"

    # Subscriptions
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_STATUS_CHANGED = "SUBSCRIPTION_STATUS_CHANGED"
    SUBSCRIPTION_TRANSITION_REFUSED = "SUBSCRIPTION_TRANSITION_REFUSED"
    SUBSCRIPTION_SUPERSEDED = "SUBSCRIPTION_SUPERSEDED"

    # Team
    INVITATION_SENT = "INVITATION_SENT"
    INVITATION_ACCEPTED = "INVITATION_ACCEPTED"
    TEAM_MEMBER_REMOVED = "TEAM_MEMBER_REMOVED"

    # Entitlements
    ENTITLEMENT_DENIED = "ENTITLEMENT_DENIED"

    # Webhooks
    WEBHOOK_PROCESSING_FAILED = "WEBHOOK_PROCESSING_FAILED"

    # Email
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_FAILED = "EMAIL_FAILED"

# ============================================================================
# MODELS
# ============================================================================

class Subscription(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subscription_id: str = Field(default_factory=_new_id)
    account_id: str
    # Omitted (not null) until provider-backed; the unique index is sparse.
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.INCOMPLETE
    plan: PlanTier
    billing_cycle: BillingCycle
    amount: float = 0
    currency: str = "INR"
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    trial_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(mode="python")
        doc["status"] = self.status.value
        doc["plan"] = self.plan.value
        doc["billing_cycle"] = self.billing_cycle.value
        if doc.get("provider_subscription_id") is None:
            doc.pop("provider_subscription_id")
        return doc

class Coupon(BaseModel):
    model_config = ConfigDict(extra="ignore")

    coupon_id: str = Field(default_factory=_new_id)
    code: str
    name: Optional[str] = None
    description: Optional[str] = None
    discount_type: DiscountType
    value: float
    is_active: bool = True
    is_public: bool = True
    limit_total: Optional[int] = None
    limit_per_customer: int = 1
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    allowed_billing_cycles: List[BillingCycle] = Field(default_factory=list)
    used_count: int = 0
    eligibility_rule: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(mode="python")
        doc["discount_type"] = self.discount_type.value
        doc["allowed_billing_cycles"] = [c.value for c in self.allowed_billing_cycles]
        return doc

class CouponUsage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    usage_id: str = Field(default_factory=_new_id)
    coupon_id: str
    account_id: str
    subscription_id: str
    # 1-based ordinal of this account's uses of the coupon; unique per (coupon, account).
    customer_slot: int = 1
    created_at: datetime = Field(default_factory=_utcnow)

class WebhookEvent(BaseModel):
    """Write-once record of an inbound provider event."""
    model_config = ConfigDict(extra="ignore")

    record_id: str = Field(default_factory=_new_id)
    provider: str = "STRIPE"
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    processed: bool = False
    error: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=_utcnow)

class Invitation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    invitation_id: str = Field(default_factory=_new_id)
    catalogue_id: str
    owner_id: str
    email: EmailStr
    token: str
    status: InvitationStatus = InvitationStatus.PENDING
    expires_at: datetime
    created_at: datetime = Field(default_factory=_utcnow)
    accepted_at: Optional[datetime] = None

class TeamMember(BaseModel):
    model_config = ConfigDict(extra="ignore")

    member_id: str = Field(default_factory=_new_id)
    catalogue_id: str
    account_id: str
    email: EmailStr
    role: str = "EDITOR"
    invitation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=_new_id)
    action: AuditAction
    actor_id: Optional[str] = None
    account_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)

class MessageLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message_id: str = Field(default_factory=_new_id)
    provider_message_id: Optional[str] = None
    account_id: Optional[str] = None
    recipient: EmailStr
    template: str
    subject: str
    status: str = "queued"
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    sent_at: Optional[datetime] = None

# ============================================================================
# RESULTS (tagged outcomes returned by the engine)
# ============================================================================

class Rejection(BaseModel):
    """Expected business refusal. Never raised; returned in place of a result."""
    reason: RejectionReason
    message: str
    details: Optional[Dict[str, Any]] = None

class CouponQuote(BaseModel):
    coupon_id: str
    code: str
    name: Optional[str] = None
    discount_type: DiscountType
    value: float
    discount_amount: float
    final_amount: float

class EntitlementDecision(BaseModel):
    allowed: bool
    resource_kind: ResourceKind
    plan: PlanTier
    limit: int
    count: int
    reason: Optional[RejectionReason] = None
    message: Optional[str] = None

    def to_rejection(self) -> Rejection:
        return Rejection(
            reason=self.reason or RejectionReason.LIMIT_REACHED,
            message=self.message or "Limit reached",
            details={"plan": self.plan.value, "limit": self.limit, "count": self.count},
        )
