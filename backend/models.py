from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class PlanTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"
    VIP = "vip"

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

class ResourceKind(str, Enum):
    SUBJECT = "subject"
    STUDENT = "student"

class Currency(str, Enum):
    NGN = "NGN"
    USD = "USD"

class UserRole(str, Enum):
    TEACHER = "teacher"
    STUDENT = "student"
    ADMIN = "admin"

class RecordStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"

class SubscriptionEventType(str, Enum):
    SUBSCRIPTION_CREATED = "subscription_created"
    PLAN_UPGRADE = "plan_upgrade"
    PLAN_DOWNGRADE = "plan_downgrade"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    GRACE_PERIOD_ACTIVATED = "grace_period_activated"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    MIGRATION_BACKFILL = "migration_backfill"

class NotificationTemplate(str, Enum):
    RENEWAL_REMINDER = "subscription-renewal-reminder"
    RENEWAL_SUCCESS = "subscription-renewal-success"
    GRACE_PERIOD = "subscription-grace-period"
    DOWNGRADE = "subscription-downgrade"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

# ============================================================================
# PLAN CATALOG
# ============================================================================

class PlanDefinition(BaseModel):
    """Immutable plan tier definition. Prices are in minor units (kobo / cents)."""
    model_config = ConfigDict(frozen=True)

    tier: PlanTier
    name: str
    subject_limit: int
    student_limit: int
    question_limit: int
    price_minor: Dict[str, int]
    features: List[str] = Field(default_factory=list)
    billing_cycle: Optional[str] = None

# ============================================================================
# SUBSCRIPTION (one per tenant, document id == tenant_id)
# ============================================================================

class Subscription(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tenant_id: str
    tenant_name: Optional[str] = None
    plan_tier: PlanTier = PlanTier.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE

    # Limits copied from the plan at assignment time
    subject_limit: int
    student_limit: int
    question_limit: int

    # Usage ledger
    current_subjects: int = 0
    current_students: int = 0

    # Billing window
    start_date: datetime = Field(default_factory=utc_now)
    expiry_date: Optional[datetime] = None  # None for free tier
    grace_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    # Payment processor references (opaque to the quota engine)
    amount: int = 0
    currency: Currency = Currency.NGN
    last_payment_date: Optional[datetime] = None
    payment_provider: Optional[str] = None
    processor_customer_ref: Optional[str] = None
    processor_subscription_ref: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(mode="python")
        doc["plan_tier"] = self.plan_tier.value
        doc["status"] = self.status.value
        doc["currency"] = self.currency.value
        return doc


class SubscriptionEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    event_type: SubscriptionEventType
    from_plan: Optional[str] = None
    to_plan: Optional[str] = None
    status: Optional[str] = None
    actor_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utc_now)

# ============================================================================
# MIGRATION / RECONCILIATION RESULTS
# ============================================================================

class UsageCounts(BaseModel):
    subjects: int = 0
    students: int = 0


class MigrationError(BaseModel):
    tenant_id: str
    tenant_name: str = "Unknown"
    error: str


class MigrationResult(BaseModel):
    total: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[MigrationError] = Field(default_factory=list)


class TenantRef(BaseModel):
    id: str
    name: str = "Unknown"


class DriftEntry(BaseModel):
    tenant_id: str
    tenant_name: str = "Unknown"
    expected: UsageCounts
    actual: UsageCounts


class ValidationReport(BaseModel):
    total_tenants: int = 0
    total_subscriptions: int = 0
    tenants_without_subscriptions: List[TenantRef] = Field(default_factory=list)
    subscriptions_with_incorrect_counts: List[DriftEntry] = Field(default_factory=list)
    errors: List[MigrationError] = Field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not (
            self.tenants_without_subscriptions
            or self.subscriptions_with_incorrect_counts
            or self.errors
        )

# ============================================================================
# LIMIT GATE VIEWS
# ============================================================================

class ResourceUsage(BaseModel):
    current: int
    limit: int
    percentage: int
    near_limit: bool
    at_limit: bool


class UsageSummary(BaseModel):
    tenant_id: str
    plan_tier: PlanTier
    status: SubscriptionStatus
    subjects: ResourceUsage
    students: ResourceUsage
    question_limit: int
