"""
Subscription domain models.

Pydantic models for plans, subscriptions, change records, requests and
results exchanged with callers of the subscription service.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


class BillingInterval(str, Enum):
    """Plan billing interval."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"

    @property
    def is_live(self) -> bool:
        return self in LIVE_STATUSES


LIVE_STATUSES = frozenset(
    {SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
)


class EffectiveDate(str, Enum):
    """When a plan change takes effect."""

    IMMEDIATE = "immediate"
    NEXT_BILLING_CYCLE = "next_billing_cycle"


class ProrationBehavior(str, Enum):
    """How an immediate upgrade is priced.

    ``create_prorations`` credits the unused share of the current plan;
    ``none`` charges the full new plan price.
    """

    CREATE_PRORATIONS = "create_prorations"
    NONE = "none"


class ChangeType(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    SAME = "same"


class PaymentOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_REQUIRED = "not_required"
    SKIPPED = "skipped"


class SubscriptionEventType(str, Enum):
    """Event types written to the subscription event trail."""

    CREATED = "subscription.created"
    TRIAL_CONVERTED = "subscription.trial_converted"
    UPGRADED = "subscription.upgraded"
    DOWNGRADE_SCHEDULED = "subscription.downgrade_scheduled"
    PLAN_CHANGE_SCHEDULED = "subscription.plan_change_scheduled"
    CANCELED = "subscription.canceled"
    CANCELLATION_SCHEDULED = "subscription.cancellation_scheduled"
    REACTIVATED = "subscription.reactivated"
    RENEWED = "subscription.renewed"
    RENEWAL_FAILED = "subscription.renewal_failed"
    PAST_DUE = "subscription.past_due"
    AUTO_RENEWAL_UPDATED = "subscription.auto_renewal_updated"
    PAYMENT_METHOD_UPDATED = "subscription.payment_method_updated"
    STATUS_FORCED = "subscription.status_forced"


# ============================================================================
# Plans
# ============================================================================


class SubscriptionPlan(BaseModel):
    """Catalog entry describing price, interval and quotas."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    plan_id: str
    name: str
    display_name: str
    description: str | None = None
    price: Decimal = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    billing_interval: BillingInterval
    max_businesses: int = Field(ge=-1)
    max_staff_per_business: int = Field(ge=-1)
    max_appointments_per_day: int = Field(ge=-1)
    features: dict[str, Any] = Field(default_factory=dict)
    is_trial_eligible: bool = False
    is_active: bool = True
    is_popular: bool = False
    sort_order: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PlanCreateRequest(BaseModel):
    """Request to add a plan to the catalog."""

    model_config = ConfigDict(str_strip_whitespace=True)

    plan_id: str | None = Field(None, max_length=50)
    name: str = Field(min_length=1, max_length=100)
    display_name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    price: Decimal = Field(ge=0, decimal_places=2)
    currency: str = Field("TRY", min_length=3, max_length=3)
    billing_interval: BillingInterval = BillingInterval.MONTHLY
    max_businesses: int = Field(1, ge=-1)
    max_staff_per_business: int = Field(1, ge=-1)
    max_appointments_per_day: int = Field(-1, ge=-1)
    features: dict[str, Any] = Field(default_factory=dict)
    is_trial_eligible: bool = False
    is_popular: bool = False
    sort_order: int = 0

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class PlanUpdateRequest(BaseModel):
    """Partial plan update; financial fields are refused once the plan is in use."""

    model_config = ConfigDict(str_strip_whitespace=True)

    display_name: str | None = None
    description: str | None = None
    features: dict[str, Any] | None = None
    is_popular: bool | None = None
    sort_order: int | None = None
    price: Decimal | None = Field(None, ge=0, decimal_places=2)
    billing_interval: BillingInterval | None = None
    max_businesses: int | None = Field(None, ge=-1)
    max_staff_per_business: int | None = Field(None, ge=-1)
    max_appointments_per_day: int | None = Field(None, ge=-1)


FINANCIAL_PLAN_FIELDS = (
    "price",
    "billing_interval",
    "max_businesses",
    "max_staff_per_business",
    "max_appointments_per_day",
)


# ============================================================================
# Change records
# ============================================================================


class _ChangeRecordBase(BaseModel):
    recorded_at: datetime
    actor: str | None = None


class SubscriptionCreatedRecord(_ChangeRecordBase):
    change_type: Literal["created"] = "created"
    plan_id: str
    is_trial: bool


class UpgradeRecord(_ChangeRecordBase):
    change_type: Literal["upgrade"] = "upgrade"
    previous_plan_id: str
    new_plan_id: str
    effective_date: EffectiveDate
    proration_amount: Decimal = Decimal("0")
    credit_amount: Decimal = Decimal("0")
    currency: str | None = None
    payment_outcome: PaymentOutcome = PaymentOutcome.NOT_REQUIRED
    payment_id: str | None = None


class DowngradeRecord(_ChangeRecordBase):
    change_type: Literal["downgrade"] = "downgrade"
    previous_plan_id: str
    new_plan_id: str
    effective_at: datetime
    scheduled: bool = True


class RenewalRecord(_ChangeRecordBase):
    change_type: Literal["renewal"] = "renewal"
    period_start: datetime
    period_end: datetime
    amount: Decimal
    currency: str
    payment_outcome: PaymentOutcome
    payment_id: str | None = None
    applied_plan_id: str | None = None


class TrialConversionRecord(_ChangeRecordBase):
    change_type: Literal["trial_conversion"] = "trial_conversion"
    converted_at: datetime
    payment_method_recorded: bool


class CancellationRecord(_ChangeRecordBase):
    change_type: Literal["cancellation"] = "cancellation"
    at_period_end: bool
    finalized: bool
    reason: str | None = None


class ReactivationRecord(_ChangeRecordBase):
    change_type: Literal["reactivation"] = "reactivation"
    restored_status: SubscriptionStatus


class StatusChangeRecord(_ChangeRecordBase):
    change_type: Literal["status_change"] = "status_change"
    previous_status: SubscriptionStatus
    new_status: SubscriptionStatus
    reason: str | None = None


ChangeRecord = Annotated[
    SubscriptionCreatedRecord
    | UpgradeRecord
    | DowngradeRecord
    | RenewalRecord
    | TrialConversionRecord
    | CancellationRecord
    | ReactivationRecord
    | StatusChangeRecord,
    Field(discriminator="change_type"),
]

change_record_adapter: TypeAdapter[ChangeRecord] = TypeAdapter(ChangeRecord)


def parse_change_record(data: dict[str, Any] | None) -> ChangeRecord | None:
    """Rebuild a typed change record from its stored JSON form."""
    if not data or "change_type" not in data:
        return None
    return change_record_adapter.validate_python(data)


def dump_change_record(record: ChangeRecord) -> dict[str, Any]:
    return record.model_dump(mode="json")


# ============================================================================
# Subscriptions
# ============================================================================


class Subscription(BaseModel):
    """A business's subscription as seen by callers."""

    model_config = ConfigDict(frozen=True)

    subscription_id: str
    business_id: str
    plan_id: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    trial_end: datetime | None = None
    auto_renewal: bool = True
    payment_method_id: str | None = None
    next_billing_date: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    previous_status: SubscriptionStatus | None = None
    pending_plan_id: str | None = None
    pending_change_effective_at: datetime | None = None
    failed_payment_count: int = 0
    last_payment_error: str | None = None
    last_change: ChangeRecord | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def check_period(self) -> "Subscription":
        if self.current_period_end <= self.current_period_start:
            raise ValueError("current_period_end must be after current_period_start")
        return self

    @property
    def is_live(self) -> bool:
        return self.status.is_live

    @property
    def is_in_trial(self) -> bool:
        return self.status == SubscriptionStatus.TRIAL


class SubscribeRequest(BaseModel):
    """Start a subscription for a business."""

    model_config = ConfigDict(str_strip_whitespace=True)

    business_id: str = Field(min_length=1)
    plan_id: str = Field(min_length=1)
    payment_method_id: str | None = None
    auto_renewal: bool = True


class SubscriptionPlanChangeRequest(BaseModel):
    """Move a subscription to another plan."""

    model_config = ConfigDict(str_strip_whitespace=True)

    new_plan_id: str = Field(min_length=1)
    effective_date: EffectiveDate = EffectiveDate.IMMEDIATE
    proration_behavior: ProrationBehavior = ProrationBehavior.CREATE_PRORATIONS
    payment_method_id: str | None = None


# ============================================================================
# Results
# ============================================================================


class ProrationResult(BaseModel):
    """Charge and credit for switching plans mid-period."""

    model_config = ConfigDict(frozen=True)

    charge_amount: Decimal
    credit_amount: Decimal
    full_new_plan_price: Decimal
    remaining_days: int
    total_days: int
    unused_ratio: Decimal
    currency: str


class LimitCheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    violations: list[str] = Field(default_factory=list)


class PlanLimits(BaseModel):
    max_businesses: int
    max_staff_per_business: int
    max_appointments_per_day: int


class BusinessUsage(BaseModel):
    current_businesses: int = 0
    current_staff: int = 0
    todays_appointments: int = 0


class SubscriptionLimits(BaseModel):
    """Quota headroom for a business under its live subscription."""

    has_active_subscription: bool
    current_plan: SubscriptionPlan | None = None
    limits: PlanLimits | None = None
    usage: BusinessUsage = Field(default_factory=BusinessUsage)
    can_create_business: bool = False
    can_add_staff: bool = False
    can_book_appointment: bool = False


class PaymentSummary(BaseModel):
    outcome: PaymentOutcome
    payment_id: str | None = None
    amount: Decimal = Decimal("0")
    currency: str | None = None


class PlanChangeResult(BaseModel):
    subscription: Subscription
    change_type: ChangeType
    effective_date: EffectiveDate
    effective_at: datetime
    proration: ProrationResult | None = None
    payment: PaymentSummary | None = None


class SubscriptionChangePreview(BaseModel):
    """What a plan change would cost, without applying it."""

    change_type: ChangeType
    current_plan: SubscriptionPlan
    new_plan: SubscriptionPlan
    effective_date: EffectiveDate
    effective_at: datetime
    proration: ProrationResult | None = None
    limit_check: LimitCheckResult | None = None
    description: str


class RenewalSummary(BaseModel):
    processed: int = 0
    renewed: int = 0
    canceled: int = 0
    past_due: int = 0
    failed: int = 0
    skipped: int = 0


class ExpirySummary(BaseModel):
    processed: int = 0
    canceled: int = 0
    past_due: int = 0
    skipped: int = 0
    failed: int = 0


class DunningSummary(BaseModel):
    processed: int = 0
    canceled: int = 0
    failed: int = 0


class PaymentMethodSummary(BaseModel):
    payment_method_id: str
    brand: str | None = None
    last_four: str | None = None
    expiry_month: int | None = None
    expiry_year: int | None = None


class AutoRenewalStatus(BaseModel):
    subscription_id: str
    auto_renewal: bool
    next_billing_date: datetime | None = None
    payment_method_id: str | None = None
    payment_method: PaymentMethodSummary | None = None


class SubscriptionStats(BaseModel):
    """Subscription counts and recurring revenue across all businesses."""

    total_subscriptions: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_plan: dict[str, int] = Field(default_factory=dict)
    monthly_recurring_revenue: dict[str, Decimal] = Field(default_factory=dict)
    annual_recurring_revenue: dict[str, Decimal] = Field(default_factory=dict)


__all__ = [
    "BillingInterval",
    "SubscriptionStatus",
    "LIVE_STATUSES",
    "EffectiveDate",
    "ProrationBehavior",
    "ChangeType",
    "PaymentOutcome",
    "SubscriptionEventType",
    "SubscriptionPlan",
    "PlanCreateRequest",
    "PlanUpdateRequest",
    "FINANCIAL_PLAN_FIELDS",
    "ChangeRecord",
    "SubscriptionCreatedRecord",
    "UpgradeRecord",
    "DowngradeRecord",
    "RenewalRecord",
    "TrialConversionRecord",
    "CancellationRecord",
    "ReactivationRecord",
    "StatusChangeRecord",
    "parse_change_record",
    "dump_change_record",
    "Subscription",
    "SubscribeRequest",
    "SubscriptionPlanChangeRequest",
    "ProrationResult",
    "LimitCheckResult",
    "PlanLimits",
    "BusinessUsage",
    "SubscriptionLimits",
    "PaymentSummary",
    "PlanChangeResult",
    "SubscriptionChangePreview",
    "RenewalSummary",
    "ExpirySummary",
    "DunningSummary",
    "PaymentMethodSummary",
    "AutoRenewalStatus",
    "SubscriptionStats",
]
