"""
Business subscription lifecycle.

Plans, subscriptions, plan changes with proration, quota checks and the
scheduled renewal sweep.
"""

from randevu.platform.billing.subscriptions.catalog import PlanCatalog
from randevu.platform.billing.subscriptions.limits import (
    UNLIMITED,
    LimitValidator,
    SqlUsageReader,
    UsageReader,
)
from randevu.platform.billing.subscriptions.models import (
    BillingInterval,
    ChangeType,
    EffectiveDate,
    PlanChangeResult,
    PlanCreateRequest,
    PlanUpdateRequest,
    ProrationBehavior,
    ProrationResult,
    RenewalSummary,
    SubscribeRequest,
    Subscription,
    SubscriptionPlan,
    SubscriptionPlanChangeRequest,
    SubscriptionStatus,
)
from randevu.platform.billing.subscriptions.proration import calculate_proration
from randevu.platform.billing.subscriptions.renewal import RenewalOutcome, RenewalProcessor
from randevu.platform.billing.subscriptions.repository import SubscriptionRepository
from randevu.platform.billing.subscriptions.service import SubscriptionService

__all__ = [
    "UNLIMITED",
    "BillingInterval",
    "ChangeType",
    "EffectiveDate",
    "LimitValidator",
    "PlanCatalog",
    "PlanChangeResult",
    "PlanCreateRequest",
    "PlanUpdateRequest",
    "ProrationBehavior",
    "ProrationResult",
    "RenewalOutcome",
    "RenewalProcessor",
    "RenewalSummary",
    "SqlUsageReader",
    "SubscribeRequest",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionPlanChangeRequest",
    "SubscriptionRepository",
    "SubscriptionService",
    "SubscriptionStatus",
    "UsageReader",
    "calculate_proration",
]
