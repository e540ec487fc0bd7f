"""
Billing system module.

Provides the subscription lifecycle for businesses:
- Plan catalog
- Subscribe, trial conversion, upgrades and downgrades with proration
- Cancellation and reactivation
- Scheduled renewals and expiry handling
"""

from randevu.platform.billing.exceptions import (
    BillingError,
    BillingValidationError,
    ConcurrentModificationError,
    InvalidPlanError,
    InvalidTransitionError,
    LimitExceededError,
    PaymentError,
    PaymentFailedError,
    PaymentRequiredError,
    PlanInUseError,
    PlanNotFoundError,
    SubscriptionError,
    SubscriptionNotFoundError,
)

__all__ = [
    "BillingError",
    "BillingValidationError",
    "ConcurrentModificationError",
    "InvalidPlanError",
    "InvalidTransitionError",
    "LimitExceededError",
    "PaymentError",
    "PaymentFailedError",
    "PaymentRequiredError",
    "PlanInUseError",
    "PlanNotFoundError",
    "SubscriptionError",
    "SubscriptionNotFoundError",
]
