"""
Proration for mid-period plan changes.

Periods are measured in nominal days: a monthly plan covers 30 days and a
yearly plan 365, regardless of the calendar. The same approximation is used
for period arithmetic in the state machine so charges and periods agree.
"""

import math
from datetime import datetime
from decimal import Decimal

from randevu.platform.billing.money_utils import quantize_amount
from randevu.platform.billing.subscriptions.models import (
    BillingInterval,
    ProrationBehavior,
    ProrationResult,
    SubscriptionPlan,
)
from randevu.platform.settings import settings

SECONDS_PER_DAY = 86400


def nominal_period_days(interval: BillingInterval) -> int:
    """Length of one billing period in nominal days."""
    if interval == BillingInterval.MONTHLY:
        return settings.billing.monthly_period_days
    return settings.billing.yearly_period_days


def remaining_days(current_period_end: datetime, now: datetime) -> int:
    """Whole days left in the period, rounded up, never negative."""
    seconds = (current_period_end - now).total_seconds()
    return max(0, math.ceil(seconds / SECONDS_PER_DAY))


def calculate_proration(
    current_plan: SubscriptionPlan,
    new_plan: SubscriptionPlan,
    current_period_end: datetime,
    now: datetime,
    behavior: ProrationBehavior = ProrationBehavior.CREATE_PRORATIONS,
) -> ProrationResult:
    """
    Credit the unused share of the current plan against the new plan's price.

    ``credit = current.price * clamp(remaining / total, 0, 1)`` and
    ``charge = max(0, new.price - credit)``. The result depends only on the
    arguments. It works in either direction; callers decide when to collect.

    With ``ProrationBehavior.NONE`` no credit is given and the full new
    plan price is charged.
    """
    days_left = remaining_days(current_period_end, now)
    total_days = nominal_period_days(current_plan.billing_interval)

    ratio = Decimal(days_left) / Decimal(total_days)
    unused_ratio = min(Decimal(1), max(Decimal(0), ratio))

    currency = new_plan.currency
    if behavior == ProrationBehavior.NONE:
        credit = Decimal(0)
    else:
        credit = current_plan.price * unused_ratio

    charge = max(Decimal(0), new_plan.price - credit)

    return ProrationResult(
        charge_amount=quantize_amount(charge, currency),
        credit_amount=quantize_amount(credit, current_plan.currency),
        full_new_plan_price=quantize_amount(new_plan.price, currency),
        remaining_days=days_left,
        total_days=total_days,
        unused_ratio=unused_ratio,
        currency=currency,
    )


__all__ = ["calculate_proration", "nominal_period_days", "remaining_days", "SECONDS_PER_DAY"]
