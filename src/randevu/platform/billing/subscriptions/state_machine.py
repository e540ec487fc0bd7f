"""
Subscription state machine.

Which operations each status permits, and the period arithmetic used when a
subscription starts, converts, switches interval or renews. Periods use the
same nominal day counts as proration.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from randevu.platform.billing.exceptions import InvalidTransitionError
from randevu.platform.billing.subscriptions.models import (
    LIVE_STATUSES,
    SubscriptionPlan,
    SubscriptionStatus,
)
from randevu.platform.billing.subscriptions.proration import nominal_period_days
from randevu.platform.settings import settings


class Operation(str, Enum):
    CONVERT_TRIAL = "convert_trial"
    CHANGE_PLAN = "change_plan"
    CANCEL = "cancel"
    REACTIVATE = "reactivate"
    EXPIRE = "expire_and_advance"
    UPDATE_SETTINGS = "update_settings"


_LIVE = frozenset(LIVE_STATUSES)

ALLOWED_SOURCES: dict[Operation, frozenset[SubscriptionStatus]] = {
    Operation.CONVERT_TRIAL: frozenset({SubscriptionStatus.TRIAL}),
    Operation.CHANGE_PLAN: frozenset({SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE}),
    Operation.CANCEL: _LIVE,
    Operation.REACTIVATE: frozenset({SubscriptionStatus.CANCELED}) | _LIVE,
    Operation.EXPIRE: _LIVE,
    Operation.UPDATE_SETTINGS: _LIVE,
}

_MESSAGES = {
    Operation.CONVERT_TRIAL: "No active trial subscription found",
    Operation.CHANGE_PLAN: "Plan changes are only allowed for trial or active subscriptions",
    Operation.CANCEL: "Subscription is already canceled",
    Operation.REACTIVATE: "Subscription cannot be reactivated",
    Operation.EXPIRE: "Only live subscriptions can expire",
    Operation.UPDATE_SETTINGS: "Settings can only change on a live subscription",
}


def can_transition(status: SubscriptionStatus | str, operation: Operation) -> bool:
    return SubscriptionStatus(status) in ALLOWED_SOURCES[operation]


def ensure_transition(status: SubscriptionStatus | str, operation: Operation) -> None:
    """Raise ``InvalidTransitionError`` if ``operation`` is not allowed from ``status``."""
    current = SubscriptionStatus(status)
    if current not in ALLOWED_SOURCES[operation]:
        raise InvalidTransitionError(
            _MESSAGES[operation], current_state=current.value, operation=operation.value
        )


@dataclass(frozen=True)
class Period:
    start: datetime
    end: datetime


def add_interval(start: datetime, plan: SubscriptionPlan) -> datetime:
    return start + timedelta(days=nominal_period_days(plan.billing_interval))


def plan_period(start: datetime, plan: SubscriptionPlan) -> Period:
    """One billing interval of ``plan`` starting at ``start``."""
    return Period(start=start, end=add_interval(start, plan))


def initial_state(plan: SubscriptionPlan, now: datetime) -> tuple[SubscriptionStatus, Period]:
    """Status and first period for a new subscription.

    Trial-eligible plans start a fixed-length trial; the plan interval only
    begins when the trial converts.
    """
    if plan.is_trial_eligible:
        trial_end = now + timedelta(days=settings.billing.trial_days)
        return SubscriptionStatus.TRIAL, Period(start=now, end=trial_end)
    return SubscriptionStatus.ACTIVE, plan_period(now, plan)


def period_after_switch(
    current_plan: SubscriptionPlan,
    new_plan: SubscriptionPlan,
    period: Period,
    now: datetime,
) -> Period:
    """Period after an immediate plan switch.

    Same interval keeps the current period; a different interval restarts the
    period at ``now``.
    """
    if new_plan.billing_interval == current_plan.billing_interval:
        return period
    return plan_period(now, new_plan)


def renewal_period(previous_end: datetime, plan: SubscriptionPlan, now: datetime) -> Period:
    """Next period after ``previous_end``.

    Renewals are contiguous with the previous period. A subscription that
    lapsed for longer than a whole interval restarts at ``now`` instead of
    billing for time already gone.
    """
    candidate = plan_period(previous_end, plan)
    if candidate.end <= now:
        return plan_period(now, plan)
    return candidate


__all__ = [
    "Operation",
    "ALLOWED_SOURCES",
    "Period",
    "can_transition",
    "ensure_transition",
    "add_interval",
    "plan_period",
    "initial_state",
    "period_after_switch",
    "renewal_period",
]
