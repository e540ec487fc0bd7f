"""
Plan quota checks.

Usage figures come from a ``UsageReader``. The SQL reader queries tables
owned by the business service through lightweight ``table()`` constructs;
nothing here writes to them.
"""

from datetime import datetime, time, timedelta
from typing import Protocol

import structlog
from sqlalchemy import column, func, select, table
from sqlalchemy.ext.asyncio import AsyncSession

from randevu.platform.billing.subscriptions.models import (
    BusinessUsage,
    LimitCheckResult,
    PlanLimits,
    SubscriptionLimits,
    SubscriptionPlan,
)
from randevu.platform.clock import Clock, system_clock

logger = structlog.get_logger(__name__)

UNLIMITED = -1

businesses_table = table("businesses", column("id"), column("owner_id"))
business_staff_table = table("business_staff", column("business_id"), column("is_active"))
appointments_table = table("appointments", column("business_id"), column("date"))


class UsageReader(Protocol):
    async def get_usage(self, business_id: str) -> BusinessUsage: ...


class SqlUsageReader:
    """Reads business, staff and appointment counts from the shared database."""

    def __init__(self, session: AsyncSession, clock: Clock = system_clock):
        self.session = session
        self.clock = clock

    async def get_usage(self, business_id: str) -> BusinessUsage:
        owner_id = await self.session.scalar(
            select(businesses_table.c.owner_id).where(businesses_table.c.id == business_id)
        )

        business_count = 0
        if owner_id is not None:
            business_count = await self.session.scalar(
                select(func.count())
                .select_from(businesses_table)
                .where(businesses_table.c.owner_id == owner_id)
            )

        staff_count = await self.session.scalar(
            select(func.count())
            .select_from(business_staff_table)
            .where(business_staff_table.c.business_id == business_id)
            .where(business_staff_table.c.is_active.is_(True))
        )

        now = self.clock.now()
        day_start = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
        appointment_count = await self.session.scalar(
            select(func.count())
            .select_from(appointments_table)
            .where(appointments_table.c.business_id == business_id)
            .where(appointments_table.c.date >= day_start)
            .where(appointments_table.c.date < day_start + timedelta(days=1))
        )

        return BusinessUsage(
            current_businesses=business_count or 0,
            current_staff=staff_count or 0,
            todays_appointments=appointment_count or 0,
        )


def within_limit(current: int, maximum: int) -> bool:
    """True while ``current`` fits under ``maximum`` (-1 is unlimited)."""
    return maximum == UNLIMITED or current <= maximum


def has_headroom(current: int, maximum: int) -> bool:
    """True while one more unit can be added."""
    return maximum == UNLIMITED or current < maximum


class LimitValidator:
    """Checks a business's current usage against a plan's quotas.

    Never raises; a failing usage read is reported as a violation.
    """

    def __init__(self, usage_reader: UsageReader):
        self.usage_reader = usage_reader

    async def check_limits(self, business_id: str, plan: SubscriptionPlan) -> LimitCheckResult:
        try:
            usage = await self.usage_reader.get_usage(business_id)
        except Exception as exc:
            logger.error(
                "subscription.limits.usage_read_failed",
                business_id=business_id,
                plan_id=plan.plan_id,
                error=str(exc),
            )
            return LimitCheckResult(
                is_valid=False, violations=[f"Unable to read current usage: {exc}"]
            )

        return self.evaluate(usage, plan)

    @staticmethod
    def evaluate(usage: BusinessUsage, plan: SubscriptionPlan) -> LimitCheckResult:
        violations: list[str] = []

        if not within_limit(usage.current_businesses, plan.max_businesses):
            violations.append(
                f"Too many businesses ({usage.current_businesses}/{plan.max_businesses})"
            )

        if not within_limit(usage.current_staff, plan.max_staff_per_business):
            violations.append(
                f"Too many staff members ({usage.current_staff}/{plan.max_staff_per_business})"
            )

        return LimitCheckResult(is_valid=not violations, violations=violations)

    async def subscription_limits(
        self, business_id: str, plan: SubscriptionPlan | None
    ) -> SubscriptionLimits:
        """Headroom report for the business's live plan."""
        if plan is None:
            return SubscriptionLimits(
                has_active_subscription=False,
                limits=PlanLimits(
                    max_businesses=0, max_staff_per_business=0, max_appointments_per_day=0
                ),
            )

        usage = await self.usage_reader.get_usage(business_id)
        return SubscriptionLimits(
            has_active_subscription=True,
            current_plan=plan,
            limits=PlanLimits(
                max_businesses=plan.max_businesses,
                max_staff_per_business=plan.max_staff_per_business,
                max_appointments_per_day=plan.max_appointments_per_day,
            ),
            usage=usage,
            can_create_business=has_headroom(usage.current_businesses, plan.max_businesses),
            can_add_staff=has_headroom(usage.current_staff, plan.max_staff_per_business),
            can_book_appointment=has_headroom(
                usage.todays_appointments, plan.max_appointments_per_day
            ),
        )


__all__ = [
    "UNLIMITED",
    "UsageReader",
    "SqlUsageReader",
    "LimitValidator",
    "within_limit",
    "has_headroom",
]
