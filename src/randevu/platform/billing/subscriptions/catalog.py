"""
Subscription plan catalog.

Plans are never deleted. Deactivated plans stop accepting new subscribers
but stay valid for existing ones, and the financial terms of a plan that
any subscription references are frozen.
"""

from uuid import uuid4

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from randevu.platform.billing.cache import BillingCache, CacheKey, get_billing_cache
from randevu.platform.billing.exceptions import (
    BillingValidationError,
    InvalidPlanError,
    PlanInUseError,
    PlanNotFoundError,
)
from randevu.platform.billing.models import BusinessSubscriptionTable, SubscriptionPlanTable
from randevu.platform.billing.money_utils import money_handler
from randevu.platform.billing.subscriptions.models import (
    FINANCIAL_PLAN_FIELDS,
    BillingInterval,
    PlanCreateRequest,
    PlanUpdateRequest,
    SubscriptionPlan,
)
from randevu.platform.clock import Clock, system_clock

logger = structlog.get_logger(__name__)


def _to_plan(row: SubscriptionPlanTable) -> SubscriptionPlan:
    return SubscriptionPlan.model_validate(row)


class PlanCatalog:
    """Read and maintain subscription plans."""

    def __init__(
        self,
        session: AsyncSession,
        cache: BillingCache | None = None,
        clock: Clock = system_clock,
    ):
        self.session = session
        self.cache = cache or get_billing_cache()
        self.clock = clock

    async def get_plan(self, plan_id: str) -> SubscriptionPlan:
        """Fetch a plan in any state."""

        async def load() -> SubscriptionPlan | None:
            row = await self.session.get(SubscriptionPlanTable, plan_id)
            return _to_plan(row) if row is not None else None

        plan = await self.cache.get(CacheKey.subscription_plan(plan_id), load)
        if plan is None:
            raise PlanNotFoundError(f"Subscription plan {plan_id} not found", plan_id=plan_id)
        return plan

    async def find_plan(self, plan_id: str) -> SubscriptionPlan | None:
        try:
            return await self.get_plan(plan_id)
        except PlanNotFoundError:
            return None

    async def get_active_plan(self, plan_id: str) -> SubscriptionPlan:
        """Fetch a plan that accepts new subscribers."""
        plan = await self.get_plan(plan_id)
        if not plan.is_active:
            raise InvalidPlanError("Invalid or inactive subscription plan", plan_id=plan_id)
        return plan

    async def list_plans(
        self,
        active_only: bool = True,
        billing_interval: BillingInterval | None = None,
    ) -> list[SubscriptionPlan]:
        """Plans ordered for display."""

        async def load() -> list[SubscriptionPlan]:
            stmt = select(SubscriptionPlanTable)
            if active_only:
                stmt = stmt.where(SubscriptionPlanTable.is_active.is_(True))
            if billing_interval is not None:
                stmt = stmt.where(SubscriptionPlanTable.billing_interval == billing_interval.value)
            stmt = stmt.order_by(SubscriptionPlanTable.sort_order, SubscriptionPlanTable.price)
            result = await self.session.execute(stmt)
            return [_to_plan(row) for row in result.scalars().all()]

        key = CacheKey.plan_list(
            active_only, billing_interval.value if billing_interval is not None else None
        )
        plans = await self.cache.get(key, load)
        return list(plans or [])

    async def create_plan(self, request: PlanCreateRequest) -> SubscriptionPlan:
        try:
            money_handler.validate_currency(request.currency)
        except ValueError as exc:
            raise BillingValidationError(str(exc), context={"currency": request.currency})

        existing = await self.session.scalar(
            select(SubscriptionPlanTable.plan_id).where(
                or_(
                    SubscriptionPlanTable.name == request.name,
                    SubscriptionPlanTable.plan_id == (request.plan_id or ""),
                )
            )
        )
        if existing is not None:
            raise BillingValidationError(
                f"Subscription plan '{request.name}' already exists",
                context={"plan_id": existing, "name": request.name},
                recovery_hint="Use a unique plan name or update the existing plan",
            )

        now = self.clock.now()
        row = SubscriptionPlanTable(
            plan_id=request.plan_id or f"plan_{uuid4().hex[:12]}",
            name=request.name,
            display_name=request.display_name,
            description=request.description,
            price=request.price,
            currency=request.currency,
            billing_interval=request.billing_interval.value,
            max_businesses=request.max_businesses,
            max_staff_per_business=request.max_staff_per_business,
            max_appointments_per_day=request.max_appointments_per_day,
            features=dict(request.features),
            is_trial_eligible=request.is_trial_eligible,
            is_active=True,
            is_popular=request.is_popular,
            sort_order=request.sort_order,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        await self.session.flush()
        self._invalidate(row.plan_id)

        logger.info(
            "subscription_plan.created",
            plan_id=row.plan_id,
            name=row.name,
            price=str(row.price),
            currency=row.currency,
            billing_interval=row.billing_interval,
        )
        return _to_plan(row)

    async def update_plan(self, plan_id: str, request: PlanUpdateRequest) -> SubscriptionPlan:
        row = await self._get_row(plan_id)
        changes = request.model_dump(exclude_unset=True, exclude_none=True)

        financial = [
            field
            for field in FINANCIAL_PLAN_FIELDS
            if field in changes and _normalise(changes[field]) != _normalise(getattr(row, field))
        ]
        if financial and await self.is_referenced(plan_id):
            raise PlanInUseError(
                "Price, interval and quotas of a plan in use cannot change",
                plan_id=plan_id,
                fields=financial,
            )

        for field, value in changes.items():
            if isinstance(value, BillingInterval):
                value = value.value
            setattr(row, field, value)
        row.updated_at = self.clock.now()
        await self.session.flush()
        self._invalidate(plan_id)

        logger.info("subscription_plan.updated", plan_id=plan_id, fields=sorted(changes))
        return _to_plan(row)

    async def deactivate_plan(self, plan_id: str) -> SubscriptionPlan:
        """Stop offering a plan; existing subscribers keep it."""
        row = await self._get_row(plan_id)
        if row.is_active:
            row.is_active = False
            row.updated_at = self.clock.now()
            await self.session.flush()
            self._invalidate(plan_id)
            logger.info("subscription_plan.deactivated", plan_id=plan_id)
        return _to_plan(row)

    async def is_referenced(self, plan_id: str) -> bool:
        count = await self.session.scalar(
            select(func.count())
            .select_from(BusinessSubscriptionTable)
            .where(
                or_(
                    BusinessSubscriptionTable.plan_id == plan_id,
                    BusinessSubscriptionTable.pending_plan_id == plan_id,
                )
            )
        )
        return bool(count)

    async def seed_plans(self, plans: list[PlanCreateRequest]) -> list[SubscriptionPlan]:
        """Create the given plans, skipping names that already exist."""
        created = []
        for request in plans:
            exists = await self.session.scalar(
                select(SubscriptionPlanTable.plan_id).where(
                    SubscriptionPlanTable.name == request.name
                )
            )
            if exists is not None:
                logger.info("subscription_plan.seed_skipped", name=request.name, plan_id=exists)
                continue
            created.append(await self.create_plan(request))
        return created

    async def _get_row(self, plan_id: str) -> SubscriptionPlanTable:
        row = await self.session.get(SubscriptionPlanTable, plan_id)
        if row is None:
            raise PlanNotFoundError(f"Subscription plan {plan_id} not found", plan_id=plan_id)
        return row

    def _invalidate(self, plan_id: str) -> None:
        self.cache.invalidate(CacheKey.subscription_plan(plan_id))
        self.cache.invalidate_prefix("billing:plans:")


def _normalise(value: object) -> object:
    if isinstance(value, BillingInterval):
        return value.value
    return value


__all__ = ["PlanCatalog"]
