"""Tests for the plan catalog."""

from datetime import timedelta
from decimal import Decimal

import pytest

from randevu.platform.billing.exceptions import (
    BillingValidationError,
    InvalidPlanError,
    PlanInUseError,
    PlanNotFoundError,
)
from randevu.platform.billing.subscriptions.models import (
    BillingInterval,
    PlanCreateRequest,
    PlanUpdateRequest,
    SubscribeRequest,
)
from randevu.platform.billing.subscriptions.seed import DEFAULT_PLANS
from tests.billing.fakes import BUSINESS, OWNER, PROFESSIONAL, STARTER

pytestmark = pytest.mark.integration


def yearly_request(**overrides) -> PlanCreateRequest:
    values = {
        "plan_id": "plan_starter_yearly",
        "name": "starter_yearly",
        "display_name": "Starter Plan (Yearly)",
        "price": Decimal("7500.00"),
        "billing_interval": BillingInterval.YEARLY,
        "max_staff_per_business": 3,
    }
    values.update(overrides)
    return PlanCreateRequest(**values)


class TestPlanReads:
    async def test_seeded_plans(self, seeded_plans):
        assert set(seeded_plans) == {plan.plan_id for plan in DEFAULT_PLANS}
        assert seeded_plans[STARTER].price == Decimal("750.00")
        assert seeded_plans[PROFESSIONAL].is_trial_eligible

    async def test_seed_is_idempotent(self, catalog, seeded_plans):
        assert await catalog.seed_plans(DEFAULT_PLANS) == []

    async def test_get_plan_uses_cache(self, catalog, seeded_plans, billing_cache):
        await catalog.get_plan(STARTER)
        await catalog.get_plan(STARTER)

        assert billing_cache.metrics.hits >= 1

    async def test_missing_plan(self, catalog, seeded_plans):
        with pytest.raises(PlanNotFoundError, match="Subscription plan plan_missing not found"):
            await catalog.get_plan("plan_missing")

        assert await catalog.find_plan("plan_missing") is None

    async def test_list_orders_by_sort_order(self, catalog, seeded_plans):
        plans = await catalog.list_plans()

        assert [plan.name for plan in plans] == ["starter", "professional", "enterprise"]

    async def test_list_by_interval(self, catalog, db_session, seeded_plans):
        await catalog.create_plan(yearly_request())
        await db_session.commit()

        yearly = await catalog.list_plans(billing_interval=BillingInterval.YEARLY)
        monthly = await catalog.list_plans(billing_interval=BillingInterval.MONTHLY)

        assert [plan.plan_id for plan in yearly] == ["plan_starter_yearly"]
        assert len(monthly) == 3


class TestPlanWrites:
    async def test_create_refreshes_listing(self, catalog, db_session, seeded_plans):
        assert len(await catalog.list_plans(active_only=False)) == 3

        plan = await catalog.create_plan(yearly_request())
        await db_session.commit()

        assert plan.billing_interval == BillingInterval.YEARLY
        assert len(await catalog.list_plans(active_only=False)) == 4

    async def test_duplicate_name_rejected(self, catalog, seeded_plans):
        with pytest.raises(BillingValidationError, match="already exists"):
            await catalog.create_plan(yearly_request(plan_id=None, name="starter"))

    async def test_unknown_currency_rejected(self, catalog, seeded_plans):
        with pytest.raises(BillingValidationError, match="Invalid currency code"):
            await catalog.create_plan(yearly_request(currency="QQQ"))

    async def test_generated_plan_id(self, catalog, seeded_plans):
        plan = await catalog.create_plan(yearly_request(plan_id=None, name="custom"))

        assert plan.plan_id.startswith("plan_")

    async def test_deactivated_plan_stays_readable(self, catalog, db_session, seeded_plans):
        await catalog.deactivate_plan(STARTER)
        await db_session.commit()

        plan = await catalog.get_plan(STARTER)
        assert not plan.is_active
        assert STARTER not in {p.plan_id for p in await catalog.list_plans()}
        with pytest.raises(InvalidPlanError):
            await catalog.get_active_plan(STARTER)

    async def test_update_unreferenced_plan(self, catalog, db_session, seeded_plans):
        plan = await catalog.update_plan(
            STARTER, PlanUpdateRequest(price=Decimal("800.00"), display_name="Starter+")
        )
        await db_session.commit()

        assert plan.price == Decimal("800.00")
        assert (await catalog.get_plan(STARTER)).display_name == "Starter+"

    async def test_financial_terms_frozen_once_referenced(
        self, service, catalog, db_session, seeded_plans
    ):
        await service.subscribe_business(
            OWNER,
            SubscribeRequest(business_id=BUSINESS, plan_id=STARTER, payment_method_id="pm_card_1"),
        )

        with pytest.raises(PlanInUseError) as exc_info:
            await catalog.update_plan(STARTER, PlanUpdateRequest(price=Decimal("900.00")))
        assert exc_info.value.context["fields"] == ["price"]

        # Cosmetic fields and unchanged financial values still pass
        plan = await catalog.update_plan(
            STARTER, PlanUpdateRequest(description="Updated", price=Decimal("750.00"))
        )
        assert plan.description == "Updated"

    async def test_update_missing_plan(self, catalog, seeded_plans):
        with pytest.raises(PlanNotFoundError):
            await catalog.update_plan("plan_missing", PlanUpdateRequest(sort_order=9))

    async def test_timestamps_follow_clock(self, catalog, clock, seeded_plans):
        clock.advance(timedelta(days=1))

        plan = await catalog.update_plan(STARTER, PlanUpdateRequest(sort_order=7))

        assert plan.updated_at == clock.now()
