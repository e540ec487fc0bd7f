"""Tests for plan quota checks and the SQL usage reader."""

from datetime import timedelta

import pytest
from sqlalchemy import text

from randevu.platform.billing.subscriptions.limits import (
    UNLIMITED,
    LimitValidator,
    SqlUsageReader,
    has_headroom,
    within_limit,
)
from randevu.platform.billing.subscriptions.models import BusinessUsage
from tests.billing.fakes import BUSINESS, FakeUsageReader, make_plan
from tests.conftest import START

PROFESSIONAL = make_plan(
    plan_id="professional", max_businesses=1, max_staff_per_business=10, max_appointments_per_day=100
)
UNLIMITED_PLAN = make_plan(
    plan_id="enterprise",
    max_businesses=UNLIMITED,
    max_staff_per_business=UNLIMITED,
    max_appointments_per_day=UNLIMITED,
)


@pytest.mark.unit
class TestLimitHelpers:
    def test_within_limit(self):
        assert within_limit(10, 10)
        assert not within_limit(11, 10)
        assert within_limit(10_000, UNLIMITED)

    def test_headroom(self):
        assert has_headroom(9, 10)
        assert not has_headroom(10, 10)
        assert has_headroom(10_000, UNLIMITED)


@pytest.mark.unit
class TestLimitValidator:
    async def test_usage_within_limits(self):
        usage = FakeUsageReader()
        usage.set(BUSINESS, current_businesses=1, current_staff=10)

        result = await LimitValidator(usage).check_limits(BUSINESS, PROFESSIONAL)

        assert result.is_valid
        assert result.violations == []

    async def test_reports_every_violation(self):
        usage = FakeUsageReader()
        usage.set(BUSINESS, current_businesses=3, current_staff=12)

        result = await LimitValidator(usage).check_limits(BUSINESS, PROFESSIONAL)

        assert not result.is_valid
        assert result.violations == ["Too many businesses (3/1)", "Too many staff members (12/10)"]

    async def test_unlimited_plan_always_fits(self):
        usage = FakeUsageReader()
        usage.set(BUSINESS, current_businesses=50, current_staff=500)

        result = await LimitValidator(usage).check_limits(BUSINESS, UNLIMITED_PLAN)

        assert result.is_valid

    async def test_read_failure_is_a_violation(self):
        usage = FakeUsageReader()
        usage.error = RuntimeError("connection reset")

        result = await LimitValidator(usage).check_limits(BUSINESS, PROFESSIONAL)

        assert not result.is_valid
        assert result.violations == ["Unable to read current usage: connection reset"]

    async def test_subscription_limits_without_plan(self):
        report = await LimitValidator(FakeUsageReader()).subscription_limits(BUSINESS, None)

        assert not report.has_active_subscription
        assert report.limits.max_businesses == 0
        assert not report.can_add_staff

    async def test_subscription_limits_headroom(self):
        usage = FakeUsageReader()
        usage.set(BUSINESS, current_businesses=1, current_staff=4, todays_appointments=100)

        report = await LimitValidator(usage).subscription_limits(BUSINESS, PROFESSIONAL)

        assert report.has_active_subscription
        assert report.current_plan == PROFESSIONAL
        assert report.usage == BusinessUsage(
            current_businesses=1, current_staff=4, todays_appointments=100
        )
        assert not report.can_create_business
        assert report.can_add_staff
        assert not report.can_book_appointment


@pytest.mark.integration
class TestSqlUsageReader:
    @pytest.fixture
    async def business_tables(self, db_session):
        await db_session.execute(text("CREATE TABLE businesses (id TEXT PRIMARY KEY, owner_id TEXT)"))
        await db_session.execute(
            text("CREATE TABLE business_staff (business_id TEXT, is_active BOOLEAN)")
        )
        await db_session.execute(text("CREATE TABLE appointments (business_id TEXT, date DATETIME)"))
        await db_session.execute(
            text(
                "INSERT INTO businesses (id, owner_id) VALUES "
                "('biz_1', 'owner_a'), ('biz_2', 'owner_a'), ('biz_3', 'owner_b')"
            )
        )
        await db_session.execute(
            text(
                "INSERT INTO business_staff (business_id, is_active) VALUES "
                "('biz_1', 1), ('biz_1', 1), ('biz_1', 0), ('biz_2', 1)"
            )
        )
        yield
        await db_session.rollback()

    async def test_counts_usage(self, db_session, business_tables, clock):
        today = START.replace(hour=10)
        for moment in (today, today + timedelta(hours=2), today - timedelta(days=1)):
            await db_session.execute(
                text("INSERT INTO appointments (business_id, date) VALUES ('biz_1', :date)"),
                {"date": moment},
            )

        usage = await SqlUsageReader(db_session, clock=clock).get_usage(BUSINESS)

        assert usage.current_businesses == 2
        assert usage.current_staff == 2
        assert usage.todays_appointments == 2

    async def test_unknown_business_has_no_usage(self, db_session, business_tables, clock):
        usage = await SqlUsageReader(db_session, clock=clock).get_usage("biz_missing")

        assert usage == BusinessUsage()
