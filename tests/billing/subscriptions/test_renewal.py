"""Tests for the renewal, expiry and dunning sweeps."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from opentelemetry.trace import StatusCode
from sqlalchemy import update

from randevu.platform.billing.models import BusinessSubscriptionTable, RenewalLeaseTable
from randevu.platform.billing.subscriptions.models import (
    CancellationRecord,
    PaymentOutcome,
    RenewalRecord,
    SubscribeRequest,
    SubscriptionStatus,
)
from randevu.platform.billing.subscriptions.renewal import RenewalOutcome
from randevu.platform.billing.subscriptions.repository import (
    LeaseStatus,
    RenewalLeaseRepository,
    SubscriptionRepository,
    to_subscription,
)
from randevu.platform.settings import settings
from tests.billing.fakes import ADMIN, BUSINESS, ENTERPRISE, OWNER, STARTER
from tests.conftest import START

pytestmark = pytest.mark.integration

PERIOD_END = START + timedelta(days=30)


async def subscribe(service, plan_id=STARTER, business_id=BUSINESS, **kwargs):
    kwargs.setdefault("payment_method_id", "pm_card_1")
    return await service.subscribe_business(
        ADMIN, SubscribeRequest(business_id=business_id, plan_id=plan_id, **kwargs)
    )


async def reload(session_factory, subscription_id):
    async with session_factory() as session:
        row = await SubscriptionRepository(session).get_subscription_row(subscription_id)
        return to_subscription(row)


async def events_for(session_factory, subscription_id):
    async with session_factory() as session:
        events = await SubscriptionRepository(session).list_events(subscription_id)
        return [event.event_type for event in events]


async def lease_for(session_factory, subscription_id, period_end):
    async with session_factory() as session:
        return await RenewalLeaseRepository(session).get(subscription_id, period_end)


async def set_fields(session_factory, subscription_id, **values):
    async with session_factory() as session:
        await session.execute(
            update(BusinessSubscriptionTable)
            .where(BusinessSubscriptionTable.subscription_id == subscription_id)
            .values(version=BusinessSubscriptionTable.version + 1, **values)
        )
        await session.commit()


class TestRenewal:
    async def test_successful_renewal(self, service, processor, payments, clock, session_factory, seeded_plans):
        created = await subscribe(service)
        clock.set(PERIOD_END)

        summary = await processor.process_subscription_renewals()

        assert summary.processed == 1
        assert summary.renewed == 1
        [call] = payments.renewal_calls
        assert call["amount"] == Decimal("750.00")
        assert call["payment_method_id"] == "pm_card_1"

        renewed = await reload(session_factory, created.subscription_id)
        assert renewed.status == SubscriptionStatus.ACTIVE
        assert renewed.current_period_start == PERIOD_END
        assert renewed.current_period_end == PERIOD_END + timedelta(days=30)
        assert renewed.next_billing_date == renewed.current_period_end
        assert isinstance(renewed.last_change, RenewalRecord)
        assert renewed.last_change.payment_outcome == PaymentOutcome.SUCCEEDED
        assert renewed.last_change.payment_id == "pay_renewal_1"

        lease = await lease_for(session_factory, created.subscription_id, PERIOD_END)
        assert lease.status == LeaseStatus.SUCCEEDED
        assert lease.payment_id == "pay_renewal_1"

    async def test_not_due_yet(self, service, processor, payments, clock, seeded_plans):
        await subscribe(service)
        clock.set(PERIOD_END - timedelta(seconds=1))

        summary = await processor.process_subscription_renewals()

        assert summary.processed == 0
        assert payments.renewal_calls == []

    async def test_second_sweep_does_not_charge_again(
        self, service, processor, payments, clock, seeded_plans
    ):
        await subscribe(service)
        clock.set(PERIOD_END)

        await processor.process_subscription_renewals()
        summary = await processor.process_subscription_renewals()

        assert summary.processed == 0
        assert len(payments.renewal_calls) == 1

    async def test_long_lapse_restarts_at_now(
        self, service, processor, clock, session_factory, seeded_plans
    ):
        created = await subscribe(service)
        clock.set(START + timedelta(days=75))

        await processor.process_subscription_renewals()

        renewed = await reload(session_factory, created.subscription_id)
        assert renewed.current_period_start == clock.now()
        assert renewed.current_period_end == clock.now() + timedelta(days=30)

    async def test_scheduled_downgrade_applied_at_renewal(
        self, service, processor, payments, clock, session_factory, seeded_plans
    ):
        created = await subscribe(service, ENTERPRISE)
        await service.downgrade_plan(ADMIN, BUSINESS, STARTER)
        clock.set(PERIOD_END)

        await processor.process_subscription_renewals()

        assert payments.renewal_calls[0]["amount"] == Decimal("750.00")
        renewed = await reload(session_factory, created.subscription_id)
        assert renewed.plan_id == STARTER
        assert renewed.pending_plan_id is None
        assert renewed.pending_change_effective_at is None
        assert renewed.last_change.applied_plan_id == STARTER

    async def test_pages_through_every_due_subscription(
        self, service, processor, payments, clock, monkeypatch, seeded_plans
    ):
        monkeypatch.setattr(settings.billing, "renewal_batch_size", 2)
        for index in range(5):
            await subscribe(service, business_id=f"biz_page_{index}")
        clock.set(PERIOD_END)

        summary = await processor.process_subscription_renewals()

        assert summary.processed == 5
        assert summary.renewed == 5
        assert len({call["subscription_id"] for call in payments.renewal_calls}) == 5


class TestRenewalFailures:
    async def test_declined_payment_marks_past_due(
        self, service, processor, payments, metrics, clock, session_factory, seeded_plans
    ):
        created = await subscribe(service)
        payments.declined_subscriptions.add(created.subscription_id)
        clock.set(PERIOD_END)

        summary = await processor.process_subscription_renewals()

        assert summary.failed == 1
        failed = await reload(session_factory, created.subscription_id)
        assert failed.status == SubscriptionStatus.PAST_DUE
        assert failed.failed_payment_count == 1
        assert failed.last_payment_error == "Card declined"
        assert failed.auto_renewal
        assert failed.current_period_end == PERIOD_END
        assert failed.last_change.payment_outcome == PaymentOutcome.FAILED

        lease = await lease_for(session_factory, created.subscription_id, PERIOD_END)
        assert lease.status == LeaseStatus.FAILED

        [span] = metrics.tracer.named("billing.renewal")
        assert span.attributes == {
            "subscription_id": created.subscription_id,
            "outcome": "payment_failed",
        }
        assert span.status.status_code == StatusCode.ERROR

    async def test_retries_until_auto_renewal_disabled(
        self, service, processor, payments, clock, session_factory, seeded_plans
    ):
        created = await subscribe(service)
        payments.declined_subscriptions.add(created.subscription_id)
        clock.set(PERIOD_END)

        for _ in range(settings.billing.max_failed_payments):
            await processor.process_subscription_renewals()
            clock.advance(days=1)

        exhausted = await reload(session_factory, created.subscription_id)
        assert exhausted.failed_payment_count == settings.billing.max_failed_payments
        assert not exhausted.auto_renewal
        assert len(payments.renewal_calls) == settings.billing.max_failed_payments

        summary = await processor.process_subscription_renewals()

        assert summary.past_due == 1
        assert len(payments.renewal_calls) == settings.billing.max_failed_payments

    async def test_recovery_resets_failure_count(
        self, service, processor, payments, clock, session_factory, seeded_plans
    ):
        created = await subscribe(service)
        payments.declined_subscriptions.add(created.subscription_id)
        clock.set(PERIOD_END)
        await processor.process_subscription_renewals()

        payments.declined_subscriptions.clear()
        clock.advance(days=1)
        summary = await processor.process_subscription_renewals()

        assert summary.renewed == 1
        recovered = await reload(session_factory, created.subscription_id)
        assert recovered.status == SubscriptionStatus.ACTIVE
        assert recovered.failed_payment_count == 0
        assert recovered.last_payment_error is None
        assert recovered.current_period_start == PERIOD_END

    async def test_payment_exception_counts_as_failure(
        self, service, processor, payments, clock, session_factory, seeded_plans
    ):
        created = await subscribe(service)
        payments.renewal_error = RuntimeError("gateway down")
        clock.set(PERIOD_END)

        summary = await processor.process_subscription_renewals()

        assert summary.failed == 1
        failed = await reload(session_factory, created.subscription_id)
        assert failed.status == SubscriptionStatus.PAST_DUE
        assert failed.last_payment_error == "gateway down"

    async def test_auto_renewal_off_goes_past_due_without_charge(
        self, service, processor, payments, clock, session_factory, seeded_plans
    ):
        created = await subscribe(service, auto_renewal=False)
        clock.set(PERIOD_END)

        summary = await processor.process_subscription_renewals()

        assert summary.past_due == 1
        assert payments.renewal_calls == []
        lapsed = await reload(session_factory, created.subscription_id)
        assert lapsed.status == SubscriptionStatus.PAST_DUE
        assert lapsed.last_payment_error == "Auto-renewal disabled"
        assert lapsed.last_change.payment_outcome == PaymentOutcome.SKIPPED

    async def test_missing_payment_method_goes_past_due(
        self, service, processor, payments, clock, session_factory, seeded_plans
    ):
        created = await subscribe(service, payment_method_id=None)
        clock.set(PERIOD_END)

        await processor.process_subscription_renewals()

        lapsed = await reload(session_factory, created.subscription_id)
        assert lapsed.status == SubscriptionStatus.PAST_DUE
        assert lapsed.last_payment_error == "No payment method available for renewal"
        assert payments.renewal_calls == []

    async def test_one_broken_subscription_does_not_stop_the_sweep(
        self, service, processor, payments, clock, session_factory, seeded_plans
    ):
        broken = await subscribe(service, business_id="biz_broken")
        healthy = await subscribe(service, business_id="biz_healthy")
        await set_fields(
            session_factory,
            broken.subscription_id,
            pending_plan_id="plan_removed",
            pending_change_effective_at=PERIOD_END,
        )
        clock.set(PERIOD_END)

        summary = await processor.process_subscription_renewals()

        assert summary.processed == 2
        assert summary.failed == 1
        assert summary.renewed == 1
        assert [call["subscription_id"] for call in payments.renewal_calls] == [
            healthy.subscription_id
        ]


class TestCancellationAtPeriodEnd:
    async def test_scheduled_cancellation_finalizes(
        self, service, processor, payments, clock, session_factory, seeded_plans
    ):
        created = await subscribe(service)
        await service.cancel_subscription(OWNER, BUSINESS)
        clock.set(PERIOD_END)

        summary = await processor.process_subscription_renewals()

        assert summary.canceled == 1
        assert payments.renewal_calls == []
        canceled = await reload(session_factory, created.subscription_id)
        assert canceled.status == SubscriptionStatus.CANCELED
        assert canceled.previous_status == SubscriptionStatus.ACTIVE
        assert canceled.canceled_at == PERIOD_END
        assert canceled.cancel_at_period_end
        assert isinstance(canceled.last_change, CancellationRecord)
        assert canceled.last_change.finalized

    async def test_business_can_subscribe_again(self, service, processor, clock, seeded_plans):
        await subscribe(service)
        await service.cancel_subscription(OWNER, BUSINESS)
        clock.set(PERIOD_END)
        await processor.process_subscription_renewals()

        again = await subscribe(service, ENTERPRISE)

        assert again.status == SubscriptionStatus.ACTIVE


class TestRenewalLeases:
    async def add_lease(self, session_factory, subscription_id, status, acquired_at, payment_id=None):
        async with session_factory() as session:
            session.add(
                RenewalLeaseTable(
                    lease_id=f"lease_{status}",
                    subscription_id=subscription_id,
                    period_end=PERIOD_END,
                    status=status,
                    attempts=1,
                    payment_id=payment_id,
                    acquired_at=acquired_at,
                    created_at=acquired_at,
                    updated_at=acquired_at,
                )
            )
            await session.commit()

    async def test_busy_lease_blocks_charge(
        self, service, processor, payments, clock, session_factory, seeded_plans
    ):
        created = await subscribe(service)
        clock.set(PERIOD_END)
        await self.add_lease(session_factory, created.subscription_id, LeaseStatus.PENDING, clock.now())

        outcome = await processor.expire_and_advance(created.subscription_id)

        assert outcome == RenewalOutcome.SKIPPED
        assert payments.renewal_calls == []
        assert (await reload(session_factory, created.subscription_id)).current_period_end == PERIOD_END

    async def test_stale_lease_is_reclaimed(
        self, service, processor, payments, clock, session_factory, seeded_plans
    ):
        created = await subscribe(service)
        clock.set(PERIOD_END + timedelta(hours=1))
        await self.add_lease(
            session_factory, created.subscription_id, LeaseStatus.PENDING, PERIOD_END
        )

        outcome = await processor.expire_and_advance(created.subscription_id)

        assert outcome == RenewalOutcome.RENEWED
        assert len(payments.renewal_calls) == 1
        lease = await lease_for(session_factory, created.subscription_id, PERIOD_END)
        assert lease.attempts == 2
        assert lease.status == LeaseStatus.SUCCEEDED

    async def test_succeeded_lease_advances_without_charge(
        self, service, processor, payments, clock, session_factory, seeded_plans
    ):
        created = await subscribe(service)
        clock.set(PERIOD_END)
        await self.add_lease(
            session_factory,
            created.subscription_id,
            LeaseStatus.SUCCEEDED,
            clock.now(),
            payment_id="pay_earlier",
        )

        outcome = await processor.expire_and_advance(created.subscription_id)

        assert outcome == RenewalOutcome.RENEWED
        assert payments.renewal_calls == []
        renewed = await reload(session_factory, created.subscription_id)
        assert renewed.current_period_end == PERIOD_END + timedelta(days=30)
        assert renewed.last_change.payment_id == "pay_earlier"

    async def test_state_change_during_charge_is_not_overwritten(
        self, service, processor, payments, clock, session_factory, seeded_plans
    ):
        created = await subscribe(service)
        clock.set(PERIOD_END)

        async def cancel_elsewhere():
            await set_fields(
                session_factory,
                created.subscription_id,
                status=SubscriptionStatus.CANCELED.value,
                canceled_at=PERIOD_END,
            )

        payments.renewal_hook = cancel_elsewhere

        summary = await processor.process_subscription_renewals()

        assert summary.skipped == 1
        assert (await reload(session_factory, created.subscription_id)).status == (
            SubscriptionStatus.CANCELED
        )
        lease = await lease_for(session_factory, created.subscription_id, PERIOD_END)
        assert lease.status == LeaseStatus.SUCCEEDED

    async def test_lost_version_race_after_charge_is_skipped_then_advanced(
        self, service, processor, payments, clock, session_factory, seeded_plans, monkeypatch
    ):
        created = await subscribe(service)
        clock.set(PERIOD_END)
        renew = SubscriptionRepository.renew_subscription

        async def renew_after_concurrent_write(self, row, **kwargs):
            await set_fields(session_factory, created.subscription_id)
            return await renew(self, row, **kwargs)

        monkeypatch.setattr(
            SubscriptionRepository, "renew_subscription", renew_after_concurrent_write
        )

        outcome = await processor.expire_and_advance(created.subscription_id)

        assert outcome == RenewalOutcome.SKIPPED
        assert len(payments.renewal_calls) == 1
        assert (await reload(session_factory, created.subscription_id)).current_period_end == PERIOD_END
        lease = await lease_for(session_factory, created.subscription_id, PERIOD_END)
        assert lease.status == LeaseStatus.SUCCEEDED

        monkeypatch.setattr(SubscriptionRepository, "renew_subscription", renew)
        outcome = await processor.expire_and_advance(created.subscription_id)

        assert outcome == RenewalOutcome.RENEWED
        assert len(payments.renewal_calls) == 1
        renewed = await reload(session_factory, created.subscription_id)
        assert renewed.current_period_end == PERIOD_END + timedelta(days=30)

    async def test_cancelled_charge_leaves_lease_pending(
        self, service, processor, payments, clock, session_factory, seeded_plans
    ):
        created = await subscribe(service)
        clock.set(PERIOD_END)

        async def interrupted():
            raise asyncio.CancelledError()

        payments.renewal_hook = interrupted

        with pytest.raises(asyncio.CancelledError):
            await processor.expire_and_advance(created.subscription_id)

        lease = await lease_for(session_factory, created.subscription_id, PERIOD_END)
        assert lease.status == LeaseStatus.PENDING
        assert (await reload(session_factory, created.subscription_id)).current_period_end == PERIOD_END


class TestExpirySweep:
    async def test_expiry_never_charges(
        self, service, processor, payments, clock, session_factory, seeded_plans
    ):
        manual = await subscribe(service, business_id="biz_manual", auto_renewal=False)
        leaving = await subscribe(service, business_id="biz_leaving")
        await service.cancel_subscription(ADMIN, "biz_leaving")
        clock.set(PERIOD_END)

        summary = await processor.process_expired_subscriptions()

        assert summary.processed == 2
        assert summary.past_due == 1
        assert summary.canceled == 1
        assert payments.renewal_calls == []
        lapsed = await reload(session_factory, manual.subscription_id)
        assert lapsed.status == SubscriptionStatus.PAST_DUE
        assert lapsed.last_payment_error == "Auto-renewal disabled"
        assert (await reload(session_factory, leaving.subscription_id)).status == (
            SubscriptionStatus.CANCELED
        )

    async def test_expiry_leaves_renewable_subscriptions_to_renewal_sweep(
        self, service, processor, payments, clock, session_factory, seeded_plans
    ):
        created = await subscribe(service)
        clock.set(PERIOD_END)

        expiry = await processor.process_expired_subscriptions()

        assert expiry.processed == 1
        assert expiry.skipped == 1
        assert expiry.past_due == 0
        untouched = await reload(session_factory, created.subscription_id)
        assert untouched.status == SubscriptionStatus.ACTIVE
        assert untouched.last_payment_error is None
        assert await events_for(session_factory, created.subscription_id) == ["subscription.created"]

        renewals = await processor.process_subscription_renewals()

        assert renewals.renewed == 1
        assert len(payments.renewal_calls) == 1
        renewed = await reload(session_factory, created.subscription_id)
        assert renewed.status == SubscriptionStatus.ACTIVE
        assert renewed.current_period_end == PERIOD_END + timedelta(days=30)


class TestDunning:
    async def test_cancels_long_delinquent_subscriptions(
        self, service, processor, clock, session_factory, seeded_plans
    ):
        delinquent = await subscribe(service, business_id="biz_delinquent")
        recent = await subscribe(service, business_id="biz_recent")
        await set_fields(
            session_factory,
            delinquent.subscription_id,
            status=SubscriptionStatus.PAST_DUE.value,
            failed_payment_count=settings.billing.max_failed_payments,
            auto_renewal=False,
        )
        await set_fields(
            session_factory,
            recent.subscription_id,
            status=SubscriptionStatus.PAST_DUE.value,
            failed_payment_count=1,
        )
        clock.set(PERIOD_END + timedelta(days=settings.billing.dunning_cancel_after_days + 1))

        summary = await service.cancel_delinquent_subscriptions()

        assert summary.processed == 1
        assert summary.canceled == 1
        canceled = await reload(session_factory, delinquent.subscription_id)
        assert canceled.status == SubscriptionStatus.CANCELED
        assert canceled.last_change.reason == "unpaid"
        assert (await reload(session_factory, recent.subscription_id)).status == (
            SubscriptionStatus.PAST_DUE
        )

    async def test_nothing_to_cancel(self, processor, seeded_plans):
        summary = await processor.cancel_delinquent_subscriptions()

        assert summary.processed == 0
