"""
Scheduled renewal, expiry and dunning sweeps.

Each subscription is handled in its own short transactions; nothing is
locked across the batch or across a payment call. A renewal charge is
guarded by a lease keyed by (subscription_id, period_end):

1. decide what to do with the row (read, and write only for cancel/past-due)
2. acquire the lease in its own transaction
3. charge with no transaction open
4. record the lease outcome in its own transaction
5. apply the new subscription state

If step 5 loses a race, the succeeded lease lets the next pass advance the
period without charging again.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from randevu.platform.billing.cache import BillingCache, get_billing_cache
from randevu.platform.billing.exceptions import ConcurrentModificationError
from randevu.platform.billing.metrics import BillingMetrics, get_billing_metrics
from randevu.platform.billing.models import BusinessSubscriptionTable
from randevu.platform.billing.payments.coordinator import PaymentCoordinator, PaymentResult
from randevu.platform.billing.subscriptions.catalog import PlanCatalog
from randevu.platform.billing.subscriptions.models import (
    CancellationRecord,
    DunningSummary,
    ExpirySummary,
    PaymentOutcome,
    RenewalRecord,
    RenewalSummary,
    SubscriptionEventType,
    SubscriptionPlan,
    SubscriptionStatus,
)
from randevu.platform.billing.subscriptions.repository import (
    LeaseStatus,
    RenewalLeaseRepository,
    SubscriptionRepository,
)
from randevu.platform.billing.subscriptions.state_machine import (
    Operation,
    can_transition,
    renewal_period,
)
from randevu.platform.clock import Clock, system_clock
from randevu.platform.logging import log_audit_event
from randevu.platform.settings import settings

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR = "system:renewal"


class RenewalOutcome(str, Enum):
    RENEWED = "renewed"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    PAYMENT_FAILED = "payment_failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class _RenewalPlan:
    subscription_id: str
    business_id: str
    period_end: datetime
    plan: SubscriptionPlan
    payment_method_id: str
    failed_payment_count: int


class RenewalProcessor:
    """Advances subscriptions whose current period has ended."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payments: PaymentCoordinator,
        clock: Clock = system_clock,
        cache: BillingCache | None = None,
        metrics: BillingMetrics | None = None,
    ):
        self.session_factory = session_factory
        self.payments = payments
        self.clock = clock
        self.cache = cache or get_billing_cache()
        self.metrics = metrics or get_billing_metrics()

    def _repository(self, session: AsyncSession) -> SubscriptionRepository:
        return SubscriptionRepository(
            session, PlanCatalog(session, cache=self.cache, clock=self.clock), self.clock
        )

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def process_subscription_renewals(self) -> RenewalSummary:
        """Renew, cancel or mark past due every subscription due now."""
        summary = RenewalSummary()
        started = time.monotonic()

        async for subscription_id in self._due_subscription_ids():
            summary.processed += 1
            with self.metrics.span("billing.renewal", subscription_id=subscription_id) as span:
                try:
                    outcome = await self.expire_and_advance(subscription_id)
                except Exception as exc:
                    summary.failed += 1
                    logger.exception("renewal.item_failed", subscription_id=subscription_id)
                    self.metrics.record_renewal("error")
                    self.metrics.mark_failed(span, str(exc))
                    continue
                span.set_attribute("outcome", outcome.value)
                if outcome == RenewalOutcome.PAYMENT_FAILED:
                    self.metrics.mark_failed(span, "payment failed")

            self.metrics.record_renewal(outcome.value)
            if outcome == RenewalOutcome.RENEWED:
                summary.renewed += 1
            elif outcome == RenewalOutcome.CANCELED:
                summary.canceled += 1
            elif outcome == RenewalOutcome.PAST_DUE:
                summary.past_due += 1
            elif outcome == RenewalOutcome.PAYMENT_FAILED:
                summary.failed += 1
            else:
                summary.skipped += 1

        self.metrics.record_renewal_batch(time.monotonic() - started, summary.processed)
        logger.info("renewal.sweep_completed", **summary.model_dump())
        return summary

    async def process_expired_subscriptions(self) -> ExpirySummary:
        """Expiry-only sweep: never charges.

        Subscriptions that can still renew are left for the renewal sweep.
        """
        summary = ExpirySummary()

        async for subscription_id in self._due_subscription_ids():
            summary.processed += 1
            try:
                outcome = await self.expire_and_advance(subscription_id, charge=False)
            except Exception:
                summary.failed += 1
                logger.exception("expiry.item_failed", subscription_id=subscription_id)
                continue

            if outcome == RenewalOutcome.CANCELED:
                summary.canceled += 1
            elif outcome == RenewalOutcome.PAST_DUE:
                summary.past_due += 1
            else:
                summary.skipped += 1

        logger.info("expiry.sweep_completed", **summary.model_dump())
        return summary

    async def cancel_delinquent_subscriptions(self) -> DunningSummary:
        """Cancel past-due subscriptions that kept failing long after their period ended."""
        summary = DunningSummary()
        now = self.clock.now()
        cutoff = now - timedelta(days=settings.billing.dunning_cancel_after_days)

        async with self.session_factory() as session:
            rows = await self._repository(session).find_delinquent_subscriptions(
                cutoff, settings.billing.max_failed_payments
            )
            candidates = [row.subscription_id for row in rows]

        for subscription_id in candidates:
            summary.processed += 1
            try:
                async with self.session_factory() as session:
                    repo = self._repository(session)
                    row = await repo.get_subscription_row(subscription_id, for_update=True)
                    if row.status != SubscriptionStatus.PAST_DUE.value:
                        continue
                    await repo.update_subscription_status(
                        row,
                        SubscriptionStatus.CANCELED,
                        record=CancellationRecord(
                            recorded_at=now,
                            actor=SYSTEM_ACTOR,
                            at_period_end=False,
                            finalized=True,
                            reason="unpaid",
                        ),
                        event_type=SubscriptionEventType.CANCELED,
                        canceled_at=now,
                        auto_renewal=False,
                    )
                    await session.commit()
                summary.canceled += 1
                logger.info("dunning.subscription_canceled", subscription_id=subscription_id)
            except Exception:
                summary.failed += 1
                logger.exception("dunning.item_failed", subscription_id=subscription_id)

        logger.info("dunning.sweep_completed", **summary.model_dump())
        return summary

    async def _due_subscription_ids(self):
        """Yield due subscription ids page by page, each page read in its own session."""
        now = self.clock.now()
        after: tuple[datetime, str] | None = None
        while True:
            async with self.session_factory() as session:
                page = await self._repository(session).find_subscriptions_for_renewal(
                    now, settings.billing.renewal_batch_size, after
                )
            if not page:
                return
            for subscription_id, _ in page:
                yield subscription_id
            last_id, last_end = page[-1]
            after = (last_end, last_id)

    # ------------------------------------------------------------------
    # Single subscription
    # ------------------------------------------------------------------

    async def expire_and_advance(self, subscription_id: str, charge: bool = True) -> RenewalOutcome:
        """Apply the period-end transition to one subscription.

        Cancel-at-period-end finalizes to CANCELED. Otherwise a subscription
        with auto-renewal and a payment method is charged once for the next
        period; anything else becomes PAST_DUE. With ``charge=False`` a
        renewable subscription is skipped.
        """
        now = self.clock.now()

        async with self.session_factory() as session:
            repo = self._repository(session)
            row = await repo.get_subscription_row(subscription_id, for_update=True)

            if not can_transition(row.status, Operation.EXPIRE) or row.current_period_end > now:
                return RenewalOutcome.SKIPPED

            if row.cancel_at_period_end:
                await self._finalize_cancellation(repo, row, now)
                await session.commit()
                return RenewalOutcome.CANCELED

            renewable = bool(row.auto_renewal and row.payment_method_id)
            if not renewable:
                if row.status != SubscriptionStatus.PAST_DUE.value:
                    await self._mark_past_due(repo, row, now, reason=_past_due_reason(row))
                    await session.commit()
                return RenewalOutcome.PAST_DUE
            if not charge:
                # Left for the renewal sweep
                return RenewalOutcome.SKIPPED

            target = _RenewalPlan(
                subscription_id=row.subscription_id,
                business_id=row.business_id,
                period_end=row.current_period_end,
                plan=await self._renewal_plan(repo, row, now),
                payment_method_id=row.payment_method_id,
                failed_payment_count=row.failed_payment_count,
            )

        return await self._charge_and_advance(target)

    async def _charge_and_advance(self, target: _RenewalPlan) -> RenewalOutcome:
        stale_after = timedelta(seconds=settings.billing.renewal_lease_ttl_seconds)
        log = logger.bind(subscription_id=target.subscription_id, period_end=target.period_end)

        async with self.session_factory() as session:
            leases = RenewalLeaseRepository(session, self.clock)
            acquired, lease = await leases.try_acquire(
                target.subscription_id, target.period_end, stale_after
            )
            existing_status = lease.status if lease is not None else None
            existing_payment_id = lease.payment_id if lease is not None else None
            await session.commit()

        if not acquired:
            if existing_status == LeaseStatus.SUCCEEDED:
                log.info("renewal.already_charged", payment_id=existing_payment_id)
                result = PaymentResult(success=True, payment_id=existing_payment_id)
                return await self._apply_payment_result(target, result)
            log.info("renewal.lease_busy", lease_status=existing_status)
            return RenewalOutcome.SKIPPED

        try:
            result = await self.payments.create_renewal_payment(
                business_id=target.business_id,
                subscription_id=target.subscription_id,
                amount=target.plan.price,
                currency=target.plan.currency,
                payment_method_id=target.payment_method_id,
                metadata={
                    "plan_id": target.plan.plan_id,
                    "period_end": target.period_end.isoformat(),
                },
            )
        except asyncio.CancelledError:
            # Lease stays pending and becomes reclaimable after its TTL
            log.warning("renewal.charge_cancelled")
            raise
        except Exception as exc:
            log.error("renewal.charge_error", error=str(exc))
            result = PaymentResult(success=False, error=str(exc))

        async with self.session_factory() as session:
            await RenewalLeaseRepository(session, self.clock).complete(
                target.subscription_id,
                target.period_end,
                succeeded=result.success,
                payment_id=result.payment_id,
                error=result.error,
            )
            await session.commit()

        return await self._apply_payment_result(target, result)

    async def _apply_payment_result(
        self, target: _RenewalPlan, result: PaymentResult
    ) -> RenewalOutcome:
        try:
            return await self._write_payment_result(target, result)
        except ConcurrentModificationError:
            # The lease already records the charge; the next pass advances
            logger.warning(
                "renewal.state_changed_during_charge",
                subscription_id=target.subscription_id,
                business_id=target.business_id,
                payment_id=result.payment_id,
                payment_succeeded=result.success,
            )
            return RenewalOutcome.SKIPPED

    async def _write_payment_result(
        self, target: _RenewalPlan, result: PaymentResult
    ) -> RenewalOutcome:
        now = self.clock.now()
        async with self.session_factory() as session:
            repo = self._repository(session)
            row = await repo.get_subscription_row(target.subscription_id, for_update=True)

            if row.current_period_end != target.period_end or not can_transition(
                row.status, Operation.EXPIRE
            ):
                logger.warning(
                    "renewal.state_changed_during_charge",
                    subscription_id=target.subscription_id,
                    payment_id=result.payment_id,
                    payment_succeeded=result.success,
                )
                return RenewalOutcome.SKIPPED

            record = RenewalRecord(
                recorded_at=now,
                actor=SYSTEM_ACTOR,
                period_start=target.period_end,
                period_end=target.period_end,
                amount=target.plan.price,
                currency=target.plan.currency,
                payment_outcome=PaymentOutcome.SUCCEEDED if result.success else PaymentOutcome.FAILED,
                payment_id=result.payment_id,
                applied_plan_id=target.plan.plan_id if target.plan.plan_id != row.plan_id else None,
            )

            if result.success:
                period = renewal_period(target.period_end, target.plan, now)
                record = record.model_copy(
                    update={"period_start": period.start, "period_end": period.end}
                )
                await repo.renew_subscription(
                    row, plan_id=target.plan.plan_id, period=period, record=record
                )
                await session.commit()
                logger.info(
                    "renewal.succeeded",
                    subscription_id=row.subscription_id,
                    business_id=row.business_id,
                    plan_id=target.plan.plan_id,
                    amount=str(target.plan.price),
                    payment_id=result.payment_id,
                    period_end=period.end,
                )
                log_audit_event(
                    "subscription.renewed",
                    "billing",
                    business_id=row.business_id,
                    resource_type="subscription",
                    resource_id=row.subscription_id,
                    payment_id=result.payment_id,
                )
                return RenewalOutcome.RENEWED

            failures = row.failed_payment_count + 1
            keep_auto_renewal = failures < settings.billing.max_failed_payments
            await repo.update_subscription_status(
                row,
                SubscriptionStatus.PAST_DUE,
                record=record,
                event_type=SubscriptionEventType.RENEWAL_FAILED,
                failed_payment_count=failures,
                last_payment_error=result.error or "Payment failed",
                auto_renewal=row.auto_renewal and keep_auto_renewal,
            )
            await session.commit()
            logger.warning(
                "renewal.payment_failed",
                subscription_id=row.subscription_id,
                business_id=row.business_id,
                error=result.error,
                failed_payment_count=failures,
                auto_renewal_disabled=not keep_auto_renewal,
            )
            return RenewalOutcome.PAYMENT_FAILED

    async def _renewal_plan(
        self, repo: SubscriptionRepository, row: BusinessSubscriptionTable, now: datetime
    ) -> SubscriptionPlan:
        """Plan billed for the next period: a due scheduled change wins."""
        if row.pending_plan_id and (
            row.pending_change_effective_at is None or row.pending_change_effective_at <= now
        ):
            return await repo.catalog.get_plan(row.pending_plan_id)
        return await repo.catalog.get_plan(row.plan_id)

    async def _finalize_cancellation(
        self, repo: SubscriptionRepository, row: BusinessSubscriptionTable, now: datetime
    ) -> None:
        await repo.update_subscription_status(
            row,
            SubscriptionStatus.CANCELED,
            record=CancellationRecord(
                recorded_at=now, actor=SYSTEM_ACTOR, at_period_end=True, finalized=True
            ),
            event_type=SubscriptionEventType.CANCELED,
            canceled_at=now,
            pending_plan_id=None,
            pending_change_effective_at=None,
        )
        logger.info(
            "subscription.cancellation_finalized",
            subscription_id=row.subscription_id,
            business_id=row.business_id,
        )

    async def _mark_past_due(
        self,
        repo: SubscriptionRepository,
        row: BusinessSubscriptionTable,
        now: datetime,
        reason: str,
    ) -> None:
        plan = await repo.catalog.get_plan(row.plan_id)
        await repo.update_subscription_status(
            row,
            SubscriptionStatus.PAST_DUE,
            record=RenewalRecord(
                recorded_at=now,
                actor=SYSTEM_ACTOR,
                period_start=row.current_period_start,
                period_end=row.current_period_end,
                amount=Decimal("0"),
                currency=plan.currency,
                payment_outcome=PaymentOutcome.SKIPPED,
            ),
            event_type=SubscriptionEventType.PAST_DUE,
            last_payment_error=reason,
        )
        logger.info(
            "subscription.past_due",
            subscription_id=row.subscription_id,
            business_id=row.business_id,
            reason=reason,
        )


def _past_due_reason(row: BusinessSubscriptionTable) -> str:
    if not row.auto_renewal:
        return "Auto-renewal disabled"
    return "No payment method available for renewal"


__all__ = ["RenewalOutcome", "RenewalProcessor", "SYSTEM_ACTOR"]
