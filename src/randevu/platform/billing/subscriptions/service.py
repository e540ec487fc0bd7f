"""
Subscription lifecycle service.

Request-path operations for business subscriptions: subscribe, plan changes
with proration, cancellation, reactivation, trial conversion, auto-renewal
settings, limit checks and admin reporting. Scheduled sweeps are delegated
to ``RenewalProcessor``.

Every mutating operation authorizes first, validates second, and only then
writes. A proration charge is confirmed by the payment coordinator before the
plan change is flushed.
"""

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from randevu.platform.auth.authorization import AuthorizationPort, SubscriptionAccessGuard
from randevu.platform.billing.cache import BillingCache, get_billing_cache
from randevu.platform.billing.exceptions import (
    BillingValidationError,
    ConcurrentModificationError,
    InvalidTransitionError,
    LimitExceededError,
    PaymentFailedError,
    PaymentRequiredError,
    SubscriptionNotFoundError,
)
from randevu.platform.billing.metrics import BillingMetrics, get_billing_metrics
from randevu.platform.billing.models import BusinessSubscriptionTable
from randevu.platform.billing.money_utils import format_amount, quantize_amount
from randevu.platform.billing.payments.coordinator import PaymentCoordinator
from randevu.platform.billing.subscriptions.catalog import PlanCatalog
from randevu.platform.billing.subscriptions.limits import LimitValidator, SqlUsageReader, UsageReader
from randevu.platform.billing.subscriptions.models import (
    AutoRenewalStatus,
    BillingInterval,
    CancellationRecord,
    ChangeType,
    DowngradeRecord,
    DunningSummary,
    EffectiveDate,
    ExpirySummary,
    LimitCheckResult,
    PaymentMethodSummary,
    PaymentOutcome,
    PaymentSummary,
    PlanChangeResult,
    PlanCreateRequest,
    PlanUpdateRequest,
    ProrationBehavior,
    ProrationResult,
    ReactivationRecord,
    RenewalSummary,
    StatusChangeRecord,
    SubscribeRequest,
    Subscription,
    SubscriptionChangePreview,
    SubscriptionCreatedRecord,
    SubscriptionEventType,
    SubscriptionLimits,
    SubscriptionPlan,
    SubscriptionPlanChangeRequest,
    SubscriptionStats,
    SubscriptionStatus,
    TrialConversionRecord,
    UpgradeRecord,
)
from randevu.platform.billing.subscriptions.proration import calculate_proration
from randevu.platform.billing.subscriptions.renewal import RenewalProcessor
from randevu.platform.billing.subscriptions.repository import (
    ALREADY_SUBSCRIBED,
    SubscriptionRepository,
    to_subscription,
)
from randevu.platform.billing.subscriptions.state_machine import (
    Operation,
    Period,
    ensure_transition,
    initial_state,
    period_after_switch,
    plan_period,
)
from randevu.platform.clock import Clock, system_clock
from randevu.platform.db import get_session_maker
from randevu.platform.logging import log_audit_event
from randevu.platform.settings import settings

logger = structlog.get_logger(__name__)

NO_ACTIVE_SUBSCRIPTION = "No active subscription found"
NOT_OWNED = "Subscription does not belong to this business"


def classify_change(current: SubscriptionPlan, new: SubscriptionPlan) -> ChangeType:
    """Direction of a plan change, decided by price."""
    if new.price > current.price:
        return ChangeType.UPGRADE
    if new.price < current.price:
        return ChangeType.DOWNGRADE
    return ChangeType.SAME


def describe_change(current: SubscriptionPlan, new: SubscriptionPlan) -> str:
    verb = {
        ChangeType.UPGRADE: "Upgrading",
        ChangeType.DOWNGRADE: "Downgrading",
        ChangeType.SAME: "Changing",
    }[classify_change(current, new)]
    return f"{verb} from {current.display_name} to {new.display_name}"


class SubscriptionService:
    """Business subscription lifecycle on top of a single ``AsyncSession``."""

    def __init__(
        self,
        db_session: AsyncSession,
        payments: PaymentCoordinator,
        authorization: AuthorizationPort,
        usage_reader: UsageReader | None = None,
        clock: Clock = system_clock,
        cache: BillingCache | None = None,
        metrics: BillingMetrics | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.db = db_session
        self.clock = clock
        self.cache = cache or get_billing_cache()
        self.catalog = PlanCatalog(db_session, cache=self.cache, clock=clock)
        self.usage_reader = usage_reader or SqlUsageReader(db_session, clock=clock)
        self.repository = SubscriptionRepository(
            db_session, self.catalog, clock, usage_reader=self.usage_reader
        )
        self.limits = LimitValidator(self.usage_reader)
        self.guard = SubscriptionAccessGuard(authorization)
        self.payments = payments
        self.metrics = metrics or get_billing_metrics()
        self.session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[None]:
        try:
            yield
            await self.db.commit()
        except (Exception, asyncio.CancelledError):
            await self.db.rollback()
            raise

    async def _live_row(
        self, business_id: str, for_update: bool = False
    ) -> BusinessSubscriptionTable:
        row = await self.repository.find_active_subscription_by_business_id(
            business_id, for_update=for_update
        )
        if row is None:
            raise SubscriptionNotFoundError(NO_ACTIVE_SUBSCRIPTION, business_id=business_id)
        return row

    async def _owned_row(
        self, business_id: str, subscription_id: str, for_update: bool = False
    ) -> BusinessSubscriptionTable:
        row = await self.repository.get_subscription_row(subscription_id, for_update=for_update)
        if row.business_id != business_id:
            raise BillingValidationError(
                NOT_OWNED,
                context={"business_id": business_id, "subscription_id": subscription_id},
            )
        return row

    # ------------------------------------------------------------------
    # Subscribe and read
    # ------------------------------------------------------------------

    async def subscribe_business(self, user_id: str, request: SubscribeRequest) -> Subscription:
        """Start a subscription; trial-eligible plans begin with a trial."""
        await self.guard.require_manage(user_id, request.business_id)

        async with self._transaction():
            existing = await self.repository.find_active_subscription_by_business_id(
                request.business_id
            )
            if existing is not None:
                raise InvalidTransitionError(
                    ALREADY_SUBSCRIBED,
                    current_state=existing.status,
                    operation="subscribe",
                    context={"business_id": request.business_id},
                )
            plan = await self.catalog.get_active_plan(request.plan_id)

            now = self.clock.now()
            status, period = initial_state(plan, now)
            row = await self.repository.create_subscription(
                business_id=request.business_id,
                plan=plan,
                status=status,
                period=period,
                auto_renewal=request.auto_renewal,
                payment_method_id=request.payment_method_id,
                record=SubscriptionCreatedRecord(
                    recorded_at=now,
                    actor=user_id,
                    plan_id=plan.plan_id,
                    is_trial=status == SubscriptionStatus.TRIAL,
                ),
                user_id=user_id,
            )
            subscription = to_subscription(row)

        self.metrics.record_subscription_created(plan.plan_id, subscription.status.value)
        logger.info(
            "subscription.created",
            subscription_id=subscription.subscription_id,
            business_id=subscription.business_id,
            plan_id=plan.plan_id,
            status=subscription.status.value,
            period_end=subscription.current_period_end,
        )
        log_audit_event(
            "subscription.created",
            "billing",
            user_id=user_id,
            business_id=subscription.business_id,
            resource_type="subscription",
            resource_id=subscription.subscription_id,
            plan_id=plan.plan_id,
        )
        return subscription

    async def get_business_subscription(
        self, user_id: str, business_id: str
    ) -> Subscription | None:
        await self.guard.require_view(user_id, business_id)
        row = await self.repository.find_active_subscription_by_business_id(business_id)
        return to_subscription(row) if row is not None else None

    async def get_subscription_history(self, user_id: str, business_id: str) -> list[Subscription]:
        """All subscriptions of a business, newest first."""
        await self.guard.require_view(user_id, business_id)
        rows = await self.repository.list_subscriptions_by_business_id(business_id)
        return [to_subscription(row) for row in rows]

    # ------------------------------------------------------------------
    # Plan changes
    # ------------------------------------------------------------------

    async def upgrade_plan(
        self,
        user_id: str,
        business_id: str,
        new_plan_id: str,
        payment_method_id: str | None = None,
    ) -> PlanChangeResult:
        """Immediate switch to a more expensive plan, charging the proration."""
        await self.guard.require_manage(user_id, business_id)

        async with self._transaction():
            row = await self._live_row(business_id, for_update=True)
            ensure_transition(row.status, Operation.CHANGE_PLAN)
            current = await self.catalog.get_plan(row.plan_id)
            new = await self.catalog.get_active_plan(new_plan_id)
            if new.price <= current.price:
                raise InvalidTransitionError(
                    "New plan must be an upgrade (higher price)",
                    current_state=row.status,
                    operation="upgrade",
                )
            result = await self._apply_plan_change(
                user_id,
                row,
                current,
                new,
                EffectiveDate.IMMEDIATE,
                ProrationBehavior.CREATE_PRORATIONS,
                payment_method_id,
            )

        self._plan_changed(user_id, current, new, result)
        return result

    async def downgrade_plan(
        self, user_id: str, business_id: str, new_plan_id: str
    ) -> PlanChangeResult:
        """Schedule a cheaper plan for the end of the current period."""
        await self.guard.require_manage(user_id, business_id)

        async with self._transaction():
            row = await self._live_row(business_id, for_update=True)
            ensure_transition(row.status, Operation.CHANGE_PLAN)
            current = await self.catalog.get_plan(row.plan_id)
            new = await self.catalog.get_active_plan(new_plan_id)
            if new.price >= current.price:
                raise InvalidTransitionError(
                    "New plan must be a downgrade (lower price)",
                    current_state=row.status,
                    operation="downgrade",
                )
            result = await self._apply_plan_change(
                user_id,
                row,
                current,
                new,
                EffectiveDate.NEXT_BILLING_CYCLE,
                ProrationBehavior.NONE,
                None,
            )

        self._plan_changed(user_id, current, new, result)
        return result

    async def change_plan(
        self,
        user_id: str,
        business_id: str,
        subscription_id: str,
        request: SubscriptionPlanChangeRequest,
    ) -> PlanChangeResult:
        """General plan change.

        Upgrades honour ``request.effective_date``. Downgrades and lateral
        moves always wait for the next billing cycle and must fit the new
        plan's quotas.
        """
        await self.guard.require_manage(user_id, business_id)

        async with self._transaction():
            row = await self._owned_row(business_id, subscription_id, for_update=True)
            ensure_transition(row.status, Operation.CHANGE_PLAN)
            current = await self.catalog.get_plan(row.plan_id)
            new = await self.catalog.get_active_plan(request.new_plan_id)
            result = await self._apply_plan_change(
                user_id,
                row,
                current,
                new,
                request.effective_date,
                request.proration_behavior,
                request.payment_method_id,
            )

        self._plan_changed(user_id, current, new, result)
        return result

    async def _apply_plan_change(
        self,
        user_id: str,
        row: BusinessSubscriptionTable,
        current: SubscriptionPlan,
        new: SubscriptionPlan,
        effective_date: EffectiveDate,
        behavior: ProrationBehavior,
        payment_method_id: str | None,
    ) -> PlanChangeResult:
        if new.plan_id == current.plan_id:
            raise InvalidTransitionError(
                "Subscription is already on the requested plan",
                current_state=row.status,
                operation=Operation.CHANGE_PLAN.value,
            )
        if new.currency != current.currency:
            raise BillingValidationError(
                "Plan changes across currencies are not supported",
                context={"current_currency": current.currency, "new_currency": new.currency},
            )

        change_type = classify_change(current, new)
        now = self.clock.now()

        if change_type != ChangeType.UPGRADE:
            effective_date = EffectiveDate.NEXT_BILLING_CYCLE
            check = await self.limits.check_limits(row.business_id, new)
            if not check.is_valid:
                raise LimitExceededError(
                    "Current usage exceeds the limits of the new plan",
                    violations=check.violations,
                    plan_id=new.plan_id,
                )

        if effective_date == EffectiveDate.NEXT_BILLING_CYCLE:
            effective_at = row.current_period_end
            if change_type == ChangeType.UPGRADE:
                record = UpgradeRecord(
                    recorded_at=now,
                    actor=user_id,
                    previous_plan_id=current.plan_id,
                    new_plan_id=new.plan_id,
                    effective_date=effective_date,
                    currency=new.currency,
                )
                event_type = SubscriptionEventType.PLAN_CHANGE_SCHEDULED
            else:
                record = DowngradeRecord(
                    recorded_at=now,
                    actor=user_id,
                    previous_plan_id=current.plan_id,
                    new_plan_id=new.plan_id,
                    effective_at=effective_at,
                )
                event_type = (
                    SubscriptionEventType.DOWNGRADE_SCHEDULED
                    if change_type == ChangeType.DOWNGRADE
                    else SubscriptionEventType.PLAN_CHANGE_SCHEDULED
                )
            await self.repository.schedule_plan_change(
                row,
                plan_id=new.plan_id,
                effective_at=effective_at,
                record=record,
                event_type=event_type,
                user_id=user_id,
            )
            return PlanChangeResult(
                subscription=to_subscription(row),
                change_type=change_type,
                effective_date=effective_date,
                effective_at=effective_at,
            )

        # Immediate upgrade; a trial keeps its trial window
        period = Period(row.current_period_start, row.current_period_end)
        proration: ProrationResult | None = None
        payment = PaymentSummary(outcome=PaymentOutcome.NOT_REQUIRED, currency=new.currency)

        if row.status != SubscriptionStatus.TRIAL.value:
            period = period_after_switch(current, new, period, now)
            proration = calculate_proration(current, new, row.current_period_end, now, behavior)
            if proration.charge_amount > settings.billing.min_proration_charge:
                payment = await self._collect_proration(row, current, new, proration, payment_method_id)

        if payment_method_id:
            row.payment_method_id = payment_method_id

        record = UpgradeRecord(
            recorded_at=now,
            actor=user_id,
            previous_plan_id=current.plan_id,
            new_plan_id=new.plan_id,
            effective_date=EffectiveDate.IMMEDIATE,
            proration_amount=proration.charge_amount if proration else Decimal("0"),
            credit_amount=proration.credit_amount if proration else Decimal("0"),
            currency=new.currency,
            payment_outcome=payment.outcome,
            payment_id=payment.payment_id,
        )
        subscription_id, business_id = row.subscription_id, row.business_id
        try:
            await self.repository.upgrade_subscription(
                row, plan_id=new.plan_id, period=period, record=record, user_id=user_id
            )
        except ConcurrentModificationError:
            if payment.payment_id:
                logger.error(
                    "subscription.plan_change_lost_after_payment",
                    subscription_id=subscription_id,
                    business_id=business_id,
                    payment_id=payment.payment_id,
                    amount=str(payment.amount),
                )
            raise

        return PlanChangeResult(
            subscription=to_subscription(row),
            change_type=change_type,
            effective_date=EffectiveDate.IMMEDIATE,
            effective_at=now,
            proration=proration,
            payment=payment,
        )

    async def _collect_proration(
        self,
        row: BusinessSubscriptionTable,
        current: SubscriptionPlan,
        new: SubscriptionPlan,
        proration: ProrationResult,
        payment_method_id: str | None,
    ) -> PaymentSummary:
        method = payment_method_id or row.payment_method_id
        if not method:
            raise PaymentRequiredError(
                "A payment method is required to pay the upgrade",
                amount=proration.charge_amount,
                currency=proration.currency,
            )

        subscription_id = row.subscription_id
        with self.metrics.span(
            "billing.proration_payment",
            subscription_id=subscription_id,
            amount=proration.charge_amount,
            currency=proration.currency,
        ) as span:
            try:
                result = await asyncio.wait_for(
                    self.payments.create_proration_payment(
                        business_id=row.business_id,
                        subscription_id=subscription_id,
                        amount=proration.charge_amount,
                        currency=proration.currency,
                        payment_method_id=method,
                        metadata={
                            "from_plan_id": current.plan_id,
                            "to_plan_id": new.plan_id,
                            "remaining_days": proration.remaining_days,
                        },
                    ),
                    timeout=settings.payments.timeout_seconds,
                )
            except asyncio.CancelledError:
                logger.warning(
                    "subscription.proration_payment_cancelled", subscription_id=subscription_id
                )
                self.metrics.mark_failed(span, "cancelled")
                raise
            except TimeoutError as exc:
                self.metrics.mark_failed(span, "timeout")
                raise PaymentFailedError(
                    "Proration payment timed out", payment_method_id=method
                ) from exc
            except Exception as exc:
                self.metrics.mark_failed(span, str(exc))
                raise PaymentFailedError(
                    "Proration payment failed", payment_method_id=method, provider_error=str(exc)
                ) from exc

            if not result.success:
                self.metrics.mark_failed(span, result.error or "declined")

        if not result.success:
            logger.warning(
                "subscription.proration_payment_failed",
                subscription_id=row.subscription_id,
                business_id=row.business_id,
                error=result.error,
            )
            raise PaymentFailedError(
                "Proration payment failed", payment_method_id=method, provider_error=result.error
            )

        return PaymentSummary(
            outcome=PaymentOutcome.SUCCEEDED,
            payment_id=result.payment_id,
            amount=proration.charge_amount,
            currency=proration.currency,
        )

    def _plan_changed(
        self,
        user_id: str,
        current: SubscriptionPlan,
        new: SubscriptionPlan,
        result: PlanChangeResult,
    ) -> None:
        self.metrics.record_plan_change(result.change_type.value, result.effective_date.value)
        if result.payment and result.payment.outcome == PaymentOutcome.SUCCEEDED:
            self.metrics.record_proration_charge(result.payment.amount, new.currency)

        subscription = result.subscription
        logger.info(
            "subscription.plan_changed",
            subscription_id=subscription.subscription_id,
            business_id=subscription.business_id,
            from_plan_id=current.plan_id,
            to_plan_id=new.plan_id,
            change_type=result.change_type.value,
            effective_date=result.effective_date.value,
            effective_at=result.effective_at,
        )
        charged = result.payment.amount if result.payment else Decimal("0")
        log_audit_event(
            "subscription.plan_changed",
            "billing",
            user_id=user_id,
            business_id=subscription.business_id,
            resource_type="subscription",
            resource_id=subscription.subscription_id,
            description=describe_change(current, new),
            charged=format_amount(charged, new.currency),
        )

    # ------------------------------------------------------------------
    # Cancellation, reactivation, trial conversion
    # ------------------------------------------------------------------

    async def cancel_subscription(
        self,
        user_id: str,
        business_id: str,
        cancel_at_period_end: bool = True,
        reason: str | None = None,
    ) -> Subscription:
        await self.guard.require_manage(user_id, business_id)

        async with self._transaction():
            row = await self._live_row(business_id, for_update=True)
            ensure_transition(row.status, Operation.CANCEL)
            await self.repository.cancel_subscription(
                row,
                at_period_end=cancel_at_period_end,
                record=CancellationRecord(
                    recorded_at=self.clock.now(),
                    actor=user_id,
                    at_period_end=cancel_at_period_end,
                    finalized=not cancel_at_period_end,
                    reason=reason,
                ),
                user_id=user_id,
            )
            subscription = to_subscription(row)

        self.metrics.record_cancellation(cancel_at_period_end)
        logger.info(
            "subscription.canceled",
            subscription_id=subscription.subscription_id,
            business_id=business_id,
            at_period_end=cancel_at_period_end,
            reason=reason,
        )
        log_audit_event(
            "subscription.canceled",
            "billing",
            user_id=user_id,
            business_id=business_id,
            resource_type="subscription",
            resource_id=subscription.subscription_id,
            at_period_end=cancel_at_period_end,
        )
        return subscription

    async def reactivate_subscription(self, user_id: str, business_id: str) -> Subscription:
        """Undo a period-end cancellation, scheduled or already finalized."""
        await self.guard.require_manage(user_id, business_id)
        not_found = SubscriptionNotFoundError(
            "No canceled subscription found to reactivate", business_id=business_id
        )

        async with self._transaction():
            now = self.clock.now()
            live = await self.repository.find_active_subscription_by_business_id(
                business_id, for_update=True
            )
            if live is not None:
                if not live.cancel_at_period_end:
                    raise not_found
                row = await self.repository.update_subscription_settings(
                    live,
                    event_type=SubscriptionEventType.REACTIVATED,
                    record=ReactivationRecord(
                        recorded_at=now,
                        actor=user_id,
                        restored_status=SubscriptionStatus(live.status),
                    ),
                    user_id=user_id,
                    cancel_at_period_end=False,
                )
            else:
                latest = await self.repository.find_latest_subscription_by_business_id(
                    business_id, for_update=True
                )
                if latest is None or latest.status != SubscriptionStatus.CANCELED.value:
                    raise not_found
                if not latest.cancel_at_period_end:
                    raise not_found
                ensure_transition(latest.status, Operation.REACTIVATE)

                restored = SubscriptionStatus(latest.previous_status or SubscriptionStatus.ACTIVE)
                row = await self.repository.update_subscription_status(
                    latest,
                    restored,
                    record=ReactivationRecord(
                        recorded_at=now, actor=user_id, restored_status=restored
                    ),
                    event_type=SubscriptionEventType.REACTIVATED,
                    user_id=user_id,
                    cancel_at_period_end=False,
                    canceled_at=None,
                    previous_status=None,
                )
            subscription = to_subscription(row)

        logger.info(
            "subscription.reactivated",
            subscription_id=subscription.subscription_id,
            business_id=business_id,
            status=subscription.status.value,
        )
        log_audit_event(
            "subscription.reactivated",
            "billing",
            user_id=user_id,
            business_id=business_id,
            resource_type="subscription",
            resource_id=subscription.subscription_id,
        )
        return subscription

    async def convert_trial_to_active(
        self, user_id: str, business_id: str, payment_method_id: str | None = None
    ) -> Subscription:
        """End the trial now and start the first paid period."""
        await self.guard.require_manage(user_id, business_id)

        async with self._transaction():
            row = await self.repository.find_active_subscription_by_business_id(
                business_id, for_update=True
            )
            if row is None:
                raise SubscriptionNotFoundError(
                    "No active trial subscription found", business_id=business_id
                )
            ensure_transition(row.status, Operation.CONVERT_TRIAL)

            now = self.clock.now()
            plan = await self.catalog.get_plan(row.plan_id)
            period = plan_period(now, plan)
            fields: dict[str, object] = {
                "current_period_start": period.start,
                "current_period_end": period.end,
                "next_billing_date": period.end,
            }
            if payment_method_id:
                fields["payment_method_id"] = payment_method_id

            await self.repository.update_subscription_status(
                row,
                SubscriptionStatus.ACTIVE,
                record=TrialConversionRecord(
                    recorded_at=now,
                    actor=user_id,
                    converted_at=now,
                    payment_method_recorded=bool(payment_method_id),
                ),
                event_type=SubscriptionEventType.TRIAL_CONVERTED,
                user_id=user_id,
                **fields,
            )
            subscription = to_subscription(row)

        logger.info(
            "subscription.trial_converted",
            subscription_id=subscription.subscription_id,
            business_id=business_id,
            period_end=subscription.current_period_end,
        )
        log_audit_event(
            "subscription.trial_converted",
            "billing",
            user_id=user_id,
            business_id=business_id,
            resource_type="subscription",
            resource_id=subscription.subscription_id,
        )
        return subscription

    # ------------------------------------------------------------------
    # Limits and previews
    # ------------------------------------------------------------------

    async def check_subscription_limits(self, user_id: str, business_id: str) -> SubscriptionLimits:
        await self.guard.require_view(user_id, business_id)
        return await self.repository.check_subscription_limits(business_id)

    async def validate_plan_limits(
        self, user_id: str, business_id: str, plan_id: str
    ) -> LimitCheckResult:
        await self.guard.require_view(user_id, business_id)
        plan = await self.repository.find_plan_by_id(plan_id)
        if plan is None:
            return LimitCheckResult(is_valid=False, violations=["Plan not found"])
        return await self.limits.check_limits(business_id, plan)

    async def calculate_upgrade_proration(
        self,
        current_plan_id: str,
        new_plan_id: str,
        current_period_end: datetime,
        now: datetime | None = None,
    ) -> ProrationResult:
        """Quote a switch at ``now``, the service clock by default."""
        current = await self.catalog.get_plan(current_plan_id)
        new = await self.catalog.get_plan(new_plan_id)
        return calculate_proration(current, new, current_period_end, now or self.clock.now())

    async def calculate_subscription_change(
        self,
        user_id: str,
        business_id: str,
        subscription_id: str,
        new_plan_id: str,
        effective_date: EffectiveDate = EffectiveDate.IMMEDIATE,
    ) -> SubscriptionChangePreview:
        """Preview a plan change without writing anything."""
        await self.guard.require_view(user_id, business_id)
        row = await self._owned_row(business_id, subscription_id)
        current = await self.catalog.get_plan(row.plan_id)
        new = await self.catalog.get_plan(new_plan_id)
        change_type = classify_change(current, new)

        proration = None
        limit_check = None
        if change_type == ChangeType.UPGRADE:
            if (
                effective_date == EffectiveDate.IMMEDIATE
                and row.status != SubscriptionStatus.TRIAL.value
            ):
                proration = calculate_proration(
                    current, new, row.current_period_end, self.clock.now()
                )
        else:
            effective_date = EffectiveDate.NEXT_BILLING_CYCLE
            limit_check = await self.limits.check_limits(business_id, new)

        effective_at = (
            self.clock.now()
            if effective_date == EffectiveDate.IMMEDIATE
            else row.current_period_end
        )
        return SubscriptionChangePreview(
            change_type=change_type,
            current_plan=current,
            new_plan=new,
            effective_date=effective_date,
            effective_at=effective_at,
            proration=proration,
            limit_check=limit_check,
            description=describe_change(current, new),
        )

    # ------------------------------------------------------------------
    # Scheduled sweeps
    # ------------------------------------------------------------------

    def renewal_processor(self) -> RenewalProcessor:
        return RenewalProcessor(
            self.session_factory or get_session_maker(),
            self.payments,
            clock=self.clock,
            cache=self.cache,
            metrics=self.metrics,
        )

    async def process_subscription_renewals(self) -> RenewalSummary:
        return await self.renewal_processor().process_subscription_renewals()

    async def process_expired_subscriptions(self) -> ExpirySummary:
        return await self.renewal_processor().process_expired_subscriptions()

    async def cancel_delinquent_subscriptions(self) -> DunningSummary:
        return await self.renewal_processor().cancel_delinquent_subscriptions()

    # ------------------------------------------------------------------
    # Auto-renewal and payment method
    # ------------------------------------------------------------------

    async def get_auto_renewal_status(self, user_id: str, business_id: str) -> AutoRenewalStatus:
        await self.guard.require_view(user_id, business_id)
        row = await self._live_row(business_id)

        method_summary = None
        if row.payment_method_id:
            stored = await self.payments.get_stored_payment_methods(business_id)
            if stored.success:
                for method in stored.payment_methods:
                    if method.payment_method_id == row.payment_method_id:
                        method_summary = PaymentMethodSummary.model_validate(
                            method.model_dump(include=set(PaymentMethodSummary.model_fields))
                        )
                        break
            else:
                logger.warning(
                    "subscription.payment_methods_unavailable",
                    business_id=business_id,
                    error=stored.error,
                )

        return AutoRenewalStatus(
            subscription_id=row.subscription_id,
            auto_renewal=row.auto_renewal,
            next_billing_date=row.next_billing_date,
            payment_method_id=row.payment_method_id,
            payment_method=method_summary,
        )

    async def update_auto_renewal(
        self,
        user_id: str,
        business_id: str,
        auto_renewal: bool,
        payment_method_id: str | None = None,
    ) -> Subscription:
        await self.guard.require_manage(user_id, business_id)

        async with self._transaction():
            row = await self._live_row(business_id, for_update=True)
            ensure_transition(row.status, Operation.UPDATE_SETTINGS)
            if auto_renewal and not (payment_method_id or row.payment_method_id):
                raise PaymentRequiredError("Payment method required for auto-renewal")

            fields: dict[str, object] = {"auto_renewal": auto_renewal}
            if payment_method_id:
                fields["payment_method_id"] = payment_method_id
            await self.repository.update_subscription_settings(
                row,
                event_type=SubscriptionEventType.AUTO_RENEWAL_UPDATED,
                user_id=user_id,
                **fields,
            )
            subscription = to_subscription(row)

        logger.info(
            "subscription.auto_renewal_updated",
            subscription_id=subscription.subscription_id,
            business_id=business_id,
            auto_renewal=auto_renewal,
        )
        return subscription

    async def update_payment_method(
        self, user_id: str, business_id: str, payment_method_id: str
    ) -> Subscription:
        """Point renewals at one of the business's stored payment methods."""
        await self.guard.require_manage(user_id, business_id)

        stored = await self.payments.get_stored_payment_methods(business_id)
        if not stored.success:
            raise PaymentFailedError(
                "Unable to verify payment method", provider_error=stored.error
            )
        if payment_method_id not in {m.payment_method_id for m in stored.payment_methods}:
            raise BillingValidationError(
                "Payment method not found for this business",
                context={"business_id": business_id, "payment_method_id": payment_method_id},
            )

        async with self._transaction():
            row = await self._live_row(business_id, for_update=True)
            ensure_transition(row.status, Operation.UPDATE_SETTINGS)
            await self.repository.update_subscription_settings(
                row,
                event_type=SubscriptionEventType.PAYMENT_METHOD_UPDATED,
                user_id=user_id,
                payment_method_id=payment_method_id,
            )
            subscription = to_subscription(row)

        logger.info(
            "subscription.payment_method_updated",
            subscription_id=subscription.subscription_id,
            business_id=business_id,
        )
        return subscription

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def get_trials_ending_soon(self, user_id: str, days: int | None = None) -> list[Subscription]:
        await self.guard.require_admin(user_id)
        window = days if days is not None else settings.billing.trial_ending_reminder_days
        rows = await self.repository.find_trials_ending_soon(self.clock.now(), window)
        return [to_subscription(row) for row in rows]

    async def get_expired_subscriptions(self, user_id: str) -> list[Subscription]:
        await self.guard.require_admin(user_id)
        rows = await self.repository.find_expired_subscriptions(self.clock.now())
        return [to_subscription(row) for row in rows]

    async def get_subscription_stats(self, user_id: str) -> SubscriptionStats:
        """Counts by status and plan, plus recurring revenue per currency.

        Recurring revenue counts ACTIVE subscriptions only; yearly plans
        contribute a twelfth of their price per month.
        """
        await self.guard.require_admin(user_id)
        by_status = await self.repository.count_by_status()
        by_plan = await self.repository.count_live_by_plan()
        active_by_plan = await self.repository.count_live_by_plan((SubscriptionStatus.ACTIVE.value,))

        monthly: dict[str, Decimal] = defaultdict(Decimal)
        for plan_id, count in active_by_plan.items():
            plan = await self.catalog.get_plan(plan_id)
            price = plan.price
            if plan.billing_interval == BillingInterval.YEARLY:
                price = price / 12
            monthly[plan.currency] += price * count

        return SubscriptionStats(
            total_subscriptions=sum(by_status.values()),
            by_status=by_status,
            by_plan=by_plan,
            monthly_recurring_revenue={
                currency: quantize_amount(amount, currency) for currency, amount in monthly.items()
            },
            annual_recurring_revenue={
                currency: quantize_amount(amount * 12, currency)
                for currency, amount in monthly.items()
            },
        )

    async def force_update_subscription_status(
        self,
        user_id: str,
        subscription_id: str,
        status: SubscriptionStatus,
        reason: str | None = None,
    ) -> Subscription:
        """Admin override; still limited to one live subscription per business."""
        await self.guard.require_admin(user_id)

        async with self._transaction():
            row = await self.repository.get_subscription_row(subscription_id, for_update=True)
            previous = SubscriptionStatus(row.status)

            if status.is_live and not previous.is_live:
                other = await self.repository.find_active_subscription_by_business_id(
                    row.business_id
                )
                if other is not None:
                    raise InvalidTransitionError(
                        ALREADY_SUBSCRIBED,
                        current_state=previous.value,
                        operation="force_status",
                        context={"business_id": row.business_id},
                    )

            now = self.clock.now()
            fields: dict[str, object] = {}
            if status == SubscriptionStatus.CANCELED and previous != status:
                fields.update(canceled_at=now, auto_renewal=False)
            elif status.is_live and not previous.is_live:
                fields.update(canceled_at=None, cancel_at_period_end=False)

            await self.repository.update_subscription_status(
                row,
                status,
                record=StatusChangeRecord(
                    recorded_at=now,
                    actor=user_id,
                    previous_status=previous,
                    new_status=status,
                    reason=reason,
                ),
                event_type=SubscriptionEventType.STATUS_FORCED,
                user_id=user_id,
                **fields,
            )
            subscription = to_subscription(row)

        logger.warning(
            "subscription.status_forced",
            subscription_id=subscription_id,
            business_id=subscription.business_id,
            previous_status=previous.value,
            new_status=status.value,
            reason=reason,
        )
        log_audit_event(
            "subscription.status_forced",
            "billing",
            user_id=user_id,
            business_id=subscription.business_id,
            resource_type="subscription",
            resource_id=subscription_id,
            previous_status=previous.value,
            new_status=status.value,
        )
        return subscription

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    async def get_plan(self, plan_id: str) -> SubscriptionPlan:
        return await self.catalog.get_plan(plan_id)

    async def get_all_plans(self, active_only: bool = True) -> list[SubscriptionPlan]:
        return await self.catalog.list_plans(active_only=active_only)

    async def get_plans_by_billing_interval(
        self, billing_interval: BillingInterval
    ) -> list[SubscriptionPlan]:
        return await self.catalog.list_plans(active_only=True, billing_interval=billing_interval)

    async def create_plan(self, user_id: str, request: PlanCreateRequest) -> SubscriptionPlan:
        await self.guard.require_plan_admin(user_id)
        async with self._transaction():
            plan = await self.catalog.create_plan(request)
        log_audit_event(
            "subscription_plan.created",
            "billing",
            user_id=user_id,
            resource_type="subscription_plan",
            resource_id=plan.plan_id,
        )
        return plan

    async def update_plan(
        self, user_id: str, plan_id: str, request: PlanUpdateRequest
    ) -> SubscriptionPlan:
        await self.guard.require_plan_admin(user_id)
        async with self._transaction():
            plan = await self.catalog.update_plan(plan_id, request)
        log_audit_event(
            "subscription_plan.updated",
            "billing",
            user_id=user_id,
            resource_type="subscription_plan",
            resource_id=plan_id,
            fields=sorted(request.model_dump(exclude_unset=True)),
        )
        return plan

    async def deactivate_plan(self, user_id: str, plan_id: str) -> SubscriptionPlan:
        await self.guard.require_plan_admin(user_id)
        async with self._transaction():
            plan = await self.catalog.deactivate_plan(plan_id)
        log_audit_event(
            "subscription_plan.deactivated",
            "billing",
            user_id=user_id,
            resource_type="subscription_plan",
            resource_id=plan_id,
        )
        return plan


__all__ = ["SubscriptionService", "classify_change", "describe_change"]
