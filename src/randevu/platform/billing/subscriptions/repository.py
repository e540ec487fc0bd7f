"""
Subscription persistence.

Every write goes through ``_persist``: it stamps the change record into
``metadata``, appends an event row and flushes under the row's optimistic
version. A lost race surfaces as ``ConcurrentModificationError``; the
caller owns commit and rollback.

Row lookups refresh objects already in the identity map, so a long-lived
session sees writes committed by the renewal sweep.
"""

from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from randevu.platform.billing.exceptions import (
    ConcurrentModificationError,
    InvalidTransitionError,
    SubscriptionNotFoundError,
)
from randevu.platform.billing.models import (
    LIVE_STATUS_VALUES,
    BusinessSubscriptionTable,
    RenewalLeaseTable,
    SubscriptionEventTable,
)
from randevu.platform.billing.subscriptions.catalog import PlanCatalog
from randevu.platform.billing.subscriptions.limits import LimitValidator, UsageReader
from randevu.platform.billing.subscriptions.models import (
    ChangeRecord,
    Subscription,
    SubscriptionEventType,
    SubscriptionLimits,
    SubscriptionPlan,
    SubscriptionStatus,
    dump_change_record,
    parse_change_record,
)
from randevu.platform.billing.subscriptions.state_machine import Period
from randevu.platform.clock import Clock, system_clock

logger = structlog.get_logger(__name__)

ALREADY_SUBSCRIBED = "Business already has an active subscription"


def to_subscription(row: BusinessSubscriptionTable) -> Subscription:
    """Plain record for callers; never leaks the ORM row."""
    return Subscription(
        subscription_id=row.subscription_id,
        business_id=row.business_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
        trial_end=row.trial_end,
        auto_renewal=row.auto_renewal,
        payment_method_id=row.payment_method_id,
        next_billing_date=row.next_billing_date,
        cancel_at_period_end=row.cancel_at_period_end,
        canceled_at=row.canceled_at,
        previous_status=SubscriptionStatus(row.previous_status) if row.previous_status else None,
        pending_plan_id=row.pending_plan_id,
        pending_change_effective_at=row.pending_change_effective_at,
        failed_payment_count=row.failed_payment_count,
        last_payment_error=row.last_payment_error,
        last_change=parse_change_record(row.metadata_json),
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SubscriptionRepository:
    """Transactional access to business subscriptions."""

    def __init__(
        self,
        session: AsyncSession,
        catalog: PlanCatalog | None = None,
        clock: Clock = system_clock,
        usage_reader: UsageReader | None = None,
    ):
        self.session = session
        self.clock = clock
        self.catalog = catalog or PlanCatalog(session, clock=clock)
        self.usage_reader = usage_reader

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_subscription_row(
        self, subscription_id: str, for_update: bool = False
    ) -> BusinessSubscriptionTable:
        stmt = select(BusinessSubscriptionTable).where(
            BusinessSubscriptionTable.subscription_id == subscription_id
        )
        if for_update:
            stmt = stmt.with_for_update()
        stmt = stmt.execution_options(populate_existing=True)
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise SubscriptionNotFoundError(
                "Subscription not found", subscription_id=subscription_id
            )
        return row

    async def find_active_subscription_by_business_id(
        self, business_id: str, for_update: bool = False
    ) -> BusinessSubscriptionTable | None:
        """The business's live (trial, active or past due) subscription."""
        stmt = select(BusinessSubscriptionTable).where(
            BusinessSubscriptionTable.business_id == business_id,
            BusinessSubscriptionTable.status.in_(LIVE_STATUS_VALUES),
        )
        if for_update:
            stmt = stmt.with_for_update()
        stmt = stmt.execution_options(populate_existing=True)
        return (await self.session.execute(stmt)).scalars().first()

    async def find_latest_subscription_by_business_id(
        self, business_id: str, for_update: bool = False
    ) -> BusinessSubscriptionTable | None:
        stmt = (
            select(BusinessSubscriptionTable)
            .where(BusinessSubscriptionTable.business_id == business_id)
            .order_by(
                BusinessSubscriptionTable.created_at.desc(),
                BusinessSubscriptionTable.subscription_id.desc(),
            )
            .limit(1)
        )
        if for_update:
            stmt = stmt.with_for_update()
        stmt = stmt.execution_options(populate_existing=True)
        return (await self.session.execute(stmt)).scalars().first()

    async def list_subscriptions_by_business_id(
        self, business_id: str
    ) -> Sequence[BusinessSubscriptionTable]:
        result = await self.session.execute(
            select(BusinessSubscriptionTable)
            .where(BusinessSubscriptionTable.business_id == business_id)
            .order_by(
                BusinessSubscriptionTable.created_at.desc(),
                BusinessSubscriptionTable.subscription_id.desc(),
            )
        )
        return result.scalars().all()

    async def find_plan_by_id(self, plan_id: str) -> SubscriptionPlan | None:
        return await self.catalog.find_plan(plan_id)

    async def check_subscription_limits(self, business_id: str) -> SubscriptionLimits:
        if self.usage_reader is None:
            raise RuntimeError("SubscriptionRepository was created without a usage reader")
        row = await self.find_active_subscription_by_business_id(business_id)
        plan = await self.catalog.get_plan(row.plan_id) if row is not None else None
        return await LimitValidator(self.usage_reader).subscription_limits(business_id, plan)

    async def find_expired_subscriptions(
        self, now: datetime, limit: int | None = None
    ) -> Sequence[BusinessSubscriptionTable]:
        """Live subscriptions whose current period has ended."""
        stmt = (
            select(BusinessSubscriptionTable)
            .where(
                BusinessSubscriptionTable.status.in_(LIVE_STATUS_VALUES),
                BusinessSubscriptionTable.current_period_end <= now,
            )
            .order_by(
                BusinessSubscriptionTable.current_period_end,
                BusinessSubscriptionTable.subscription_id,
            )
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return (await self.session.execute(stmt)).scalars().all()

    async def find_subscriptions_for_renewal(
        self,
        now: datetime,
        limit: int,
        after: tuple[datetime, str] | None = None,
    ) -> list[tuple[str, datetime]]:
        """One page of (subscription_id, period_end) due at ``now``.

        Keyset pagination on (period_end, subscription_id) so rows updated
        during the sweep are not visited twice.
        """
        stmt = select(
            BusinessSubscriptionTable.subscription_id,
            BusinessSubscriptionTable.current_period_end,
        ).where(
            BusinessSubscriptionTable.status.in_(LIVE_STATUS_VALUES),
            BusinessSubscriptionTable.current_period_end <= now,
        )
        if after is not None:
            last_end, last_id = after
            stmt = stmt.where(
                or_(
                    BusinessSubscriptionTable.current_period_end > last_end,
                    and_(
                        BusinessSubscriptionTable.current_period_end == last_end,
                        BusinessSubscriptionTable.subscription_id > last_id,
                    ),
                )
            )
        stmt = stmt.order_by(
            BusinessSubscriptionTable.current_period_end,
            BusinessSubscriptionTable.subscription_id,
        ).limit(limit)
        result = await self.session.execute(stmt)
        return [(sub_id, period_end) for sub_id, period_end in result.all()]

    async def find_trials_ending_soon(
        self, now: datetime, days: int
    ) -> Sequence[BusinessSubscriptionTable]:
        result = await self.session.execute(
            select(BusinessSubscriptionTable)
            .where(
                BusinessSubscriptionTable.status == SubscriptionStatus.TRIAL.value,
                BusinessSubscriptionTable.current_period_end > now,
                BusinessSubscriptionTable.current_period_end <= now + timedelta(days=days),
            )
            .order_by(BusinessSubscriptionTable.current_period_end)
        )
        return result.scalars().all()

    async def find_delinquent_subscriptions(
        self, period_ended_before: datetime, min_failed_payments: int
    ) -> Sequence[BusinessSubscriptionTable]:
        result = await self.session.execute(
            select(BusinessSubscriptionTable)
            .where(
                BusinessSubscriptionTable.status == SubscriptionStatus.PAST_DUE.value,
                BusinessSubscriptionTable.current_period_end < period_ended_before,
                BusinessSubscriptionTable.failed_payment_count >= min_failed_payments,
            )
            .order_by(BusinessSubscriptionTable.current_period_end)
        )
        return result.scalars().all()

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(BusinessSubscriptionTable.status, func.count()).group_by(
                BusinessSubscriptionTable.status
            )
        )
        return {status: count for status, count in result.all()}

    async def count_live_by_plan(self, statuses: Sequence[str] = LIVE_STATUS_VALUES) -> dict[str, int]:
        result = await self.session.execute(
            select(BusinessSubscriptionTable.plan_id, func.count())
            .where(BusinessSubscriptionTable.status.in_(statuses))
            .group_by(BusinessSubscriptionTable.plan_id)
        )
        return {plan_id: count for plan_id, count in result.all()}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_subscription(
        self,
        *,
        business_id: str,
        plan: SubscriptionPlan,
        status: SubscriptionStatus,
        period: Period,
        auto_renewal: bool,
        payment_method_id: str | None,
        record: ChangeRecord,
        user_id: str | None = None,
    ) -> BusinessSubscriptionTable:
        if await self.find_active_subscription_by_business_id(business_id) is not None:
            raise InvalidTransitionError(ALREADY_SUBSCRIBED, context={"business_id": business_id})

        now = self.clock.now()
        row = BusinessSubscriptionTable(
            subscription_id=f"sub_{uuid4().hex[:16]}",
            business_id=business_id,
            plan_id=plan.plan_id,
            status=status.value,
            current_period_start=period.start,
            current_period_end=period.end,
            trial_end=period.end if status == SubscriptionStatus.TRIAL else None,
            next_billing_date=period.end,
            auto_renewal=auto_renewal,
            payment_method_id=payment_method_id,
            cancel_at_period_end=False,
            failed_payment_count=0,
            metadata_json=dump_change_record(record),
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            # Partial unique index on live subscriptions
            raise InvalidTransitionError(
                ALREADY_SUBSCRIBED, context={"business_id": business_id}
            ) from exc

        await self._add_event(row, SubscriptionEventType.CREATED, record, user_id)
        await self._flush(row)
        return row

    async def upgrade_subscription(
        self,
        row: BusinessSubscriptionTable,
        *,
        plan_id: str,
        period: Period,
        record: ChangeRecord,
        user_id: str | None = None,
    ) -> BusinessSubscriptionTable:
        """Switch plan now; a scheduled change is superseded."""
        row.plan_id = plan_id
        row.current_period_start = period.start
        row.current_period_end = period.end
        row.next_billing_date = period.end
        row.pending_plan_id = None
        row.pending_change_effective_at = None
        return await self._persist(row, SubscriptionEventType.UPGRADED, record, user_id)

    async def schedule_plan_change(
        self,
        row: BusinessSubscriptionTable,
        *,
        plan_id: str,
        effective_at: datetime,
        record: ChangeRecord,
        event_type: SubscriptionEventType,
        user_id: str | None = None,
    ) -> BusinessSubscriptionTable:
        row.pending_plan_id = plan_id
        row.pending_change_effective_at = effective_at
        return await self._persist(row, event_type, record, user_id)

    async def cancel_subscription(
        self,
        row: BusinessSubscriptionTable,
        *,
        at_period_end: bool,
        record: ChangeRecord,
        user_id: str | None = None,
    ) -> BusinessSubscriptionTable:
        now = self.clock.now()
        if at_period_end:
            row.cancel_at_period_end = True
            event_type = SubscriptionEventType.CANCELLATION_SCHEDULED
        else:
            row.previous_status = row.status
            row.status = SubscriptionStatus.CANCELED.value
            row.canceled_at = now
            row.auto_renewal = False
            row.cancel_at_period_end = False
            row.pending_plan_id = None
            row.pending_change_effective_at = None
            event_type = SubscriptionEventType.CANCELED
        return await self._persist(row, event_type, record, user_id)

    async def renew_subscription(
        self,
        row: BusinessSubscriptionTable,
        *,
        plan_id: str,
        period: Period,
        record: ChangeRecord,
    ) -> BusinessSubscriptionTable:
        row.plan_id = plan_id
        row.status = SubscriptionStatus.ACTIVE.value
        row.current_period_start = period.start
        row.current_period_end = period.end
        row.next_billing_date = period.end
        row.failed_payment_count = 0
        row.last_payment_error = None
        row.pending_plan_id = None
        row.pending_change_effective_at = None
        return await self._persist(row, SubscriptionEventType.RENEWED, record, None)

    async def update_subscription_status(
        self,
        row: BusinessSubscriptionTable,
        status: SubscriptionStatus,
        *,
        record: ChangeRecord,
        event_type: SubscriptionEventType,
        user_id: str | None = None,
        **fields: Any,
    ) -> BusinessSubscriptionTable:
        business_id = row.business_id
        if row.status != status.value:
            if status == SubscriptionStatus.CANCELED:
                row.previous_status = row.status
            row.status = status.value
        for name, value in fields.items():
            setattr(row, name, value)
        try:
            return await self._persist(row, event_type, record, user_id)
        except IntegrityError as exc:
            raise InvalidTransitionError(
                ALREADY_SUBSCRIBED, context={"business_id": business_id}
            ) from exc

    async def update_subscription_settings(
        self,
        row: BusinessSubscriptionTable,
        *,
        event_type: SubscriptionEventType,
        record: ChangeRecord | None = None,
        user_id: str | None = None,
        **fields: Any,
    ) -> BusinessSubscriptionTable:
        for name, value in fields.items():
            setattr(row, name, value)
        return await self._persist(
            row, event_type, record, user_id, data={k: _jsonable(v) for k, v in fields.items()}
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _persist(
        self,
        row: BusinessSubscriptionTable,
        event_type: SubscriptionEventType,
        record: ChangeRecord | None,
        user_id: str | None,
        data: dict[str, Any] | None = None,
    ) -> BusinessSubscriptionTable:
        row.updated_at = self.clock.now()
        if record is not None:
            row.metadata_json = dump_change_record(record)
        await self._flush(row)
        await self._add_event(row, event_type, record, user_id, data)
        await self.session.flush()
        return row

    async def _flush(self, row: BusinessSubscriptionTable) -> None:
        # A failed flush expires the row; read identifiers first
        subscription_id, business_id = row.subscription_id, row.business_id
        try:
            await self.session.flush()
        except StaleDataError as exc:
            logger.warning(
                "subscription.concurrent_modification",
                subscription_id=subscription_id,
                business_id=business_id,
            )
            raise ConcurrentModificationError(
                "Subscription was modified by another request",
                subscription_id=subscription_id,
            ) from exc

    async def _add_event(
        self,
        row: BusinessSubscriptionTable,
        event_type: SubscriptionEventType,
        record: ChangeRecord | None,
        user_id: str | None,
        data: dict[str, Any] | None = None,
    ) -> None:
        event_data: dict[str, Any] = {"status": row.status, "plan_id": row.plan_id}
        if record is not None:
            event_data["change"] = dump_change_record(record)
        if data:
            event_data.update(data)
        self.session.add(
            SubscriptionEventTable(
                event_id=f"evt_{uuid4().hex[:16]}",
                subscription_id=row.subscription_id,
                business_id=row.business_id,
                event_type=event_type.value,
                event_data=event_data,
                user_id=user_id,
                created_at=self.clock.now(),
                updated_at=self.clock.now(),
            )
        )

    async def list_events(self, subscription_id: str) -> Sequence[SubscriptionEventTable]:
        result = await self.session.execute(
            select(SubscriptionEventTable)
            .where(SubscriptionEventTable.subscription_id == subscription_id)
            .order_by(SubscriptionEventTable.created_at, SubscriptionEventTable.event_id)
        )
        return result.scalars().all()


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class LeaseStatus:
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RenewalLeaseRepository:
    """Idempotency leases for renewal charges, one per (subscription, period end).

    Each method is meant to run in its own short transaction so the lease is
    visible to other workers before the payment call starts.
    """

    def __init__(self, session: AsyncSession, clock: Clock = system_clock):
        self.session = session
        self.clock = clock

    async def get(self, subscription_id: str, period_end: datetime) -> RenewalLeaseTable | None:
        result = await self.session.execute(
            select(RenewalLeaseTable).where(
                RenewalLeaseTable.subscription_id == subscription_id,
                RenewalLeaseTable.period_end == period_end,
            )
        )
        return result.scalar_one_or_none()

    async def try_acquire(
        self, subscription_id: str, period_end: datetime, stale_after: timedelta
    ) -> tuple[bool, RenewalLeaseTable | None]:
        """Claim the period for charging.

        Returns ``(True, lease)`` when this caller may charge, otherwise
        ``(False, existing)`` with the lease that blocked it.
        """
        now = self.clock.now()
        existing = await self.get(subscription_id, period_end)

        if existing is None:
            lease = RenewalLeaseTable(
                lease_id=f"lease_{uuid4().hex[:16]}",
                subscription_id=subscription_id,
                period_end=period_end,
                status=LeaseStatus.PENDING,
                attempts=1,
                acquired_at=now,
                created_at=now,
                updated_at=now,
            )
            self.session.add(lease)
            try:
                await self.session.flush()
            except IntegrityError:
                await self.session.rollback()
                return False, await self.get(subscription_id, period_end)
            return True, lease

        reclaimable = existing.status == LeaseStatus.FAILED or (
            existing.status == LeaseStatus.PENDING and existing.acquired_at <= now - stale_after
        )
        if not reclaimable:
            return False, existing

        # Conditional update so only one worker wins the reclaim
        result = await self.session.execute(
            update(RenewalLeaseTable)
            .where(
                RenewalLeaseTable.lease_id == existing.lease_id,
                RenewalLeaseTable.status == existing.status,
                RenewalLeaseTable.attempts == existing.attempts,
            )
            .values(
                status=LeaseStatus.PENDING,
                attempts=existing.attempts + 1,
                acquired_at=now,
                error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False, existing
        await self.session.refresh(existing)
        return True, existing

    async def complete(
        self,
        subscription_id: str,
        period_end: datetime,
        *,
        succeeded: bool,
        payment_id: str | None = None,
        error: str | None = None,
    ) -> None:
        now = self.clock.now()
        await self.session.execute(
            update(RenewalLeaseTable)
            .where(
                RenewalLeaseTable.subscription_id == subscription_id,
                RenewalLeaseTable.period_end == period_end,
            )
            .values(
                status=LeaseStatus.SUCCEEDED if succeeded else LeaseStatus.FAILED,
                payment_id=payment_id,
                error=error,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )


__all__ = [
    "ALREADY_SUBSCRIBED",
    "LeaseStatus",
    "RenewalLeaseRepository",
    "SubscriptionRepository",
    "to_subscription",
]
