"""
Billing database tables.

Plans, business subscriptions, the subscription event trail and the
renewal idempotency leases.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from randevu.platform.db import Base, TimestampMixin, UTCDateTime

# Statuses that count as the business's one live subscription
LIVE_STATUS_VALUES = ("trial", "active", "past_due")
_LIVE_STATUS_SQL = "status IN ('trial', 'active', 'past_due')"


class BillingSQLModel(TimestampMixin, Base):
    """Base SQLAlchemy model for billing tables."""

    __abstract__ = True

    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )


class SubscriptionPlanTable(BillingSQLModel):
    """SQLAlchemy table for subscription plans."""

    __tablename__ = "billing_subscription_plans"

    plan_id: Mapped[str] = mapped_column(String(50), primary_key=True)

    # Plan details
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Billing configuration
    price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="TRY")
    billing_interval: Mapped[str] = mapped_column(String(20), nullable=False)  # monthly, yearly

    # Quotas (-1 = unlimited)
    max_businesses: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_staff_per_business: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_appointments_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)

    features: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Flags
    is_trial_eligible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_popular: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_billing_plans_price_non_negative"),
        Index("ix_billing_plans_active_sort", "is_active", "sort_order"),
    )


class BusinessSubscriptionTable(BillingSQLModel):
    """SQLAlchemy table for business subscriptions.

    Rows are never deleted; every row of a business is part of its history.
    ``version`` is the optimistic lock checked on every UPDATE.
    """

    __tablename__ = "billing_business_subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(50), primary_key=True)

    business_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)  # trial, active, past_due, canceled
    previous_status: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Current billing period
    current_period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    trial_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Renewal settings
    auto_renewal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    payment_method_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Cancellation
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Scheduled plan change applied at the next period boundary
    pending_plan_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    pending_change_effective_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )

    # Dunning
    failed_payment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_payment_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "current_period_end > current_period_start",
            name="ck_billing_subscriptions_period_order",
        ),
        Index(
            "uq_billing_subscriptions_live_business",
            "business_id",
            unique=True,
            sqlite_where=text(_LIVE_STATUS_SQL),
            postgresql_where=text(_LIVE_STATUS_SQL),
        ),
        Index("ix_billing_subscriptions_status_period_end", "status", "current_period_end"),
    )


class SubscriptionEventTable(TimestampMixin, Base):
    """SQLAlchemy table for subscription events (audit trail)."""

    __tablename__ = "billing_subscription_events"

    event_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(String(50), nullable=False)
    business_id: Mapped[str] = mapped_column(String(50), nullable=False)

    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # User who triggered event, None for the scheduler
    user_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        Index("ix_billing_events_subscription", "subscription_id"),
        Index("ix_billing_events_business_type", "business_id", "event_type"),
        Index("ix_billing_events_created", "created_at"),
    )


class RenewalLeaseTable(TimestampMixin, Base):
    """One row per (subscription, period end) renewal attempt.

    The unique key guarantees a period is charged at most once even when
    renewal sweeps overlap.
    """

    __tablename__ = "billing_renewal_leases"

    lease_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(String(50), nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)  # pending, succeeded, failed
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    payment_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    acquired_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint("subscription_id", "period_end", name="uq_billing_renewal_lease_period"),
    )


__all__ = [
    "LIVE_STATUS_VALUES",
    "BillingSQLModel",
    "SubscriptionPlanTable",
    "BusinessSubscriptionTable",
    "SubscriptionEventTable",
    "RenewalLeaseTable",
]
